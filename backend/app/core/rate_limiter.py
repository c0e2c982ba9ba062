import asyncio
import time

from backend.app.core.config import settings

class TokenBucket:
    def __init__(self, capacity: int = 10, refill_rate: float = 0.5):
        """
        capacity: Max burst size (tokens).
        refill_rate: Tokens added per second.
        """
        self.capacity = float(capacity)
        self._tokens = float(capacity)
        self.refill_rate = refill_rate
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        return self._tokens

    async def wait_for_token(self):
        """
        Waits until one token is available and takes it.
        """
        while True:
            async with self._lock:
                now = time.monotonic()
                elapsed = now - self.last_refill
                self._tokens = min(self.capacity, self._tokens + (elapsed * self.refill_rate))
                self.last_refill = now

                if self._tokens >= 1:
                    self._tokens -= 1
                    return

                missing = 1.0 - self._tokens
                wait_seconds = missing / self.refill_rate

            # Sleep outside lock
            await asyncio.sleep(wait_seconds)

# Shared by the planner and synthesizer calls (OpenRouter free tiers throttle hard).
llm_limiter = TokenBucket(capacity=settings.LLM_RATE_CAPACITY, refill_rate=settings.LLM_RATE_REFILL)
