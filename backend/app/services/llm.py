import json
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI

from backend.app.core.config import settings
from backend.app.core.rate_limiter import TokenBucket

JSON_RESPONSE_FORMAT = {"type": "json_object"}

def get_llm(model: Optional[str] = None, temperature: float = 0.1):
    """
    Returns a configured LangChain ChatModel using OpenRouter.
    """
    return ChatOpenAI(
        base_url=settings.LLM_BASE_URL,
        api_key=settings.OPEN_ROUTER_API_KEY,
        model=model or settings.LLM_MODEL,
        temperature=temperature,
        max_retries=3,
        default_headers={"HTTP-Referer": settings.APP_URL, "X-Title": settings.PROJECT_NAME},
    )


async def invoke_json(llm, messages: List[BaseMessage], limiter: Optional[TokenBucket] = None) -> str:
    """Runs one JSON-mode chat call and returns the raw text content ("" when empty)."""
    if limiter is not None:
        await limiter.wait_for_token()
    response = await llm.ainvoke(messages, response_format=JSON_RESPONSE_FORMAT)
    content = response.content
    if isinstance(content, list):
        # some providers return content blocks
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return (content or "").strip()


def parse_json_content(content: str) -> Dict[str, Any]:
    """Parses a JSON object out of model output, tolerating ```json fences. Raises ValueError."""
    cleaned = content.strip().replace("```json", "").replace("```", "").strip()
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError("expected a JSON object")
    return parsed
