"""
Feature flag resolution.
Precedence (lowest first): settings defaults (FF_* env), global override, per-user override.
Per-request flags are layered on top by the caller.
"""
import time
from typing import Dict, Optional, Tuple

import structlog
from arango.exceptions import ArangoError

from backend.app.core.config import settings
from backend.app.models.flags import FeatureFlags, FlagOverrides

logger = structlog.get_logger(__name__)

GLOBAL_KEY = "global"


def default_flags() -> FeatureFlags:
    return FeatureFlags(
        enable_linkedin=settings.FF_ENABLE_LINKEDIN,
        enable_whatsapp=settings.FF_ENABLE_WHATSAPP,
        enable_mail=settings.FF_ENABLE_MAIL,
        enable_async_mode=settings.FF_ENABLE_ASYNC_MODE,
    )


class FeatureFlagProvider:
    COLLECTION = "FeatureFlags"

    def __init__(self, db=None, cache_ttl: float = settings.FF_CACHE_TTL_SECONDS):
        self.db = db
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[float, Optional[FlagOverrides]]] = {}

    def _load(self, key: str) -> Optional[FlagOverrides]:
        cached = self._cache.get(key)
        now = time.monotonic()
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]

        doc = self.db.collection(self.COLLECTION).get(key)
        overrides = FlagOverrides(**{k: v for k, v in doc.items() if not k.startswith("_")}) if doc else None
        self._cache[key] = (now, overrides)
        return overrides

    async def resolve(self, user_id: str) -> FeatureFlags:
        flags = default_flags()
        if self.db is None:
            return flags
        try:
            flags = flags.merged(self._load(GLOBAL_KEY))
            flags = flags.merged(self._load(f"user:{user_id}"))
        except ArangoError as e:
            # Flag storage is optional; fall back to whatever resolved so far
            logger.warning("feature_flags_unavailable", error=str(e))
        return flags

    def invalidate(self):
        self._cache.clear()
