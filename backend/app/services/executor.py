"""
Fan-out over the synchronous connectors of one request.

Every planned source runs concurrently. A source that fails is logged and left
out; it never takes its siblings down. An expired credential is refreshed once
and the call retried once.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from backend.app.core.errors import DomainError
from backend.app.models.plan import QueryPlan
from backend.app.models.search import SearchHit, SourceKind
from backend.app.services.connectors.base import SourceConnector, classify_error
from backend.app.services.credentials import CredentialProvider

logger = structlog.get_logger(__name__)


class RequestCredentials:
    """
    Credentials for one request, keyed by credential group.
    A refresh is single-writer: siblings that saw the same stale token wait on
    the lock and then reuse the refreshed one instead of refreshing again.
    """

    def __init__(self, provider: CredentialProvider, user_id: str):
        self.provider = provider
        self.user_id = user_id
        self._tokens: Dict[str, Optional[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.refresh_count = 0

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get(self, kind: SourceKind, key: Optional[str]) -> Optional[str]:
        if key is None:
            return None
        async with self._lock(key):
            if key not in self._tokens:
                self._tokens[key] = await self.provider.get_credential(self.user_id, kind)
            return self._tokens[key]

    async def refresh(self, kind: SourceKind, key: str, stale: Optional[str]) -> str:
        async with self._lock(key):
            current = self._tokens.get(key)
            if current is not None and current != stale:
                return current
            token = await self.provider.refresh_credential(self.user_id, kind)
            self._tokens[key] = token
            self.refresh_count += 1
            return token


@dataclass
class ExecutionResult:
    hits_by_source: Dict[SourceKind, List[SearchHit]] = field(default_factory=dict)
    # Sources that actually returned, in plan order
    searched_sources: List[SourceKind] = field(default_factory=list)
    failed_sources: Dict[SourceKind, str] = field(default_factory=dict)

    def hit_lists(self) -> List[List[SearchHit]]:
        return [self.hits_by_source[k] for k in self.searched_sources]


class FanOutExecutor:
    def __init__(self, connectors: Dict[SourceKind, SourceConnector]):
        self.connectors = connectors

    def split(self, plan: QueryPlan) -> Tuple[List[SourceKind], List[SourceKind]]:
        """Planned kinds that have a connector, as (synchronous, deferred)."""
        sync, deferred = [], []
        for kind in plan.requested_sources():
            connector = self.connectors.get(kind)
            if connector is None:
                logger.warning("connector_missing", source=kind.value)
                continue
            (deferred if connector.deferred else sync).append(kind)
        return sync, deferred

    async def execute(
        self,
        plan: QueryPlan,
        credentials: RequestCredentials,
        user_id: str,
        kinds: Optional[Sequence[SourceKind]] = None,
    ) -> ExecutionResult:
        if kinds is None:
            kinds, _ = self.split(plan)
        outcomes = await asyncio.gather(*[
            self._run(self.connectors[kind], plan.query_for(kind), credentials, user_id) for kind in kinds
        ])

        result = ExecutionResult()
        for kind, (hits, error) in zip(kinds, outcomes):
            if error is not None:
                result.failed_sources[kind] = error
                continue
            result.hits_by_source[kind] = hits
            result.searched_sources.append(kind)
        logger.info(
            "fan_out_done",
            searched=[k.value for k in result.searched_sources],
            failed=[k.value for k in result.failed_sources],
        )
        return result

    async def _run(self, connector: SourceConnector, query, credentials: RequestCredentials, user_id: str):
        kind, key = connector.kind, connector.credential_key
        try:
            token = await credentials.get(kind, key)
        except DomainError as e:
            logger.warning("source_credential_unavailable", source=kind.value, code=e.code)
            return [], e.code

        try:
            records = await connector.search(token, query, user_id)
        except Exception as e:
            classification = classify_error(e)
            if not classification.is_auth_expired or key is None:
                reason = "transient" if classification.is_transient else "fatal"
                logger.warning("source_failed", source=kind.value, reason=reason, error=str(e))
                return [], reason

            logger.info("source_auth_expired_refreshing", source=kind.value)
            try:
                token = await credentials.refresh(kind, key, token)
            except DomainError as refresh_error:
                logger.warning("source_refresh_failed", source=kind.value, code=refresh_error.code)
                return [], refresh_error.code
            try:
                records = await connector.search(token, query, user_id)
            except Exception as retry_error:
                logger.warning("source_failed_after_refresh", source=kind.value, error=str(retry_error))
                return [], "unauthorized" if classify_error(retry_error).is_auth_expired else "failed_after_refresh"

        return connector.normalize(records), None
