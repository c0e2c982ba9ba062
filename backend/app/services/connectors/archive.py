"""
Message archive: chat history synced from messaging platforms and stored in ArangoDB.

Search is two-stage. First a loose keyword match over the newest messages, then,
for the first few distinct conversations matched, the messages around the most
recent match are pulled in so the synthesizer reads a continuous thread instead
of disjoint lines.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog

from backend.app.core.config import settings
from backend.app.models.plan import ArchiveQuery
from backend.app.models.records import ArchivedMessage, ArchiveThread
from backend.app.models.search import SearchHit, SourceKind
from backend.app.services.connectors.base import SourceConnector
from backend.app.services.normalizer import normalize_archive

logger = structlog.get_logger(__name__)


class MessageArchive(ABC):
    @abstractmethod
    async def find_matches(
        self,
        user_id: str,
        keywords: List[str],
        sender: Optional[str],
        since: Optional[datetime],
        limit: int,
    ) -> List[ArchivedMessage]:
        """Newest first. Keywords are OR-ed, case-insensitive substring matches."""

    @abstractmethod
    async def messages_before(self, user_id: str, primary: ArchivedMessage, limit: int) -> List[ArchivedMessage]:
        """The ``limit`` messages of the user's conversation just older than ``primary``, newest first."""

    @abstractmethod
    async def messages_after(self, user_id: str, primary: ArchivedMessage, limit: int) -> List[ArchivedMessage]:
        """The ``limit`` messages of the user's conversation at or after ``primary``, oldest first. Never ``primary`` itself."""


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_doc(doc: dict) -> ArchivedMessage:
    return ArchivedMessage(
        id=doc.get("_key") or doc.get("id"),
        user_id=doc["user_id"],
        conversation_id=doc["conversation_id"],
        conversation_title=doc.get("conversation_title"),
        sender=doc.get("sender") or "Unknown",
        content=doc.get("content") or "",
        timestamp=doc["timestamp"],
        is_from_me=bool(doc.get("is_from_me")),
    )


class ArangoMessageArchive(MessageArchive):
    """Timestamps are stored as ISO strings with mixed offsets and are compared as epoch ms via DATE_TIMESTAMP."""

    COLLECTION = "ArchiveMessages"

    def __init__(self, db):
        self.db = db

    async def find_matches(self, user_id, keywords, sender, since, limit):
        aql = f"""
        FOR m IN {self.COLLECTION}
            FILTER m.user_id == @user_id
            FILTER @sender == null OR CONTAINS(LOWER(m.sender), LOWER(@sender))
            FILTER @since == null OR DATE_TIMESTAMP(m.timestamp) >= @since
            FILTER LENGTH(@keywords) == 0 OR LENGTH(
                FOR k IN @keywords
                    FILTER CONTAINS(LOWER(m.content), LOWER(k))
                    LIMIT 1
                    RETURN 1
            ) > 0
            SORT DATE_TIMESTAMP(m.timestamp) DESC
            LIMIT @limit
            RETURN m
        """
        cursor = self.db.aql.execute(aql, bind_vars={
            "user_id": user_id,
            "sender": sender,
            "since": _epoch_ms(since) if since else None,
            "keywords": [k for k in keywords if k],
            "limit": limit,
        })
        return [_from_doc(doc) for doc in cursor]

    def _context_vars(self, user_id: str, primary: ArchivedMessage, limit: int) -> dict:
        return {
            "user_id": user_id,
            "conversation_id": primary.conversation_id,
            "primary": primary.id,
            "pivot": _epoch_ms(primary.timestamp),
            "limit": limit,
        }

    async def messages_before(self, user_id, primary, limit):
        aql = f"""
        FOR m IN {self.COLLECTION}
            FILTER m.user_id == @user_id AND m.conversation_id == @conversation_id
            FILTER m._key != @primary AND DATE_TIMESTAMP(m.timestamp) < @pivot
            SORT DATE_TIMESTAMP(m.timestamp) DESC
            LIMIT @limit
            RETURN m
        """
        cursor = self.db.aql.execute(aql, bind_vars=self._context_vars(user_id, primary, limit))
        return [_from_doc(doc) for doc in cursor]

    async def messages_after(self, user_id, primary, limit):
        aql = f"""
        FOR m IN {self.COLLECTION}
            FILTER m.user_id == @user_id AND m.conversation_id == @conversation_id
            FILTER m._key != @primary AND DATE_TIMESTAMP(m.timestamp) >= @pivot
            SORT DATE_TIMESTAMP(m.timestamp) ASC
            LIMIT @limit
            RETURN m
        """
        cursor = self.db.aql.execute(aql, bind_vars=self._context_vars(user_id, primary, limit))
        return [_from_doc(doc) for doc in cursor]


class MessageArchiveConnector(SourceConnector):
    kind = SourceKind.MESSAGE_ARCHIVE

    def __init__(
        self,
        archive: MessageArchive,
        match_limit: int = settings.ARCHIVE_MATCH_LIMIT,
        thread_limit: int = settings.ARCHIVE_THREAD_LIMIT,
        context_window: int = settings.ARCHIVE_CONTEXT_WINDOW,
    ):
        self.archive = archive
        self.match_limit = match_limit
        self.thread_limit = thread_limit
        self.context_window = context_window

    async def search(self, credential: Optional[str], query: Optional[ArchiveQuery], user_id: str) -> List[ArchiveThread]:
        query = query or ArchiveQuery()
        since = None
        if query.days:
            since = datetime.now(timezone.utc) - timedelta(days=query.days)

        matches = await self.archive.find_matches(
            user_id, list(query.keywords), query.sender, since, self.match_limit
        )
        if not matches:
            return []

        # Matches are newest first, so the first one seen per conversation is its primary.
        primaries = {}
        for message in matches:
            if message.conversation_id not in primaries:
                primaries[message.conversation_id] = message
        thread_limit = min(self.thread_limit, query.limit) if query.limit else self.thread_limit
        selected = list(primaries.values())[:thread_limit]

        threads = await asyncio.gather(*[self._expand(user_id, primary) for primary in selected])
        logger.debug("archive_search_done", user_id=user_id, matches=len(matches), threads=len(threads))
        return list(threads)

    async def _expand(self, user_id: str, primary: ArchivedMessage) -> ArchiveThread:
        before, after = await asyncio.gather(
            self.archive.messages_before(user_id, primary, self.context_window),
            self.archive.messages_after(user_id, primary, self.context_window),
        )
        # older -> match -> newer
        ordered = list(reversed(before)) + [primary] + list(after)
        return ArchiveThread(primary=primary, messages=ordered)

    def normalize(self, records: List[ArchiveThread]) -> List[SearchHit]:
        return normalize_archive(records)
