"""
Short-lived conversation history.
Conversations are dropped after an inactivity window on the owner's next request,
except those owned by a persistent archive source.
"""
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import structlog
from arango.exceptions import ArangoError

from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError
from backend.app.models.conversation import Conversation, ConversationMessage, ConversationTurn
from backend.app.models.search import SourceKind

logger = structlog.get_logger(__name__)

EXEMPT_SOURCES = (SourceKind.MESSAGE_ARCHIVE,)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore(ABC):
    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create(self, user_id: str, source: Optional[SourceKind] = None) -> Conversation:
        ...

    @abstractmethod
    async def append(self, conversation_id: str, turn: ConversationTurn) -> Conversation:
        ...

    @abstractmethod
    async def delete_older_than(self, user_id: str, cutoff: datetime, excluding: Sequence[SourceKind] = ()) -> int:
        ...


class InMemoryConversationStore(ConversationStore):
    def __init__(self, clock=_utcnow):
        self._conversations: Dict[str, Conversation] = {}
        self._lock = threading.Lock()
        self.clock = clock

    async def get(self, conversation_id):
        with self._lock:
            return self._conversations.get(conversation_id)

    async def create(self, user_id, source=None):
        now = self.clock()
        conversation = Conversation(id=str(uuid.uuid4()), user_id=user_id, source=source, created_at=now, updated_at=now)
        with self._lock:
            self._conversations[conversation.id] = conversation
        return conversation

    async def append(self, conversation_id, turn):
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise NotFoundError("Conversation not found", details={"conversation_id": conversation_id})
            updated = current.model_copy(update={
                "messages": [*current.messages, turn.user, turn.assistant],
                "updated_at": self.clock(),
            })
            self._conversations[conversation_id] = updated
            return updated

    async def delete_older_than(self, user_id, cutoff, excluding=()):
        with self._lock:
            stale = [
                c.id for c in self._conversations.values()
                if c.user_id == user_id and c.updated_at < cutoff and c.source not in excluding
            ]
            for conversation_id in stale:
                del self._conversations[conversation_id]
        return len(stale)


class ArangoConversationStore(ConversationStore):
    COLLECTION = "Conversations"

    def __init__(self, db, clock=_utcnow):
        self.db = db
        self.clock = clock

    @staticmethod
    def _from_doc(doc: dict) -> Conversation:
        return Conversation(id=doc["_key"], **{k: v for k, v in doc.items() if not k.startswith("_")})

    async def get(self, conversation_id):
        doc = self.db.collection(self.COLLECTION).get(conversation_id)
        return self._from_doc(doc) if doc else None

    async def create(self, user_id, source=None):
        now = self.clock()
        conversation = Conversation(id=str(uuid.uuid4()), user_id=user_id, source=source, created_at=now, updated_at=now)
        doc = conversation.model_dump(mode="json", exclude={"id"})
        doc["_key"] = conversation.id
        self.db.collection(self.COLLECTION).insert(doc)
        return conversation

    async def append(self, conversation_id, turn):
        aql = f"""
        FOR c IN {self.COLLECTION}
            FILTER c._key == @key
            UPDATE c WITH {{
                messages: APPEND(c.messages, @messages),
                updated_at: @now
            }} IN {self.COLLECTION}
            RETURN NEW
        """
        cursor = self.db.aql.execute(aql, bind_vars={
            "key": conversation_id,
            "messages": [turn.user.model_dump(mode="json"), turn.assistant.model_dump(mode="json")],
            "now": self.clock().isoformat(),
        })
        docs = list(cursor)
        if not docs:
            raise NotFoundError("Conversation not found", details={"conversation_id": conversation_id})
        return self._from_doc(docs[0])

    async def delete_older_than(self, user_id, cutoff, excluding=()):
        aql = f"""
        FOR c IN {self.COLLECTION}
            FILTER c.user_id == @user_id AND c.updated_at < @cutoff
            FILTER c.source == null OR c.source NOT IN @excluding
            REMOVE c IN {self.COLLECTION}
            RETURN 1
        """
        cursor = self.db.aql.execute(aql, bind_vars={
            "user_id": user_id,
            "cutoff": cutoff.isoformat(),
            "excluding": [k.value for k in excluding],
        })
        return len(list(cursor))


class ConversationService:
    def __init__(self, store: ConversationStore, ttl_seconds: int = settings.CONVERSATION_TTL_SECONDS, clock=_utcnow):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    async def evict_stale(self, user_id: str) -> int:
        """Best effort: a failed eviction never fails the request."""
        try:
            removed = await self.store.delete_older_than(user_id, self.clock() - self.ttl, EXEMPT_SOURCES)
        except ArangoError as e:
            logger.warning("conversation_eviction_failed", error=str(e))
            return 0
        if removed:
            logger.info("conversations_evicted", count=removed)
        return removed

    async def resolve(self, user_id: str, conversation_id: Optional[str]) -> Conversation:
        """The caller's conversation, or a fresh one when it is missing, expired or not theirs."""
        if conversation_id:
            conversation = await self.store.get(conversation_id)
            if conversation is not None and conversation.user_id == user_id:
                return conversation
            logger.info("conversation_not_found_starting_new")
        return await self.store.create(user_id)

    @staticmethod
    def recent(conversation: Conversation, limit: int = settings.PLANNER_HISTORY_MESSAGES) -> List[ConversationMessage]:
        return conversation.messages[-limit:] if limit else []

    async def record_turn(self, conversation_id: str, question: str, answer_text: str, metadata: dict) -> Conversation:
        turn = ConversationTurn(
            user=ConversationMessage(role="user", content=question),
            assistant=ConversationMessage(role="assistant", content=answer_text, metadata=metadata),
        )
        return await self.store.append(conversation_id, turn)
