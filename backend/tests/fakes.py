"""Test doubles shared across the suite."""
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from langchain_core.messages import AIMessage

from backend.app.core.errors import ConnectionNotLinkedError, CredentialRefreshError
from backend.app.models.search import HitMetadata, SearchHit, SourceKind
from backend.app.services.connectors.archive import MessageArchive
from backend.app.services.connectors.base import SourceConnector
from backend.app.services.conversations import ConversationService, InMemoryConversationStore
from backend.app.services.credentials import CredentialProvider
from backend.app.services.executor import FanOutExecutor
from backend.app.services.feature_flags import FeatureFlagProvider
from backend.app.services.orchestrator import AskOrchestrator
from backend.app.services.planner import QueryPlanner
from backend.app.services.registry import InMemoryPendingSearchStore, PendingSearchRegistry
from backend.app.services.synthesizer import AnswerSynthesizer


class FakeLLM:
    """Replays canned contents and records every message list it was sent."""

    def __init__(self, *contents):
        self.contents = list(contents)
        self.calls = []

    async def ainvoke(self, messages, **kwargs):
        self.calls.append(messages)
        content = self.contents.pop(0) if self.contents else ""
        if isinstance(content, dict):
            content = json.dumps(content)
        return AIMessage(content=content)


class FakeConnector(SourceConnector):
    """Returns SearchHits as its native records. ``outcomes`` are consumed per call;
    an exception instance is raised instead of returned."""

    def __init__(self, kind: SourceKind, outcomes=None, credential_key: Optional[str] = None):
        self.kind = kind
        self.credential_key = credential_key
        self.outcomes = list(outcomes or [])
        self.tokens = []

    async def search(self, credential, query, user_id):
        self.tokens.append(credential)
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def normalize(self, records):
        return list(records)


class FakeCredentialProvider(CredentialProvider):
    def __init__(self, token: Optional[str] = "token-1", refreshed: str = "token-2", fail_refresh: bool = False):
        self.token = token
        self.refreshed = refreshed
        self.fail_refresh = fail_refresh
        self.refresh_calls = 0

    async def get_credential(self, user_id, kind):
        if kind not in (SourceKind.MAIL, SourceKind.CALENDAR):
            return None
        if self.token is None:
            raise ConnectionNotLinkedError("Google account not connected")
        return self.token

    async def refresh_credential(self, user_id, kind):
        self.refresh_calls += 1
        if self.fail_refresh:
            raise CredentialRefreshError("refresh failed")
        self.token = self.refreshed
        return self.refreshed


class FakeArchive(MessageArchive):
    def __init__(self, messages):
        self.messages = sorted(messages, key=lambda m: m.timestamp)

    async def find_matches(self, user_id, keywords, sender, since, limit):
        found = []
        for m in reversed(self.messages):
            if m.user_id != user_id:
                continue
            if sender and sender.lower() not in m.sender.lower():
                continue
            if since and m.timestamp < since:
                continue
            if keywords and not any(k.lower() in m.content.lower() for k in keywords):
                continue
            found.append(m)
        return found[:limit]

    def _thread(self, user_id, primary):
        return [
            m for m in self.messages
            if m.user_id == user_id and m.conversation_id == primary.conversation_id and m.id != primary.id
        ]

    async def messages_before(self, user_id, primary, limit):
        older = [m for m in self._thread(user_id, primary) if m.timestamp < primary.timestamp]
        return list(reversed(older))[:limit]

    async def messages_after(self, user_id, primary, limit):
        newer = [m for m in self._thread(user_id, primary) if m.timestamp >= primary.timestamp]
        return newer[:limit]


def make_hit(hit_id: str, source: SourceKind, score: float = 1.0, content: str = "", **metadata) -> SearchHit:
    return SearchHit(
        id=hit_id,
        source=source,
        content=content or f"content of {hit_id}",
        metadata=HitMetadata(**metadata),
        relevance_score=score,
    )


def plan_json(**overrides) -> dict:
    plan = {
        "needsMail": False,
        "needsCalendar": False,
        "needsMessageArchive": False,
        "needsExtensionSource": False,
        "mail": None,
        "calendar": None,
        "messageArchive": None,
        "extension": None,
    }
    plan.update(overrides)
    return plan


def answer_json(answer="Answer [1]", citations=None, confidence=80, insufficient=False) -> dict:
    return {
        "answer": answer,
        "citations": citations if citations is not None else [{"source": "mail", "content": "x", "id": "1"}],
        "confidence": confidence,
        "insufficient": insufficient,
    }


class Clock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def build_orchestrator(
    connectors: Dict[SourceKind, SourceConnector],
    planner_llm: FakeLLM,
    synth_llm: FakeLLM,
    credentials: Optional[CredentialProvider] = None,
    conversation_store: Optional[InMemoryConversationStore] = None,
    flags: Optional[FeatureFlagProvider] = None,
    registry: Optional[PendingSearchRegistry] = None,
) -> AskOrchestrator:
    return AskOrchestrator(
        planner=QueryPlanner(planner_llm, limiter=None),
        executor=FanOutExecutor(connectors),
        registry=registry or PendingSearchRegistry(InMemoryPendingSearchStore()),
        synthesizer=AnswerSynthesizer(synth_llm, limiter=None),
        conversations=ConversationService(conversation_store or InMemoryConversationStore()),
        flags=flags or FeatureFlagProvider(),
        credentials=credentials or FakeCredentialProvider(),
    )


def message_texts(messages) -> List[str]:
    return [m.content for m in messages]
