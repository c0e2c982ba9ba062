"""
Pending Search record
Tracks a request whose result set waits on the browser-extension bridge.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from backend.app.models.answer import Answer
from backend.app.models.search import DomInstruction, SearchHit, SourceKind


class PendingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"


# Forward-only. FAILED is reachable from every non-terminal state and from
# COMPLETE (synthesis can still fail after completion).
ALLOWED_TRANSITIONS = {
    PendingStatus.PENDING: {PendingStatus.PROCESSING, PendingStatus.PARTIAL, PendingStatus.COMPLETE, PendingStatus.FAILED},
    PendingStatus.PROCESSING: {PendingStatus.PARTIAL, PendingStatus.COMPLETE, PendingStatus.FAILED},
    PendingStatus.PARTIAL: {PendingStatus.PARTIAL, PendingStatus.COMPLETE, PendingStatus.FAILED},
    PendingStatus.COMPLETE: {PendingStatus.FAILED},
    PendingStatus.FAILED: set(),
}

TERMINAL_STATUSES = (PendingStatus.COMPLETE, PendingStatus.FAILED)


class PendingSearch(BaseModel):
    request_id: str
    user_id: str
    query: str
    expected_sources: List[SourceKind]
    collected_results: Dict[SourceKind, List[SearchHit]] = {}
    searched_sources: List[SourceKind] = []
    # Set once the synchronous sources have been merged in
    populated: bool = False
    failed_sources: Dict[SourceKind, str] = {}
    status: PendingStatus = PendingStatus.PENDING
    created_at: datetime
    finished_at: Optional[datetime] = None
    conversation_id: Optional[str] = None
    instructions: List[DomInstruction] = []
    plan: Dict[str, Any] = {}
    answer: Optional[Answer] = None
    error: Optional[str] = None
    version: int = 0

    class Config:
        frozen = True

    @property
    def received_sources(self) -> List[SourceKind]:
        return [k for k in self.expected_sources if k in self.collected_results]

    @property
    def outstanding_sources(self) -> List[SourceKind]:
        return [k for k in self.expected_sources if k not in self.collected_results]

    @property
    def is_satisfied(self) -> bool:
        """Every expected source has an entry, possibly empty."""
        return all(k in self.collected_results for k in self.expected_sources)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_move_to(self, status: PendingStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]


class SynthesisJob(BaseModel):
    """Handed to a background task once a pending search completes."""
    request_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
