"""
Pending-search registry.

Tracks requests whose results partly come from the browser-extension bridge.
Every mutation of a record is a compare-and-set against its version, so two
bridge reports for the same request can never both see the set as complete.
Records are immutable; each change stores a new copy.
"""
import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from backend.app.core.config import settings
from backend.app.core.errors import ConflictError, ForbiddenError, RegistryInconsistency, ValidationError
from backend.app.models.answer import Answer
from backend.app.models.pending import PendingSearch, PendingStatus
from backend.app.models.search import DomInstruction, SearchHit, SourceKind

logger = structlog.get_logger(__name__)

CAS_ATTEMPTS = 16


class PendingSearchStore(ABC):
    @abstractmethod
    def get(self, request_id: str) -> Optional[PendingSearch]:
        ...

    @abstractmethod
    def create(self, record: PendingSearch) -> None:
        """Raises ConflictError when the id is taken."""

    @abstractmethod
    def compare_and_set(self, request_id: str, expected_version: int, record: PendingSearch) -> bool:
        ...

    @abstractmethod
    def delete(self, request_id: str) -> None:
        ...

    @abstractmethod
    def list(self) -> List[PendingSearch]:
        ...


class InMemoryPendingSearchStore(PendingSearchStore):
    """Process-local. A multi-worker deployment needs a shared implementation."""

    def __init__(self):
        self._records: Dict[str, PendingSearch] = {}
        self._lock = threading.Lock()

    def get(self, request_id):
        with self._lock:
            return self._records.get(request_id)

    def create(self, record):
        with self._lock:
            if record.request_id in self._records:
                raise ConflictError("Request id already registered", details={"request_id": record.request_id})
            self._records[record.request_id] = record

    def compare_and_set(self, request_id, expected_version, record):
        with self._lock:
            current = self._records.get(request_id)
            if current is None or current.version != expected_version:
                return False
            self._records[request_id] = record
            return True

    def delete(self, request_id):
        with self._lock:
            self._records.pop(request_id, None)

    def list(self):
        with self._lock:
            return list(self._records.values())


@dataclass(frozen=True)
class ReportOutcome:
    record: PendingSearch
    # True only for the single caller whose write moved the record to COMPLETE
    completed_now: bool = False
    duplicate: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingSearchRegistry:
    def __init__(
        self,
        store: PendingSearchStore,
        grace_seconds: int = settings.PENDING_GRACE_SECONDS,
        abandon_seconds: int = settings.PENDING_ABANDON_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.grace = timedelta(seconds=grace_seconds)
        self.abandon_after = timedelta(seconds=abandon_seconds)
        self.clock = clock

    def create(
        self,
        request_id: str,
        user_id: str,
        query: str,
        expected_sources: Sequence[SourceKind],
        conversation_id: Optional[str] = None,
        instructions: Sequence[DomInstruction] = (),
        plan: Optional[dict] = None,
    ) -> PendingSearch:
        self.purge_expired()
        record = PendingSearch(
            request_id=request_id,
            user_id=user_id,
            query=query,
            expected_sources=list(dict.fromkeys(expected_sources)),
            created_at=self.clock(),
            conversation_id=conversation_id,
            instructions=list(instructions),
            plan=plan or {},
        )
        self.store.create(record)
        logger.info("pending_created", request_id=request_id, expected=[k.value for k in record.expected_sources])
        return record

    def _mutate(
        self, request_id: str, change: Callable[[PendingSearch], Optional[dict]]
    ) -> Tuple[PendingSearch, PendingSearch]:
        """
        Applies ``change`` under compare-and-set and returns (before, after).
        ``change`` returns the fields to update, or None to leave the record alone.
        """
        for _ in range(CAS_ATTEMPTS):
            current = self.store.get(request_id)
            if current is None:
                raise RegistryInconsistency("Request not found or expired", details={"request_id": request_id})

            updates = change(current)
            if updates is None:
                return current, current

            new_status = updates.get("status", current.status)
            if new_status != current.status and not current.can_move_to(new_status):
                raise ConflictError(
                    f"Invalid transition {current.status.value} -> {new_status.value}",
                    details={"request_id": request_id},
                )

            updated = current.model_copy(update={**updates, "version": current.version + 1})
            if self.store.compare_and_set(request_id, current.version, updated):
                return current, updated

        raise ConflictError("Pending search is being updated concurrently", details={"request_id": request_id})

    def _completion_fields(self, collected: Dict[SourceKind, List[SearchHit]], record: PendingSearch, populated: bool) -> dict:
        satisfied = all(k in collected for k in record.expected_sources)
        if satisfied and populated:
            return {"status": PendingStatus.COMPLETE}
        return {"status": PendingStatus.PARTIAL}

    def populate(
        self,
        request_id: str,
        hits_by_source: Dict[SourceKind, List[SearchHit]],
        searched_sources: Sequence[SourceKind],
        failed_sources: Optional[Dict[SourceKind, str]] = None,
    ) -> ReportOutcome:
        """Merges the synchronous results. Completes the record if the bridge already answered."""

        def change(current: PendingSearch):
            if current.is_terminal or current.populated:
                return None
            collected = {**hits_by_source, **current.collected_results}
            updates = {
                "collected_results": collected,
                "searched_sources": list(dict.fromkeys([*searched_sources, *current.searched_sources])),
                "failed_sources": {**(failed_sources or {}), **current.failed_sources},
                "populated": True,
            }
            if current.status == PendingStatus.PENDING and not current.collected_results:
                updates["status"] = PendingStatus.PROCESSING
            else:
                updates.update(self._completion_fields(collected, current, populated=True))
            return updates

        before, after = self._mutate(request_id, change)
        completed_now = before.status != PendingStatus.COMPLETE and after.status == PendingStatus.COMPLETE
        return ReportOutcome(record=after, completed_now=completed_now)

    def report(
        self,
        request_id: str,
        user_id: str,
        kind: SourceKind,
        hits: List[SearchHit],
        error: Optional[str] = None,
    ) -> ReportOutcome:
        """
        Records one bridge source's results. The first report for a kind wins;
        later ones are flagged as duplicates and change nothing.
        """
        existing = self.get(request_id, user_id)
        if kind not in existing.expected_sources:
            raise ValidationError(
                f"Source '{kind.value}' is not expected for this request",
                details={"expected": [k.value for k in existing.expected_sources]},
            )

        def change(current: PendingSearch):
            if current.is_terminal or kind in current.collected_results:
                return None
            collected = {**current.collected_results, kind: [] if error else list(hits)}
            updates = {
                "collected_results": collected,
                "searched_sources": current.searched_sources if error else [*current.searched_sources, kind],
            }
            if error:
                updates["failed_sources"] = {**current.failed_sources, kind: error}
            updates.update(self._completion_fields(collected, current, populated=current.populated))
            return updates

        before, after = self._mutate(request_id, change)
        duplicate = before is after and kind in before.collected_results
        completed_now = before.status != PendingStatus.COMPLETE and after.status == PendingStatus.COMPLETE
        if duplicate:
            logger.info("bridge_report_duplicate", request_id=request_id, source=kind.value)
        else:
            logger.info("bridge_report", request_id=request_id, source=kind.value, status=after.status.value)
        return ReportOutcome(record=after, completed_now=completed_now, duplicate=duplicate)

    def attach_answer(self, request_id: str, answer: Answer) -> PendingSearch:
        def change(current: PendingSearch):
            if current.status != PendingStatus.COMPLETE:
                return None
            return {"answer": answer, "finished_at": self.clock()}

        _, after = self._mutate(request_id, change)
        return after

    def mark_failed(self, request_id: str, error: str) -> PendingSearch:
        def change(current: PendingSearch):
            if current.status == PendingStatus.FAILED:
                return None
            return {"status": PendingStatus.FAILED, "error": error, "finished_at": self.clock()}

        _, after = self._mutate(request_id, change)
        logger.warning("pending_failed", request_id=request_id, error=error)
        return after

    def peek(self, request_id: str) -> Optional[PendingSearch]:
        return self.store.get(request_id)

    def get(self, request_id: str, user_id: str) -> PendingSearch:
        record = self.store.get(request_id)
        if record is None:
            raise RegistryInconsistency("Request not found or expired", details={"request_id": request_id})
        if record.user_id != user_id:
            raise ForbiddenError("Not authorized to access this request")
        return record

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        purged = 0
        for record in self.store.list():
            # the grace clock starts once an answer or failure is final;
            # a complete record still waiting on synthesis ages like a live one
            if record.finished_at is not None:
                expired = now - record.finished_at >= self.grace
            else:
                expired = now - record.created_at >= self.abandon_after
            if expired:
                self.store.delete(record.request_id)
                purged += 1
                if record.finished_at is None:
                    logger.info("pending_abandoned", request_id=record.request_id, status=record.status.value)
        return purged


async def run_sweeper(registry: PendingSearchRegistry, interval_seconds: float = settings.PENDING_SWEEP_INTERVAL_SECONDS):
    """Periodic purge so abandoned records go away even when no new requests arrive."""
    while True:
        await asyncio.sleep(interval_seconds)
        purged = registry.purge_expired()
        if purged:
            logger.info("pending_swept", purged=purged)
