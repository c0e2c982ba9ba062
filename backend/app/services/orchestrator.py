"""
Request-level entry points for the ask pipeline: ask, poll, bridge report and
the background synthesis that finishes a deferred request.
"""
import uuid
from typing import Callable, Dict, Optional

import structlog

from backend.app.core.errors import NotFoundError, RegistryInconsistency, ValidationError
from backend.app.models.answer import Answer
from backend.app.models.ask import AskRequest, AskResponse, DomResultsRequest, DomResultsResponse, PendingStatusResponse
from backend.app.models.pending import PendingSearch, PendingStatus, SynthesisJob
from backend.app.models.plan import QueryPlan
from backend.app.models.search import SourceKind
from backend.app.services.connectors.base import SourceConnector
from backend.app.services.connectors.extension import ExtensionBridgeConnector
from backend.app.services.conversations import ConversationService
from backend.app.services.credentials import CredentialProvider
from backend.app.services.executor import FanOutExecutor, RequestCredentials
from backend.app.services.feature_flags import FeatureFlagProvider
from backend.app.services.normalizer import merge_hits, normalize_snippets
from backend.app.services.planner import QueryPlanner
from backend.app.services.registry import PendingSearchRegistry
from backend.app.services.synthesizer import AnswerSynthesizer
from backend.app.workflows.ask import build_ask_workflow

logger = structlog.get_logger(__name__)

Scheduler = Callable[[SynthesisJob], None]


def turn_metadata(plan: Optional[QueryPlan], answer: Answer, sources: list) -> dict:
    return {
        "plan": plan.model_dump(mode="json") if plan else None,
        "citations": [c.model_dump(mode="json") for c in answer.citations],
        "confidence": answer.confidence,
        "sources_searched": sources,
    }


class AskOrchestrator:
    def __init__(
        self,
        planner: QueryPlanner,
        executor: FanOutExecutor,
        registry: PendingSearchRegistry,
        synthesizer: AnswerSynthesizer,
        conversations: ConversationService,
        flags: FeatureFlagProvider,
        credentials: CredentialProvider,
    ):
        self.planner = planner
        self.executor = executor
        self.registry = registry
        self.synthesizer = synthesizer
        self.conversations = conversations
        self.flags = flags
        self.credentials = credentials
        self.workflow = build_ask_workflow(planner, executor, registry, synthesizer)

    @property
    def connectors(self) -> Dict[SourceKind, SourceConnector]:
        return self.executor.connectors

    async def _require_mail_connection(self, credentials: RequestCredentials):
        connector = self.connectors.get(SourceKind.MAIL)
        if connector is not None:
            # raises ConnectionNotLinkedError before any LLM spend
            await credentials.get(SourceKind.MAIL, connector.credential_key)

    async def ask(self, user_id: str, request: AskRequest, schedule: Optional[Scheduler] = None) -> AskResponse:
        request_id = str(uuid.uuid4())
        log = logger.bind(ask_id=request_id)
        log.info("ask_received", query_length=len(request.query))

        await self.conversations.evict_stale(user_id)
        requested_id = str(request.conversation_id) if request.conversation_id else None
        conversation = await self.conversations.resolve(user_id, requested_id)

        flags = (await self.flags.resolve(user_id)).merged(request.flags)
        credentials = RequestCredentials(self.credentials, user_id)
        if flags.enable_mail:
            await self._require_mail_connection(credentials)

        state = await self.workflow.ainvoke({
            "request_id": request_id,
            "user_id": user_id,
            "question": request.query,
            "conversation_id": conversation.id,
            "planner_history": self.conversations.recent(conversation),
            "history": list(conversation.messages),
            "flags": flags,
            "credentials": credentials,
        })
        searched = [k.value for k in state.get("searched_sources", [])]

        if state.get("status") == "processing":
            if state.get("synthesis_due"):
                await self._dispatch(SynthesisJob(request_id=request_id), schedule)
            log.info("ask_deferred", pending=[k.value for k in state["deferred_sources"]])
            return AskResponse(
                status="processing",
                request_id=request_id,
                sources_searched=searched,
                conversation_id=conversation.id,
                pending_sources=[k.value for k in state["deferred_sources"]],
                instructions=state.get("instructions", []),
            )

        answer = state["answer"]
        await self.conversations.record_turn(
            conversation.id, request.query, answer.answer, turn_metadata(state.get("plan"), answer, searched)
        )
        log.info("ask_complete", sources=searched, confidence=answer.confidence)
        return AskResponse(
            status="complete",
            request_id=request_id,
            answer=answer,
            sources_searched=searched,
            conversation_id=conversation.id,
        )

    async def _dispatch(self, job: SynthesisJob, schedule: Optional[Scheduler]):
        if schedule is None:
            await self.run_synthesis(job)
        else:
            schedule(job)

    def status(self, request_id: str, user_id: str) -> PendingStatusResponse:
        record = self.registry.get(request_id, user_id)
        status = record.status
        if status == PendingStatus.COMPLETE and record.answer is None:
            # all sources are in; the answer is still being written
            status = PendingStatus.PROCESSING
        return PendingStatusResponse(
            request_id=record.request_id,
            status=status,
            answer=record.answer,
            sources_searched=[k.value for k in record.searched_sources],
            expected_sources=[k.value for k in record.expected_sources],
            received_sources=[k.value for k in record.received_sources],
            conversation_id=record.conversation_id,
            error=record.error,
        )

    async def report(
        self, request_id: str, user_id: str, body: DomResultsRequest, schedule: Optional[Scheduler] = None
    ) -> DomResultsResponse:
        try:
            kind = SourceKind.parse(body.source)
        except ValueError:
            raise ValidationError(f"Unknown source '{body.source}'")

        connector = self.connectors.get(kind)
        if isinstance(connector, ExtensionBridgeConnector):
            hits = connector.normalize_report(request_id, body.snippets)
        else:
            hits = normalize_snippets(request_id, kind, body.snippets)

        outcome = self.registry.report(request_id, user_id, kind, hits, error=body.error)
        if outcome.completed_now:
            await self._dispatch(SynthesisJob(request_id=request_id), schedule)

        record = outcome.record
        return DomResultsResponse(
            request_id=request_id,
            status=record.status,
            received=[k.value for k in record.received_sources],
            expected=[k.value for k in record.expected_sources],
            duplicate=outcome.duplicate,
        )

    @staticmethod
    def _ordered_hits(record: PendingSearch):
        planned = QueryPlan.model_validate(record.plan).requested_sources() if record.plan else []
        order = [k for k in planned if k in record.collected_results]
        order += [k for k in record.collected_results if k not in order]
        return merge_hits(*[record.collected_results[k] for k in order])

    async def run_synthesis(self, job: SynthesisJob):
        """
        Finishes a deferred request. Any failure here marks the record failed;
        nothing propagates to the bridge call that triggered it.
        """
        log = logger.bind(ask_id=job.request_id)
        record = self.registry.peek(job.request_id)
        if record is None:
            log.warning("synthesis_record_missing")
            return

        try:
            conversation = None
            if record.conversation_id:
                conversation = await self.conversations.store.get(record.conversation_id)
            history = list(conversation.messages) if conversation else []

            answer = await self.synthesizer.synthesize(record.query, self._ordered_hits(record), history)

            if conversation is not None:
                try:
                    await self.conversations.record_turn(
                        conversation.id,
                        record.query,
                        answer.answer,
                        turn_metadata(
                            QueryPlan.model_validate(record.plan) if record.plan else None,
                            answer,
                            [k.value for k in record.searched_sources],
                        ),
                    )
                except NotFoundError:
                    log.info("synthesis_conversation_gone")

            self.registry.attach_answer(job.request_id, answer)
            log.info("synthesis_complete", confidence=answer.confidence)
        except Exception as e:
            log.error("synthesis_failed", error=str(e), exc_info=True)
            try:
                self.registry.mark_failed(job.request_id, "Failed to synthesize answer")
            except RegistryInconsistency:
                log.warning("synthesis_record_purged")
