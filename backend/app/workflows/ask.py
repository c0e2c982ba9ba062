from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from backend.app.models.answer import Answer
from backend.app.models.conversation import ConversationMessage
from backend.app.models.flags import FeatureFlags
from backend.app.models.plan import QueryPlan
from backend.app.models.search import DomInstruction, SearchHit, SourceKind
from backend.app.services.executor import FanOutExecutor, RequestCredentials
from backend.app.services.normalizer import merge_hits
from backend.app.services.planner import QueryPlanner
from backend.app.services.registry import PendingSearchRegistry
from backend.app.services.synthesizer import AnswerSynthesizer


class AskState(TypedDict, total=False):
    request_id: str
    user_id: str
    question: str
    conversation_id: str
    planner_history: List[ConversationMessage]
    history: List[ConversationMessage]
    flags: FeatureFlags
    credentials: RequestCredentials

    plan: QueryPlan
    sync_sources: List[SourceKind]
    deferred_sources: List[SourceKind]
    instructions: List[DomInstruction]

    hits_by_source: Dict[SourceKind, List[SearchHit]]
    searched_sources: List[SourceKind]
    failed_sources: Dict[SourceKind, str]

    status: str
    answer: Optional[Answer]
    # Set when the bridge finished before the synchronous sources did
    synthesis_due: bool


def build_ask_workflow(
    planner: QueryPlanner,
    executor: FanOutExecutor,
    registry: PendingSearchRegistry,
    synthesizer: AnswerSynthesizer,
) -> Any:
    """
    plan -> [register] -> fan_out -> defer | synthesize

    ``register`` only runs when a planned source is served by the extension bridge;
    such requests end at ``defer`` and finish later through bridge reports.
    """

    async def plan(state: AskState):
        query_plan = await planner.plan(state["question"], state.get("planner_history", []), state["flags"])
        sync_sources, deferred_sources = executor.split(query_plan)
        return {"plan": query_plan, "sync_sources": sync_sources, "deferred_sources": deferred_sources}

    def register(state: AskState):
        query_plan = state["plan"]
        instructions = [
            executor.connectors[kind].describe(state["request_id"], query_plan.query_for(kind))
            for kind in state["deferred_sources"]
        ]
        # Registered before any synchronous search so an early bridge report finds the record.
        registry.create(
            request_id=state["request_id"],
            user_id=state["user_id"],
            query=state["question"],
            expected_sources=state["deferred_sources"],
            conversation_id=state.get("conversation_id"),
            instructions=instructions,
            plan=query_plan.model_dump(mode="json"),
        )
        return {"instructions": instructions}

    async def fan_out(state: AskState):
        result = await executor.execute(
            state["plan"], state["credentials"], state["user_id"], kinds=state["sync_sources"]
        )
        return {
            "hits_by_source": result.hits_by_source,
            "searched_sources": result.searched_sources,
            "failed_sources": result.failed_sources,
        }

    def defer(state: AskState):
        outcome = registry.populate(
            state["request_id"],
            state.get("hits_by_source", {}),
            state.get("searched_sources", []),
            state.get("failed_sources", {}),
        )
        return {"status": "processing", "synthesis_due": outcome.completed_now}

    async def synthesize(state: AskState):
        hits_by_source = state.get("hits_by_source", {})
        hits = merge_hits(*[hits_by_source[k] for k in state.get("searched_sources", [])])
        answer = await synthesizer.synthesize(state["question"], hits, state.get("history", []))
        return {"status": "complete", "answer": answer}

    def route_after_plan(state: AskState):
        return "register" if state["deferred_sources"] else "fan_out"

    def route_after_fan_out(state: AskState):
        return "defer" if state["deferred_sources"] else "synthesize"

    workflow = StateGraph(AskState)

    workflow.add_node("plan", plan)
    workflow.add_node("register", register)
    workflow.add_node("fan_out", fan_out)
    workflow.add_node("defer", defer)
    workflow.add_node("synthesize", synthesize)

    workflow.set_entry_point("plan")
    workflow.add_conditional_edges("plan", route_after_plan, {"register": "register", "fan_out": "fan_out"})
    workflow.add_edge("register", "fan_out")
    workflow.add_conditional_edges("fan_out", route_after_fan_out, {"defer": "defer", "synthesize": "synthesize"})
    workflow.add_edge("defer", END)
    workflow.add_edge("synthesize", END)

    return workflow.compile()
