from fastapi import APIRouter, BackgroundTasks, Depends

from backend.app.api.deps import get_orchestrator
from backend.app.core.logging import bind_request_context
from backend.app.core.security import get_current_user
from backend.app.models.ask import (
    AskRequest,
    AskResponse,
    DomResultsRequest,
    DomResultsResponse,
    PendingStatusResponse,
)
from backend.app.services.orchestrator import AskOrchestrator

router = APIRouter()


def _scheduler(background_tasks: BackgroundTasks, orchestrator: AskOrchestrator):
    # synthesis runs after the response is sent
    return lambda job: background_tasks.add_task(orchestrator.run_synthesis, job)


@router.post("", response_model=AskResponse, response_model_exclude_none=True)
async def ask(
    request: AskRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    """
    Answers a question from the user's connected sources.
    Returns "processing" with bridge instructions when a source must be searched by the extension.
    """
    bind_request_context(user_id=user_id)
    return await orchestrator.ask(user_id, request, schedule=_scheduler(background_tasks, orchestrator))


@router.get("/{request_id}", response_model=PendingStatusResponse)
async def get_ask_status(
    request_id: str,
    user_id: str = Depends(get_current_user),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.status(request_id, user_id)


@router.post("/{request_id}/dom-results", response_model=DomResultsResponse)
async def submit_dom_results(
    request_id: str,
    body: DomResultsRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    """
    Called by the browser extension with one source's results.
    The report that completes the set schedules synthesis.
    """
    bind_request_context(user_id=user_id)
    return await orchestrator.report(request_id, user_id, body, schedule=_scheduler(background_tasks, orchestrator))
