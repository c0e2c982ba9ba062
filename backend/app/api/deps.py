from fastapi import Request

from backend.app.services.orchestrator import AskOrchestrator


def get_orchestrator(request: Request) -> AskOrchestrator:
    return request.app.state.orchestrator
