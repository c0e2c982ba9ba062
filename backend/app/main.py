import asyncio
import uuid

import httpx
import structlog
from fastapi import FastAPI, Request

from backend.app.api.api import api_router
from backend.app.core.config import settings
from backend.app.core.errors import register_exception_handlers
from backend.app.core.logging import bind_request_context, clear_request_context, configure_logging
from backend.app.core.security import SupabaseAuthVerifier
from backend.app.db.arango import db
from backend.app.models.search import SourceKind
from backend.app.services.connectors.archive import ArangoMessageArchive, MessageArchiveConnector
from backend.app.services.connectors.calendar import GoogleCalendarConnector
from backend.app.services.connectors.extension import ExtensionBridgeConnector
from backend.app.services.connectors.gmail import GmailConnector
from backend.app.services.conversations import ArangoConversationStore, ConversationService
from backend.app.services.credentials import ArangoConnectionRepository, GoogleCredentialProvider
from backend.app.services.executor import FanOutExecutor
from backend.app.services.feature_flags import FeatureFlagProvider
from backend.app.services.llm import get_llm
from backend.app.services.orchestrator import AskOrchestrator
from backend.app.services.planner import QueryPlanner
from backend.app.services.registry import InMemoryPendingSearchStore, PendingSearchRegistry, run_sweeper
from backend.app.services.synthesizer import AnswerSynthesizer

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)
register_exception_handlers(app)


def build_orchestrator(database, client: httpx.AsyncClient) -> AskOrchestrator:
    connectors = {
        SourceKind.MAIL: GmailConnector(client),
        SourceKind.CALENDAR: GoogleCalendarConnector(client),
        SourceKind.MESSAGE_ARCHIVE: MessageArchiveConnector(ArangoMessageArchive(database)),
        SourceKind.EXTENSION_LINKEDIN: ExtensionBridgeConnector(SourceKind.EXTENSION_LINKEDIN),
        SourceKind.EXTENSION_WHATSAPP: ExtensionBridgeConnector(SourceKind.EXTENSION_WHATSAPP),
    }
    llm = get_llm()
    return AskOrchestrator(
        planner=QueryPlanner(llm),
        executor=FanOutExecutor(connectors),
        registry=PendingSearchRegistry(InMemoryPendingSearchStore()),
        synthesizer=AnswerSynthesizer(llm),
        conversations=ConversationService(ArangoConversationStore(database)),
        flags=FeatureFlagProvider(database),
        credentials=GoogleCredentialProvider(ArangoConnectionRepository(database), client),
    )


@app.on_event("startup")
async def startup_event():
    # Tests install their own components on app.state before any request
    if getattr(app.state, "orchestrator", None) is not None:
        return
    database = db.initialize()
    app.state.http_client = httpx.AsyncClient()
    app.state.verifier = SupabaseAuthVerifier(app.state.http_client)
    app.state.orchestrator = build_orchestrator(database, app.state.http_client)
    app.state.sweeper = asyncio.create_task(run_sweeper(app.state.orchestrator.registry))
    logger.info("startup_complete")


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    clear_request_context()
    bind_request_context(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(api_router, prefix=settings.API_V1_STR)

@app.get("/")
async def root():
    return {"message": "Ask Engine API is running"}

@app.get("/health")
async def health():
    return {"status": "ok"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
