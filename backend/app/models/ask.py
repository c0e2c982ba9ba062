from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from backend.app.models.answer import Answer
from backend.app.models.flags import FlagOverrides
from backend.app.models.pending import PendingStatus
from backend.app.models.search import DomInstruction


class AskRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    conversation_id: Optional[UUID] = Field(None, alias="conversationId")
    flags: Optional[FlagOverrides] = None

    class Config:
        populate_by_name = True


class AskResponse(BaseModel):
    status: Literal["complete", "processing"]
    request_id: str
    answer: Optional[Answer] = None
    sources_searched: List[str] = []
    conversation_id: str
    # Only set while processing: what the extension still has to search
    pending_sources: List[str] = []
    instructions: List[DomInstruction] = []


class PendingStatusResponse(BaseModel):
    request_id: str
    status: PendingStatus
    answer: Optional[Answer] = None
    sources_searched: List[str] = []
    expected_sources: List[str] = []
    received_sources: List[str] = []
    conversation_id: Optional[str] = None
    error: Optional[str] = None


class DomResultsRequest(BaseModel):
    source: str
    snippets: List[str] = []
    error: Optional[str] = None


class DomResultsResponse(BaseModel):
    request_id: str
    status: PendingStatus
    received: List[str]
    expected: List[str]
    duplicate: bool = False
