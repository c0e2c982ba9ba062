from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from backend.app.models.search import SourceKind


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    metadata: Dict[str, Any] = {}


class ConversationTurn(BaseModel):
    """One completed question/answer pair."""
    user: ConversationMessage
    assistant: ConversationMessage


class Conversation(BaseModel):
    id: str
    user_id: str
    messages: List[ConversationMessage] = []
    # Set for conversations owned by a persistent archive source; those skip inactivity eviction.
    source: Optional[SourceKind] = None
    created_at: datetime
    updated_at: datetime
