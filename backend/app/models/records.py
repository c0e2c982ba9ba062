"""
Native record shapes, one per connector, before normalization into SearchHit.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class MailMessage(BaseModel):
    id: str
    thread_id: str = ""
    snippet: str = ""
    sender: str = ""
    to: str = ""
    subject: str = ""
    date: str = ""


class CalendarEvent(BaseModel):
    id: str
    title: str = "No title"
    start: str = ""
    end: str = ""
    attendees: List[str] = []
    description: Optional[str] = None
    html_link: Optional[str] = None


class ArchivedMessage(BaseModel):
    id: str
    user_id: str
    conversation_id: str
    conversation_title: Optional[str] = None
    sender: str
    content: str
    timestamp: datetime
    is_from_me: bool = False


class ArchiveThread(BaseModel):
    """Context window around the most recent match in one archived conversation."""
    primary: ArchivedMessage
    messages: List[ArchivedMessage]

    @property
    def title(self) -> Optional[str]:
        return self.primary.conversation_title or self.primary.conversation_id

    def transcript(self) -> str:
        return "\n".join(
            f"[{m.timestamp.strftime('%Y-%m-%d %H:%M')}] {m.sender}: {m.content}" for m in self.messages
        )
