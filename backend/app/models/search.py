from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SourceKind(str, Enum):
    MAIL = "mail"
    CALENDAR = "calendar"
    MESSAGE_ARCHIVE = "message-archive"
    EXTENSION_LINKEDIN = "extension-linkedin"
    EXTENSION_WHATSAPP = "extension-whatsapp"

    @classmethod
    def parse(cls, value: str) -> "SourceKind":
        """Accepts full kind names and the short platform names the extension sends."""
        value = (value or "").strip().lower()
        aliases = {
            "linkedin": cls.EXTENSION_LINKEDIN,
            "whatsapp": cls.EXTENSION_WHATSAPP,
            "gmail": cls.MAIL,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)

    @property
    def is_extension(self) -> bool:
        return self in (SourceKind.EXTENSION_LINKEDIN, SourceKind.EXTENSION_WHATSAPP)


EXTENSION_KINDS = (SourceKind.EXTENSION_LINKEDIN, SourceKind.EXTENSION_WHATSAPP)


class HitMetadata(BaseModel):
    sender: Optional[str] = None
    recipients: Optional[str] = None
    subject: Optional[str] = None
    date: Optional[str] = None
    attendees: Optional[List[str]] = None
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    event_id: Optional[str] = None
    web_link: Optional[str] = None

    class Config:
        frozen = True


class SearchHit(BaseModel):
    """One normalized record from any source. Lives for a single request."""
    id: str
    source: SourceKind
    content: str
    metadata: HitMetadata = Field(default_factory=HitMetadata)
    relevance_score: float

    class Config:
        frozen = True


class DomInstruction(BaseModel):
    """Tells the browser extension what to search for a pending request."""
    request_id: str
    source: SourceKind
    keywords: List[str] = []

    class Config:
        frozen = True
