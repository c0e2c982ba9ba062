from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


class RawCitation(BaseModel):
    """A citation exactly as the synthesis call returned it."""
    source: str = ""
    content: str = ""
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        # models often cite by bare position, e.g. 2
        return str(value) if isinstance(value, (int, float)) else value


class RawAnswer(BaseModel):
    answer: str
    citations: List[RawCitation] = []
    confidence: float = Field(ge=0, le=100)
    insufficient: bool = False


class Citation(BaseModel):
    source_id: str
    source: str
    excerpt: str
    deep_link: Optional[str] = None
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    event_id: Optional[str] = None
    # Display metadata
    sender: Optional[str] = None
    subject: Optional[str] = None
    date: Optional[str] = None
    recipients: Optional[str] = None


def level_for_confidence(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    if score >= 20:
        return "low"
    return "insufficient"


class Answer(BaseModel):
    answer: str
    citations: List[Citation] = []
    confidence: int = Field(ge=0, le=100)
    insufficient_data: bool = False

    @computed_field
    @property
    def confidence_level(self) -> str:
        return level_for_confidence(self.confidence)

    @computed_field
    @property
    def source_breakdown(self) -> Dict[str, int]:
        breakdown: Dict[str, int] = {}
        for citation in self.citations:
            breakdown[citation.source] = breakdown.get(citation.source, 0) + 1
        return breakdown
