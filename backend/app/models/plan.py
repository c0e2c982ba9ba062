from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.models.search import SourceKind


MAIL_RESULTS_CEILING = 50


class MailQuery(BaseModel):
    # None lets the planner fall back to the question text
    query: Optional[str] = None
    max_results: int = Field(10, alias="maxResults")

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("max_results")
    @classmethod
    def _clamp_max_results(cls, value: int) -> int:
        return max(1, min(value, MAIL_RESULTS_CEILING))


class CalendarQuery(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None

    class Config:
        frozen = True


class ArchiveQuery(BaseModel):
    keywords: List[str] = []
    sender: Optional[str] = None
    days: Optional[int] = None
    limit: int = 10

    class Config:
        frozen = True


class ExtensionQuery(BaseModel):
    sources: List[SourceKind] = []
    keywords: List[str] = []

    class Config:
        frozen = True

    @field_validator("sources", mode="before")
    @classmethod
    def _parse_platform_names(cls, value):
        if not isinstance(value, list):
            return value
        kinds = []
        for v in value:
            if not isinstance(v, str):
                kinds.append(v)
                continue
            try:
                kinds.append(SourceKind.parse(v))
            except ValueError:
                # unknown platform names are dropped, not fatal
                continue
        return kinds


_PARAMS_BY_FLAG = {
    "needs_mail": "mail",
    "needs_calendar": "calendar",
    "needs_message_archive": "message_archive",
    "needs_extension_source": "extension",
}


class QueryPlan(BaseModel):
    """
    Which sources to search and how. Built once per request by the planner.
    A false needs-flag always comes with absent parameters for that source.
    """
    needs_mail: bool = Field(False, alias="needsMail")
    needs_calendar: bool = Field(False, alias="needsCalendar")
    needs_message_archive: bool = Field(False, alias="needsMessageArchive")
    needs_extension_source: bool = Field(False, alias="needsExtensionSource")

    mail: Optional[MailQuery] = None
    calendar: Optional[CalendarQuery] = None
    message_archive: Optional[ArchiveQuery] = Field(None, alias="messageArchive")
    extension: Optional[ExtensionQuery] = None

    class Config:
        populate_by_name = True
        frozen = True

    @model_validator(mode="after")
    def _drop_params_for_unneeded_sources(self):
        for flag, field in _PARAMS_BY_FLAG.items():
            if not getattr(self, flag) and getattr(self, field) is not None:
                # frozen: assign through object.__setattr__
                object.__setattr__(self, field, None)
        return self

    def requested_sources(self) -> List[SourceKind]:
        kinds = []
        if self.needs_mail:
            kinds.append(SourceKind.MAIL)
        if self.needs_calendar:
            kinds.append(SourceKind.CALENDAR)
        if self.needs_message_archive:
            kinds.append(SourceKind.MESSAGE_ARCHIVE)
        if self.needs_extension_source and self.extension:
            kinds.extend(k for k in self.extension.sources if k.is_extension)
        return kinds

    def query_for(self, kind: SourceKind):
        if kind == SourceKind.MAIL:
            return self.mail
        if kind == SourceKind.CALENDAR:
            return self.calendar
        if kind == SourceKind.MESSAGE_ARCHIVE:
            return self.message_archive
        return self.extension
