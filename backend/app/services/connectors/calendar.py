from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
import structlog

from backend.app.core.config import settings
from backend.app.models.plan import CalendarQuery
from backend.app.models.records import CalendarEvent
from backend.app.models.search import SearchHit, SourceKind
from backend.app.services.connectors.base import SourceConnector, UpstreamUnauthorized, raise_for_upstream
from backend.app.services.normalizer import normalize_calendar

logger = structlog.get_logger(__name__)

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


def _parse_bound(value: Optional[str], default: datetime) -> datetime:
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("calendar_bad_date", value=value)
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_window(query: Optional[CalendarQuery], now: Optional[datetime] = None):
    """Planner dates when given, otherwise a week either side of now."""
    now = now or datetime.now(timezone.utc)
    window = timedelta(days=settings.CALENDAR_DEFAULT_WINDOW_DAYS)
    start = _parse_bound(query.start if query else None, now - window)
    end = _parse_bound(query.end if query else None, now + window)
    if end <= start:
        # a bare date for both bounds means "that whole day"
        end = start + timedelta(days=1)
    return start, end


class GoogleCalendarConnector(SourceConnector):
    kind = SourceKind.CALENDAR
    credential_key = "google"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def search(self, credential: Optional[str], query: Optional[CalendarQuery], user_id: str) -> List[CalendarEvent]:
        if not credential:
            raise UpstreamUnauthorized("no calendar credential", source=self.kind)
        start, end = resolve_window(query)
        response = await self.client.get(
            CALENDAR_EVENTS_URL,
            params={
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "maxResults": settings.CALENDAR_MAX_RESULTS,
                "singleEvents": "true",
                "orderBy": "startTime",
            },
            headers={"Authorization": f"Bearer {credential}"},
            timeout=settings.CONNECTOR_TIMEOUT_SECONDS,
        )
        raise_for_upstream(response, self.kind)

        events = []
        for item in response.json().get("items") or []:
            start_info = item.get("start") or {}
            end_info = item.get("end") or {}
            events.append(CalendarEvent(
                id=item.get("id") or "",
                title=item.get("summary") or "No title",
                start=start_info.get("dateTime") or start_info.get("date") or "",
                end=end_info.get("dateTime") or end_info.get("date") or "",
                attendees=[a["email"] for a in item.get("attendees") or [] if a.get("email")],
                description=item.get("description"),
                html_link=item.get("htmlLink"),
            ))
        logger.debug("calendar_search_done", user_id=user_id, count=len(events))
        return events

    def normalize(self, records: List[CalendarEvent]) -> List[SearchHit]:
        return normalize_calendar(records)
