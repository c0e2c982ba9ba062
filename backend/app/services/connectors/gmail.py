import asyncio
import re
from datetime import date, datetime, timezone
from typing import List, Optional

import httpx
import structlog

from backend.app.core.config import settings
from backend.app.models.plan import MailQuery
from backend.app.models.records import MailMessage
from backend.app.models.search import SearchHit, SourceKind
from backend.app.services.connectors.base import SourceConnector, UpstreamUnauthorized, raise_for_upstream
from backend.app.services.normalizer import normalize_mail

logger = structlog.get_logger(__name__)

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"
METADATA_HEADERS = ["From", "To", "Subject", "Date"]


_BOUND = re.compile(r"\b(newer_than|after):(\S+)", re.IGNORECASE)
_RELATIVE = re.compile(r"^(\d+)([dmy])$", re.IGNORECASE)
# upper bounds so a month or year never reads shorter than it can be
_UNIT_DAYS = {"d": 1, "m": 31, "y": 366}


def _bound_days(operator: str, value: str, today: date) -> Optional[int]:
    """How many days back a ``newer_than:``/``after:`` bound reaches, or None when unreadable."""
    if operator.lower() == "newer_than":
        match = _RELATIVE.match(value)
        if not match:
            return None
        return int(match.group(1)) * _UNIT_DAYS[match.group(2).lower()]
    if value.isdigit():
        start = datetime.fromtimestamp(int(value), tz=timezone.utc).date()
    else:
        try:
            start = datetime.strptime(value.replace("-", "/"), "%Y/%m/%d").date()
        except ValueError:
            return None
    return (today - start).days


def ensure_recency_floor(query: str, days: Optional[int] = None, today: Optional[date] = None) -> str:
    """
    Mail search never reaches further back than the configured window. A query
    keeps its own bound only when that bound is inside the window; wider or
    unreadable bounds are replaced by ``newer_than:{days}d``.
    """
    days = days or settings.MAIL_RECENCY_DAYS
    today = today or datetime.now(timezone.utc).date()
    query = (query or "").strip()
    reach = [_bound_days(op, value, today) for op, value in _BOUND.findall(query)]
    if any(r is not None and r <= days for r in reach):
        return query
    stripped = " ".join(_BOUND.sub("", query).split())
    return f"{stripped} newer_than:{days}d".strip()


class GmailConnector(SourceConnector):
    kind = SourceKind.MAIL
    credential_key = "google"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def search(self, credential: Optional[str], query: MailQuery, user_id: str) -> List[MailMessage]:
        if not credential:
            raise UpstreamUnauthorized("no mail credential", source=self.kind)
        headers = {"Authorization": f"Bearer {credential}"}
        params = {
            "q": ensure_recency_floor(query.query),
            "maxResults": min(query.max_results, settings.MAIL_MAX_RESULTS),
        }

        response = await self.client.get(
            GMAIL_API_URL, params=params, headers=headers, timeout=settings.CONNECTOR_TIMEOUT_SECONDS
        )
        raise_for_upstream(response, self.kind)
        refs = response.json().get("messages") or []
        if not refs:
            return []

        details = await asyncio.gather(*[self._fetch_metadata(ref, headers) for ref in refs if ref.get("id")])
        logger.debug("mail_search_done", user_id=user_id, count=len(details))
        return list(details)

    async def _fetch_metadata(self, ref: dict, headers: dict) -> MailMessage:
        response = await self.client.get(
            f"{GMAIL_API_URL}/{ref['id']}",
            params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
            headers=headers,
            timeout=settings.CONNECTOR_TIMEOUT_SECONDS,
        )
        raise_for_upstream(response, self.kind)
        data = response.json()
        by_name = {
            (h.get("name") or "").lower(): h.get("value") or ""
            for h in (data.get("payload") or {}).get("headers") or []
        }
        return MailMessage(
            id=ref["id"],
            thread_id=ref.get("threadId") or data.get("threadId") or "",
            snippet=data.get("snippet") or "",
            sender=by_name.get("from", ""),
            to=by_name.get("to", ""),
            subject=by_name.get("subject", ""),
            date=by_name.get("date", ""),
        )

    def normalize(self, records: List[MailMessage]) -> List[SearchHit]:
        return normalize_mail(records)
