"""
Source connector contract and the single place where upstream errors are classified.
"""
import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from backend.app.models.search import SearchHit, SourceKind


class ConnectorError(Exception):
    def __init__(self, message: str, source: Optional[SourceKind] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class UpstreamUnauthorized(ConnectorError):
    """The source rejected the credential."""


class UpstreamTransient(ConnectorError):
    """Network trouble, throttling or a 5xx from the source."""


class UpstreamFatal(ConnectorError):
    """Anything else: retrying will not help."""


@dataclass(frozen=True)
class ErrorClassification:
    is_auth_expired: bool = False
    is_transient: bool = False
    is_fatal: bool = False


AUTH_EXPIRED = ErrorClassification(is_auth_expired=True)
TRANSIENT = ErrorClassification(is_transient=True)
FATAL = ErrorClassification(is_fatal=True)

_MESSAGE_401 = re.compile(r"\b401\b")


def _status_of(err: Any) -> Optional[int]:
    """Digs an HTTP-ish status out of the error shapes different client libraries produce."""
    for attr in ("status_code", "status", "code", "http_code"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(err, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if isinstance(value, int):
                return value
        data = getattr(response, "data", None)
        if isinstance(data, dict):
            nested = (data.get("error") or {}) if isinstance(data.get("error"), dict) else {}
            if isinstance(nested.get("code"), int):
                return nested["code"]
    return None


def classify_error(err: BaseException) -> ErrorClassification:
    if isinstance(err, UpstreamUnauthorized):
        return AUTH_EXPIRED
    if isinstance(err, UpstreamTransient):
        return TRANSIENT
    if isinstance(err, UpstreamFatal):
        return FATAL

    status = _status_of(err)
    if status == 401:
        return AUTH_EXPIRED
    if status is not None and (status == 429 or 500 <= status < 600):
        return TRANSIENT

    if isinstance(err, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return TRANSIENT
    if status is None and _MESSAGE_401.search(str(err)):
        return AUTH_EXPIRED
    return FATAL


class SourceConnector(ABC):
    """
    One data source. Synchronous connectors return native records from ``search``;
    deferred connectors are served by the extension bridge and only describe the work.
    """
    kind: SourceKind
    # Connectors sharing a key share one credential (and one refresh) per request.
    credential_key: Optional[str] = None
    deferred: bool = False

    @abstractmethod
    async def search(self, credential: Optional[str], query: Any, user_id: str) -> List[Any]:
        ...

    @abstractmethod
    def normalize(self, records: List[Any]) -> List[SearchHit]:
        ...


def raise_for_upstream(response: httpx.Response, source: SourceKind) -> None:
    """Turns a non-2xx response from a source API into the matching typed error."""
    if response.is_success:
        return
    status = response.status_code
    message = f"{source.value} returned {status}"
    if status == 401:
        raise UpstreamUnauthorized(message, source=source, status_code=status)
    if status == 429 or status >= 500:
        raise UpstreamTransient(message, source=source, status_code=status)
    raise UpstreamFatal(message, source=source, status_code=status)
