"""
Bearer credentials for the sources that need one.
Mail and calendar share a single Google OAuth connection per user.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from backend.app.core.config import settings
from backend.app.core.errors import ConnectionNotLinkedError, CredentialRefreshError
from backend.app.models.search import SourceKind

logger = structlog.get_logger(__name__)

GOOGLE_PROVIDER = "google"
PROVIDER_BY_KIND = {
    SourceKind.MAIL: GOOGLE_PROVIDER,
    SourceKind.CALENDAR: GOOGLE_PROVIDER,
}


class Connection(BaseModel):
    user_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    email: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        if self.token_expires_at is None:
            return False
        expires = self.token_expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires <= datetime.now(timezone.utc)


class ConnectionRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str, provider: str) -> Optional[Connection]:
        ...

    @abstractmethod
    async def save_tokens(self, user_id: str, provider: str, access_token: str, expires_at: Optional[datetime]) -> None:
        ...


class ArangoConnectionRepository(ConnectionRepository):
    COLLECTION = "Connections"

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _key(user_id: str, provider: str) -> str:
        return f"{user_id}:{provider}"

    async def get(self, user_id, provider):
        doc = self.db.collection(self.COLLECTION).get(self._key(user_id, provider))
        if not doc:
            return None
        return Connection(**{k: v for k, v in doc.items() if not k.startswith("_")})

    async def save_tokens(self, user_id, provider, access_token, expires_at):
        self.db.collection(self.COLLECTION).update({
            "_key": self._key(user_id, provider),
            "access_token": access_token,
            "token_expires_at": expires_at.isoformat() if expires_at else None,
        })


class CredentialProvider(ABC):
    @abstractmethod
    async def get_credential(self, user_id: str, kind: SourceKind) -> Optional[str]:
        """None for sources that need no credential. Raises ConnectionNotLinkedError."""

    @abstractmethod
    async def refresh_credential(self, user_id: str, kind: SourceKind) -> str:
        """Raises CredentialRefreshError."""


class GoogleCredentialProvider(CredentialProvider):
    def __init__(self, connections: ConnectionRepository, client: httpx.AsyncClient):
        self.connections = connections
        self.client = client

    async def _connection(self, user_id: str, kind: SourceKind) -> Connection:
        provider = PROVIDER_BY_KIND[kind]
        connection = await self.connections.get(user_id, provider)
        if connection is None:
            raise ConnectionNotLinkedError(
                "Google account not connected. Please connect your Google account first.",
                details={"source": kind.value},
            )
        return connection

    async def get_credential(self, user_id, kind):
        if kind not in PROVIDER_BY_KIND:
            return None
        connection = await self._connection(user_id, kind)
        if connection.is_expired and connection.refresh_token:
            logger.info("credential_expired_refreshing", source=kind.value)
            return await self._refresh(connection)
        return connection.access_token

    async def refresh_credential(self, user_id, kind):
        if kind not in PROVIDER_BY_KIND:
            raise CredentialRefreshError(f"{kind.value} does not use a refreshable credential")
        connection = await self._connection(user_id, kind)
        return await self._refresh(connection)

    async def _refresh(self, connection: Connection) -> str:
        if not connection.refresh_token:
            raise CredentialRefreshError("No refresh token stored. Please reconnect your Google account.")
        try:
            response = await self.client.post(
                settings.GOOGLE_TOKEN_URL,
                data={
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": connection.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=settings.CONNECTOR_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.warning("credential_refresh_failed", provider=connection.provider, error=str(e))
            raise CredentialRefreshError("Failed to refresh access token. Please reconnect your Google account.")

        access_token = payload.get("access_token")
        if not access_token:
            raise CredentialRefreshError("Token endpoint returned no access token.")
        expires_in = payload.get("expires_in") or 3600
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        await self.connections.save_tokens(connection.user_id, connection.provider, access_token, expires_at)
        logger.info("credential_refreshed", provider=connection.provider)
        return access_token
