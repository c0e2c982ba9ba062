"""
Bearer principal verification. Sessions are issued elsewhere (Supabase auth);
this service only checks a token and learns whose it is.
"""
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.core.config import settings
from backend.app.core.errors import AuthError

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


class PrincipalVerifier(ABC):
    @abstractmethod
    async def verify(self, token: str) -> str:
        """Returns the user id. Raises AuthError."""


class SupabaseAuthVerifier(PrincipalVerifier):
    def __init__(self, client: httpx.AsyncClient, base_url: str = settings.SUPABASE_URL, api_key: str = settings.SUPABASE_PUBLISHABLE_KEY):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def verify(self, token):
        try:
            response = await self.client.get(
                f"{self.base_url}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": self.api_key},
                timeout=settings.CONNECTOR_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.error("principal_verification_unreachable", error=str(e))
            raise AuthError("Unable to verify session")
        if response.status_code != 200:
            raise AuthError("Invalid or expired session")
        user_id = (response.json() or {}).get("id")
        if not user_id:
            raise AuthError("Invalid or expired session")
        return user_id


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> str:
    """Resolves the caller's user id from the Authorization header."""
    if not credentials or not credentials.credentials:
        raise AuthError("Missing authentication token")
    verifier: PrincipalVerifier = request.app.state.verifier
    return await verifier.verify(credentials.credentials)
