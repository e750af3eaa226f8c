"""
HTTP client for the identity provider.

Resolves a bearer access token to the user it was issued for:
- GET /auth/v1/user - Current user for the token
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)


class IdentityUnavailable(Exception):
    """Identity provider could not be reached."""


@dataclass
class IdentityUser:
    """User resolved from an access token."""

    id: str
    email: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "IdentityUser":
        """Create from API response dict."""
        return cls(
            id=data.get("id", ""),
            email=data.get("email"),
        )


class IdentityClient:
    """HTTP client for the identity provider's user endpoint."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = base_url or settings.identity_url
        self.api_key = settings.identity_api_key
        self.timeout = timeout or settings.identity_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_user(self, token: str) -> Optional[IdentityUser]:
        """Resolve a token to its user.

        Args:
            token: Bearer access token

        Returns:
            The user, or None if the token is invalid or expired

        Raises:
            IdentityUnavailable: If the provider could not be reached
        """
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            response = await client.get("/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Identity provider request failed: {e}")
            raise IdentityUnavailable(str(e)) from e

        if response.status_code in (401, 403):
            return None
        if response.status_code >= 500:
            raise IdentityUnavailable(f"Identity provider returned {response.status_code}")
        if response.status_code != 200:
            logger.warning(f"Unexpected identity response: {response.status_code}")
            return None

        user = IdentityUser.from_dict(response.json())
        return user if user.id else None


# Singleton
_client: Optional[IdentityClient] = None


def get_identity_client() -> IdentityClient:
    """Get singleton IdentityClient."""
    global _client
    if _client is None:
        _client = IdentityClient()
    return _client


async def close_identity_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
