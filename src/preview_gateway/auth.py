"""Auth verifier adapters.

Token validation itself belongs to the platform's auth service; the gateway only
asks it who a token belongs to.
"""

from __future__ import annotations

import secrets
from http import HTTPStatus
from typing import TYPE_CHECKING

import httpx
import structlog

from preview_gateway.collaborators import AuthVerifier, Principal

if TYPE_CHECKING:
    from preview_gateway.config import Settings

logger = structlog.get_logger()


class HttpAuthVerifier:
    """Asks a remote endpoint to resolve a bearer token to a user."""

    def __init__(self, client: httpx.AsyncClient, verify_url: str) -> None:
        self._client = client
        self._verify_url = verify_url

    async def verify(self, token: str) -> Principal | None:
        if not token:
            return None
        try:
            response = await self._client.get(
                self._verify_url,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("Auth verification request failed", error=str(e))
            return None

        if response.status_code != HTTPStatus.OK:
            logger.debug("Token rejected by auth service", status_code=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("Auth service returned a non-JSON body")
            return None

        user_id = data.get("id")
        if user_id is None and isinstance(data.get("user"), dict):
            user_id = data["user"].get("id")
        if not user_id:
            return None
        return Principal(user_id=str(user_id))


class StaticTokenVerifier:
    """Resolves tokens from a fixed token -> user id map (development, tests)."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = dict(tokens)

    async def verify(self, token: str) -> Principal | None:
        if not token:
            return None
        for known, user_id in self._tokens.items():
            # Constant-time comparison of each candidate
            if secrets.compare_digest(token, known):
                return Principal(user_id=user_id)
        return None


def build_auth_verifier(settings: Settings, client: httpx.AsyncClient) -> AuthVerifier:
    """Pick the verifier from settings.

    Remote verification wins when configured. With neither a verify URL nor static
    tokens every token is rejected.
    """
    if settings.auth_verify_url:
        logger.info("Using remote auth verifier", url=settings.auth_verify_url)
        return HttpAuthVerifier(client, settings.auth_verify_url)

    tokens = settings.static_tokens
    if not tokens:
        logger.warning("No auth verifier configured - all preview tokens will be rejected")
    return StaticTokenVerifier(tokens)
