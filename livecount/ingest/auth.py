"""
Twitch OAuth credential management

Obtains a user access token through the authorization-code flow, refreshes it
with a refresh token, and validates tokens to learn the broadcaster id.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx

from livecount.config import settings
from livecount.exceptions import AuthExchangeError, RefreshFailed, TokenInvalid
from livecount.schemas.events import Credential, TokenInfo
from livecount.utils.logging import get_logger
from livecount.utils.twitch_api import ID_API_BASE, error_detail, get_client, json_object

logger = get_logger(__name__, category="auth")

AUTHORIZE_URL = f"{ID_API_BASE}/authorize"
TOKEN_URL = f"{ID_API_BASE}/token"
VALIDATE_URL = f"{ID_API_BASE}/validate"


class CredentialManager:
    """Owns the current Credential and replaces it wholesale on refresh."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the credential manager.

        Args:
            client_id: Twitch application Client ID (defaults to settings.twitch_client_id)
            client_secret: Twitch application secret (defaults to settings.twitch_client_secret)
            redirect_uri: Registered OAuth redirect URI (defaults to settings.twitch_redirect_uri)
            http_client: Optional client, the shared one is used otherwise
        """
        self.client_id = client_id or settings.twitch_client_id
        self.client_secret = client_secret or settings.twitch_client_secret
        self.redirect_uri = redirect_uri or settings.twitch_redirect_uri
        self.http_client = http_client
        self.credential: Optional[Credential] = None
        self._lock = asyncio.Lock()

        if not self.client_id:
            logger.warning("TWITCH_CLIENT_ID not set - check environment variable")

    async def _client(self) -> httpx.AsyncClient:
        return self.http_client or await get_client()

    def build_authorize_url(
        self, scopes: Optional[Sequence[str]] = None, state: Optional[str] = None
    ) -> str:
        scopes = settings.twitch_scopes if scopes is None else scopes
        params: Dict[str, str] = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri or "",
            "response_type": "code",
            "scope": " ".join(scopes),
        }
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def begin_authorization(
        self,
        scopes: Optional[Sequence[str]] = None,
        code: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Optional[str]:
        """
        Return the URL the user agent must be sent to, or None when there is
        already an authorization code (or a credential) to work with.
        """
        if code or self.credential is not None:
            return None
        url = self.build_authorize_url(scopes, state)
        logger.info("Redirecting user agent to Twitch authorization")
        return url

    async def complete_authorization(self, code: str) -> Credential:
        """
        Exchange a one-time authorization code for a Credential.

        The exchange happens at most once per manager: if a credential is
        already held, it is returned without touching the network.

        Raises:
            AuthExchangeError: token endpoint returned non-2xx or no access_token
            TokenInvalid: validation rejected the new access token
        """
        async with self._lock:
            if self.credential is not None:
                logger.debug("Credential already present, skipping code exchange")
                return self.credential

            body = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri or "",
                },
                AuthExchangeError,
            )
            info = await self.validate(body["access_token"])
            self.credential = self._build_credential(body, info)
            logger.info(f"Authorization complete for broadcaster {info.user_id}")
            return self.credential

    async def refresh_access_token(self, refresh_token: Optional[str] = None) -> Credential:
        """
        Exchange a refresh token for a new access token.

        Raises:
            RefreshFailed: token endpoint returned non-2xx or no access_token
            TokenInvalid: validation rejected the new access token
        """
        async with self._lock:
            if refresh_token is None and self.credential is not None:
                refresh_token = self.credential.refresh_token
            if not refresh_token:
                raise RefreshFailed("No refresh token available")

            body = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
                RefreshFailed,
            )
            info = await self.validate(body["access_token"])
            # Twitch may or may not rotate the refresh token
            if not body.get("refresh_token"):
                body["refresh_token"] = refresh_token
            self.credential = self._build_credential(body, info)
            logger.info(f"Access token refreshed for broadcaster {info.user_id}")
            return self.credential

    async def validate(self, access_token: str) -> TokenInfo:
        """Validate a token against the identity endpoint."""
        client = await self._client()
        try:
            response = await client.get(
                VALIDATE_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Token validation request failed: {e}")
            raise TokenInvalid(f"Token validation request failed: {e}") from e

        if response.status_code != 200:
            detail = error_detail(response)
            logger.error(f"Token validation rejected: {response.status_code} - {detail}")
            raise TokenInvalid(
                f"Token is invalid or expired: {detail}", status_code=response.status_code
            )

        try:
            info = TokenInfo.model_validate(json_object(response))
        except ValueError as e:
            logger.error(f"Token validation returned an unreadable body: {e}")
            raise TokenInvalid(
                "Token validation returned an unreadable body", status_code=response.status_code
            ) from e
        if self.client_id and info.client_id != self.client_id:
            logger.error(
                f"Token was issued to client {info.client_id}, expected {self.client_id}"
            )
            raise TokenInvalid("Token was issued to a different client")
        return info

    async def _token_request(self, params: Dict[str, str], error: type) -> dict:
        client = await self._client()
        data = {
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            **params,
        }
        grant = params["grant_type"]
        try:
            response = await client.post(TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            logger.error(f"Token request ({grant}) failed: {e}")
            raise error(f"Token request failed: {e}") from e

        if not response.is_success:
            detail = error_detail(response)
            logger.error(f"Token request ({grant}) rejected: {response.status_code} - {detail}")
            raise error(f"Token request rejected: {detail}", status_code=response.status_code)

        try:
            body = json_object(response)
        except ValueError as e:
            logger.error(f"Token response ({grant}) is not a JSON object: {e}")
            raise error("Token response is unreadable", status_code=response.status_code) from e
        if not body.get("access_token"):
            logger.error(f"Token response ({grant}) has no access_token")
            raise error("Token response has no access_token", status_code=response.status_code)
        return body

    @staticmethod
    def _build_credential(body: dict, info: TokenInfo) -> Credential:
        scopes: List[str] = body.get("scope") or info.scopes
        return Credential(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            broadcaster_id=info.user_id,
            login=info.login,
            scopes=scopes,
            expires_in=body.get("expires_in", info.expires_in),
        )
