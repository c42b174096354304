"""
Shared Twitch API utilities
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
from livecount.utils.logging import get_logger

logger = get_logger(__name__, category="system")

ID_API_BASE = "https://id.twitch.tv/oauth2"
HELIX_API_BASE = "https://api.twitch.tv/helix"

_client: Optional[httpx.AsyncClient] = None
_client_lock = asyncio.Lock()


async def get_client() -> httpx.AsyncClient:
    """Return the process-wide HTTP client, creating it on first use."""
    global _client
    if _client is None:
        async with _client_lock:
            if _client is None:
                timeout = httpx.Timeout(30.0, connect=10.0)
                _client = httpx.AsyncClient(timeout=timeout)
    return _client


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def helix_headers(client_id: str, access_token: str) -> Dict[str, str]:
    """Headers required by every authenticated Helix call."""
    # Tokens copied from chat tooling often carry an 'oauth:' prefix
    if access_token.startswith("oauth:"):
        access_token = access_token[6:]
    return {
        "Client-ID": client_id,
        "Authorization": f"Bearer {access_token}",
    }


def json_object(response: httpx.Response) -> Dict[str, Any]:
    """Decode a success body. Raises ValueError unless it is a JSON object."""
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def error_detail(response: httpx.Response, limit: int = 200) -> str:
    """Short, log-safe description of an error response body."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:limit]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:limit]
    return str(data)[:limit]
