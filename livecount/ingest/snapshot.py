"""
Baseline totals for the visible counters.

Totals are fetched once per session. A failed request keeps the previous
value for that counter instead of resetting it to zero.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import httpx

from livecount.config import settings
from livecount.exceptions import SnapshotFetchFailed
from livecount.schemas.events import Credential, SnapshotTotals
from livecount.utils.logging import get_logger
from livecount.utils.twitch_api import (
    HELIX_API_BASE,
    error_detail,
    get_client,
    helix_headers,
    json_object,
)

logger = get_logger(__name__, category="snapshot")

FOLLOWERS_URL = f"{HELIX_API_BASE}/channels/followers"
SUBSCRIPTIONS_URL = f"{HELIX_API_BASE}/subscriptions"


class SnapshotFetcher:
    def __init__(
        self,
        client_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id or settings.twitch_client_id or ""
        self.http_client = http_client

    async def fetch_totals(
        self,
        broadcaster_id: str,
        credential: Credential,
        previous: Optional[SnapshotTotals] = None,
    ) -> SnapshotTotals:
        """
        Fetch total followers and total subscriptions concurrently.

        Args:
            broadcaster_id: Channel to query
            credential: Token used for the Helix calls
            previous: Totals to fall back to per counter on failure

        Returns:
            SnapshotTotals; counters that failed keep the previous value and
            are listed in ``failed`` with their HTTP status
        """
        previous = previous or SnapshotTotals()
        failed: Dict[str, Optional[int]] = {}
        followers, subscribers = await asyncio.gather(
            self._fetch_or_keep("followers", FOLLOWERS_URL, broadcaster_id, credential, previous.followers, failed),
            self._fetch_or_keep("subscribers", SUBSCRIPTIONS_URL, broadcaster_id, credential, previous.subscribers, failed),
        )
        return SnapshotTotals(followers=followers, subscribers=subscribers, failed=failed)

    async def _fetch_or_keep(
        self,
        counter: str,
        url: str,
        broadcaster_id: str,
        credential: Credential,
        previous: Optional[int],
        failed: Dict[str, Optional[int]],
    ) -> Optional[int]:
        try:
            total = await self._fetch_total(counter, url, broadcaster_id, credential)
        except SnapshotFetchFailed as e:
            logger.error(f"{e} (keeping {previous})")
            failed[counter] = e.status_code
            return previous
        logger.info(f"Fetched {counter} total for {broadcaster_id}: {total}")
        return total

    async def _fetch_total(
        self, counter: str, url: str, broadcaster_id: str, credential: Credential
    ) -> int:
        client = self.http_client or await get_client()
        try:
            response = await client.get(
                url,
                params={"broadcaster_id": broadcaster_id},
                headers=helix_headers(self.client_id, credential.access_token),
            )
        except httpx.HTTPError as e:
            raise SnapshotFetchFailed(counter, None, str(e)) from e

        if not response.is_success:
            raise SnapshotFetchFailed(counter, response.status_code, error_detail(response))

        try:
            total = json_object(response).get("total")
        except ValueError as e:
            raise SnapshotFetchFailed(
                counter, response.status_code, f"unreadable response body: {e}"
            ) from e
        if not isinstance(total, int):
            raise SnapshotFetchFailed(counter, response.status_code, "response has no total")
        return total
