"""
EventSub subscription registration

Registers every catalog topic against a WebSocket session. Topics are
independent: one failing does not stop the others, and the caller gets a
result per topic.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import httpx

from livecount.config import settings
from livecount.exceptions import SubscriptionRegistrationFailed
from livecount.ingest.decoder import FOLLOW_TOPIC, SUBSCRIBE_TOPIC
from livecount.schemas.events import Credential, RegistrationResult, SubscriptionSpec
from livecount.utils.logging import get_logger
from livecount.utils.twitch_api import (
    HELIX_API_BASE,
    error_detail,
    get_client,
    helix_headers,
    json_object,
)

logger = get_logger(__name__, category="stream_event_sub")

SUBSCRIPTIONS_URL = f"{HELIX_API_BASE}/eventsub/subscriptions"

SUBSCRIPTION_CATALOG = (
    SubscriptionSpec(
        type=SUBSCRIBE_TOPIC,
        version="1",
        condition_fields=["broadcaster_user_id"],
    ),
    # channel.follow v2 requires a moderator; the broadcaster moderates their own channel
    SubscriptionSpec(
        type=FOLLOW_TOPIC,
        version="2",
        condition_fields=["broadcaster_user_id", "moderator_user_id"],
    ),
)


class SubscriptionRegistrar:
    """Issues one registration request per catalog topic."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        catalog: Sequence[SubscriptionSpec] = SUBSCRIPTION_CATALOG,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id or settings.twitch_client_id or ""
        self.catalog = tuple(catalog)
        self.http_client = http_client

    async def register(
        self,
        session_id: str,
        broadcaster_id: str,
        credential: Credential,
        topics: Optional[Sequence[str]] = None,
    ) -> List[RegistrationResult]:
        """
        Register topics against the session.

        Args:
            session_id: Session ID from session_welcome
            broadcaster_id: Channel whose events are monitored
            credential: Token used for the Helix calls
            topics: Restrict to these topic names (default: whole catalog)

        Returns:
            One RegistrationResult per attempted topic, in catalog order
        """
        results: List[RegistrationResult] = []
        for spec in self.catalog:
            if topics is not None and spec.type not in topics:
                continue
            try:
                subscription_id = await self._register_one(
                    spec, session_id, broadcaster_id, credential
                )
            except SubscriptionRegistrationFailed as e:
                logger.error(str(e))
                results.append(
                    RegistrationResult(
                        type=spec.type, ok=False, status_code=e.status_code, error=str(e)
                    )
                )
                continue
            logger.info(f"Created EventSub subscription: {spec.type} ({subscription_id})")
            results.append(
                RegistrationResult(
                    type=spec.type, ok=True, status_code=202, subscription_id=subscription_id
                )
            )

        registered = sum(1 for r in results if r.ok)
        if registered < len(results):
            logger.warning(
                f"Registered {registered} of {len(results)} topics for session {session_id}"
            )
        return results

    async def _register_one(
        self,
        spec: SubscriptionSpec,
        session_id: str,
        broadcaster_id: str,
        credential: Credential,
    ) -> Optional[str]:
        payload = {
            "type": spec.type,
            "version": spec.version,
            "condition": spec.condition(broadcaster_id),
            "transport": {"method": "websocket", "session_id": session_id},
        }
        client = self.http_client or await get_client()
        try:
            response = await client.post(
                SUBSCRIPTIONS_URL,
                json=payload,
                headers=helix_headers(self.client_id, credential.access_token),
            )
        except httpx.HTTPError as e:
            raise SubscriptionRegistrationFailed(spec.type, None, str(e)) from e

        if response.status_code != 202:
            if response.status_code == 403:
                logger.warning(
                    f"Subscription {spec.type} requires a scope the token does not have"
                )
            raise SubscriptionRegistrationFailed(
                spec.type, response.status_code, error_detail(response)
            )

        try:
            data = json_object(response).get("data") or [{}]
            created = data[0] if isinstance(data, list) and isinstance(data[0], dict) else {}
        except ValueError as e:
            raise SubscriptionRegistrationFailed(
                spec.type, response.status_code, f"unreadable response body: {e}"
            ) from e
        return created.get("id")
