"""
Twitch EventSub WebSocket Client

Owns the push-channel connection for one broadcaster: connects, waits for
session_welcome, fetches baseline totals and registers topics for every new
session, turns notifications into deduplicated DomainEvents, and reconnects
after any close until stop() is called.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from livecount.config import settings
from livecount.exceptions import AuthError, ChannelClosed
from livecount.ingest.auth import CredentialManager
from livecount.ingest.counters import ChannelCounters
from livecount.ingest.decoder import decode, parse_message
from livecount.ingest.dedup import Deduplicator
from livecount.ingest.registrar import SubscriptionRegistrar
from livecount.ingest.snapshot import SnapshotFetcher
from livecount.schemas.events import (
    ClientState,
    ClientStatus,
    Credential,
    DomainEvent,
    EventSubSession,
    Health,
    RawNotification,
    RegistrationResult,
    SnapshotTotals,
)
from livecount.utils.logging import get_logger
from livecount.utils.streams import Broadcast, Subscription

logger = get_logger(__name__, category="stream_event_sub")

# Extra seconds of silence tolerated on top of the keepalive timeout
KEEPALIVE_GRACE_SECONDS = 5
# Highest backoff exponent, keeps the arithmetic small
MAX_BACKOFF_EXPONENT = 16

Connector = Callable[[str], Awaitable]


async def _default_connect(url: str):
    return await websocket_connect(url, ping_interval=20, ping_timeout=10)


class EventSubClient:
    """EventSub WebSocket client for one broadcaster's follow and subscribe events."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        *,
        credential_manager: Optional[CredentialManager] = None,
        registrar: Optional[SubscriptionRegistrar] = None,
        snapshot_fetcher: Optional[SnapshotFetcher] = None,
        deduplicator: Optional[Deduplicator] = None,
        counters: Optional[ChannelCounters] = None,
        ws_url: Optional[str] = None,
        keepalive_timeout_seconds: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        reconnect_jitter: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        connect: Optional[Connector] = None,
    ):
        """
        Initialize EventSub WebSocket client.

        Args:
            client_id: Twitch Client ID (defaults to settings.twitch_client_id)
            credential_manager: Used to refresh the token when Helix answers 401
            registrar: Topic registrar (default: whole catalog)
            snapshot_fetcher: Baseline totals fetcher
            deduplicator: Seen-key set shared across reconnects
            counters: Visible counters updated with each accepted event
            ws_url: EventSub WebSocket URL without query string
            keepalive_timeout_seconds: Requested keepalive window
            reconnect_delay: Delay before the first reconnect after a close
            max_reconnect_delay: Backoff cap
            reconnect_jitter: Random fraction of the delay added to each wait
            max_reconnect_attempts: Consecutive failures before giving up (None = never)
            connect: Coroutine factory opening the WebSocket, for tests
        """
        self.client_id = client_id or settings.twitch_client_id or ""
        self.credential_manager = credential_manager
        self.registrar = registrar or SubscriptionRegistrar(self.client_id)
        self.snapshot_fetcher = snapshot_fetcher or SnapshotFetcher(self.client_id)
        self.deduplicator = deduplicator or Deduplicator()
        self.counters = counters or ChannelCounters(
            settings.follower_goal, settings.subscriber_goal
        )

        self.ws_url = ws_url or settings.eventsub_ws_url
        self.keepalive_timeout_seconds = (
            keepalive_timeout_seconds or settings.eventsub_keepalive_timeout_seconds
        )
        self.reconnect_delay = (
            settings.eventsub_reconnect_delay if reconnect_delay is None else reconnect_delay
        )
        self.max_reconnect_delay = (
            settings.eventsub_max_reconnect_delay
            if max_reconnect_delay is None
            else max_reconnect_delay
        )
        self.reconnect_jitter = (
            settings.eventsub_reconnect_jitter if reconnect_jitter is None else reconnect_jitter
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else settings.eventsub_max_reconnect_attempts
        )
        self._connect = connect or _default_connect

        self.credential: Optional[Credential] = None
        self.broadcaster_id: Optional[str] = None
        self.state = ClientState.DISCONNECTED
        self.session: Optional[EventSubSession] = None
        self.totals = SnapshotTotals()
        self.registrations: Dict[str, RegistrationResult] = {}
        self.connect_attempts = 0

        self._ws = None
        # socket being replaced after session_reconnect, and the task still reading it
        self._previous: Optional[Tuple[Any, asyncio.Task]] = None
        self._run_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._generation = 0
        self._welcomed = False
        self._registration_pending = False
        self._reconnect_url: Optional[str] = None
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None

        self._events: Broadcast[DomainEvent] = Broadcast()
        self._statuses: Broadcast[ClientStatus] = Broadcast(replay_last=True)

    # Public surface

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def is_connected(self) -> bool:
        return self.state == ClientState.READY

    @property
    def status(self) -> ClientStatus:
        registered = sum(1 for r in self.registrations.values() if r.ok)
        return ClientStatus(
            state=self.state,
            health=self._health(registered),
            session_id=self.session.id if self.session else None,
            topics_registered=registered,
            topics_total=len(self.registrar.catalog),
            consecutive_failures=self._consecutive_failures,
            last_error=self._last_error,
        )

    def events(self) -> Subscription[DomainEvent]:
        """Accepted events in arrival order, from now until stop()."""
        return self._events.subscribe()

    subscribe = events

    def statuses(self) -> Subscription[ClientStatus]:
        """Status changes, starting with the current status."""
        if self._statuses.subscriber_count == 0 and not self._statuses.closed:
            self._statuses.publish(self.status)
        return self._statuses.subscribe()

    async def start(self, credential: Credential, broadcaster_id: Optional[str] = None) -> None:
        """Start the connect/reconnect loop. No-op if already running or stopped."""
        if self._stopped:
            logger.warning("EventSub client was stopped and cannot be restarted")
            return
        if self.is_running:
            logger.debug("EventSub client already running, ignoring start()")
            return

        self.credential = credential
        self.broadcaster_id = broadcaster_id or credential.broadcaster_id
        logger.info(f"Starting EventSub client for broadcaster {self.broadcaster_id}")
        self._run_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the socket, cancel pending reconnects and end all streams. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        tasks = [t for t in (self._ready_task, self._run_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_previous()
        self._ready_task = None
        self._run_task = None
        self._ws = None
        self.session = None

        self._set_state(ClientState.DISCONNECTED)
        self._events.close()
        self._statuses.close()
        logger.info("Disconnected from EventSub WebSocket")

    def reconnect_delay_for(self, failures: int) -> float:
        """Wait before reconnect attempt number ``failures`` (1-based)."""
        exponent = min(max(failures - 1, 0), MAX_BACKOFF_EXPONENT)
        delay = self.reconnect_delay * (2 ** exponent)
        if self.reconnect_jitter:
            delay += random.uniform(0, delay * self.reconnect_jitter)
        return min(delay, self.max_reconnect_delay)

    # Connection loop

    def _connect_url(self) -> str:
        return f"{self.ws_url}?keepalive_timeout_seconds={self.keepalive_timeout_seconds}"

    async def _run(self) -> None:
        while not self._stopped:
            migrating = self._reconnect_url is not None
            url = self._reconnect_url or self._connect_url()
            self._reconnect_url = None

            await self._connect_once(url, migrating)
            if self._stopped:
                break
            if self._welcomed:
                self._consecutive_failures = 0
            if self._reconnect_url:
                # session_reconnect: move to the new URL right away
                continue

            self._consecutive_failures += 1
            if (
                self.max_reconnect_attempts is not None
                and self._consecutive_failures > self.max_reconnect_attempts
            ):
                logger.error(
                    f"Giving up on EventSub after {self._consecutive_failures - 1} "
                    "failed reconnect attempts"
                )
                self._set_state(ClientState.FAILED)
                return

            delay = self.reconnect_delay_for(self._consecutive_failures)
            logger.info(f"Scheduling EventSub reconnect in {delay:.1f} seconds...")
            self._publish_status()
            await asyncio.sleep(delay)

    async def _connect_once(self, url: str, migrating: bool) -> None:
        self._welcomed = False
        self._set_state(ClientState.CONNECTING)
        self.connect_attempts += 1
        logger.info("Connecting to Twitch EventSub WebSocket...")
        try:
            ws = await self._connect(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Failed to connect to EventSub WebSocket: {e}")
            self._last_error = f"connect failed: {e}"
            # a failed migration loses the carried-over subscriptions too
            self.registrations = {}
            await self._close_previous()
            self._set_state(ClientState.CLOSED)
            return

        if self._stopped:
            await ws.close()
            return

        self._ws = ws
        self._set_state(ClientState.AWAITING_WELCOME)
        try:
            await self._consume(ws, migrating)
        except ConnectionClosed as e:
            closed = ChannelClosed(e.rcvd.code if e.rcvd else None, e.rcvd.reason if e.rcvd else "")
            logger.warning(f"EventSub WebSocket connection closed: {closed}")
            self._last_error = str(closed)
        except Exception as e:
            logger.error(f"Error in message handler: {e}")
            self._last_error = f"channel error: {e}"
        finally:
            self._ws = None
            await self._close_previous()
            if self._reconnect_url is not None and not self._stopped:
                # Twitch keeps delivering here until the new session is welcomed
                self._previous = (ws, asyncio.create_task(self._drain(ws)))
            else:
                await self._close_socket(ws)
            self._end_session(keep_subscriptions=self._reconnect_url is not None)

    async def _consume(self, ws, migrating: bool) -> None:
        while not self._stopped:
            timeout = self._keepalive_window()
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"No EventSub message for {timeout}s, treating connection as dead"
                )
                self._last_error = "keepalive timeout"
                return
            if not self._handle_message(raw, migrating):
                return
            if self._welcomed and self._previous is not None:
                await self._close_previous()

    async def _drain(self, ws) -> None:
        """Deliver notifications still arriving on a socket that is being replaced."""
        try:
            while not self._stopped:
                raw = await ws.recv()
                try:
                    message = parse_message(raw)
                    if message.message_type == "notification":
                        self._handle_notification(message)
                except Exception as e:
                    logger.error(f"Error handling message on previous connection: {e}")
        except ConnectionClosed:
            logger.debug("Previous EventSub connection closed")

    async def _close_previous(self) -> None:
        if self._previous is None:
            return
        ws, task = self._previous
        self._previous = None
        await self._close_socket(ws)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")

    def _keepalive_window(self) -> float:
        keepalive = self.keepalive_timeout_seconds
        if self.session is not None and self.session.keepalive_timeout_seconds:
            keepalive = self.session.keepalive_timeout_seconds
        return keepalive + KEEPALIVE_GRACE_SECONDS

    def _end_session(self, keep_subscriptions: bool) -> None:
        if self._ready_task is not None and not self._ready_task.done():
            self._ready_task.cancel()
        self._ready_task = None
        self._registration_pending = False
        self.session = None
        if not keep_subscriptions:
            self.registrations = {}
        if not self._stopped:
            self._set_state(ClientState.CLOSED)

    # Message dispatch

    def _handle_message(self, raw: Union[str, bytes], migrating: bool) -> bool:
        """Dispatch one frame. Returns False when the connection should be left."""
        try:
            message = parse_message(raw)
        except ValueError as e:
            logger.error(f"Failed to parse WebSocket message: {e}")
            return True

        message_type = message.message_type
        try:
            if message_type == "session_welcome":
                self._handle_session_welcome(message, migrating)
            elif message_type == "session_keepalive":
                pass
            elif message_type == "notification":
                self._handle_notification(message)
            elif message_type == "session_reconnect":
                return not self._handle_session_reconnect(message)
            elif message_type == "revocation":
                self._handle_revocation(message)
            else:
                logger.debug(f"Unknown message type: {message_type}")
        except Exception as e:
            logger.error(f"Error handling WebSocket message ({message_type}): {e}")
        return True

    def _handle_session_welcome(self, message: RawNotification, migrating: bool) -> None:
        session_data = message.payload.get("session") or {}
        session_id = session_data.get("id")
        if not session_id:
            logger.error("session_welcome without a session id")
            return
        if self.session is not None:
            logger.debug(f"Ignoring repeated session_welcome for {self.session.id}")
            return

        self._generation += 1
        self.session = EventSubSession(
            id=session_id,
            status=session_data.get("status") or "connected",
            keepalive_timeout_seconds=session_data.get("keepalive_timeout_seconds"),
        )
        self._welcomed = True
        logger.info(f"EventSub session established: {session_id}")
        self._registration_pending = not migrating
        self._set_state(ClientState.READY)
        self._ready_task = asyncio.create_task(
            self._on_session_ready(self._generation, session_id, register=not migrating)
        )

    def _handle_notification(self, message: RawNotification) -> None:
        event = decode(message)
        if event is None:
            topic = (message.payload.get("subscription") or {}).get("type")
            logger.debug(f"Dropping notification for unhandled topic: {topic}")
            return
        if not self.deduplicator.accept(event.dedup_key):
            logger.info(f"Suppressed duplicate {event.kind.value} event from {event.user_id}")
            return
        value = self.counters.apply(event)
        logger.info(f"New {event.kind.value}: {event.user_name or event.user_id} (now {value})")
        self._events.publish(event)

    def _handle_session_reconnect(self, message: RawNotification) -> bool:
        session_data = message.payload.get("session") or {}
        reconnect_url = session_data.get("reconnect_url")
        if not reconnect_url:
            logger.warning("session_reconnect without reconnect_url, ignoring")
            return False
        logger.info("EventSub session reconnect requested")
        self._reconnect_url = reconnect_url
        return True

    def _handle_revocation(self, message: RawNotification) -> None:
        subscription = message.payload.get("subscription") or {}
        topic = subscription.get("type")
        reason = subscription.get("status")
        logger.warning(f"EventSub subscription revoked: {topic} ({reason})")
        if topic in self.registrations:
            self.registrations[topic] = RegistrationResult(
                type=topic, ok=False, error=f"revoked: {reason}"
            )
        self._last_error = f"{topic} revoked: {reason}"
        self._publish_status()

    # Session setup

    def _is_current(self, generation: int) -> bool:
        return (
            not self._stopped
            and self._generation == generation
            and self.session is not None
        )

    async def _on_session_ready(self, generation: int, session_id: str, register: bool) -> None:
        try:
            await self._prepare_session(generation, session_id, register)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error preparing EventSub session {session_id}: {e}")
            if self._is_current(generation):
                self._last_error = f"session setup failed: {e}"
                self._registration_pending = False
                self._publish_status()

    async def _prepare_session(self, generation: int, session_id: str, register: bool) -> None:
        """Fetch baseline totals and register topics, then apply both if still current."""
        credential = self.credential
        broadcaster_id = self.broadcaster_id
        if credential is None or broadcaster_id is None:
            logger.error(f"Session {session_id} welcomed before a credential was set")
            self._last_error = "no credential for session setup"
            self._registration_pending = False
            self._publish_status()
            return

        results: Optional[List[RegistrationResult]] = None
        if register:
            totals, results = await asyncio.gather(
                self.snapshot_fetcher.fetch_totals(broadcaster_id, credential, self.totals),
                self.registrar.register(session_id, broadcaster_id, credential),
            )
        else:
            totals = await self.snapshot_fetcher.fetch_totals(
                broadcaster_id, credential, self.totals
            )
        if not self._is_current(generation):
            return

        if self._unauthorized(totals, results):
            credential = await self._refresh_credential()
            if credential is not None and self._is_current(generation):
                if totals.failed:
                    totals = await self.snapshot_fetcher.fetch_totals(
                        broadcaster_id, credential, totals
                    )
                failed_topics = [r.type for r in results or [] if not r.ok]
                if failed_topics:
                    retried = await self.registrar.register(
                        session_id, broadcaster_id, credential, topics=failed_topics
                    )
                    retried_by_type = {r.type: r for r in retried}
                    results = [retried_by_type.get(r.type, r) for r in results or []]
            if not self._is_current(generation):
                return

        self.totals = totals
        self.counters.set_baseline(totals)
        if results is not None:
            self.registrations = {r.type: r for r in results}
            failures = [r for r in results if not r.ok]
            if failures:
                self._last_error = "; ".join(r.error or r.type for r in failures)
        self._registration_pending = False
        self._publish_status()

    @staticmethod
    def _unauthorized(
        totals: SnapshotTotals, results: Optional[List[RegistrationResult]]
    ) -> bool:
        if 401 in totals.failed.values():
            return True
        return any(r.status_code == 401 for r in results or [])

    async def _refresh_credential(self) -> Optional[Credential]:
        if self.credential_manager is None or self.credential is None:
            return None
        if not self.credential.refresh_token:
            logger.warning("Access token rejected and no refresh token is available")
            return None
        try:
            credential = await self.credential_manager.refresh_access_token(
                self.credential.refresh_token
            )
        except AuthError as e:
            logger.error(f"Token refresh after 401 failed: {e}")
            self._last_error = f"token refresh failed: {e}"
            return None
        if self._stopped:
            return None
        self.credential = credential
        return credential

    # Status

    def _health(self, registered: int) -> Health:
        if self.state == ClientState.FAILED:
            return Health.FAILED
        if self._stopped or (self.state == ClientState.DISCONNECTED and not self.is_running):
            return Health.STOPPED
        if self.state != ClientState.READY or self._registration_pending:
            return Health.RECONNECTING
        if registered < len(self.registrar.catalog):
            return Health.DEGRADED
        return Health.CONNECTED

    def _set_state(self, state: ClientState) -> None:
        if state == self.state:
            return
        logger.debug(f"EventSub state {self.state.value} -> {state.value}")
        self.state = state
        self._publish_status()

    def _publish_status(self) -> None:
        self._statuses.publish(self.status)
