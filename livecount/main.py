"""
livecount - FastAPI Application

This service:
- Sends the broadcaster through Twitch OAuth and receives the callback
- Runs the EventSub WebSocket client for the authorized channel
- Serves the live counters, client health and an event stream to the overlay

Run with:
    uvicorn livecount.main:app --port 8000
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, StreamingResponse

from livecount import __version__
from livecount.config import settings
from livecount.exceptions import AuthError
from livecount.ingest.auth import CredentialManager
from livecount.ingest.twitch import EventSubClient
from livecount.schemas.events import Credential
from livecount.utils.logging import get_logger
from livecount.utils.twitch_api import close_client

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = get_logger(__name__, category="system")
auth_logger = get_logger(f"{__name__}.auth", category="auth")
stream_event_logger = get_logger(f"{__name__}.eventsub", category="stream_event_sub")

# Overlay polls /counts and /health often
access_logger = logging.getLogger("uvicorn.access")


def filter_access_log(record):
    """Filter out overlay polling logs."""
    message = record.getMessage()
    if message.find("/counts") != -1 or message.find("/health") != -1:
        return False
    return True


access_logger.addFilter(filter_access_log)

app = FastAPI(
    title="livecount",
    description="Live follower and subscriber counts from Twitch EventSub",
    version=__version__,
)

# The overlay is served from another origin (OBS browser source)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)

credential_manager = CredentialManager()
eventsub_client: Optional[EventSubClient] = None


async def start_eventsub(credential: Credential) -> EventSubClient:
    """Create the EventSub client for this credential (once) and start it."""
    global eventsub_client
    if eventsub_client is None:
        eventsub_client = EventSubClient(credential_manager=credential_manager)
    await eventsub_client.start(credential)
    stream_event_logger.info("EventSub WebSocket connection started")
    return eventsub_client


@app.get("/auth/login")
async def auth_login(code: Optional[str] = None, error: Optional[str] = None):
    """
    OAuth entry point and redirect target.

    Without a code the browser is redirected to Twitch; Twitch sends it back
    here with ?code=..., which is exchanged for a credential.
    """
    if error:
        auth_logger.warning(f"Authorization denied by user: {error}")
        raise HTTPException(status_code=400, detail=f"Authorization denied: {error}")

    url = credential_manager.begin_authorization(settings.twitch_scopes, code=code)
    if url is not None:
        return RedirectResponse(url, status_code=302)

    try:
        if code:
            credential = await credential_manager.complete_authorization(code)
        else:
            credential = credential_manager.credential
    except AuthError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e

    await start_eventsub(credential)
    return {
        "broadcaster_id": credential.broadcaster_id,
        "login": credential.login,
        "refresh_token": credential.refresh_token,
    }


@app.get("/health")
async def health_check():
    """Service status plus the EventSub client's health side channel."""
    eventsub_status = None
    if eventsub_client is not None:
        eventsub_status = eventsub_client.status.model_dump(mode="json")

    return {
        "status": "healthy",
        "service": "livecount",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "authorized": credential_manager.credential is not None,
        "eventsub": eventsub_status,
    }


@app.get("/counts")
async def get_counts():
    if eventsub_client is None:
        raise HTTPException(status_code=503, detail="Not authorized yet")
    return eventsub_client.counters.snapshot()


@app.get("/events")
async def stream_events():
    """Server-sent events: one `data:` line per accepted follow or subscribe."""
    if eventsub_client is None:
        raise HTTPException(status_code=503, detail="Not authorized yet")
    subscription = eventsub_client.events()

    async def event_source():
        try:
            async for event in subscription:
                data = json.dumps(event.model_dump(mode="json"))
                yield f"event: {event.kind.value}\ndata: {data}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(event_source(), media_type="text/event-stream")


# ============================================================================
# STARTUP/SHUTDOWN
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """Resume from a stored refresh token when one is configured."""
    logger.info(f"livecount service starting on {settings.host}:{settings.port}")

    if not settings.twitch_refresh_token:
        logger.info("No TWITCH_REFRESH_TOKEN set, waiting for /auth/login")
        return
    try:
        credential = await credential_manager.refresh_access_token(
            settings.twitch_refresh_token
        )
    except AuthError as exc:
        auth_logger.error(f"Failed to resume from refresh token: {exc}")
        return
    await start_eventsub(credential)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("livecount service shutting down")

    if eventsub_client is not None:
        try:
            await eventsub_client.stop()
            stream_event_logger.info("EventSub WebSocket connection closed")
        except Exception as exc:
            stream_event_logger.error(f"Error closing EventSub connection: {exc}")

    await close_client()
