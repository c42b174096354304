import os

# Settings are read once at import time, so the test environment must be in
# place before any livecount module is imported.
os.environ.setdefault("TWITCH_CLIENT_ID", "test-client-id")
os.environ.setdefault("TWITCH_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("TWITCH_REDIRECT_URI", "http://localhost:8000/auth/login")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest

from livecount.schemas.events import Credential


@pytest.fixture
def credential():
    return Credential(
        access_token="access-1",
        refresh_token="refresh-1",
        broadcaster_id="1001",
        login="streamer",
    )
