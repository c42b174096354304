"""
Error taxonomy for the event-ingestion core.

Auth errors are raised to whoever started the OAuth flow. The remaining errors
are raised inside the running client's components and handled at their
boundary: logged and reflected in ClientStatus, never thrown at the consumer
of the event stream.
"""

from __future__ import annotations

from typing import Optional


class LivecountError(Exception):
    """Base class for all livecount errors."""


class AuthError(LivecountError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExchangeError(AuthError):
    """The authorization code exchange was rejected."""


class TokenInvalid(AuthError):
    """The identity endpoint rejected the access token."""


class RefreshFailed(AuthError):
    """The refresh token exchange was rejected or returned no access token."""


class SnapshotFetchFailed(LivecountError):
    def __init__(self, counter: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(f"Failed to fetch {counter} total: {status_code} {detail}".strip())
        self.counter = counter
        self.status_code = status_code


class SubscriptionRegistrationFailed(LivecountError):
    def __init__(self, topic: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(f"Subscription {topic} failed: {status_code} {detail}".strip())
        self.topic = topic
        self.status_code = status_code


class ChannelError(LivecountError):
    """Transport-level failure on the push channel."""


class ChannelClosed(ChannelError):
    def __init__(self, code: Optional[int] = None, reason: str = ""):
        super().__init__(f"Channel closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason
