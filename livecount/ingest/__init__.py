"""
Ingest layer: OAuth credentials, EventSub session, registration, snapshots
"""

from .auth import CredentialManager
from .counters import ChannelCounters
from .decoder import decode, parse_message
from .dedup import Deduplicator
from .registrar import SubscriptionRegistrar, SUBSCRIPTION_CATALOG
from .snapshot import SnapshotFetcher
from .twitch import EventSubClient

__all__ = [
    "CredentialManager",
    "ChannelCounters",
    "decode",
    "parse_message",
    "Deduplicator",
    "SubscriptionRegistrar",
    "SUBSCRIPTION_CATALOG",
    "SnapshotFetcher",
    "EventSubClient",
]
