"""
EventSub WebSocket Schemas

Pydantic models for credentials, sessions, wire envelopes and the domain
events handed to the display layer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class Credential(BaseModel):
	"""Access token plus the broadcaster it was issued for. Replaced, never mutated."""

	model_config = ConfigDict(frozen=True)

	access_token: str
	refresh_token: Optional[str] = None
	broadcaster_id: str = Field(description="user_id returned by token validation")
	login: Optional[str] = None
	scopes: List[str] = []
	expires_in: Optional[int] = None


class TokenInfo(BaseModel):
	"""Response of the oauth2/validate endpoint."""

	client_id: str
	user_id: str
	login: Optional[str] = None
	scopes: List[str] = []
	expires_in: Optional[int] = None


class EventSubSession(BaseModel):
	"""EventSub WebSocket session metadata."""

	model_config = ConfigDict(frozen=True)

	id: str = Field(description="Session ID from session_welcome")
	status: str = "connected"
	keepalive_timeout_seconds: Optional[int] = None
	reconnect_url: Optional[str] = None
	connected_at: datetime = Field(default_factory=_utcnow)


class SubscriptionSpec(BaseModel):
	"""Catalog entry: a topic and the condition fields filled with the broadcaster id."""

	model_config = ConfigDict(frozen=True)

	type: str
	version: str
	condition_fields: List[str] = Field(
		description="Condition keys that receive the broadcaster id"
	)

	def condition(self, broadcaster_id: str) -> Dict[str, str]:
		return {field: broadcaster_id for field in self.condition_fields}


class MessageMetadata(BaseModel):
	model_config = ConfigDict(extra="ignore")

	message_id: Optional[str] = None
	message_type: str
	message_timestamp: Optional[str] = None  # RFC3339 with nanoseconds, kept verbatim
	subscription_type: Optional[str] = None
	subscription_version: Optional[str] = None


class RawNotification(BaseModel):
	"""Wire envelope: {metadata: {message_type, ...}, payload}."""

	metadata: MessageMetadata
	payload: Dict[str, Any] = {}

	@property
	def message_type(self) -> str:
		return self.metadata.message_type


class EventKind(str, Enum):
	FOLLOWER = "follower"
	SUBSCRIBER = "subscriber"


class DomainEvent(BaseModel):
	"""A follow or subscribe that the display layer counts."""

	model_config = ConfigDict(frozen=True)

	kind: EventKind
	user_id: str
	user_name: Optional[str] = None
	topic: str
	message_id: Optional[str] = None
	timestamp: Optional[str] = None

	@property
	def dedup_key(self) -> str:
		# message_id survives redelivery; otherwise fall back to topic/actor/time
		if self.message_id:
			return self.message_id
		stamp = self.timestamp or ""
		return f"{self.topic}:{self.user_id}:{stamp}"


class SnapshotTotals(BaseModel):
	"""Point-in-time totals. None means the value is unknown."""

	followers: Optional[int] = None
	subscribers: Optional[int] = None
	failed: Dict[str, Optional[int]] = Field(
		default_factory=dict, description="Counters whose fetch failed, mapped to the HTTP status"
	)


class RegistrationResult(BaseModel):
	type: str
	ok: bool
	status_code: Optional[int] = None
	subscription_id: Optional[str] = None
	error: Optional[str] = None


class ClientState(str, Enum):
	DISCONNECTED = "disconnected"
	CONNECTING = "connecting"
	AWAITING_WELCOME = "awaiting_welcome"
	READY = "ready"
	CLOSED = "closed"
	FAILED = "failed"


class Health(str, Enum):
	CONNECTED = "connected"
	DEGRADED = "degraded"
	RECONNECTING = "reconnecting"
	STOPPED = "stopped"
	FAILED = "failed"


class ClientStatus(BaseModel):
	"""Health side channel published alongside the event stream."""

	model_config = ConfigDict(frozen=True)

	state: ClientState
	health: Health
	session_id: Optional[str] = None
	topics_registered: int = 0
	topics_total: int = 0
	consecutive_failures: int = 0
	last_error: Optional[str] = None
	updated_at: datetime = Field(default_factory=_utcnow)
