"""Unit tests for EventSub envelope decoding."""
import json

import pytest

from livecount.ingest.decoder import decode, parse_message
from livecount.schemas.events import EventKind

from test_utils import notification_message, welcome_message


@pytest.mark.unit
class TestDecode:
    def test_follow_notification_decodes_to_follower(self):
        message = parse_message(json.dumps(notification_message("channel.follow", "123", "Alice")))
        event = decode(message)
        assert event is not None
        assert event.kind == EventKind.FOLLOWER
        assert event.user_id == "123"
        assert event.user_name == "Alice"
        assert event.topic == "channel.follow"

    def test_subscribe_notification_decodes_to_subscriber(self):
        message = parse_message(json.dumps(notification_message("channel.subscribe", "456", "Bob")))
        event = decode(message)
        assert event.kind == EventKind.SUBSCRIBER
        assert event.user_id == "456"
        assert event.user_name == "Bob"

    def test_unknown_topic_is_dropped(self):
        message = parse_message(json.dumps(notification_message("channel.raid", "789")))
        assert decode(message) is None

    def test_event_without_user_id_is_dropped(self):
        raw = notification_message("channel.follow", "1")
        del raw["payload"]["event"]["user_id"]
        assert decode(parse_message(json.dumps(raw))) is None

    def test_dedup_key_prefers_message_id(self):
        raw = notification_message("channel.follow", "123", message_id="msg-1")
        event = decode(parse_message(json.dumps(raw)))
        assert event.dedup_key == "msg-1"

    def test_dedup_key_falls_back_to_topic_actor_and_timestamp(self):
        raw = notification_message("channel.follow", "123")
        del raw["metadata"]["message_id"]
        event = decode(parse_message(json.dumps(raw)))
        assert event.dedup_key == "channel.follow:123:2024-01-01T00:00:01.000000001Z"

    def test_numeric_user_id_is_normalized_to_string(self):
        raw = notification_message("channel.subscribe", 42)
        event = decode(parse_message(json.dumps(raw)))
        assert event.user_id == "42"


@pytest.mark.unit
class TestParseMessage:
    def test_welcome_envelope(self):
        message = parse_message(json.dumps(welcome_message("abc")))
        assert message.message_type == "session_welcome"
        assert message.payload["session"]["id"] == "abc"

    def test_malformed_json_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_message("{not json")

    def test_non_object_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_message("[1, 2, 3]")

    def test_missing_message_type_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_message(json.dumps({"metadata": {}, "payload": {}}))
