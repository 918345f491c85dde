"""Tests for the webhook ack path and connection notifications."""

import json
import uuid

import pytest

from sqlalchemy.exc import OperationalError

from app.health.models import QueueMessage
from app.webhooks.errors import SignatureVerificationError


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode()


class TestHealthData:
    def test_signed_payload_for_known_user_is_stored_and_queued(self, ingress, raw_store, queue, user_id, payloads, sign):
        body = _body(payloads.sleep(user_id))

        result = ingress.receive_health_data(body, sign(body), client_ip="10.1.2.3")

        assert result.status_code == 200
        assert result.content["queued"] is True
        raw = raw_store.get(result.content["raw_webhook_id"])
        assert raw.processed is False
        assert raw.data_structure == "sleep_summary"
        assert raw.ip_address == "10.1.2.3"
        assert raw.user_agent == "rook-test"
        assert raw.queue_message_id == result.content["message_id"]

        [message] = queue.receive()
        envelope = QueueMessage.model_validate_json(message.body)
        assert envelope.raw_webhook_id == raw.id
        assert envelope.user_id == user_id
        assert envelope.device_source == "oura"
        assert envelope.payload == json.loads(body)

    def test_invalid_signature_persists_nothing(self, ingress, raw_store, queue, user_id, payloads):
        body = _body(payloads.sleep(user_id))

        result = ingress.receive_health_data(body, {"X-ROOK-HASH": "sha256=" + "0" * 64})

        assert result.status_code == 401
        assert result.content == {"error": "Invalid signature"}
        assert raw_store.find_unprocessed() == []
        assert queue.depth() == 0

    def test_authentication_raises_signature_error(self, ingress, user_id, payloads):
        with pytest.raises(SignatureVerificationError):
            ingress._authenticate(_body(payloads.sleep(user_id)), {"X-ROOK-HASH": "not-hex"})

    def test_missing_signature_is_rejected(self, ingress, user_id, payloads):
        assert ingress.receive_health_data(_body(payloads.sleep(user_id)), {}).status_code == 401

    def test_header_lookup_is_case_insensitive(self, ingress, user_id, payloads, sign):
        body = _body(payloads.sleep(user_id))
        headers = {key.lower(): value for key, value in sign(body).items()}

        assert ingress.receive_health_data(body, headers).status_code == 200

    @pytest.mark.parametrize(
        ("user", "reason"),
        [
            ("507f1f77bcf86cd799439011", "invalid_user_id"),
            (str(uuid.uuid4()), "unknown_user"),
        ],
    )
    def test_unroutable_user_is_acknowledged_and_dropped(self, ingress, raw_store, queue, payloads, sign, user, reason):
        body = _body(payloads.sleep(user))

        result = ingress.receive_health_data(body, sign(body))

        assert result.status_code == 200
        assert result.content == {"status": "ignored", "reason": reason}
        assert raw_store.find_unprocessed() == []
        assert queue.depth() == 0

    def test_unknown_source_is_acknowledged_and_dropped(self, ingress, queue, user_id, payloads, sign):
        body = _body(payloads.sleep(user_id, source="Suunto"))

        result = ingress.receive_health_data(body, sign(body))

        assert result.status_code == 200
        assert result.content["reason"] == "unknown_data_source"
        assert queue.depth() == 0

    def test_invalid_json_is_acknowledged(self, ingress, sign):
        body = b"{not json"
        result = ingress.receive_health_data(body, sign(body))
        assert result.status_code == 200
        assert result.content["reason"] == "invalid_payload"

    def test_raw_store_failure_returns_500(self, ingress, raw_store, queue, user_id, payloads, sign, monkeypatch):
        def broken_record(*_args, **_kwargs):
            raise RuntimeError("database down")

        monkeypatch.setattr(raw_store, "record", broken_record)
        body = _body(payloads.sleep(user_id))

        result = ingress.receive_health_data(body, sign(body))

        assert result.status_code == 500
        assert queue.depth() == 0

    def test_enqueue_failure_keeps_row_for_replay(self, ingress, raw_store, queue, user_id, payloads, sign, monkeypatch):
        def broken_enqueue(_body):
            raise ConnectionError("redis down")

        monkeypatch.setattr(queue, "enqueue", broken_enqueue)
        body = _body(payloads.sleep(user_id))

        result = ingress.receive_health_data(body, sign(body))

        assert result.status_code == 200
        assert result.content["queued"] is False
        [raw] = raw_store.find_unprocessed()
        assert raw.id == result.content["raw_webhook_id"]
        assert raw.queue_message_id is None


class TestNotifications:
    def _notification(self, user_id: str, action: str, source: str = "Whoop") -> dict:
        return {
            "client_uuid": "c0ffee00-0000-4000-8000-000000000000",
            "user_id": user_id,
            "action": action,
            "data_source": source,
            "level": "info",
        }

    def test_connect_then_revoke(self, ingress, state_store, raw_store, user_id, sign):
        body = _body(self._notification(user_id, "user_connected"))
        assert ingress.receive_notification(body, sign(body)).status_code == 200
        device = state_store.get_document(user_id).wearables["whoop"]
        assert device.connected is True
        assert device.connected_at is not None

        body = _body(self._notification(user_id, "connection_revoked"))
        assert ingress.receive_notification(body, sign(body)).status_code == 200
        device = state_store.get_document(user_id).wearables["whoop"]
        assert device.connected is False
        assert device.revoked_at is not None

        assert raw_store.find_unprocessed() == []

    def test_lifecycle_only_actions_are_recorded(self, ingress, state_store, raw_store, user_id, sign):
        body = _body(self._notification(user_id, "user_created"))

        result = ingress.receive_notification(body, sign(body))

        assert result.content == {"status": "processed", "action": "user_created"}
        assert state_store.get_document(user_id).wearables == {}
        assert raw_store.find_unprocessed() == []

    def test_unknown_user_is_dropped_and_recorded(self, ingress, raw_store, sign):
        body = _body(self._notification(str(uuid.uuid4()), "user_connected"))

        result = ingress.receive_notification(body, sign(body))

        assert result.status_code == 200
        assert result.content["reason"] == "unknown_user"
        [failed] = raw_store.find_failed()
        assert failed.data_structure == "notification"

    def test_unsigned_notification_is_rejected(self, ingress, raw_store, user_id):
        body = _body(self._notification(user_id, "user_connected"))
        assert ingress.receive_notification(body, {}).status_code == 401
        assert raw_store.find_unprocessed() == []

    @pytest.mark.parametrize("action", ["user_connected", "user_created"])
    def test_failure_to_settle_row_returns_500(self, ingress, raw_store, user_id, sign, monkeypatch, action):
        def broken_mark(*_args, **_kwargs):
            raise OperationalError("UPDATE raw_webhooks", {}, ConnectionResetError("connection reset"))

        monkeypatch.setattr(raw_store, "mark_processed", broken_mark)
        body = _body(self._notification(user_id, action))

        result = ingress.receive_notification(body, sign(body))

        assert result.status_code == 500
        assert len(raw_store.find_unprocessed()) == 1
