"""Tests for the queue consumer worker."""

import json
import signal
import threading
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from app.health.models import DataCategory, QueueMessage
from app.persistence.raw_webhooks import WebhookMetadata
from app.webhooks.errors import NoDataExtractedError, TransientProcessingError, UserNotFoundError
from app.workers.webhook_consumer import ProcessingOutcome, WebhookConsumer, install_signal_handlers, is_permanent_error


def _ingest(ingress, payload: dict, sign) -> str:
    body = json.dumps(payload).encode()
    result = ingress.receive_health_data(body, sign(body))
    assert result.status_code == 200
    return result.content["raw_webhook_id"]


def _enqueue_direct(queue, raw_store, **overrides) -> str:
    fields = {
        "user_id": str(uuid.uuid4()),
        "device_source": "oura",
        "data_structure": "sleep_summary",
        "payload": {},
    }
    fields.update(overrides)
    raw_id = raw_store.record(
        fields["payload"],
        WebhookMetadata(provider="rook", external_user_id=fields["user_id"], data_structure=fields["data_structure"]),
    )
    queue.enqueue(QueueMessage(raw_webhook_id=raw_id, **fields).model_dump_json())
    return raw_id


class TestEndToEnd:
    def test_first_sleep_webhook_is_merged(self, ingress, consumer, queue, raw_store, state_store, user_id, payloads, sign):
        raw_id = _ingest(ingress, payloads.sleep(user_id), sign)

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        stored = state_store.get_category(user_id, "oura", DataCategory.SLEEP)
        assert stored.to_document() == {"duration_minutes": 480, "last_updated": "2024-01-01T08:00:00Z"}
        assert state_store.get_document(user_id).wearables["oura"].connected is True
        assert queue.depth() == 0
        raw = raw_store.get(raw_id)
        assert raw.processed is True
        assert raw.error is None

    def test_redelivered_message_is_a_noop(self, ingress, consumer, queue, state_store, user_id, payloads, sign):
        body = json.dumps(payloads.sleep(user_id)).encode()
        ingress.receive_health_data(body, sign(body))
        [message] = queue.receive()
        duplicate = message.body

        consumer.handle_message(message)
        before = state_store.get_category(user_id, "oura", DataCategory.SLEEP)
        queue.enqueue(duplicate)
        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert state_store.get_category(user_id, "oura", DataCategory.SLEEP) == before

    def test_older_webhook_leaves_stored_record(self, ingress, consumer, state_store, user_id, payloads, sign):
        _ingest(ingress, payloads.sleep(user_id), sign)
        consumer.poll_once()

        _ingest(ingress, payloads.sleep(user_id, duration_seconds=3_600, updated="2023-12-31T08:00:00Z"), sign)
        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert state_store.get_category(user_id, "oura", DataCategory.SLEEP).duration_minutes == 480

    def test_activity_events_accumulate(self, ingress, consumer, state_store, user_id, payloads, sign):
        _ingest(ingress, payloads.activity(user_id, [payloads.event("2024-01-01T06:00:00Z")]), sign)
        _ingest(ingress, payloads.activity(user_id, [payloads.event("2024-01-02T06:00:00Z")]), sign)
        consumer.poll_once()
        consumer.poll_once()

        events = state_store.get_category(user_id, "garmin", DataCategory.ACTIVITY_EVENTS)
        assert [event.start_time.day for event in events] == [2, 1]


    def test_malformed_field_does_not_discard_the_webhook(self, ingress, consumer, raw_store, state_store, user_id, payloads, sign):
        payload = payloads.sleep(user_id)
        payload["sleep_health"]["summary"]["sleep_summary"]["heart_rate"] = {"hr_avg_bpm_int": "n/a"}
        raw_id = _ingest(ingress, payload, sign)

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert state_store.get_category(user_id, "oura", DataCategory.SLEEP).duration_minutes == 480
        assert raw_store.get(raw_id).error is None


class TestTransientFailures:
    def test_storage_error_leaves_message_then_redelivery_succeeds(
        self, ingress, consumer, queue, clock, raw_store, state_store, user_id, payloads, sign, monkeypatch
    ):
        raw_id = _ingest(ingress, payloads.sleep(user_id), sign)
        real_apply = state_store.apply_category

        def flaky_apply(*_args, **_kwargs):
            raise OperationalError("UPDATE device_connections", {}, ConnectionResetError("connection reset"))

        monkeypatch.setattr(state_store, "apply_category", flaky_apply)
        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.RETRY
        assert queue.depth() == 1
        assert raw_store.get(raw_id).processed is False

        monkeypatch.setattr(state_store, "apply_category", real_apply)
        clock.advance(61)
        [retried] = consumer.poll_once()

        assert retried.outcome == ProcessingOutcome.ACKED
        assert queue.depth() == 0
        assert raw_store.get(raw_id).processed is True

    def test_in_process_retry_recovers(self, ingress, consumer, state_store, user_id, payloads, sign, monkeypatch):
        _ingest(ingress, payloads.sleep(user_id), sign)
        real_apply = state_store.apply_category
        calls = []

        def flaky_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise TransientProcessingError("timeout")
            return real_apply(*args, **kwargs)

        monkeypatch.setattr(state_store, "apply_category", flaky_once)
        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert len(calls) == 2

    def test_unclassified_error_is_retried_until_dead_letter(
        self, ingress, consumer, queue, clock, raw_store, state_store, user_id, payloads, sign, monkeypatch
    ):
        raw_id = _ingest(ingress, payloads.sleep(user_id), sign)

        def broken(*_args, **_kwargs):
            raise RuntimeError("something odd")

        monkeypatch.setattr(state_store, "apply_category", broken)
        outcomes = []
        for _ in range(4):
            outcomes.extend(result.outcome for result in consumer.poll_once())
            clock.advance(61)

        assert outcomes == [ProcessingOutcome.RETRY] * 3
        assert queue.depth() == 0
        assert len(queue.dead_letters()) == 1
        assert raw_store.get(raw_id).processed is False


class TestPermanentFailures:
    @pytest.mark.parametrize(
        ("overrides", "error_type"),
        [
            ({"user_id": "not-a-uuid"}, "InvalidUserIdError"),
            ({}, "UserNotFoundError"),
        ],
    )
    def test_bad_user_is_recorded_and_acked(self, consumer, queue, raw_store, overrides, error_type):
        raw_id = _enqueue_direct(queue, raw_store, **overrides)

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert queue.depth() == 0
        raw = raw_store.get(raw_id)
        assert raw.processed is True
        assert raw.error.startswith(error_type)

    def test_unknown_structure_is_recorded(self, consumer, queue, raw_store, user_id):
        raw_id = _enqueue_direct(queue, raw_store, user_id=user_id, data_structure="heart_rate_event")

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert raw_store.get(raw_id).error.startswith("UnknownDataStructureError")

    def test_empty_extraction_is_recorded(self, consumer, queue, raw_store, state_store, user_id):
        raw_id = _enqueue_direct(
            queue,
            raw_store,
            user_id=user_id,
            payload={"sleep_health": {"summary": {"sleep_summary": {"metadata": {}}}}},
        )

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert raw_store.get(raw_id).error.startswith("NoDataExtractedError")
        assert state_store.get_document(user_id).wearables == {}

    def test_malformed_envelope_with_raw_id_is_recorded(self, consumer, queue, raw_store):
        raw_id = raw_store.record({}, WebhookMetadata(provider="rook", external_user_id="", data_structure="x"))
        queue.enqueue(json.dumps({"raw_webhook_id": raw_id, "payload": "not-a-dict"}))

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.ACKED
        assert raw_store.get(raw_id).error.startswith("MalformedMessageError")

    def test_undecodable_envelope_is_dead_lettered(self, consumer, queue):
        queue.enqueue("definitely not json")

        [result] = consumer.poll_once()

        assert result.outcome == ProcessingOutcome.DEAD_LETTER
        assert queue.depth() == 0
        assert len(queue.dead_letters()) == 1


def test_error_classification():
    assert is_permanent_error(UserNotFoundError("x"))
    assert is_permanent_error(NoDataExtractedError("x"))
    assert is_permanent_error(ValueError("x"))
    assert not is_permanent_error(TransientProcessingError("x"))
    assert not is_permanent_error(ConnectionResetError("x"))
    assert not is_permanent_error(TimeoutError("x"))
    assert not is_permanent_error(RuntimeError("x"))


class TestGracefulShutdown:
    def test_stop_before_run_ends_loop(self, consumer):
        consumer.request_stop()
        consumer.run()
        assert consumer.stopping

    def test_stop_mid_batch_finishes_current_message(self, ingress, queue, raw_store, state_store, user_id, payloads, sign, monkeypatch):
        consumer = WebhookConsumer(
            queue,
            raw_store,
            state_store,
            max_messages=2,
            wait_seconds=0,
            poll_interval=0,
            error_backoff=0,
            retry_delay=0,
            sleep=lambda _seconds: None,
        )
        first = _ingest(ingress, payloads.sleep(user_id), sign)
        second = _ingest(ingress, payloads.sleep(user_id, updated="2024-01-02T08:00:00Z"), sign)
        real_apply = state_store.apply_category

        def apply_then_stop(*args, **kwargs):
            consumer.request_stop()
            return real_apply(*args, **kwargs)

        monkeypatch.setattr(state_store, "apply_category", apply_then_stop)
        consumer.run()

        assert raw_store.get(first).processed is True
        assert raw_store.get(second).processed is False
        assert queue.depth() == 1

    def test_sigterm_requests_stop(self, consumer, monkeypatch):
        timers = []

        class RecordingTimer:
            def __init__(self, interval, function):
                self.interval = interval
                self.daemon = False
                timers.append(self)

            def start(self):
                pass

        monkeypatch.setattr(threading, "Timer", RecordingTimer)
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGINT)}
        try:
            install_signal_handlers(consumer, grace_seconds=30)
            signal.raise_signal(signal.SIGTERM)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        assert consumer.stopping
        [timer] = timers
        assert timer.interval == 30
        assert timer.daemon is True
