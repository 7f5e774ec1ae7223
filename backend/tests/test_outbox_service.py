"""Tests for the delivery outbox and idempotent sender."""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from types import SimpleNamespace

from conftest import FakeTransport

from dispatch.database.base import utcnow
from dispatch.notifications.transport import EmailMessage
from dispatch.outbox.models import DeliveryRecord, DeliveryStatus
from dispatch.outbox.service import (
    SendOutcome,
    get_delivery_stats,
    reconcile_pending_deliveries,
    release_failed_delivery,
    send_tracked,
    send_tracked_batch,
    was_sent,
)
from dispatch.outbox.store import UniqueConstraintViolation, create_record, find_by_key

TARGET = date(2026, 1, 31)


def _message(to="a@x.com", subject="Your NYC digest"):
    return EmailMessage(to=to, subject=subject, text="Plain body", html="<p>Html body</p>")


class TestSendTracked:
    def test_first_send_marks_record_sent(self, db_session, transport):
        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.SENT
        assert result.success is True
        record = db_session.get(DeliveryRecord, result.record_id)
        assert record.status == DeliveryStatus.SENT
        assert record.sent_at is not None
        assert record.provider_message_id == "<msg-1@test.cityping.net>"
        assert record.body_text == "Plain body"

    def test_second_send_same_key_is_already_sent(self, db_session, transport):
        first = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)
        second = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert first.outcome == SendOutcome.SENT
        assert second.outcome == SendOutcome.ALREADY_SENT
        assert second.record_id == first.record_id
        assert second.success is True
        assert len(transport.sent) == 1

    def test_recipient_is_normalized_before_keying(self, db_session, transport):
        send_tracked(db_session, _message(to="a@x.com"), "daily_digest", TARGET, transport=transport)
        result = send_tracked(db_session, _message(to="  A@X.com "), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.ALREADY_SENT
        assert len(transport.sent) == 1

    def test_other_date_or_type_sends_again(self, db_session, transport):
        send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)
        next_day = send_tracked(db_session, _message(), "daily_digest", TARGET + timedelta(days=1), transport=transport)
        other_type = send_tracked(db_session, _message(), "weekly_digest", TARGET, transport=transport)

        assert next_day.outcome == SendOutcome.SENT
        assert other_type.outcome == SendOutcome.SENT
        assert len(transport.sent) == 3

    def test_datetime_target_is_truncated_to_date(self, db_session, transport):
        send_tracked(db_session, _message(), "daily_digest", datetime(2026, 1, 31, 8, 30), transport=transport)
        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.ALREADY_SENT

    def test_provider_failure_is_recorded_not_raised(self, db_session, failing_transport):
        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=failing_transport)

        assert result.outcome == SendOutcome.FAILED
        assert result.success is False
        assert "Provider unavailable" in result.error
        record = db_session.get(DeliveryRecord, result.record_id)
        assert record.status == DeliveryStatus.FAILED
        assert "Provider unavailable" in record.error_message

    def test_failed_record_is_not_retried(self, db_session, failing_transport, transport):
        send_tracked(db_session, _message(), "daily_digest", TARGET, transport=failing_transport)
        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.IN_PROGRESS
        assert result.existing_status == DeliveryStatus.FAILED
        assert transport.sent == []

    def test_pending_record_reports_in_progress(self, db_session, transport):
        create_record(db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET)

        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.IN_PROGRESS
        assert result.existing_status == DeliveryStatus.PENDING
        assert transport.sent == []

    def test_metadata_is_stored(self, db_session, transport):
        result = send_tracked(
            db_session, _message(), "daily_digest", TARGET, metadata={"slot": "morning"}, transport=transport
        )

        record = db_session.get(DeliveryRecord, result.record_id)
        assert record.metadata_ == {"slot": "morning"}


class RecordingTransport:
    """Thread-safe call counter that holds each send briefly."""

    def __init__(self, delay=0.05):
        self.calls = 0
        self.delay = delay
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return "<msg@test.cityping.net>"


class TestConcurrentSenders:
    def test_sender_starting_mid_send_is_refused(self, session_factory):
        competing = []

        class CompetingTransport(FakeTransport):
            def send(self, message):
                with session_factory() as other:
                    competing.append(send_tracked(other, message, "daily_pulse", TARGET, transport=self))
                return super().send(message)

        transport = CompetingTransport()
        with session_factory() as db:
            first = send_tracked(db, _message(), "daily_pulse", TARGET, transport=transport)
        with session_factory() as db:
            after = send_tracked(db, _message(), "daily_pulse", TARGET, transport=transport)

        assert first.outcome == SendOutcome.SENT
        assert [r.outcome for r in competing] == [SendOutcome.IN_PROGRESS]
        assert competing[0].existing_status == DeliveryStatus.PENDING
        assert after.outcome == SendOutcome.ALREADY_SENT
        assert len(transport.sent) == 1

    def test_parallel_senders_deliver_once(self, session_factory):
        workers = 8
        transport = RecordingTransport()
        barrier = threading.Barrier(workers)

        def _send(_):
            with session_factory() as db:
                barrier.wait()
                return send_tracked(db, _message(to="Rider@X.com"), "daily_pulse", TARGET, transport=transport)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = [result.outcome for result in pool.map(_send, range(workers))]

        assert outcomes.count(SendOutcome.SENT) == 1
        assert set(outcomes) <= {SendOutcome.SENT, SendOutcome.ALREADY_SENT, SendOutcome.IN_PROGRESS}
        assert transport.calls == 1
        with session_factory() as db:
            records = db.query(DeliveryRecord).all()
        assert len(records) == 1
        assert records[0].status == DeliveryStatus.SENT


class TestStore:
    def test_duplicate_key_raises_unique_violation(self, db_session):
        create_record(db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET)
        try:
            create_record(db_session, recipient="A@x.com", notification_type="daily_digest", target_date=TARGET)
        except UniqueConstraintViolation as exc:
            assert "daily_digest" in str(exc)
        else:
            raise AssertionError("expected UniqueConstraintViolation")

    def test_find_by_key_normalizes(self, db_session):
        create_record(db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET)
        assert find_by_key(db_session, " A@X.COM", "daily_digest", TARGET) is not None
        assert find_by_key(db_session, "a@x.com", "daily_digest", TARGET + timedelta(days=1)) is None


class TestSendTrackedBatch:
    def test_counts_sent_skipped_failed(self, db_session):
        transport = FakeTransport(fail_for=["broken@x.com"])
        users = [
            SimpleNamespace(id=uuid.uuid4(), email="one@x.com"),
            SimpleNamespace(id=uuid.uuid4(), email="two@x.com"),
            SimpleNamespace(id=uuid.uuid4(), email="broken@x.com"),
        ]
        send_tracked(db_session, _message(to="two@x.com"), "daily_pulse", TARGET, transport=transport)

        result = send_tracked_batch(
            db_session, users, lambda u: _message(to=u.email), "daily_pulse", TARGET, transport=transport
        )

        assert result.sent == 1
        assert result.skipped == 1
        assert result.failed == 1
        assert result.errors[0].startswith("broken@x.com")

    def test_builder_exception_counts_as_failed(self, db_session, transport):
        users = [SimpleNamespace(id=uuid.uuid4(), email="one@x.com")]

        def _explode(user):
            raise ValueError("template missing")

        result = send_tracked_batch(db_session, users, _explode, "daily_pulse", TARGET, transport=transport)

        assert result.failed == 1
        assert "template missing" in result.errors[0]


class TestWasSentAndStats:
    def test_was_sent_only_for_sent_records(self, db_session, transport, failing_transport):
        send_tracked(db_session, _message(to="a@x.com"), "daily_digest", TARGET, transport=transport)
        send_tracked(db_session, _message(to="b@x.com"), "daily_digest", TARGET, transport=failing_transport)

        assert was_sent(db_session, "a@x.com", "daily_digest", TARGET) is True
        assert was_sent(db_session, "b@x.com", "daily_digest", TARGET) is False
        assert was_sent(db_session, "c@x.com", "daily_digest", TARGET) is False

    def test_delivery_stats_by_status(self, db_session, transport, failing_transport):
        send_tracked(db_session, _message(to="a@x.com"), "daily_digest", TARGET, transport=transport)
        send_tracked(db_session, _message(to="b@x.com"), "daily_digest", TARGET, transport=transport)
        send_tracked(db_session, _message(to="c@x.com"), "daily_digest", TARGET, transport=failing_transport)
        create_record(db_session, recipient="d@x.com", notification_type="daily_digest", target_date=TARGET)
        send_tracked(db_session, _message(to="a@x.com"), "daily_digest", TARGET - timedelta(days=10), transport=transport)

        stats = get_delivery_stats(db_session, "daily_digest", TARGET - timedelta(days=1), TARGET)

        assert stats == {"total": 4, "sent": 2, "failed": 1, "pending": 1}


class TestReconcile:
    def test_old_pending_with_body_is_resent(self, db_session, transport):
        record = create_record(
            db_session,
            recipient="a@x.com",
            notification_type="daily_digest",
            target_date=TARGET,
            subject="Digest",
            body_text="Body",
        )

        result = reconcile_pending_deliveries(db_session, 60, transport=transport, now=utcnow() + timedelta(hours=2))

        assert (result.examined, result.resent, result.marked_failed) == (1, 1, 0)
        assert transport.recipients == ["a@x.com"]
        db_session.refresh(record)
        assert record.status == DeliveryStatus.SENT

    def test_old_pending_without_body_is_marked_failed(self, db_session, transport):
        record = create_record(db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET)

        result = reconcile_pending_deliveries(db_session, 60, transport=transport, now=utcnow() + timedelta(hours=2))

        assert result.marked_failed == 1
        assert transport.sent == []
        db_session.refresh(record)
        assert record.status == DeliveryStatus.FAILED

    def test_retry_failure_marks_failed(self, db_session, failing_transport):
        record = create_record(
            db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET, body_text="Body"
        )

        result = reconcile_pending_deliveries(
            db_session, 60, transport=failing_transport, now=utcnow() + timedelta(hours=2)
        )

        assert result.marked_failed == 1
        db_session.refresh(record)
        assert record.status == DeliveryStatus.FAILED
        assert record.error_message.startswith("Reconciliation retry failed")

    def test_recent_pending_is_left_alone(self, db_session, transport):
        create_record(
            db_session, recipient="a@x.com", notification_type="daily_digest", target_date=TARGET, body_text="Body"
        )

        result = reconcile_pending_deliveries(db_session, 60, transport=transport)

        assert result.examined == 0
        assert transport.sent == []


class TestReleaseFailed:
    def test_release_allows_next_send(self, db_session, failing_transport, transport):
        failed = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=failing_transport)

        assert release_failed_delivery(db_session, failed.record_id) is True
        result = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert result.outcome == SendOutcome.SENT

    def test_sent_record_cannot_be_released(self, db_session, transport):
        sent = send_tracked(db_session, _message(), "daily_digest", TARGET, transport=transport)

        assert release_failed_delivery(db_session, sent.record_id) is False
        assert db_session.get(DeliveryRecord, sent.record_id) is not None
