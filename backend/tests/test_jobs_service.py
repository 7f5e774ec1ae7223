"""Tests for the maintenance jobs (outbox reconciliation, stale sweep, stats)."""

from datetime import timedelta

from dispatch.database.base import utcnow
from dispatch.jobs.service import RECONCILE_JOB_NAME, outbox_stats, run_reconcile_job, run_stale_check
from dispatch.locks.models import LeaseLock
from dispatch.locks.service import acquire_lease
from dispatch.monitoring.models import JobRun, JobRunStatus
from dispatch.outbox.models import DeliveryRecord, DeliveryStatus
from dispatch.outbox.store import create_record
from dispatch.scheduler.content import local_today


class TestRunReconcileJob:
    def test_resends_abandoned_pending_record(self, db_session, transport):
        record = create_record(
            db_session,
            recipient="a@x.com",
            notification_type="morning_briefing",
            target_date=local_today(),
            subject="Morning Briefing",
            body_text="Body",
        )
        db_session.query(DeliveryRecord).filter(DeliveryRecord.id == record.id).update(
            {DeliveryRecord.created_at: utcnow() - timedelta(hours=3)}
        )
        db_session.commit()

        result = run_reconcile_job(db_session, transport=transport)

        assert result["resent"] == 1
        assert transport.recipients == ["a@x.com"]
        run = db_session.query(JobRun).one()
        assert run.status == JobRunStatus.SUCCESS
        assert run.items_processed == 1
        assert db_session.get(LeaseLock, RECONCILE_JOB_NAME) is None

    def test_skips_when_lease_held(self, db_session, transport):
        acquire_lease(db_session, RECONCILE_JOB_NAME)

        result = run_reconcile_job(db_session, transport=transport)

        assert result == {"success": True, "reason": "lock_held"}
        assert db_session.query(JobRun).count() == 0


class TestRunStaleCheck:
    def test_times_out_stuck_runs(self, db_session, transport):
        db_session.add(
            JobRun(job_name="ingest-news", status=JobRunStatus.RUNNING, started_at=utcnow() - timedelta(hours=2))
        )
        db_session.commit()

        result = run_stale_check(db_session, transport=transport)

        assert result["timedOut"] == 1
        assert db_session.query(JobRun).one().status == JobRunStatus.TIMEOUT


class TestOutboxStats:
    def test_counts_per_slot_type(self, db_session, transport):
        today = local_today()
        create_record(db_session, recipient="a@x.com", notification_type="midday_pulse", target_date=today)
        record = create_record(
            db_session, recipient="b@x.com", notification_type="midday_pulse", target_date=today - timedelta(days=1)
        )
        db_session.query(DeliveryRecord).filter(DeliveryRecord.id == record.id).update(
            {DeliveryRecord.status: DeliveryStatus.SENT}
        )
        db_session.commit()

        stats = outbox_stats(db_session, days=2)

        assert stats["end"] == today.isoformat()
        assert stats["types"]["midday_pulse"] == {"total": 2, "sent": 1, "failed": 0, "pending": 1}
        assert stats["types"]["morning_briefing"]["total"] == 0
