"""
Tests for the Celery task layer: queue selection, retry policy, scheduling.
"""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry

from mailsync.celery_app import celery_app
from mailsync.tasks import sync_tasks
from mailsync.tasks.sync_tasks import (
    _schedule_due,
    enqueue_sync,
    enqueue_watch_renewal,
    retry_countdown,
    sync_account,
)
from mailsync.utils.datetime_utils import utc_now


def outcome(status, retryable=None, error=None):
    return {"account_id": "a", "status": status, "retryable": retryable, "error": error}


class TestEnqueue:

    def test_high_priority_goes_to_high_queue(self):
        with patch.object(sync_account, "apply_async", return_value=MagicMock(id="task-1")) as apply_async:
            task_id = enqueue_sync("acc-1", trigger="webhook", priority="high")

        assert task_id == "task-1"
        apply_async.assert_called_once_with(args=["acc-1", "webhook"], queue="sync_high")

    def test_default_priority_is_normal(self):
        with patch.object(sync_account, "apply_async", return_value=MagicMock(id="task-2")) as apply_async:
            enqueue_sync("acc-1")

        assert apply_async.call_args.kwargs["queue"] == "sync_normal"
        assert apply_async.call_args.kwargs["args"] == ["acc-1", "manual"]

    def test_watch_renewal_is_high_priority(self):
        with patch.object(sync_tasks.renew_watch, "apply_async", return_value=MagicMock(id="t")) as apply_async:
            enqueue_watch_renewal("acc-1")

        assert apply_async.call_args.kwargs["queue"] == "sync_high"


class TestSyncAccountTask:
    """Test cases for the sync_account task."""

    def test_completed_run_returns_outcome(self):
        with patch("mailsync.tasks.sync_tasks.run_async", return_value=outcome("completed")):
            result = sync_account("acc-1", "manual")

        assert result["status"] == "completed"

    def test_already_syncing_is_not_retried(self):
        with patch("mailsync.tasks.sync_tasks.run_async", return_value=outcome("already_syncing")), \
                patch.object(sync_account, "retry") as retry:
            result = sync_account("acc-1", "webhook")

        assert result["status"] == "already_syncing"
        retry.assert_not_called()

    def test_retryable_failure_is_retried_with_backoff(self):
        failed = outcome("failed", retryable=True, error="rate limited")
        with patch("mailsync.tasks.sync_tasks.run_async", return_value=failed), \
                patch.object(sync_account, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                sync_account("acc-1", "scheduled")

        retry.assert_called_once_with(countdown=60, args=["acc-1", "retry"])

    def test_permanent_failure_is_not_retried(self):
        failed = outcome("failed", retryable=False, error="needs reauthentication")
        with patch("mailsync.tasks.sync_tasks.run_async", return_value=failed), \
                patch.object(sync_account, "retry") as retry:
            result = sync_account("acc-1", "scheduled")

        assert result["status"] == "failed"
        retry.assert_not_called()

    def test_retry_countdown_grows_and_caps(self):
        assert [retry_countdown(n) for n in range(5)] == [60, 300, 600, 600, 600]


class TestCeleryConfiguration:

    def test_late_ack_and_queues(self):
        conf = celery_app.conf
        assert conf.task_acks_late is True
        assert conf.task_reject_on_worker_lost is True
        assert {q.name for q in conf.task_queues} == {"sync_high", "sync_normal"}

    def test_beat_schedule(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "mailsync.tasks.sync_tasks.periodic_sync_scheduler",
            "mailsync.tasks.sync_tasks.renew_expiring_watches",
            "mailsync.tasks.sync_tasks.recover_stale_leases",
            "mailsync.tasks.sync_tasks.purge_deleted_messages",
        }


class TestPeriodicScheduler:

    @pytest.mark.asyncio
    async def test_only_due_accounts_are_scheduled(self, session_factory, make_account):
        due = await make_account(email_address="due@example.com",
                                 last_sync_at=utc_now() - timedelta(hours=1))
        await make_account(email_address="fresh@example.com", last_sync_at=utc_now())
        await make_account(email_address="busy@example.com", sync_status="syncing")

        with patch("mailsync.tasks.sync_tasks.enqueue_sync") as enqueue:
            result = await _schedule_due(session_factory)

        assert result == {"status": "success", "scheduled_count": 1}
        enqueue.assert_called_once_with(due, trigger="poll", priority="normal")
