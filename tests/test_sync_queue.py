"""
Unit Tests for the Sync Queue
Runs against an in-memory SQLite database.
"""

import unittest
from datetime import timedelta

from kaos_sync.database.connection import DatabaseConnection
from kaos_sync.database.models import OperationType, SyncOperation, SyncState
from kaos_sync.exceptions import InvalidTransitionError, NotFoundError
from kaos_sync.sync_queue import SyncQueue
from kaos_sync.utils.helpers import utcnow


class TestSyncQueue(unittest.TestCase):
    """Test queue ordering, state transitions and maintenance."""

    def setUp(self):
        self.db = DatabaseConnection('sqlite://')
        self.db.create_all()
        self.queue = SyncQueue(self.db)
        self.now = utcnow()

    def tearDown(self):
        self.db.dispose()

    def _set_completed_at(self, operation_id, completed_at):
        with self.db.session_scope() as session:
            session.get(SyncOperation, operation_id).completed_at = completed_at

    def test_enqueue_creates_pending_operation(self):
        op = self.queue.enqueue(1, OperationType.POST_WORKLOG, payload={'issue_key': 'KAOS-1', 'hours': 2})

        self.assertIsNotNone(op.id)
        self.assertEqual(op.state, 'PENDING')
        self.assertEqual(op.attempts, 0)
        self.assertEqual(SyncQueue.load_payload(op), {'issue_key': 'KAOS-1', 'hours': 2})

    def test_enqueue_rejects_unknown_type(self):
        with self.assertRaises(ValueError):
            self.queue.enqueue(1, 'SYNC_EVERYTHING')

    def test_enqueue_deduplicates_pending(self):
        first = self.queue.enqueue(1, 'SYNC_ISSUES', deduplicate=True)
        second = self.queue.enqueue(1, 'SYNC_ISSUES', deduplicate=True)
        other_squad = self.queue.enqueue(2, 'SYNC_ISSUES', deduplicate=True)

        self.assertEqual(first.id, second.id)
        self.assertNotEqual(first.id, other_squad.id)
        self.assertEqual(self.queue.count_pending(), 2)

    def test_fetch_pending_is_fifo_across_squads(self):
        """Test that due rows come back ordered by scheduled time."""
        late = self.queue.enqueue(1, 'SYNC_ISSUES', scheduled_at=self.now - timedelta(minutes=1))
        early = self.queue.enqueue(2, 'SYNC_WORKLOGS', scheduled_at=self.now - timedelta(minutes=10))
        middle = self.queue.enqueue(3, 'SYNC_ISSUES', scheduled_at=self.now - timedelta(minutes=5))

        pending = self.queue.fetch_pending(self.now)

        self.assertEqual([op.id for op in pending], [early.id, middle.id, late.id])

    def test_fetch_pending_excludes_future_and_non_pending(self):
        due = self.queue.enqueue(1, 'SYNC_ISSUES', scheduled_at=self.now - timedelta(minutes=1))
        self.queue.enqueue(1, 'SYNC_WORKLOGS', scheduled_at=self.now + timedelta(hours=1))
        claimed = self.queue.enqueue(2, 'SYNC_ISSUES', scheduled_at=self.now - timedelta(minutes=2))
        self.queue.mark_in_progress(claimed.id)

        pending = self.queue.fetch_pending(self.now)

        self.assertEqual([op.id for op in pending], [due.id])

    def test_happy_path_transitions(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')

        claimed = self.queue.mark_in_progress(op.id)
        self.assertEqual(claimed.state, 'IN_PROGRESS')
        self.assertEqual(claimed.attempts, 1)
        self.assertIsNotNone(claimed.started_at)

        done = self.queue.mark_completed(op.id)
        self.assertEqual(done.state, 'COMPLETED')
        self.assertIsNotNone(done.completed_at)

    def test_error_path(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')
        self.queue.mark_in_progress(op.id)

        failed = self.queue.mark_error(op.id, 'Jira returned 500')

        self.assertEqual(failed.state, 'ERROR')
        self.assertEqual(failed.error_message, 'Jira returned 500')

    def test_mark_error_from_pending(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')
        self.assertEqual(self.queue.mark_error(op.id, 'boom').state, 'ERROR')

    def test_completed_is_terminal(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')
        self.queue.mark_in_progress(op.id)
        self.queue.mark_completed(op.id)

        with self.assertRaises(InvalidTransitionError):
            self.queue.mark_in_progress(op.id)
        with self.assertRaises(InvalidTransitionError):
            self.queue.mark_error(op.id, 'late failure')

    def test_cannot_complete_unclaimed_operation(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')
        with self.assertRaises(InvalidTransitionError):
            self.queue.mark_completed(op.id)

    def test_unknown_operation(self):
        with self.assertRaises(NotFoundError):
            self.queue.mark_in_progress(999)
        with self.assertRaises(NotFoundError):
            self.queue.get(999)

    def test_retry_only_from_error(self):
        op = self.queue.enqueue(1, 'SYNC_ISSUES')
        with self.assertRaises(InvalidTransitionError):
            self.queue.retry(op.id)

        self.queue.mark_in_progress(op.id)
        self.queue.mark_error(op.id, 'boom')
        retried = self.queue.retry(op.id)

        self.assertEqual(retried.state, 'PENDING')
        self.assertIsNone(retried.started_at)
        self.assertEqual([p.id for p in self.queue.fetch_pending(utcnow())], [op.id])

    def test_purge_completed_older_than(self):
        """Test that only COMPLETED rows past the cutoff are deleted."""
        old = self.queue.enqueue(1, 'SYNC_ISSUES')
        recent = self.queue.enqueue(1, 'SYNC_WORKLOGS')
        old_error = self.queue.enqueue(1, 'POST_WORKLOG')
        for op in (old, recent, old_error):
            self.queue.mark_in_progress(op.id)
        self.queue.mark_completed(old.id)
        self.queue.mark_completed(recent.id)
        self.queue.mark_error(old_error.id, 'boom')

        self._set_completed_at(old.id, self.now - timedelta(days=8))
        self._set_completed_at(recent.id, self.now - timedelta(days=6))
        self._set_completed_at(old_error.id, self.now - timedelta(days=8))

        purged = self.queue.purge_completed_older_than(self.now - timedelta(days=7))

        self.assertEqual(purged, 1)
        remaining = {op.id for op in self.queue.list_operations()}
        self.assertEqual(remaining, {recent.id, old_error.id})

    def test_reset_stale_in_progress(self):
        stale = self.queue.enqueue(1, 'SYNC_ISSUES')
        fresh = self.queue.enqueue(2, 'SYNC_ISSUES')
        self.queue.mark_in_progress(stale.id)
        self.queue.mark_in_progress(fresh.id)
        with self.db.session_scope() as session:
            session.get(SyncOperation, stale.id).started_at = self.now - timedelta(hours=3)

        reset = self.queue.reset_stale_in_progress(self.now - timedelta(hours=2))

        self.assertEqual(reset, 1)
        self.assertEqual(self.queue.get(stale.id).state, SyncState.PENDING.value)
        self.assertEqual(self.queue.get(fresh.id).state, SyncState.IN_PROGRESS.value)

    def test_list_operations_filters(self):
        a = self.queue.enqueue(1, 'SYNC_ISSUES')
        self.queue.enqueue(2, 'SYNC_ISSUES')
        self.queue.mark_in_progress(a.id)

        self.assertEqual(len(self.queue.list_operations(squad_id=1)), 1)
        self.assertEqual(len(self.queue.list_operations(state='PENDING')), 1)
        self.assertEqual(self.queue.count_pending(squad_id=1), 0)
        self.assertEqual(self.queue.count_pending(squad_id=2), 1)


if __name__ == '__main__':
    unittest.main()
