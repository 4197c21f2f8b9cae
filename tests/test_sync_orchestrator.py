"""
Unit Tests for the Sync Orchestrator
Jira is replaced by a mock client; storage is in-memory SQLite.
"""

import unittest
from datetime import date, datetime
from unittest.mock import Mock

from kaos_sync.database.connection import DatabaseConnection
from kaos_sync.database.models import (
    JiraComment, JiraIssue, JiraWorklog, OperationType, Person, Squad, SquadSyncConfig,
    Sprint, SprintState, SyncMode, SyncOperation
)
from kaos_sync.exceptions import NotFoundError, UnsupportedOperationError
from kaos_sync.jira_client import JiraAPIError
from kaos_sync.load_method import LoadMethodConfig
from kaos_sync.rate_limiter import RateLimiter
from kaos_sync.sync_orchestrator import SyncOrchestrator
from kaos_sync.sync_queue import SyncQueue


def make_worklog(worklog_id, started='2026-10-01T09:00:00.000+0000', seconds=7200, account_id='acc-1'):
    return {
        'id': worklog_id,
        'author': {'accountId': account_id},
        'started': started,
        'timeSpentSeconds': seconds
    }


def make_comment(comment_id, body='Looks good', account_id='acc-1'):
    return {
        'id': comment_id,
        'author': {'accountId': account_id, 'displayName': 'Ana Ruiz'},
        'body': body,
        'created': '2026-10-01T11:00:00.000+0000',
        'updated': '2026-10-01T12:30:00.000+0000'
    }


PARENT = {
    'id': '1001',
    'key': 'KAOS-1',
    'fields': {
        'summary': 'Login page',
        'status': {'name': 'In Progress'},
        'issuetype': {'name': 'Story'},
        'priority': {'name': 'High'},
        'assignee': {'accountId': 'acc-1', 'displayName': 'Ana Ruiz'},
        'timeoriginalestimate': 28800,
        'timespent': 14400,
        'updated': '2026-10-01T10:00:00.000+0000',
        'worklog': {'total': 1, 'maxResults': 20, 'worklogs': [make_worklog('9001')]},
        'comment': {'total': 1, 'maxResults': 20, 'comments': [make_comment('5001')]}
    }
}

SUBTASK = {
    'id': '1002',
    'key': 'KAOS-2',
    'fields': {
        'summary': 'Validate form',
        'status': {'name': 'To Do'},
        'issuetype': {'name': 'Sub-task'},
        'parent': {'key': 'KAOS-1'},
        'timeoriginalestimate': 7200,
        'updated': '2026-10-02T10:00:00.000+0000',
        # More worklogs and comments than the search response carries
        'worklog': {'total': 3, 'maxResults': 1, 'worklogs': [make_worklog('9002')]},
        'comment': {'total': 2, 'maxResults': 1, 'comments': [make_comment('5002')]}
    }
}


class OrchestratorTestCase(unittest.TestCase):
    """Shared fixtures."""

    def setUp(self):
        self.db = DatabaseConnection('sqlite://')
        self.db.create_all()
        self.queue = SyncQueue(self.db)
        self.rate_limiter = RateLimiter(limit=200)
        self.load_config = LoadMethodConfig()

        with self.db.session_scope() as session:
            session.add(Squad(id=1, name='Payments'))
            session.add(SquadSyncConfig(
                squad_id=1, active=True, base_url='https://jira.example.com',
                username='bot@example.com', credential_ref='PAYMENTS_JIRA_TOKEN', board_ids='42'
            ))
            session.add(Sprint(
                id=10, squad_id=1, name='Sprint 10', state=SprintState.ACTIVE.value,
                start_date=date(2026, 10, 1), end_date=date(2026, 10, 14)
            ))
            session.add(Person(id=5, squad_id=1, name='Ana Ruiz', jira_account_id='acc-1'))

        self.client = Mock()
        self.client.search_issues.side_effect = self._search
        self.client.fetch_issue_worklogs.return_value = [
            make_worklog('9002'), make_worklog('9003'), make_worklog('9004', account_id='acc-unknown')
        ]
        self.client.fetch_issue_comments.return_value = [
            make_comment('5002'), make_comment('5003', body='Blocked on review', account_id='acc-9')
        ]

        self.alert_engine = Mock()
        self.alert_engine.evaluate_active_sprint.return_value = [Mock(), Mock()]
        self.digest = Mock()

        self.orchestrator = SyncOrchestrator(
            db=self.db,
            queue=self.queue,
            rate_limiter=self.rate_limiter,
            load_config=self.load_config,
            client_factory=lambda sync_config: self.client,
            alert_engine=self.alert_engine,
            digest=self.digest,
            min_quota_threshold=10
        )

    def tearDown(self):
        self.db.dispose()

    @staticmethod
    def _search(jql, fields=None):
        if jql.startswith('parent in'):
            return [SUBTASK]
        return [PARENT]

    def _sync_config(self):
        with self.db.session_scope() as session:
            return session.query(SquadSyncConfig).filter(SquadSyncConfig.squad_id == 1).one()


class TestSyncAll(OrchestratorTestCase):
    """Test squad-level synchronization."""

    def test_full_sync_stores_issues_and_worklogs(self):
        result = self.orchestrator.sync_all(1, SyncMode.FULL)

        self.assertFalse(result.queued)
        self.assertEqual(result.issues_synced, 1)
        self.assertEqual(result.subtasks_synced, 1)
        self.assertEqual(result.worklogs_synced, 4)
        self.assertEqual(result.alerts_generated, 2)
        self.client.fetch_issue_worklogs.assert_called_once_with('KAOS-2')

        with self.db.session_scope() as session:
            parent = session.query(JiraIssue).filter(JiraIssue.issue_key == 'KAOS-1').one()
            subtask = session.query(JiraIssue).filter(JiraIssue.issue_key == 'KAOS-2').one()
            self.assertEqual(parent.sprint_id, 10)
            self.assertEqual(parent.estimate_hours, 8.0)
            self.assertEqual(parent.hours_spent, 4.0)
            self.assertEqual(parent.assignee_name, 'Ana Ruiz')
            self.assertEqual(subtask.parent_key, 'KAOS-1')

            worklog = session.query(JiraWorklog).filter(JiraWorklog.jira_id == '9001').one()
            self.assertEqual(worklog.person_id, 5)
            self.assertEqual(worklog.work_date, date(2026, 10, 1))
            self.assertEqual(worklog.hours, 2.0)
            unmatched = session.query(JiraWorklog).filter(JiraWorklog.jira_id == '9004').one()
            self.assertIsNone(unmatched.person_id)

    def test_full_sync_stores_comments(self):
        """Test inline comments, with truncated lists fetched in full."""
        result = self.orchestrator.sync_all(1, SyncMode.FULL)

        self.assertEqual(result.comments_synced, 3)
        self.assertEqual(result.to_dict()['comments_synced'], 3)
        self.client.fetch_issue_comments.assert_called_once_with('KAOS-2')

        with self.db.session_scope() as session:
            comment = session.query(JiraComment).filter(JiraComment.jira_id == '5001').one()
            self.assertEqual(comment.issue_key, 'KAOS-1')
            self.assertEqual(comment.body, 'Looks good')
            self.assertEqual(comment.author_name, 'Ana Ruiz')
            self.assertEqual(comment.person_id, 5)
            self.assertEqual(comment.jira_updated_at, datetime(2026, 10, 1, 12, 30))
            self.assertEqual(session.query(JiraComment).filter(JiraComment.issue_key == 'KAOS-2').count(), 2)

    def test_full_sync_query_has_no_date_filter(self):
        self.orchestrator.sync_all(1, SyncMode.FULL)

        first_jql = self.client.search_issues.call_args_list[0][0][0]
        self.assertIn('sprint in openSprints()', first_jql)
        self.assertIn('cf[24140] = "42"', first_jql)
        self.assertNotIn('updated >=', first_jql)

        subtask_jql = self.client.search_issues.call_args_list[1][0][0]
        self.assertTrue(subtask_jql.startswith('parent in (KAOS-1)'))

    def test_sync_advances_last_sync_at(self):
        """Test that a successful sync records its start time and clears the error."""
        with self.db.session_scope() as session:
            row = session.query(SquadSyncConfig).filter(SquadSyncConfig.squad_id == 1).one()
            row.last_error = 'old failure'

        result = self.orchestrator.sync_all(1, SyncMode.FULL)

        sync_config = self._sync_config()
        self.assertEqual(sync_config.last_sync_at, result.started_at)
        self.assertIsNone(sync_config.last_error)
        self.assertEqual(sync_config.issues_synced, 2)

    def test_incremental_sync_filters_by_last_sync(self):
        with self.db.session_scope() as session:
            row = session.query(SquadSyncConfig).filter(SquadSyncConfig.squad_id == 1).one()
            row.last_sync_at = datetime(2026, 10, 1, 8, 30)

        self.orchestrator.sync_all(1, SyncMode.INCREMENTAL)

        for call in self.client.search_issues.call_args_list:
            self.assertIn('updated >= "2026-10-01 08:30"', call[0][0])
        self.assertGreater(self._sync_config().last_sync_at, datetime(2026, 10, 1, 8, 30))

    def test_resync_updates_rows_in_place(self):
        self.orchestrator.sync_all(1, SyncMode.FULL)
        self.orchestrator.sync_all(1, SyncMode.FULL)

        with self.db.session_scope() as session:
            self.assertEqual(session.query(JiraIssue).count(), 2)
            self.assertEqual(session.query(JiraWorklog).count(), 4)

    def test_dry_run_persists_nothing(self):
        result = self.orchestrator.sync_all(1, SyncMode.DRY_RUN)

        self.assertEqual(result.issues_synced, 1)
        self.assertEqual(result.subtasks_synced, 1)
        with self.db.session_scope() as session:
            self.assertEqual(session.query(JiraIssue).count(), 0)
        self.assertIsNone(self._sync_config().last_sync_at)
        self.alert_engine.evaluate_active_sprint.assert_not_called()
        self.digest.send_for_squad.assert_not_called()

    def test_low_quota_queues_sync(self):
        """Test that a sync below the quota threshold is deferred to the queue."""
        for _ in range(195):
            self.rate_limiter.try_acquire()

        result = self.orchestrator.sync_all(1, SyncMode.FULL)
        again = self.orchestrator.sync_all(1, SyncMode.FULL)

        self.assertTrue(result.queued)
        self.assertEqual(result.queued_operation_id, again.queued_operation_id)
        self.client.search_issues.assert_not_called()

        pending = self.queue.fetch_pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].operation_type, OperationType.SYNC_ISSUES.value)
        self.assertEqual(SyncQueue.load_payload(pending[0]), {'mode': 'FULL'})

    def test_local_load_method_skips_jira(self):
        self.load_config.set_method('LOCAL')

        result = self.orchestrator.sync_all(1, SyncMode.FULL)

        self.assertEqual(result.source, 'LOCAL')
        self.client.search_issues.assert_not_called()
        self.alert_engine.evaluate_active_sprint.assert_called_once_with(1)

    def test_unknown_squad(self):
        with self.assertRaises(NotFoundError):
            self.orchestrator.sync_all(99)

    def test_failure_records_last_error(self):
        self.client.search_issues.side_effect = JiraAPIError('Jira unavailable', status_code=503)

        with self.assertRaises(JiraAPIError):
            self.orchestrator.sync_all(1, SyncMode.FULL)

        sync_config = self._sync_config()
        self.assertEqual(sync_config.last_error, 'Jira unavailable')
        self.assertIsNone(sync_config.last_sync_at)
        self.alert_engine.evaluate_active_sprint.assert_not_called()

    def test_alert_failure_does_not_fail_sync(self):
        self.alert_engine.evaluate_active_sprint.side_effect = RuntimeError('bad rule store')

        result = self.orchestrator.sync_all(1, SyncMode.FULL)

        self.assertEqual(result.issues_synced, 1)
        self.digest.send_for_squad.assert_not_called()

    def test_digest_receives_result(self):
        result = self.orchestrator.sync_all(1, SyncMode.FULL)
        self.digest.send_for_squad.assert_called_once_with(1, result)


class TestProcess(OrchestratorTestCase):
    """Test execution of queued operations."""

    def test_sync_issues_operation(self):
        op = self.queue.enqueue(1, OperationType.SYNC_ISSUES, payload={'mode': 'FULL'})

        self.orchestrator.process(op)

        stored = self.queue.get(op.id)
        self.assertEqual(stored.state, 'COMPLETED')
        self.assertEqual(stored.attempts, 1)
        with self.db.session_scope() as session:
            self.assertEqual(session.query(JiraIssue).count(), 2)

    def test_sync_worklogs_operation(self):
        with self.db.session_scope() as session:
            session.add(JiraIssue(issue_key='KAOS-7', squad_id=1, sprint_id=10, status='In Progress'))
        op = self.queue.enqueue(1, OperationType.SYNC_WORKLOGS)

        self.orchestrator.process(op)

        self.client.fetch_issue_worklogs.assert_called_once_with('KAOS-7')
        self.assertEqual(self.queue.get(op.id).state, 'COMPLETED')
        with self.db.session_scope() as session:
            keys = {w.issue_key for w in session.query(JiraWorklog).all()}
            self.assertEqual(keys, {'KAOS-7'})

    def test_post_worklog_operation(self):
        self.client.add_worklog.return_value = make_worklog(
            '777', started='2026-10-02T09:00:00.000+0000', seconds=5400
        )
        op = self.queue.enqueue(1, OperationType.POST_WORKLOG, payload={
            'issue_key': 'KAOS-1',
            'hours': 1.5,
            'started': '2026-10-02T09:00:00+00:00',
            'comment': 'pairing'
        })

        self.orchestrator.process(op)

        self.client.add_worklog.assert_called_once_with('KAOS-1', datetime(2026, 10, 2, 9, 0), 5400, 'pairing')
        self.assertEqual(self.queue.get(op.id).state, 'COMPLETED')
        with self.db.session_scope() as session:
            worklog = session.query(JiraWorklog).filter(JiraWorklog.jira_id == '777').one()
            self.assertEqual(worklog.hours, 1.5)
            self.assertEqual(worklog.person_id, 5)

    def test_post_worklog_without_issue_key_propagates(self):
        op = self.queue.enqueue(1, OperationType.POST_WORKLOG, payload={'hours': 1})

        with self.assertRaises(ValueError):
            self.orchestrator.process(op)

        self.client.add_worklog.assert_not_called()
        self.assertEqual(self.queue.get(op.id).state, 'IN_PROGRESS')

    def test_handler_failure_propagates(self):
        self.client.search_issues.side_effect = JiraAPIError('Server error', status_code=500)
        op = self.queue.enqueue(1, OperationType.SYNC_ISSUES)

        with self.assertRaises(JiraAPIError):
            self.orchestrator.process(op)

        self.assertEqual(self.queue.get(op.id).state, 'IN_PROGRESS')

    def test_sync_comments_operation(self):
        op = self.queue.enqueue(1, OperationType.SYNC_COMMENTS, payload={'issue_keys': ['KAOS-2']})

        self.orchestrator.process(op)

        self.client.fetch_issue_comments.assert_called_once_with('KAOS-2')
        self.assertEqual(self.queue.get(op.id).state, 'COMPLETED')
        with self.db.session_scope() as session:
            comments = session.query(JiraComment).order_by(JiraComment.jira_id).all()
            self.assertEqual([c.jira_id for c in comments], ['5002', '5003'])
            self.assertEqual({c.issue_key for c in comments}, {'KAOS-2'})
            self.assertEqual(comments[0].person_id, 5)
            self.assertIsNone(comments[1].person_id)

    def test_unknown_operation_type(self):
        with self.db.session_scope() as session:
            op = SyncOperation(squad_id=1, operation_type='SYNC_LINKS')
            session.add(op)

        with self.assertRaises(UnsupportedOperationError):
            self.orchestrator.process(op)

        self.client.search_issues.assert_not_called()


if __name__ == '__main__':
    unittest.main()
