"""
Sync Orchestrator Module
Runs queued operations and full/incremental issue syncs for a squad.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import (
    JiraComment, JiraIssue, JiraWorklog, OperationType, Person, SquadSyncConfig,
    Sprint, SprintState, SyncMode, SyncOperation
)
from kaos_sync.exceptions import NotFoundError, UnsupportedOperationError
from kaos_sync.jira_client import JiraClient
from kaos_sync.load_method import LoadMethod, LoadMethodConfig, get_load_method_config
from kaos_sync.rate_limiter import RateLimiter, get_rate_limiter
from kaos_sync.sync_queue import SyncQueue
from kaos_sync.utils.helpers import (
    build_jql, chunk_list, format_jql_datetime, parse_jira_datetime,
    safe_get, sanitize_string, seconds_to_hours, utcnow
)
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Keys per "parent in (...)" clause
PARENT_CHUNK_SIZE = 50


@dataclass
class SyncResult:
    """Outcome of one sync_all call."""
    squad_id: int
    mode: str
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    issues_synced: int = 0
    subtasks_synced: int = 0
    worklogs_synced: int = 0
    comments_synced: int = 0
    alerts_generated: int = 0
    queued: bool = False
    queued_operation_id: Optional[int] = None
    source: str = LoadMethod.API_REST.value

    def to_dict(self) -> Dict:
        return {
            'squad_id': self.squad_id,
            'mode': self.mode,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'issues_synced': self.issues_synced,
            'subtasks_synced': self.subtasks_synced,
            'worklogs_synced': self.worklogs_synced,
            'comments_synced': self.comments_synced,
            'alerts_generated': self.alerts_generated,
            'queued': self.queued,
            'queued_operation_id': self.queued_operation_id,
            'source': self.source
        }


class SyncOrchestrator:
    """
    Brings Jira data for a squad into the local database.

    ``process`` executes one queued operation and lets any failure propagate
    to the caller, which records it on the queue row. ``sync_all`` refreshes
    the squad's open-sprint issues, their subtasks and worklogs, then runs
    the alert engine and the sync digest.
    """

    def __init__(
        self,
        db: DatabaseConnection = None,
        queue: SyncQueue = None,
        rate_limiter: RateLimiter = None,
        load_config: LoadMethodConfig = None,
        client_factory: Callable[[SquadSyncConfig], JiraClient] = None,
        alert_engine=None,
        digest=None,
        min_quota_threshold: Optional[int] = None
    ):
        self.db = db or get_db()
        self.queue = queue or SyncQueue(self.db)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.load_config = load_config or get_load_method_config()
        self.client_factory = client_factory or (
            lambda sync_config: JiraClient.for_squad(sync_config, self.rate_limiter)
        )

        if alert_engine is None:
            from kaos_sync.alerts.engine import AlertEngine
            alert_engine = AlertEngine(self.db)
        if digest is None:
            from kaos_sync.alerts.digest import SyncDigest
            digest = SyncDigest(self.db)
        self.alert_engine = alert_engine
        self.digest = digest

        if min_quota_threshold is None:
            sync_config = ConfigManager().get_sync_config()
            min_quota_threshold = int(sync_config.get('min_quota_threshold', 10))
        self.min_quota_threshold = min_quota_threshold

        self._handlers = {
            OperationType.SYNC_ISSUES: self._handle_sync_issues,
            OperationType.SYNC_WORKLOGS: self._handle_sync_worklogs,
            OperationType.SYNC_COMMENTS: self._handle_sync_comments,
            OperationType.POST_WORKLOG: self._handle_post_worklog,
        }

    # ========================================
    # Queue Processing
    # ========================================

    def process(self, operation: SyncOperation) -> None:
        """
        Execute one queued operation.

        The row is claimed (IN_PROGRESS), dispatched on its type, and marked
        COMPLETED on success. Exceptions are not caught here.
        """
        self.queue.mark_in_progress(operation.id)

        try:
            op_type = OperationType(operation.operation_type)
        except ValueError:
            raise UnsupportedOperationError(f"Unknown operation type: {operation.operation_type}")

        handler = self._handlers.get(op_type)
        if handler is None:
            raise UnsupportedOperationError(f"No handler for {op_type.value}")

        logger.info(f"Processing {op_type.value} for squad {operation.squad_id} (op {operation.id})")
        handler(operation)

        self.queue.mark_completed(operation.id)

    def _handle_sync_issues(self, operation: SyncOperation) -> None:
        payload = SyncQueue.load_payload(operation)
        mode = SyncMode(payload.get('mode', SyncMode.INCREMENTAL.value))
        result = self._run_sync(operation.squad_id, mode)
        if mode != SyncMode.DRY_RUN:
            self._after_sync(operation.squad_id, result)

    def _target_issue_keys(self, operation: SyncOperation) -> List[str]:
        """Payload issue_keys, else the stored issues of the squad's active sprint."""
        issue_keys = SyncQueue.load_payload(operation).get('issue_keys')
        if issue_keys:
            return issue_keys

        with self.db.session_scope() as session:
            sprint_id = self._active_sprint_id(session, operation.squad_id)
            query = session.query(JiraIssue.issue_key).filter(JiraIssue.squad_id == operation.squad_id)
            if sprint_id is not None:
                query = query.filter(JiraIssue.sprint_id == sprint_id)
            return [row[0] for row in query.order_by(JiraIssue.issue_key).all()]

    def _handle_sync_worklogs(self, operation: SyncOperation) -> None:
        issue_keys = self._target_issue_keys(operation)
        client = self.client_factory(self._get_sync_config(operation.squad_id))

        total = 0
        for issue_key in issue_keys:
            worklogs = client.fetch_issue_worklogs(issue_key)
            with self.db.session_scope() as session:
                total += self._upsert_worklogs(session, issue_key, worklogs, self._person_map(session))

        logger.info(f"Refreshed {total} worklogs on {len(issue_keys)} issues for squad {operation.squad_id}")

    def _handle_sync_comments(self, operation: SyncOperation) -> None:
        issue_keys = self._target_issue_keys(operation)
        client = self.client_factory(self._get_sync_config(operation.squad_id))

        total = 0
        for issue_key in issue_keys:
            comments = client.fetch_issue_comments(issue_key)
            with self.db.session_scope() as session:
                total += self._upsert_comments(session, issue_key, comments, self._person_map(session))

        logger.info(f"Refreshed {total} comments on {len(issue_keys)} issues for squad {operation.squad_id}")

    def _handle_post_worklog(self, operation: SyncOperation) -> None:
        payload = SyncQueue.load_payload(operation)

        issue_key = payload.get('issue_key')
        if not issue_key:
            raise ValueError("POST_WORKLOG payload requires 'issue_key'")

        if 'time_spent_seconds' in payload:
            seconds = int(payload['time_spent_seconds'])
        elif 'hours' in payload:
            seconds = int(float(payload['hours']) * 3600)
        else:
            raise ValueError("POST_WORKLOG payload requires 'time_spent_seconds' or 'hours'")
        if seconds <= 0:
            raise ValueError("Worklog time must be positive")

        started = parse_jira_datetime(payload.get('started')) or utcnow()

        sync_config = self._get_sync_config(operation.squad_id)
        client = self.client_factory(sync_config)
        created = client.add_worklog(issue_key, started, seconds, payload.get('comment'))

        if created and created.get('id'):
            with self.db.session_scope() as session:
                self._upsert_worklogs(session, issue_key, [created], self._person_map(session))

    # ========================================
    # Squad Sync
    # ========================================

    def sync_all(self, squad_id: int, mode=SyncMode.FULL) -> SyncResult:
        """
        Synchronize a squad's open-sprint issues.

        Args:
            squad_id: Squad to sync
            mode: FULL, INCREMENTAL or DRY_RUN

        Returns:
            SyncResult. When the remaining quota is below the threshold a
            deduplicated SYNC_ISSUES operation is queued instead and the
            result has ``queued=True``.

        Raises:
            NotFoundError: If the squad has no active sync configuration
        """
        mode = SyncMode(mode)
        self._get_sync_config(squad_id)

        if self.load_config.get_method() == LoadMethod.LOCAL:
            logger.info(f"Load method LOCAL: skipping Jira calls for squad {squad_id}")
            result = SyncResult(squad_id=squad_id, mode=mode.value, source=LoadMethod.LOCAL.value)
            if mode != SyncMode.DRY_RUN:
                self._after_sync(squad_id, result)
            result.completed_at = utcnow()
            return result

        remaining = self.rate_limiter.remaining()
        if remaining < self.min_quota_threshold:
            operation = self.queue.enqueue(
                squad_id,
                OperationType.SYNC_ISSUES,
                payload={'mode': SyncMode.INCREMENTAL.value if mode == SyncMode.INCREMENTAL else SyncMode.FULL.value},
                deduplicate=True
            )
            logger.warning(
                f"Quota low ({remaining} left): {mode.value} sync for squad {squad_id} queued as op {operation.id}"
            )
            return SyncResult(
                squad_id=squad_id,
                mode=mode.value,
                queued=True,
                queued_operation_id=operation.id
            )

        result = self._run_sync(squad_id, mode)
        if mode != SyncMode.DRY_RUN:
            self._after_sync(squad_id, result)
        return result

    def _run_sync(self, squad_id: int, mode: SyncMode) -> SyncResult:
        """Fetch and store issues, subtasks and worklogs for one squad."""
        sync_config = self._get_sync_config(squad_id)
        result = SyncResult(squad_id=squad_id, mode=mode.value)

        logger.info(f"Starting {mode.value} sync for squad {squad_id}")

        try:
            client = self.client_factory(sync_config)
            squad_field = ConfigManager().get_jira_config().get('squad_field', 'cf[24140]')

            since_clauses = []
            if mode == SyncMode.INCREMENTAL and sync_config.last_sync_at:
                since_clauses.append(f'updated >= "{format_jql_datetime(sync_config.last_sync_at)}"')

            jql = build_jql(sync_config.board_id_list, squad_field, since_clauses)
            parents = client.search_issues(jql)

            subtasks = []
            parent_keys = [issue['key'] for issue in parents if issue.get('key')]
            for keys in chunk_list(parent_keys, PARENT_CHUNK_SIZE):
                clauses = [f"parent in ({', '.join(keys)})"] + since_clauses
                subtasks.extend(client.search_issues(' AND '.join(clauses) + ' ORDER BY key ASC'))

            result.issues_synced = len(parents)
            result.subtasks_synced = len(subtasks)

            if mode == SyncMode.DRY_RUN:
                logger.info(f"Dry run for squad {squad_id}: {len(parents)} issues, {len(subtasks)} subtasks found")
                result.completed_at = utcnow()
                return result

            # Overflowing inline worklogs and comments need their own request
            worklogs_by_issue = {}
            comments_by_issue = {}
            for issue in parents + subtasks:
                worklogs_by_issue[issue['key']] = self._inline_or_fetch(
                    issue, 'worklog', 'worklogs', client.fetch_issue_worklogs
                )
                comments_by_issue[issue['key']] = self._inline_or_fetch(
                    issue, 'comment', 'comments', client.fetch_issue_comments
                )

            with self.db.session_scope() as session:
                sprint_id = self._active_sprint_id(session, squad_id)
                person_map = self._person_map(session)

                for issue in parents + subtasks:
                    self._upsert_issue(session, squad_id, sprint_id, issue)
                    result.worklogs_synced += self._upsert_worklogs(
                        session, issue['key'], worklogs_by_issue[issue['key']], person_map
                    )
                    result.comments_synced += self._upsert_comments(
                        session, issue['key'], comments_by_issue[issue['key']], person_map
                    )

                config_row = session.query(SquadSyncConfig).filter(SquadSyncConfig.squad_id == squad_id).one()
                config_row.last_sync_at = result.started_at
                config_row.last_error = None
                config_row.issues_synced = result.issues_synced + result.subtasks_synced
                config_row.worklogs_synced = result.worklogs_synced

        except Exception as e:
            logger.error(f"{mode.value} sync failed for squad {squad_id}: {e}")
            with self.db.session_scope() as session:
                config_row = session.query(SquadSyncConfig).filter(SquadSyncConfig.squad_id == squad_id).first()
                if config_row:
                    config_row.last_error = sanitize_string(str(e), 2000)
            raise

        result.completed_at = utcnow()
        logger.info(
            f"{mode.value} sync completed for squad {squad_id}: "
            f"{result.issues_synced} issues, {result.subtasks_synced} subtasks, "
            f"{result.worklogs_synced} worklogs, {result.comments_synced} comments"
        )
        return result

    @staticmethod
    def _inline_or_fetch(issue: Dict, field_name: str, list_key: str, fetch: Callable[[str], List[Dict]]) -> List[Dict]:
        """Entries embedded in a search result, fetched in full when Jira truncated them."""
        inline = safe_get(issue, 'fields', field_name) or {}
        entries = inline.get(list_key, [])
        if inline.get('total', 0) > len(entries):
            return fetch(issue['key'])
        return entries

    def _after_sync(self, squad_id: int, result: SyncResult) -> None:
        """Evaluate alerts and send the digest; failures here never fail the sync."""
        try:
            alerts = self.alert_engine.evaluate_active_sprint(squad_id)
            result.alerts_generated = len(alerts)
        except Exception as e:
            logger.error(f"Alert evaluation after sync failed for squad {squad_id}: {e}")
            return

        try:
            self.digest.send_for_squad(squad_id, result)
        except Exception as e:
            logger.error(f"Sync digest failed for squad {squad_id}: {e}")

    # ========================================
    # Persistence Helpers
    # ========================================

    def _get_sync_config(self, squad_id: int) -> SquadSyncConfig:
        with self.db.session_scope() as session:
            sync_config = session.query(SquadSyncConfig).filter(
                SquadSyncConfig.squad_id == squad_id,
                SquadSyncConfig.active.is_(True)
            ).first()
            if sync_config is None:
                raise NotFoundError('SquadSyncConfig', squad_id)
            return sync_config

    @staticmethod
    def _active_sprint_id(session: Session, squad_id: int) -> Optional[int]:
        sprint = session.query(Sprint).filter(
            Sprint.squad_id == squad_id,
            Sprint.state == SprintState.ACTIVE.value
        ).order_by(Sprint.start_date.desc()).first()
        return sprint.id if sprint else None

    @staticmethod
    def _person_map(session: Session) -> Dict[str, int]:
        """Jira account id -> person id."""
        rows = session.query(Person.jira_account_id, Person.id).filter(
            Person.jira_account_id.isnot(None)
        ).all()
        return {account_id: person_id for account_id, person_id in rows}

    @staticmethod
    def _upsert_issue(session: Session, squad_id: int, sprint_id: Optional[int], data: Dict) -> JiraIssue:
        fields = data.get('fields', {})

        issue = session.query(JiraIssue).filter(JiraIssue.issue_key == data['key']).first()
        if issue is None:
            issue = JiraIssue(issue_key=data['key'], squad_id=squad_id)
            session.add(issue)

        issue.jira_id = data.get('id')
        issue.squad_id = squad_id
        if sprint_id is not None:
            issue.sprint_id = sprint_id
        issue.parent_key = safe_get(fields, 'parent', 'key')
        issue.summary = sanitize_string(fields.get('summary'))
        issue.issue_type = safe_get(fields, 'issuetype', 'name')
        issue.status = safe_get(fields, 'status', 'name')
        issue.priority = safe_get(fields, 'priority', 'name')
        issue.assignee_account_id = safe_get(fields, 'assignee', 'accountId')
        issue.assignee_name = safe_get(fields, 'assignee', 'displayName')
        issue.estimate_hours = seconds_to_hours(fields.get('timeoriginalestimate'))
        issue.hours_spent = seconds_to_hours(fields.get('timespent'))
        issue.jira_updated_at = parse_jira_datetime(fields.get('updated'))
        return issue

    @staticmethod
    def _upsert_worklogs(session: Session, issue_key: str, worklogs: List[Dict], person_map: Dict[str, int]) -> int:
        count = 0
        for data in worklogs:
            jira_id = str(data.get('id') or '')
            started = parse_jira_datetime(data.get('started'))
            if not jira_id or started is None:
                logger.debug(f"Skipping malformed worklog on {issue_key}: {data.get('id')}")
                continue

            worklog = session.query(JiraWorklog).filter(JiraWorklog.jira_id == jira_id).first()
            if worklog is None:
                worklog = JiraWorklog(jira_id=jira_id)
                session.add(worklog)

            account_id = safe_get(data, 'author', 'accountId')
            comment = data.get('comment')

            worklog.issue_key = issue_key
            worklog.author_account_id = account_id
            worklog.person_id = person_map.get(account_id)
            worklog.work_date = started.date()
            worklog.hours = seconds_to_hours(data.get('timeSpentSeconds') or 0)
            worklog.comment = sanitize_string(comment) if isinstance(comment, str) else None
            worklog.synced_at = utcnow()
            count += 1

        return count

    @staticmethod
    def _upsert_comments(session: Session, issue_key: str, comments: List[Dict], person_map: Dict[str, int]) -> int:
        count = 0
        for data in comments:
            jira_id = str(data.get('id') or '')
            if not jira_id:
                continue

            comment = session.query(JiraComment).filter(JiraComment.jira_id == jira_id).first()
            if comment is None:
                comment = JiraComment(jira_id=jira_id)
                session.add(comment)

            account_id = safe_get(data, 'author', 'accountId')
            body = data.get('body')

            comment.issue_key = issue_key
            comment.author_account_id = account_id
            comment.author_name = safe_get(data, 'author', 'displayName')
            comment.person_id = person_map.get(account_id)
            # API v2 bodies are wiki-markup strings
            comment.body = sanitize_string(body) if isinstance(body, str) else None
            comment.jira_created_at = parse_jira_datetime(data.get('created'))
            comment.jira_updated_at = parse_jira_datetime(data.get('updated'))
            comment.synced_at = utcnow()
            count += 1

        return count
