"""
Alert Engine Module
Evaluates configured alert rules against a sprint and stores the alerts they raise.
"""

from datetime import date
from typing import Callable, List, Optional

from kaos_sync.alerts.context import EvaluationContext, build_context
from kaos_sync.alerts.expression import compile_expression
from kaos_sync.alerts.store import AlertRuleStore, AlertStore
from kaos_sync.alerts.template import render
from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import Alert, AlertRule, AlertType, Sprint, SprintState
from kaos_sync.exceptions import NotFoundError
from kaos_sync.utils.helpers import utcnow
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

SPRINT_SCOPED = {AlertType.SPRINT_AT_RISK}
PERSON_SCOPED = {AlertType.MISSING_WORKLOG}
ISSUE_SCOPED = {
    AlertType.CUSTOM,
    AlertType.HOURS_DEVIATION,
    AlertType.STALLED_TASK,
    AlertType.STATUS_MISMATCH,
    AlertType.ZERO_ESTIMATE,
}


class AlertEngine:
    """
    Runs every active rule of a squad (plus global rules) over one sprint.

    Sprint-scoped rules are evaluated once, issue-scoped rules once per
    issue and person-scoped rules once per active squad member. A rule that
    fails to parse or evaluate is logged and skipped; the others still run.
    All alerts of one evaluation are saved in a single batch.
    """

    def __init__(
        self,
        db: DatabaseConnection = None,
        alert_store: AlertStore = None,
        rule_store: AlertRuleStore = None,
        today: Callable[[], date] = None,
        done_statuses: Optional[List[str]] = None
    ):
        self.db = db or get_db()
        self.alert_store = alert_store or AlertStore(self.db)
        self.rule_store = rule_store or AlertRuleStore(self.db)
        self._today = today or (lambda: utcnow().date())

        if done_statuses is None:
            done_statuses = ConfigManager().get_alerts_config().get('done_statuses', ['Done'])
        self.done_statuses = list(done_statuses)

    def evaluate_active_sprint(self, squad_id: int) -> List[Alert]:
        """Evaluate the squad's ACTIVE sprint; [] when it has none."""
        with self.db.session_scope() as session:
            sprint = session.query(Sprint).filter(
                Sprint.squad_id == squad_id,
                Sprint.state == SprintState.ACTIVE.value
            ).order_by(Sprint.start_date.desc(), Sprint.id.desc()).first()
            sprint_id = sprint.id if sprint else None

        if sprint_id is None:
            logger.debug(f"Squad {squad_id} has no active sprint, nothing to evaluate")
            return []
        return self.evaluate(sprint_id, squad_id)

    def evaluate(self, sprint_id: int, squad_id: int) -> List[Alert]:
        """
        Evaluate all applicable rules for a sprint.

        Args:
            sprint_id: Sprint to evaluate
            squad_id: Squad whose rules apply (global rules always apply)

        Returns:
            Alerts generated and saved by this run

        Raises:
            NotFoundError: If the sprint does not exist
        """
        with self.db.session_scope() as session:
            sprint = session.get(Sprint, sprint_id)
            if sprint is None:
                raise NotFoundError('Sprint', sprint_id)

            rules = self.rule_store.find_active_for_squad(squad_id)
            if not rules:
                logger.debug(f"No active alert rules for squad {squad_id}")
                return []

            context = build_context(session, sprint, squad_id, self._today(), self.done_statuses)

        alerts = []
        for rule in rules:
            try:
                alerts.extend(self._evaluate_rule(rule, context))
            except Exception as e:
                logger.warning(f"Alert rule '{rule.name}' skipped: {e}")

        if alerts:
            self.alert_store.save_all(alerts)
            logger.info(f"Generated {len(alerts)} alerts (sprint={sprint_id}, squad={squad_id})")
        else:
            logger.debug(f"No alerts raised (sprint={sprint_id}, squad={squad_id})")

        return alerts

    def _evaluate_rule(self, rule: AlertRule, context: EvaluationContext) -> List[Alert]:
        """Evaluate one rule in its scope. Any error aborts the whole rule."""
        alert_type = AlertType(rule.alert_type)
        condition = compile_expression(rule.condition)
        alerts = []

        if alert_type in SPRINT_SCOPED:
            variables = context.sprint_variables(rule)
            if condition.test(variables):
                alerts.append(self._build_alert(rule, context, render(rule.message_template, variables)))

        elif alert_type in PERSON_SCOPED:
            for person in context.persons:
                variables = context.person_variables(person, rule)
                if condition.test(variables):
                    alerts.append(self._build_alert(
                        rule, context, render(rule.message_template, variables),
                        person_id=person.id, person_name=person.name
                    ))

        elif alert_type in ISSUE_SCOPED:
            for issue in context.issues:
                variables = context.issue_variables(issue, rule)
                if condition.test(variables):
                    alerts.append(self._build_alert(
                        rule, context, render(rule.message_template, variables),
                        issue_key=issue.key
                    ))

        return alerts

    @staticmethod
    def _build_alert(
        rule: AlertRule,
        context: EvaluationContext,
        message: str,
        issue_key: Optional[str] = None,
        person_id: Optional[int] = None,
        person_name: Optional[str] = None
    ) -> Alert:
        return Alert(
            sprint_id=context.sprint.id,
            squad_id=context.squad_id,
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            message=message,
            issue_key=issue_key,
            person_id=person_id,
            person_name=person_name,
            resolved=False,
            email_notified=False,
            created_at=utcnow()
        )
