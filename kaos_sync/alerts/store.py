"""
Alert Store Module
Persistence and queries for alerts and alert rules.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, func, or_

from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import Alert, AlertRule, AlertType, Severity
from kaos_sync.exceptions import ExpressionError, NotFoundError
from kaos_sync.alerts.expression import compile_expression
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)


def severity_rank(column):
    """SQL expression ranking CRITICAL < WARNING < INFO."""
    return case(
        (column == Severity.CRITICAL.value, 0),
        (column == Severity.WARNING.value, 1),
        else_=2
    )


@dataclass
class AlertPage:
    items: List[Alert]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0

    def to_dict(self) -> Dict:
        return {
            'items': [a.to_dict() for a in self.items],
            'total': self.total,
            'page': self.page,
            'size': self.size,
            'pages': self.pages
        }


class AlertStore:
    """Queries and mutations on the alerts table."""

    def __init__(self, db: DatabaseConnection = None):
        self.db = db or get_db()

    def save_all(self, alerts: List[Alert]) -> List[Alert]:
        """Persist a batch of alerts in one transaction. Empty input is a no-op."""
        if not alerts:
            return []
        with self.db.session_scope() as session:
            session.add_all(alerts)
            session.flush()
        return alerts

    def find_by_sprint(
        self,
        sprint_id: int,
        resolved: Optional[bool] = None,
        page: int = 0,
        size: int = 20
    ) -> AlertPage:
        """
        Alerts of a sprint, most severe first, then newest first.

        Args:
            sprint_id: Sprint to query
            resolved: True for resolved only, False for open only, None for all
            page: Zero-based page number
            size: Page size
        """
        page = max(0, page)
        size = max(1, size)

        with self.db.session_scope() as session:
            query = session.query(Alert).filter(Alert.sprint_id == sprint_id)
            if resolved is not None:
                query = query.filter(Alert.resolved.is_(resolved))

            total = query.count()
            items = query.order_by(
                severity_rank(Alert.severity),
                Alert.created_at.desc(),
                Alert.id.desc()
            ).offset(page * size).limit(size).all()

        return AlertPage(items=items, total=total, page=page, size=size)

    def find_by_squad(self, squad_id: int, resolved: Optional[bool] = None) -> List[Alert]:
        """Alerts of a squad, newest first."""
        with self.db.session_scope() as session:
            query = session.query(Alert).filter(Alert.squad_id == squad_id)
            if resolved is not None:
                query = query.filter(Alert.resolved.is_(resolved))
            return query.order_by(Alert.created_at.desc(), Alert.id.desc()).all()

    def find_unresolved_by_severity(self, sprint_id: int, severity) -> List[Alert]:
        severity = Severity(severity)
        with self.db.session_scope() as session:
            return session.query(Alert).filter(
                Alert.sprint_id == sprint_id,
                Alert.severity == severity.value,
                Alert.resolved.is_(False)
            ).order_by(Alert.created_at.desc(), Alert.id.desc()).all()

    def find_unnotified(self, sprint_id: int) -> List[Alert]:
        """Alerts not yet included in an email digest, most severe first."""
        with self.db.session_scope() as session:
            return session.query(Alert).filter(
                Alert.sprint_id == sprint_id,
                Alert.email_notified.is_(False)
            ).order_by(severity_rank(Alert.severity), Alert.created_at.desc(), Alert.id.desc()).all()

    def count_unresolved(self, sprint_id: int) -> int:
        with self.db.session_scope() as session:
            return session.query(func.count(Alert.id)).filter(
                Alert.sprint_id == sprint_id,
                Alert.resolved.is_(False)
            ).scalar() or 0

    def mark_email_notified(self, sprint_id: int) -> int:
        """
        Flag every unnotified alert of a sprint as notified.

        Single conditional UPDATE, so a repeated call affects 0 rows.

        Returns:
            Number of rows updated
        """
        with self.db.session_scope() as session:
            updated = session.query(Alert).filter(
                Alert.sprint_id == sprint_id,
                Alert.email_notified.is_(False)
            ).update({Alert.email_notified: True}, synchronize_session=False)

        logger.debug(f"Marked {updated} alerts as notified for sprint {sprint_id}")
        return updated

    def resolve(self, alert_id: int) -> Alert:
        """Mark an alert resolved. Resolving twice is harmless."""
        with self.db.session_scope() as session:
            alert = session.get(Alert, alert_id)
            if alert is None:
                raise NotFoundError('Alert', alert_id)
            alert.resolved = True
            session.flush()
            return alert


class AlertRuleStore:
    """Rule lookup for the engine plus administrative CRUD."""

    FIELDS = ('squad_id', 'name', 'description', 'alert_type', 'condition',
              'message_template', 'severity', 'threshold', 'active')

    def __init__(self, db: DatabaseConnection = None):
        self.db = db or get_db()

    def find_active_for_squad(self, squad_id: int) -> List[AlertRule]:
        """Active rules of the squad plus active global rules, by type then severity (CRITICAL first)."""
        with self.db.session_scope() as session:
            return session.query(AlertRule).filter(
                AlertRule.active.is_(True),
                or_(AlertRule.squad_id == squad_id, AlertRule.squad_id.is_(None))
            ).order_by(
                AlertRule.alert_type.asc(),
                severity_rank(AlertRule.severity),
                AlertRule.id
            ).all()

    def list_rules(self, squad_id: Optional[int] = None) -> List[AlertRule]:
        """All rules, or the squad's rules plus global ones."""
        with self.db.session_scope() as session:
            query = session.query(AlertRule)
            if squad_id is not None:
                query = query.filter(or_(AlertRule.squad_id == squad_id, AlertRule.squad_id.is_(None)))
            return query.order_by(AlertRule.alert_type, severity_rank(AlertRule.severity), AlertRule.id).all()

    def get(self, rule_id: int) -> AlertRule:
        with self.db.session_scope() as session:
            rule = session.get(AlertRule, rule_id)
            if rule is None:
                raise NotFoundError('AlertRule', rule_id)
            return rule

    def create(self, data: Dict) -> AlertRule:
        values = self._validate(data, partial=False)
        with self.db.session_scope() as session:
            rule = AlertRule(**values)
            session.add(rule)
            session.flush()
            logger.info(f"Alert rule created: {rule.name} ({rule.alert_type}, {rule.severity})")
            return rule

    def update(self, rule_id: int, data: Dict) -> AlertRule:
        values = self._validate(data, partial=True)
        with self.db.session_scope() as session:
            rule = session.get(AlertRule, rule_id)
            if rule is None:
                raise NotFoundError('AlertRule', rule_id)
            for key, value in values.items():
                setattr(rule, key, value)
            session.flush()
            logger.info(f"Alert rule updated: {rule.name}")
            return rule

    def delete(self, rule_id: int) -> None:
        with self.db.session_scope() as session:
            rule = session.get(AlertRule, rule_id)
            if rule is None:
                raise NotFoundError('AlertRule', rule_id)
            session.query(Alert).filter(Alert.rule_id == rule_id).update(
                {Alert.rule_id: None}, synchronize_session=False
            )
            session.delete(rule)
            logger.info(f"Alert rule deleted: {rule.name}")

    def seed_defaults(self, rules: Iterable[Dict] = None) -> int:
        """
        Insert default rules whose name is not present yet.

        Args:
            rules: Rule definitions; defaults to config/alert_rules.yaml

        Returns:
            Number of rules created
        """
        if rules is None:
            rules = ConfigManager().get_default_alert_rules()

        created = 0
        with self.db.session_scope() as session:
            existing = {name for (name,) in session.query(AlertRule.name).all()}
            for data in rules:
                if data.get('name') in existing:
                    continue
                session.add(AlertRule(**self._validate(data, partial=False)))
                existing.add(data['name'])
                created += 1

        logger.info(f"Seeded {created} alert rules")
        return created

    def _validate(self, data: Dict, partial: bool) -> Dict:
        """Keep known fields and check enums and condition syntax."""
        values = {k: data[k] for k in self.FIELDS if k in data}

        if not partial:
            for required in ('name', 'alert_type', 'condition', 'message_template'):
                if not values.get(required):
                    raise ValueError(f"Field '{required}' is required")
            values.setdefault('severity', Severity.WARNING.value)
            values.setdefault('active', True)

        if 'alert_type' in values:
            try:
                values['alert_type'] = AlertType(str(values['alert_type']).upper()).value
            except ValueError:
                raise ValueError(f"Unknown alert type: {values['alert_type']}")
        if 'severity' in values:
            try:
                values['severity'] = Severity(str(values['severity']).upper()).value
            except ValueError:
                raise ValueError(f"Unknown severity: {values['severity']}")
        if 'condition' in values:
            try:
                compile_expression(values['condition'])
            except ExpressionError as e:
                raise ValueError(f"Invalid condition: {e.message}")
        if values.get('threshold') is not None:
            values['threshold'] = float(values['threshold'])

        return values
