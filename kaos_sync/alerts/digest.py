"""
Sync Digest Module
Emails a summary of unnotified alerts after a squad sync.

Sending never raises: failures are logged and reported as False.
"""

import smtplib
from email.mime.text import MIMEText
from html import escape
from typing import Callable, Dict, List, Optional

from kaos_sync.alerts.store import AlertStore
from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import Alert, Severity, Sprint, SprintState, Squad
from kaos_sync.utils.logger import LoggerMixin

SEVERITY_COLORS = {
    Severity.CRITICAL.value: '#c0392b',
    Severity.WARNING.value: '#e67e22',
    Severity.INFO.value: '#2980b9',
}


def _recipients(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [r.strip() for r in value if r and r.strip()]


def render_digest(squad_name: str, sprint_name: str, sync_result, alerts: List[Alert]) -> str:
    """Build the HTML body of a digest."""
    counts: Dict[str, int] = {s.value: 0 for s in Severity}
    for alert in alerts:
        counts[alert.severity] = counts.get(alert.severity, 0) + 1

    rows = []
    for alert in alerts:
        color = SEVERITY_COLORS.get(alert.severity, '#7f8c8d')
        rows.append(
            '<tr>'
            f'<td style="color:{color};font-weight:bold">{escape(alert.severity)}</td>'
            f'<td>{escape(alert.rule_name or "")}</td>'
            f'<td>{escape(alert.issue_key or alert.person_name or "")}</td>'
            f'<td>{escape(alert.message)}</td>'
            '</tr>'
        )

    summary = ''
    if sync_result is not None:
        summary = (
            f'<p>Sync {escape(sync_result.mode)}: {sync_result.issues_synced} issues, '
            f'{sync_result.subtasks_synced} subtasks, {sync_result.worklogs_synced} worklogs.</p>'
        )

    return (
        '<html><body>'
        f'<h2>{escape(squad_name)} - {escape(sprint_name)}</h2>'
        f'{summary}'
        f'<p>{counts[Severity.CRITICAL.value]} critical, {counts[Severity.WARNING.value]} warning, '
        f'{counts[Severity.INFO.value]} info</p>'
        '<table border="1" cellpadding="4" cellspacing="0">'
        '<tr><th>Severity</th><th>Rule</th><th>Subject</th><th>Message</th></tr>'
        f'{"".join(rows)}'
        '</table>'
        '</body></html>'
    )


class SyncDigest(LoggerMixin):
    """Sends one email per sync with the sprint's new alerts."""

    def __init__(
        self,
        db: DatabaseConnection = None,
        alert_store: AlertStore = None,
        email_config: Optional[Dict] = None,
        smtp_factory: Callable = smtplib.SMTP
    ):
        self.db = db or get_db()
        self.alert_store = alert_store or AlertStore(self.db)
        self.config = email_config if email_config is not None else ConfigManager().get_email_config()
        self.smtp_factory = smtp_factory

    def is_configured(self) -> bool:
        return bool(
            self.config.get('enabled', False)
            and self.config.get('smtp_host')
            and _recipients(self.config.get('recipients'))
        )

    def send_for_squad(self, squad_id: int, sync_result=None) -> bool:
        """
        Email the unnotified alerts of the squad's active sprint.

        Alerts are marked notified only after a successful send.

        Returns:
            True if an email was sent
        """
        if not self.is_configured():
            self.logger.debug("Email digest not configured, skipping")
            return False

        with self.db.session_scope() as session:
            sprint = session.query(Sprint).filter(
                Sprint.squad_id == squad_id,
                Sprint.state == SprintState.ACTIVE.value
            ).order_by(Sprint.start_date.desc(), Sprint.id.desc()).first()
            if sprint is None:
                return False
            squad = session.get(Squad, squad_id)
            squad_name = squad.name if squad else f"Squad {squad_id}"
            sprint_id, sprint_name = sprint.id, sprint.name

        alerts = self.alert_store.find_unnotified(sprint_id)
        if not alerts:
            self.logger.debug(f"No new alerts for sprint {sprint_id}, digest not sent")
            return False

        if self.config.get('only_when_critical', False) and not any(
            a.severity == Severity.CRITICAL.value for a in alerts
        ):
            self.logger.info(f"No critical alerts for sprint {sprint_id}, digest not sent")
            return False

        subject = f"[KAOS] {squad_name} - {sprint_name}: {len(alerts)} new alerts"
        body = render_digest(squad_name, sprint_name, sync_result, alerts)

        if not self._send(subject, body):
            return False

        self.alert_store.mark_email_notified(sprint_id)
        return True

    def _send(self, subject: str, html_body: str) -> bool:
        recipients = _recipients(self.config.get('recipients'))
        sender = self.config.get('sender') or self.config.get('username') or 'kaos@localhost'

        msg = MIMEText(html_body, 'html', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = sender
        msg['To'] = ', '.join(recipients)

        try:
            with self.smtp_factory(
                self.config.get('smtp_host'),
                int(self.config.get('smtp_port', 587)),
                timeout=int(self.config.get('timeout', 30))
            ) as server:
                if self.config.get('use_tls', True):
                    server.starttls()
                if self.config.get('username'):
                    server.login(self.config.get('username'), self.config.get('password', ''))
                server.send_message(msg)
            self.logger.info(f"Sync digest sent to {len(recipients)} recipients")
            return True
        except Exception:
            self.logger.exception("Failed to send sync digest")
            return False
