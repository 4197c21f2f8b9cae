"""
SQLAlchemy ORM Models
Defines the database models used by the sync queue and the alert engine.
"""

from enum import Enum

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey,
    Index, Integer, String, Text
)
from sqlalchemy.orm import declarative_base, relationship

from kaos_sync.utils.helpers import utcnow

Base = declarative_base()


# ============================================
# ENUMERATIONS
# ============================================

class SyncState(str, Enum):
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    ERROR = 'ERROR'


class OperationType(str, Enum):
    SYNC_ISSUES = 'SYNC_ISSUES'
    SYNC_WORKLOGS = 'SYNC_WORKLOGS'
    SYNC_COMMENTS = 'SYNC_COMMENTS'
    POST_WORKLOG = 'POST_WORKLOG'


class SyncMode(str, Enum):
    FULL = 'FULL'
    INCREMENTAL = 'INCREMENTAL'
    DRY_RUN = 'DRY_RUN'  # Searches only, nothing is persisted


class SprintState(str, Enum):
    PLANNING = 'PLANNING'
    ACTIVE = 'ACTIVE'
    CLOSED = 'CLOSED'


class Severity(str, Enum):
    CRITICAL = 'CRITICAL'
    WARNING = 'WARNING'
    INFO = 'INFO'

    @property
    def rank(self) -> int:
        """0 for the most severe."""
        return SEVERITY_RANK[self.value]


SEVERITY_RANK = {'CRITICAL': 0, 'WARNING': 1, 'INFO': 2}


class AlertType(str, Enum):
    CUSTOM = 'CUSTOM'
    HOURS_DEVIATION = 'HOURS_DEVIATION'
    MISSING_WORKLOG = 'MISSING_WORKLOG'
    SPRINT_AT_RISK = 'SPRINT_AT_RISK'
    STALLED_TASK = 'STALLED_TASK'
    STATUS_MISMATCH = 'STATUS_MISMATCH'
    ZERO_ESTIMATE = 'ZERO_ESTIMATE'


# ============================================
# PLANNING DATA (owned by other services)
# ============================================

class Squad(Base):
    """Squad model."""
    __tablename__ = 'squads'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    sprints = relationship("Sprint", back_populates="squad")
    persons = relationship("Person", back_populates="squad")
    sync_config = relationship("SquadSyncConfig", back_populates="squad", uselist=False)


class Person(Base):
    """Squad member."""
    __tablename__ = 'persons'

    id = Column(Integer, primary_key=True)
    squad_id = Column(Integer, ForeignKey('squads.id'))
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    jira_account_id = Column(String(255), unique=True)
    active = Column(Boolean, default=True, nullable=False)

    squad = relationship("Squad", back_populates="persons")


class Sprint(Base):
    """Planning sprint."""
    __tablename__ = 'sprints'

    id = Column(Integer, primary_key=True)
    squad_id = Column(Integer, ForeignKey('squads.id'), nullable=False)
    name = Column(String(255), nullable=False)
    state = Column(String(20), nullable=False, default=SprintState.PLANNING.value)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    created_at = Column(DateTime, default=utcnow)

    squad = relationship("Squad", back_populates="sprints")
    tasks = relationship("Task", back_populates="sprint")

    __table_args__ = (
        Index('idx_sprints_squad_state', 'squad_id', 'state'),
    )


class Task(Base):
    """Planning task, optionally linked to a Jira issue by key."""
    __tablename__ = 'tasks'

    id = Column(Integer, primary_key=True)
    sprint_id = Column(Integer, ForeignKey('sprints.id'), nullable=False)
    title = Column(String(500), nullable=False)
    status = Column(String(50), nullable=False, default='PENDING')
    jira_key = Column(String(50))

    sprint = relationship("Sprint", back_populates="tasks")


# ============================================
# SYNC STATE
# ============================================

class SquadSyncConfig(Base):
    """Per-squad Jira connection and sync bookkeeping."""
    __tablename__ = 'squad_sync_configs'

    id = Column(Integer, primary_key=True)
    squad_id = Column(Integer, ForeignKey('squads.id'), nullable=False, unique=True)
    active = Column(Boolean, default=True, nullable=False)
    base_url = Column(String(500))
    username = Column(String(255))
    credential_ref = Column(String(255))  # Name of the env var holding the API token
    board_ids = Column(String(255))  # Comma separated
    last_sync_at = Column(DateTime)
    last_error = Column(Text)
    issues_synced = Column(Integer, default=0)
    worklogs_synced = Column(Integer, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    squad = relationship("Squad", back_populates="sync_config")

    @property
    def board_id_list(self) -> list:
        return [b.strip() for b in (self.board_ids or '').split(',') if b.strip()]


class JiraIssue(Base):
    """Jira issue snapshot stored by the sync."""
    __tablename__ = 'jira_issues'

    id = Column(Integer, primary_key=True)
    jira_id = Column(String(50))
    issue_key = Column(String(50), nullable=False, unique=True)
    squad_id = Column(Integer, ForeignKey('squads.id'), nullable=False)
    sprint_id = Column(Integer, ForeignKey('sprints.id'))
    parent_key = Column(String(50))

    summary = Column(Text)
    issue_type = Column(String(100))
    status = Column(String(100))
    priority = Column(String(50))
    assignee_account_id = Column(String(255))
    assignee_name = Column(String(255))

    # Time tracking, in hours
    estimate_hours = Column(Float)
    hours_spent = Column(Float)

    jira_updated_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_jira_issues_sprint', 'sprint_id'),
        Index('idx_jira_issues_squad_updated', 'squad_id', 'jira_updated_at'),
    )


class JiraWorklog(Base):
    """Worklog entry fetched from Jira."""
    __tablename__ = 'jira_worklogs'

    id = Column(Integer, primary_key=True)
    jira_id = Column(String(50), nullable=False, unique=True)
    issue_key = Column(String(50), nullable=False)
    author_account_id = Column(String(255))
    person_id = Column(Integer, ForeignKey('persons.id'))
    work_date = Column(Date, nullable=False)
    hours = Column(Float, nullable=False, default=0.0)
    comment = Column(Text)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_jira_worklogs_person_date', 'person_id', 'work_date'),
    )


class QuotaWindow(Base):
    """Shared Jira call counter; one row per quota name."""
    __tablename__ = 'jira_quota_windows'

    name = Column(String(50), primary_key=True)
    consumed = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class JiraComment(Base):
    """Issue comment fetched from Jira."""
    __tablename__ = 'jira_comments'

    id = Column(Integer, primary_key=True)
    jira_id = Column(String(50), nullable=False, unique=True)
    issue_key = Column(String(50), nullable=False)
    author_account_id = Column(String(255))
    author_name = Column(String(255))
    person_id = Column(Integer, ForeignKey('persons.id'))
    body = Column(Text)
    jira_created_at = Column(DateTime)
    jira_updated_at = Column(DateTime)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_jira_comments_issue', 'issue_key'),
    )


class SyncOperation(Base):
    """Queued external-sync operation."""
    __tablename__ = 'sync_operations'

    id = Column(Integer, primary_key=True)
    squad_id = Column(Integer, ForeignKey('squads.id'), nullable=False)
    operation_type = Column(String(30), nullable=False)
    state = Column(String(20), nullable=False, default=SyncState.PENDING.value)
    payload = Column(Text)  # JSON
    attempts = Column(Integer, nullable=False, default=0)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error_message = Column(Text)

    __table_args__ = (
        Index('idx_sync_operations_state_scheduled', 'state', 'scheduled_at'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'squad_id': self.squad_id,
            'operation_type': self.operation_type,
            'state': self.state,
            'attempts': self.attempts,
            'scheduled_at': self.scheduled_at.isoformat() if self.scheduled_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'error_message': self.error_message
        }


# ============================================
# ALERTS
# ============================================

class AlertRule(Base):
    """Configurable alert rule; squad_id NULL means global."""
    __tablename__ = 'alert_rules'

    id = Column(Integer, primary_key=True)
    squad_id = Column(Integer, ForeignKey('squads.id'))
    name = Column(String(200), nullable=False, unique=True)
    description = Column(Text)
    alert_type = Column(String(30), nullable=False)
    condition = Column(Text, nullable=False)
    message_template = Column(Text, nullable=False)
    severity = Column(String(20), nullable=False, default=Severity.WARNING.value)
    threshold = Column(Float)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'squad_id': self.squad_id,
            'name': self.name,
            'description': self.description,
            'alert_type': self.alert_type,
            'condition': self.condition,
            'message_template': self.message_template,
            'severity': self.severity,
            'threshold': self.threshold,
            'active': self.active
        }


class Alert(Base):
    """Alert produced by an engine run."""
    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True)
    sprint_id = Column(Integer, ForeignKey('sprints.id'), nullable=False)
    squad_id = Column(Integer, ForeignKey('squads.id'), nullable=False)
    rule_id = Column(Integer, ForeignKey('alert_rules.id', ondelete='SET NULL'))
    rule_name = Column(String(200))
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    issue_key = Column(String(50))
    person_id = Column(Integer, ForeignKey('persons.id'))
    person_name = Column(String(255))
    resolved = Column(Boolean, nullable=False, default=False)
    email_notified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_alerts_sprint_resolved', 'sprint_id', 'resolved'),
        Index('idx_alerts_squad', 'squad_id'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sprint_id': self.sprint_id,
            'squad_id': self.squad_id,
            'rule_id': self.rule_id,
            'rule_name': self.rule_name,
            'severity': self.severity,
            'message': self.message,
            'issue_key': self.issue_key,
            'person_id': self.person_id,
            'person_name': self.person_name,
            'resolved': self.resolved,
            'email_notified': self.email_notified,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
