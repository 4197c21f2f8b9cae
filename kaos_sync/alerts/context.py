"""
Evaluation Context Module
Immutable snapshot of a sprint's state, built once per alert evaluation.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from sqlalchemy.orm import Session

from kaos_sync.database.models import AlertRule, JiraIssue, JiraWorklog, Person, Sprint, Task
from kaos_sync.utils.helpers import count_weekdays_without


@dataclass(frozen=True)
class SprintSnapshot:
    id: int
    squad_id: int
    name: str
    state: str
    start_date: date
    end_date: Optional[date]


@dataclass(frozen=True)
class IssueSnapshot:
    key: str
    summary: Optional[str]
    issue_type: Optional[str]
    status: Optional[str]
    assignee: Optional[str]
    priority: Optional[str]
    parent_key: Optional[str]
    estimate_hours: Optional[float]
    hours_spent: Optional[float]
    days_in_progress: int
    task_status: Optional[str] = None
    task_title: Optional[str] = None

    @property
    def deviation_pct(self) -> Optional[int]:
        """Hours spent as a percentage of the estimate, rounded half up."""
        if not self.estimate_hours or self.hours_spent is None or self.estimate_hours <= 0:
            return None
        return int(math.floor(self.hours_spent * 100 / self.estimate_hours + 0.5))


@dataclass(frozen=True)
class PersonSnapshot:
    id: int
    name: str
    email: Optional[str]
    days_without_worklog: int


@dataclass(frozen=True)
class EvaluationContext:
    """
    Everything a rule may look at for one sprint.

    Percentages are integer floors. ``delta`` is time elapsed minus work
    completed, so a positive value means the sprint is behind.
    """
    sprint: SprintSnapshot
    squad_id: int
    today: date
    total_days: int
    elapsed_days: int
    time_pct: int
    completion_pct: int
    done_count: int
    issues: Tuple[IssueSnapshot, ...]
    persons: Tuple[PersonSnapshot, ...]

    @property
    def delta(self) -> int:
        return self.time_pct - self.completion_pct

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    # ========================================
    # Variable Scopes
    # ========================================

    def sprint_variables(self, rule: AlertRule) -> Dict[str, Any]:
        """Variables available to every rule."""
        return {
            'sprint': {
                'id': self.sprint.id,
                'name': self.sprint.name,
                'state': self.sprint.state,
                'start_date': self.sprint.start_date.isoformat(),
                'end_date': self.sprint.end_date.isoformat() if self.sprint.end_date else None,
            },
            'squad_id': self.squad_id,
            'today': self.today.isoformat(),
            'time_pct': self.time_pct,
            'completion_pct': self.completion_pct,
            'delta': self.delta,
            'elapsed_days': self.elapsed_days,
            'total_days': self.total_days,
            'issue_count': self.issue_count,
            'done_count': self.done_count,
            'rule': {
                'name': rule.name,
                'type': rule.alert_type,
                'severity': rule.severity,
                'threshold': rule.threshold,
            },
            'threshold': rule.threshold,
        }

    def issue_variables(self, issue: IssueSnapshot, rule: AlertRule) -> Dict[str, Any]:
        """Sprint variables plus one issue and its linked planning task."""
        variables = self.sprint_variables(rule)
        task = None
        if issue.task_status is not None:
            task = {'status': issue.task_status, 'title': issue.task_title}

        variables.update({
            'issue': {
                'key': issue.key,
                'summary': issue.summary,
                'type': issue.issue_type,
                'status': issue.status,
                'local_status': issue.task_status,
                'assignee': issue.assignee,
                'priority': issue.priority,
                'parent_key': issue.parent_key,
                'estimate_hours': issue.estimate_hours,
                'hours_spent': issue.hours_spent,
            },
            'task': task,
            'days_in_progress': issue.days_in_progress,
            'deviation_pct': issue.deviation_pct,
            'issue_key': issue.key,
            'tracker_status': issue.status,
            'local_status': issue.task_status,
            'estimate': issue.estimate_hours,
            'hours_spent': issue.hours_spent,
        })
        return variables

    def person_variables(self, person: PersonSnapshot, rule: AlertRule) -> Dict[str, Any]:
        """Sprint variables plus one squad member."""
        variables = self.sprint_variables(rule)
        variables.update({
            'person': {'id': person.id, 'name': person.name, 'email': person.email},
            'person_name': person.name,
            'days_without_worklog': person.days_without_worklog,
        })
        return variables


# ========================================
# Builder
# ========================================

def _days_since(value: Optional[datetime], today: date) -> int:
    if value is None:
        return 0
    return max(0, (today - value.date()).days)


def build_context(
    session: Session,
    sprint: Sprint,
    squad_id: int,
    today: date,
    done_statuses: Iterable[str] = ('Done',)
) -> EvaluationContext:
    """
    Load issues, tasks, persons and worklog days for a sprint.

    Args:
        session: Open database session
        sprint: Sprint being evaluated
        squad_id: Squad owning the evaluation
        today: Reference day for elapsed-time metrics
        done_statuses: Jira status names counted as completed (case-insensitive)
    """
    done_set = {s.lower() for s in done_statuses}

    issue_rows = session.query(JiraIssue).filter(
        JiraIssue.sprint_id == sprint.id
    ).order_by(JiraIssue.issue_key).all()

    tasks_by_key: Dict[str, Task] = {}
    for task in session.query(Task).filter(
        Task.sprint_id == sprint.id,
        Task.jira_key.isnot(None)
    ).order_by(Task.id).all():
        tasks_by_key.setdefault(task.jira_key, task)

    start = sprint.start_date
    end = sprint.end_date or today
    total_days = max(1, (end - start).days + 1)
    elapsed_days = max(0, min((today - start).days + 1, total_days))
    time_pct = elapsed_days * 100 // total_days

    issues = []
    done_count = 0
    for row in issue_rows:
        if (row.status or '').lower() in done_set:
            done_count += 1
        task = tasks_by_key.get(row.issue_key)
        issues.append(IssueSnapshot(
            key=row.issue_key,
            summary=row.summary,
            issue_type=row.issue_type,
            status=row.status,
            assignee=row.assignee_name,
            priority=row.priority,
            parent_key=row.parent_key,
            estimate_hours=row.estimate_hours,
            hours_spent=row.hours_spent,
            days_in_progress=_days_since(row.jira_updated_at or row.updated_at, today),
            task_status=task.status if task else None,
            task_title=task.title if task else None,
        ))

    completion_pct = done_count * 100 // len(issues) if issues else 0

    person_rows = session.query(Person).filter(
        Person.squad_id == squad_id,
        Person.active.is_(True)
    ).order_by(Person.name).all()

    worked: Dict[int, Set[date]] = {p.id: set() for p in person_rows}
    if person_rows and today >= start:
        for person_id, work_date in session.query(JiraWorklog.person_id, JiraWorklog.work_date).filter(
            JiraWorklog.person_id.in_(list(worked)),
            JiraWorklog.work_date >= start,
            JiraWorklog.work_date <= today
        ).all():
            worked[person_id].add(work_date)

    persons = tuple(
        PersonSnapshot(
            id=p.id,
            name=p.name,
            email=p.email,
            days_without_worklog=count_weekdays_without(start, today, worked[p.id])
        )
        for p in person_rows
    )

    return EvaluationContext(
        sprint=SprintSnapshot(
            id=sprint.id,
            squad_id=sprint.squad_id,
            name=sprint.name,
            state=sprint.state,
            start_date=sprint.start_date,
            end_date=sprint.end_date
        ),
        squad_id=squad_id,
        today=today,
        total_days=total_days,
        elapsed_days=elapsed_days,
        time_pct=time_pct,
        completion_pct=completion_pct,
        done_count=done_count,
        issues=tuple(issues),
        persons=persons
    )
