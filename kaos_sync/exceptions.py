"""
Exceptions Module
Error types shared by the sync and alert subsystems.
"""


class KaosSyncError(Exception):
    """Base class for sync subsystem errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(KaosSyncError):
    """A sprint, rule, alert, squad config or queue row does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class QuotaExhaustedError(KaosSyncError):
    """No quota left in the current rate limit window."""

    def __init__(self, consumed: int, limit: int):
        self.consumed = consumed
        self.limit = limit
        super().__init__(f"Jira API quota exhausted ({consumed}/{limit} calls in current window)")


class InvalidTransitionError(KaosSyncError):
    """A queue row was asked to move to a state its current state does not allow."""

    def __init__(self, operation_id: int, current: str, target: str):
        self.operation_id = operation_id
        self.current = current
        self.target = target
        super().__init__(f"Sync operation {operation_id} cannot move from {current} to {target}")


class UnsupportedOperationError(KaosSyncError):
    """The orchestrator has no handler for an operation type."""


class RuleEvaluationError(KaosSyncError):
    """An alert rule could not be evaluated."""


class ExpressionError(RuleEvaluationError):
    """A rule condition failed to parse or evaluate."""
