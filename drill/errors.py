"""Error taxonomy shared by the decision, objective and visibility layers.

Every error carries an HTTP status so the API layer can translate it with a
single exception handler. ``DependencyDegraded`` is never surfaced to callers
of ``DecisionEngine.execute``; it is caught at each post-commit step.
"""
from __future__ import annotations


class DrillError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class NotFound(DrillError):
    status_code = 404

    def __init__(self, label: str, entity_id: object = None):
        suffix = f" {entity_id}" if entity_id is not None else ""
        super().__init__(f"{label}{suffix} not found")
        self.label = label
        self.entity_id = entity_id


class Forbidden(DrillError):
    status_code = 403


class InvalidState(DrillError):
    """Action attempted outside its valid source state."""
    status_code = 409

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict:
        return {**super().to_dict(), "current_status": self.current_status}


class ConcurrencyConflict(InvalidState):
    """Lost the execute race: another caller already moved the decision on."""


class NoPendingStep(DrillError):
    status_code = 400


class DependencyDegraded(DrillError):
    """AI classification, inject generation or evaluation failed."""
    status_code = 502

    def __init__(self, dependency: str, message: str, retryable: bool = False):
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.retryable = retryable
