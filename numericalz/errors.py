"""
Domain error taxonomy.

Services raise these; the HTTP layer maps them to status codes in
``main.register_error_handlers``. Bulk operations catch them per item.
"""
from typing import Optional


class NumericalzError(Exception):
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(NumericalzError):
    """Bad input shape or cardinality. Nothing was mutated."""
    status_code = 400


class NotFound(NumericalzError):
    status_code = 404


class InvalidStage(NumericalzError):
    """Target stage is not a member of the workflow type's stage set."""
    status_code = 400

    def __init__(self, stage, workflow_type):
        super().__init__(
            f"Invalid stage {stage!r} for {workflow_type} workflow",
            detail={"stage": str(stage), "workflow_type": str(workflow_type)},
        )
        self.stage = stage
        self.workflow_type = workflow_type


class StageConflict(NumericalzError):
    """The workflow moved on since the caller last read it."""
    status_code = 409


class DeadlineUnresolvable(NumericalzError):
    """Not enough company data to derive a deadline."""
    status_code = 422


class PersistenceError(NumericalzError):
    """Transaction failed and was rolled back. Safe to retry."""
    status_code = 503


class CompaniesHouseError(NumericalzError):
    """Company registry lookup failed (auth, rate limit or upstream error)."""
    status_code = 502

    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        if status_code is not None:
            self.status_code = status_code
