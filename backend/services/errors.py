from __future__ import annotations


class EngineValidationError(ValueError):
    """Input rejected before any computation or store operation."""


class PlanValidationError(EngineValidationError):
    pass


class QuotaValidationError(EngineValidationError):
    pass


class CheckInValidationError(EngineValidationError):
    pass


class TemporarilyUnavailableError(RuntimeError):
    """An atomic update kept losing to concurrent writers and gave up."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"{operation} temporarily unavailable after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts
