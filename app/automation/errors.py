from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    code = "AUTOMATION_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AutomationError):
    code = "VALIDATION_ERROR"


class NotFoundError(AutomationError):
    code = "NOT_FOUND"


class DependencyError(AutomationError):
    code = "DEPENDENCY_UNAVAILABLE"
    retryable = True
