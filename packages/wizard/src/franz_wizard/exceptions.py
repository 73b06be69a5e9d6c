"""Wizard-specific exceptions.

All of them extend the ``franz_common`` hierarchy, so catching
``FranzError`` covers workflow, stage and export failures alike.
"""

from __future__ import annotations

from typing import Any

from franz_common.exceptions import OperationError, ValidationError


class WorkflowValidationError(ValidationError):
    """Raised when a workflow definition is inconsistent.

    Attributes:
        errors: Every problem found, so callers can report them all at once.
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.errors = list(errors or [])
        context = dict(context or {})
        context.setdefault("errors", self.errors)
        super().__init__(message, context=context)


class DependenciesNotMetError(OperationError):
    """Raised when a stage is run before its dependencies are completed."""

    def __init__(self, stage_id: str, missing: list[str]) -> None:
        self.stage_id = stage_id
        self.missing = missing
        super().__init__(
            f"Stage '{stage_id}' cannot run until {', '.join(missing)} "
            f"{'is' if len(missing) == 1 else 'are'} completed",
            context={"stage_id": stage_id, "missing": missing},
        )


class TemplateResolutionError(ValidationError):
    """Raised when a strict template render meets unresolved placeholders."""

    def __init__(self, placeholders: list[str], template: str | None = None) -> None:
        self.placeholders = placeholders
        super().__init__(
            f"Unresolved template placeholders: {', '.join(placeholders)}",
            context={"placeholders": placeholders, "template": template},
        )


class StageExecutionError(OperationError):
    """Raised when a stage cannot produce output."""

    pass


class ExportJobError(OperationError):
    """Raised when an export job cannot be created or processed."""

    pass


__all__ = [
    "WorkflowValidationError",
    "DependenciesNotMetError",
    "TemplateResolutionError",
    "StageExecutionError",
    "ExportJobError",
]
