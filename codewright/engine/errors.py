"""Error taxonomy shared by the engine.

Tool errors are caught at the executor boundary and turned into inline
observations. ``BackendError`` is the one kind that ends a task.
"""

from __future__ import annotations


class ToolError(Exception):
    """Base class for failures reported back to the model as observations."""


class ValidationError(ToolError):
    """Malformed parameters or search text that cannot be resolved."""


class NotFoundError(ToolError):
    """A file, directory or entity the tool needs does not exist."""


class ApprovalBusyError(ToolError):
    """A command approval was requested while another one is still pending."""


class TransactionFailure(ToolError):
    """A diff transaction failed and was rolled back."""

    def __init__(self, cause: str, rollback_errors: dict[str, str] | None = None) -> None:
        self.cause = cause
        self.rollback_errors = dict(rollback_errors or {})
        super().__init__(self.describe())

    @property
    def rolled_back(self) -> bool:
        return not self.rollback_errors

    def describe(self) -> str:
        if self.rolled_back:
            return f"{self.cause}. No changes were saved (rollback successful)."
        failed = ", ".join(f"{path} ({err})" for path, err in self.rollback_errors.items())
        return f"{self.cause}. Rollback FAILED for: {failed}. Inspect these files manually."


class BackendError(Exception):
    """A model or embedding provider call failed."""

    def __init__(self, message: str, status: int | None = None, provider: str | None = None) -> None:
        self.message = message
        self.status = status
        self.provider = provider
        prefix = f"{provider} " if provider else ""
        suffix = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"{prefix}backend error{suffix}: {message}")
