"""
Error taxonomy for the payment-times pipeline.

Errors carry tenant/run/row identifiers for logging but never row contents.
Messages are clipped so they are safe to persist on execution runs.
"""

from __future__ import annotations

from typing import Any

MAX_MESSAGE_LENGTH = 2000


def bound_message(message: object, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Return ``message`` as text no longer than ``max_length`` characters."""

    text = str(message or "").strip()
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 1] + "…"


class PipelineError(Exception):
    """Base exception for pipeline failures."""

    def __init__(
        self,
        message: str,
        *,
        tenant_id: int | None = None,
        run_id: int | None = None,
        row_no: int | None = None,
    ) -> None:
        super().__init__(bound_message(message))
        self.tenant_id = tenant_id
        self.run_id = run_id
        self.row_no = row_no

    @property
    def message(self) -> str:
        return self.args[0] if self.args else ""

    def context(self) -> dict[str, Any]:
        """Structured fields suitable for ``logger.*(extra=...)``."""

        payload: dict[str, Any] = {"importer_error": type(self).__name__}
        if self.tenant_id is not None:
            payload["importer_tenant_id"] = self.tenant_id
        if self.run_id is not None:
            payload["importer_run_id"] = self.run_id
        if self.row_no is not None:
            payload["importer_row_no"] = self.row_no
        return payload


class ValidationError(PipelineError):
    """Malformed input: unreadable header, invalid map or rule payload."""


class NotFoundError(PipelineError):
    """Unknown tenant, run or dataset."""


class CapacityError(PipelineError):
    """The per-run row cap was exceeded. Not retried."""

    def __init__(self, message: str, *, limit: int, actual: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.limit = limit
        self.actual = actual


class TransientStorageError(PipelineError):
    """A storage conflict that the caller may retry at the adapter boundary."""


class StageLockedError(TransientStorageError):
    """Another stage currently holds the per-run lock."""
