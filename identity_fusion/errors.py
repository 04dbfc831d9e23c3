from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class FusionError(Exception):
    """Base class for every error surfaced to the host."""

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation


class ConfigurationError(FusionError):
    """Missing or malformed settings. Raised at load time, never retried."""


class PreconditionError(FusionError):
    """A required collaborator or value is missing for the current run."""


class ProcessLockError(FusionError):
    """Another run holds the process lock. The lock has been reset."""


class TemplateError(FusionError):
    """A template rendered to an empty value or failed to render."""


class ApiError(FusionError):
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        if self.status is None:
            return True
        return self.status == 429 or self.status >= 500


class RetryExhaustedError(PreconditionError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def assert_that(value: object, message: str) -> None:
    if not value:
        logger.error("Assertion failed: %s", message)
        raise PreconditionError(message)


def soft_assert(value: object, message: str, level: int = logging.WARNING) -> bool:
    if not value:
        logger.log(level, "%s", message)
        return False
    return True


@contextmanager
def wrap_operation(operation: str) -> Iterator[None]:
    """Re-raise foreign exceptions as ``FusionError("Failed to <operation>: ...")``.

    Errors already belonging to the taxonomy keep their class; only the message
    is prefixed so the host sees which operation failed.
    """
    try:
        yield
    except FusionError as exc:
        if exc.operation is None:
            exc.operation = operation
            exc.args = (f"Failed to {operation}: {exc}",)
        raise
    except Exception as exc:
        logger.exception("Failed to %s", operation)
        raise FusionError(f"Failed to {operation}: {exc}", operation=operation) from exc
