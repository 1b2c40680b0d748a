"""Transaction level exceptions and helpers for driver error translation."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import psycopg
from sqlalchemy import exc as sa_exc

__all__ = [
    "TransactionError",
    "AcquisitionError",
    "PropagationViolation",
    "CommitError",
    "RollbackError",
    "UnexpectedRollbackError",
    "TransactionTimeoutError",
    "ContextStackError",
    "IllegalTransactionStateError",
    "DRIVER_ERRORS",
    "translate_driver_errors",
]


DRIVER_ERRORS: tuple[type[Exception], ...] = (
    sqlite3.Error,
    psycopg.Error,
    sa_exc.SQLAlchemyError,
)


class TransactionError(Exception):
    """Base class for transaction management errors."""


class AcquisitionError(TransactionError):
    """Raised when the resource factory cannot open a handle."""


class PropagationViolation(TransactionError):
    """Raised when the requested propagation mode forbids the call."""

    def __init__(self, message: str, *, mode: object) -> None:
        super().__init__(message)
        self.mode = mode


class CommitError(TransactionError):
    """Raised when commit failed; carries the outcome of the follow-up rollback.

    ``rolled_back`` is ``True`` when the store was rolled back cleanly after
    the failed commit. When the rollback failed as well the data state is
    unknown and ``state_undefined`` reports it.
    """

    def __init__(
        self,
        message: str,
        *,
        commit_error: BaseException,
        rollback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.commit_error = commit_error
        self.rollback_error = rollback_error

    @property
    def rolled_back(self) -> bool:
        return self.rollback_error is None

    @property
    def state_undefined(self) -> bool:
        return self.rollback_error is not None


class RollbackError(TransactionError):
    """Raised when rollback failed. The store may hold partial writes.

    ``original_error`` is the failure that triggered the rollback, if any.
    """

    atomic = False

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.original_error = original_error


class UnexpectedRollbackError(TransactionError):
    """Raised when a commit was requested for a rollback-only transaction."""


class TransactionTimeoutError(TransactionError):
    """Raised when an operation runs after the transaction deadline."""


class ContextStackError(TransactionError):
    """Raised when the context registry contract is broken by the caller."""


class IllegalTransactionStateError(TransactionError):
    """Raised when a completed or foreign transaction is mutated."""


@dataclass(slots=True)
class _OperationContext:
    """Internal helper describing the failing operation for error messages."""

    operation: str | None = None

    def format(self, message: str) -> str:
        if self.operation:
            return f"{self.operation}: {message}"
        return message


def _translate_driver_error(exc: Exception, *, context: _OperationContext) -> TransactionError:
    if isinstance(exc, (sqlite3.OperationalError, psycopg.OperationalError, sa_exc.OperationalError)):
        return AcquisitionError(context.format(f"store unavailable ({exc})"))
    if isinstance(exc, (sqlite3.Error, psycopg.Error, sa_exc.DBAPIError)):
        return AcquisitionError(context.format(f"driver error ({exc})"))
    return TransactionError(context.format(str(exc)))


@contextmanager
def translate_driver_errors(*, operation: str | None = None) -> Iterator[None]:
    """Translate driver errors raised while opening handles into ``AcquisitionError``."""

    context = _OperationContext(operation)
    try:
        yield
    except DRIVER_ERRORS as exc:
        raise _translate_driver_error(exc, context=context) from exc
