"""Transaction context value objects.

A :class:`TransactionContext` describes one in-flight unit of work: who
created it, which handle it owns and where it is in its lifecycle. Only the
manager (state transitions) and the binder (handle assignment) mutate it.
"""

from __future__ import annotations

import asyncio
import threading
import time
import weakref
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from itertools import count
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .exceptions import IllegalTransactionStateError, TransactionTimeoutError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .resources import ConnectionHandle, ResourceFactory


class TransactionState(str, Enum):
    ACTIVE = "active"
    MARKED_FOR_ROLLBACK = "marked_for_rollback"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"


LIVE_STATES = frozenset(
    {
        TransactionState.ACTIVE,
        TransactionState.MARKED_FOR_ROLLBACK,
        TransactionState.COMMITTING,
        TransactionState.ROLLING_BACK,
    }
)


class TransactionOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    UNKNOWN = "unknown"


class Propagation(str, Enum):
    """How a call relates to a transaction that may already be running."""

    REQUIRED = "required"
    REQUIRES_NEW = "requires_new"
    MANDATORY = "mandatory"
    NEVER = "never"
    SUPPORTS = "supports"
    NOT_SUPPORTED = "not_supported"
    NESTED = "nested"


@dataclass(frozen=True, slots=True)
class TransactionDefinition:
    """Call-site configuration for a guarded operation.

    ``isolation`` is passed through to the store untouched and ``read_only``
    is advisory. ``timeout`` bounds the lifetime of a newly created context;
    joined calls inherit the deadline of the context they join.
    """

    propagation: Propagation = Propagation.REQUIRED
    isolation: str | None = None
    read_only: bool = False
    timeout: timedelta | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.timeout is not None and self.timeout <= timedelta(0):
            raise ValueError("transaction timeout must be positive")


_task_serials: "weakref.WeakKeyDictionary[asyncio.Task[Any], int]" = weakref.WeakKeyDictionary()
_task_serials_lock = threading.Lock()
_next_task_serial = count(1)


def _task_serial(task: "asyncio.Task[Any]") -> int:
    """Return a number that no other task of this process has been given."""

    with _task_serials_lock:
        serial = _task_serials.get(task)
        if serial is None:
            serial = _task_serials[task] = next(_next_task_serial)
        return serial


@dataclass(frozen=True, slots=True)
class ExecutionUnit:
    """Identity of the thread and, when inside an event loop, the task."""

    thread_id: int
    task_id: int | None = None

    @classmethod
    def current(cls) -> "ExecutionUnit":
        try:
            task = asyncio.current_task()
        except RuntimeError:
            task = None
        return cls(
            thread_id=threading.get_ident(),
            task_id=_task_serial(task) if task is not None else None,
        )


@dataclass(slots=True, eq=False)
class TransactionContext:
    """An in-flight unit of work bound to a single execution unit."""

    propagation: Propagation
    owner: ExecutionUnit
    isolation: str | None = None
    read_only: bool = False
    deadline: float | None = None
    name: str | None = None
    parent: "TransactionContext | None" = None
    id: str = field(default_factory=lambda: uuid4().hex)
    state: TransactionState = TransactionState.ACTIVE
    handle: "ConnectionHandle | None" = None
    factory: "ResourceFactory | None" = None
    savepoint: str | None = None
    suspended: bool = False
    outcome: TransactionOutcome | None = None
    rollback_reason: BaseException | None = None

    @classmethod
    def create(
        cls,
        definition: TransactionDefinition,
        *,
        owner: ExecutionUnit | None = None,
        parent: "TransactionContext | None" = None,
    ) -> "TransactionContext":
        deadline = None
        if definition.timeout is not None:
            deadline = time.monotonic() + definition.timeout.total_seconds()
        return cls(
            propagation=definition.propagation,
            owner=owner or ExecutionUnit.current(),
            isolation=definition.isolation,
            read_only=definition.read_only,
            deadline=deadline,
            name=definition.name,
            parent=parent,
        )

    # Queries ------------------------------------------------------------

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_rollback_only(self) -> bool:
        return self.state is TransactionState.MARKED_FOR_ROLLBACK

    @property
    def is_completed(self) -> bool:
        return self.state is TransactionState.COMPLETED

    @property
    def is_nested(self) -> bool:
        return self.savepoint is not None

    def accepts_work(self) -> bool:
        return self.state in (TransactionState.ACTIVE, TransactionState.MARKED_FOR_ROLLBACK)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    # Mutations ----------------------------------------------------------

    def transition(self, state: TransactionState) -> None:
        self._ensure_mutable()
        self.state = state

    def mark_rollback_only(self, reason: BaseException | None = None) -> None:
        """Flag the context so that its owner rolls back instead of committing."""

        self._ensure_mutable()
        if self.state is TransactionState.ACTIVE:
            self.state = TransactionState.MARKED_FOR_ROLLBACK
        if reason is not None and self.rollback_reason is None:
            self.rollback_reason = reason

    def check_deadline(self) -> None:
        """Fail fast once the deadline has passed, marking the context for rollback."""

        remaining = self.remaining()
        if remaining is None or remaining > 0:
            return
        error = TransactionTimeoutError(
            f"transaction {self.id} timed out {abs(remaining):.3f}s ago"
        )
        self.mark_rollback_only(error)
        raise error

    def complete(self, outcome: TransactionOutcome) -> None:
        self._ensure_mutable()
        self.state = TransactionState.COMPLETED
        self.outcome = outcome
        self.handle = None

    def _ensure_mutable(self) -> None:
        if self.state is TransactionState.COMPLETED:
            raise IllegalTransactionStateError(f"transaction {self.id} is already completed")

    def describe(self) -> dict[str, Any]:
        return {
            "tx_id": self.id,
            "state": self.state.value,
            "propagation": self.propagation.value,
            "name": self.name,
            "nested": self.is_nested,
            "outcome": self.outcome.value if self.outcome is not None else None,
        }


__all__ = [
    "ExecutionUnit",
    "LIVE_STATES",
    "Propagation",
    "TransactionContext",
    "TransactionDefinition",
    "TransactionOutcome",
    "TransactionState",
]
