"""Per execution unit registry of active transaction contexts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextvars import ContextVar

from .context import ExecutionUnit, TransactionContext
from .exceptions import ContextStackError


class ContextRegistry(ABC):
    """Tracks the stack of contexts opened by the calling execution unit."""

    @abstractmethod
    def stack(self) -> tuple[TransactionContext, ...]:
        """Return the contexts visible to the caller, outermost first."""

    @abstractmethod
    def push(self, ctx: TransactionContext) -> None:
        ...

    @abstractmethod
    def pop(self, expected: TransactionContext | None = None) -> TransactionContext:
        ...

    def current(self) -> TransactionContext | None:
        """Return the innermost context that is not parked by a suspension."""

        stack = self.stack()
        if stack and not stack[-1].suspended:
            return stack[-1]
        return None

    def depth(self) -> int:
        return len(self.stack())


class ContextVarRegistry(ContextRegistry):
    """Registry backed by a :class:`~contextvars.ContextVar`.

    Threads start from an empty stack and asyncio tasks receive a copy of the
    spawning context, so the stack is stored as an immutable tuple and every
    entry is filtered by owner. A task created inside a transaction therefore
    starts with nothing visible instead of sharing its parent's handle.
    """

    def __init__(self, name: str = "txbind_contexts") -> None:
        self._var: ContextVar[tuple[TransactionContext, ...]] = ContextVar(name, default=())

    def stack(self) -> tuple[TransactionContext, ...]:
        unit = ExecutionUnit.current()
        return tuple(ctx for ctx in self._var.get() if ctx.owner == unit)

    def push(self, ctx: TransactionContext) -> None:
        unit = ExecutionUnit.current()
        if ctx.owner != unit:
            raise ContextStackError(
                f"transaction {ctx.id} belongs to another execution unit"
            )
        self._var.set(self.stack() + (ctx,))

    def pop(self, expected: TransactionContext | None = None) -> TransactionContext:
        stack = self.stack()
        if not stack:
            raise ContextStackError("no transaction context to pop")
        top = stack[-1]
        if expected is not None and top is not expected:
            raise ContextStackError(
                f"transaction {expected.id} is not the innermost context (found {top.id})"
            )
        self._var.set(stack[:-1])
        return top


__all__ = ["ContextRegistry", "ContextVarRegistry"]
