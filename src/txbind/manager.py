"""Declarative transaction boundaries around guarded operations.

:class:`TransactionManager` decides, per call, whether to open a new
transaction, join the caller's, park it, nest a savepoint inside it or
refuse to run. Only the call that created a context commits or rolls it
back; joined calls can merely mark it rollback-only.

Typical use::

    manager = TransactionManager(SQLiteResourceFactory("app.db"))

    @manager.transactional()
    def create_user(name: str) -> None:
        handle = manager.binder.acquire(manager.factory)
        handle.execute("INSERT INTO users (name) VALUES (?)", (name,))
"""

from __future__ import annotations

import functools
import inspect
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterator, TypeVar

import structlog

from .binder import ResourceBinder
from .context import (
    Propagation,
    TransactionContext,
    TransactionDefinition,
    TransactionOutcome,
    TransactionState,
)
from .exceptions import (
    DRIVER_ERRORS,
    CommitError,
    ContextStackError,
    IllegalTransactionStateError,
    RollbackError,
    TransactionError,
    TransactionTimeoutError,
    UnexpectedRollbackError,
)
from .propagation import PropagationDecision, decide
from .registry import ContextRegistry, ContextVarRegistry
from .resources import ConnectionHandle, ResourceFactory

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_CREATING = (PropagationDecision.CREATE, PropagationDecision.SUSPEND_AND_CREATE)


@dataclass(slots=True, eq=False)
class TransactionToken:
    """Returned by :meth:`TransactionManager.enter`, consumed by ``exit``."""

    decision: PropagationDecision
    definition: TransactionDefinition
    context: TransactionContext | None = None
    suspended: TransactionContext | None = None
    exited: bool = False

    @property
    def owns_boundary(self) -> bool:
        return self.decision in _CREATING


def _as_timedelta(value: timedelta | float | int | None) -> timedelta | None:
    if value is None or isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class TransactionManager:
    """Begins, joins and completes transactions over one resource factory."""

    def __init__(
        self,
        factory: ResourceFactory,
        *,
        registry: ContextRegistry | None = None,
        binder: ResourceBinder | None = None,
        defaults: TransactionDefinition | None = None,
    ) -> None:
        if binder is not None and registry is not None and binder.registry is not registry:
            raise ValueError("binder and manager must share one context registry")
        self.factory = factory
        self.registry = registry or (binder.registry if binder else ContextVarRegistry())
        self.binder = binder or ResourceBinder(self.registry)
        self.defaults = defaults or TransactionDefinition()

    # Queries ------------------------------------------------------------

    def current(self) -> TransactionContext | None:
        return self.registry.current()

    def in_transaction(self) -> bool:
        return self.registry.current() is not None

    def acquire(self) -> ConnectionHandle:
        """Shortcut for ``binder.acquire(manager.factory)``."""

        return self.binder.acquire(self.factory)

    def set_rollback_only(self) -> None:
        ctx = self.registry.current()
        if ctx is None:
            raise IllegalTransactionStateError("no transaction to mark rollback-only")
        ctx.mark_rollback_only()

    def definition(
        self,
        propagation: Propagation | str | None = None,
        *,
        isolation: str | None = None,
        read_only: bool | None = None,
        timeout: timedelta | float | None = None,
        name: str | None = None,
    ) -> TransactionDefinition:
        """Build a definition from the manager defaults and call-site overrides."""

        base = self.defaults
        return TransactionDefinition(
            propagation=Propagation(propagation) if propagation is not None else base.propagation,
            isolation=isolation if isolation is not None else base.isolation,
            read_only=base.read_only if read_only is None else read_only,
            timeout=_as_timedelta(timeout) if timeout is not None else base.timeout,
            name=name,
        )

    # Interception API ---------------------------------------------------

    def enter(
        self,
        definition: TransactionDefinition | Propagation | str | None = None,
        **overrides: Any,
    ) -> TransactionToken:
        if not isinstance(definition, TransactionDefinition):
            definition = self.definition(definition, **overrides)
        current = self.registry.current()
        decision = decide(current is not None, definition.propagation)

        if decision is PropagationDecision.PROCEED_WITHOUT:
            return TransactionToken(decision, definition)
        if decision is PropagationDecision.SUSPEND_AND_PROCEED:
            current.suspended = True
            logger.debug("transaction.suspended", **current.describe())
            return TransactionToken(decision, definition, suspended=current)
        if decision is PropagationDecision.JOIN:
            current.check_deadline()
            logger.debug("transaction.joined", **current.describe())
            return TransactionToken(decision, definition, context=current)
        if decision is PropagationDecision.NEST:
            return self._begin_nested(current, definition)
        parked = current if decision is PropagationDecision.SUSPEND_AND_CREATE else None
        return self._begin(parked, definition, decision)

    def exit(self, token: TransactionToken, error: BaseException | None = None) -> None:
        """Finish the call described by ``token``; ``error`` is the body's failure."""

        if token.exited:
            raise IllegalTransactionStateError("transaction token already exited")
        decision = token.decision
        ctx = token.context
        if token.owns_boundary or decision is PropagationDecision.NEST:
            if ctx.is_completed:
                token.exited = True
                raise IllegalTransactionStateError(
                    f"transaction {ctx.id} was already completed by an enclosing exit"
                )
            stack = self.registry.stack()
            if not stack or stack[-1] is not ctx:
                token.exited = True
                self._abort_out_of_order(token, stack, error)
        token.exited = True

        if decision is PropagationDecision.PROCEED_WITHOUT:
            return
        if decision is PropagationDecision.SUSPEND_AND_PROCEED:
            self._resume(token.suspended)
            return
        if decision is PropagationDecision.JOIN:
            if error is not None and not ctx.is_completed:
                ctx.mark_rollback_only(error)
                logger.debug("transaction.marked_rollback_only", **ctx.describe())
            return
        if decision is PropagationDecision.NEST:
            self._finish_nested(ctx, error)
            return
        try:
            self._complete(ctx, error)
        finally:
            if token.suspended is not None:
                self._resume(token.suspended)

    @contextmanager
    def transaction(
        self,
        definition: TransactionDefinition | Propagation | str | None = None,
        **overrides: Any,
    ) -> Iterator[TransactionContext | None]:
        """Run the ``with`` block inside a transaction boundary.

        Any ``BaseException`` counts as failure, so task cancellation and
        ``KeyboardInterrupt`` also roll back and release the handle.
        """

        token = self.enter(definition, **overrides)
        try:
            yield token.context
        except BaseException as exc:
            self.exit(token, exc)
            raise
        else:
            self.exit(token)

    def transactional(
        self,
        definition: TransactionDefinition | Propagation | str | Callable[..., Any] | None = None,
        **overrides: Any,
    ) -> Any:
        """Decorator form of :meth:`transaction` for plain and ``async`` functions."""

        if callable(definition):
            return self.transactional()(definition)
        resolved = (
            definition
            if isinstance(definition, TransactionDefinition)
            else self.definition(definition, **overrides)
        )

        def decorator(func: F) -> F:
            # Generators keep the boundary open until they are exhausted or closed.
            if inspect.isasyncgenfunction(func):

                @functools.wraps(func)
                async def async_gen_wrapper(*args: Any, **kwargs: Any) -> Any:
                    with self.transaction(resolved):
                        async for item in func(*args, **kwargs):
                            yield item

                return async_gen_wrapper  # type: ignore[return-value]

            if inspect.isgeneratorfunction(func):

                @functools.wraps(func)
                def gen_wrapper(*args: Any, **kwargs: Any) -> Any:
                    with self.transaction(resolved):
                        return (yield from func(*args, **kwargs))

                return gen_wrapper  # type: ignore[return-value]

            if inspect.iscoroutinefunction(func):

                @functools.wraps(func)
                async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                    with self.transaction(resolved):
                        return await func(*args, **kwargs)

                return async_wrapper  # type: ignore[return-value]

            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.transaction(resolved):
                    return func(*args, **kwargs)

            return wrapper  # type: ignore[return-value]

        return decorator

    # Begin --------------------------------------------------------------

    def _begin(
        self,
        parked: TransactionContext | None,
        definition: TransactionDefinition,
        decision: PropagationDecision,
    ) -> TransactionToken:
        ctx = TransactionContext.create(definition)
        if parked is not None:
            parked.suspended = True
        try:
            self.binder.bind(ctx, self.factory)
        except BaseException:
            if parked is not None:
                parked.suspended = False
            raise
        self.registry.push(ctx)
        logger.debug("transaction.begin", suspended=parked.id if parked else None, **ctx.describe())
        return TransactionToken(decision, definition, context=ctx, suspended=parked)

    def _begin_nested(
        self, parent: TransactionContext, definition: TransactionDefinition
    ) -> TransactionToken:
        parent.check_deadline()
        handle = self.binder.bind(parent, self.factory)
        ctx = TransactionContext.create(definition, owner=parent.owner, parent=parent)
        if parent.deadline is not None:
            ctx.deadline = parent.deadline if ctx.deadline is None else min(ctx.deadline, parent.deadline)
        try:
            ctx.savepoint = handle.savepoint()
        except DRIVER_ERRORS as exc:
            raise TransactionError(
                f"savepoints are not available on {handle!r}"
            ) from exc
        ctx.handle = handle
        ctx.factory = parent.factory
        self.registry.push(ctx)
        logger.debug("transaction.savepoint", parent=parent.id, **ctx.describe())
        return TransactionToken(PropagationDecision.NEST, definition, context=ctx)

    def _resume(self, parked: TransactionContext) -> None:
        parked.suspended = False
        logger.debug("transaction.resumed", **parked.describe())

    # Completion ---------------------------------------------------------

    def _abort_out_of_order(
        self,
        token: TransactionToken,
        stack: tuple[TransactionContext, ...],
        error: BaseException | None,
    ) -> None:
        """Roll back ``token``'s context and everything left open above it, then raise."""

        ctx = token.context
        violation = ContextStackError(
            f"transaction {ctx.id} must be exited by its owner after all inner transactions"
        )
        if ctx not in stack:
            raise violation from error
        abandoned = stack[stack.index(ctx) + 1 :]
        logger.error(
            "transaction.exit_out_of_order",
            abandoned=[inner.id for inner in abandoned],
            **ctx.describe(),
        )
        for inner in reversed(abandoned):
            self._discard(inner, violation)
        try:
            self._discard(ctx, violation)
        finally:
            if token.suspended is not None:
                self._resume(token.suspended)
        raise violation from error

    def _discard(self, ctx: TransactionContext, reason: BaseException) -> None:
        try:
            if ctx.is_nested:
                self._finish_nested(ctx, reason)
            else:
                self._complete(ctx, reason)
        except TransactionError as exc:
            logger.error("transaction.discard_failed", error=str(exc), **ctx.describe())

    def _complete(self, ctx: TransactionContext, error: BaseException | None) -> None:
        handle = ctx.handle
        try:
            if error is None and ctx.state is TransactionState.ACTIVE:
                try:
                    ctx.check_deadline()
                except TransactionTimeoutError as timeout:
                    self._rollback(ctx, handle, timeout)
                    raise
                self._commit(ctx, handle)
                return
            self._rollback(ctx, handle, error or ctx.rollback_reason)
            if error is None:
                raise UnexpectedRollbackError(
                    f"transaction {ctx.id} was marked rollback-only and has been rolled back"
                ) from ctx.rollback_reason
        finally:
            self.registry.pop(ctx)
            if handle is not None:
                self.binder.unbind(handle)

    def _commit(self, ctx: TransactionContext, handle: ConnectionHandle | None) -> None:
        ctx.transition(TransactionState.COMMITTING)
        try:
            if handle is not None:
                handle.commit()
        except Exception as commit_error:
            ctx.transition(TransactionState.ROLLING_BACK)
            rollback_error: Exception | None = None
            try:
                if handle is not None:
                    handle.rollback()
            except Exception as exc:
                rollback_error = exc
            ctx.complete(
                TransactionOutcome.ROLLED_BACK if rollback_error is None else TransactionOutcome.UNKNOWN
            )
            logger.error(
                "transaction.commit_failed",
                error=str(commit_error),
                rollback_error=str(rollback_error) if rollback_error else None,
                **ctx.describe(),
            )
            raise CommitError(
                f"commit of transaction {ctx.id} failed",
                commit_error=commit_error,
                rollback_error=rollback_error,
            ) from commit_error
        ctx.complete(TransactionOutcome.COMMITTED)
        logger.info("transaction.committed", **ctx.describe())

    def _rollback(
        self,
        ctx: TransactionContext,
        handle: ConnectionHandle | None,
        reason: BaseException | None,
    ) -> None:
        ctx.transition(TransactionState.ROLLING_BACK)
        try:
            if handle is not None:
                handle.rollback()
        except Exception as exc:
            ctx.complete(TransactionOutcome.UNKNOWN)
            logger.error("transaction.rollback_failed", error=str(exc), **ctx.describe())
            raise RollbackError(
                f"rollback of transaction {ctx.id} failed; store state is undefined",
                cause=exc,
                original_error=reason,
            ) from exc
        ctx.complete(TransactionOutcome.ROLLED_BACK)
        logger.info(
            "transaction.rolled_back",
            reason=type(reason).__name__ if reason is not None else None,
            **ctx.describe(),
        )

    def _finish_nested(self, ctx: TransactionContext, error: BaseException | None) -> None:
        handle, parent, name = ctx.handle, ctx.parent, ctx.savepoint
        try:
            if error is None and ctx.state is TransactionState.ACTIVE:
                handle.release_savepoint(name)
                ctx.complete(TransactionOutcome.COMMITTED)
                logger.debug("transaction.savepoint_released", **ctx.describe())
                return
            handle.rollback_to_savepoint(name)
            handle.release_savepoint(name)
            ctx.complete(TransactionOutcome.ROLLED_BACK)
            logger.info("transaction.savepoint_rolled_back", **ctx.describe())
            if error is None:
                raise UnexpectedRollbackError(
                    f"nested transaction {ctx.id} was marked rollback-only and has been rolled back"
                ) from ctx.rollback_reason
        except DRIVER_ERRORS as exc:
            if not ctx.is_completed:
                ctx.complete(TransactionOutcome.UNKNOWN)
            parent.mark_rollback_only(exc)
            raise TransactionError(f"savepoint {name} of transaction {parent.id} failed") from exc
        finally:
            self.registry.pop(ctx)


__all__ = ["TransactionManager", "TransactionToken"]
