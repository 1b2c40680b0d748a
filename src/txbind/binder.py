"""Hands out the connection a guarded operation should use right now."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from .context import TransactionContext
from .exceptions import IllegalTransactionStateError, TransactionError, translate_driver_errors
from .registry import ContextRegistry
from .resources import ConnectionHandle, ResourceFactory

logger = logging.getLogger(__name__)


class ResourceBinder:
    """Returns the handle bound to the caller's transaction, or a fresh one.

    Inside an active context every ``acquire`` returns the same handle, with
    autocommit suspended once for the context's lifetime. Outside a context
    the caller gets an independent autocommit handle and must release it; each
    statement on it is durable on its own.
    """

    def __init__(self, registry: ContextRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ContextRegistry:
        return self._registry

    def acquire(self, factory: ResourceFactory) -> ConnectionHandle:
        ctx = self._registry.current()
        if ctx is None:
            return factory.open()
        if not ctx.accepts_work():
            raise IllegalTransactionStateError(
                f"transaction {ctx.id} is {ctx.state.value}, no new work accepted"
            )
        ctx.check_deadline()
        handle = self.bind(ctx, factory)
        handle.acquire_count += 1
        return handle

    def release(self, handle: ConnectionHandle) -> None:
        """Close an unbound handle; bound handles stay open until their context ends."""

        if handle.closed:
            logger.warning("ignoring release of already closed handle %r", handle)
            return
        if handle.is_bound:
            return
        handle.factory.close(handle)

    @contextmanager
    def connection(self, factory: ResourceFactory) -> Iterator[ConnectionHandle]:
        handle = self.acquire(factory)
        try:
            yield handle
        finally:
            self.release(handle)

    # Used by the transaction manager -------------------------------------

    def bind(self, ctx: TransactionContext, factory: ResourceFactory) -> ConnectionHandle:
        """Return ``ctx``'s handle, opening and binding one on first use."""

        if ctx.handle is not None:
            if ctx.factory is not factory:
                raise TransactionError(
                    f"transaction {ctx.id} is bound to a different resource factory"
                )
            return ctx.handle

        handle = factory.open()
        with translate_driver_errors(operation="bind connection"):
            try:
                handle.set_autocommit(False)
                handle.configure(isolation=ctx.isolation, read_only=ctx.read_only)
            except Exception:
                factory.close(handle)
                raise
        handle.context_id = ctx.id
        ctx.handle = handle
        ctx.factory = factory
        logger.debug("bound %r to transaction %s", handle, ctx.id)
        return handle

    def unbind(self, handle: ConnectionHandle) -> None:
        """Release a handle whose owning context has completed."""

        if handle.closed:
            logger.warning("ignoring second release of %r", handle)
            return
        handle.context_id = None
        handle.factory.close(handle)


__all__ = ["ResourceBinder"]
