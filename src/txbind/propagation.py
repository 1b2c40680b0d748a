"""Propagation decisions for guarded calls."""

from __future__ import annotations

from enum import Enum

from .context import Propagation
from .exceptions import PropagationViolation


class PropagationDecision(str, Enum):
    CREATE = "create"
    JOIN = "join"
    SUSPEND_AND_CREATE = "suspend_and_create"
    PROCEED_WITHOUT = "proceed_without"
    SUSPEND_AND_PROCEED = "suspend_and_proceed"
    NEST = "nest"


_WITHOUT_CONTEXT = {
    Propagation.REQUIRED: PropagationDecision.CREATE,
    Propagation.REQUIRES_NEW: PropagationDecision.CREATE,
    Propagation.NESTED: PropagationDecision.CREATE,
    Propagation.NEVER: PropagationDecision.PROCEED_WITHOUT,
    Propagation.SUPPORTS: PropagationDecision.PROCEED_WITHOUT,
    Propagation.NOT_SUPPORTED: PropagationDecision.PROCEED_WITHOUT,
}

_WITH_CONTEXT = {
    Propagation.REQUIRED: PropagationDecision.JOIN,
    Propagation.MANDATORY: PropagationDecision.JOIN,
    Propagation.SUPPORTS: PropagationDecision.JOIN,
    Propagation.REQUIRES_NEW: PropagationDecision.SUSPEND_AND_CREATE,
    Propagation.NOT_SUPPORTED: PropagationDecision.SUSPEND_AND_PROCEED,
    Propagation.NESTED: PropagationDecision.NEST,
}


def decide(has_active_context: bool, mode: Propagation) -> PropagationDecision:
    """Return what a call under ``mode`` must do, or raise ``PropagationViolation``."""

    table = _WITH_CONTEXT if has_active_context else _WITHOUT_CONTEXT
    decision = table.get(mode)
    if decision is not None:
        return decision
    if has_active_context:
        raise PropagationViolation(
            f"existing transaction found for propagation {mode.value!r}", mode=mode
        )
    raise PropagationViolation(
        f"no existing transaction found for propagation {mode.value!r}", mode=mode
    )


__all__ = ["PropagationDecision", "decide"]
