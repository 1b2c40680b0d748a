"""txbind: declarative unit-of-work boundaries over a single shared connection.

The package binds one DBAPI connection to a transaction context per
execution unit. Handles obtained through :class:`ResourceBinder` inside a
transaction share its atomic boundary; handles obtained outside one commit
every statement on their own.
"""

from .binder import ResourceBinder
from .config import TransactionSettings, build_manager
from .context import (
    ExecutionUnit,
    Propagation,
    TransactionContext,
    TransactionDefinition,
    TransactionOutcome,
    TransactionState,
)
from .exceptions import (
    AcquisitionError,
    CommitError,
    ContextStackError,
    IllegalTransactionStateError,
    PropagationViolation,
    RollbackError,
    TransactionError,
    TransactionTimeoutError,
    UnexpectedRollbackError,
)
from .manager import TransactionManager, TransactionToken
from .propagation import PropagationDecision, decide
from .registry import ContextRegistry, ContextVarRegistry
from .resources import (
    ConnectionHandle,
    EngineResourceFactory,
    PsycopgResourceFactory,
    ResourceFactory,
    SQLiteResourceFactory,
    create_resource_factory,
)

__all__ = [
    "AcquisitionError",
    "CommitError",
    "ConnectionHandle",
    "ContextRegistry",
    "ContextStackError",
    "ContextVarRegistry",
    "EngineResourceFactory",
    "ExecutionUnit",
    "IllegalTransactionStateError",
    "Propagation",
    "PropagationDecision",
    "PropagationViolation",
    "PsycopgResourceFactory",
    "ResourceBinder",
    "ResourceFactory",
    "RollbackError",
    "SQLiteResourceFactory",
    "TransactionContext",
    "TransactionDefinition",
    "TransactionError",
    "TransactionManager",
    "TransactionOutcome",
    "TransactionSettings",
    "TransactionState",
    "TransactionTimeoutError",
    "TransactionToken",
    "UnexpectedRollbackError",
    "build_manager",
    "create_resource_factory",
    "decide",
]
