"""Settings for wiring a transaction manager from the environment.

Every field can be overridden with a ``TXBIND_`` prefixed environment
variable, e.g. ``TXBIND_DATABASE_URL=postgresql://localhost/app``.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .binder import ResourceBinder
from .context import Propagation, TransactionDefinition
from .logging import configure_logging
from .manager import TransactionManager
from .registry import ContextRegistry, ContextVarRegistry
from .resources import ResourceFactory, create_resource_factory


class TransactionSettings(BaseSettings):
    """Pydantic settings container for the transaction layer."""

    model_config = SettingsConfigDict(env_prefix="TXBIND_")

    database_url: str = Field(
        default="sqlite:///txbind.db",
        description="DSN of the backing store (SQLite path/URL or PostgreSQL DSN).",
    )
    use_engine_pool: bool = Field(
        default=False,
        description="Check connections out of a SQLAlchemy engine pool instead of direct connects.",
    )
    postgres_connect_timeout_seconds: float | None = Field(
        default=10.0,
        gt=0,
        description="Connect timeout for psycopg connections in seconds.",
    )
    default_propagation: Propagation = Field(
        default=Propagation.REQUIRED,
        description="Propagation applied when a call site does not specify one.",
    )
    default_isolation: str | None = Field(
        default=None,
        description="Isolation level passed through to the store for new transactions.",
    )
    default_read_only: bool = Field(
        default=False,
        description="Advisory read-only flag for new transactions.",
    )
    default_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Deadline for new transactions in seconds; unset means no deadline.",
    )
    log_level: str = Field(default="INFO", description="Root log level.")
    log_json: bool = Field(default=True, description="Render structlog events as JSON.")

    @classmethod
    def build_default(cls) -> "TransactionSettings":
        return cls()

    def transaction_defaults(self) -> TransactionDefinition:
        timeout = None
        if self.default_timeout_seconds is not None:
            timeout = timedelta(seconds=self.default_timeout_seconds)
        return TransactionDefinition(
            propagation=self.default_propagation,
            isolation=self.default_isolation,
            read_only=self.default_read_only,
            timeout=timeout,
        )

    def resource_factory(self) -> ResourceFactory:
        connect_timeout = None
        if self.postgres_connect_timeout_seconds is not None:
            connect_timeout = timedelta(seconds=self.postgres_connect_timeout_seconds)
        return create_resource_factory(
            self.database_url,
            use_engine_pool=self.use_engine_pool,
            connect_timeout=connect_timeout,
        )


def build_manager(
    settings: TransactionSettings | None = None,
    *,
    factory: ResourceFactory | None = None,
    registry: ContextRegistry | None = None,
    setup_logging: bool = False,
) -> TransactionManager:
    """Wire factory, registry, binder and manager from ``settings``.

    With ``setup_logging`` the process-wide logging is configured from
    ``log_level`` and ``log_json`` as well.
    """

    settings = settings or TransactionSettings.build_default()
    if setup_logging:
        configure_logging(settings.log_level.upper(), json=settings.log_json)
    registry = registry or ContextVarRegistry()
    return TransactionManager(
        factory or settings.resource_factory(),
        registry=registry,
        binder=ResourceBinder(registry),
        defaults=settings.transaction_defaults(),
    )


__all__ = ["TransactionSettings", "build_manager"]
