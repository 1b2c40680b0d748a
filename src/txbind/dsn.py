"""Helpers for telling DSN flavours apart and normalising PostgreSQL ones."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from psycopg import conninfo
from sqlalchemy.engine import URL, make_url


@dataclass(frozen=True)
class NormalizedPostgresDsn:
    """Container holding PostgreSQL DSN representations."""

    libpq: str
    sqlalchemy: str


_LIBPQ_KEYS = ("host", "port", "dbname", "user", "password")


def is_sqlite_dsn(dsn: str) -> bool:
    return dsn == ":memory:" or dsn.startswith("sqlite://") or dsn.startswith("file:")


def sqlite_path(dsn: str) -> str:
    """Return the filesystem path (or ``:memory:``) addressed by a SQLite DSN.

    ``sqlite:///relative.db`` and ``sqlite:////abs/path.db`` follow the
    SQLAlchemy convention; ``file:`` URIs are passed through untouched.
    """

    if dsn.startswith("sqlite:///"):
        return dsn[len("sqlite:///") :] or ":memory:"
    if dsn.startswith("sqlite://"):
        return dsn[len("sqlite://") :] or ":memory:"
    return dsn


def _normalize_drivername(drivername: str | None) -> str:
    if not drivername or drivername == "postgresql":
        return "postgresql+psycopg"
    return drivername


def _libpq_from_url(url: URL) -> str:
    params: dict[str, str] = {}
    if url.host:
        params["host"] = url.host
    if url.port is not None:
        params["port"] = str(url.port)
    if url.database:
        params["dbname"] = url.database
    if url.username:
        params["user"] = url.username
    if url.password:
        params["password"] = str(url.password)
    for key, value in url.query.items():
        if value is not None:
            params[str(key)] = str(value)
    return conninfo.make_conninfo(**params)


def _url_from_libpq(mapping: Mapping[str, str]) -> URL:
    port = mapping.get("port")
    return URL.create(
        drivername="postgresql+psycopg",
        username=mapping.get("user") or None,
        password=mapping.get("password") or None,
        host=mapping.get("host") or None,
        port=int(port) if port else None,
        database=mapping.get("dbname") or None,
        query={k: v for k, v in mapping.items() if k not in _LIBPQ_KEYS and v},
    )


def normalize_postgres_dsn(raw_dsn: str) -> NormalizedPostgresDsn:
    """Return canonical PostgreSQL DSNs for psycopg and SQLAlchemy."""

    raw = raw_dsn.strip()
    if not raw:
        raise ValueError("PostgreSQL DSN must be a non-empty string")

    if "://" in raw:
        url = make_url(raw)
        url = url.set(drivername=_normalize_drivername(url.drivername))
        return NormalizedPostgresDsn(
            libpq=_libpq_from_url(url),
            sqlalchemy=url.render_as_string(hide_password=False),
        )

    mapping = conninfo.conninfo_to_dict(raw)
    ordered = {key: str(mapping[key]) for key in _LIBPQ_KEYS if mapping.get(key)}
    ordered.update({k: str(v) for k, v in mapping.items() if k not in _LIBPQ_KEYS and v})
    url = _url_from_libpq(ordered)
    return NormalizedPostgresDsn(
        libpq=conninfo.make_conninfo(**ordered),
        sqlalchemy=url.render_as_string(hide_password=False),
    )


__all__ = ["NormalizedPostgresDsn", "is_sqlite_dsn", "normalize_postgres_dsn", "sqlite_path"]
