"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None


def configure(*, get_conn: Callable[[], Any]) -> None:
    """Register the connection factory used by the Postgres stores."""

    global _get_conn
    _get_conn = get_conn


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def reset() -> None:
    global _get_conn
    _get_conn = None
