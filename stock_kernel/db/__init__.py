"""Database layer - engine, base classes and column types."""

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    reset_engine,
    session_scope,
)
from stock_kernel.db.types import ZERO, quantize, to_quantity

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "is_postgres",
    "Base",
    "TrackedBase",
    "UUIDString",
    "ZERO",
    "quantize",
    "to_quantity",
]
