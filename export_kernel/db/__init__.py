"""Database layer - engine, base classes, types, and append-only enforcement."""

from export_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from export_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from export_kernel.db.types import Currency, Money, PayloadHash, UTCDateTime

__all__ = [
    "build_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Currency",
    "PayloadHash",
    "UTCDateTime",
]
