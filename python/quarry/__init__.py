"""Quarry - a fluent SQL query builder with lazy and eager relation loading."""

from __future__ import annotations

from quarry.base import Base, Registry, declarative_base
from quarry.builder import Builder
from quarry.cache import CacheStorage, FileCacheStorage, ResultCache
from quarry.config import Settings
from quarry.connection import MYSQL, SQLITE, Connection, Dialect, Result, connect
from quarry.exceptions import (
    CacheError,
    CacheNotAccessible,
    CacheReadError,
    CacheWriteError,
    DatabaseConnectionError,
    ExecutionError,
    HydrationError,
    InvalidParameter,
    ModelError,
    ModelResolutionError,
    QuarryError,
    QueryError,
    RelationError,
    RelationMisconfigured,
    RelationNotFound,
    TransactionError,
    UnsupportedOperation,
)
from quarry.fields import JSON, Mapped, mapped_column
from quarry.hooks import HookEvent, HookRegistry
from quarry.hydration import Hydrator
from quarry.pagination import Paginator
from quarry.raw import Raw
from quarry.relationships import (
    BelongsTo,
    BelongsToMany,
    HasMany,
    HasOne,
    LoadMode,
    belongs_to,
    belongs_to_many,
    has_many,
    has_one,
)
from quarry.session import Session

__version__ = "0.1.0"

__all__ = [
    # Core
    "connect",
    "Connection",
    "Dialect",
    "SQLITE",
    "MYSQL",
    "Result",
    "Session",
    "Settings",
    "Builder",
    "Raw",
    # Entity definition
    "Base",
    "Registry",
    "declarative_base",
    "Mapped",
    "mapped_column",
    "JSON",
    # Relations
    "has_one",
    "has_many",
    "belongs_to",
    "belongs_to_many",
    "HasOne",
    "HasMany",
    "BelongsTo",
    "BelongsToMany",
    "LoadMode",
    "Hydrator",
    # Hooks, cache, pagination
    "HookEvent",
    "HookRegistry",
    "CacheStorage",
    "FileCacheStorage",
    "ResultCache",
    "Paginator",
    # Errors
    "QuarryError",
    "DatabaseConnectionError",
    "QueryError",
    "InvalidParameter",
    "ExecutionError",
    "TransactionError",
    "UnsupportedOperation",
    "ModelError",
    "ModelResolutionError",
    "HydrationError",
    "RelationError",
    "RelationNotFound",
    "RelationMisconfigured",
    "CacheError",
    "CacheNotAccessible",
    "CacheReadError",
    "CacheWriteError",
]
