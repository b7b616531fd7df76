"""Exception hierarchy for Quarry."""

from __future__ import annotations

from typing import Any


class QuarryError(Exception):
    """Base class for all Quarry errors.

    Every error carries a numeric ``code`` and a ``context`` dict with the
    values that help diagnose it.
    """

    default_code = 1000

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code if code is not None else self.default_code
        self.context: dict[str, Any] = dict(context or {})


class DatabaseConnectionError(QuarryError):
    """The database could not be opened."""

    default_code = 1100


# ========== Query errors ==========


class QueryError(QuarryError):
    """The builder is in a state that cannot produce a statement."""

    default_code = 1300


class InvalidParameter(QueryError):
    """A builder argument is out of range (negative limit, bad direction...)."""

    default_code = 1305


class ExecutionError(QueryError):
    """The driver rejected a statement.

    The generated SQL and the bind values are kept for diagnosis; the driver
    exception is available as ``__cause__``.
    """

    default_code = 1303

    def __init__(self, message: str, *, sql: str, params: list[Any] | None = None) -> None:
        params = list(params or [])
        super().__init__(message, context={"sql": sql, "params": params})
        self.sql = sql
        self.params = params

    def __str__(self) -> str:
        return f"{self.args[0]} [sql: {self.sql}] [params: {self.params!r}]"


class TransactionError(QuarryError):
    """Transaction control was used out of order."""

    default_code = 1400


class UnsupportedOperation(QuarryError):
    """The operation is not available in the requested mode."""

    default_code = 1302


# ========== Model errors ==========


class ModelError(QuarryError):
    """Base class for entity errors."""

    default_code = 1200


class ModelResolutionError(ModelError):
    """An entity type is unknown or not registered."""

    default_code = 1206


class HydrationError(ModelError):
    """A row could not be mapped onto an entity."""

    default_code = 1202

    def __init__(self, entity: str, column: str) -> None:
        super().__init__(
            f"Column '{column}' is not registered on entity '{entity}'",
            context={"entity": entity, "column": column},
        )
        self.entity = entity
        self.column = column


# ========== Relation errors ==========


class RelationError(QuarryError):
    """Base class for relation errors."""

    default_code = 1500


class RelationNotFound(RelationError):
    """A relation name is not declared on the entity."""

    default_code = 1203

    def __init__(self, relation: str, entity: str) -> None:
        super().__init__(
            f"Relation '{relation}' is not declared on entity '{entity}'",
            context={"relation": relation, "entity": entity},
        )
        self.relation = relation
        self.entity = entity


class RelationMisconfigured(RelationError):
    """A relation declaration cannot be resolved into keys and tables."""

    default_code = 1502


# ========== Cache errors ==========


class CacheError(QuarryError):
    """Base class for result cache errors."""

    default_code = 1600

    def __init__(self, message: str, *, path: str, reason: str) -> None:
        super().__init__(f"{message} '{path}': {reason}", context={"path": path, "reason": reason})
        self.path = path
        self.reason = reason


class CacheNotAccessible(CacheError):
    """The cache directory or entry cannot be reached."""

    default_code = 1601


class CacheWriteError(CacheError):
    """A cache entry could not be written."""

    default_code = 1602


class CacheReadError(CacheError):
    """A cache entry could not be read or its payload is corrupt."""

    default_code = 1603
