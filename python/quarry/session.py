"""Session: the entity-level surface over a connection."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from quarry.base import Base, Registry, resolve_entity
from quarry.builder import Builder
from quarry.cache import CacheStorage, FileCacheStorage, ResultCache
from quarry.config import Settings
from quarry.connection import Connection, Result
from quarry.exceptions import (
    CacheNotAccessible,
    ModelError,
    ModelResolutionError,
    RelationNotFound,
    TransactionError,
)
from quarry.hooks import HookEvent, HookRegistry
from quarry.hydration import requested_relations

logger = logging.getLogger(__name__)


class Session:
    """Entity operations over one connection.

    The session does not own the connection; leaving its context rolls back
    an open transaction on error but never closes the connection.

    Example:
        >>> session = Session(connect("sqlite::memory:"))
        >>> user = session.create(User, name="Alice")
        >>> session.query(User).with_("posts").where("id", user.id).get()
        >>> with session.transaction():
        ...     session.save(Post(user_id=user.id, title="Hello"))
    """

    def __init__(
        self,
        connection: Connection,
        settings: Settings | None = None,
        hooks: HookRegistry | None = None,
        cache_storage: CacheStorage | None = None,
        registry: Registry | None = None,
    ) -> None:
        self.connection = connection
        self.settings = settings or Settings()
        self.hooks = hooks or HookRegistry()
        self.registry = registry
        self._cache_storage = cache_storage
        self._result_cache: ResultCache | None = None

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        if exc_type is not None and self.connection.in_transaction:
            self.rollback()

    @property
    def result_cache(self) -> ResultCache:
        """The result cache configured by ``settings.cache_path``.

        Raises:
            CacheNotAccessible: If no cache path is configured
        """
        if self._result_cache is None:
            if self.settings.cache_path is None:
                raise CacheNotAccessible("Result cache is not configured", path="", reason="cache_path is not set")
            self._result_cache = ResultCache(
                self._cache_storage or FileCacheStorage(),
                self.settings.cache_path,
                self.settings.cache_suffix,
            )
        return self._result_cache

    def resolve(self, entity: type[Base] | str) -> type[Base]:
        """Resolve an entity type or registered name.

        Raises:
            ModelResolutionError: If the entity cannot be resolved
        """
        if isinstance(entity, str):
            if self.registry is None:
                raise ModelResolutionError(
                    f"Cannot resolve entity '{entity}' by name without a registry",
                    context={"entity": entity},
                )
            return self.registry.resolve(entity)
        return resolve_entity(entity)

    # ========== Builders ==========

    def table(self, name: str) -> Builder:
        """Start a builder over a table; rows come back as dicts."""
        return Builder(self, table=name)

    def query(self, entity: type[Base] | str) -> Builder:
        """Start a builder bound to an entity; rows come back hydrated."""
        return Builder(self, entity=entity)

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> Result:
        """Run a raw parameterized statement on the session connection.

        Example:
            >>> session.execute("SELECT name FROM users WHERE id = ?", [1]).first()
            {'name': 'Alice'}
        """
        connection = self.connection
        return connection.execute(connection.prepare(sql), list(params or []))

    # ========== Reads ==========

    def get(self, entity: type[Base] | str, pk: Any) -> Base | None:
        """Fetch one entity by primary key, or None."""
        result = self.query(entity).where(self._pk(entity), "=", pk).limit(1).get()
        return result[0] if result else None

    def exists(self, entity: type[Base] | str, pk: Any) -> bool:
        return self.query(entity).where(self._pk(entity), "=", pk).exists()

    def find(self, entity: type[Base] | str, ids: Any) -> Any:
        """Fetch by primary key; a list of ids returns a list of entities.

        Example:
            >>> session.find(User, 1)
            <User id=1>
            >>> session.find(User, [1, 2])
            [<User id=1>, <User id=2>]
        """
        if isinstance(ids, (list, tuple, set, frozenset)):
            return self.query(entity).in_(self._pk(entity), ids).get()
        result = self.query(entity).where(self._pk(entity), "=", ids).limit(1).get()
        return result[0] if result else None

    def find_all(self, entity: type[Base] | str, order_by: str | None = None, direction: str = "desc") -> list[Base]:
        return self.query(entity).order_by(order_by or self._pk(entity), direction).get()

    def find_by(self, entity: type[Base] | str, **criteria: Any) -> list[Base]:
        """Fetch entities matching every field/value pair.

        Example:
            >>> session.find_by(User, status="active", role=["admin", "owner"])
        """
        return self.query(entity).filter_by(criteria).get()

    def count_by(self, entity: type[Base] | str, **criteria: Any) -> int:
        return self.query(entity).filter_by(criteria).count()

    def last(self, entity: type[Base] | str, n: int = 1) -> Any:
        return self.query(entity).last(n)

    # ========== Writes ==========

    def save(self, instance: Base) -> Base:
        """Insert the entity when its primary key is unset, otherwise update it.

        Runs before/after save hooks on insert and before/after update hooks
        on update.
        """
        if instance._pk_value() is None:
            return self._insert(instance)
        return self._update(instance)

    def create(self, entity: type[Base] | str, **values: Any) -> Base:
        """Construct an entity and insert it, keeping an explicit primary key."""
        return self._insert(self.resolve(entity)(**values))

    def _insert(self, instance: Base) -> Base:
        cls = type(instance)
        pk = self._pk(cls)
        self.hooks.run(HookEvent.BEFORE_SAVE, instance)
        values = self._column_values(instance, exclude=pk if instance._pk_value() is None else None)
        new_id = self.table(cls.__tablename__).insert(values)
        if instance._pk_value() is None:
            instance.__dict__[pk] = new_id
        instance._attach(self)
        self.hooks.run(HookEvent.AFTER_SAVE, instance)
        return instance

    def _update(self, instance: Base) -> Base:
        cls = type(instance)
        pk = self._pk(cls)
        self.hooks.run(HookEvent.BEFORE_UPDATE, instance)
        values = self._column_values(instance, exclude=pk)
        if values:
            self.table(cls.__tablename__).where(pk, "=", instance._pk_value()).update(values)
        instance._attach(self)
        self.hooks.run(HookEvent.AFTER_UPDATE, instance)
        return instance

    def delete(self, instance: Base) -> int:
        """Delete the entity's row and return the number of rows removed.

        Raises:
            ModelError: If the entity has no primary key value
        """
        cls = type(instance)
        pk = self._pk(cls)
        pk_value = instance._pk_value()
        if pk_value is None:
            raise ModelError(f"Cannot delete {cls.__name__}: primary key is not set", context={"entity": cls.__name__})

        self.hooks.run(HookEvent.BEFORE_DELETE, instance)
        deleted = self.table(cls.__tablename__).where(pk, "=", pk_value).delete()
        self.hooks.run(HookEvent.AFTER_DELETE, instance)
        return deleted

    def destroy_all(self, entity: type[Base] | str) -> int:
        """Delete every row of the entity's table without running hooks."""
        return self.table(self.resolve(entity).__tablename__).delete()

    # ========== Relations ==========

    def load(self, instance: Base, relation: str) -> Any:
        """Lazily load one relation onto an entity and return it.

        Raises:
            RelationNotFound: If the relation is not declared
        """
        cls = type(instance)
        resolver = cls.__relationships__.get(relation)
        if resolver is None:
            raise RelationNotFound(relation, cls.__name__)
        value = resolver.load(self, instance)
        instance._set_relationship(relation, value)
        return value

    def prefetch(self, instances: Sequence[Base], *relations: str) -> None:
        """Eager-load relations onto entities that are already hydrated.

        Issues one query per relation whatever the number of entities.

        Example:
            >>> users = session.find_all(User)
            >>> session.prefetch(users, "posts", "profile")
        """
        if not instances:
            return
        entity = type(instances[0])
        for name, resolver in requested_relations(entity, relations, self.settings.strict_relations):
            rows = resolver.for_batch(self, instances).rows()
            for instance in instances:
                instance._set_relationship(name, resolver.resolve_batch(rows, instance, self))

    # ========== Transactions ==========

    def begin(self) -> None:
        self.connection.begin_transaction()

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run a block in a transaction that commits on success.

        Errors roll the transaction back and propagate; nothing is retried.

        Example:
            >>> with session.transaction():
            ...     session.create(User, name="Alice")
            ...     session.create(User, name="Bob")
        """
        self.begin()
        try:
            yield self
        except BaseException as exc:
            logger.debug("Rolling back transaction after %s", type(exc).__name__)
            self.rollback()
            raise
        try:
            self.commit()
        except TransactionError:
            self.rollback()
            raise

    # ========== Helpers ==========

    def _pk(self, entity: type[Base] | str) -> str:
        cls = self.resolve(entity)
        if cls.__primary_key__ is None:
            raise ModelError(f"{cls.__name__} has no primary key", context={"entity": cls.__name__})
        return cls.__primary_key__

    @staticmethod
    def _column_values(instance: Base, exclude: str | None) -> dict[str, Any]:
        values = {}
        for name, column in type(instance).__columns__.items():
            if name == exclude or name not in instance.__dict__:
                continue
            values[name] = column.dump(instance.__dict__[name])
        return values

    def attach_all(self, instances: Iterable[Any]) -> None:
        for instance in instances:
            if isinstance(instance, Base):
                instance._attach(self)
