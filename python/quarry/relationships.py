"""Relation declarations and their resolvers.

Each declaration builds one resolver that is stored on the owning entity and
reused for every load. Callers pick the strategy through explicit entry
points:

* lazy: :meth:`Relation.for_entity` then :meth:`Relation.resolve_one`
* eager: :meth:`Relation.for_batch` once for a batch of parents, then
  :meth:`Relation.resolve_batch` per parent

Both strategies hydrate related rows through :meth:`Relation.collect`, so the
resulting object graphs are identical.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from quarry.exceptions import ModelResolutionError, RelationMisconfigured, UnsupportedOperation
from quarry.hydration import Hydrator
from quarry.inflection import foreign_key_for
from quarry.raw import Raw

if TYPE_CHECKING:
    from quarry.base import Base
    from quarry.builder import Builder
    from quarry.pagination import Paginator
    from quarry.session import Session

PIVOT_KEY = "_pivot_key"


class LoadMode(StrEnum):
    LAZY = "lazy"
    EAGER = "eager"


def key_of(parent: Any, key: str) -> Any:
    """Read ``key`` from a row dict or an entity.

    Raises:
        RelationMisconfigured: If the parent does not carry the key
    """
    if isinstance(parent, Mapping):
        values = parent
    else:
        values = parent.__dict__
    if key not in values:
        raise RelationMisconfigured(
            f"Key column '{key}' is missing on {type(parent).__name__}",
            context={"key": key},
        )
    return values[key]


def distinct_keys(parents: Iterable[Any], key: str) -> list[Any]:
    """Distinct non-null key values in first-seen order."""
    values = (key_of(parent, key) for parent in parents)
    return list(dict.fromkeys(value for value in values if value is not None))


class Relation:
    """Base resolver shared by all relation kinds."""

    many: ClassVar[bool] = False

    def __init__(self, target: type[Base] | str) -> None:
        self._target_ref = target
        self._target: type[Base] | None = None
        self.owner: type[Base] | None = None
        self.name: str | None = None

    def __repr__(self) -> str:
        target = self._target_ref if isinstance(self._target_ref, str) else self._target_ref.__name__
        owner = self.owner.__name__ if self.owner else "?"
        return f"<{type(self).__name__} {owner}.{self.name} -> {target}>"

    def bind(self, owner: type[Base], name: str) -> None:
        """Attach the resolver to its owning entity. Called by the metaclass."""
        self.owner = owner
        self.name = name

    def clone(self) -> Relation:
        """An unbound copy of this resolver, for a subclass to bind."""
        clone = copy.copy(self)
        clone.owner = None
        clone.name = None
        clone._target = None
        return clone

    @property
    def target(self) -> type[Base]:
        """The related entity type, resolved on first use.

        Raises:
            RelationMisconfigured: If the target cannot be resolved
        """
        if self._target is None:
            if self.owner is None:
                raise RelationMisconfigured(f"{self!r} is not bound to an entity")
            try:
                self._target = self.owner.__registry__.resolve(self._target_ref)
            except ModelResolutionError as exc:
                raise RelationMisconfigured(
                    f"Cannot resolve target of relation '{self.name}' on '{self.owner.__name__}': {exc}",
                    context={"relation": self.name, "entity": self.owner.__name__},
                ) from exc
        return self._target

    def _require_owner(self) -> type[Base]:
        if self.owner is None:
            raise RelationMisconfigured(f"{self!r} is not bound to an entity")
        return self.owner

    @staticmethod
    def _primary_key(entity: type[Base]) -> str:
        return entity.__primary_key__ or "id"

    # ========== Resolver contract ==========

    def for_entity(self, session: Session, parent: Any) -> Builder:
        """Builder holding the lazy conditions for a single parent."""
        raise NotImplementedError

    def for_batch(self, session: Session, parents: Iterable[Any]) -> Builder:
        """Builder holding the eager conditions over the distinct keys of a batch."""
        raise NotImplementedError

    def parent_key(self, parent: Any) -> Any:
        """The value related rows are matched against for this parent."""
        raise NotImplementedError

    def row_key(self, row: Mapping[str, Any]) -> Any:
        """The value a related row carries back to its parent."""
        raise NotImplementedError

    def resolve_one(self, builder: Builder) -> Any:
        """Execute a lazy builder and hydrate its rows."""
        return self.collect(builder.session, builder.rows())

    def resolve_batch(self, rows: list[dict[str, Any]], parent: Any, session: Session) -> Any:
        """Pick this parent's slice out of prefetched rows and hydrate it."""
        key = self.parent_key(parent)
        if key is None:
            return self.collect(session, [])
        return self.collect(session, [row for row in rows if self.row_key(row) == key])

    def load(self, session: Session, parent: Any) -> Any:
        """Lazily resolve the relation for one parent."""
        return self.resolve_one(self.for_entity(session, parent))

    def collect(self, session: Session, rows: list[dict[str, Any]]) -> Any:
        """Hydrate related rows; a list for to-many relations, else one entity or None."""
        related = Hydrator(session, self.target).hydrate(rows)
        if self.many:
            return related
        return related[0] if related else None


class HasOneOrMany(Relation):
    """The related table holds a foreign key to the owner's local key."""

    def __init__(self, target: type[Base] | str, foreign_key: str | None = None, local_key: str | None = None) -> None:
        super().__init__(target)
        self._foreign_key = foreign_key
        self._local_key = local_key

    @property
    def foreign_key(self) -> str:
        return self._foreign_key or foreign_key_for(self._require_owner().__tablename__)

    @property
    def local_key(self) -> str:
        return self._local_key or self._primary_key(self._require_owner())

    def parent_key(self, parent: Any) -> Any:
        return key_of(parent, self.local_key)

    def row_key(self, row: Mapping[str, Any]) -> Any:
        return row.get(self.foreign_key)

    def for_entity(self, session: Session, parent: Any) -> Builder:
        return session.query(self.target).where(self.foreign_key, "=", self.parent_key(parent))

    def for_batch(self, session: Session, parents: Iterable[Any]) -> Builder:
        return session.query(self.target).in_(self.foreign_key, distinct_keys(parents, self.local_key))


class HasOne(HasOneOrMany):
    """One related row whose foreign key references the owner."""

    def for_entity(self, session: Session, parent: Any) -> Builder:
        return super().for_entity(session, parent).limit(1)


class HasMany(HasOneOrMany):
    """Related rows whose foreign key references the owner."""

    many = True

    def paginate(
        self,
        session: Session,
        parent: Any,
        per_page: int | None = None,
        style: str | None = None,
        mode: LoadMode | str = LoadMode.LAZY,
    ) -> Paginator:
        """Page through the related rows of one parent.

        Raises:
            UnsupportedOperation: If ``mode`` is EAGER; paging needs one
                bounded query per parent
        """
        if LoadMode(mode) is LoadMode.EAGER:
            raise UnsupportedOperation(
                f"Relation '{self.name}' cannot be paginated when eager-loaded",
                context={"relation": self.name},
            )
        return self.for_entity(session, parent).paginate(per_page, style)


class BelongsTo(Relation):
    """The owner holds a foreign key to the related entity's key."""

    def __init__(self, target: type[Base] | str, foreign_key: str | None = None, owner_key: str | None = None) -> None:
        super().__init__(target)
        self._foreign_key = foreign_key
        self._owner_key = owner_key

    @property
    def foreign_key(self) -> str:
        return self._foreign_key or foreign_key_for(self.target.__tablename__)

    @property
    def owner_key(self) -> str:
        return self._owner_key or self._primary_key(self.target)

    def parent_key(self, parent: Any) -> Any:
        return key_of(parent, self.foreign_key)

    def row_key(self, row: Mapping[str, Any]) -> Any:
        return row.get(self.owner_key)

    def for_entity(self, session: Session, parent: Any) -> Builder:
        return session.query(self.target).where(self.owner_key, "=", self.parent_key(parent)).limit(1)

    def for_batch(self, session: Session, parents: Iterable[Any]) -> Builder:
        return session.query(self.target).in_(self.owner_key, distinct_keys(parents, self.foreign_key))


class BelongsToMany(Relation):
    """Related rows reached through a pivot table holding two foreign keys.

    Example:
        >>> class Article(Base):
        ...     tags = belongs_to_many("Tag", "article_tags")
        # SELECT article_tags.article_id AS _pivot_key, tags.* FROM tags
        #   INNER JOIN article_tags ON article_tags.tag_id = tags.id
        #   WHERE article_tags.article_id = ?
    """

    many = True

    def __init__(
        self,
        target: type[Base] | str,
        pivot: type[Base] | str,
        parent_key: str | None = None,
        related_key: str | None = None,
    ) -> None:
        super().__init__(target)
        self._pivot_ref = pivot
        self._parent_key = parent_key
        self._related_key = related_key

    @property
    def pivot(self) -> str:
        """Pivot table name. Accepts an entity type, an entity name or a table name."""
        ref = self._pivot_ref
        if isinstance(ref, str):
            registry = self._require_owner().__registry__
            if ref in registry:
                return registry.resolve(ref).__tablename__
            return ref
        try:
            return self._require_owner().__registry__.resolve(ref).__tablename__
        except ModelResolutionError as exc:
            raise RelationMisconfigured(
                f"Cannot resolve pivot of relation '{self.name}': {exc}",
                context={"relation": self.name},
            ) from exc

    @property
    def pivot_parent_key(self) -> str:
        return self._parent_key or foreign_key_for(self._require_owner().__tablename__)

    @property
    def pivot_related_key(self) -> str:
        return self._related_key or foreign_key_for(self.target.__tablename__)

    def parent_key(self, parent: Any) -> Any:
        return key_of(parent, self._primary_key(self._require_owner()))

    def row_key(self, row: Mapping[str, Any]) -> Any:
        return row.get(PIVOT_KEY)

    def _joined(self, session: Session) -> Builder:
        target = self.target
        table = target.__tablename__
        pivot = self.pivot
        return (
            session.query(target)
            .select(Raw(f"{pivot}.{self.pivot_parent_key} AS {PIVOT_KEY}"), Raw(f"{table}.*"))
            .inner_join(pivot, f"{pivot}.{self.pivot_related_key} = {table}.{self._primary_key(target)}")
        )

    def for_entity(self, session: Session, parent: Any) -> Builder:
        return self._joined(session).where(f"{self.pivot}.{self.pivot_parent_key}", "=", self.parent_key(parent))

    def for_batch(self, session: Session, parents: Iterable[Any]) -> Builder:
        owner_pk = self._primary_key(self._require_owner())
        return self._joined(session).in_(f"{self.pivot}.{self.pivot_parent_key}", distinct_keys(parents, owner_pk))

    def collect(self, session: Session, rows: list[dict[str, Any]]) -> Any:
        """Drop the pivot column and duplicate pivot entries before hydrating."""
        target_pk = self._primary_key(self.target)
        seen: set[Any] = set()
        unique: list[dict[str, Any]] = []
        for row in rows:
            related = {k: v for k, v in row.items() if k != PIVOT_KEY}
            pk = related.get(target_pk)
            if pk in seen:
                continue
            seen.add(pk)
            unique.append(related)
        return super().collect(session, unique)


# ========== Declaration surface ==========


def has_one(target: type[Base] | str, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Declare a one-to-one relation where the related table holds the key.

    Example:
        >>> class User(Base):
        ...     profile = has_one("Profile")  # profiles.user_id = users.id
    """
    return HasOne(target, foreign_key, local_key)


def has_many(target: type[Base] | str, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Declare a one-to-many relation.

    Example:
        >>> class User(Base):
        ...     posts = has_many("Post")  # posts.user_id = users.id
        ...     comments = has_many("Comment", foreign_key="author_id")
    """
    return HasMany(target, foreign_key, local_key)


def belongs_to(target: type[Base] | str, foreign_key: str | None = None, owner_key: str | None = None) -> Any:
    """Declare a many-to-one relation where the owner holds the key.

    Example:
        >>> class Post(Base):
        ...     author = belongs_to("User")  # posts.user_id = users.id
    """
    return BelongsTo(target, foreign_key, owner_key)


def belongs_to_many(
    target: type[Base] | str,
    pivot: type[Base] | str,
    parent_key: str | None = None,
    related_key: str | None = None,
) -> Any:
    """Declare a many-to-many relation through a pivot table.

    Example:
        >>> class Article(Base):
        ...     tags = belongs_to_many("Tag", "article_tags")
    """
    return BelongsToMany(target, pivot, parent_key, related_key)
