"""Declarative base for entity types."""

from __future__ import annotations

import dataclasses
import inspect
import types
import typing
from typing import Any, ClassVar

from quarry.exceptions import HydrationError, ModelResolutionError
from quarry.fields import ColumnInfo, Mapped
from quarry.inflection import tableize
from quarry.relationships import Relation


class Registry:
    """Maps entity names and table names to entity classes.

    Each :func:`declarative_base` call owns one registry, so entity families
    never see each other.
    """

    def __init__(self) -> None:
        self._entities: dict[str, type[Base]] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._entities

    def register(self, entity: type[Base]) -> None:
        self._entities[entity.__name__] = entity
        self._entities[entity.__tablename__] = entity

    def resolve(self, target: str | type[Base]) -> type[Base]:
        """Resolve a class or a registered name to an entity class.

        Raises:
            ModelResolutionError: If the name is not registered or the class
                is not an entity with a table
        """
        if isinstance(target, str):
            try:
                return self._entities[target]
            except KeyError:
                raise ModelResolutionError(
                    f"Entity '{target}' is not registered", context={"entity": target}
                ) from None
        return resolve_entity(target)


def resolve_entity(target: Any) -> type[Base]:
    """Check that ``target`` is a concrete entity class."""
    if not (isinstance(target, type) and issubclass(target, Base)):
        raise ModelResolutionError(f"{target!r} is not an entity type", context={"entity": repr(target)})
    if not getattr(target, "__tablename__", None):
        raise ModelResolutionError(
            f"Entity '{target.__name__}' has no table", context={"entity": target.__name__}
        )
    return target


class ModelMeta(type):
    """Metaclass for entity types that registers columns and relations."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # The root Base carries nothing
        if not any(isinstance(b, ModelMeta) for b in bases):
            return cls

        abstract = namespace.get("__abstract__", False)
        hints = _collect_hints(cls)
        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, Relation] = {}

        # Columns and relations inherited from entity bases or abstract mixins
        for base in reversed(cls.__mro__[1:]):
            for col_name, col_info in getattr(base, "__columns__", {}).items():
                columns[col_name] = dataclasses.replace(col_info)
            relationships.update(vars(base).get("__relationships__", {}))

        for attr_name, attr_value in namespace.items():
            if attr_name.startswith("_"):
                continue
            if isinstance(attr_value, ColumnInfo):
                attr_value.name = attr_name
                _apply_hint(attr_value, hints.get(attr_name))
                columns[attr_name] = attr_value
                # Instances read the value from __dict__, not the descriptor
                delattr(cls, attr_name)
            elif isinstance(attr_value, Relation):
                relationships[attr_name] = attr_value
                # Removed so that __getattr__ can resolve it
                delattr(cls, attr_name)

        # Each concrete entity binds its own resolvers; inherited ones are copied first
        if not abstract:
            for rel_name, relation in list(relationships.items()):
                if namespace.get(rel_name) is not relation:
                    relation = relation.clone()
                    relationships[rel_name] = relation
                relation.bind(cls, rel_name)  # type: ignore[arg-type]

        # Bare Mapped[...] annotations register a column with inferred type
        for attr_name, hint in hints.items():
            if attr_name.startswith("_") or attr_name in columns or attr_name in relationships:
                continue
            if _is_mapped(hint):
                col = ColumnInfo(name=attr_name)
                _apply_hint(col, hint)
                columns[attr_name] = col

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]

        # Abstract mixins only contribute columns and relations
        if abstract:
            return cls

        cls.__tablename__ = namespace.get("__tablename__") or tableize(name)  # type: ignore[attr-defined]

        primary_key = next((c for c, info in columns.items() if info.primary_key), None)
        if primary_key is None and "id" in columns:
            primary_key = "id"
            columns["id"].primary_key = True
        cls.__primary_key__ = primary_key  # type: ignore[attr-defined]

        registry = getattr(cls, "__registry__", None)
        if registry is None:
            raise TypeError(f"{name} must subclass a base created by declarative_base()")
        registry.register(cls)
        return cls


def _collect_hints(cls: type) -> dict[str, Any]:
    """Resolve annotations along the MRO, each class in its own module.

    When a forward reference is not defined yet, the classes that name it
    keep their annotations as strings and the others are still resolved.
    """
    try:
        return typing.get_type_hints(cls)
    except NameError:
        pass

    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        own = inspect.get_annotations(klass)
        if not own:
            continue
        try:
            resolved = typing.get_type_hints(klass)
        except NameError:
            resolved = own
        hints.update({attr_name: resolved[attr_name] for attr_name in own})
    return hints


def _is_mapped(hint: Any) -> bool:
    if isinstance(hint, str):
        return hint.startswith("Mapped[")
    return typing.get_origin(hint) is Mapped


def _apply_hint(col: ColumnInfo, hint: Any) -> None:
    """Fill python_type and nullability from a Mapped[T] annotation."""
    if hint is None or isinstance(hint, str) or typing.get_origin(hint) is not Mapped:
        return
    args = typing.get_args(hint)
    if not args:
        return
    inner = args[0]
    origin = typing.get_origin(inner)
    if origin is typing.Union or origin is types.UnionType:
        non_none = [a for a in typing.get_args(inner) if a is not type(None)]
        if len(non_none) < len(typing.get_args(inner)) and not col.primary_key:
            col.nullable = True
        inner = non_none[0] if len(non_none) == 1 else inner
        origin = typing.get_origin(inner)
    python_type = origin or inner
    if isinstance(python_type, type):
        col.python_type = python_type
        if python_type in (dict, list):
            col.is_json = True


class Base(metaclass=ModelMeta):
    """Base class for entity types.

    Create one with :func:`declarative_base`.

    Example:
        >>> Base = declarative_base()
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     posts = has_many("Post")
    """

    __abstract__ = True
    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]] = {}
    __relationships__: ClassVar[dict[str, Relation]] = {}
    __primary_key__: ClassVar[str | None] = None
    __registry__: ClassVar[Registry]

    # Instance attributes for relationship state
    _loaded_relationships: dict[str, Any]
    _session: Any  # Reference to session for lazy loading

    def __init__(self, **kwargs: Any) -> None:
        """Initialize an entity with the given column values."""
        object.__setattr__(self, "_loaded_relationships", {})
        object.__setattr__(self, "_session", None)

        for key, value in kwargs.items():
            if key in self.__columns__:
                setattr(self, key, value)
            elif key in self.__relationships__:
                self._set_relationship(key, value)
            else:
                raise TypeError(f"Unknown column or relationship: {key}")

        # Set defaults only for columns that were not provided.
        for col_name, col_info in self.__columns__.items():
            if col_name in kwargs:
                continue
            if col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            elif col_info.nullable:
                setattr(self, col_name, None)
            # Columns filled by the database (like autoincrement PKs) stay unset

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk and pk in self.__dict__:
            return f"<{self.__class__.__name__} {pk}={self.__dict__[pk]!r}>"
        return f"<{self.__class__.__name__}>"

    def __getattr__(self, name: str) -> Any:
        """Resolve relationship attributes, lazily when a session is attached."""
        if name.startswith("_"):
            if name == "_loaded_relationships":
                d: dict[str, Any] = {}
                object.__setattr__(self, "_loaded_relationships", d)
                return d
            if name == "_session":
                return None
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        relationships = type(self).__relationships__
        if name in relationships:
            loaded = self._loaded_relationships
            if name in loaded:
                return loaded[name]

            session = self._session
            if session is None:
                raise AttributeError(
                    f"Relationship '{name}' is not loaded and the entity is detached. "
                    "Use with_() for eager loading or session.load()."
                )
            value = relationships[name].load(session, self)
            loaded[name] = value
            return value

        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def __getstate__(self) -> dict[str, Any]:
        state = dict(self.__dict__)
        # Sessions hold live connections and are re-attached after unpickling
        state["_session"] = None
        return state

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__dict__.update(state)

    def _set_relationship(self, name: str, value: Any) -> None:
        self._loaded_relationships[name] = value

    def _attach(self, session: Any) -> None:
        """Attach a session to this entity and its loaded relations."""
        object.__setattr__(self, "_session", session)
        for value in self._loaded_relationships.values():
            related = value if isinstance(value, list) else [value]
            for item in related:
                if isinstance(item, Base) and item._session is not session:
                    item._attach(session)

    def _pk_value(self) -> Any:
        pk = self.__primary_key__
        return self.__dict__.get(pk) if pk else None

    def to_dict(self, include_relationships: bool = False) -> dict[str, Any]:
        """Convert the entity to a dictionary."""
        result = {}
        for col_name in self.__columns__:
            if col_name in self.__dict__:
                result[col_name] = self.__dict__[col_name]

        if include_relationships:
            for rel_name in self.__relationships__:
                if rel_name in self._loaded_relationships:
                    rel_value = self._loaded_relationships[rel_name]
                    if isinstance(rel_value, list):
                        result[rel_name] = [item.to_dict() for item in rel_value]
                    elif rel_value is not None:
                        result[rel_name] = rel_value.to_dict()
                    else:
                        result[rel_name] = None

        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Base:
        """Create an entity from a dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__columns__})

    @classmethod
    def _from_row(cls, row: dict[str, Any], unknown_columns: str = "raise") -> Base:
        """Build an entity from a database row through the registered setters.

        Bypasses __init__ so that unset columns stay unset.

        Raises:
            HydrationError: If a column is not registered and the policy is "raise"
        """
        instance = object.__new__(cls)
        object.__setattr__(instance, "_loaded_relationships", {})
        object.__setattr__(instance, "_session", None)

        cols = cls.__columns__
        for key, value in row.items():
            col_info = cols.get(key)
            if col_info is None:
                if unknown_columns == "raise":
                    raise HydrationError(cls.__name__, key)
                continue
            instance.__dict__[key] = col_info.load(value)

        return instance


def declarative_base(name: str = "Base") -> type[Base]:
    """Create a base class with its own entity registry.

    Example:
        >>> Base = declarative_base()
        >>> class User(Base): ...
    """
    return ModelMeta(name, (Base,), {"__abstract__": True, "__registry__": Registry()})  # type: ignore[return-value]
