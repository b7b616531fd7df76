"""Column registration for entity types."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class JSON:
    """Marker class for JSON columns.

    Values are stored as JSON text and decoded into dict/list on hydration.

    Example:
        >>> class Product(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     attributes: Mapped[dict] = mapped_column(JSON)
    """

    pass


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     age: Mapped[int | None] = mapped_column(nullable=True)
    """

    pass


@dataclass
class ColumnInfo:
    """A registered column: its name and the setter used at hydration."""

    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    default: Any = None
    is_json: bool = False
    converter: Callable[[Any], Any] | None = None
    dumper: Callable[[Any], Any] | None = None

    def load(self, value: Any) -> Any:
        """Convert a raw driver value into the attribute value."""
        if value is None:
            return None
        if self.converter is not None:
            return self.converter(value)
        if self.is_json:
            return json.loads(value) if isinstance(value, (str, bytes)) else value

        python_type = self.python_type
        # SQLite hands back 0/1 for booleans and ISO text for dates.
        if python_type is bool and isinstance(value, int):
            return bool(value)
        if python_type is datetime and isinstance(value, str):
            return datetime.fromisoformat(value)
        if python_type is date and isinstance(value, str):
            return date.fromisoformat(value)
        return value

    def dump(self, value: Any) -> Any:
        """Convert an attribute value into a bind value."""
        if value is None:
            return None
        if self.dumper is not None:
            value = self.dumper(value)
        if self.is_json:
            return json.dumps(value)
        return value


def mapped_column(
    type_: type | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    default: Any = None,
    converter: Callable[[Any], Any] | None = None,
    dump: Callable[[Any], Any] | None = None,
) -> Any:
    """Register a database column.

    Args:
        type_: Optional JSON marker for this column
        primary_key: Whether this is the primary key column
        nullable: Whether NULL values are allowed
        default: Default value (can be callable)
        converter: Setter applied to raw values at hydration, replacing
            the conversion inferred from the annotation
        dump: Mutator applied to the attribute value before it is bound
            on insert or update

    Returns:
        A ColumnInfo descriptor

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> email: Mapped[str] = mapped_column(converter=str.lower)
        >>> slug: Mapped[str] = mapped_column(dump=slugify)
        >>> metadata: Mapped[dict] = mapped_column(JSON)
    """
    is_json = type_ is JSON or (isinstance(type_, type) and issubclass(type_, JSON))

    # Primary keys are not nullable
    if primary_key:
        nullable = False

    return ColumnInfo(
        primary_key=primary_key,
        nullable=nullable,
        default=default,
        is_json=is_json,
        converter=converter,
        dumper=dump,
    )
