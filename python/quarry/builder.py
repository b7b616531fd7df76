"""Fluent builder for parameterized SQL statements."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from quarry.exceptions import InvalidParameter, QueryError
from quarry.hydration import Hydrator
from quarry.pagination import Paginator
from quarry.raw import Raw

if TYPE_CHECKING:
    from quarry.base import Base
    from quarry.session import Session

OPERATORS = frozenset({"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "NOT LIKE", "IS", "IS NOT"})


class StatementKind(StrEnum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Condition:
    """One WHERE or HAVING fragment with its bind values."""

    conjunction: str
    sql: str
    params: list[Any] = field(default_factory=list)
    negated: bool = False

    def render(self, first: bool) -> str:
        sql = f"NOT ({self.sql})" if self.negated else self.sql
        return sql if first else f"{self.conjunction} {sql}"


def _render_conditions(conditions: list[Condition]) -> tuple[str, list[Any]]:
    parts = []
    params: list[Any] = []
    for i, condition in enumerate(conditions):
        parts.append(condition.render(first=i == 0))
        params.extend(condition.params)
    return " ".join(parts), params


def _comparison(column: Any, args: tuple[Any, ...]) -> tuple[str, list[Any]]:
    """Build ``column op ?`` from the one-, two- and three-argument call forms."""
    if not args:
        # Whole condition given as literal SQL
        return str(column), []
    if len(args) == 1:
        op, value = "=", args[0]
    elif len(args) == 2:
        op, value = args
    else:
        raise InvalidParameter(f"Expected (field, value) or (field, operator, value), got {len(args) + 1} arguments")

    op = " ".join(str(op).upper().split())
    if op not in OPERATORS:
        raise QueryError(f"Unsupported operator: '{op}'", context={"operator": op})

    if value is None:
        if op in ("=", "IS"):
            return f"{column} IS NULL", []
        if op in ("!=", "<>", "IS NOT"):
            return f"{column} IS NOT NULL", []
    if isinstance(value, Raw):
        return f"{column} {op} {value}", []
    return f"{column} {op} ?", [value]


def _membership(column: Any, values: Iterable[Any], negated: bool) -> tuple[str, list[Any]]:
    values = list(values)
    if not values:
        # IN () is not valid SQL
        return ("1 = 1" if negated else "1 = 0"), []
    placeholders = ", ".join("?" for _ in values)
    keyword = "NOT IN" if negated else "IN"
    return f"{column} {keyword} ({placeholders})", values


def _flatten_columns(columns: Iterable[Any]) -> list[str]:
    result: list[str] = []
    for column in columns:
        if isinstance(column, Raw):
            result.append(str(column))
        elif isinstance(column, str):
            result.extend(part.strip() for part in column.split(",") if part.strip())
        else:
            result.extend(_flatten_columns(column))
    return result


class Builder:
    """Accumulates clauses for one statement and executes it.

    A builder is single-use: construct a fresh one per logical query through
    :meth:`Session.table` or :meth:`Session.query`.

    Example:
        >>> session.table("users").where("id", ">", 1).order_by("id", "asc").get()
        [{'id': 2, 'name': 'Bob'}, {'id': 3, 'name': 'Carol'}]
        >>> session.query(User).with_("posts").where("active", True).get()
        [<User id=1>, ...]
    """

    def __init__(self, session: Session, table: str | None = None, entity: type[Base] | str | None = None) -> None:
        self.session = session
        self._connection = session.connection
        self._kind = StatementKind.SELECT
        self._kind_fixed = False

        self._table = table
        self._alias: str | None = None
        self._extra_tables: list[str] = []
        self._columns: list[str] = []
        self._distinct = False
        self._joins: list[str] = []
        self._wheres: list[Condition] = []
        self._groups: list[str] = []
        self._havings: list[Condition] = []
        self._orders: list[tuple[str, str]] = []
        self._limit = 0
        self._offset = 0

        # Mutation state
        self._values: dict[str, Any] = {}
        self._sets: list[tuple[str, str, list[Any]]] = []

        self._entity: type[Base] | None = None
        self._relations: list[str] = []
        self._cache_key: str | None = None
        self._cache_ttl = 0

        if entity is not None:
            self.set_entity(entity)

    def __repr__(self) -> str:
        sql, params = self.to_sql()
        return f"<Builder {sql!r} {params!r}>"

    # ========== Source ==========

    def from_(self, table: str) -> Builder:
        self._table = table
        return self

    def into(self, table: str) -> Builder:
        return self.from_(table)

    def alias(self, name: str) -> Builder:
        self._alias = name
        return self

    def add_table(self, table: str) -> Builder:
        """Add a comma-joined table to the FROM clause."""
        self._extra_tables.append(table)
        return self

    def set_entity(self, entity: type[Base] | str) -> Builder:
        """Bind an entity type; rows returned by get() are hydrated into it.

        Raises:
            ModelResolutionError: If the entity is not a registered entity type
        """
        self._entity = self.session.resolve(entity)
        if self._table is None:
            self._table = self._entity.__tablename__
        return self

    @property
    def entity(self) -> type[Base] | None:
        return self._entity

    def with_(self, *relations: str | Iterable[str]) -> Builder:
        """Request relations to eager-load when the result is hydrated.

        Example:
            >>> session.query(User).with_("posts", "profile").get()
        """
        for relation in relations:
            names = [relation] if isinstance(relation, str) else list(relation)
            for name in names:
                if name not in self._relations:
                    self._relations.append(name)
        return self

    def cache(self, key: str, ttl: float = 3600) -> Builder:
        """Serve get() from the result cache while the entry is younger than ``ttl`` seconds."""
        if ttl < 0:
            raise InvalidParameter(f"Cache TTL cannot be negative, got {ttl}")
        self._cache_key = key
        self._cache_ttl = ttl
        return self

    # ========== Clauses ==========

    def select(self, *columns: str | Raw | Iterable[str | Raw]) -> Builder:
        """Add columns to the select list. Comma-separated strings are split.

        Example:
            >>> builder.select("id, name").select(Raw("count(*) AS total"))
        """
        self._columns.extend(_flatten_columns(columns))
        return self

    def distinct(self) -> Builder:
        self._distinct = True
        return self

    def where(self, column: str | Raw, *args: Any) -> Builder:
        """Add a condition joined with AND.

        Accepts ``where(field, value)``, ``where(field, op, value)`` or a
        literal condition ``where(Raw("a = b"))``.

        Example:
            >>> builder.where("id", 1).where("age", ">=", 18)
            >>> builder.where("deleted_at", None)  # deleted_at IS NULL
        """
        return self._add_where("AND", column, args)

    def and_(self, column: str | Raw, *args: Any) -> Builder:
        return self._add_where("AND", column, args)

    def or_(self, column: str | Raw, *args: Any) -> Builder:
        return self._add_where("OR", column, args)

    def not_(self, column: str | Raw, *args: Any) -> Builder:
        """Add a negated condition; rendered ``NOT (...)`` and joined with AND."""
        return self._add_where("AND", column, args, negated=True)

    def and_not(self, column: str | Raw, *args: Any) -> Builder:
        return self._add_where("AND", column, args, negated=True)

    def or_not(self, column: str | Raw, *args: Any) -> Builder:
        return self._add_where("OR", column, args, negated=True)

    def in_(self, column: str, values: Iterable[Any]) -> Builder:
        """Add ``column IN (?, ...)`` with one placeholder per value."""
        sql, params = _membership(column, values, negated=False)
        self._wheres.append(Condition("AND", sql, params))
        return self

    def and_in(self, column: str, values: Iterable[Any]) -> Builder:
        return self.in_(column, values)

    def or_in(self, column: str, values: Iterable[Any]) -> Builder:
        sql, params = _membership(column, values, negated=False)
        self._wheres.append(Condition("OR", sql, params))
        return self

    def not_in(self, column: str, values: Iterable[Any]) -> Builder:
        sql, params = _membership(column, values, negated=True)
        self._wheres.append(Condition("AND", sql, params))
        return self

    def and_not_in(self, column: str, values: Iterable[Any]) -> Builder:
        return self.not_in(column, values)

    def between(self, column: str, low: Any, high: Any) -> Builder:
        self._wheres.append(Condition("AND", f"({column} BETWEEN ? AND ?)", [low, high]))
        return self

    def not_between(self, column: str, low: Any, high: Any) -> Builder:
        self._wheres.append(Condition("AND", f"({column} NOT BETWEEN ? AND ?)", [low, high]))
        return self

    def filter_by(self, criteria: Mapping[str, Any] | None = None, **kwargs: Any) -> Builder:
        """AND together equality conditions from a field/value map.

        List, tuple and set values become IN conditions.

        Example:
            >>> builder.filter_by(status="active", role=["admin", "owner"])
        """
        for column, value in {**dict(criteria or {}), **kwargs}.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                self.in_(column, value)
            else:
                self.where(column, "=", value)
        return self

    def group_by(self, *columns: str) -> Builder:
        self._groups.extend(_flatten_columns(columns))
        return self

    def having(self, column: str | Raw, *args: Any) -> Builder:
        sql, params = _comparison(column, args)
        self._havings.append(Condition("AND", sql, params))
        return self

    def or_having(self, column: str | Raw, *args: Any) -> Builder:
        sql, params = _comparison(column, args)
        self._havings.append(Condition("OR", sql, params))
        return self

    def order_by(self, column: str | Raw, direction: str = "desc") -> Builder:
        """Append an ORDER BY term.

        Raises:
            InvalidParameter: If direction is not "asc" or "desc"
        """
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise InvalidParameter(f"Order direction must be 'asc' or 'desc', got '{direction}'")
        self._orders.append((str(column), direction.upper()))
        return self

    def limit(self, count: int, offset: int = 0) -> Builder:
        """Limit the result to ``count`` rows after skipping ``offset``.

        A zero count removes the limit.

        Raises:
            InvalidParameter: If count or offset is negative
        """
        if count < 0 or offset < 0:
            raise InvalidParameter(
                f"Limit and offset cannot be negative, got limit({count}, {offset})",
                context={"count": count, "offset": offset},
            )
        self._limit = count
        self._offset = offset
        return self

    def left_join(self, table: str, on: str) -> Builder:
        self._joins.append(f" LEFT JOIN {table} ON {on}")
        return self

    def inner_join(self, table: str, on: str) -> Builder:
        self._joins.append(f" INNER JOIN {table} ON {on}")
        return self

    # ========== Mutations ==========

    def insert(self, data: Mapping[str, Any]) -> Any:
        """Insert one row and return the generated id.

        Example:
            >>> user_id = session.table("users").insert({"name": "Alice"})
        """
        if not data:
            raise QueryError("No values given for INSERT")
        self._fix_kind(StatementKind.INSERT)
        self._values = dict(data)
        self._run()
        return self._connection.last_insert_id()

    def update(self, data: Mapping[str, Any]) -> int:
        """Update matching rows and return the number affected."""
        if not data:
            raise QueryError("No values given for UPDATE")
        self._fix_kind(StatementKind.UPDATE)
        for column, value in data.items():
            if isinstance(value, Raw):
                self._sets.append((column, str(value), []))
            else:
                self._sets.append((column, "?", [value]))
        return self._run().rowcount

    def increment(self, column: str, amount: int | float = 1) -> int:
        """Add ``amount`` to ``column`` on matching rows.

        Example:
            >>> session.table("posts").where("id", 3).increment("views")
        """
        self._fix_kind(StatementKind.UPDATE)
        self._sets.append((column, f"{column} + ?", [amount]))
        return self._run().rowcount

    def decrement(self, column: str, amount: int | float = 1) -> int:
        self._fix_kind(StatementKind.UPDATE)
        self._sets.append((column, f"{column} - ?", [amount]))
        return self._run().rowcount

    def delete(self) -> int:
        """Delete matching rows and return the number affected."""
        self._fix_kind(StatementKind.DELETE)
        return self._run().rowcount

    def _fix_kind(self, kind: StatementKind) -> None:
        if self._kind_fixed:
            raise QueryError(
                f"Builder already holds a {self._kind} statement; use a new builder for {kind}",
                context={"kind": str(self._kind)},
            )
        self._kind = kind
        self._kind_fixed = True

    # ========== Reads ==========

    def get(self) -> list[Any]:
        """Execute the SELECT.

        Returns hydrated entities when an entity is bound, otherwise a list of
        row dicts. Goes through the result cache when :meth:`cache` was called.
        """
        if self._cache_key is None:
            return self._fetch()

        result = self.session.result_cache.fetch(self._cache_key, self._cache_ttl, self._fetch)
        # Unpickled entities come back detached
        self.session.attach_all(result)
        return result

    def _fetch(self) -> list[Any]:
        rows = self.rows()
        if self._entity is None:
            return rows
        return Hydrator(self.session, self._entity, self._relations).hydrate(rows)

    def rows(self) -> list[dict[str, Any]]:
        """Execute the SELECT and return raw row dicts, bypassing hydration and cache."""
        if self._kind is not StatementKind.SELECT:
            raise QueryError(f"Cannot read from a builder holding a {self._kind} statement")
        return self._run().rows

    def count(self) -> int:
        """Count matching rows, ignoring order and limit.

        Grouped and DISTINCT queries are counted over the full select
        wrapped in a derived table, so HAVING may refer to select aliases.
        """
        if self._groups or self._distinct:
            inner, params = self._select_sql(bounded=False)
            sql = f"SELECT count(*) AS total FROM ({inner}) AS sub"
        else:
            where_sql, params = self._where_sql()
            sql = f"SELECT count(*) AS total FROM {self._source_sql()}{where_sql}"
        row = self._execute(sql, params).first()
        return int(row["total"]) if row else 0

    def first(self, n: int = 1) -> Any:
        """Return the first ``n`` rows by primary key.

        One item (or None) when ``n`` is 1, otherwise a list.
        """
        return self._edge(n, "asc")

    def last(self, n: int = 1) -> Any:
        """Return the last ``n`` rows by primary key.

        One item (or None) when ``n`` is 1, otherwise a list.
        """
        return self._edge(n, "desc")

    def _edge(self, n: int, direction: str) -> Any:
        if n < 1:
            raise InvalidParameter(f"Row count must be positive, got {n}")
        key = (self._entity.__primary_key__ if self._entity else None) or "id"
        self._orders = []
        self.order_by(key, direction).limit(n, self._offset)
        result = self.get()
        if n == 1:
            return result[0] if result else None
        return result

    def lists(self, column: str, key: str | None = None) -> list[Any] | dict[Any, Any]:
        """Return the values of one column, or a dict keyed by another column.

        Example:
            >>> session.table("users").lists("name")
            ['Alice', 'Bob']
            >>> session.table("users").lists("name", "id")
            {1: 'Alice', 2: 'Bob'}
        """
        self._columns = [column] if key is None or key == column else [column, key]
        rows = self.rows()
        if key is None:
            return [row[column] for row in rows]
        return {row[key]: row[column] for row in rows}

    def exists(self) -> bool:
        self._columns = ["1"]
        self.limit(1, self._offset)
        return bool(self.rows())

    def paginate(self, per_page: int | None = None, style: str | None = None) -> Paginator:
        """Run get() once and wrap the result in a :class:`~quarry.pagination.Paginator`."""
        settings = self.session.settings
        per_page = settings.per_page if per_page is None else per_page
        if per_page <= 0:
            raise InvalidParameter(f"per_page must be positive, got {per_page}")
        items = self.get()
        return Paginator(items, len(items), per_page, style or settings.pager_style)

    # ========== SQL generation ==========

    def to_sql(self) -> tuple[str, list[Any]]:
        """Return the statement and its bind values without executing.

        Example:
            >>> session.table("users").where("id", ">", 1).to_sql()
            ('SELECT * FROM users WHERE id > ?', [1])
        """
        if self._table is None:
            raise QueryError("No table given; call from_() or into() first")

        match self._kind:
            case StatementKind.SELECT:
                return self._select_sql()
            case StatementKind.INSERT:
                return self._insert_sql()
            case StatementKind.UPDATE:
                return self._update_sql()
            case StatementKind.DELETE:
                return self._delete_sql()
        raise QueryError(f"Unknown statement kind: {self._kind!r}")

    @property
    def sql(self) -> str:
        return self.to_sql()[0]

    @property
    def params(self) -> list[Any]:
        return self.to_sql()[1]

    def _source_sql(self) -> str:
        source = str(self._table)
        if self._alias:
            source += f" AS {self._alias}"
        for table in self._extra_tables:
            source += f", {table}"
        return source + "".join(self._joins)

    def _where_sql(self) -> tuple[str, list[Any]]:
        if not self._wheres:
            return "", []
        sql, params = _render_conditions(self._wheres)
        return f" WHERE {sql}", params

    def _group_sql(self) -> tuple[str, list[Any]]:
        sql = ""
        params: list[Any] = []
        if self._groups:
            sql += " GROUP BY " + ", ".join(self._groups)
        if self._havings:
            having_sql, params = _render_conditions(self._havings)
            sql += f" HAVING {having_sql}"
        return sql, params

    def _select_sql(self, bounded: bool = True) -> tuple[str, list[Any]]:
        columns = ", ".join(self._columns) if self._columns else "*"
        distinct = "DISTINCT " if self._distinct else ""
        sql = f"SELECT {distinct}{columns} FROM {self._source_sql()}"

        # WHERE binds always precede HAVING binds
        where_sql, params = self._where_sql()
        group_sql, having_params = self._group_sql()
        sql += where_sql + group_sql
        params = params + having_params

        if not bounded:
            return sql, params
        if self._orders:
            sql += " ORDER BY " + ", ".join(f"{column} {direction}" for column, direction in self._orders)
        sql += self._connection.limit_clause(self._limit, self._offset)
        return sql, params

    def _insert_sql(self) -> tuple[str, list[Any]]:
        columns = []
        placeholders = []
        params: list[Any] = []
        for column, value in self._values.items():
            columns.append(column)
            if isinstance(value, Raw):
                placeholders.append(str(value))
            else:
                placeholders.append("?")
                params.append(value)
        sql = f"INSERT INTO {self._table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})"
        return sql, params

    def _update_sql(self) -> tuple[str, list[Any]]:
        params: list[Any] = []
        set_parts = []
        for column, expression, values in self._sets:
            set_parts.append(f"{column} = {expression}")
            params.extend(values)
        where_sql, where_params = self._where_sql()
        return f"UPDATE {self._table} SET {', '.join(set_parts)}{where_sql}", params + where_params

    def _delete_sql(self) -> tuple[str, list[Any]]:
        where_sql, params = self._where_sql()
        return f"DELETE FROM {self._table}{where_sql}", params

    # ========== Execution ==========

    def _run(self) -> Any:
        sql, params = self.to_sql()
        return self._execute(sql, params)

    def _execute(self, sql: str, params: list[Any]) -> Any:
        statement = self._connection.prepare(sql)
        return self._connection.execute(statement, params)

    def _add_where(self, conjunction: str, column: Any, args: tuple[Any, ...], negated: bool = False) -> Builder:
        sql, params = _comparison(column, args)
        self._wheres.append(Condition(conjunction, sql, params, negated))
        return self

    # ========== Transactions ==========

    def begin_transaction(self) -> None:
        self._connection.begin_transaction()

    def commit(self) -> None:
        self._connection.commit()

    def rollback(self) -> None:
        self._connection.rollback()
