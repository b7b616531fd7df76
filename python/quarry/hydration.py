"""Turn result rows into entities and attach eager-loaded relations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from quarry.exceptions import RelationNotFound
from quarry.hooks import HookEvent

if TYPE_CHECKING:
    from quarry.base import Base
    from quarry.relationships import Relation
    from quarry.session import Session

logger = logging.getLogger(__name__)


def requested_relations(
    entity: type[Base], names: Iterable[str], strict: bool
) -> list[tuple[str, Relation]]:
    """Look up relation names on an entity, in request order.

    Raises:
        RelationNotFound: If a name is not declared and ``strict`` is set
    """
    found = []
    for name in names:
        relation = entity.__relationships__.get(name)
        if relation is None:
            if strict:
                raise RelationNotFound(name, entity.__name__)
            logger.warning("Skipping undeclared relation '%s' on %s", name, entity.__name__)
            continue
        found.append((name, relation))
    return found


class Hydrator:
    """Builds entities of one type from raw rows.

    Requested relations are fetched once for the whole result, one query per
    relation, and each entity receives its own slice.

    Example:
        >>> rows = session.table("users").rows()
        >>> users = Hydrator(session, User, ["posts"]).hydrate(rows)
        >>> users[0].posts  # already loaded, no query
    """

    def __init__(self, session: Session, entity: type[Base], relations: Iterable[str] = ()) -> None:
        self.session = session
        self.entity = entity
        self.relations = list(relations)

    def hydrate(self, rows: list[dict[str, Any]]) -> list[Base]:
        session = self.session
        settings = session.settings
        # Relation names are checked even when there is nothing to attach them to
        resolvers = requested_relations(self.entity, self.relations, settings.strict_relations)
        if not rows:
            return []

        # One follow-up query per relation, issued before the first row is built
        prefetched: dict[str, list[dict[str, Any]]] = {}
        for name, relation in resolvers:
            logger.debug("Eager loading %s.%s for %d rows", self.entity.__name__, name, len(rows))
            prefetched[name] = relation.for_batch(session, rows).rows()

        hooks = session.hooks
        run_hooks = hooks.has_hooks(self.entity, HookEvent.AFTER_LOAD)
        entities = []
        for row in rows:
            instance = self.entity._from_row(row, settings.unknown_columns)
            instance._attach(session)
            for name, relation in resolvers:
                instance._set_relationship(name, relation.resolve_batch(prefetched[name], instance, session))
            if run_hooks:
                hooks.run(HookEvent.AFTER_LOAD, instance)
            entities.append(instance)
        return entities
