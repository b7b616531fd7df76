"""Naming conventions for tables and keys."""

from __future__ import annotations

import re

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def singularize(word: str) -> str:
    """Return the singular form of an English table name.

    Example:
        >>> singularize("categories"), singularize("addresses"), singularize("users")
        ('category', 'address', 'user')
    """
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("sses", "xes", "ches", "shes", "zzes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def pluralize(word: str) -> str:
    """Return the plural form of an English noun."""
    if word.endswith("y") and len(word) > 1 and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def tableize(class_name: str) -> str:
    """Derive a table name from a class name.

    Example:
        >>> tableize("ArticleTag")
        'article_tags'
    """
    return pluralize(_CAMEL_BOUNDARY.sub("_", class_name).lower())


def foreign_key_for(table: str) -> str:
    """Conventional foreign key column referencing ``table``."""
    return f"{singularize(table)}_id"
