"""Runtime settings for a session."""

from __future__ import annotations

import configparser
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal

UnknownColumnPolicy = Literal["raise", "ignore"]


@dataclass
class Settings:
    """Settings passed explicitly to a :class:`~quarry.session.Session`.

    Example quarry.ini:
        [quarry]
        cache_path = var/cache
        strict_relations = true
        unknown_columns = raise
        per_page = 20
    """

    cache_path: Path | None = None
    """Directory holding cached query results."""

    cache_suffix: str = "_database_cache"
    """Appended to the key digest to form the cache file name."""

    strict_relations: bool = True
    """Raise RelationNotFound for undeclared eager relations instead of skipping them."""

    unknown_columns: UnknownColumnPolicy = "raise"
    """What hydration does with a column the entity does not register."""

    per_page: int = 10
    """Default page size for paginate()."""

    pager_style: str = "all"
    """Default link style handed to the paginator."""

    def __post_init__(self) -> None:
        if self.cache_path is not None:
            self.cache_path = Path(self.cache_path)
        if self.unknown_columns not in ("raise", "ignore"):
            raise ValueError(f"unknown_columns must be 'raise' or 'ignore', got {self.unknown_columns!r}")
        if self.per_page <= 0:
            raise ValueError(f"per_page must be positive, got {self.per_page}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Settings:
        """Build settings from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return cls(**dict(data))

    @classmethod
    def from_ini(cls, path: Path | str, section: str = "quarry") -> Settings:
        """Load settings from an INI file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the section is missing or holds unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        parser = configparser.ConfigParser()
        parser.read(path)
        if section not in parser:
            raise ValueError(f"No [{section}] section in {path}")

        raw = parser[section]
        data: dict[str, Any] = {}
        for key in raw:
            if key == "strict_relations":
                data[key] = raw.getboolean(key)
            elif key == "per_page":
                data[key] = raw.getint(key)
            elif key == "cache_path":
                # Relative paths are resolved against the config file.
                data[key] = (path.parent / raw[key]).resolve()
            else:
                data[key] = raw[key]
        return cls.from_mapping(data)
