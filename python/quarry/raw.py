"""Literal SQL fragments."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Raw:
    """SQL text that is emitted as-is and never bound.

    Example:
        >>> session.table("users").select(Raw("COUNT(*) AS total")).get()
    """

    value: str

    def __str__(self) -> str:
        return self.value
