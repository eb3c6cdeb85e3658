"""Identifiers for monitored tables."""

from __future__ import annotations

from dataclasses import dataclass


def _normalize_identifier(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value.upper()


@dataclass(frozen=True, order=True)
class TableId:
    """Monitored table identified by owning schema and table name."""

    owner: str
    table: str

    @classmethod
    def parse(cls, value: str) -> "TableId":
        """Parse ``OWNER.TABLE``; quoted parts keep their case."""
        owner, sep, table = value.strip().partition(".")
        if not sep or not owner or not table:
            raise ValueError(f"table reference {value!r} must look like OWNER.TABLE")
        return cls(_normalize_identifier(owner), _normalize_identifier(table))

    @property
    def name(self) -> str:
        return f"{self.owner}.{self.table}"

    @property
    def full_name(self) -> str:
        return f'"{self.owner}"."{self.table}"'

    def __str__(self) -> str:
        return self.name


__all__ = ["TableId"]
