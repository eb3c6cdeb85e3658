"""Resumable positions inside the mined redo stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Offset:
    """Ordered position of a delivered row.

    ``scn`` is the commit SCN of the row (or the flashback SCN for snapshot
    rows) and ``sequence`` orders rows sharing that SCN.  Offsets compare by
    ``(scn, sequence)`` only.

    ``mining_scn`` is the LogMiner STARTSCN that still covers every
    transaction committing at or after this offset.  Offsets written before it
    was tracked leave it unset.
    """

    scn: int
    sequence: int = 0
    snapshot: bool = False
    mining_scn: Optional[int] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.scn < 0:
            raise ValueError("scn must not be negative")
        if self.sequence < 0:
            raise ValueError("sequence must not be negative")
        if self.mining_scn is not None and self.mining_scn < 0:
            raise ValueError("mining_scn must not be negative")

    @property
    def key(self) -> tuple[int, int]:
        return (self.scn, self.sequence)

    def __lt__(self, other: "Offset") -> bool:
        if not isinstance(other, Offset):
            return NotImplemented
        return self.key < other.key

    def __le__(self, other: "Offset") -> bool:
        if not isinstance(other, Offset):
            return NotImplemented
        return self.key <= other.key

    def __gt__(self, other: "Offset") -> bool:
        if not isinstance(other, Offset):
            return NotImplemented
        return self.key > other.key

    def __ge__(self, other: "Offset") -> bool:
        if not isinstance(other, Offset):
            return NotImplemented
        return self.key >= other.key

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "scn": self.scn,
            "sequence": self.sequence,
            "snapshot": self.snapshot,
        }
        if self.mining_scn is not None:
            data["mining_scn"] = self.mining_scn
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Offset":
        try:
            scn = data["scn"]
        except KeyError as exc:
            raise ValueError("offset payload is missing 'scn'") from exc
        sequence = data.get("sequence", 0)
        mining_scn = data.get("mining_scn")
        if not isinstance(scn, int) or not isinstance(sequence, int):
            raise ValueError("offset scn and sequence must be integers")
        if mining_scn is not None and not isinstance(mining_scn, int):
            raise ValueError("offset mining_scn must be an integer")
        return cls(
            scn=scn,
            sequence=sequence,
            snapshot=bool(data.get("snapshot")),
            mining_scn=mining_scn,
        )


__all__ = ["Offset"]
