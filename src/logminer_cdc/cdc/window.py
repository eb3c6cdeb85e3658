"""SCN window sizing and low-water mark tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScnWindow:
    """Inclusive commit-SCN range mined in one step."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("window end must not precede its start")

    @property
    def size(self) -> int:
        return self.end - self.start + 1


class ScnWindowAdvancer:
    """Chooses the next SCN window and owns the resumable low-water mark.

    The window grows when a window yields nothing and shrinks when it yields
    more rows than ``high_water_rows``.  The low-water mark only moves forward,
    and only through :meth:`mark_delivered`.
    """

    def __init__(
        self,
        start_scn: int,
        *,
        default_window_size: int = 10_000,
        min_window_size: int = 100,
        max_window_size: int = 1_000_000,
        high_water_rows: int = 5_000,
        growth_factor: float = 2.0,
        shrink_factor: float = 0.5,
    ) -> None:
        if start_scn < 0:
            raise ValueError("start_scn must not be negative")
        if min_window_size <= 0:
            raise ValueError("min_window_size must be positive")
        if not min_window_size <= default_window_size <= max_window_size:
            raise ValueError("window sizes must satisfy min <= default <= max")
        if high_water_rows <= 0:
            raise ValueError("high_water_rows must be positive")
        if growth_factor < 1 or not 0 < shrink_factor <= 1:
            raise ValueError("growth_factor must be >= 1 and shrink_factor in (0, 1]")
        self._next_start = start_scn
        self._window_size = default_window_size
        self._min_window_size = min_window_size
        self._max_window_size = max_window_size
        self._high_water_rows = high_water_rows
        self._growth_factor = growth_factor
        self._shrink_factor = shrink_factor
        self._pending: Optional[ScnWindow] = None

    @property
    def low_water_mark(self) -> int:
        """Highest SCN whose rows have all been handed to the poll buffer."""
        return self._next_start - 1

    @property
    def next_start(self) -> int:
        return self._next_start

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def pending(self) -> Optional[ScnWindow]:
        return self._pending

    def next_window(self, current_scn: int) -> Optional[ScnWindow]:
        """Return the next window to mine, or ``None`` when caught up.

        The window never extends past ``current_scn``.  While a window is
        pending delivery the same window is returned again.
        """
        if self._pending is not None:
            return self._pending
        if current_scn < self._next_start:
            return None
        end = min(self._next_start + self._window_size - 1, current_scn)
        self._pending = ScnWindow(self._next_start, end)
        return self._pending

    def record_yield(self, rows: int) -> None:
        """Adjust the window size from the row count of the last window."""
        previous = self._window_size
        if rows == 0:
            self._window_size = min(
                self._max_window_size, int(self._window_size * self._growth_factor)
            )
        elif rows > self._high_water_rows:
            self._window_size = max(
                self._min_window_size, int(self._window_size * self._shrink_factor)
            )
        if self._window_size != previous:
            logger.debug(
                "scn window resized %d -> %d after %d rows",
                previous,
                self._window_size,
                rows,
            )

    def mark_delivered(self, scn: int) -> None:
        """Record that every row up to ``scn`` has reached the poll buffer."""
        if scn < self.low_water_mark:
            logger.debug(
                "ignoring delivery mark %d behind low-water mark %d",
                scn,
                self.low_water_mark,
            )
            return
        if self._pending is not None and scn != self._pending.end:
            raise ValueError(
                f"pending window ends at {self._pending.end}, cannot mark scn {scn}"
            )
        self._next_start = scn + 1
        self._pending = None


__all__ = ["ScnWindow", "ScnWindowAdvancer"]
