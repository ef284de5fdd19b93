"""
Hemocytometer count aggregation.

Reduces raw form input into CountTotals. Two input modes:
  grid mode:  per-grid viable/non-viable entries summed over a GridSelection
  total mode: a flat viable/non-viable pair plus a declared grid count

Counts arrive as strings straight from the form. Anything that does not parse
as a non-negative integer contributes 0, so a half-filled form still yields a
valid result.
"""

import logging
import math
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Leading integer digits, mirroring how a number field is read while typing
_COUNT_PATTERN = re.compile(r"^\s*\+?(\d+)")

DEFAULT_DECLARED_GRID_COUNT = 4

INPUT_MODE_GRID = "grid"
INPUT_MODE_TOTAL = "total"
INPUT_MODES = (INPUT_MODE_GRID, INPUT_MODE_TOTAL)


class GridId(IntEnum):
    """Large counting squares of a standard hemocytometer chamber."""
    TOP_LEFT = 1
    TOP_RIGHT = 2
    CENTER = 3
    BOTTOM_LEFT = 4
    BOTTOM_RIGHT = 5

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


CORNER_GRIDS = frozenset(
    {GridId.TOP_LEFT, GridId.TOP_RIGHT, GridId.BOTTOM_LEFT, GridId.BOTTOM_RIGHT}
)
ALL_GRIDS = frozenset(GridId)


def parse_count(raw: Union[str, int, None]) -> int:
    """
    Parse a raw count field as a non-negative integer.

    Returns 0 for empty, non-numeric or negative input instead of raising.
    Decimal input is truncated ("3.7" -> 3).
    """
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(raw, 0)
    if isinstance(raw, float):
        return max(int(raw), 0) if math.isfinite(raw) else 0

    match = _COUNT_PATTERN.match(str(raw))
    if not match:
        return 0
    return int(match.group(1))


def parse_grid_id(value: Union[str, int]) -> Optional[GridId]:
    """Accept 3, "3" or "grid-3". Returns None for anything outside 1..5."""
    text = str(value).strip().lower()
    if text.startswith("grid-"):
        text = text[len("grid-"):]
    try:
        return GridId(int(text))
    except ValueError:
        return None


@dataclass
class GridEntry:
    """Raw per-grid input as typed by the user."""
    grid_id: GridId
    viable: str = ""
    non_viable: str = ""

    @property
    def viable_count(self) -> int:
        return parse_count(self.viable)

    @property
    def non_viable_count(self) -> int:
        return parse_count(self.non_viable)

    def clear(self) -> None:
        self.viable = ""
        self.non_viable = ""


def empty_grid_entries() -> dict[GridId, GridEntry]:
    return {grid_id: GridEntry(grid_id) for grid_id in GridId}


class GridSelection:
    """
    Set of grids included in the count.

    Never empty: removing the last selected grid is ignored.
    """

    def __init__(self, grids: Optional[Iterable[Union[GridId, int]]] = None):
        selected = frozenset(GridId(g) for g in grids) if grids is not None else CORNER_GRIDS
        self._grids: set[GridId] = set(selected) if selected else set(CORNER_GRIDS)

    def __contains__(self, grid_id: object) -> bool:
        return grid_id in self._grids

    def __iter__(self):
        return iter(sorted(self._grids))

    def __len__(self) -> int:
        return len(self._grids)

    def __repr__(self) -> str:
        return f"<GridSelection({[int(g) for g in self]})>"

    @property
    def grids(self) -> frozenset[GridId]:
        return frozenset(self._grids)

    def toggle(self, grid_id: Union[GridId, int]) -> bool:
        """
        Add or remove a grid. Returns True if the selection changed.

        Raises ValueError for an id outside 1-5.
        """
        grid_id = GridId(grid_id)
        if grid_id in self._grids:
            if len(self._grids) == 1:
                logger.debug("Ignoring removal of last selected grid %s", grid_id.label)
                return False
            self._grids.remove(grid_id)
        else:
            self._grids.add(grid_id)
        return True

    def select_corners(self) -> None:
        self._grids = set(CORNER_GRIDS)

    def select_all(self) -> None:
        self._grids = set(ALL_GRIDS)


@dataclass(frozen=True)
class CountTotals:
    """Aggregated counts feeding the concentration calculation."""
    total_cells: int
    viable_cells: int
    grids_counted: int

    @property
    def non_viable_cells(self) -> int:
        return self.total_cells - self.viable_cells

    @property
    def viability_percent(self) -> float:
        if self.total_cells <= 0:
            return 0.0
        return self.viable_cells / self.total_cells * 100

    def to_dict(self) -> dict:
        return {
            "total_cells": self.total_cells,
            "viable_cells": self.viable_cells,
            "non_viable_cells": self.non_viable_cells,
            "grids_counted": self.grids_counted,
            "viability_percent": self.viability_percent,
        }


def aggregate_grids(
    entries: Mapping[GridId, GridEntry], selection: GridSelection
) -> CountTotals:
    """
    Sum viable and non-viable counts over the selected grids.

    Grids missing from entries count as empty.
    """
    viable = 0
    non_viable = 0
    for grid_id in selection:
        entry = entries.get(grid_id)
        if entry is None:
            continue
        viable += entry.viable_count
        non_viable += entry.non_viable_count

    return CountTotals(
        total_cells=viable + non_viable,
        viable_cells=viable,
        grids_counted=len(selection),
    )


def parse_declared_grid_count(raw: Union[str, int, None]) -> int:
    """
    Declared grid count for total mode, clamped into 1..5.

    Missing or non-numeric input falls back to the default of 4.
    """
    if raw is None or (isinstance(raw, str) and not _COUNT_PATTERN.match(raw)):
        return DEFAULT_DECLARED_GRID_COUNT
    return min(max(parse_count(raw), 1), len(GridId))


def aggregate_totals(
    viable_raw: Union[str, int, None],
    non_viable_raw: Union[str, int, None],
    declared_grid_count: Union[str, int, None] = DEFAULT_DECLARED_GRID_COUNT,
) -> CountTotals:
    """Build CountTotals from a flat viable/non-viable pair."""
    viable = parse_count(viable_raw)
    non_viable = parse_count(non_viable_raw)
    return CountTotals(
        total_cells=viable + non_viable,
        viable_cells=viable,
        grids_counted=parse_declared_grid_count(declared_grid_count),
    )


CountListener = Callable[[int, int, int], None]


class CountAggregator:
    """
    Runs aggregations and notifies listeners with
    (total_cells, viable_cells, grids_counted) after each one.
    """

    def __init__(self):
        self._listeners: list[CountListener] = []

    def subscribe(self, listener: CountListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, totals: CountTotals) -> CountTotals:
        for listener in list(self._listeners):
            listener(totals.total_cells, totals.viable_cells, totals.grids_counted)
        return totals

    def from_grids(
        self, entries: Mapping[GridId, GridEntry], selection: GridSelection
    ) -> CountTotals:
        return self._notify(aggregate_grids(entries, selection))

    def from_totals(
        self,
        viable_raw: Union[str, int, None],
        non_viable_raw: Union[str, int, None],
        declared_grid_count: Union[str, int, None] = DEFAULT_DECLARED_GRID_COUNT,
    ) -> CountTotals:
        return self._notify(aggregate_totals(viable_raw, non_viable_raw, declared_grid_count))
