"""
Reactive counting session.

Holds the raw form state of one counting session and recomputes every derived
value synchronously after each mutation:

    raw counts -> CountTotals -> ConcentrationPair -> MasterMixResult

Nothing derived is cached between mutations; each snapshot is rebuilt from
the raw fields.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from calculations.concentration import (
    DEFAULT_DILUTION_FACTOR,
    ConcentrationPair,
    calculate_concentrations,
    parse_dilution_factor,
)
from calculations.counting import (
    DEFAULT_DECLARED_GRID_COUNT,
    INPUT_MODE_GRID,
    INPUT_MODES,
    CountAggregator,
    CountTotals,
    GridEntry,
    GridId,
    GridSelection,
    empty_grid_entries,
    parse_declared_grid_count,
)
from calculations.master_mix import (
    DEFAULT_CELLS_PER_WELL,
    DEFAULT_EXTRA_WELLS,
    DEFAULT_VOLUME_PER_WELL_UL,
    DEFAULT_WELL_COUNT,
    MASTER_MIX_SOURCES,
    SOURCE_HEMOCYTOMETER,
    ManualConcentration,
    MasterMixParams,
    MasterMixResult,
    parse_manual_concentration,
    parse_master_mix_params,
    select_source_concentration,
    solve_master_mix,
)

logger = logging.getLogger(__name__)

MASTER_MIX_FIELDS = ("volume_per_well", "cells_per_well", "well_count", "extra_wells")


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything derived from the current raw state."""
    input_mode: str
    dilution_factor: int
    totals: CountTotals
    concentrations: ConcentrationPair
    master_mix_source: str
    use_viable: bool
    manual_concentration: ManualConcentration
    master_mix_params: MasterMixParams
    master_mix: MasterMixResult
    selected_grids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def manual_concentration_invalid(self) -> bool:
        """Drives the inline "invalid manual concentration" styling."""
        return self.manual_concentration.is_present and not self.manual_concentration.is_valid


SnapshotListener = Callable[[SessionSnapshot], None]


class HemocytometerSession:
    """
    Form state for counting cells and planning a master mix.

    Mutators take raw strings exactly as typed. Invalid values never raise;
    they contribute zero or leave the previous valid value in place.
    """

    def __init__(self, input_mode: str = INPUT_MODE_GRID, master_mix_source: str = SOURCE_HEMOCYTOMETER):
        self.grid_entries: dict[GridId, GridEntry] = empty_grid_entries()
        self.selection = GridSelection()
        self.viable_total = ""
        self.non_viable_total = ""
        self.declared_grid_count = DEFAULT_DECLARED_GRID_COUNT
        self.input_mode = input_mode if input_mode in INPUT_MODES else INPUT_MODE_GRID
        self.dilution_factor = DEFAULT_DILUTION_FACTOR

        self.master_mix_fields: dict[str, str] = {
            "volume_per_well": f"{DEFAULT_VOLUME_PER_WELL_UL:g}",
            "cells_per_well": f"{DEFAULT_CELLS_PER_WELL:g}",
            "well_count": str(DEFAULT_WELL_COUNT),
            "extra_wells": str(DEFAULT_EXTRA_WELLS),
        }
        self.use_viable = True
        self.master_mix_source = (
            master_mix_source if master_mix_source in MASTER_MIX_SOURCES else SOURCE_HEMOCYTOMETER
        )
        self.manual_concentration_raw = ""

        self.aggregator = CountAggregator()
        self._listeners: list[SnapshotListener] = []
        self.snapshot = self._recompute()

    # --- observers ---

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener called with each new snapshot."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- count input ---

    def set_grid_count(self, grid_id: GridId, viable: Optional[str] = None, non_viable: Optional[str] = None) -> SessionSnapshot:
        entry = self.grid_entries[GridId(grid_id)]
        if viable is not None:
            entry.viable = viable
        if non_viable is not None:
            entry.non_viable = non_viable
        return self._changed()

    def toggle_grid(self, grid_id: GridId) -> SessionSnapshot:
        self.selection.toggle(GridId(grid_id))
        return self._changed()

    def select_corner_grids(self) -> SessionSnapshot:
        self.selection.select_corners()
        return self._changed()

    def select_all_grids(self) -> SessionSnapshot:
        self.selection.select_all()
        return self._changed()

    def set_totals(self, viable: Optional[str] = None, non_viable: Optional[str] = None) -> SessionSnapshot:
        if viable is not None:
            self.viable_total = viable
        if non_viable is not None:
            self.non_viable_total = non_viable
        return self._changed()

    def set_declared_grid_count(self, raw: Union[str, int]) -> SessionSnapshot:
        self.declared_grid_count = parse_declared_grid_count(raw)
        return self._changed()

    def clear_counts(self) -> SessionSnapshot:
        """Clear the counts of the active input mode. The grid selection is kept."""
        if self.input_mode == INPUT_MODE_GRID:
            for entry in self.grid_entries.values():
                entry.clear()
        else:
            self.viable_total = ""
            self.non_viable_total = ""
        return self._changed()

    def set_input_mode(self, mode: str) -> SessionSnapshot:
        if mode not in INPUT_MODES:
            logger.debug("Ignoring unknown input mode %r", mode)
            return self.snapshot
        if mode != self.input_mode:
            logger.debug("Input mode switched to %s", mode)
        self.input_mode = mode
        return self._changed()

    def set_dilution_factor(self, raw: Union[str, int]) -> SessionSnapshot:
        self.dilution_factor = parse_dilution_factor(raw, default=self.dilution_factor)
        return self._changed()

    # --- master mix input ---

    def set_master_mix_field(self, name: str, raw: str) -> SessionSnapshot:
        if name not in MASTER_MIX_FIELDS:
            raise KeyError(f"Unknown master mix field: {name}")
        self.master_mix_fields[name] = raw
        return self._changed()

    def set_use_viable(self, use_viable: bool) -> SessionSnapshot:
        self.use_viable = bool(use_viable)
        return self._changed()

    def set_master_mix_source(self, source: str) -> SessionSnapshot:
        if source not in MASTER_MIX_SOURCES:
            logger.debug("Ignoring unknown master mix source %r", source)
            return self.snapshot
        self.master_mix_source = source
        return self._changed()

    def set_manual_concentration(self, raw: str) -> SessionSnapshot:
        self.manual_concentration_raw = raw
        return self._changed()

    # --- recomputation ---

    def _aggregate(self) -> CountTotals:
        if self.input_mode == INPUT_MODE_GRID:
            return self.aggregator.from_grids(self.grid_entries, self.selection)
        return self.aggregator.from_totals(
            self.viable_total, self.non_viable_total, self.declared_grid_count
        )

    def _recompute(self) -> SessionSnapshot:
        totals = self._aggregate()
        concentrations = calculate_concentrations(totals, self.dilution_factor)
        manual = parse_manual_concentration(self.manual_concentration_raw)
        source_concentration = select_source_concentration(
            concentrations, self.use_viable, self.master_mix_source, manual
        )
        params = parse_master_mix_params(
            self.master_mix_fields["volume_per_well"],
            self.master_mix_fields["cells_per_well"],
            self.master_mix_fields["well_count"],
            self.master_mix_fields["extra_wells"],
            source_concentration,
        )
        return SessionSnapshot(
            input_mode=self.input_mode,
            dilution_factor=self.dilution_factor,
            totals=totals,
            concentrations=concentrations,
            master_mix_source=self.master_mix_source,
            use_viable=self.use_viable,
            manual_concentration=manual,
            master_mix_params=params,
            master_mix=solve_master_mix(params),
            selected_grids=tuple(int(g) for g in self.selection),
        )

    def _changed(self) -> SessionSnapshot:
        self.snapshot = self._recompute()
        for listener in list(self._listeners):
            listener(self.snapshot)
        return self.snapshot
