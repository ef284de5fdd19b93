"""
Master mix solver.

Given a source cell concentration and the plate layout, work out how much
cell stock and medium to combine so every well receives the target number
of cells:

    total_wells       = wells + extra wells
    total_volume_ml   = volume_per_well_ul * total_wells / 1000
    required_conc     = cells_per_well * 1000 / volume_per_well_ul   (cells/mL)
    stock_volume_ml   = required_conc * total_volume_ml / source_conc
    medium_volume_ml  = max(0, total_volume_ml - stock_volume_ml)

Any non-positive or non-finite volume, cell target, well count or source
concentration gives an all-zero result, as does a recipe that overflows.
The solver never raises.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Union

from calculations.concentration import ConcentrationPair
from calculations.counting import parse_count

logger = logging.getLogger(__name__)

# Defaults shown in the master mix form
DEFAULT_VOLUME_PER_WELL_UL = 100.0
DEFAULT_CELLS_PER_WELL = 10000.0
DEFAULT_WELL_COUNT = 24
DEFAULT_EXTRA_WELLS = 2

MANUAL_CONCENTRATION_MIN = 1.0
MANUAL_CONCENTRATION_MAX = 1e10

SOURCE_HEMOCYTOMETER = "hemocytometer"
SOURCE_MANUAL = "manual"
MASTER_MIX_SOURCES = (SOURCE_HEMOCYTOMETER, SOURCE_MANUAL)

OVERDRAW_WARNING = (
    "Stock volume ({stock:.3f} mL) exceeds total mix volume ({total:.3f} mL); "
    "source concentration is too low for the target cells per well"
)

INVALID_MANUAL_WARNING = "Invalid manual concentration; enter a number between 1 and 1e10 cells/mL"

_FLOAT_PATTERN = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


@dataclass(frozen=True)
class MasterMixParams:
    """Plate layout and source concentration for one master mix."""
    volume_per_well_ul: float
    cells_per_well: float
    well_count: int
    extra_wells: int
    source_concentration: float

    @property
    def total_wells(self) -> int:
        return self.well_count + max(self.extra_wells, 0)

    def to_dict(self) -> dict:
        return {
            "volume_per_well_ul": self.volume_per_well_ul,
            "cells_per_well": self.cells_per_well,
            "well_count": self.well_count,
            "extra_wells": self.extra_wells,
            "source_concentration": self.source_concentration,
        }


@dataclass(frozen=True)
class MasterMixResult:
    """Recipe volumes in mL; final concentration in cells/mL."""
    stock_volume_ml: float
    medium_volume_ml: float
    total_volume_ml: float
    final_concentration: float

    @property
    def is_overdrawn(self) -> bool:
        """True when the stock alone would exceed the mix volume."""
        return self.stock_volume_ml > self.total_volume_ml

    @property
    def warnings(self) -> list[str]:
        if not self.is_overdrawn:
            return []
        return [OVERDRAW_WARNING.format(stock=self.stock_volume_ml, total=self.total_volume_ml)]

    def to_dict(self) -> dict:
        return {
            "stock_volume_ml": self.stock_volume_ml,
            "medium_volume_ml": self.medium_volume_ml,
            "total_volume_ml": self.total_volume_ml,
            "final_concentration": self.final_concentration,
        }


ZERO_RESULT = MasterMixResult(
    stock_volume_ml=0.0,
    medium_volume_ml=0.0,
    total_volume_ml=0.0,
    final_concentration=0.0,
)


def solve_master_mix(params: MasterMixParams) -> MasterMixResult:
    """Compute the master mix recipe for params."""
    inputs = (params.volume_per_well_ul, params.cells_per_well, params.source_concentration)
    if not all(math.isfinite(value) for value in inputs):
        return ZERO_RESULT
    if (
        params.volume_per_well_ul <= 0
        or params.cells_per_well <= 0
        or params.well_count <= 0
        or params.source_concentration <= 0
    ):
        return ZERO_RESULT

    total_volume_ml = params.volume_per_well_ul * params.total_wells / 1000
    required_concentration = params.cells_per_well * 1000 / params.volume_per_well_ul
    stock_volume_ml = required_concentration * total_volume_ml / params.source_concentration
    if not all(math.isfinite(value) for value in (total_volume_ml, required_concentration, stock_volume_ml)):
        logger.warning("Master mix overflowed for %r", params)
        return ZERO_RESULT
    medium_volume_ml = max(0.0, total_volume_ml - stock_volume_ml)

    result = MasterMixResult(
        stock_volume_ml=stock_volume_ml,
        medium_volume_ml=medium_volume_ml,
        total_volume_ml=total_volume_ml,
        final_concentration=required_concentration,
    )
    if result.is_overdrawn:
        logger.warning(
            "Master mix over-draw: stock %.4f mL > total %.4f mL at source %.0f cells/mL",
            stock_volume_ml, total_volume_ml, params.source_concentration,
        )
    return result


def parse_float(raw: Union[str, float, int, None]) -> float:
    """
    Parse a raw decimal field, returning 0.0 when nothing numeric leads it.

    Reads the longest numeric prefix ("12.5 uL" -> 12.5).
    """
    if raw is None or isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else 0.0

    match = _FLOAT_PATTERN.match(str(raw))
    if not match:
        return 0.0
    value = float(match.group(0))
    return value if math.isfinite(value) else 0.0


def parse_master_mix_params(
    volume_per_well: Union[str, float, None],
    cells_per_well: Union[str, float, None],
    well_count: Union[str, int, None],
    extra_wells: Union[str, int, None],
    source_concentration: float,
) -> MasterMixParams:
    """Build MasterMixParams from raw form fields."""
    return MasterMixParams(
        volume_per_well_ul=parse_float(volume_per_well),
        cells_per_well=parse_float(cells_per_well),
        well_count=parse_count(well_count),
        extra_wells=parse_count(extra_wells),
        source_concentration=source_concentration,
    )


@dataclass(frozen=True)
class ManualConcentration:
    """
    Manually entered stock concentration.

    value is only set when the raw text is a finite number within
    [1, 1e10] cells/mL. An empty field is absent rather than invalid.
    """
    raw: str
    value: Optional[float]

    @property
    def is_present(self) -> bool:
        return self.raw.strip() != ""

    @property
    def is_valid(self) -> bool:
        return self.value is not None


def parse_manual_concentration(raw: Optional[str]) -> ManualConcentration:
    """Validate a manual concentration string such as "1.5e6"."""
    text = raw or ""
    if not _FLOAT_PATTERN.fullmatch(text.strip()):
        return ManualConcentration(raw=text, value=None)

    value = float(text.strip())
    if not math.isfinite(value):
        return ManualConcentration(raw=text, value=None)
    if value < MANUAL_CONCENTRATION_MIN or value > MANUAL_CONCENTRATION_MAX:
        return ManualConcentration(raw=text, value=None)
    return ManualConcentration(raw=text, value=value)


def select_source_concentration(
    concentrations: ConcentrationPair,
    use_viable: bool = True,
    source: str = SOURCE_HEMOCYTOMETER,
    manual: Optional[ManualConcentration] = None,
) -> float:
    """
    Pick the concentration that feeds the solver.

    A valid manual override wins when the source is manual; otherwise the
    viable or total hemocytometer concentration is used.
    """
    if source == SOURCE_MANUAL and manual is not None and manual.is_valid:
        return manual.value
    if use_viable:
        return concentrations.viable_concentration
    return concentrations.total_concentration


def build_protocol_steps(params: MasterMixParams, result: MasterMixResult) -> list[str]:
    """Bench protocol for preparing the mix. Empty when nothing is computable."""
    if result.stock_volume_ml <= 0:
        return []

    steps = [
        f"Add {result.medium_volume_ml:.3f} mL of medium to a sterile tube",
        f"Add {result.stock_volume_ml:.3f} mL of cell stock",
        "Mix gently by pipetting or vortexing",
        f"Dispense {params.volume_per_well_ul:g} μL per well into {params.well_count} wells",
    ]
    if params.extra_wells > 0:
        steps.append(
            f"Extra volume prepared for {params.extra_wells} additional wells (safety margin)"
        )
    steps.append(f"Expected cell count: {params.cells_per_well:,.0f} cells/well")
    return steps
