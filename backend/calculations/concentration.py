"""
Cell concentration from hemocytometer counts.

    cells/mL = (cell count / grids counted) * 10,000 * dilution factor

Each large square holds 0.1 uL (1 mm^2 x 0.1 mm depth = 1e-4 mL), hence the
fixed 10,000 factor.
"""

from dataclasses import dataclass
from typing import Union

from calculations.counting import CountTotals, parse_count

# Instrument constant: 1 / (large square volume in mL)
HEMOCYTOMETER_VOLUME_FACTOR = 10000

DEFAULT_DILUTION_FACTOR = 2


@dataclass(frozen=True)
class ConcentrationPair:
    """Total and viable concentrations in cells/mL."""
    total_concentration: float
    viable_concentration: float

    def to_dict(self) -> dict:
        return {
            "total_concentration": self.total_concentration,
            "viable_concentration": self.viable_concentration,
        }


def concentration(cell_count: float, grids_counted: int, dilution_factor: float) -> float:
    """
    Cells/mL for a count over grids_counted large squares.

    Returns 0 for an empty count or a zero divisor rather than dividing.
    """
    if cell_count <= 0 or grids_counted <= 0 or dilution_factor <= 0:
        return 0.0
    return (cell_count / grids_counted) * HEMOCYTOMETER_VOLUME_FACTOR * dilution_factor


def calculate_concentrations(totals: CountTotals, dilution_factor: float) -> ConcentrationPair:
    """Total and viable concentrations, each computed straight from the counts."""
    return ConcentrationPair(
        total_concentration=concentration(totals.total_cells, totals.grids_counted, dilution_factor),
        viable_concentration=concentration(totals.viable_cells, totals.grids_counted, dilution_factor),
    )


def parse_dilution_factor(
    raw: Union[str, int, None], default: int = DEFAULT_DILUTION_FACTOR
) -> int:
    """Positive integer dilution factor; anything else gives the default."""
    value = parse_count(raw)
    return value if value >= 1 else default
