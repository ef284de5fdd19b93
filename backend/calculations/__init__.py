"""
Calculations module for HemoCount.
Provides hemocytometer count aggregation, concentration and master mix calculations.
"""

from calculations.counting import (
    GridId,
    GridEntry,
    GridSelection,
    CountTotals,
    CountAggregator,
    aggregate_grids,
    aggregate_totals,
)
from calculations.concentration import ConcentrationPair, concentration, calculate_concentrations
from calculations.master_mix import (
    MasterMixParams,
    MasterMixResult,
    ManualConcentration,
    solve_master_mix,
    parse_manual_concentration,
    select_source_concentration,
)
from calculations.session import HemocytometerSession, SessionSnapshot
from calculations.engine import CalculationEngine, CalculationResult
from calculations.formulas import (
    Formula,
    CountFormula,
    ConcentrationFormula,
    MasterMixFormula,
)

__all__ = [
    "GridId",
    "GridEntry",
    "GridSelection",
    "CountTotals",
    "CountAggregator",
    "aggregate_grids",
    "aggregate_totals",
    "ConcentrationPair",
    "concentration",
    "calculate_concentrations",
    "MasterMixParams",
    "MasterMixResult",
    "ManualConcentration",
    "solve_master_mix",
    "parse_manual_concentration",
    "select_source_concentration",
    "HemocytometerSession",
    "SessionSnapshot",
    "CalculationEngine",
    "CalculationResult",
    "Formula",
    "CountFormula",
    "ConcentrationFormula",
    "MasterMixFormula",
]
