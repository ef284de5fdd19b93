"""
Formula implementations for hemocytometer calculations.
Each formula wraps one calculation stage with input validation.

Input data are raw form payloads (strings as typed). Validation only rejects
structurally wrong payloads; unparsable numbers degrade to zero inside the
calculators.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from calculations.concentration import calculate_concentrations, parse_dilution_factor, ConcentrationPair
from calculations.counting import (
    GridEntry,
    GridSelection,
    CountTotals,
    INPUT_MODES,
    INPUT_MODE_GRID,
    aggregate_grids,
    aggregate_totals,
    empty_grid_entries,
    parse_count,
    parse_grid_id,
)
from calculations.master_mix import (
    INVALID_MANUAL_WARNING,
    MASTER_MIX_SOURCES,
    SOURCE_HEMOCYTOMETER,
    SOURCE_MANUAL,
    build_protocol_steps,
    parse_float,
    parse_manual_concentration,
    parse_master_mix_params,
    select_source_concentration,
    solve_master_mix,
)


@dataclass
class CalculationResult:
    """Result of a single calculation."""
    calculation_type: str
    input_summary: dict
    output_values: dict
    warnings: list[str] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


class Formula(ABC):
    """
    Abstract base class for calculation formulas.

    Each formula defines:
    - validate(): Check that the payload has the right shape
    - execute(): Perform the calculation
    """

    @abstractmethod
    def execute(self, data: dict, settings: dict) -> CalculationResult:
        """
        Execute the formula on form data.

        Args:
            data: Raw form payload
            settings: Stored preferences (input_mode, master_mix_source)

        Returns:
            CalculationResult with output values
        """
        pass

    @abstractmethod
    def validate(self, data: dict, settings: dict) -> list[str]:
        """
        Validate the payload structure.

        Returns:
            List of validation error messages (empty if valid)
        """
        pass


def _input_mode(data: dict, settings: dict) -> str:
    return data.get("mode") or settings.get("input_mode") or INPUT_MODE_GRID


_FALSE_STRINGS = {"false", "0", "no", "off"}


def _parse_flag(raw, default: bool = True) -> bool:
    """Read a checkbox value that may arrive as a string ("false", "0")."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    if isinstance(raw, str):
        return raw.strip().lower() not in _FALSE_STRINGS
    return bool(raw)


class CountFormula(Formula):
    """
    Aggregate raw counts into totals.

    Inputs (grid mode):
        - grids: {"1": {"viable": "52", "non_viable": "6"}, ...}
        - selected_grids: list of grid ids (defaults to the 4 corners)

    Inputs (total mode):
        - viable, non_viable: raw totals
        - grid_count: declared number of grids counted (1-5)

    Outputs:
        - total_cells, viable_cells, non_viable_cells, grids_counted, viability_percent
    """

    def validate(self, data: dict, settings: dict) -> list[str]:
        """Validate count payload."""
        errors: list[str] = []

        mode = _input_mode(data, settings)
        if mode not in INPUT_MODES:
            errors.append(f"Unknown input mode: {mode}")
            return errors

        if mode == INPUT_MODE_GRID:
            grids = data.get("grids") or {}
            if not isinstance(grids, dict):
                errors.append("grids must be an object keyed by grid id")
            else:
                for key in grids:
                    if parse_grid_id(key) is None:
                        errors.append(f"Unknown grid id: {key}")

            selected = data.get("selected_grids")
            if selected is not None:
                if not selected:
                    errors.append("At least one grid must be selected")
                for key in selected or []:
                    if parse_grid_id(key) is None:
                        errors.append(f"Unknown grid id in selection: {key}")

        return errors

    def execute(self, data: dict, settings: dict) -> CalculationResult:
        """Execute count aggregation."""
        mode = _input_mode(data, settings)

        if mode == INPUT_MODE_GRID:
            entries = empty_grid_entries()
            for key, counts in (data.get("grids") or {}).items():
                grid_id = parse_grid_id(key)
                counts = counts or {}
                entries[grid_id] = GridEntry(
                    grid_id,
                    viable=str(counts.get("viable") or ""),
                    non_viable=str(counts.get("non_viable") or ""),
                )
            selected = data.get("selected_grids")
            selection = GridSelection(
                [parse_grid_id(key) for key in selected] if selected is not None else None
            )
            totals = aggregate_grids(entries, selection)
            input_summary = {
                "mode": mode,
                "selected_grids": [int(g) for g in selection],
            }
        else:
            totals = aggregate_totals(
                data.get("viable"), data.get("non_viable"), data.get("grid_count")
            )
            input_summary = {"mode": mode, "declared_grid_count": totals.grids_counted}

        warnings: list[str] = []
        if totals.total_cells == 0:
            warnings.append("No cells counted yet")

        return CalculationResult(
            calculation_type="count",
            input_summary=input_summary,
            output_values=totals.to_dict(),
            warnings=warnings,
            success=True,
        )


class ConcentrationFormula(Formula):
    """
    Convert counts to cells/mL.

    Inputs:
        - total_cells, viable_cells, grids_counted
        - dilution_factor (default 2)

    Outputs:
        - total_concentration, viable_concentration (cells/mL)
    """

    def validate(self, data: dict, settings: dict) -> list[str]:
        """Validate concentration inputs."""
        errors: list[str] = []
        if not data:
            errors.append("No count data provided")
        return errors

    def execute(self, data: dict, settings: dict) -> CalculationResult:
        """Execute concentration calculation."""
        total = parse_count(data.get("total_cells"))
        viable = min(parse_count(data.get("viable_cells")), total)
        totals = CountTotals(
            total_cells=total,
            viable_cells=viable,
            grids_counted=parse_count(data.get("grids_counted")),
        )
        dilution_factor = parse_dilution_factor(data.get("dilution_factor"))
        pair = calculate_concentrations(totals, dilution_factor)

        warnings: list[str] = []
        if totals.grids_counted == 0 and total > 0:
            warnings.append("grids_counted is 0; concentration reported as 0")

        return CalculationResult(
            calculation_type="concentration",
            input_summary={
                "total_cells": totals.total_cells,
                "viable_cells": totals.viable_cells,
                "grids_counted": totals.grids_counted,
                "dilution_factor": dilution_factor,
            },
            output_values={
                **pair.to_dict(),
                "viability_percent": totals.viability_percent,
            },
            warnings=warnings,
            success=True,
        )


class MasterMixFormula(Formula):
    """
    Solve the master mix recipe.

    Inputs:
        - volume_per_well (uL), cells_per_well, well_count, extra_wells
        - total_concentration, viable_concentration (from the concentration stage)
        - use_viable (default true)
        - source: "hemocytometer" or "manual" (default from master_mix_source setting)
        - manual_concentration: override string, used only when source is manual

    Outputs:
        - stock_volume_ml, medium_volume_ml, total_volume_ml, final_concentration
        - source_concentration actually used
        - protocol: ordered preparation steps
    """

    def validate(self, data: dict, settings: dict) -> list[str]:
        """Validate master mix inputs."""
        errors: list[str] = []
        source = data.get("source") or settings.get("master_mix_source") or SOURCE_HEMOCYTOMETER
        if source not in MASTER_MIX_SOURCES:
            errors.append(f"Unknown master mix source: {source}")
        return errors

    def execute(self, data: dict, settings: dict) -> CalculationResult:
        """Execute master mix calculation."""
        warnings: list[str] = []

        source = data.get("source") or settings.get("master_mix_source") or SOURCE_HEMOCYTOMETER
        use_viable = _parse_flag(data.get("use_viable"))
        pair = ConcentrationPair(
            total_concentration=max(parse_float(data.get("total_concentration")), 0.0),
            viable_concentration=max(parse_float(data.get("viable_concentration")), 0.0),
        )
        manual = parse_manual_concentration(data.get("manual_concentration"))
        if source == SOURCE_MANUAL and manual.is_present and not manual.is_valid:
            warnings.append(INVALID_MANUAL_WARNING)

        source_concentration = select_source_concentration(pair, use_viable, source, manual)
        params = parse_master_mix_params(
            data.get("volume_per_well"),
            data.get("cells_per_well"),
            data.get("well_count"),
            data.get("extra_wells"),
            source_concentration,
        )
        result = solve_master_mix(params)
        warnings.extend(result.warnings)

        return CalculationResult(
            calculation_type="master_mix",
            input_summary={**params.to_dict(), "source": source, "use_viable": use_viable},
            output_values={
                **result.to_dict(),
                "total_wells": params.total_wells,
                "source_concentration": source_concentration,
                "protocol": build_protocol_steps(params, result),
            },
            warnings=warnings,
            success=True,
        )
