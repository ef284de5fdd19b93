"""
Export of count results and master mix recipes.

Builds CSV and plain-text reports from engine outputs. All numbers are taken
from the calculators; nothing here re-derives a formula.
"""

import csv
import io
from datetime import date, datetime
from typing import Optional

from calculations.concentration import ConcentrationPair
from calculations.counting import CountTotals
from calculations.master_mix import MasterMixParams, MasterMixResult, build_protocol_steps

FORMULA_LINE = "Formula: Cells/mL = (Cell Count ÷ Squares Counted) × 10,000 × Dilution Factor"


def _write_rows(rows: list[list]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue()


def count_results_rows(
    totals: CountTotals,
    concentrations: ConcentrationPair,
    dilution_factor: int,
) -> list[tuple[str, str]]:
    """Parameter/value pairs shared by the CSV and text reports."""
    return [
        ("Total Cell Count", str(totals.total_cells)),
        ("Viable Cell Count", str(totals.viable_cells)),
        ("Non-viable Cell Count", str(totals.non_viable_cells)),
        ("Viability (%)", f"{totals.viability_percent:.1f}"),
        ("Dilution Factor", str(dilution_factor)),
        ("Squares Counted", str(totals.grids_counted)),
        ("Total Concentration (cells/mL)", f"{concentrations.total_concentration:.0f}"),
        ("Viable Concentration (cells/mL)", f"{concentrations.viable_concentration:.0f}"),
    ]


def count_results_csv(
    totals: CountTotals,
    concentrations: ConcentrationPair,
    dilution_factor: int,
    timestamp: Optional[datetime] = None,
) -> str:
    timestamp = timestamp or datetime.now()
    rows: list[list] = [
        ["Hemocytometer Cell Count Results"],
        ["Timestamp", timestamp.isoformat()],
        [],
        ["Parameter", "Value"],
    ]
    rows.extend(list(pair) for pair in count_results_rows(totals, concentrations, dilution_factor))
    rows.append([])
    rows.append([FORMULA_LINE])
    return _write_rows(rows)


def count_results_text(
    totals: CountTotals,
    concentrations: ConcentrationPair,
    dilution_factor: int,
    timestamp: Optional[datetime] = None,
) -> str:
    """Plain-text summary for pasting into a lab notebook."""
    timestamp = timestamp or datetime.now()
    lines = [
        "Hemocytometer Cell Count Results",
        f"Generated on: {timestamp:%Y-%m-%d %H:%M:%S}",
        "",
        f"Total Cell Count: {totals.total_cells}",
        f"Viable Cell Count: {totals.viable_cells}",
        f"Non-viable Cell Count: {totals.non_viable_cells}",
        f"Viability: {totals.viability_percent:.1f}%",
        f"Dilution Factor: {dilution_factor}",
        f"Squares Counted: {totals.grids_counted}",
        f"Total Concentration: {concentrations.total_concentration:,.0f} cells/mL",
        f"Viable Concentration: {concentrations.viable_concentration:,.0f} cells/mL",
        "",
        FORMULA_LINE,
    ]
    return "\n".join(lines)


def master_mix_csv(
    params: MasterMixParams,
    result: MasterMixResult,
    timestamp: Optional[datetime] = None,
) -> str:
    timestamp = timestamp or datetime.now()
    rows: list[list] = [
        ["Master Mix Recipe"],
        ["Timestamp", timestamp.isoformat()],
        [],
        ["Parameter", "Value"],
        ["Volume per Well (uL)", f"{params.volume_per_well_ul:g}"],
        ["Cells per Well", f"{params.cells_per_well:.0f}"],
        ["Number of Wells", params.well_count],
        ["Additional Wells", params.extra_wells],
        ["Source Concentration (cells/mL)", f"{params.source_concentration:.0f}"],
        ["Cell Stock Volume (mL)", f"{result.stock_volume_ml:.3f}"],
        ["Medium Volume (mL)", f"{result.medium_volume_ml:.3f}"],
        ["Total Mix Volume (mL)", f"{result.total_volume_ml:.3f}"],
        ["Final Concentration (cells/mL)", f"{result.final_concentration:.0f}"],
    ]
    for warning in result.warnings:
        rows.append(["Warning", warning])

    steps = build_protocol_steps(params, result)
    if steps:
        rows.append([])
        rows.append(["Preparation Protocol"])
        rows.extend([f"{i}.", step] for i, step in enumerate(steps, start=1))
    return _write_rows(rows)


def export_filename(prefix: str = "hemocytometer_count", on: Optional[date] = None, extension: str = "csv") -> str:
    on = on or date.today()
    return f"{prefix}_{on.isoformat()}.{extension}"
