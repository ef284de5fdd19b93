"""
Tests for CSV and text exports of count results and master mix recipes.
"""

import csv
import io
from datetime import date, datetime

from calculations.concentration import calculate_concentrations
from calculations.counting import CountTotals
from calculations.export import (
    FORMULA_LINE,
    count_results_csv,
    count_results_text,
    export_filename,
    master_mix_csv,
)
from calculations.master_mix import MasterMixParams, solve_master_mix

TIMESTAMP = datetime(2026, 3, 14, 9, 30, 0)
TOTALS = CountTotals(total_cells=200, viable_cells=180, grids_counted=4)
PAIR = calculate_concentrations(TOTALS, 2)


def _rows(content: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(content)))


class TestCountResultsCsv:

    def test_layout(self):
        rows = _rows(count_results_csv(TOTALS, PAIR, 2, TIMESTAMP))
        assert rows[0] == ["Hemocytometer Cell Count Results"]
        assert rows[1] == ["Timestamp", "2026-03-14T09:30:00"]
        assert rows[3] == ["Parameter", "Value"]
        assert rows[-1] == [FORMULA_LINE]

    def test_values(self):
        values = {row[0]: row[1] for row in _rows(count_results_csv(TOTALS, PAIR, 2, TIMESTAMP)) if len(row) == 2}
        assert values["Total Cell Count"] == "200"
        assert values["Non-viable Cell Count"] == "20"
        assert values["Viability (%)"] == "90.0"
        assert values["Squares Counted"] == "4"
        assert values["Total Concentration (cells/mL)"] == "1000000"
        assert values["Viable Concentration (cells/mL)"] == "900000"


class TestCountResultsText:

    def test_summary(self):
        text = count_results_text(TOTALS, PAIR, 2, TIMESTAMP)
        assert "Generated on: 2026-03-14 09:30:00" in text
        assert "Viability: 90.0%" in text
        assert "Total Concentration: 1,000,000 cells/mL" in text
        assert "Viable Concentration: 900,000 cells/mL" in text

    def test_empty_count(self):
        empty = CountTotals(total_cells=0, viable_cells=0, grids_counted=4)
        text = count_results_text(empty, calculate_concentrations(empty, 2), 2, TIMESTAMP)
        assert "Viability: 0.0%" in text


class TestMasterMixCsv:

    def test_recipe_and_protocol(self):
        params = MasterMixParams(100.0, 10000.0, 24, 2, 900_000.0)
        rows = _rows(master_mix_csv(params, solve_master_mix(params), TIMESTAMP))
        values = {row[0]: row[1] for row in rows if len(row) == 2}
        assert values["Cell Stock Volume (mL)"] == "0.289"
        assert values["Medium Volume (mL)"] == "2.311"
        assert values["Total Mix Volume (mL)"] == "2.600"
        assert ["Preparation Protocol"] in rows
        assert "Warning" not in values

    def test_overdraw_warning_row(self):
        params = MasterMixParams(100.0, 10000.0, 24, 2, 50_000.0)
        rows = _rows(master_mix_csv(params, solve_master_mix(params), TIMESTAMP))
        assert any(row and row[0] == "Warning" for row in rows)


def test_export_filename():
    assert export_filename(on=date(2026, 3, 14)) == "hemocytometer_count_2026-03-14.csv"
    assert export_filename("master_mix", date(2026, 3, 14), "txt") == "master_mix_2026-03-14.txt"
