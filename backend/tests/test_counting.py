"""
Unit tests for hemocytometer count aggregation.

Covers fail-soft parsing of raw count fields, the non-empty grid selection,
and both input modes.
"""

import pytest

from calculations.counting import (
    ALL_GRIDS,
    CORNER_GRIDS,
    CountAggregator,
    CountTotals,
    GridEntry,
    GridId,
    GridSelection,
    aggregate_grids,
    aggregate_totals,
    empty_grid_entries,
    parse_count,
    parse_declared_grid_count,
    parse_grid_id,
)


def _entries(counts: dict) -> dict:
    entries = empty_grid_entries()
    for grid_id, (viable, non_viable) in counts.items():
        entries[grid_id] = GridEntry(grid_id, viable=viable, non_viable=non_viable)
    return entries


# ─── parse_count ──────────────────────────────────────────────────────────────

class TestParseCount:
    """Raw count fields never raise; junk contributes 0."""

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        (" 7 ", 7),
        ("3.7", 3),
        ("", 0),
        ("abc", 0),
        ("-5", 0),
        (None, 0),
        (12, 12),
        (-3, 0),
        (8.9, 8),
        (float("nan"), 0),
    ])
    def test_parse(self, raw, expected):
        assert parse_count(raw) == expected


class TestParseGridId:

    def test_accepts_numbers_and_keys(self):
        assert parse_grid_id(3) is GridId.CENTER
        assert parse_grid_id("5") is GridId.BOTTOM_RIGHT
        assert parse_grid_id("grid-1") is GridId.TOP_LEFT

    def test_rejects_out_of_range(self):
        assert parse_grid_id(0) is None
        assert parse_grid_id("6") is None
        assert parse_grid_id("center") is None

    def test_labels(self):
        assert GridId.TOP_LEFT.label == "Top Left"
        assert GridId.CENTER.label == "Center"


# ─── GridSelection ────────────────────────────────────────────────────────────

class TestGridSelection:
    """The selection can never become empty."""

    def test_defaults_to_corners(self):
        selection = GridSelection()
        assert selection.grids == CORNER_GRIDS
        assert GridId.CENTER not in selection

    def test_toggle_adds_and_removes(self):
        selection = GridSelection()
        assert selection.toggle(GridId.CENTER) is True
        assert len(selection) == 5
        assert selection.toggle(GridId.TOP_LEFT) is True
        assert GridId.TOP_LEFT not in selection

    def test_removing_last_grid_is_noop(self):
        selection = GridSelection([GridId.CENTER])
        assert selection.toggle(GridId.CENTER) is False
        assert selection.grids == {GridId.CENTER}

    def test_toggle_down_to_one_then_stop(self):
        selection = GridSelection()
        for grid_id in list(selection):
            selection.toggle(grid_id)
        assert len(selection) == 1

    def test_presets(self):
        selection = GridSelection([GridId.CENTER])
        selection.select_all()
        assert selection.grids == ALL_GRIDS
        selection.select_corners()
        assert selection.grids == CORNER_GRIDS

    def test_empty_constructor_falls_back_to_corners(self):
        assert GridSelection([]).grids == CORNER_GRIDS

    def test_plain_int_ids(self):
        selection = GridSelection([1])
        assert selection.grids == {GridId.TOP_LEFT}
        assert selection.toggle(1) is False
        assert selection.toggle(3) is True
        assert GridId.CENTER in selection

    def test_unknown_id_rejected(self):
        with pytest.raises(ValueError):
            GridSelection([7])
        with pytest.raises(ValueError):
            GridSelection().toggle(0)


# ─── aggregation ──────────────────────────────────────────────────────────────

class TestAggregateGrids:

    def test_sums_selected_grids_only(self):
        entries = _entries({
            GridId.TOP_LEFT: ("50", "5"),
            GridId.TOP_RIGHT: ("45", "5"),
            GridId.CENTER: ("1000", "1000"),
            GridId.BOTTOM_LEFT: ("40", "5"),
            GridId.BOTTOM_RIGHT: ("45", "5"),
        })
        totals = aggregate_grids(entries, GridSelection())
        assert totals == CountTotals(total_cells=200, viable_cells=180, grids_counted=4)
        assert totals.non_viable_cells == 20
        assert totals.viability_percent == pytest.approx(90.0)

    def test_partial_form(self):
        """Half-filled grids yield a valid, if incomplete, result."""
        entries = _entries({GridId.TOP_LEFT: ("12", ""), GridId.TOP_RIGHT: ("x", "3")})
        totals = aggregate_grids(entries, GridSelection([GridId.TOP_LEFT, GridId.TOP_RIGHT]))
        assert totals.total_cells == 15
        assert totals.viable_cells == 12
        assert totals.grids_counted == 2

    def test_empty_form(self):
        totals = aggregate_grids(empty_grid_entries(), GridSelection())
        assert totals.total_cells == 0
        assert totals.viability_percent == 0.0


class TestAggregateTotals:

    @pytest.mark.parametrize("viable,non_viable", [(0, 0), (1, 0), (0, 1), (180, 20), (7, 13)])
    def test_total_and_viability(self, viable, non_viable):
        totals = aggregate_totals(str(viable), str(non_viable), 4)
        assert totals.total_cells == viable + non_viable
        expected = 0.0 if viable + non_viable == 0 else 100 * viable / (viable + non_viable)
        assert totals.viability_percent == pytest.approx(expected)

    def test_declared_grid_count(self):
        assert aggregate_totals("10", "0", "2").grids_counted == 2
        assert aggregate_totals("10", "0").grids_counted == 4

    @pytest.mark.parametrize("raw,expected", [
        ("1", 1), ("5", 5), ("9", 5), ("0", 1), (0, 1), ("", 4), ("abc", 4), (None, 4),
    ])
    def test_declared_grid_count_clamped(self, raw, expected):
        assert parse_declared_grid_count(raw) == expected


class TestCountAggregator:
    """Listeners receive (total, viable, grids) after every aggregation."""

    def test_notifies_listeners(self):
        aggregator = CountAggregator()
        received = []
        aggregator.subscribe(lambda total, viable, grids: received.append((total, viable, grids)))

        aggregator.from_totals("180", "20", "4")
        aggregator.from_grids(_entries({GridId.CENTER: ("3", "1")}), GridSelection([GridId.CENTER]))

        assert received == [(200, 180, 4), (4, 3, 1)]

    def test_unsubscribe(self):
        aggregator = CountAggregator()
        received = []
        unsubscribe = aggregator.subscribe(lambda *args: received.append(args))
        unsubscribe()
        aggregator.from_totals("1", "1")
        assert received == []
