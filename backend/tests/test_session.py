"""
Tests for the reactive counting session: every mutation recomputes the
whole pipeline and notifies subscribers synchronously.
"""

import pytest

from calculations.counting import GridId
from calculations.master_mix import SOURCE_HEMOCYTOMETER, SOURCE_MANUAL, ZERO_RESULT
from calculations.session import HemocytometerSession


@pytest.fixture
def session():
    return HemocytometerSession()


def _fill_reference_grids(session: HemocytometerSession):
    session.set_grid_count(GridId.TOP_LEFT, "50", "5")
    session.set_grid_count(GridId.TOP_RIGHT, "45", "5")
    session.set_grid_count(GridId.BOTTOM_LEFT, "40", "5")
    return session.set_grid_count(GridId.BOTTOM_RIGHT, "45", "5")


class TestInitialState:

    def test_empty_session_is_all_zero(self, session):
        snapshot = session.snapshot
        assert snapshot.totals.total_cells == 0
        assert snapshot.totals.grids_counted == 4
        assert snapshot.concentrations.total_concentration == 0.0
        assert snapshot.master_mix == ZERO_RESULT
        assert snapshot.dilution_factor == 2
        assert snapshot.selected_grids == (1, 2, 4, 5)

    def test_unknown_modes_fall_back(self):
        session = HemocytometerSession(input_mode="camera", master_mix_source="guess")
        assert session.input_mode == "grid"
        assert session.master_mix_source == SOURCE_HEMOCYTOMETER


class TestGridMode:

    def test_reference_pipeline(self, session):
        snapshot = _fill_reference_grids(session)
        assert snapshot.totals.total_cells == 200
        assert snapshot.totals.viable_cells == 180
        assert snapshot.concentrations.total_concentration == pytest.approx(1_000_000)
        assert snapshot.concentrations.viable_concentration == pytest.approx(900_000)
        assert snapshot.master_mix_params.source_concentration == pytest.approx(900_000)
        assert snapshot.master_mix.stock_volume_ml == pytest.approx(0.288889, abs=1e-6)

    def test_toggle_center_changes_divisor(self, session):
        _fill_reference_grids(session)
        snapshot = session.toggle_grid(GridId.CENTER)
        assert snapshot.totals.grids_counted == 5
        assert snapshot.totals.total_cells == 200
        assert snapshot.concentrations.total_concentration == pytest.approx(800_000)

    def test_cannot_deselect_last_grid(self, session):
        session.toggle_grid(GridId.TOP_LEFT)
        session.toggle_grid(GridId.TOP_RIGHT)
        session.toggle_grid(GridId.BOTTOM_LEFT)
        snapshot = session.toggle_grid(GridId.BOTTOM_RIGHT)
        assert snapshot.selected_grids == (5,)
        assert snapshot.totals.grids_counted == 1

    def test_presets(self, session):
        assert session.select_all_grids().selected_grids == (1, 2, 3, 4, 5)
        assert session.select_corner_grids().selected_grids == (1, 2, 4, 5)

    def test_clear_keeps_selection(self, session):
        _fill_reference_grids(session)
        session.select_all_grids()
        snapshot = session.clear_counts()
        assert snapshot.totals.total_cells == 0
        assert snapshot.selected_grids == (1, 2, 3, 4, 5)


class TestTotalMode:

    def test_totals_and_declared_grids(self, session):
        session.set_input_mode("total")
        session.set_totals("180", "20")
        snapshot = session.set_declared_grid_count("4")
        assert snapshot.input_mode == "total"
        assert snapshot.totals.viability_percent == pytest.approx(90.0)
        assert snapshot.concentrations.total_concentration == pytest.approx(1_000_000)

    def test_mode_switch_keeps_both_inputs(self, session):
        _fill_reference_grids(session)
        session.set_input_mode("total")
        assert session.set_totals("10", "0").totals.total_cells == 10
        assert session.set_input_mode("grid").totals.total_cells == 200

    def test_unknown_mode_ignored(self, session):
        assert session.set_input_mode("camera").input_mode == "grid"


class TestDilutionFactor:

    def test_dilution_scales_concentration(self, session):
        _fill_reference_grids(session)
        snapshot = session.set_dilution_factor("4")
        assert snapshot.concentrations.total_concentration == pytest.approx(2_000_000)

    def test_invalid_dilution_keeps_previous(self, session):
        session.set_dilution_factor("5")
        assert session.set_dilution_factor("abc").dilution_factor == 5


class TestMasterMix:

    def test_use_total_concentration(self, session):
        _fill_reference_grids(session)
        snapshot = session.set_use_viable(False)
        assert snapshot.master_mix_params.source_concentration == pytest.approx(1_000_000)

    def test_manual_override(self, session):
        session.set_master_mix_source(SOURCE_MANUAL)
        snapshot = session.set_manual_concentration("1.5e6")
        assert snapshot.master_mix_params.source_concentration == pytest.approx(1_500_000)
        assert snapshot.manual_concentration_invalid is False
        assert snapshot.master_mix.stock_volume_ml > 0

    def test_invalid_manual_flagged_and_not_applied(self, session):
        _fill_reference_grids(session)
        session.set_master_mix_source(SOURCE_MANUAL)
        snapshot = session.set_manual_concentration("abc")
        assert snapshot.manual_concentration_invalid is True
        assert snapshot.master_mix_params.source_concentration == pytest.approx(900_000)

    def test_field_edit_recomputes(self, session):
        _fill_reference_grids(session)
        snapshot = session.set_master_mix_field("extra_wells", "0")
        assert snapshot.master_mix.total_volume_ml == pytest.approx(2.4)

    def test_unknown_field_raises(self, session):
        with pytest.raises(KeyError):
            session.set_master_mix_field("plate_color", "blue")


class TestSubscribers:

    def test_every_mutation_notifies(self, session):
        seen = []
        session.subscribe(seen.append)
        session.set_grid_count(GridId.TOP_LEFT, "10", "0")
        session.set_dilution_factor("3")
        assert len(seen) == 2
        assert seen[-1] is session.snapshot
        assert seen[-1].concentrations.total_concentration == pytest.approx(75_000)

    def test_aggregator_listener_receives_counts(self, session):
        counts = []
        session.aggregator.subscribe(lambda total, viable, grids: counts.append((total, viable, grids)))
        session.set_grid_count(GridId.TOP_LEFT, "10", "2")
        assert counts[-1] == (12, 10, 4)

    def test_unsubscribe(self, session):
        seen = []
        unsubscribe = session.subscribe(seen.append)
        unsubscribe()
        session.set_dilution_factor("3")
        assert seen == []
