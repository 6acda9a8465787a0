import pytest

from calculations import UNIT_WITH_TAX_COL, SimulationConfig, simulate
from lines_loader import PRICE_COL, build_lines_frame
from reverse_fob import round_down_to_step, solve_target_fob


@pytest.fixture
def cfg():
    return SimulationConfig(
        exchange_rate=5.0,
        duty_rate=0.60,
        icms_rate=0.17,
        freight_total=1000.0,
        freight_currency="local",
        freight_allocation_method="weight",
    )


@pytest.fixture
def lines():
    return build_lines_frame(
        [
            {"id": "A", "quantity": 10, "unit_price_source": 10, "unit_weight_kg": 2},
            {"id": "B", "quantity": 5, "unit_price_source": 20, "unit_weight_kg": 8},
            {"id": "C", "quantity": 0, "unit_price_source": 3, "unit_weight_kg": 1},
        ]
    )


def test_solve_target_fob_hits_target(cfg, lines):
    result = solve_target_fob(cfg, lines, "A", 200.0)

    assert result.feasible
    assert result.achieved_unit_cost == pytest.approx(200.0, abs=0.01)

    adjusted = lines.copy()
    adjusted.loc["A", PRICE_COL] = result.fob_unit_source
    check = simulate(cfg, adjusted)
    assert check.lines.loc["A", UNIT_WITH_TAX_COL] == pytest.approx(200.0, abs=0.01)


def test_solve_target_fob_leaves_input_untouched(cfg, lines):
    before = lines.copy()

    solve_target_fob(cfg, lines, "B", 150.0)

    assert lines.equals(before)


def test_solve_target_fob_below_shared_costs_is_infeasible(cfg, lines):
    result = solve_target_fob(cfg, lines, "A", 1.0)

    assert not result.feasible
    assert result.fob_unit_source == 0.0
    assert result.achieved_unit_cost > 1.0


def test_solve_target_fob_unknown_line(cfg, lines):
    with pytest.raises(KeyError):
        solve_target_fob(cfg, lines, "Z", 100.0)


def test_solve_target_fob_zero_quantity_line(cfg, lines):
    with pytest.raises(ValueError, match="no quantity"):
        solve_target_fob(cfg, lines, "C", 100.0)


@pytest.mark.parametrize(
    "value, step, expected",
    [(1.237, 0.05, 1.2), (2.0, 0.1, 2.0), (3.999, 0.01, 3.99), (4.2, 0, 4.2)],
)
def test_round_down_to_step(value, step, expected):
    assert round_down_to_step(value, step) == pytest.approx(expected)
