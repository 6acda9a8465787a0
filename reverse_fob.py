import logging
import math
from dataclasses import dataclass

import pandas as pd

from calculations import (
    LinesInput,
    SimulationConfig,
    UNIT_WITH_TAX_COL,
    as_lines_frame,
    simulate,
)
from lines_loader import PRICE_COL, QTY_COL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReverseFobResult:
    line_id: str
    fob_unit_source: float
    achieved_unit_cost: float
    feasible: bool


def _unit_cost_for(cfg: SimulationConfig, base_df: pd.DataFrame, line_id: str, fob: float) -> float:
    df = base_df.copy()
    df.loc[line_id, PRICE_COL] = fob
    result = simulate(cfg, df)
    return float(result.lines.loc[line_id, UNIT_WITH_TAX_COL])


def solve_target_fob(
    cfg: SimulationConfig,
    lines: LinesInput,
    line_id: str,
    target_unit_cost: float,
    max_iter: int = 40,
    tol: float = 0.01,
) -> ReverseFobResult:
    """
    Given:
      - cfg: configuration of the simulation
      - lines: product lines (the other lines stay as they are)
      - line_id: the line whose unit price we want to adjust
      - target_unit_cost: desired unit landed cost in local currency

    Returns the FOB unit price (source currency) that makes the line's unit
    cost with taxes reach the target. When even FOB = 0 is above the target,
    returns FOB 0 with feasible=False.
    """
    base_df = as_lines_frame(lines).astype({PRICE_COL: float})
    if line_id not in base_df.index:
        raise KeyError(line_id)
    if base_df.loc[line_id, QTY_COL] <= 0:
        raise ValueError(f"Line {line_id!r} has no quantity; its unit cost is always 0.")

    target = float(target_unit_cost)

    # 1) Cost with FOB = 0 (only shared costs and the taxes on them)
    cost_min = _unit_cost_for(cfg, base_df, line_id, 0.0)
    if target <= cost_min + tol:
        return ReverseFobResult(line_id, 0.0, cost_min, feasible=target >= cost_min - tol)

    # 2) Upper bound: keep doubling until we pass the target
    current_fob = float(base_df.loc[line_id, PRICE_COL])
    high = current_fob * 2.0 if current_fob > 0 else 1.0

    cost_high = _unit_cost_for(cfg, base_df, line_id, high)
    for _ in range(25):
        if cost_high >= target:
            break
        high *= 2.0
        cost_high = _unit_cost_for(cfg, base_df, line_id, high)

    if cost_high < target - tol:
        # Unit cost does not grow with FOB (e.g. exchange rate 0)
        logger.debug("Target %.2f unreachable for line %s", target, line_id)
        return ReverseFobResult(line_id, high, cost_high, feasible=False)

    # 3) Binary search between 0 and high
    low = 0.0
    best_fob, best_cost = high, cost_high
    for _ in range(max_iter):
        mid = (low + high) / 2.0
        cost_mid = _unit_cost_for(cfg, base_df, line_id, mid)

        if abs(cost_mid - target) < abs(best_cost - target):
            best_fob, best_cost = mid, cost_mid

        if cost_mid >= target:
            high = mid
        else:
            low = mid

        if abs(cost_mid - target) <= tol:
            break

    return ReverseFobResult(line_id, best_fob, best_cost, feasible=True)


def round_down_to_step(value: float, step: float) -> float:
    """Round a suggested FOB down to a commercial step (0.01, 0.05, 0.10...)."""
    if step <= 0:
        return float(value)
    steps = math.floor(float(value) / step + 1e-9)
    return round(steps * step, 10)
