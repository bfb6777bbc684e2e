"""Cross-run statistics: success rate, percentile bands, drawdowns."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
from numba import njit

from policies import RunResult


BAND_PERCENTILES = (0.10, 0.25, 0.50, 0.75, 0.90)


def percentile(values, p: float) -> float:
    """Linearly interpolated percentile (index ``(n - 1) * p``).

    Returns NaN for an empty input.
    """

    values = np.asarray(values, dtype=np.float64)
    if values.size == 0:
        return float("nan")
    return float(np.quantile(values, p, method="linear"))


@njit(cache=True)
def max_drawdown(balances: np.ndarray) -> Tuple[float, float]:
    """Return ``(max_drawdown, balance_at_max_drawdown)`` for one path.

    Drawdown is measured from the running peak; a zero peak counts as no
    drawdown.
    """
    peak = balances[0]
    worst = 0.0
    low_point = balances[0]
    for balance in balances:
        if balance > peak:
            peak = balance
        drawdown = (peak - balance) / peak if peak > 0 else 0.0
        if drawdown > worst:
            worst = drawdown
            low_point = balance
    return worst, low_point


@dataclass(frozen=True)
class DrawdownStats:
    median_drawdown: float
    median_balance_at_max_drawdown: float
    max_drawdown: float
    worst_balance_at_max_drawdown: float


@dataclass(frozen=True)
class MedianRun:
    """Per-year cross-sectional medians; not an actual simulated run."""

    totals: np.ndarray
    balances: np.ndarray
    withdrawals: np.ndarray


@dataclass(frozen=True)
class Statistics:
    success_rate: float
    bands: Dict[float, np.ndarray]
    median_run: MedianRun
    drawdown: DrawdownStats
    ending_balances: np.ndarray
    median_fifth_year_withdrawal: float


def _check_runs(runs: Sequence[RunResult]) -> int:
    if not runs:
        raise ValueError("No runs to summarize")
    horizon = runs[0].horizon
    if any(r.horizon != horizon for r in runs):
        raise ValueError("All runs must share the same horizon")
    return horizon


def success_rate(runs: Sequence[RunResult]) -> float:
    _check_runs(runs)
    return sum(1 for r in runs if r.failed_year is None) / len(runs)


def percentile_bands(runs: Sequence[RunResult], percentiles=BAND_PERCENTILES) -> Dict[float, np.ndarray]:
    """Map each percentile to its total-balance series over ``0..horizon``."""

    _check_runs(runs)
    totals = np.stack([r.totals for r in runs])
    values = np.quantile(totals, percentiles, axis=0, method="linear")
    return {p: values[i] for i, p in enumerate(percentiles)}


def median_run(runs: Sequence[RunResult]) -> MedianRun:
    """Take the median of every time step independently.

    Totals are the median of the per-run totals, not the sum of the bucket
    medians, so the pieces need not add up.
    """

    _check_runs(runs)
    balances = np.stack([r.balances for r in runs])
    totals = balances.sum(axis=2)
    withdrawals = np.stack([r.withdrawals for r in runs])
    return MedianRun(
        totals=np.quantile(totals, 0.5, axis=0, method="linear"),
        balances=np.quantile(balances, 0.5, axis=0, method="linear"),
        withdrawals=np.quantile(withdrawals, 0.5, axis=0, method="linear"),
    )


def drawdown_stats(runs: Sequence[RunResult]) -> DrawdownStats:
    _check_runs(runs)
    drawdowns = []
    low_points = []
    for run in runs:
        worst, low_point = max_drawdown(run.totals)
        drawdowns.append(worst)
        low_points.append(low_point)
    return DrawdownStats(
        median_drawdown=percentile(drawdowns, 0.5),
        median_balance_at_max_drawdown=percentile(low_points, 0.5),
        max_drawdown=float(max(drawdowns)),
        worst_balance_at_max_drawdown=float(min(low_points)),
    )


def summarize(runs: Sequence[RunResult]) -> Statistics:
    """Compute every display statistic for a batch of runs."""

    horizon = _check_runs(runs)
    fifth = percentile([r.withdrawals[4] for r in runs], 0.5) if horizon >= 5 else 0.0
    return Statistics(
        success_rate=success_rate(runs),
        bands=percentile_bands(runs),
        median_run=median_run(runs),
        drawdown=drawdown_stats(runs),
        ending_balances=np.array([r.ending_balance for r in runs]),
        median_fifth_year_withdrawal=fifth,
    )
