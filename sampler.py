"""Turn the historical return table into per-run return paths."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from returns import N_BUCKETS, Bucket, ReturnSeriesStore


class SamplingMode(str, Enum):
    ACTUAL_SEQUENCE = "actual-seq"
    RANDOM_START = "actual-seq-random-start"
    RANDOM_SHUFFLE = "random-shuffle"
    BOOTSTRAP = "bootstrap"

    @property
    def is_deterministic(self) -> bool:
        return self is SamplingMode.ACTUAL_SEQUENCE


@dataclass(frozen=True)
class ReturnTable:
    """Historical years aligned with per-bucket multipliers and inflation.

    ``multipliers`` has shape ``(len(years), N_BUCKETS)``; cash and buckets
    that are not in use hold 1.0.  ``inflation`` holds fractional rates.
    """

    years: np.ndarray
    multipliers: np.ndarray
    inflation: np.ndarray

    @classmethod
    def build(cls, store: ReturnSeriesStore, buckets: Iterable[Bucket]) -> "ReturnTable":
        buckets = sorted({Bucket(b) for b in buckets} - {Bucket.CASH})
        years = store.years_for(buckets)
        if not years:
            raise ValueError("No years with return data for the buckets in use")

        multipliers = np.ones((len(years), N_BUCKETS), dtype=np.float64)
        for i, year in enumerate(years):
            for bucket in buckets:
                multipliers[i, bucket] = store.multiplier(bucket, year)
        inflation = np.array([store.inflation_rate(y) for y in years], dtype=np.float64)
        return cls(np.array(years, dtype=np.int64), multipliers, inflation)

    def __len__(self) -> int:
        return len(self.years)


@dataclass(frozen=True)
class ReturnPath:
    """One run's worth of sampled years."""

    years: np.ndarray
    multipliers: np.ndarray
    inflation: np.ndarray

    def __len__(self) -> int:
        return len(self.years)


def clamp_start_year(years, horizon: int, start_year: int) -> int:
    """Clamp ``start_year`` so a ``horizon``-year window fits in ``years``.

    Raises ``ValueError`` when no window of that length exists.
    """

    first, last = int(min(years)), int(max(years))
    if last - first + 1 < horizon:
        raise ValueError(
            f"A {horizon}-year window does not fit in {first}-{last}"
        )
    return min(max(start_year, first), last - horizon + 1)


def sample_indices(
    mode: SamplingMode,
    n_years: int,
    horizon: int,
    rng: Optional[np.random.Generator] = None,
    start_index: int = 0,
) -> np.ndarray:
    """Return ``horizon`` row indices into a table of ``n_years`` years.

    Every bucket and the inflation rate are read through the same indices,
    which keeps a simulated year's assets drawn from one historical year.
    """

    mode = SamplingMode(mode)
    if horizon <= 0:
        raise ValueError("Horizon must be positive")
    if n_years <= 0:
        raise ValueError("No historical years to sample from")

    if mode is SamplingMode.ACTUAL_SEQUENCE:
        if start_index < 0 or start_index + horizon > n_years:
            raise ValueError(
                f"A {horizon}-year sequence starting at index {start_index} "
                f"does not fit in {n_years} years of data"
            )
        return np.arange(start_index, start_index + horizon)

    if rng is None:
        rng = np.random.default_rng()
    if mode is SamplingMode.RANDOM_START:
        start = rng.integers(n_years)
        return (start + np.arange(horizon)) % n_years
    if mode is SamplingMode.RANDOM_SHUFFLE:
        # Generator.permutation is a Fisher-Yates shuffle
        order = rng.permutation(n_years)
        return order[np.arange(horizon) % n_years]
    return rng.integers(0, n_years, size=horizon)


def sample_path(
    mode: SamplingMode,
    table: ReturnTable,
    horizon: int,
    rng: Optional[np.random.Generator] = None,
    start_year: Optional[int] = None,
) -> ReturnPath:
    """Sample one return path of length ``horizon`` from ``table``."""

    mode = SamplingMode(mode)
    start_index = 0
    if mode is SamplingMode.ACTUAL_SEQUENCE:
        if start_year is None:
            raise ValueError("actual-seq sampling needs a start year")
        matches = np.flatnonzero(table.years == start_year)
        if matches.size == 0:
            raise ValueError(f"Start year {start_year} is not in the return data")
        start_index = int(matches[0])

    idx = sample_indices(mode, len(table), horizon, rng, start_index)
    return ReturnPath(
        years=table.years[idx],
        multipliers=table.multipliers[idx],
        inflation=table.inflation[idx],
    )
