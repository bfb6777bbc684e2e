"""Historical return, inflation and CAPE tables used by the simulator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd


logger = logging.getLogger(__name__)


class Bucket(IntEnum):
    """Asset buckets a portfolio can hold, in funding declaration order."""

    CASH = 0
    EQUITY_A = 1
    EQUITY_B = 2
    ALTERNATIVE = 3
    BOND = 4


N_BUCKETS = len(Bucket)
MARKET_BUCKETS = (Bucket.EQUITY_A, Bucket.EQUITY_B, Bucket.ALTERNATIVE, Bucket.BOND)

# Buckets whose short history is recycled instead of limiting the year window
WRAPAROUND_BUCKETS = frozenset({Bucket.ALTERNATIVE})

DEFAULT_CAPE = 25.0

# CSV column names for each series
SERIES_COLUMNS = {
    Bucket.EQUITY_A: "equity_a",
    Bucket.EQUITY_B: "equity_b",
    Bucket.ALTERNATIVE: "alternative",
    Bucket.BOND: "bond",
}
INFLATION_COLUMN = "inflation"
CAPE_COLUMN = "cape"


class MissingDataError(ValueError):
    """Raised when a required year has no data for a bucket."""


def pct_to_mult(pct: float) -> float:
    """Convert a percent return like 7.5 to a multiplier 1.075."""

    return 1 + pct / 100


def wrap_year(year: int, min_year: int, max_year: int) -> int:
    """Map ``year`` into ``[min_year, max_year]`` by cycling over the span."""

    span = max_year - min_year + 1
    return ((year - min_year) % span + span) % span + min_year


@dataclass(frozen=True)
class ReturnSeriesStore:
    """Immutable bundle of annual series keyed by calendar year.

    ``returns`` holds percent total returns for each market bucket,
    ``inflation`` holds percent CPI changes and ``cape`` holds the
    cyclically-adjusted P/E ratio.  Cash has no series; it never grows.
    """

    returns: Dict[Bucket, Dict[int, float]] = field(default_factory=dict)
    inflation: Dict[int, float] = field(default_factory=dict)
    cape: Dict[int, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if Bucket.CASH in self.returns:
            raise ValueError("Cash does not take a return series")

    def has_series(self, bucket: Bucket) -> bool:
        return bool(self.returns.get(bucket))

    def chronological(self, bucket: Bucket) -> Tuple[List[int], List[float]]:
        """Return ``(years, percents)`` for ``bucket`` sorted by year."""

        series = self.returns.get(bucket, {})
        years = sorted(series)
        return years, [series[y] for y in years]

    def years_for(self, buckets: Iterable[Bucket]) -> List[int]:
        """Return the sorted years where every bucket in ``buckets`` has data.

        Wraparound buckets do not narrow the window; they only contribute
        their own years when nothing else is requested.
        """

        buckets = [Bucket(b) for b in buckets if b != Bucket.CASH]
        strict = [b for b in buckets if b not in WRAPAROUND_BUCKETS]
        if not strict:
            strict = buckets
        if not strict:
            return []

        common = None
        for bucket in strict:
            if not self.has_series(bucket):
                raise MissingDataError(f"No return series for {bucket.name}")
            years = set(self.returns[bucket])
            common = years if common is None else common & years
        return sorted(common)

    def multiplier(self, bucket: Bucket, year: int) -> float:
        """Return the growth multiplier of ``bucket`` for ``year``."""

        bucket = Bucket(bucket)
        if bucket == Bucket.CASH:
            return 1.0
        series = self.returns.get(bucket)
        if not series:
            raise MissingDataError(f"No return series for {bucket.name}")
        lookup = year
        if bucket in WRAPAROUND_BUCKETS and year not in series:
            lookup = wrap_year(year, min(series), max(series))
        if lookup not in series:
            raise MissingDataError(f"No {bucket.name} return for {year}")
        return pct_to_mult(series[lookup])

    def inflation_rate(self, year: int) -> float:
        """Return the inflation rate for ``year`` as a fraction (0 if unknown)."""

        return self.inflation.get(year, 0.0) / 100

    def cape_ratio(self, year: int) -> float:
        value = self.cape.get(year)
        if value is None or value <= 0:
            return DEFAULT_CAPE
        return value

    def with_value(self, series: str, year: int, value: Optional[float]) -> "ReturnSeriesStore":
        """Return a copy with a single cell replaced.

        ``series`` is a CSV column name (``equity_a``, ``inflation``,
        ``cape`` ...).  A ``value`` of ``None`` removes the year.
        """

        def _edit(table: Dict[int, float]) -> Dict[int, float]:
            table = dict(table)
            if value is None or np.isnan(value):
                table.pop(year, None)
            else:
                table[year] = float(value)
            return table

        if series == INFLATION_COLUMN:
            return ReturnSeriesStore(self.returns, _edit(self.inflation), self.cape)
        if series == CAPE_COLUMN:
            return ReturnSeriesStore(self.returns, self.inflation, _edit(self.cape))
        for bucket, column in SERIES_COLUMNS.items():
            if column == series:
                returns = dict(self.returns)
                returns[bucket] = _edit(returns.get(bucket, {}))
                return ReturnSeriesStore(returns, self.inflation, self.cape)
        raise ValueError(f"Unknown series: {series!r}")


def _column_to_dict(df: pd.DataFrame, column: str) -> Dict[int, float]:
    col = df[["year", column]].dropna()
    return {int(y): float(v) for y, v in zip(col["year"], col[column])}


def load_series_csv(path: str) -> ReturnSeriesStore:
    """Load a wide CSV with a ``year`` column and one column per series.

    Recognised columns are ``equity_a``, ``equity_b``, ``alternative``,
    ``bond``, ``inflation`` and ``cape``; blank cells mean no data.
    """

    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    if "year" not in df.columns:
        raise ValueError(f"{path}: missing 'year' column")

    returns = {}
    for bucket, column in SERIES_COLUMNS.items():
        if column in df.columns:
            returns[bucket] = _column_to_dict(df, column)
    inflation = _column_to_dict(df, INFLATION_COLUMN) if INFLATION_COLUMN in df.columns else {}
    cape = _column_to_dict(df, CAPE_COLUMN) if CAPE_COLUMN in df.columns else {}

    logger.info(
        "Loaded %d rows from %s (%s)",
        len(df),
        path,
        ", ".join(SERIES_COLUMNS[b] for b in returns) or "no return series",
    )
    return ReturnSeriesStore(returns=returns, inflation=inflation, cape=cape)


def load_cape_monthly_csv(path: str, date_column: str = "date", cape_column: str = "cape") -> Dict[int, float]:
    """Average monthly CAPE readings into one value per calendar year.

    Dates are fractional years as published in Shiller's data (``1990.01``
    is January 1990).  Rows with a non-numeric date or CAPE are skipped.
    """

    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    dates = pd.to_numeric(df[date_column], errors="coerce")
    capes = pd.to_numeric(df[cape_column], errors="coerce")
    monthly = pd.DataFrame({"year": np.floor(dates), "cape": capes}).dropna()
    annual = monthly.groupby("year")["cape"].mean()
    return {int(year): float(value) for year, value in annual.items()}
