"""Core functionality for historical withdrawal simulations."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from policies import (
    FixedOrderPolicy,
    Policy,
    RunContext,
    RunResult,
    policy_from_dict,
    policy_to_dict,
    run_policy,
)
from returns import MARKET_BUCKETS, Bucket, ReturnSeriesStore
from sampler import ReturnTable, SamplingMode, sample_path


logger = logging.getLogger(__name__)


CONFIG_FILE = "config.json"

# Field names of the starting balances, in bucket order
BALANCE_FIELDS = ("cash", "equity_a", "equity_b", "alternative", "bond")


class SimulationCancelled(RuntimeError):
    """Raised when a batch is abandoned before it finishes."""


def parse_percent(text: str) -> float:
    """Read a withdrawal rate such as ``'4%'`` or ``'4.5'`` as a fraction."""

    cleaned = text.strip().removesuffix("%").strip()
    try:
        rate = float(cleaned) / 100
    except ValueError as exc:
        raise ValueError(f"Not a percentage: {text!r}") from exc
    if not 0 <= rate <= 1:
        raise ValueError(f"Rate {text!r} is outside 0%-100%")
    return rate


def parse_dollars(text: str) -> float:
    """Read an amount such as ``'$40,000'`` as a float."""

    cleaned = text.strip().lstrip("$").replace(",", "")
    try:
        amount = float(cleaned)
    except ValueError as exc:
        raise ValueError(f"Not a dollar amount: {text!r}") from exc
    if amount < 0:
        raise ValueError(f"Amount {text!r} cannot be negative")
    return amount


@dataclass
class SimulationConfig:
    """Everything one simulation request needs besides the data tables.

    ``withdraw_rate`` is a percent of the starting total (4.0 means 4%) and
    ``initial_withdrawal_amount`` is the matching dollar figure.  Whichever
    one ``initial_amount_locked`` names as the source of truth is kept when
    the starting balances change; the other is recomputed from it.
    """

    cash: float = 0.0
    equity_a: float = 0.0
    equity_b: float = 0.0
    alternative: float = 0.0
    bond: float = 0.0
    horizon: int = 30
    withdraw_rate: float = 4.0
    initial_withdrawal_amount: Optional[float] = None
    initial_amount_locked: bool = False
    inflation_adjust: bool = True
    inflation_rate: float = 0.02
    historical_inflation: bool = False
    mode: SamplingMode = SamplingMode.ACTUAL_SEQUENCE
    number_of_simulations: int = 1_000
    start_year: Optional[int] = None
    seed: Optional[int] = None
    policy: Policy = field(default_factory=FixedOrderPolicy)

    def __post_init__(self) -> None:
        self.mode = SamplingMode(self.mode)
        if isinstance(self.policy, dict):
            self.policy = policy_from_dict(self.policy)
        if self.horizon <= 0:
            raise ValueError("Horizon must be positive")
        if self.number_of_simulations <= 0:
            raise ValueError("Number of simulations must be positive")
        for name in BALANCE_FIELDS:
            if getattr(self, name) < 0:
                raise ValueError(f"Starting {name} balance cannot be negative")
        if self.start_balance <= 0:
            raise ValueError("Starting portfolio must hold a positive balance")
        if self.withdraw_rate < 0:
            raise ValueError("Withdraw rate cannot be negative")
        if self.initial_withdrawal_amount is not None and self.initial_withdrawal_amount < 0:
            raise ValueError("Initial withdrawal amount cannot be negative")
        if self.inflation_rate <= -1:
            raise ValueError("Inflation rate must be greater than -100%")
        if self.mode.is_deterministic and self.start_year is None:
            raise ValueError("actual-seq mode needs a start year")

        if self.initial_withdrawal_amount is None:
            self.initial_amount_locked = False
        self._sync_withdrawal()

    @property
    def start_balance(self) -> float:
        return float(sum(getattr(self, name) for name in BALANCE_FIELDS))

    @property
    def initial_balances(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in BALANCE_FIELDS], dtype=np.float64)

    @property
    def initial_rate(self) -> float:
        """Initial withdrawal as a fraction of the starting total."""

        return self.initial_withdrawal_amount / self.start_balance

    @property
    def run_count(self) -> int:
        return 1 if self.mode.is_deterministic else self.number_of_simulations

    def buckets_in_use(self) -> List[Bucket]:
        """Market buckets holding money (empty for an all-cash portfolio)."""

        return [b for b in MARKET_BUCKETS if getattr(self, BALANCE_FIELDS[b]) > 0]

    def _sync_withdrawal(self) -> None:
        if self.initial_amount_locked:
            computed = self.initial_withdrawal_amount / self.start_balance * 100
            if computed != self.withdraw_rate:
                self.withdraw_rate = computed
        else:
            computed = self.start_balance * self.withdraw_rate / 100
            if computed != self.initial_withdrawal_amount:
                self.initial_withdrawal_amount = computed

    def set_withdraw_rate(self, rate: float) -> None:
        if rate < 0:
            raise ValueError("Withdraw rate cannot be negative")
        self.withdraw_rate = rate
        computed = self.start_balance * rate / 100
        if computed != self.initial_withdrawal_amount:
            self.initial_withdrawal_amount = computed

    def set_initial_withdrawal_amount(self, amount: float) -> None:
        if amount < 0:
            raise ValueError("Initial withdrawal amount cannot be negative")
        self.initial_withdrawal_amount = amount
        computed = amount / self.start_balance * 100
        if computed != self.withdraw_rate:
            self.withdraw_rate = computed

    def set_balances(self, **balances: float) -> None:
        """Change starting balances and re-derive the unlocked withdrawal field."""

        for name, value in balances.items():
            if name not in BALANCE_FIELDS:
                raise ValueError(f"Unknown bucket: {name}")
            if value < 0:
                raise ValueError(f"Starting {name} balance cannot be negative")
        if sum(balances.get(n, getattr(self, n)) for n in BALANCE_FIELDS) <= 0:
            raise ValueError("Starting portfolio must hold a positive balance")
        for name, value in balances.items():
            setattr(self, name, float(value))
        self._sync_withdrawal()


def _inflation_rates(cfg: SimulationConfig, path_inflation: np.ndarray) -> np.ndarray:
    if cfg.historical_inflation:
        return path_inflation
    return np.full(len(path_inflation), cfg.inflation_rate)


def simulate(
    cfg: SimulationConfig,
    store: ReturnSeriesStore,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[RunResult]:
    """Run the configured policy over one or many sampled return paths.

    Deterministic ``actual-seq`` mode runs once; the Monte Carlo modes run
    ``cfg.number_of_simulations`` independent paths.  ``should_stop`` is
    polled between runs and abandons the batch when it returns true.
    """

    buckets = cfg.buckets_in_use() or [b for b in MARKET_BUCKETS if store.has_series(b)]
    table = ReturnTable.build(store, buckets)
    if cfg.mode.is_deterministic:
        last_start = int(table.years[-1]) - cfg.horizon + 1
        if cfg.start_year not in table.years or cfg.start_year > last_start:
            raise ValueError(
                f"Start year {cfg.start_year} leaves fewer than {cfg.horizon} years "
                f"of data ({int(table.years[0])}-{int(table.years[-1])})"
            )

    rng = np.random.default_rng(cfg.seed)
    start = cfg.initial_balances
    n_runs = cfg.run_count
    logger.debug(
        "Running %d %s simulation(s) of %d years with %s",
        n_runs, cfg.mode.value, cfg.horizon, type(cfg.policy).__name__,
    )

    runs = []
    for _ in range(n_runs):
        if should_stop is not None and should_stop():
            logger.info("Simulation cancelled after %d of %d runs", len(runs), n_runs)
            raise SimulationCancelled(f"Cancelled after {len(runs)} of {n_runs} runs")
        path = sample_path(cfg.mode, table, cfg.horizon, rng, cfg.start_year)
        ctx = RunContext(
            start_balance=cfg.start_balance,
            initial_withdrawal=cfg.initial_withdrawal_amount,
            inflation_adjust=cfg.inflation_adjust,
            inflation=_inflation_rates(cfg, path.inflation),
            cape_ratios=np.array([store.cape_ratio(int(y)) for y in path.years]),
        )
        runs.append(run_policy(cfg.policy, path, start, ctx))

    failures = sum(1 for r in runs if r.failed_year is not None)
    logger.info("Finished %d runs, %d depleted", n_runs, failures)
    return runs


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if os.path.exists(path):
        with open(path) as f:
            return json.load(f)
    return {}


def config_from_dict(data: dict) -> SimulationConfig:
    """Build a :class:`SimulationConfig` from :func:`load_config` output."""

    known = SimulationConfig.__dataclass_fields__
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return SimulationConfig(**data)


def save_config(cfg: SimulationConfig, path: str = CONFIG_FILE) -> None:
    """Persist the provided configuration to disk."""

    data = {
        "cash": cfg.cash,
        "equity_a": cfg.equity_a,
        "equity_b": cfg.equity_b,
        "alternative": cfg.alternative,
        "bond": cfg.bond,
        "horizon": cfg.horizon,
        "withdraw_rate": cfg.withdraw_rate,
        "initial_withdrawal_amount": cfg.initial_withdrawal_amount,
        "initial_amount_locked": cfg.initial_amount_locked,
        "inflation_adjust": cfg.inflation_adjust,
        "inflation_rate": cfg.inflation_rate,
        "historical_inflation": cfg.historical_inflation,
        "mode": cfg.mode.value,
        "number_of_simulations": cfg.number_of_simulations,
        "start_year": cfg.start_year,
        "seed": cfg.seed,
        "policy": policy_to_dict(cfg.policy),
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
