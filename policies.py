"""Withdrawal policies and the per-year portfolio state machine.

Every policy funds the year's withdrawal first and grows what is left
afterwards, so withdrawals are never exposed to that year's return.  The
first year whose pre-growth total is not positive marks the run as failed;
all later balances and withdrawals stay at zero.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import ClassVar, NamedTuple, Optional, Tuple, Union

import numpy as np
from numba import njit

from returns import MARKET_BUCKETS, N_BUCKETS, Bucket
from sampler import ReturnPath


# Guardrails are switched off for this many final years (longevity rule)
LONGEVITY_YEARS = 15

# Below this a shortfall counts as fully funded
FUNDING_TOLERANCE = 1e-9


class FundingStrategy(str, Enum):
    """Order in which non-cash buckets cover what cash cannot."""

    EQUITY_A_FIRST = "equity_a_first"
    EQUITY_B_FIRST = "equity_b_first"
    EQUAL_PARTS = "equal_parts"
    BEST_PERFORMER = "best_performer"
    WORST_PERFORMER = "worst_performer"


class FourPercentVariant(str, Enum):
    PLAIN = "plain"
    PRINCIPAL_PROTECTION = "principal_protection"
    UPWARD_RESET = "upward_reset"


_STANDARD_ORDER = np.array(
    [Bucket.CASH, Bucket.EQUITY_A, Bucket.EQUITY_B, Bucket.ALTERNATIVE, Bucket.BOND],
    dtype=np.int64,
)
_FIXED_ORDERS = {
    FundingStrategy.EQUITY_A_FIRST: _STANDARD_ORDER,
    FundingStrategy.EQUITY_B_FIRST: np.array(
        [Bucket.CASH, Bucket.EQUITY_B, Bucket.EQUITY_A, Bucket.ALTERNATIVE, Bucket.BOND],
        dtype=np.int64,
    ),
}
_CASH_ONLY = np.array([Bucket.CASH], dtype=np.int64)
_MARKET = np.array(MARKET_BUCKETS, dtype=np.int64)


@njit(cache=True)
def _draw_in_order(balances: np.ndarray, amount: float, order: np.ndarray) -> float:
    """Drain ``balances`` in ``order`` until ``amount`` is covered.

    Mutates ``balances`` and returns the part of ``amount`` left unfunded.
    """
    remaining = amount
    for b in order:
        if remaining <= 0.0:
            break
        take = min(remaining, balances[b])
        if take > 0.0:
            balances[b] -= take
            remaining -= take
    return remaining


@njit(cache=True)
def _draw_equal_parts(balances: np.ndarray, amount: float, buckets: np.ndarray) -> float:
    """Split ``amount`` evenly over the non-empty ``buckets``.

    A bucket that cannot cover its share is emptied and the shortfall is
    split again over the buckets that still hold money.
    """
    remaining = amount
    while remaining > FUNDING_TOLERANCE:
        active = 0
        for b in buckets:
            if balances[b] > 0.0:
                active += 1
        if active == 0:
            break
        share = remaining / active
        for b in buckets:
            if balances[b] > 0.0:
                take = min(share, balances[b])
                balances[b] -= take
                remaining -= take
    return remaining


def fund_withdrawal(balances: np.ndarray, amount: float, order: np.ndarray = _STANDARD_ORDER) -> float:
    """Fund ``amount`` from ``balances`` in bucket ``order`` (in place)."""

    return _draw_in_order(balances, float(amount), np.asarray(order, dtype=np.int64))


def performance_order(multipliers: np.ndarray, best_first: bool) -> np.ndarray:
    """Cash, then market buckets ranked by this year's multiplier.

    Ties keep declaration order.
    """

    ranked = sorted(MARKET_BUCKETS, key=lambda b: -multipliers[b] if best_first else multipliers[b])
    return np.array([Bucket.CASH, *ranked], dtype=np.int64)


def _fund_by_strategy(strategy: FundingStrategy, balances: np.ndarray, amount: float, multipliers: np.ndarray) -> float:
    if strategy in _FIXED_ORDERS:
        return fund_withdrawal(balances, amount, _FIXED_ORDERS[strategy])
    if strategy is FundingStrategy.EQUAL_PARTS:
        remaining = _draw_in_order(balances, float(amount), _CASH_ONLY)
        if remaining <= FUNDING_TOLERANCE:
            return remaining
        return _draw_equal_parts(balances, remaining, _MARKET)
    best_first = strategy is FundingStrategy.BEST_PERFORMER
    return fund_withdrawal(balances, amount, performance_order(multipliers, best_first))


# ---------------------------------------------------------------------------
# Policy parameter bundles
# ---------------------------------------------------------------------------


def _check_fraction(name: str, value: float) -> None:
    if not 0 <= value <= 1:
        raise ValueError(f"{name} must be between 0 and 1, got {value!r}")


@dataclass(frozen=True)
class FixedOrderPolicy:
    """Inflation-indexed fixed withdrawal funded cash first, then ``funding``."""

    funding: FundingStrategy = FundingStrategy.EQUITY_A_FIRST
    kind: ClassVar[str] = "fixed_order"

    def __post_init__(self) -> None:
        object.__setattr__(self, "funding", FundingStrategy(self.funding))


@dataclass(frozen=True)
class GuytonKlingerPolicy:
    """Guardrail policy.

    ``guardrail_upper`` is how far above the initial rate the current rate
    may drift before spending is cut; ``guardrail_lower`` is how far below
    before spending is raised.
    """

    guardrail_upper: float = 0.2
    guardrail_lower: float = 0.2
    cut_percentage: float = 0.1
    raise_percentage: float = 0.1
    kind: ClassVar[str] = "guyton_klinger"

    def __post_init__(self) -> None:
        if self.guardrail_upper < 0:
            raise ValueError("guardrail_upper cannot be negative")
        _check_fraction("guardrail_lower", self.guardrail_lower)
        _check_fraction("cut_percentage", self.cut_percentage)
        if self.raise_percentage < 0:
            raise ValueError("raise_percentage cannot be negative")


@dataclass(frozen=True)
class FloorAndCeilingPolicy:
    floor: float = 0.3
    ceiling: float = 0.3
    kind: ClassVar[str] = "floor_and_ceiling"

    def __post_init__(self) -> None:
        _check_fraction("floor", self.floor)
        if self.ceiling < 0:
            raise ValueError("ceiling cannot be negative")


@dataclass(frozen=True)
class FixedPercentagePolicy:
    withdrawal_rate: float = 0.04
    kind: ClassVar[str] = "fixed_percentage"

    def __post_init__(self) -> None:
        _check_fraction("withdrawal_rate", self.withdrawal_rate)


@dataclass(frozen=True)
class CapeBasedPolicy:
    """Withdraw ``base_percentage + cape_fraction / CAPE`` of the balance."""

    base_percentage: float = 0.02
    cape_fraction: float = 0.5
    kind: ClassVar[str] = "cape_based"

    def __post_init__(self) -> None:
        _check_fraction("base_percentage", self.base_percentage)
        if self.cape_fraction < 0:
            raise ValueError("cape_fraction cannot be negative")


@dataclass(frozen=True)
class FourPercentRulePolicy:
    variant: FourPercentVariant = FourPercentVariant.PLAIN
    kind: ClassVar[str] = "four_percent_rule"

    def __post_init__(self) -> None:
        object.__setattr__(self, "variant", FourPercentVariant(self.variant))


Policy = Union[
    FixedOrderPolicy,
    GuytonKlingerPolicy,
    FloorAndCeilingPolicy,
    FixedPercentagePolicy,
    CapeBasedPolicy,
    FourPercentRulePolicy,
]

POLICY_TYPES = {
    cls.kind: cls
    for cls in (
        FixedOrderPolicy,
        GuytonKlingerPolicy,
        FloorAndCeilingPolicy,
        FixedPercentagePolicy,
        CapeBasedPolicy,
        FourPercentRulePolicy,
    )
}


def policy_to_dict(policy: Policy) -> dict:
    data = {"kind": policy.kind}
    for key, value in asdict(policy).items():
        data[key] = value.value if isinstance(value, Enum) else value
    return data


def policy_from_dict(data: dict) -> Policy:
    """Rebuild a policy from :func:`policy_to_dict` output."""

    params = dict(data)
    kind = params.pop("kind", None)
    if kind not in POLICY_TYPES:
        raise ValueError(f"Unknown withdrawal policy: {kind!r}")
    return POLICY_TYPES[kind](**params)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunContext:
    """Per-run inputs that stay fixed while the policy steps through years."""

    start_balance: float
    initial_withdrawal: float
    inflation_adjust: bool
    inflation: np.ndarray
    cape_ratios: np.ndarray
    inflation_index: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        rates = np.asarray(self.inflation, dtype=np.float64)
        if self.inflation_adjust:
            # index[y] = prod(1 + rate[k]) for k < y
            index = np.concatenate(([1.0], np.cumprod(1.0 + rates[:-1])))
        else:
            index = np.ones(len(rates))
        object.__setattr__(self, "inflation_index", index)

    @property
    def horizon(self) -> int:
        return len(self.inflation)

    @property
    def initial_rate(self) -> float:
        return self.initial_withdrawal / self.start_balance

    def inflation_step(self, year: int) -> float:
        """Multiplier moving a withdrawal from ``year`` to the next year."""

        if not self.inflation_adjust:
            return 1.0
        return 1.0 + self.inflation[year]


@dataclass(frozen=True)
class PolicyMemory:
    """What a policy carries from one year into the next."""

    withdrawal: float
    guardrail_triggers: Tuple[int, ...] = ()


class StepOutcome(NamedTuple):
    withdrawal: float
    balances: np.ndarray
    memory: PolicyMemory
    failed: bool


@dataclass(frozen=True)
class RunResult:
    """Bucket snapshots and withdrawals for one simulated run.

    ``balances`` has shape ``(horizon + 1, N_BUCKETS)`` with row 0 holding
    the starting balances; ``failed_year`` is 1-based.
    """

    balances: np.ndarray
    withdrawals: np.ndarray
    failed_year: Optional[int]
    years: Tuple[int, ...] = ()
    guardrail_triggers: Tuple[int, ...] = ()

    @property
    def horizon(self) -> int:
        return len(self.withdrawals)

    @property
    def totals(self) -> np.ndarray:
        return self.balances.sum(axis=1)

    @property
    def ending_balance(self) -> float:
        return float(self.balances[-1].sum())

    @property
    def succeeded(self) -> bool:
        return self.failed_year is None


def _settle(withdrawal: float, balances: np.ndarray, multipliers: np.ndarray, memory: PolicyMemory) -> StepOutcome:
    """Detect depletion on the funded balances, otherwise apply growth."""

    if balances.sum() <= 0:
        return StepOutcome(withdrawal, np.zeros(N_BUCKETS), memory, True)
    return StepOutcome(withdrawal, balances * multipliers, memory, False)


# ---------------------------------------------------------------------------
# Step functions
# ---------------------------------------------------------------------------


def _step_fixed_order(policy, state, multipliers, year, memory, ctx):
    amount = ctx.initial_withdrawal * ctx.inflation_index[year]
    balances = state.copy()
    _fund_by_strategy(policy.funding, balances, amount, multipliers)
    return _settle(amount, balances, multipliers, memory)


def _step_guyton_klinger(policy, state, multipliers, year, memory, ctx):
    amount = memory.withdrawal
    balances = state.copy()
    fund_withdrawal(balances, amount)
    pre_growth = balances.sum()
    if pre_growth <= 0:
        return StepOutcome(amount, np.zeros(N_BUCKETS), memory, True)

    balances = balances * multipliers
    post_growth = balances.sum()
    realized = post_growth / pre_growth - 1

    # No raise for inflation after a losing year
    upcoming = amount if realized < 0 else amount * ctx.inflation_step(year)

    triggers = memory.guardrail_triggers
    if year < ctx.horizon - LONGEVITY_YEARS and post_growth > 0:
        rate = upcoming / post_growth
        if rate > ctx.initial_rate * (1 + policy.guardrail_upper):
            upcoming *= 1 - policy.cut_percentage
            triggers = triggers + (year + 1,)
        elif rate < ctx.initial_rate * (1 - policy.guardrail_lower):
            upcoming *= 1 + policy.raise_percentage
            triggers = triggers + (year + 1,)

    memory = replace(memory, withdrawal=upcoming, guardrail_triggers=triggers)
    return StepOutcome(amount, balances, memory, False)


def _step_floor_and_ceiling(policy, state, multipliers, year, memory, ctx):
    base = ctx.initial_withdrawal
    target = state.sum() * ctx.initial_rate
    clamped = min(max(target, base * (1 - policy.floor)), base * (1 + policy.ceiling))
    amount = clamped * ctx.inflation_index[year]
    balances = state.copy()
    fund_withdrawal(balances, amount)
    return _settle(amount, balances, multipliers, memory)


def _step_fixed_percentage(policy, state, multipliers, year, memory, ctx):
    amount = state.sum() * policy.withdrawal_rate
    balances = state.copy()
    fund_withdrawal(balances, amount)
    return _settle(amount, balances, multipliers, memory)


def _step_cape_based(policy, state, multipliers, year, memory, ctx):
    rate = policy.base_percentage + policy.cape_fraction / ctx.cape_ratios[year]
    amount = state.sum() * rate
    balances = state.copy()
    fund_withdrawal(balances, amount)
    return _settle(amount, balances, multipliers, memory)


def _step_four_percent(policy, state, multipliers, year, memory, ctx):
    start_of_year = state.sum()
    if policy.variant is FourPercentVariant.UPWARD_RESET:
        amount = memory.withdrawal
    else:
        amount = ctx.initial_withdrawal * ctx.inflation_index[year]
    if policy.variant is FourPercentVariant.PRINCIPAL_PROTECTION and start_of_year < ctx.start_balance:
        amount = 0.0

    balances = state.copy()
    fund_withdrawal(balances, amount)
    outcome = _settle(amount, balances, multipliers, memory)
    if outcome.failed or policy.variant is not FourPercentVariant.UPWARD_RESET:
        return outcome

    upcoming = amount * ctx.inflation_step(year)
    end_of_year = outcome.balances.sum()
    if end_of_year > start_of_year:
        upcoming = max(upcoming, end_of_year * ctx.initial_rate)
    return outcome._replace(memory=replace(memory, withdrawal=upcoming))


_STEPS = {
    FixedOrderPolicy: _step_fixed_order,
    GuytonKlingerPolicy: _step_guyton_klinger,
    FloorAndCeilingPolicy: _step_floor_and_ceiling,
    FixedPercentagePolicy: _step_fixed_percentage,
    CapeBasedPolicy: _step_cape_based,
    FourPercentRulePolicy: _step_four_percent,
}


def step(policy: Policy, state: np.ndarray, multipliers: np.ndarray, year: int, memory: PolicyMemory, ctx: RunContext) -> StepOutcome:
    """Advance one year: fund the withdrawal, check for depletion, grow."""

    try:
        func = _STEPS[type(policy)]
    except KeyError:
        raise TypeError(f"Unsupported withdrawal policy: {policy!r}") from None
    return func(policy, state, multipliers, year, memory, ctx)


def run_policy(policy: Policy, path: ReturnPath, start_balances: np.ndarray, ctx: RunContext) -> RunResult:
    """Simulate ``policy`` over ``path`` from ``start_balances``."""

    horizon = len(path)
    balances = np.zeros((horizon + 1, N_BUCKETS))
    withdrawals = np.zeros(horizon)
    state = np.asarray(start_balances, dtype=np.float64).copy()
    balances[0] = state

    memory = PolicyMemory(withdrawal=ctx.initial_withdrawal)
    failed_year = None
    for year in range(horizon):
        outcome = step(policy, state, path.multipliers[year], year, memory, ctx)
        withdrawals[year] = outcome.withdrawal
        if outcome.failed:
            failed_year = year + 1
            break
        state = outcome.balances
        memory = outcome.memory
        balances[year + 1] = state

    return RunResult(
        balances=balances,
        withdrawals=withdrawals,
        failed_year=failed_year,
        years=tuple(int(y) for y in path.years),
        guardrail_triggers=memory.guardrail_triggers,
    )
