from typing import get_args

import numpy as np
import pytest

from policies import (
    CapeBasedPolicy,
    FixedOrderPolicy,
    FixedPercentagePolicy,
    FloorAndCeilingPolicy,
    FourPercentRulePolicy,
    FourPercentVariant,
    POLICY_TYPES,
    Policy,
    FundingStrategy,
    GuytonKlingerPolicy,
    PolicyMemory,
    RunContext,
    _fund_by_strategy,
    fund_withdrawal,
    performance_order,
    policy_from_dict,
    policy_to_dict,
    run_policy,
    step,
)
from returns import Bucket
from sampler import ReturnPath


def _path(equity_a, bond=None) -> ReturnPath:
    """Build a path from per-year multipliers for equity A (and bond)."""
    horizon = len(equity_a)
    multipliers = np.ones((horizon, 5))
    multipliers[:, Bucket.EQUITY_A] = equity_a
    if bond is not None:
        multipliers[:, Bucket.BOND] = bond
    return ReturnPath(
        years=np.arange(2000, 2000 + horizon),
        multipliers=multipliers,
        inflation=np.zeros(horizon),
    )


def _ctx(horizon, start=1_000_000.0, withdrawal=40_000.0, inflation=0.0, adjust=True, cape=None):
    return RunContext(
        start_balance=start,
        initial_withdrawal=withdrawal,
        inflation_adjust=adjust,
        inflation=np.full(horizon, inflation),
        cape_ratios=np.full(horizon, 25.0) if cape is None else np.asarray(cape, dtype=float),
    )


def _equity(amount=1_000_000.0):
    return np.array([0.0, amount, 0.0, 0.0, 0.0])


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


def test_fund_cash_first():
    balances = np.array([10.0, 100.0, 100.0, 0.0, 100.0])
    assert fund_withdrawal(balances, 50.0) == 0.0
    assert balances.tolist() == [0.0, 60.0, 100.0, 0.0, 100.0]


def test_fund_reports_shortfall():
    balances = np.array([10.0, 20.0, 0.0, 0.0, 0.0])
    assert fund_withdrawal(balances, 50.0) == pytest.approx(20.0)
    assert balances.tolist() == [0.0, 0.0, 0.0, 0.0, 0.0]


def test_equity_b_first():
    balances = np.array([0.0, 100.0, 100.0, 0.0, 0.0])
    _fund_by_strategy(FundingStrategy.EQUITY_B_FIRST, balances, 50.0, np.ones(5))
    assert balances.tolist() == [0.0, 100.0, 50.0, 0.0, 0.0]


def test_equal_parts_redistributes_shortfall():
    balances = np.array([0.0, 100.0, 10.0, 0.0, 100.0])
    remaining = _fund_by_strategy(FundingStrategy.EQUAL_PARTS, balances, 120.0, np.ones(5))
    assert remaining == pytest.approx(0.0)
    assert balances.tolist() == pytest.approx([0.0, 45.0, 0.0, 0.0, 45.0])


def test_equal_parts_uses_cash_first():
    balances = np.array([30.0, 100.0, 100.0, 0.0, 0.0])
    _fund_by_strategy(FundingStrategy.EQUAL_PARTS, balances, 50.0, np.ones(5))
    assert balances.tolist() == pytest.approx([0.0, 90.0, 90.0, 0.0, 0.0])


@pytest.mark.parametrize(
    "strategy, expected",
    [
        (FundingStrategy.BEST_PERFORMER, [0.0, 100.0, 60.0, 100.0, 100.0]),
        (FundingStrategy.WORST_PERFORMER, [0.0, 100.0, 100.0, 100.0, 60.0]),
    ],
)
def test_performance_strategies(strategy, expected):
    balances = np.array([10.0, 100.0, 100.0, 100.0, 100.0])
    multipliers = np.array([1.0, 1.1, 1.3, 1.0, 0.9])
    _fund_by_strategy(strategy, balances, 50.0, multipliers)
    assert balances.tolist() == expected


def test_performance_order_ties_keep_declaration_order():
    order = performance_order(np.ones(5), best_first=True)
    assert order.tolist() == [0, 1, 2, 3, 4]
    order = performance_order(np.ones(5), best_first=False)
    assert order.tolist() == [0, 1, 2, 3, 4]


# ---------------------------------------------------------------------------
# Policy parameters
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "factory",
    [
        lambda: FixedPercentagePolicy(withdrawal_rate=1.5),
        lambda: FloorAndCeilingPolicy(floor=-0.1),
        lambda: GuytonKlingerPolicy(cut_percentage=2.0),
        lambda: GuytonKlingerPolicy(guardrail_upper=-0.1),
        lambda: CapeBasedPolicy(cape_fraction=-1.0),
        lambda: FourPercentRulePolicy(variant="sometimes"),
        lambda: FixedOrderPolicy(funding="alphabetical"),
    ],
)
def test_invalid_policy_parameters(factory):
    with pytest.raises(ValueError):
        factory()


@pytest.mark.parametrize(
    "policy",
    [
        FixedOrderPolicy(FundingStrategy.EQUAL_PARTS),
        GuytonKlingerPolicy(guardrail_upper=0.25, raise_percentage=0.05),
        FloorAndCeilingPolicy(floor=0.1, ceiling=0.5),
        FixedPercentagePolicy(0.05),
        CapeBasedPolicy(0.01, 0.4),
        FourPercentRulePolicy(FourPercentVariant.UPWARD_RESET),
    ],
)
def test_policy_dict_round_trip(policy):
    assert policy_from_dict(policy_to_dict(policy)) == policy


def test_policy_from_dict_unknown_kind():
    with pytest.raises(ValueError):
        policy_from_dict({"kind": "yolo"})


def test_step_rejects_unknown_policy():
    with pytest.raises(TypeError):
        step(object(), _equity(), np.ones(5), 0, PolicyMemory(40_000.0), _ctx(1))


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def test_fixed_percentage_single_year():
    result = run_policy(FixedPercentagePolicy(0.04), _path([1.0]), _equity(), _ctx(1))
    assert result.withdrawals[0] == pytest.approx(40_000)
    assert result.ending_balance == pytest.approx(960_000)
    assert result.succeeded


@pytest.mark.parametrize(
    "multiplier, expected",
    [(1.1, 42_240.0), (0.9, 40_800.0)],
)
def test_upward_reset(multiplier, expected):
    policy = FourPercentRulePolicy(FourPercentVariant.UPWARD_RESET)
    result = run_policy(policy, _path([multiplier] * 3), _equity(), _ctx(3, inflation=0.02))
    assert result.withdrawals[0] == pytest.approx(40_000)
    assert result.withdrawals[1] == pytest.approx(expected)


def test_upward_reset_ignores_flat_year():
    policy = FourPercentRulePolicy(FourPercentVariant.UPWARD_RESET)
    result = run_policy(policy, _path([1.05, 1.0]), _equity(), _ctx(2, inflation=0.02))
    assert result.balances[1].sum() == pytest.approx(1_008_000)
    assert result.withdrawals[1] == pytest.approx(40_800)


def test_principal_protection_skips_year_below_start():
    policy = FourPercentRulePolicy(FourPercentVariant.PRINCIPAL_PROTECTION)
    result = run_policy(policy, _path([0.9, 1.0]), _equity(), _ctx(2))
    assert result.withdrawals.tolist() == [40_000.0, 0.0]


def test_plain_four_percent_indexes_to_inflation():
    policy = FourPercentRulePolicy()
    result = run_policy(policy, _path([1.0] * 3), _equity(), _ctx(3, inflation=0.02))
    assert result.withdrawals == pytest.approx([40_000, 40_800, 41_616])


def test_cape_based():
    policy = CapeBasedPolicy(base_percentage=0.02, cape_fraction=0.5)
    result = run_policy(policy, _path([1.0, 1.0]), _equity(), _ctx(2, cape=[40.0, 30.0]))
    assert result.withdrawals[0] == pytest.approx(32_500)
    assert result.balances[1].sum() == pytest.approx(967_500)
    assert result.withdrawals[1] == pytest.approx(35_475)


def test_cape_based_multi_year():
    policy = CapeBasedPolicy(base_percentage=0.02, cape_fraction=0.5)
    cape = [40.0, 30.0, 25.0, 28.0, 32.0]
    result = run_policy(policy, _path([1.0] * 5), _equity(), _ctx(5, cape=cape))
    balance = 1_000_000.0
    for year, ratio in enumerate(cape):
        expected = balance * (0.02 + 0.5 / ratio)
        assert result.withdrawals[year] == pytest.approx(expected)
        balance -= expected


@pytest.mark.parametrize(
    "multiplier, expected",
    [(2.0, 52_000.0), (0.5, 28_000.0), (1.0, 38_400.0)],
)
def test_floor_and_ceiling(multiplier, expected):
    policy = FloorAndCeilingPolicy(floor=0.3, ceiling=0.3)
    result = run_policy(policy, _path([multiplier, 1.0]), _equity(), _ctx(2, adjust=False))
    assert result.withdrawals[0] == pytest.approx(40_000)
    assert result.withdrawals[1] == pytest.approx(expected)


def test_guyton_klinger_holds_spending_after_loss():
    result = run_policy(GuytonKlingerPolicy(), _path([0.9, 0.95]), _equity(), _ctx(2, inflation=0.03))
    assert result.withdrawals[1] == pytest.approx(40_000)
    assert result.guardrail_triggers == ()


def test_guyton_klinger_cuts_when_rate_too_high():
    result = run_policy(GuytonKlingerPolicy(), _path([0.7] + [1.0] * 29), _equity(), _ctx(30))
    assert result.withdrawals[1] == pytest.approx(36_000)
    assert result.guardrail_triggers[0] == 1


def test_guyton_klinger_raises_when_rate_too_low():
    result = run_policy(
        GuytonKlingerPolicy(), _path([1.5] + [1.0] * 29), _equity(), _ctx(30, inflation=0.02)
    )
    assert result.withdrawals[1] == pytest.approx(40_800 * 1.1)
    assert result.guardrail_triggers[0] == 1


def test_guyton_klinger_guardrails_off_near_end():
    result = run_policy(GuytonKlingerPolicy(), _path([0.7] * 10), _equity(), _ctx(10))
    assert result.guardrail_triggers == ()
    assert result.withdrawals[1] == pytest.approx(40_000)


def test_failure_zero_fills_rest_of_run():
    result = run_policy(FixedOrderPolicy(), _path([1.0] * 5), _equity(100_000), _ctx(5))
    assert result.failed_year == 3
    assert not result.succeeded
    assert result.withdrawals.tolist() == [40_000.0, 40_000.0, 40_000.0, 0.0, 0.0]
    assert result.totals[:3].tolist() == [100_000.0, 60_000.0, 20_000.0]
    assert np.all(result.balances[3:] == 0)
    assert result.balances.shape == (6, 5)


@pytest.mark.parametrize(
    "policy",
    [
        FixedOrderPolicy(),
        FixedOrderPolicy(FundingStrategy.EQUAL_PARTS),
        FourPercentRulePolicy(FourPercentVariant.PLAIN),
        FourPercentRulePolicy(FourPercentVariant.PRINCIPAL_PROTECTION),
    ],
)
def test_constant_withdrawal_without_inflation_adjustment(policy):
    # rising path keeps principal protection from skipping a year
    result = run_policy(policy, _path([1.05] * 10), _equity(), _ctx(10, inflation=0.05, adjust=False))
    assert np.all(result.withdrawals == 40_000)
    assert result.succeeded


def test_fixed_order_grows_with_inflation():
    result = run_policy(FixedOrderPolicy(), _path([1.05] * 3), _equity(), _ctx(3, inflation=0.02))
    assert result.withdrawals[2] == pytest.approx(40_000 * 1.02**2)


def test_fixed_order_keeps_cash_flat():
    start = np.array([100_000.0, 900_000.0, 0.0, 0.0, 0.0])
    result = run_policy(FixedOrderPolicy(), _path([1.1, 1.1]), start, _ctx(2, adjust=False))
    assert result.balances[1].tolist() == pytest.approx([60_000.0, 990_000.0, 0.0, 0.0, 0.0])


@pytest.mark.parametrize(
    "policy",
    [
        FixedOrderPolicy(FundingStrategy.EQUAL_PARTS),
        FixedOrderPolicy(FundingStrategy.WORST_PERFORMER),
        GuytonKlingerPolicy(),
        FloorAndCeilingPolicy(),
        FixedPercentagePolicy(0.3),
        CapeBasedPolicy(),
        FourPercentRulePolicy(FourPercentVariant.UPWARD_RESET),
    ],
)
def test_balances_never_negative(policy):
    rng = np.random.default_rng(42)
    start = np.array([20_000.0, 300_000.0, 200_000.0, 50_000.0, 100_000.0])
    for _ in range(25):
        horizon = 40
        path = ReturnPath(
            years=np.arange(horizon),
            multipliers=np.column_stack(
                [np.ones(horizon), rng.uniform(0.5, 1.4, size=(horizon, 4))]
            ),
            inflation=rng.uniform(-0.02, 0.08, size=horizon),
        )
        ctx = RunContext(
            start_balance=start.sum(),
            initial_withdrawal=60_000.0,
            inflation_adjust=True,
            inflation=path.inflation,
            cape_ratios=np.full(horizon, 20.0),
        )
        result = run_policy(policy, path, start, ctx)
        assert np.all(result.balances >= 0)
        if result.failed_year is not None:
            assert np.all(result.balances[result.failed_year:] == 0)
            assert np.all(result.withdrawals[result.failed_year:] == 0)


def test_policy_union_covers_every_kind():
    assert set(get_args(Policy)) == set(POLICY_TYPES.values())
    assert len(POLICY_TYPES) == 6
