"""Command-line runner: load config and data, simulate, print a summary."""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import numpy as np

from core import (
    CONFIG_FILE,
    SimulationConfig,
    config_from_dict,
    load_config,
    parse_dollars,
    parse_percent,
    save_config,
    simulate,
)
from policies import policy_to_dict
from returns import ReturnSeriesStore, load_cape_monthly_csv, load_series_csv
from sampler import SamplingMode
from stats import Statistics, summarize


logger = logging.getLogger(__name__)


def _describe_policy(policy) -> str:
    params = policy_to_dict(policy)
    kind = params.pop("kind")
    if not params:
        return kind
    return kind + " (" + ", ".join(f"{k}={v}" for k, v in params.items()) + ")"


def build_summary(cfg: SimulationConfig, stats: Statistics) -> str:
    """Return a readable explanation of the inputs and the results."""

    bands = stats.bands
    explanation = [
        "Input values:",
        f"  Starting balance: ${cfg.start_balance:,.0f}",
        (
            "  Buckets: "
            f"cash ${cfg.cash:,.0f}, equity A ${cfg.equity_a:,.0f}, "
            f"equity B ${cfg.equity_b:,.0f}, alternative ${cfg.alternative:,.0f}, "
            f"bond ${cfg.bond:,.0f}"
        ),
        (
            "  Initial withdrawal: "
            f"${cfg.initial_withdrawal_amount:,.0f} ({cfg.withdraw_rate:.2f}%)"
        ),
        f"  Years simulated: {cfg.horizon}",
        f"  Sampling mode: {cfg.mode.value}",
        f"  Start year: {cfg.start_year}" if cfg.mode.is_deterministic else "",
        f"  Number of simulations: {cfg.run_count}",
        f"  Policy: {_describe_policy(cfg.policy)}",
        (
            "  Inflation: "
            + (
                "historical"
                if cfg.historical_inflation
                else f"{cfg.inflation_rate * 100:.2f}%"
            )
            + ("" if cfg.inflation_adjust else " (withdrawals not adjusted)")
        ),
        "",
        "Results:",
        f"  Success rate: {stats.success_rate * 100:.1f}%",
        f"  Median ending balance: ${np.median(stats.ending_balances):,.0f}",
        (
            "  Ending balance 10th / 90th percentile: "
            f"${bands[0.10][-1]:,.0f} / ${bands[0.90][-1]:,.0f}"
        ),
        (
            "  Median year 5 withdrawal: "
            f"${stats.median_fifth_year_withdrawal:,.0f}"
            if cfg.horizon >= 5
            else ""
        ),
        f"  Median max drawdown: {stats.drawdown.median_drawdown * 100:.1f}%",
        f"  Largest drawdown: {stats.drawdown.max_drawdown * 100:.1f}%",
        (
            "  Lowest balance at a max drawdown: "
            f"${stats.drawdown.worst_balance_at_max_drawdown:,.0f}"
        ),
    ]
    explanation = [line for line in explanation if line != ""]
    return "\n".join(explanation)


def plot_bands(stats: Statistics, output: Optional[str] = None) -> None:
    """Plot the percentile bands of total balance by year."""
    import matplotlib
    if output:
        matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    bands = stats.bands
    years = np.arange(len(bands[0.50]))
    fig, ax = plt.subplots(figsize=(8, 4))
    ax.fill_between(years, bands[0.10], bands[0.90], color="tab:blue", alpha=0.15, label="10th-90th")
    ax.fill_between(years, bands[0.25], bands[0.75], color="tab:blue", alpha=0.3, label="25th-75th")
    ax.plot(years, bands[0.50], color="tab:blue", label="Median")
    ax.set_xlabel("Year")
    ax.set_ylabel("Portfolio balance ($)")
    ax.set_title(f"Success rate {stats.success_rate * 100:.1f}%")
    ax.legend(loc="upper left")
    fig.tight_layout()
    if output:
        fig.savefig(output)
        logger.info("Saved plot to %s", output)
    else:
        plt.show()


def load_store(data_path: str, cape_path: Optional[str] = None) -> ReturnSeriesStore:
    store = load_series_csv(data_path)
    if cape_path:
        cape = load_cape_monthly_csv(cape_path)
        store = ReturnSeriesStore(store.returns, store.inflation, {**store.cape, **cape})
    return store


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate retirement withdrawals over historical returns.")
    parser.add_argument("-c", "--config", default=CONFIG_FILE, help="JSON configuration file")
    parser.add_argument("-d", "--data", required=True, help="CSV of annual returns, inflation and CAPE by year")
    parser.add_argument("--cape", help="CSV of monthly CAPE readings to average per year")
    parser.add_argument("-m", "--mode", choices=[m.value for m in SamplingMode], help="Sampling mode")
    parser.add_argument("-n", "--sims", type=int, help="Number of simulations")
    parser.add_argument("-y", "--start-year", type=int, help="First historical year for actual-seq")
    parser.add_argument("--horizon", type=int, help="Years to simulate")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--rate", type=parse_percent, help="Initial withdrawal rate, e.g. 4%%")
    parser.add_argument("--amount", type=parse_dollars, help="Initial withdrawal amount, e.g. $40,000")
    parser.add_argument("--save", action="store_true", help="Write the effective configuration back")
    parser.add_argument("-p", "--plot", nargs="?", const="", help="Plot percentile bands (optionally to a file)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data = load_config(args.config)
    overrides = {
        "mode": args.mode,
        "number_of_simulations": args.sims,
        "start_year": args.start_year,
        "horizon": args.horizon,
        "seed": args.seed,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        cfg = config_from_dict(data)
        if args.rate is not None:
            cfg.set_withdraw_rate(args.rate * 100)
            cfg.initial_amount_locked = False
        if args.amount is not None:
            cfg.set_initial_withdrawal_amount(args.amount)
            cfg.initial_amount_locked = True
        store = load_store(args.data, args.cape)
        runs = simulate(cfg, store)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    stats = summarize(runs)
    print(build_summary(cfg, stats))
    if args.save:
        save_config(cfg, args.config)
    if args.plot is not None:
        plot_bands(stats, args.plot or None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
