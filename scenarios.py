import copy
import dataclasses
import multiprocessing
from dataclasses import dataclass, field
from typing import Callable, Hashable, Optional, Sequence

import numpy as np
from loguru import logger

from config import Config, DEFAULTS
from simulation import SimulationResult, run_simulation
from strategies import SimulationParams, strategies_for_config

GROWTH_RATE_EPSILON = 1e-4
ACCEPTABLE_FINAL_BALANCE = 1_000.0

Job = tuple[Hashable, Callable, tuple]


def clone_cfg(cfg: Config, **overrides) -> Config:
    """Deep copy with top-level field overrides; unknown fields raise TypeError."""
    return dataclasses.replace(copy.deepcopy(cfg), **copy.deepcopy(overrides))


def with_growth_rates(cfg: Config, pension_rate: float, savings_rate: float) -> Config:
    new = clone_cfg(cfg)
    new.financial.pension_growth_rate = pension_rate
    new.financial.savings_growth_rate = savings_rate
    return new


# ---------- worker pool ----------
def _run_job(key, fn, args):
    return key, fn(*args)


def run_parallel(jobs: Sequence[Job], workers: Optional[int] = None) -> dict[Hashable, object]:
    """
    Run (key, fn, args) jobs and return {key: fn(*args)}.
    workers <= 1 runs in-process; otherwise a Pool of at most `workers` processes.
    fn must be a module-level function so it pickles.
    """
    workers = DEFAULTS["workers"] if workers is None else workers
    jobs = [(key, fn, copy.deepcopy(args)) for key, fn, args in jobs]
    if workers <= 1 or len(jobs) <= 1:
        logger.debug("Running {} jobs sequentially", len(jobs))
        return dict(_run_job(*job) for job in jobs)

    processes = min(workers, len(jobs))
    logger.debug("Running {} jobs on {} processes", len(jobs), processes)
    with multiprocessing.Pool(processes=processes) as pool:
        return dict(pool.starmap(_run_job, jobs))


# ---------- all strategies ----------
def run_all_strategies(config: Config, workers: Optional[int] = None,
                       strategies: Optional[list[SimulationParams]] = None) -> dict[str, SimulationResult]:
    strategies = strategies_for_config(config) if strategies is None else strategies
    jobs = [(p.short_name(), run_simulation, (p, config)) for p in strategies]
    results = run_parallel(jobs, workers)
    # keep strategy order, not completion order
    return {p.short_name(): results[p.short_name()] for p in strategies}


def is_acceptable(result: SimulationResult) -> bool:
    return not result.ran_out_of_money or result.final_total_balance > ACCEPTABLE_FINAL_BALANCE


def best_strategy(results: dict[str, SimulationResult]) -> Optional[str]:
    """
    Highest final balance among runs that never ran out (or still hold more than
    £1,000). If every run failed, the one that lasted longest.
    """
    if not results:
        return None
    acceptable = [name for name, r in results.items() if is_acceptable(r)]
    if acceptable:
        return max(acceptable, key=lambda name: results[name].final_total_balance)
    return max(results, key=lambda name: results[name].ran_out_year)


# ---------- sensitivity grid ----------
def build_growth_rates(lo: float, hi: float, step: float) -> list[float]:
    if step <= 0 or hi < lo:
        return [lo]
    return [round(float(r), 6) for r in np.arange(lo, hi + GROWTH_RATE_EPSILON, step)]


@dataclass
class SensitivityCell:
    pension_growth: float
    savings_growth: float
    best_strategy: str = ""
    best_index: int = -1
    final_balance: float = 0.0
    total_tax: float = 0.0
    ran_out: bool = False
    ran_out_year: int = 0
    has_shortfall: bool = False
    # final balance per strategy short name
    balances: dict[str, float] = field(default_factory=dict)


@dataclass
class SensitivityAnalysis:
    pension_rates: list[float]
    savings_rates: list[float]
    strategy_names: list[str]
    cells: list[list[SensitivityCell]] = field(default_factory=list)

    def cell(self, pension_rate: float, savings_rate: float) -> Optional[SensitivityCell]:
        for row in self.cells:
            for c in row:
                if abs(c.pension_growth - pension_rate) < GROWTH_RATE_EPSILON \
                        and abs(c.savings_growth - savings_rate) < GROWTH_RATE_EPSILON:
                    return c
        return None

    def win_counts(self) -> dict[str, int]:
        counts = {name: 0 for name in self.strategy_names}
        for row in self.cells:
            for c in row:
                if c.best_strategy:
                    counts[c.best_strategy] = counts.get(c.best_strategy, 0) + 1
        return counts


def evaluate_cell(config: Config, pension_rate: float, savings_rate: float,
                  strategies: list[SimulationParams]) -> SensitivityCell:
    cfg = with_growth_rates(config, pension_rate, savings_rate)
    results = run_all_strategies(cfg, workers=1, strategies=strategies)
    cell = SensitivityCell(pension_growth=pension_rate, savings_growth=savings_rate,
                           balances={name: r.final_total_balance for name, r in results.items()})

    best = best_strategy(results)
    if best is None:
        return cell
    chosen = results[best]
    cell.best_strategy = best
    cell.best_index = list(results).index(best)
    cell.final_balance = chosen.final_total_balance
    cell.total_tax = chosen.total_tax_paid
    cell.ran_out = chosen.ran_out_of_money
    cell.ran_out_year = chosen.ran_out_year
    cell.has_shortfall = chosen.ran_out_of_money and chosen.final_total_balance > ACCEPTABLE_FINAL_BALANCE
    return cell


def run_sensitivity_analysis(config: Config, workers: Optional[int] = None) -> SensitivityAnalysis:
    """One job per (pension rate, savings rate); each job runs every strategy."""
    (pmin, pmax), (smin, smax), step = config.sensitivity.ranges()
    pension_rates = build_growth_rates(pmin, pmax, step)
    savings_rates = build_growth_rates(smin, smax, step)
    strategies = strategies_for_config(config)

    logger.info("Sensitivity grid: {} x {} growth rates, {} strategies",
                len(pension_rates), len(savings_rates), len(strategies))

    jobs = [((pr, sr), evaluate_cell, (config, pr, sr, strategies))
            for pr in pension_rates for sr in savings_rates]
    cells = run_parallel(jobs, workers)

    analysis = SensitivityAnalysis(pension_rates=pension_rates, savings_rates=savings_rates,
                                   strategy_names=[p.short_name() for p in strategies])
    analysis.cells = [[cells[(pr, sr)] for sr in savings_rates] for pr in pension_rates]
    return analysis
