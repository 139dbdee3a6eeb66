# Bisection on a monthly multiplier (income = ratio x multiplier) so the pots run out at the target age.

import dataclasses
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from config import Config, DEFAULTS
from scenarios import build_growth_rates, clone_cfg, run_parallel, with_growth_rates
from simulation import SimulationResult, run_simulation
from strategies import (
    DrawdownOrder,
    SimulationParams,
    pension_only_strategies_for_config,
    pension_to_isa_strategies_for_config,
    strategies_for_config,
)
from tax_uk import parse_birth_date

DEPLETED_BALANCE = 1_000.0
PENSION_DEPLETED_BALANCE = 100.0
PENALTY_PER_YEAR = 10_000.0
NEVER_SIMULATED_ERROR = 1_000_000.0

# converged window around zero when ranking strategies
CONVERGED_MIN_ERROR = -5_000.0
CONVERGED_MAX_ERROR = 50_000.0


@dataclass
class DepletionResult:
    params: SimulationParams
    sustainable_multiplier: float
    monthly_before_age: float
    monthly_after_age: float
    simulation_result: SimulationResult
    convergence_error: float
    iterations: int = 0
    converged: bool = False

    @property
    def total_tax_paid(self) -> float:
        return self.simulation_result.total_tax_paid

    def is_within_window(self) -> bool:
        return CONVERGED_MIN_ERROR <= self.convergence_error <= CONVERGED_MAX_ERROR


def clone_config_with_multiplier(config: Config, multiplier: float) -> Config:
    """
    Copy of config with fixed income = ratio x multiplier and depletion mode
    switched off, so the simulation treats each trial as an ordinary run.
    """
    cfg = clone_cfg(config)
    income = cfg.income
    income.monthly_before_age = income.income_ratio_phase1 * multiplier
    income.monthly_after_age = income.income_ratio_phase2 * multiplier
    for tier in income.tiers:
        if tier.ratio > 0 and not tier.is_investment_gains:
            tier.monthly_amount = tier.ratio * multiplier
            tier.is_percentage = False
    income.target_depletion_age = 0
    return cfg


def monthly_amounts(config: Config, multiplier: float):
    """(monthly income before, after the age threshold) for a multiplier."""
    income = config.income
    threshold = income.threshold()
    return (income.ratio_for_age(threshold - 1) * multiplier,
            income.ratio_for_age(threshold) * multiplier)


def target_year(config: Config) -> int:
    ref = config.simulation_reference_person()
    return parse_birth_date(ref.birth_date).year + config.income.target_depletion_age


# ---------- error functions ----------
def balance_at_year(result: SimulationResult, target: int) -> float:
    """
    Signed distance from depleting the pots in the target year.
    Negative: depleted early (income too high). Positive: money left or
    depleted late (income too low). Zero: depleted in the target year.
    """
    depletion_year = 0
    # pots emptied in the first year count as depleted in that year
    prev = result.years[0].start_balance if result.years else -1.0
    for state in result.years:
        if prev > DEPLETED_BALANCE and state.total_balance < DEPLETED_BALANCE and depletion_year == 0:
            depletion_year = state.year
        prev = state.total_balance

    if depletion_year == 0:
        if result.years:
            return result.years[-1].total_balance
        return NEVER_SIMULATED_ERROR

    return (depletion_year - target) * PENALTY_PER_YEAR


def _pension_total(state) -> float:
    return sum(b.pension for b in state.end_balances.values())


def pension_balance_at_year(result: SimulationResult, target: int) -> float:
    """
    Pension pots (uncrystallised + crystallised) left at the end of the target
    year, or the early-depletion penalty if they emptied in an earlier year.
    """
    for state in result.years:
        pension = _pension_total(state)
        if state.year < target and pension < PENSION_DEPLETED_BALANCE:
            return -(target - state.year) * PENALTY_PER_YEAR
        if state.year == target:
            return pension

    # horizon ended before the target year
    if not result.years:
        return 0.0
    return _pension_total(result.years[-1])


# ---------- bisection ----------
def _search(params: SimulationParams, config: Config, run_params: SimulationParams,
            error_fn: Callable[[SimulationResult, int], float]) -> DepletionResult:
    settings = DEFAULTS["depletion"]
    low, high = settings["low_multiplier"], settings["high_multiplier"]
    tolerance = settings["tolerance"]
    target = target_year(config)

    best: Optional[DepletionResult] = None
    for i in range(1, settings["max_iterations"] + 1):
        mid = (low + high) / 2
        result = run_simulation(run_params, clone_config_with_multiplier(config, mid))
        error = error_fn(result, target)
        before, after = monthly_amounts(config, mid)
        current = DepletionResult(params=params, sustainable_multiplier=mid, monthly_before_age=before,
                                  monthly_after_age=after, simulation_result=result,
                                  convergence_error=error, iterations=i)
        logger.debug("{} iteration {}: multiplier {:.2f}, error {:,.0f}", params.short_name(), i, mid, error)

        if best is None or abs(error) < abs(best.convergence_error):
            best = current
        if abs(error) < tolerance:
            current.converged = True
            return current

        if error > 0:
            low = mid
        else:
            high = mid

    logger.warning("{}: depletion search did not converge, best error £{:,.0f} at multiplier {:.2f}",
                   params.short_name(), best.convergence_error, best.sustainable_multiplier)
    return best


def calculate_depletion_income(params: SimulationParams, config: Config) -> DepletionResult:
    return _search(params, config, params, balance_at_year)


def calculate_pension_only_depletion_income(params: SimulationParams, config: Config) -> DepletionResult:
    """Deplete the pensions only, drawing with PensionOnly; ISAs are left untouched."""
    run_params = dataclasses.replace(params, drawdown_order=DrawdownOrder.PENSION_ONLY)
    return _search(params, config, run_params, pension_balance_at_year)


# ---------- batches ----------
def _run_batch(config: Config, strategies: list[SimulationParams], fn, workers: Optional[int]) -> list[DepletionResult]:
    jobs = [(p.short_name(), fn, (p, config)) for p in strategies]
    results = run_parallel(jobs, workers)
    return [results[p.short_name()] for p in strategies]


def run_all_depletion_calculations(config: Config, workers: Optional[int] = None) -> list[DepletionResult]:
    return _run_batch(config, strategies_for_config(config), calculate_depletion_income, workers)


def run_pension_only_depletion_calculations(config: Config, workers: Optional[int] = None) -> list[DepletionResult]:
    return _run_batch(config, pension_only_strategies_for_config(config),
                      calculate_pension_only_depletion_income, workers)


def run_pension_to_isa_depletion_calculations(config: Config, workers: Optional[int] = None) -> list[DepletionResult]:
    return _run_batch(config, pension_to_isa_strategies_for_config(config), calculate_depletion_income, workers)


DEPLETION_MODES: dict[str, Callable[..., list[DepletionResult]]] = {
    "all": run_all_depletion_calculations,
    "pension_only": run_pension_only_depletion_calculations,
    "pension_to_isa": run_pension_to_isa_depletion_calculations,
}


def find_best_depletion_strategy(results: list[DepletionResult]) -> int:
    """
    Index of the best result: among converged ones the highest income before the
    threshold (lower tax breaks ties); otherwise the smallest |error|. -1 if empty.
    """
    if not results:
        return -1

    converged = [i for i, r in enumerate(results) if r.is_within_window()]
    if converged:
        return max(converged, key=lambda i: (results[i].monthly_before_age, -results[i].total_tax_paid))
    return min(range(len(results)), key=lambda i: abs(results[i].convergence_error))


# ---------- sensitivity ----------
@dataclass
class DepletionSensitivityCell:
    pension_growth: float
    savings_growth: float
    results: list[DepletionResult] = field(default_factory=list)
    best_index: int = -1
    best_income: float = 0.0
    best_strategy_name: str = ""
    final_isa_balance: float = 0.0


@dataclass
class DepletionSensitivityAnalysis:
    mode: str
    pension_rates: list[float]
    savings_rates: list[float]
    cells: list[DepletionSensitivityCell] = field(default_factory=list)


def evaluate_depletion_cell(config: Config, pension_rate: float, savings_rate: float,
                            mode: str) -> DepletionSensitivityCell:
    cfg = with_growth_rates(config, pension_rate, savings_rate)
    results = DEPLETION_MODES[mode](cfg, workers=1)
    cell = DepletionSensitivityCell(pension_growth=pension_rate, savings_growth=savings_rate, results=results)

    idx = find_best_depletion_strategy(results)
    cell.best_index = idx
    if idx < 0:
        return cell
    best = results[idx]
    cell.best_income = best.monthly_before_age
    cell.best_strategy_name = best.params.short_name()
    if best.simulation_result.years:
        last = best.simulation_result.years[-1]
        cell.final_isa_balance = sum(b.tax_free_savings for b in last.end_balances.values())
    return cell


def run_depletion_sensitivity(config: Config, workers: Optional[int] = None,
                              mode: str = "all") -> DepletionSensitivityAnalysis:
    """Depletion income for every (pension rate, savings rate) on the sensitivity grid."""
    if mode not in DEPLETION_MODES:
        raise ValueError(f"unknown depletion mode {mode!r}; expected one of {sorted(DEPLETION_MODES)}")

    (pmin, pmax), (smin, smax), step = config.sensitivity.ranges()
    pension_rates = build_growth_rates(pmin, pmax, step)
    savings_rates = build_growth_rates(smin, smax, step)
    logger.info("Depletion sensitivity ({}): {} x {} growth rates", mode, len(pension_rates), len(savings_rates))

    jobs = [((pr, sr), evaluate_depletion_cell, (config, pr, sr, mode))
            for pr in pension_rates for sr in savings_rates]
    cells = run_parallel(jobs, workers)
    return DepletionSensitivityAnalysis(
        mode=mode,
        pension_rates=pension_rates,
        savings_rates=savings_rates,
        cells=[cells[(pr, sr)] for pr in pension_rates for sr in savings_rates],
    )


def run_pension_to_isa_sensitivity(config: Config, workers: Optional[int] = None) -> DepletionSensitivityAnalysis:
    return run_depletion_sensitivity(config, workers, mode="pension_to_isa")
