# exporters.py
import enum
import json
from dataclasses import asdict, is_dataclass
from datetime import date

import numpy as np
import pandas as pd

from config import Config, config_to_dict
from depletion import DepletionResult, DepletionSensitivityAnalysis
from scenarios import SensitivityAnalysis
from simulation import SimulationResult


def years_frame(result: SimulationResult) -> pd.DataFrame:
    """One row per simulated tax year; per-person values become `<column>_<name>` columns."""
    rows = []
    for s in result.years:
        row = {
            "year": s.year,
            "start_balance": s.start_balance,
            "required_income": s.required_income,
            "mortgage_cost": s.mortgage_cost,
            "total_required": s.total_required,
            "state_pension": s.total_state_pension,
            "db_pension": s.total_db_pension,
            "part_time_income": s.part_time_income,
            "work_income": s.work_income,
            "net_required": s.net_required,
            "isa_withdrawn": sum(s.withdrawals.tax_free_from_isa.values()),
            "pension_tax_free": sum(s.withdrawals.tax_free_from_pension.values()),
            "pension_taxable": s.withdrawals.total_taxable,
            "isa_deposits": s.withdrawals.total_isa_deposits,
            "tax_paid": s.total_tax_paid,
            "net_income": s.net_income_received,
            "end_balance": s.total_balance,
            "personal_allowance": s.personal_allowance,
            "basic_rate_limit": s.basic_rate_limit,
            "pension_growth": s.pension_growth_rate_used,
            "savings_growth": s.savings_growth_rate_used,
            "guardrails_triggered": s.guardrails_triggered,
            "vpw_rate": s.vpw_rate,
        }
        for name, age in s.ages.items():
            row[f"age_{name}"] = age
        for name, tax in s.tax_by_person.items():
            row[f"tax_{name}"] = tax
        for name, b in s.end_balances.items():
            row[f"isa_{name}"] = b.tax_free_savings
            row[f"uncrystallised_{name}"] = b.uncrystallised_pot
            row[f"crystallised_{name}"] = b.crystallised_pot
        rows.append(row)
    return pd.DataFrame(rows)


def export_years_csv(result: SimulationResult) -> tuple[str, bytes]:
    name = result.params.short_name().replace("/", "_").replace(":", "_")
    return f"years_{name}.csv", years_frame(result).to_csv(index=False).encode()


def strategies_frame(results: dict) -> pd.DataFrame:
    """Summary row per strategy from run_all_strategies."""
    return pd.DataFrame([
        {
            "strategy": short,
            "description": r.descriptive_name(),
            "final_balance": r.final_total_balance,
            "total_tax": r.total_tax_paid,
            "total_withdrawn": r.total_withdrawn,
            "ran_out": r.ran_out_of_money,
            "ran_out_year": r.ran_out_year or None,
        }
        for short, r in results.items()
    ])


def sensitivity_frame(analysis: SensitivityAnalysis, value: str = "best_strategy") -> pd.DataFrame:
    """Pension growth down the rows, savings growth across; `value` is any SensitivityCell field."""
    records = [
        {"pension_growth": c.pension_growth, "savings_growth": c.savings_growth, value: getattr(c, value)}
        for row in analysis.cells for c in row
    ]
    return pd.DataFrame(records).pivot(index="pension_growth", columns="savings_growth", values=value)


def depletion_frame(results: list[DepletionResult]) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "strategy": r.params.short_name(),
            "description": r.simulation_result.descriptive_name(),
            "multiplier": r.sustainable_multiplier,
            "monthly_before_age": r.monthly_before_age,
            "monthly_after_age": r.monthly_after_age,
            "total_tax": r.total_tax_paid,
            "convergence_error": r.convergence_error,
            "converged": r.converged,
        }
        for r in results
    ])


def depletion_sensitivity_frame(analysis: DepletionSensitivityAnalysis) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "pension_growth": c.pension_growth,
            "savings_growth": c.savings_growth,
            "best_strategy": c.best_strategy_name,
            "monthly_income": c.best_income,
            "final_isa": c.final_isa_balance,
        }
        for c in analysis.cells
    ])


def _json_default(o):
    # numpy arrays & scalars, enums, dates and nested dataclasses
    if isinstance(o, np.ndarray):
        return o.tolist()
    if isinstance(o, np.generic):
        return o.item()
    if isinstance(o, enum.Enum):
        return o.value
    if isinstance(o, date):
        return o.isoformat()
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    # Let json raise for anything else unexpected
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


def export_config(cfg: Config) -> tuple[str, bytes]:
    """Current configuration as JSON; config_from_dict(json.loads(...)) rebuilds it."""
    blob = json.dumps(config_to_dict(cfg), indent=2, default=_json_default)
    return "config.json", blob.encode()
