from datetime import date

import pytest

from config import IncomeConfig, IncomeTier
from people import Person
from simulation import required_income, run_simulation
from strategies import DrawdownOrder, SimulationParams


def _year(result, year):
    return next(s for s in result.years if s.year == year)


def test_horizon_runs_to_end_age(make_config):
    result = run_simulation(SimulationParams(), make_config())
    assert [s.year for s in result.years] == list(range(2024, 2035))
    assert result.years[0].ages == {"Alex": 60}


def test_isa_first_year_one(make_config):
    result = run_simulation(SimulationParams(), make_config())
    first = result.years[0]
    assert first.required_income == pytest.approx(24_000)
    assert first.withdrawals.tax_free_from_isa["Alex"] == pytest.approx(24_000)
    assert first.total_tax_paid == 0
    assert first.end_balances["Alex"].tax_free_savings == pytest.approx(76_000)
    assert first.total_balance == pytest.approx(376_000)


def test_income_steps_down_after_threshold_and_state_pension_starts(make_config):
    result = run_simulation(SimulationParams(), make_config())
    assert _year(result, 2030).total_state_pension == 0
    at_67 = _year(result, 2031)
    assert at_67.required_income == pytest.approx(18_000)
    assert at_67.total_state_pension == pytest.approx(11_502)
    assert at_67.net_required == pytest.approx(18_000 - 11_502)


def test_income_inflates_from_retirement(make_config):
    cfg = make_config(financial={"income_inflation_rate": 0.02})
    result = run_simulation(SimulationParams(), cfg)
    assert _year(result, 2026).required_income == pytest.approx(24_000 * 1.02 ** 2)


def test_no_income_needed_before_retirement(make_config):
    cfg = make_config(simulation={"start_year": 2022})
    result = run_simulation(SimulationParams(), cfg)
    assert _year(result, 2022).required_income == 0
    assert _year(result, 2022).withdrawals.total_withdrawn == 0


def test_growth_applied_from_second_year(make_config):
    cfg = make_config(financial={"savings_growth_rate": 0.10, "pension_growth_rate": 0.10},
                      income={"monthly_before_age": 0, "monthly_after_age": 0})
    result = run_simulation(SimulationParams(), cfg)
    assert result.years[0].start_balance == pytest.approx(400_000)
    assert result.years[1].start_balance == pytest.approx(440_000)
    assert result.years[1].pension_growth_rate_used == 0.10


def test_running_out_is_recorded_and_run_continues(make_config):
    cfg = make_config(people=[{"name": "Alex", "birth_date": "1964-06-01", "retirement_age": 60,
                               "tax_free_savings": 30_000}])
    result = run_simulation(SimulationParams(), cfg)
    assert result.ran_out_of_money
    assert result.ran_out_year == 2025
    assert len(result.years) == 11


def test_enough_money_never_runs_out(make_config):
    result = run_simulation(SimulationParams(drawdown_order=DrawdownOrder.TAX_OPTIMIZED), make_config())
    assert not result.ran_out_of_money
    assert result.ran_out_year == 0
    assert result.final_total_balance > 0


@pytest.mark.parametrize("order", list(DrawdownOrder))
def test_every_order_meets_spending_each_year(make_config, order):
    result = run_simulation(SimulationParams(drawdown_order=order), make_config())
    assert not result.ran_out_of_money
    for s in result.years:
        assert s.net_income_received >= s.total_required - 2 - sum(s.withdrawals.isa_deposits.values()) \
            - sum(s.work_isa_deposits.values())


def test_tax_is_sum_of_person_tax(make_config):
    result = run_simulation(SimulationParams(drawdown_order=DrawdownOrder.PENSION_FIRST), make_config())
    assert result.total_tax_paid == pytest.approx(sum(s.total_tax_paid for s in result.years))
    assert result.total_tax_paid > 0


def test_couple_emergency_fund_protects_isa(make_config, couple_people):
    cfg = make_config(people=couple_people, financial={"emergency_fund_months": 6})
    result = run_simulation(SimulationParams(), cfg)
    # 6 months of spending split across two people: 6,000 each, 4,500 from 67
    for s in result.years:
        floor = 6_000 if s.year < 2031 else 4_500
        for balances in s.end_balances.values():
            assert balances.tax_free_savings >= floor - 1e-6


def test_work_surplus_goes_to_isa(make_config):
    cfg = make_config(
        people=[{"name": "Alex", "birth_date": "1964-06-01", "retirement_age": 62, "tax_free_savings": 10_000,
                 "pension": 100_000, "work_income": 60_000}],
    )
    result = run_simulation(SimulationParams(), cfg)
    first = result.years[0]
    assert first.work_income == 60_000
    assert first.required_income == 0
    assert first.work_isa_deposits["Alex"] == pytest.approx(20_000)
    assert first.end_balances["Alex"].tax_free_savings == pytest.approx(30_000)


def test_state_pension_deferral_override(make_config):
    result = run_simulation(SimulationParams(state_pension_defer_years=2), make_config())
    assert _year(result, 2031).total_state_pension == 0
    assert _year(result, 2033).total_state_pension == pytest.approx(11_502 * 1.058 ** 2)


def test_db_pension_lump_sum_credited_once(make_config):
    cfg = make_config(people=[{"name": "Alex", "birth_date": "1964-06-01", "retirement_age": 60,
                               "tax_free_savings": 100_000, "pension": 300_000,
                               "db_pension_amount": 12_000, "db_pension_start_age": 62,
                               "db_pension_commutation": 0.25}])
    result = run_simulation(SimulationParams(), cfg)
    assert _year(result, 2025).total_db_pension == 0
    assert _year(result, 2026).total_db_pension == pytest.approx(9_000)
    assert _year(result, 2026).end_balances["Alex"].tax_free_savings > \
        _year(result, 2025).end_balances["Alex"].tax_free_savings


def test_guardrails_enabled_by_params(make_config):
    cfg = make_config(financial={"pension_growth_rate": -0.15, "savings_growth_rate": -0.15})
    result = run_simulation(SimulationParams(guardrails=True), cfg)
    assert any(s.guardrails_triggered == -1 for s in result.years)
    assert _year(result, 2026).required_income < 24_000


def test_vpw_sets_required_income(make_config):
    cfg = make_config(income={"vpw_enabled": True})
    result = run_simulation(SimulationParams(), cfg)
    first = result.years[0]
    assert first.vpw_rate == pytest.approx(0.035)
    assert first.required_income == pytest.approx(400_000 * 0.035)


def test_tax_bands_inflate_each_year(make_config):
    cfg = make_config(financial={"tax_band_inflation": 0.02})
    result = run_simulation(SimulationParams(), cfg)
    assert result.years[0].personal_allowance == pytest.approx(12_570)
    assert result.years[1].personal_allowance == pytest.approx(12_570 * 1.02)


def _people(**kw):
    return [Person(name="Alex", birth_date=date(1964, 6, 1), retirement_age=60, **kw)]


def test_required_income_percentage_tier():
    income = IncomeConfig(tiers=[IncomeTier(monthly_amount=4.0, is_percentage=True)])
    assert required_income(income, 60, 600_000, 1.0, _people(), 0.05, 0.05, 0.02) == pytest.approx(24_000)


def test_required_income_investment_gains():
    income = IncomeConfig(tiers=[IncomeTier(is_investment_gains=True)])
    people = _people(uncrystallised_pot=100_000, tax_free_savings=50_000)
    assert required_income(income, 60, 150_000, 1.0, people, 0.05, 0.04, 0.02) == pytest.approx(4_000)
    assert required_income(income, 60, 150_000, 1.0, people, 0.0, 0.0, 0.02) == 0
