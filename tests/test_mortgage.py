import pytest

from config import MortgageConfig, MortgagePart
from simulation import mortgage_payoff_year, run_simulation
from strategies import DrawdownOrder, MortgageOption, SimulationParams

# £50k over 10 years at 0% from 2020: £5,000 a year, £20,000 left at the start of 2026
MORTGAGE = {
    "parts": [{"principal": 50_000, "interest_rate": 0.0, "term_years": 10, "start_year": 2020}],
    "end_year": 2030,
    "early_payoff_year": 2026,
}


def _year(result, year):
    return next(s for s in result.years if s.year == year)


def test_repayment_monthly_payment():
    assert MortgagePart(principal=100_000, term_years=10).monthly_payment() == pytest.approx(833.333, abs=0.01)
    part = MortgagePart(principal=200_000, interest_rate=0.05, term_years=25)
    assert part.monthly_payment() == pytest.approx(1_169.18, abs=0.01)


def test_interest_only_payment_and_balance():
    part = MortgagePart(principal=100_000, interest_rate=0.06, is_repayment=False, term_years=20, start_year=2020)
    assert part.monthly_payment() == pytest.approx(500)
    assert part.remaining_balance(2035) == 100_000


def test_remaining_balance():
    part = MortgagePart(principal=50_000, term_years=10, start_year=2020)
    assert part.remaining_balance(2020) == 50_000
    assert part.remaining_balance(2025) == pytest.approx(25_000)
    assert part.remaining_balance(2030) == 0
    amortising = MortgagePart(principal=200_000, interest_rate=0.05, term_years=25, start_year=2020)
    assert 0 < amortising.remaining_balance(2030) < 200_000


def test_payoff_year_per_option():
    mortgage = MortgageConfig(end_year=2030, early_payoff_year=2026)
    assert mortgage_payoff_year(MortgageOption.EARLY, mortgage) == 2026
    assert mortgage_payoff_year(MortgageOption.PCLS_PAYOFF, mortgage) == 2026
    assert mortgage_payoff_year(MortgageOption.NORMAL, mortgage) == 2030
    assert mortgage_payoff_year(MortgageOption.EXTENDED, mortgage) == 2040


def test_normal_mortgage_costs_then_stops(make_config):
    result = run_simulation(SimulationParams(), make_config(mortgage=MORTGAGE))
    assert result.mortgage_payoff_year == 2030
    assert _year(result, 2024).mortgage_cost == pytest.approx(5_000)
    assert _year(result, 2024).total_required == pytest.approx(29_000)
    assert _year(result, 2030).mortgage_cost == 0
    assert _year(result, 2031).mortgage_cost == 0


def test_early_payoff_pays_outstanding_balance(make_config):
    result = run_simulation(SimulationParams(mortgage_option=MortgageOption.EARLY), make_config(mortgage=MORTGAGE))
    assert _year(result, 2025).mortgage_cost == pytest.approx(5_000)
    assert _year(result, 2026).mortgage_cost == pytest.approx(20_000)
    assert _year(result, 2027).mortgage_cost == 0
    assert result.descriptive_name() == "ISA First, Then Pension, Mortgage repaid 2026"


def test_pcls_payoff_uses_tax_free_lump_sum(make_config):
    params = SimulationParams(drawdown_order=DrawdownOrder.PENSION_FIRST, mortgage_option=MortgageOption.PCLS_PAYOFF)
    result = run_simulation(params, make_config(mortgage=MORTGAGE))
    payoff = _year(result, 2026)
    assert payoff.pcls_mortgage_payment == pytest.approx(20_000)
    assert payoff.net_mortgage_required == 0
    assert payoff.withdrawals.tax_free_from_pension["Alex"] >= 20_000
    # whole pot crystallised; unused tax-free cash stays in the ISA
    assert payoff.end_balances["Alex"].uncrystallised_pot == 0
    assert payoff.end_balances["Alex"].tax_free_savings > _year(result, 2025).end_balances["Alex"].tax_free_savings
    assert result.descriptive_name() == "Pension First, Then ISA, PCLS lump sum for mortgage 2026"


def test_no_mortgage_means_no_payoff_year(make_config):
    result = run_simulation(SimulationParams(), make_config())
    assert result.mortgage_payoff_year == 0
    assert all(s.mortgage_cost == 0 for s in result.years)
