import pytest

from config import IncomeConfig
from drawdown import GuardrailsState, VPWState, life_expectancy_years, vpw_rate


def test_vpw_rate_is_clamped_to_table():
    assert vpw_rate(40) == 0.030
    assert vpw_rate(55) == 0.030
    assert vpw_rate(65) == 0.042
    assert vpw_rate(100) == 0.350
    assert vpw_rate(120) == 0.350


def test_vpw_disabled_returns_none():
    assert VPWState.from_config(IncomeConfig()) is None


def test_vpw_floor_applies_with_inflation():
    vpw = VPWState.from_config(IncomeConfig(vpw_enabled=True, vpw_floor=20_000, vpw_ceiling=1.5))
    assert vpw.withdrawal(100_000, 65, 1.1) == pytest.approx(22_000)
    assert vpw.floor_amount == pytest.approx(22_000)


def test_vpw_ceiling_caps_withdrawal():
    vpw = VPWState(initial_floor=20_000, floor_amount=20_000, ceiling_multiplier=1.5)
    assert vpw.withdrawal(1_000_000, 85, 1.0) == pytest.approx(30_000)


def test_vpw_without_floor_is_rate_times_portfolio():
    vpw = VPWState()
    assert vpw.withdrawal(500_000, 70, 1.0) == pytest.approx(25_000)


def test_guardrails_defaults_from_empty_config():
    g = GuardrailsState.from_config(IncomeConfig(guardrails_enabled=True))
    assert (g.upper_limit, g.lower_limit, g.adjustment_rate) == (1.20, 0.80, 0.10)
    assert not g.initialized


def test_guardrails_cut_when_portfolio_falls():
    g = GuardrailsState()
    g.initialize(1_000_000, 40_000)
    assert g.initial_withdrawal_rate == pytest.approx(0.04)
    assert g.is_triggered(700_000) == -1
    assert g.adjusted_withdrawal(700_000, 40_000) == pytest.approx(36_000)


def test_guardrails_raise_when_portfolio_grows():
    g = GuardrailsState()
    g.initialize(1_000_000, 40_000)
    assert g.is_triggered(2_000_000) == 1
    assert g.adjusted_withdrawal(2_000_000, 40_000) == pytest.approx(44_000)


def test_guardrails_hold_inside_band():
    g = GuardrailsState()
    g.initialize(1_000_000, 40_000)
    assert g.is_triggered(1_000_000) == 0
    assert g.adjusted_withdrawal(1_000_000, 40_000) == pytest.approx(40_000)
    assert g.current_rate(1_000_000) == pytest.approx(0.04)


def test_guardrails_uninitialised_pass_through():
    g = GuardrailsState()
    assert g.adjusted_withdrawal(500_000, 30_000) == 30_000
    assert g.is_triggered(500_000) == 0


def test_life_expectancy_table():
    assert life_expectancy_years(50) == 30.0
    assert life_expectancy_years(65) == 21.0
    assert life_expectancy_years(100) == 3.0
