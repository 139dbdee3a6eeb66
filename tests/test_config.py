import pytest

from config import (
    INVESTMENT_GAINS,
    Config,
    IncomeConfig,
    IncomeTier,
    SensitivityConfig,
    StrategyConfig,
    config_from_dict,
    config_to_dict,
)
from tax_uk import TaxConfig


def test_config_from_dict_defaults(make_config):
    cfg = make_config()
    assert cfg.people[0].name == "Alex"
    assert cfg.tax_bands[0].upper == 12_570
    assert cfg.tax == TaxConfig()
    assert not cfg.has_mortgage()


def test_config_from_dict_rejects_unknown_fields():
    with pytest.raises(TypeError):
        config_from_dict({"people": [{"name": "A", "birth_date": "1964-06-01", "retirement_age": 60,
                                      "shoe_size": 9}]})


def test_config_from_dict_requires_people():
    with pytest.raises(KeyError):
        config_from_dict({})


def test_config_to_dict_is_plain(make_config):
    d = config_to_dict(make_config())
    assert d["people"][0]["pension"] == 300_000
    assert config_from_dict(d) == make_config()


def test_reference_people_fall_back_to_first(make_config, couple_people):
    cfg = make_config(people=couple_people, simulation={"reference_person": "Sam"})
    assert cfg.simulation_reference_person().name == "Sam"
    assert cfg.reference_person().name == "Alex"
    assert cfg.growth_decline_reference_person().name == "Sam"


def test_legacy_income_uses_default_threshold():
    income = IncomeConfig(monthly_before_age=3_000, monthly_after_age=2_000)
    assert income.monthly_income_for_age(66, 0) == 3_000
    assert income.monthly_income_for_age(67, 0) == 2_000


def test_depletion_mode_legacy_ratios():
    income = IncomeConfig(target_depletion_age=90, income_ratio_phase1=5, income_ratio_phase2=3, age_threshold=70)
    assert income.is_depletion_mode()
    assert income.monthly_income_for_age(60, 0, multiplier=1_000) == 5_000
    assert income.monthly_income_for_age(75, 0, multiplier=1_000) == 3_000


def test_tiers_fixed_percentage_and_gains():
    income = IncomeConfig(tiers=[
        IncomeTier(end_age=65, monthly_amount=3_000),
        IncomeTier(start_age=65, end_age=75, monthly_amount=4.0, is_percentage=True),
        IncomeTier(start_age=75, is_investment_gains=True),
    ])
    assert income.monthly_income_for_age(60, 600_000) == 3_000
    assert income.monthly_income_for_age(70, 600_000) == pytest.approx(2_000)
    assert income.monthly_income_for_age(80, 600_000) == INVESTMENT_GAINS
    assert income.annual_income_for_age(80, 600_000) == INVESTMENT_GAINS
    assert income.annual_income_for_age(60, 600_000) == 36_000


def test_tier_gap_falls_back_to_last_tier():
    income = IncomeConfig(tiers=[IncomeTier(start_age=60, end_age=65, monthly_amount=1_000),
                                 IncomeTier(start_age=70, monthly_amount=500)])
    assert income.monthly_income_for_age(67, 0) == 500


def test_convert_legacy_to_tiers():
    income = IncomeConfig(monthly_before_age=3_000, monthly_after_age=2_000, age_threshold=68)
    income.convert_legacy_to_tiers()
    assert [(t.start_age, t.end_age, t.monthly_amount) for t in income.tiers] == [
        (None, 68, 3_000), (68, None, 2_000)]


def test_sensitivity_ranges_default_when_unset():
    assert SensitivityConfig().ranges() == ((0.04, 0.12), (0.04, 0.12), 0.01)
    custom = SensitivityConfig(pension_growth_min=0.02, pension_growth_max=0.06, step_size=0.02)
    assert custom.ranges() == ((0.02, 0.06), (0.04, 0.12), 0.02)


def test_maximize_couple_isa_defaults_true():
    assert StrategyConfig().should_maximize_couple_isa()
    assert not StrategyConfig(maximize_couple_isa=False).should_maximize_couple_isa()


def test_mortgage_totals(make_config):
    cfg = make_config(mortgage={"parts": [
        {"principal": 60_000, "term_years": 10, "start_year": 2020},
        {"name": "Interest only", "principal": 40_000, "interest_rate": 0.05, "is_repayment": False},
    ]})
    assert isinstance(cfg, Config)
    assert cfg.has_mortgage()
    assert cfg.total_annual_payment() == pytest.approx(6_000 + 2_000)
    assert cfg.total_payoff_amount(2025) == pytest.approx(30_000 + 40_000)
