import copy

import pytest

from config import config_from_dict

# Born after 6 April, so the age reached in tax year Y is simply Y - 1964.
BIRTH = "1964-06-01"

BASE = {
    "people": [
        {
            "name": "Alex",
            "birth_date": BIRTH,
            "retirement_age": 60,
            "state_pension_age": 67,
            "tax_free_savings": 100_000,
            "pension": 300_000,
        }
    ],
    "financial": {
        "pension_growth_rate": 0.0,
        "savings_growth_rate": 0.0,
        "income_inflation_rate": 0.0,
        "state_pension_amount": 11_502,
        "state_pension_inflation": 0.0,
    },
    "income": {
        "monthly_before_age": 2_000,
        "monthly_after_age": 1_500,
        "age_threshold": 67,
    },
    "simulation": {"start_year": 2024, "end_age": 70},
}


def _merge(base: dict, overrides: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


@pytest.fixture
def make_config():
    """Factory: make_config(financial={...}) merges nested overrides into BASE."""
    def _make(**overrides):
        return config_from_dict(_merge(BASE, overrides))
    return _make


@pytest.fixture
def couple_people():
    return [
        dict(BASE["people"][0], name="Alex"),
        dict(BASE["people"][0], name="Sam", tax_free_savings=50_000, pension=100_000),
    ]
