from dataclasses import dataclass
from typing import Optional

import numpy as np

from config import DEFAULTS, IncomeConfig

# VPW withdrawal % by age, 55..100 (RMD-style schedule adapted for UK)
VPW_FIRST_AGE = 55
VPW_RATES = np.array([
    0.030, 0.031, 0.032, 0.033, 0.034, 0.035, 0.036, 0.037, 0.039, 0.040,  # 55-64
    0.042, 0.043, 0.045, 0.047, 0.048, 0.050, 0.052, 0.054, 0.056, 0.058,  # 65-74
    0.061, 0.064, 0.067, 0.070, 0.073, 0.077, 0.081, 0.085, 0.089, 0.094,  # 75-84
    0.100, 0.106, 0.113, 0.120, 0.128, 0.137, 0.147, 0.159, 0.172, 0.187,  # 85-94
    0.204, 0.224, 0.247, 0.274, 0.307, 0.350,                              # 95-100
])
VPW_LAST_AGE = VPW_FIRST_AGE + len(VPW_RATES) - 1


@dataclass
class GuardrailsState:
    """
    Guyton-Klinger guardrails: once the current withdrawal rate drifts outside
    [lower_limit, upper_limit] x the initial rate, cut or raise the withdrawal
    by adjustment_rate.
    """
    upper_limit: float = DEFAULTS["guardrails"]["upper_limit"]
    lower_limit: float = DEFAULTS["guardrails"]["lower_limit"]
    adjustment_rate: float = DEFAULTS["guardrails"]["adjustment"]
    initial_withdrawal_rate: float = 0.0
    initial_portfolio_value: float = 0.0
    current_withdrawal: float = 0.0
    initialized: bool = False

    @classmethod
    def from_config(cls, income: IncomeConfig) -> "GuardrailsState":
        d = DEFAULTS["guardrails"]
        return cls(
            upper_limit=income.guardrails_upper_limit if income.guardrails_upper_limit > 0 else d["upper_limit"],
            lower_limit=income.guardrails_lower_limit if income.guardrails_lower_limit > 0 else d["lower_limit"],
            adjustment_rate=income.guardrails_adjustment if income.guardrails_adjustment > 0 else d["adjustment"],
        )

    def initialize(self, portfolio: float, withdrawal: float):
        self.initialized = True
        self.initial_portfolio_value = portfolio
        self.current_withdrawal = withdrawal
        if portfolio > 0:
            self.initial_withdrawal_rate = withdrawal / portfolio

    def _rate_ratio(self, withdrawal: float, portfolio: float) -> float:
        return (withdrawal / portfolio) / self.initial_withdrawal_rate

    def adjusted_withdrawal(self, portfolio: float, base_withdrawal: float) -> float:
        if self.initial_withdrawal_rate <= 0 or portfolio <= 0:
            return base_withdrawal

        withdrawal = self.current_withdrawal if self.current_withdrawal > 0 else base_withdrawal
        ratio = self._rate_ratio(withdrawal, portfolio)
        if ratio > self.upper_limit:
            withdrawal *= (1 - self.adjustment_rate)
        elif ratio < self.lower_limit:
            withdrawal *= (1 + self.adjustment_rate)

        self.current_withdrawal = withdrawal
        return withdrawal

    def is_triggered(self, portfolio: float) -> int:
        """-1 = will cut, 1 = will raise, 0 = inside the guardrails."""
        if self.initial_withdrawal_rate <= 0 or portfolio <= 0:
            return 0
        ratio = self._rate_ratio(self.current_withdrawal, portfolio)
        if ratio > self.upper_limit:
            return -1
        if ratio < self.lower_limit:
            return 1
        return 0

    def current_rate(self, portfolio: float) -> float:
        if portfolio <= 0:
            return 0.0
        return self.current_withdrawal / portfolio


def vpw_rate(age: int) -> float:
    idx = int(np.clip(age, VPW_FIRST_AGE, VPW_LAST_AGE)) - VPW_FIRST_AGE
    return float(VPW_RATES[idx])


@dataclass
class VPWState:
    initial_floor: float = 0.0
    floor_amount: float = 0.0
    ceiling_multiplier: float = 0.0

    @classmethod
    def from_config(cls, income: IncomeConfig) -> Optional["VPWState"]:
        if not income.vpw_enabled:
            return None
        return cls(initial_floor=income.vpw_floor, floor_amount=income.vpw_floor,
                   ceiling_multiplier=income.vpw_ceiling)

    def withdrawal(self, portfolio: float, age: int, inflation_multiplier: float) -> float:
        """Suggested annual withdrawal: rate(age) x portfolio, clamped to the inflated floor/ceiling."""
        amount = portfolio * vpw_rate(age)
        if self.initial_floor > 0:
            floor = self.initial_floor * inflation_multiplier
            self.floor_amount = floor
            amount = max(amount, floor)
            if self.ceiling_multiplier > 0:
                amount = min(amount, floor * self.ceiling_multiplier)
        return amount

    def current_rate(self, age: int) -> float:
        return vpw_rate(age)


def life_expectancy_years(age: int) -> float:
    # blended UK male/female remaining years
    for limit, years in ((55, 30.0), (60, 25.0), (65, 21.0), (70, 17.0), (75, 13.5),
                         (80, 10.0), (85, 7.5), (90, 5.5), (95, 4.0)):
        if age <= limit:
            return years
    return 3.0
