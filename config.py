from dataclasses import dataclass, field, asdict
from typing import Optional

from tax_uk import TaxBand, TaxConfig, uk_tax_bands_2024

# Defaults used when a field is left at zero / unset (2024/25 UK)
DEFAULTS = {
    "isa_annual_limit": 20_000,
    "state_pension_deferral_rate": 0.058,   # 5.8% per year deferred
    "db_commute_factor": 12.0,              # £12 lump sum per £1 of pension given up
    "age_threshold": 67,

    "guardrails": {
        "upper_limit": 1.20,
        "lower_limit": 0.80,
        "adjustment": 0.10,
    },

    # Growth-rate grid for sensitivity analysis
    "sensitivity": {
        "pension_growth_min": 0.04,
        "pension_growth_max": 0.12,
        "savings_growth_min": 0.04,
        "savings_growth_max": 0.12,
        "step_size": 0.01,
    },

    # Depletion search
    "depletion": {
        "low_multiplier": 100.0,      # ~£500/month
        "high_multiplier": 50_000.0,  # ~£250k/month
        "tolerance": 1_000.0,
        "max_iterations": 100,
    },

    "maximize_couple_isa": True,
    "workers": 1,
}


@dataclass
class PersonConfig:
    name: str
    birth_date: str                   # YYYY-MM-DD
    retirement_age: int
    state_pension_age: int = 67
    pension_access_age: int = 0       # 0 = retirement age only
    tax_free_savings: float = 0.0     # ISA
    pension: float = 0.0              # uncrystallised
    isa_annual_limit: float = 0.0

    # Defined benefit
    db_pension_amount: float = 0.0
    db_pension_start_age: int = 0
    db_pension_name: str = ""
    db_pension_normal_age: int = 0
    db_pension_early_factor: float = 0.0
    db_pension_late_factor: float = 0.0
    db_pension_commutation: float = 0.0
    db_pension_commute_factor: float = 0.0

    state_pension_defer_years: int = 0

    # Phased retirement
    part_time_income: float = 0.0
    part_time_start_age: int = 0
    part_time_end_age: int = 0

    # Salary until retirement (or work_end_age)
    work_income: float = 0.0
    work_end_age: int = 0


@dataclass
class FinancialConfig:
    pension_growth_rate: float = 0.05
    savings_growth_rate: float = 0.05
    income_inflation_rate: float = 0.03
    state_pension_amount: float = 11_502.0
    state_pension_inflation: float = 0.03
    tax_band_inflation: float = 0.0
    state_pension_deferral_rate: float = 0.0
    emergency_fund_months: int = 0
    emergency_fund_inflation_adjust: bool = False

    # Age-in-bonds glide path
    growth_decline_enabled: bool = False
    pension_growth_end_rate: float = 0.0
    savings_growth_end_rate: float = 0.0
    growth_decline_target_age: int = 0
    growth_decline_reference_person: str = ""

    def deferral_rate(self) -> float:
        if self.state_pension_deferral_rate > 0:
            return self.state_pension_deferral_rate
        return DEFAULTS["state_pension_deferral_rate"]


@dataclass
class IncomeTier:
    start_age: Optional[int] = None    # None = from retirement
    end_age: Optional[int] = None      # None = until the end
    monthly_amount: float = 0.0        # £/month, or annual % of initial portfolio when is_percentage
    ratio: float = 0.0                 # depletion mode weight
    is_percentage: bool = False
    is_investment_gains: bool = False

    def covers(self, age: int) -> bool:
        return ((self.start_age is None or age >= self.start_age)
                and (self.end_age is None or age < self.end_age))


INVESTMENT_GAINS = -1.0  # sentinel monthly amount for investment-gains tiers


@dataclass
class IncomeConfig:
    tiers: list[IncomeTier] = field(default_factory=list)

    # Legacy two-phase income
    monthly_before_age: float = 0.0
    monthly_after_age: float = 0.0
    age_threshold: int = 0

    # Depletion mode
    target_depletion_age: int = 0
    income_ratio_phase1: float = 1.0
    income_ratio_phase2: float = 1.0

    guardrails_enabled: bool = False
    guardrails_upper_limit: float = 0.0
    guardrails_lower_limit: float = 0.0
    guardrails_adjustment: float = 0.0

    vpw_enabled: bool = False
    vpw_floor: float = 0.0
    vpw_ceiling: float = 0.0

    reference_person: str = ""

    def is_depletion_mode(self) -> bool:
        return self.target_depletion_age > 0

    def has_tiers(self) -> bool:
        return len(self.tiers) > 0

    def threshold(self) -> int:
        return self.age_threshold or DEFAULTS["age_threshold"]

    def tier_for_age(self, age: int) -> Optional[IncomeTier]:
        for tier in self.tiers:
            if tier.covers(age):
                return tier
        # fall back to the last tier
        return self.tiers[-1] if self.tiers else None

    def monthly_income_for_age(self, age: int, initial_portfolio: float, multiplier: float = 1.0) -> float:
        if not self.has_tiers():
            if self.is_depletion_mode():
                ratio = self.income_ratio_phase1 if age < self.threshold() else self.income_ratio_phase2
                return ratio * multiplier
            return self.monthly_before_age if age < self.threshold() else self.monthly_after_age

        tier = self.tier_for_age(age)
        if tier is None:
            return 0.0
        if tier.is_investment_gains:
            return INVESTMENT_GAINS
        if self.is_depletion_mode() and tier.ratio > 0:
            return tier.ratio * multiplier
        if tier.is_percentage:
            return initial_portfolio * (tier.monthly_amount / 100.0) / 12.0
        return tier.monthly_amount

    def annual_income_for_age(self, age: int, initial_portfolio: float, multiplier: float = 1.0) -> float:
        monthly = self.monthly_income_for_age(age, initial_portfolio, multiplier)
        if monthly == INVESTMENT_GAINS:
            return INVESTMENT_GAINS
        return monthly * 12

    def ratio_for_age(self, age: int) -> float:
        if not self.has_tiers():
            return self.income_ratio_phase1 if age < self.threshold() else self.income_ratio_phase2
        tier = self.tier_for_age(age)
        if tier is None or tier.ratio <= 0:
            return 1.0
        return tier.ratio

    def convert_legacy_to_tiers(self):
        if self.has_tiers():
            return
        threshold = self.threshold()
        if self.is_depletion_mode():
            self.tiers = [
                IncomeTier(end_age=threshold, ratio=self.income_ratio_phase1),
                IncomeTier(start_age=threshold, ratio=self.income_ratio_phase2),
            ]
        else:
            self.tiers = [
                IncomeTier(end_age=threshold, monthly_amount=self.monthly_before_age),
                IncomeTier(start_age=threshold, monthly_amount=self.monthly_after_age),
            ]


@dataclass
class MortgagePart:
    name: str = "Repayment"
    principal: float = 0.0
    interest_rate: float = 0.0
    is_repayment: bool = True
    term_years: int = 0
    start_year: int = 0

    def monthly_payment(self) -> float:
        if not self.is_repayment or self.term_years == 0:
            return self.principal * self.interest_rate / 12
        r = self.interest_rate / 12
        n = self.term_years * 12
        if r == 0:
            return self.principal / n
        factor = (1 + r) ** n
        return self.principal * (r * factor) / (factor - 1)

    def annual_payment(self) -> float:
        return self.monthly_payment() * 12

    def remaining_balance(self, at_year: int) -> float:
        if not self.is_repayment:
            return self.principal
        years_elapsed = at_year - self.start_year
        if years_elapsed <= 0:
            return self.principal
        if at_year >= self.start_year + self.term_years:
            return 0.0
        r = self.interest_rate / 12
        n = self.term_years * 12
        p = years_elapsed * 12
        if r == 0:
            return self.principal * (1 - p / n)
        factor_n = (1 + r) ** n
        factor_p = (1 + r) ** p
        return self.principal * (factor_n - factor_p) / (factor_n - 1)


@dataclass
class MortgageConfig:
    parts: list[MortgagePart] = field(default_factory=list)
    end_year: int = 0
    early_payoff_year: int = 0


@dataclass
class SimulationConfig:
    start_year: int = 2025
    end_age: int = 90
    reference_person: str = ""


@dataclass
class SensitivityConfig:
    pension_growth_min: float = 0.0
    pension_growth_max: float = 0.0
    savings_growth_min: float = 0.0
    savings_growth_max: float = 0.0
    step_size: float = 0.0

    def ranges(self):
        """((pension min, max), (savings min, max), step) with defaults for unset ranges."""
        d = DEFAULTS["sensitivity"]
        pension = (self.pension_growth_min, self.pension_growth_max)
        savings = (self.savings_growth_min, self.savings_growth_max)
        if pension == (0, 0):
            pension = (d["pension_growth_min"], d["pension_growth_max"])
        if savings == (0, 0):
            savings = (d["savings_growth_min"], d["savings_growth_max"])
        return pension, savings, (self.step_size or d["step_size"])


@dataclass
class StrategyConfig:
    maximize_couple_isa: Optional[bool] = None

    def should_maximize_couple_isa(self) -> bool:
        if self.maximize_couple_isa is None:
            return DEFAULTS["maximize_couple_isa"]
        return self.maximize_couple_isa


@dataclass
class Config:
    people: list[PersonConfig]
    financial: FinancialConfig = field(default_factory=FinancialConfig)
    income: IncomeConfig = field(default_factory=IncomeConfig)
    mortgage: MortgageConfig = field(default_factory=MortgageConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    sensitivity: SensitivityConfig = field(default_factory=SensitivityConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    tax_bands: list[TaxBand] = field(default_factory=uk_tax_bands_2024)
    tax: TaxConfig = field(default_factory=TaxConfig)

    def find_person(self, name: str) -> Optional[PersonConfig]:
        for p in self.people:
            if p.name == name:
                return p
        return None

    def reference_person(self) -> PersonConfig:
        return self.find_person(self.income.reference_person) or self.people[0]

    def simulation_reference_person(self) -> PersonConfig:
        return self.find_person(self.simulation.reference_person) or self.people[0]

    def growth_decline_reference_person(self) -> PersonConfig:
        if self.financial.growth_decline_reference_person:
            found = self.find_person(self.financial.growth_decline_reference_person)
            if found is not None:
                return found
        return self.simulation_reference_person()

    def has_mortgage(self) -> bool:
        return any(part.principal > 0 for part in self.mortgage.parts)

    def total_annual_payment(self) -> float:
        return sum(part.annual_payment() for part in self.mortgage.parts)

    def total_payoff_amount(self, at_year: int) -> float:
        return sum(part.remaining_balance(at_year) for part in self.mortgage.parts)


# ---------- dict <-> dataclass (for the YAML/JSON layers) ----------
def config_from_dict(d: dict) -> Config:
    income = dict(d.get("income", {}))
    income["tiers"] = [IncomeTier(**t) for t in income.get("tiers", [])]
    mortgage = dict(d.get("mortgage", {}))
    mortgage["parts"] = [MortgagePart(**p) for p in mortgage.get("parts", [])]

    kwargs = dict(
        people=[PersonConfig(**p) for p in d["people"]],
        financial=FinancialConfig(**d.get("financial", {})),
        income=IncomeConfig(**income),
        mortgage=MortgageConfig(**mortgage),
        simulation=SimulationConfig(**d.get("simulation", {})),
        sensitivity=SensitivityConfig(**d.get("sensitivity", {})),
        strategy=StrategyConfig(**d.get("strategy", {})),
        tax=TaxConfig(**d.get("tax", {})),
    )
    if d.get("tax_bands"):
        kwargs["tax_bands"] = [TaxBand(**b) for b in d["tax_bands"]]
    return Config(**kwargs)


def config_to_dict(cfg: Config) -> dict:
    return asdict(cfg)
