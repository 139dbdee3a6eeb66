import copy
from dataclasses import dataclass
from datetime import date

from config import Config, DEFAULTS, PersonConfig
from tax_uk import age_in_tax_year, parse_birth_date

TAX_FREE_SHARE = 0.25


@dataclass
class PersonBalances:
    tax_free_savings: float
    uncrystallised_pot: float
    crystallised_pot: float

    @property
    def total(self) -> float:
        return self.tax_free_savings + self.uncrystallised_pot + self.crystallised_pot

    @property
    def pension(self) -> float:
        return self.uncrystallised_pot + self.crystallised_pot


@dataclass
class CrystallisationResult:
    amount_crystallised: float = 0.0
    tax_free_portion: float = 0.0
    taxable_portion: float = 0.0


@dataclass
class Person:
    name: str
    birth_date: date
    retirement_age: int
    state_pension_age: int = 67
    pension_access_age: int = 0

    tax_free_savings: float = 0.0
    uncrystallised_pot: float = 0.0
    crystallised_pot: float = 0.0
    pcls_taken: bool = False
    isa_annual_limit: float = DEFAULTS["isa_annual_limit"]
    emergency_fund_minimum: float = 0.0

    db_pension_amount: float = 0.0
    db_pension_start_age: int = 0
    db_pension_name: str = ""
    db_pension_normal_age: int = 0
    db_pension_early_factor: float = 0.0
    db_pension_late_factor: float = 0.0
    db_pension_commutation: float = 0.0
    db_pension_commute_factor: float = 0.0
    db_pension_lump_sum: float = 0.0
    db_pension_lump_sum_taken: bool = False

    state_pension_defer_years: int = 0
    state_pension_deferral_rate: float = DEFAULTS["state_pension_deferral_rate"]

    part_time_income: float = 0.0
    part_time_start_age: int = 0
    part_time_end_age: int = 0

    work_income: float = 0.0
    work_end_age: int = 0

    @property
    def birth_year(self) -> int:
        return self.birth_date.year

    def age_in(self, year: int) -> int:
        return age_in_tax_year(self.birth_date, year)

    def _valid_for(self, year: int) -> bool:
        return 1900 <= self.birth_year <= year

    # ---- balances ----
    def available_isa(self) -> float:
        return max(0.0, self.tax_free_savings - self.emergency_fund_minimum)

    def total_pension(self) -> float:
        return self.crystallised_pot + self.uncrystallised_pot

    def total_wealth(self) -> float:
        return self.tax_free_savings + self.total_pension()

    def balances(self) -> PersonBalances:
        return PersonBalances(self.tax_free_savings, self.uncrystallised_pot, self.crystallised_pot)

    def clone(self) -> "Person":
        return copy.deepcopy(self)

    # ---- lifecycle ----
    def can_access_pension(self, year: int) -> bool:
        if not self._valid_for(year):
            return False
        age = self.age_in(year)
        return age >= self.retirement_age and age >= self.pension_access_age

    def effective_state_pension_age(self) -> int:
        return self.state_pension_age + self.state_pension_defer_years

    def receives_state_pension(self, year: int) -> bool:
        if not self._valid_for(year):
            return False
        return self.age_in(year) >= self.effective_state_pension_age()

    def deferred_state_pension(self, base_amount: float) -> float:
        if self.state_pension_defer_years <= 0 or self.state_pension_deferral_rate <= 0:
            return base_amount
        return base_amount * (1 + self.state_pension_deferral_rate) ** self.state_pension_defer_years

    def receives_db_pension(self, year: int) -> bool:
        if self.db_pension_amount <= 0 or self.db_pension_start_age <= 0:
            return False
        if not self._valid_for(year):
            return False
        return self.age_in(year) >= self.db_pension_start_age

    def _db_adjusted_amount(self) -> float:
        amount = self.db_pension_amount
        if self.db_pension_normal_age > 0 and self.db_pension_start_age > 0:
            years_diff = self.db_pension_start_age - self.db_pension_normal_age
            if years_diff < 0 and self.db_pension_early_factor > 0:
                amount *= 1 - (-years_diff) * self.db_pension_early_factor
            elif years_diff > 0 and self.db_pension_late_factor > 0:
                amount *= 1 + years_diff * self.db_pension_late_factor
        return amount

    def effective_db_pension(self) -> float:
        """Annual DB pension after early/late adjustment and commutation."""
        if self.db_pension_amount <= 0:
            return 0.0
        amount = self._db_adjusted_amount()
        if self.db_pension_commutation > 0:
            amount *= 1 - self.db_pension_commutation
        return amount

    def db_lump_sum(self) -> float:
        if self.db_pension_amount <= 0 or self.db_pension_commutation <= 0:
            return 0.0
        factor = self.db_pension_commute_factor or DEFAULTS["db_commute_factor"]
        return self._db_adjusted_amount() * self.db_pension_commutation * factor

    def receives_part_time_income(self, year: int) -> bool:
        if self.part_time_income <= 0 or not self._valid_for(year):
            return False
        age = self.age_in(year)
        return self.part_time_start_age <= age < self.part_time_end_age

    def receives_work_income(self, year: int) -> bool:
        if self.work_income <= 0 or not self._valid_for(year):
            return False
        end_age = self.work_end_age or self.retirement_age
        return self.age_in(year) < end_age


def person_from_config(pc: PersonConfig, deferral_rate: float) -> Person:
    return Person(
        name=pc.name,
        birth_date=parse_birth_date(pc.birth_date),
        retirement_age=pc.retirement_age,
        state_pension_age=pc.state_pension_age,
        pension_access_age=pc.pension_access_age,
        tax_free_savings=pc.tax_free_savings,
        uncrystallised_pot=pc.pension,
        isa_annual_limit=pc.isa_annual_limit if pc.isa_annual_limit > 0 else DEFAULTS["isa_annual_limit"],
        db_pension_amount=pc.db_pension_amount,
        db_pension_start_age=pc.db_pension_start_age,
        db_pension_name=pc.db_pension_name,
        db_pension_normal_age=pc.db_pension_normal_age,
        db_pension_early_factor=pc.db_pension_early_factor,
        db_pension_late_factor=pc.db_pension_late_factor,
        db_pension_commutation=pc.db_pension_commutation,
        db_pension_commute_factor=pc.db_pension_commute_factor,
        state_pension_defer_years=pc.state_pension_defer_years,
        state_pension_deferral_rate=deferral_rate,
        part_time_income=pc.part_time_income,
        part_time_start_age=pc.part_time_start_age,
        part_time_end_age=pc.part_time_end_age,
        work_income=pc.work_income,
        work_end_age=pc.work_end_age,
    )


def build_people(config: Config) -> list[Person]:
    rate = config.financial.deferral_rate()
    return [person_from_config(pc, rate) for pc in config.people]


def find_person(people: list[Person], name: str) -> Person:
    for p in people:
        if p.name == name:
            return p
    return people[0]


# ---------- balance operations ----------
def take_pcls_lump_sum(person: Person) -> CrystallisationResult:
    """Crystallise the whole pot: 25% to ISA, 75% to the crystallised pot, PCLS used up."""
    if person.uncrystallised_pot <= 0 or person.pcls_taken:
        return CrystallisationResult()
    amount = person.uncrystallised_pot
    tax_free = amount * TAX_FREE_SHARE
    taxable = amount - tax_free

    person.tax_free_savings += tax_free
    person.crystallised_pot += taxable
    person.uncrystallised_pot = 0.0
    person.pcls_taken = True
    return CrystallisationResult(amount, tax_free, taxable)


def gradual_crystallise(person: Person, amount_needed: float) -> CrystallisationResult:
    """Crystallise just amount_needed; no tax-free part once the PCLS has been taken."""
    if amount_needed <= 0 or person.uncrystallised_pot <= 0:
        return CrystallisationResult()
    amount = min(person.uncrystallised_pot, amount_needed)
    tax_free = 0.0 if person.pcls_taken else amount * TAX_FREE_SHARE
    person.uncrystallised_pot -= amount
    return CrystallisationResult(amount, tax_free, amount - tax_free)


def ufpls_withdraw(person: Person, amount_needed: float) -> CrystallisationResult:
    """UFPLS: 25/75 split on every withdrawal, the pot keeps its 25% entitlement."""
    if amount_needed <= 0 or person.uncrystallised_pot <= 0:
        return CrystallisationResult()
    amount = min(person.uncrystallised_pot, amount_needed)
    tax_free = amount * TAX_FREE_SHARE
    person.uncrystallised_pot -= amount
    return CrystallisationResult(amount, tax_free, amount - tax_free)


def withdraw_from_isa(person: Person, amount: float) -> float:
    if amount <= 0:
        return 0.0
    available = person.available_isa()
    if available <= 0:
        return 0.0
    withdrawal = min(amount, available)
    person.tax_free_savings -= withdrawal
    return withdrawal


def withdraw_from_crystallised(person: Person, amount: float) -> float:
    if amount <= 0 or person.crystallised_pot <= 0:
        return 0.0
    withdrawal = min(amount, person.crystallised_pot)
    person.crystallised_pot -= withdrawal
    return withdrawal


def apply_growth(person: Person, savings_rate: float, pension_rate: float):
    person.tax_free_savings *= (1 + savings_rate)
    person.crystallised_pot *= (1 + pension_rate)
    person.uncrystallised_pot *= (1 + pension_rate)


def growth_rate_for_year(start_rate: float, end_rate: float, start_age: int,
                         current_age: int, target_age: int) -> float:
    # linear glide from start_rate at start_age to end_rate at target_age
    if current_age >= target_age:
        return end_rate
    if current_age <= start_age:
        return start_rate
    progress = (current_age - start_age) / (target_age - start_age)
    return start_rate + (end_rate - start_rate) * progress


def proportional_split(total_needed: float, available: dict[str, float]) -> dict[str, float]:
    total_available = sum(available.values())
    if total_available <= 0:
        return {name: 0.0 for name in available}
    if total_needed >= total_available:
        return dict(available)
    return {name: total_needed * amt / total_available for name, amt in available.items()}
