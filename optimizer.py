# optimizer.py
# Heuristic, not an exact optimum. Phases: personal allowance, basic-rate band,
# pensions by pot size, then ISAs.

from dataclasses import dataclass, field

from people import Person, TAX_FREE_SHARE
from tax_uk import TaxBand, TaxConfig, band_limits, gross_up_for_tax, marginal_tax, person_tax

MIN_DRAW = 0.01

# Rough net yield of one gross pound drawn in the basic-rate band when a quarter
# of it comes out tax free: 0.25 + 0.75 * 0.80
CRYSTALLISING_BASIC_NET = 0.85

BASIC_BAND_FALLBACK = (12_570.0, 50_270.0)


@dataclass
class PersonTaxState:
    name: str
    other_income: float
    current_taxable_income: float
    available_crystallised: float
    available_uncrystallised: float
    available_isa: float
    can_access_pension: bool
    pcls_taken: bool

    def available_pension(self) -> float:
        return self.available_crystallised + self.available_uncrystallised


@dataclass
class OptimizedWithdrawalPlan:
    taxable_from_pension: dict[str, float] = field(default_factory=dict)
    tax_free_from_pension: dict[str, float] = field(default_factory=dict)
    tax_free_from_isa: dict[str, float] = field(default_factory=dict)
    # gross amounts taken from each pot, so the plan can be replayed exactly
    from_crystallised: dict[str, float] = field(default_factory=dict)
    from_uncrystallised: dict[str, float] = field(default_factory=dict)
    total_tax: float = 0.0

    def add(self, bucket: dict[str, float], name: str, amount: float):
        bucket[name] = bucket.get(name, 0.0) + amount


class _Planner:
    def __init__(self, bands: list[TaxBand], tax_config: TaxConfig, ufpls: bool):
        self.bands = bands
        self.tax_config = tax_config
        self.ufpls = ufpls
        self.plan = OptimizedWithdrawalPlan()

    def marginal(self, amount: float, existing: float) -> float:
        return marginal_tax(amount, existing, self.bands, self.tax_config)

    def gross_up(self, net: float, existing: float) -> float:
        return gross_up_for_tax(net, existing, self.bands, self.tax_config)[0]

    def _lump_sum_net(self, amount: float, existing: float) -> float:
        tax_free = amount * TAX_FREE_SHARE
        taxable = amount - tax_free
        return tax_free + taxable - self.marginal(taxable, existing)

    def _bisect_lump_sum(self, state: PersonTaxState, still_needed: float) -> float:
        """Uncrystallised amount whose 25/75 split nets still_needed (capped at the pot)."""
        lo, hi = 0.0, state.available_uncrystallised
        mid = 0.0
        for _ in range(50):
            mid = (lo + hi) / 2
            net = self._lump_sum_net(mid, state.current_taxable_income)
            if abs(net - still_needed) < 0.01:
                break
            if net < still_needed:
                lo = mid
            else:
                hi = mid
        return min(mid, state.available_uncrystallised)

    def _take_lump_sum(self, state: PersonTaxState, amount: float) -> float:
        tax_free = amount * TAX_FREE_SHARE
        taxable = amount - tax_free
        net = tax_free + taxable - self.marginal(taxable, state.current_taxable_income)

        state.available_uncrystallised -= amount
        state.current_taxable_income += taxable
        self.plan.add(self.plan.from_uncrystallised, state.name, amount)
        self.plan.add(self.plan.taxable_from_pension, state.name, taxable)
        self.plan.add(self.plan.tax_free_from_pension, state.name, tax_free)
        return net

    def _take_taxable(self, state: PersonTaxState, still_needed: float, from_crystallised: bool) -> float:
        available = state.available_crystallised if from_crystallised else state.available_uncrystallised
        gross = min(self.gross_up(still_needed, state.current_taxable_income), available)
        if gross <= MIN_DRAW:
            return 0.0
        net = gross - self.marginal(gross, state.current_taxable_income)

        if from_crystallised:
            state.available_crystallised -= gross
            self.plan.add(self.plan.from_crystallised, state.name, gross)
        else:
            state.available_uncrystallised -= gross
            self.plan.add(self.plan.from_uncrystallised, state.name, gross)
        state.current_taxable_income += gross
        self.plan.add(self.plan.taxable_from_pension, state.name, gross)
        return net

    def withdraw_pension(self, state: PersonTaxState, net_needed: float) -> float:
        """
        Draw net_needed from one person's pension. UFPLS takes lump sums from the
        uncrystallised pot first; both regimes then gross up from the crystallised
        pot; gradual crystallisation finishes by crystallising more.
        """
        if net_needed <= 0:
            return 0.0
        received = 0.0

        if self.ufpls and state.available_uncrystallised > MIN_DRAW:
            amount = self._bisect_lump_sum(state, net_needed)
            if amount > MIN_DRAW:
                received += self._take_lump_sum(state, amount)

        if state.available_crystallised > MIN_DRAW and received < net_needed:
            received += self._take_taxable(state, net_needed - received, from_crystallised=True)

        if not self.ufpls and state.available_uncrystallised > MIN_DRAW and received < net_needed:
            still_needed = net_needed - received
            if state.pcls_taken:
                received += self._take_taxable(state, still_needed, from_crystallised=False)
            else:
                amount = self._bisect_lump_sum(state, still_needed)
                if amount > MIN_DRAW:
                    received += self._take_lump_sum(state, amount)

        return received

    # ---- phases ----
    def fill_personal_allowances(self, states: list[PersonTaxState], remaining: float) -> float:
        personal_allowance, _ = band_limits(self.bands)
        spaces = []
        for state in states:
            if not state.can_access_pension:
                continue
            space = max(0.0, personal_allowance - state.current_taxable_income)
            available = state.available_pension()
            if space <= 0 or available <= 0:
                continue
            spaces.append((state, min(space, available)))

        total_space = sum(space for _, space in spaces)
        if total_space <= 0:
            return remaining

        to_withdraw = min(remaining, total_space)
        for state, space in spaces:
            if remaining <= MIN_DRAW:
                break
            amount = min(to_withdraw * space / total_space, space, remaining)
            if amount > MIN_DRAW:
                remaining -= self.withdraw_pension(state, amount)
        return remaining

    def fill_basic_rate_band(self, states: list[PersonTaxState], remaining: float) -> float:
        lower, upper = BASIC_BAND_FALLBACK
        for band in self.bands:
            if 0 < band.rate <= 0.25:
                lower, upper = band.lower, band.upper
                break

        spaces = []
        for state in states:
            if not state.can_access_pension or state.current_taxable_income >= upper:
                continue
            space = upper - max(state.current_taxable_income, lower)
            available = state.available_pension()
            if space <= 0 or available <= 0:
                continue
            spaces.append((state, min(space, available)))

        total_space = sum(space for _, space in spaces)
        if total_space <= 0:
            return remaining

        # every regime here can crystallise, so a quarter of each gross pound is tax free
        net_per_gross = CRYSTALLISING_BASIC_NET
        to_withdraw = min(remaining / net_per_gross, total_space)
        for state, space in spaces:
            if remaining <= MIN_DRAW:
                break
            person_gross = min(to_withdraw * space / total_space, space)
            person_net = min(person_gross * net_per_gross, remaining)
            if person_net > MIN_DRAW:
                remaining -= self.withdraw_pension(state, person_net)
        return remaining

    def proportional_pensions(self, states: list[PersonTaxState], remaining: float) -> float:
        accessible = [s for s in states if s.can_access_pension]
        total_available = sum(s.available_pension() for s in accessible)
        if total_available <= MIN_DRAW:
            return remaining

        for state in accessible:
            if remaining <= MIN_DRAW:
                break
            available = state.available_pension()
            if available <= MIN_DRAW:
                continue
            target = remaining * available / total_available
            if target > MIN_DRAW:
                remaining -= self.withdraw_pension(state, target)
        return remaining

    def isas(self, states: list[PersonTaxState], remaining: float) -> float:
        if remaining <= 0:
            return 0.0
        total_isa = sum(s.available_isa for s in states)
        if total_isa <= 0:
            return remaining
        needed = min(remaining, total_isa)
        for state in states:
            if state.available_isa > 0:
                withdrawal = min(needed * state.available_isa / total_isa, state.available_isa)
                state.available_isa -= withdrawal
                self.plan.add(self.plan.tax_free_from_isa, state.name, withdrawal)
                remaining -= withdrawal
        return remaining


def snapshot(people: list[Person], year: int, other_income: dict[str, float]) -> list[PersonTaxState]:
    return [
        PersonTaxState(
            name=p.name,
            other_income=other_income.get(p.name, 0.0),
            current_taxable_income=other_income.get(p.name, 0.0),
            available_crystallised=p.crystallised_pot,
            available_uncrystallised=p.uncrystallised_pot,
            available_isa=p.available_isa(),
            can_access_pension=p.can_access_pension(year),
            pcls_taken=p.pcls_taken,
        )
        for p in people
    ]


def calculate_optimized_withdrawals(people: list[Person], net_needed: float, year: int,
                                    other_income: dict[str, float], bands: list[TaxBand],
                                    ufpls: bool = False, tax_config: TaxConfig = None) -> OptimizedWithdrawalPlan:
    planner = _Planner(bands, tax_config, ufpls)
    if net_needed <= 0:
        return planner.plan

    states = snapshot(people, year, other_income)
    remaining = planner.fill_personal_allowances(states, net_needed)
    if remaining > MIN_DRAW:
        remaining = planner.fill_basic_rate_band(states, remaining)
    if remaining > MIN_DRAW:
        remaining = planner.proportional_pensions(states, remaining)
    planner.isas(states, remaining)

    plan = planner.plan
    plan.total_tax = sum(
        person_tax(s.other_income, plan.taxable_from_pension.get(s.name, 0.0), bands, tax_config)
        for s in states
    )
    return plan
