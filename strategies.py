import enum
from dataclasses import dataclass, field
from typing import Optional

from config import Config
from optimizer import calculate_optimized_withdrawals
from people import (
    Person,
    TAX_FREE_SHARE,
    CrystallisationResult,
    gradual_crystallise,
    proportional_split,
    ufpls_withdraw,
    withdraw_from_crystallised,
    withdraw_from_isa,
)
from tax_uk import TaxBand, TaxConfig, band_limits, gross_up_for_tax, marginal_tax, tax_with_tapering

# Blended net yield of pension drawn at the higher rate (used to size ISA top-ups)
HIGHER_RATE_NET_WITH_TAX_FREE = 0.70   # 0.25 + 0.75 * 0.60
HIGHER_RATE_NET = 0.60


class _TagEnum(enum.Enum):
    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        for member in cls:
            if value in (member.value, member.name):
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown {cls.__name__} {value!r}; expected one of: {valid}")


class CrystallisationStrategy(_TagEnum):
    GRADUAL = "Gradual"
    UFPLS = "UFPLS"


class DrawdownOrder(_TagEnum):
    SAVINGS_FIRST = "SavingsFirst"
    PENSION_FIRST = "PensionFirst"
    TAX_OPTIMIZED = "TaxOptimized"
    PENSION_TO_ISA = "PensionToISA"
    PENSION_ONLY = "PensionOnly"
    FILL_BASIC_RATE = "FillBasicRate"
    STATE_PENSION_BRIDGE = "StatePensionBridge"


class MortgageOption(_TagEnum):
    EARLY = "Early"
    NORMAL = "Normal"
    EXTENDED = "Extended"
    PCLS_PAYOFF = "PCLSPayoff"


ORDER_SHORT = {
    DrawdownOrder.SAVINGS_FIRST: "ISAFirst",
    DrawdownOrder.PENSION_FIRST: "PenFirst",
    DrawdownOrder.TAX_OPTIMIZED: "TaxOpt",
    DrawdownOrder.PENSION_TO_ISA: "Combined",
    DrawdownOrder.PENSION_ONLY: "PenOnly",
    DrawdownOrder.FILL_BASIC_RATE: "FillBasic",
    DrawdownOrder.STATE_PENSION_BRIDGE: "SPBridge",
}

ORDER_DESCRIPTION = {
    DrawdownOrder.SAVINGS_FIRST: "ISA First, Then Pension",
    DrawdownOrder.PENSION_FIRST: "Pension First, Then ISA",
    DrawdownOrder.TAX_OPTIMIZED: "Tax Optimized Withdrawals",
    DrawdownOrder.PENSION_TO_ISA: "Combined ISA And Pension",
    DrawdownOrder.PENSION_ONLY: "Pension Only",
    DrawdownOrder.FILL_BASIC_RATE: "Fill Basic Rate, Excess To ISA",
    DrawdownOrder.STATE_PENSION_BRIDGE: "State Pension Bridge",
}

MORTGAGE_SHORT = {
    MortgageOption.EARLY: "Early",
    MortgageOption.NORMAL: "Normal",
    MortgageOption.EXTENDED: "Ext+10",
    MortgageOption.PCLS_PAYOFF: "PCLS",
}


@dataclass(frozen=True)
class SimulationParams:
    crystallisation: CrystallisationStrategy = CrystallisationStrategy.GRADUAL
    drawdown_order: DrawdownOrder = DrawdownOrder.SAVINGS_FIRST
    mortgage_option: MortgageOption = MortgageOption.NORMAL
    maximize_couple_isa: bool = True
    # None = use the configuration as-is
    guardrails: Optional[bool] = None
    state_pension_defer_years: Optional[int] = None

    def short_name(self) -> str:
        name = f"{ORDER_SHORT[self.drawdown_order]}/{MORTGAGE_SHORT[self.mortgage_option]}"
        if self.crystallisation is CrystallisationStrategy.UFPLS:
            return "UFPLS:" + name
        return name

    def descriptive_name(self, payoff_year: int = 0) -> str:
        desc = ORDER_DESCRIPTION[self.drawdown_order]
        if self.crystallisation is CrystallisationStrategy.UFPLS:
            desc += " (UFPLS)"
        if payoff_year <= 0:
            return desc
        if self.mortgage_option is MortgageOption.EXTENDED:
            return f"{desc}, Mortgage extended to {payoff_year}"
        if self.mortgage_option is MortgageOption.PCLS_PAYOFF:
            return f"{desc}, PCLS lump sum for mortgage {payoff_year}"
        return f"{desc}, Mortgage repaid {payoff_year}"


@dataclass
class WithdrawalBreakdown:
    tax_free_from_isa: dict[str, float] = field(default_factory=dict)
    tax_free_from_pension: dict[str, float] = field(default_factory=dict)
    taxable_from_pension: dict[str, float] = field(default_factory=dict)
    isa_deposits: dict[str, float] = field(default_factory=dict)
    total_tax_free: float = 0.0
    total_taxable: float = 0.0
    total_isa_deposits: float = 0.0

    @staticmethod
    def _bump(bucket: dict[str, float], name: str, amount: float):
        bucket[name] = bucket.get(name, 0.0) + amount

    def add_isa(self, name: str, amount: float):
        self._bump(self.tax_free_from_isa, name, amount)
        self.total_tax_free += amount

    def add_tax_free_pension(self, name: str, amount: float):
        self._bump(self.tax_free_from_pension, name, amount)
        self.total_tax_free += amount

    def add_taxable(self, name: str, amount: float):
        self._bump(self.taxable_from_pension, name, amount)
        self.total_taxable += amount

    def add_crystallisation(self, name: str, result: CrystallisationResult):
        self.add_tax_free_pension(name, result.tax_free_portion)
        self.add_taxable(name, result.taxable_portion)

    def add_deposit(self, name: str, amount: float):
        self._bump(self.isa_deposits, name, amount)
        self.total_isa_deposits += amount

    def taxable(self, name: str) -> float:
        return self.taxable_from_pension.get(name, 0.0)

    @property
    def total_withdrawn(self) -> float:
        return self.total_tax_free + self.total_taxable

    def merge(self, other: "WithdrawalBreakdown"):
        for name, amount in other.tax_free_from_isa.items():
            self.add_isa(name, amount)
        for name, amount in other.tax_free_from_pension.items():
            self.add_tax_free_pension(name, amount)
        for name, amount in other.taxable_from_pension.items():
            self.add_taxable(name, amount)
        for name, amount in other.isa_deposits.items():
            self.add_deposit(name, amount)


@dataclass
class DrawdownContext:
    """Everything a policy needs to know about the tax year besides the ledgers."""
    year: int
    other_income: dict[str, float]          # taxable non-drawdown income per person
    bands: list[TaxBand]
    tax_config: Optional[TaxConfig] = None
    state_pension: dict[str, float] = field(default_factory=dict)

    def existing_income(self, name: str, breakdown: WithdrawalBreakdown) -> float:
        return self.other_income.get(name, 0.0) + breakdown.taxable(name)

    def marginal_tax(self, amount: float, existing: float) -> float:
        return marginal_tax(amount, existing, self.bands, self.tax_config)

    def gross_up(self, net: float, existing: float) -> float:
        return gross_up_for_tax(net, existing, self.bands, self.tax_config)[0]

    def income_tax(self, income: float) -> float:
        return tax_with_tapering(income, self.bands, self.tax_config)


# ---------- building blocks ----------
def _tax_free_share(person: Person, crystallisation: CrystallisationStrategy) -> float:
    if crystallisation is CrystallisationStrategy.UFPLS or not person.pcls_taken:
        return TAX_FREE_SHARE
    return 0.0


def _take_uncrystallised(person: Person, amount: float,
                         crystallisation: CrystallisationStrategy) -> CrystallisationResult:
    if crystallisation is CrystallisationStrategy.UFPLS:
        return ufpls_withdraw(person, amount)
    return gradual_crystallise(person, amount)


def withdraw_from_isas(people: list[Person], remaining: float, breakdown: WithdrawalBreakdown) -> float:
    """Draw from ISAs in proportion to each person's available (above emergency fund) balance."""
    if remaining <= 0:
        return 0.0
    split = proportional_split(remaining, {p.name: p.available_isa() for p in people})
    for p in people:
        amount = split.get(p.name, 0.0)
        if amount > 0:
            actual = withdraw_from_isa(p, amount)
            breakdown.add_isa(p.name, actual)
            remaining -= actual
    return remaining


def _withdraw_from_isas_in_order(people: list[Person], remaining: float,
                                 breakdown: WithdrawalBreakdown) -> float:
    for p in people:
        if remaining <= 0:
            break
        actual = withdraw_from_isa(p, remaining)
        if actual > 0:
            breakdown.add_isa(p.name, actual)
            remaining -= actual
    return remaining


def _draw_crystallised(people: list[Person], remaining: float, ctx: DrawdownContext,
                       breakdown: WithdrawalBreakdown) -> float:
    while remaining > 1:
        progressed = False
        for p in people:
            if remaining <= 1 or p.crystallised_pot <= 0 or not p.can_access_pension(ctx.year):
                continue
            existing = ctx.existing_income(p.name, breakdown)
            withdrawal = min(ctx.gross_up(remaining, existing), p.crystallised_pot)
            if withdrawal < 1:
                continue
            actual = withdraw_from_crystallised(p, withdrawal)
            breakdown.add_taxable(p.name, actual)
            remaining -= actual - ctx.marginal_tax(actual, existing)
            progressed = True
        if not progressed:
            break
    return remaining


def _solve_uncrystallised_draw(remaining: float, pot: float, existing: float, tax_free_share: float,
                               ctx: DrawdownContext) -> float:
    """
    Amount to take from an uncrystallised pot so that tax-free part plus taxed
    taxable part nets `remaining`. Up to 20 proportional refinements, stopping
    within £1 or once the whole pot is needed.
    """
    to_get = remaining * 1.3
    for _ in range(20):
        to_get = min(to_get, pot)
        tax_free = to_get * tax_free_share
        taxable = to_get - tax_free
        net = tax_free + taxable - ctx.marginal_tax(taxable, existing)
        if abs(net - remaining) < 1 or to_get >= pot or net <= 0:
            break
        to_get *= remaining / net
    return min(to_get, pot)


def _draw_uncrystallised(people: list[Person], remaining: float, crystallisation: CrystallisationStrategy,
                         ctx: DrawdownContext, breakdown: WithdrawalBreakdown) -> float:
    while remaining > 1:
        progressed = False
        for p in people:
            if remaining <= 1 or p.uncrystallised_pot <= 0 or not p.can_access_pension(ctx.year):
                continue
            existing = ctx.existing_income(p.name, breakdown)
            to_get = _solve_uncrystallised_draw(remaining, p.uncrystallised_pot, existing,
                                                _tax_free_share(p, crystallisation), ctx)
            if to_get < 1:
                continue
            result = _take_uncrystallised(p, to_get, crystallisation)
            breakdown.add_crystallisation(p.name, result)
            remaining -= result.tax_free_portion
            remaining -= result.taxable_portion - ctx.marginal_tax(result.taxable_portion, existing)
            progressed = True
        if not progressed:
            break
    return remaining


def withdraw_from_pension_grossed_up(people: list[Person], remaining: float,
                                     crystallisation: CrystallisationStrategy, ctx: DrawdownContext,
                                     breakdown: WithdrawalBreakdown) -> float:
    """
    Cover `remaining` (net) from pensions, grossing taxable draws up for tax
    against each person's existing income. Gradual: crystallised pots first,
    then crystallise more. UFPLS: lump sums from uncrystallised pots first, then
    whatever is already crystallised.
    """
    if remaining <= 0:
        return 0.0
    if crystallisation is CrystallisationStrategy.UFPLS:
        remaining = _draw_uncrystallised(people, remaining, crystallisation, ctx, breakdown)
        return _draw_crystallised(people, remaining, ctx, breakdown)

    remaining = _draw_crystallised(people, remaining, ctx, breakdown)
    if remaining > 1:
        remaining = _draw_uncrystallised(people, remaining, crystallisation, ctx, breakdown)
    return remaining


def _draw_taxable_target(person: Person, target: float, crystallisation: CrystallisationStrategy,
                         breakdown: WithdrawalBreakdown):
    """Crystallise enough to produce `target` of taxable income, topping up from the crystallised pot."""
    share = _tax_free_share(person, crystallisation)
    amount = min(target / (1 - share), person.uncrystallised_pot)
    if amount > 0:
        breakdown.add_crystallisation(person.name, _take_uncrystallised(person, amount, crystallisation))

    drawn = breakdown.taxable(person.name)
    if person.crystallised_pot > 0 and drawn < target:
        actual = withdraw_from_crystallised(person, min(target - drawn, person.crystallised_pot))
        breakdown.add_taxable(person.name, actual)


def _band_space(other_income: float, personal_allowance: float, basic_rate_limit: float) -> float:
    allowance_space = max(0.0, personal_allowance - other_income)
    basic_space = max(0.0, basic_rate_limit - max(other_income, personal_allowance))
    return allowance_space + basic_space


def _net_from_pension(people: list[Person], ctx: DrawdownContext, breakdown: WithdrawalBreakdown) -> float:
    tax = sum(ctx.income_tax(ctx.other_income.get(p.name, 0.0) + breakdown.taxable(p.name)) for p in people)
    return breakdown.total_withdrawn - tax


def _deposit_evenly(people: list[Person], excess: float, breakdown: WithdrawalBreakdown):
    share = excess / len(people)
    remaining = excess
    for p in people:
        deposit = min(share, p.isa_annual_limit)
        if deposit <= 0:
            continue
        p.tax_free_savings += deposit
        breakdown.add_deposit(p.name, deposit)
        remaining -= deposit
    # second pass: hand what is left to anyone with allowance to spare
    for p in people:
        if remaining <= 0:
            break
        room = p.isa_annual_limit - breakdown.isa_deposits.get(p.name, 0.0)
        if room > 0:
            extra = min(remaining, room)
            p.tax_free_savings += extra
            breakdown.add_deposit(p.name, extra)
            remaining -= extra


def _deposit_in_order(people: list[Person], excess: float, breakdown: WithdrawalBreakdown):
    for p in people:
        if excess <= 0:
            break
        deposit = min(excess, p.isa_annual_limit)
        p.tax_free_savings += deposit
        breakdown.add_deposit(p.name, deposit)
        excess -= deposit


def _settle_band_fill(people: list[Person], net_needed: float, crystallisation: CrystallisationStrategy,
                      ctx: DrawdownContext, breakdown: WithdrawalBreakdown, net_from_pension: float,
                      split_evenly: bool):
    """Bank any excess into ISAs, or cover a shortfall from ISAs and then more pension."""
    excess = net_from_pension - net_needed
    if excess > 0:
        if split_evenly:
            _deposit_evenly(people, excess, breakdown)
        else:
            _deposit_in_order(people, excess, breakdown)
        return

    shortfall = net_needed - net_from_pension
    if shortfall <= 0:
        return
    if split_evenly:
        shortfall = withdraw_from_isas(people, shortfall, breakdown)
    else:
        shortfall = _withdraw_from_isas_in_order(people, shortfall, breakdown)
    if shortfall > 1:
        withdraw_from_pension_grossed_up(people, shortfall, crystallisation, ctx, breakdown)


# ---------- policies ----------
def execute_optimized_drawdown(people: list[Person], net_needed: float, crystallisation: CrystallisationStrategy,
                               ctx: DrawdownContext) -> WithdrawalBreakdown:
    breakdown = WithdrawalBreakdown()
    if net_needed <= 0:
        return breakdown

    plan = calculate_optimized_withdrawals(
        people, net_needed, ctx.year, ctx.other_income, ctx.bands,
        ufpls=crystallisation is CrystallisationStrategy.UFPLS, tax_config=ctx.tax_config,
    )
    for p in people:
        isa = plan.tax_free_from_isa.get(p.name, 0.0)
        if isa > 0:
            breakdown.add_isa(p.name, withdraw_from_isa(p, isa))
        uncrystallised = plan.from_uncrystallised.get(p.name, 0.0)
        if uncrystallised > 0:
            breakdown.add_crystallisation(p.name, _take_uncrystallised(p, uncrystallised, crystallisation))
        crystallised = plan.from_crystallised.get(p.name, 0.0)
        if crystallised > 0:
            breakdown.add_taxable(p.name, withdraw_from_crystallised(p, crystallised))
    return breakdown


def execute_pension_to_isa_drawdown(people: list[Person], net_needed: float,
                                    crystallisation: CrystallisationStrategy, ctx: DrawdownContext,
                                    maximize_couple_isa: bool = True) -> WithdrawalBreakdown:
    """
    Draw every accessible pension up to the top of the basic-rate band and bank
    the net excess in ISAs. With maximize_couple_isa, the first person with an
    accessible pension also over-draws (at higher rate if need be) to fill
    everybody's ISA allowance.
    """
    breakdown = WithdrawalBreakdown()
    if net_needed <= 0:
        return breakdown

    personal_allowance, basic_rate_limit = band_limits(ctx.bands)
    for p in people:
        if not p.can_access_pension(ctx.year):
            continue
        target = _band_space(ctx.other_income.get(p.name, 0.0), personal_allowance, basic_rate_limit)
        if target > 0:
            _draw_taxable_target(p, target, crystallisation, breakdown)

    net = _net_from_pension(people, ctx, breakdown)
    excess = net - net_needed
    total_allowance = sum(p.isa_annual_limit for p in people)

    if maximize_couple_isa and 0 <= excess < total_allowance:
        additional_net = total_allowance - excess
        for p in people:
            if not p.can_access_pension(ctx.year) or p.total_pension() <= 0:
                continue
            net_rate = HIGHER_RATE_NET if p.pcls_taken else HIGHER_RATE_NET_WITH_TAX_FREE
            gross = additional_net / net_rate
            if p.uncrystallised_pot > 0:
                take = min(gross, p.uncrystallised_pot)
                breakdown.add_crystallisation(p.name, _take_uncrystallised(p, take, crystallisation))
                gross -= take
            if gross > 0 and p.crystallised_pot > 0:
                breakdown.add_taxable(p.name, withdraw_from_crystallised(p, gross))
            break
        net = _net_from_pension(people, ctx, breakdown)

    _settle_band_fill(people, net_needed, crystallisation, ctx, breakdown, net, split_evenly=True)
    return breakdown


def execute_fill_basic_rate_drawdown(people: list[Person], net_needed: float,
                                     crystallisation: CrystallisationStrategy,
                                     ctx: DrawdownContext) -> WithdrawalBreakdown:
    """Fill each person exactly to the basic-rate limit; excess to ISA, shortfall from ISA."""
    breakdown = WithdrawalBreakdown()
    personal_allowance, basic_rate_limit = band_limits(ctx.bands)
    for p in people:
        if not p.can_access_pension(ctx.year):
            continue
        target = _band_space(ctx.other_income.get(p.name, 0.0), personal_allowance, basic_rate_limit)
        if target > 0:
            _draw_taxable_target(p, target, crystallisation, breakdown)

    net = _net_from_pension(people, ctx, breakdown)
    _settle_band_fill(people, net_needed, crystallisation, ctx, breakdown, net, split_evenly=False)
    return breakdown


def execute_state_pension_bridge_drawdown(people: list[Person], net_needed: float,
                                          crystallisation: CrystallisationStrategy,
                                          ctx: DrawdownContext) -> WithdrawalBreakdown:
    """
    Before anyone draws state pension, take each person's pension up to the
    full basic-rate limit and bank the excess. Once state pension is being paid,
    behave like PensionFirst.
    """
    breakdown = WithdrawalBreakdown()
    if net_needed <= 0:
        return breakdown

    if any(ctx.state_pension.get(p.name, 0.0) > 0 for p in people):
        remaining = withdraw_from_pension_grossed_up(people, net_needed, crystallisation, ctx, breakdown)
        if remaining > 0:
            withdraw_from_isas(people, remaining, breakdown)
        return breakdown

    _, basic_rate_limit = band_limits(ctx.bands)
    for p in people:
        if p.can_access_pension(ctx.year):
            _draw_taxable_target(p, basic_rate_limit, crystallisation, breakdown)

    net = _net_from_pension(people, ctx, breakdown)
    _settle_band_fill(people, net_needed, crystallisation, ctx, breakdown, net, split_evenly=False)
    return breakdown


def execute_drawdown(people: list[Person], net_needed: float, params: SimulationParams,
                     ctx: DrawdownContext) -> WithdrawalBreakdown:
    """Cover `net_needed` (after tax) for one year using the policy selected in params."""
    order = params.drawdown_order
    crystallisation = params.crystallisation

    if order is DrawdownOrder.TAX_OPTIMIZED:
        return execute_optimized_drawdown(people, net_needed, crystallisation, ctx)
    if order is DrawdownOrder.PENSION_TO_ISA:
        return execute_pension_to_isa_drawdown(people, net_needed, crystallisation, ctx,
                                               params.maximize_couple_isa)
    if order is DrawdownOrder.FILL_BASIC_RATE:
        return execute_fill_basic_rate_drawdown(people, net_needed, crystallisation, ctx)
    if order is DrawdownOrder.STATE_PENSION_BRIDGE:
        return execute_state_pension_bridge_drawdown(people, net_needed, crystallisation, ctx)

    breakdown = WithdrawalBreakdown()
    if order is DrawdownOrder.PENSION_ONLY:
        withdraw_from_pension_grossed_up(people, net_needed, crystallisation, ctx, breakdown)
    elif order is DrawdownOrder.SAVINGS_FIRST:
        remaining = withdraw_from_isas(people, net_needed, breakdown)
        withdraw_from_pension_grossed_up(people, remaining, crystallisation, ctx, breakdown)
    elif order is DrawdownOrder.PENSION_FIRST:
        remaining = withdraw_from_pension_grossed_up(people, net_needed, crystallisation, ctx, breakdown)
        withdraw_from_isas(people, remaining, breakdown)
    else:
        raise ValueError(f"Unhandled drawdown order {order!r}")
    return breakdown


# ---------- strategy lists ----------
BASE_ORDERS = [
    DrawdownOrder.SAVINGS_FIRST,
    DrawdownOrder.PENSION_FIRST,
    DrawdownOrder.TAX_OPTIMIZED,
    DrawdownOrder.PENSION_TO_ISA,
    DrawdownOrder.FILL_BASIC_RATE,
    DrawdownOrder.STATE_PENSION_BRIDGE,
]
MORTGAGE_OPTIONS = [
    MortgageOption.EARLY,
    MortgageOption.NORMAL,
    MortgageOption.EXTENDED,
    MortgageOption.PCLS_PAYOFF,
]


def _mortgage_options(config: Config) -> list[MortgageOption]:
    return MORTGAGE_OPTIONS if config.has_mortgage() else [MortgageOption.NORMAL]


def strategies_for_config(config: Config) -> list[SimulationParams]:
    """
    Gradual crystallisation for every order x mortgage option, plus UFPLS with
    normal mortgage payoff for every order except PensionToISA.
    """
    maximize = config.strategy.should_maximize_couple_isa()
    out = [
        SimulationParams(CrystallisationStrategy.GRADUAL, order, option, maximize)
        for option in _mortgage_options(config)
        for order in BASE_ORDERS
    ]
    out += [
        SimulationParams(CrystallisationStrategy.UFPLS, order, MortgageOption.NORMAL, maximize)
        for order in BASE_ORDERS
        if order is not DrawdownOrder.PENSION_TO_ISA
    ]
    return out


def pension_only_strategies_for_config(config: Config) -> list[SimulationParams]:
    maximize = config.strategy.should_maximize_couple_isa()
    return [SimulationParams(CrystallisationStrategy.GRADUAL, DrawdownOrder.PENSION_ONLY, option, maximize)
            for option in _mortgage_options(config)]


def pension_to_isa_strategies_for_config(config: Config) -> list[SimulationParams]:
    maximize = config.strategy.should_maximize_couple_isa()
    return [SimulationParams(CrystallisationStrategy.GRADUAL, DrawdownOrder.PENSION_TO_ISA, option, maximize)
            for option in _mortgage_options(config)]
