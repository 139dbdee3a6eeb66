# simulation.py

from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from config import Config, INVESTMENT_GAINS, IncomeConfig, MortgageConfig
from drawdown import GuardrailsState, VPWState
from people import (
    Person,
    PersonBalances,
    apply_growth,
    build_people,
    find_person,
    growth_rate_for_year,
    take_pcls_lump_sum,
)
from strategies import (
    DrawdownContext,
    MortgageOption,
    SimulationParams,
    WithdrawalBreakdown,
    execute_drawdown,
)
from tax_uk import band_limits, inflate_bands, inflate_tax_config, marginal_tax, person_tax, tax_year_for_age

SHORTFALL_EPSILON = 1.0
EXTENDED_MORTGAGE_YEARS = 10


@dataclass
class YearState:
    year: int
    ages: dict[str, int] = field(default_factory=dict)
    start_balance: float = 0.0

    required_income: float = 0.0
    mortgage_cost: float = 0.0
    total_required: float = 0.0

    state_pension_by_person: dict[str, float] = field(default_factory=dict)
    total_state_pension: float = 0.0
    db_pension_by_person: dict[str, float] = field(default_factory=dict)
    total_db_pension: float = 0.0
    part_time_by_person: dict[str, float] = field(default_factory=dict)
    part_time_income: float = 0.0
    work_income_by_person: dict[str, float] = field(default_factory=dict)
    work_income: float = 0.0
    pcls_mortgage_payment: float = 0.0

    net_required: float = 0.0
    net_income_required: float = 0.0     # living costs not covered by other income
    net_mortgage_required: float = 0.0   # mortgage not covered by other income

    withdrawals: WithdrawalBreakdown = field(default_factory=WithdrawalBreakdown)
    work_isa_deposits: dict[str, float] = field(default_factory=dict)
    tax_by_person: dict[str, float] = field(default_factory=dict)
    total_tax_paid: float = 0.0
    net_income_received: float = 0.0

    end_balances: dict[str, PersonBalances] = field(default_factory=dict)
    total_balance: float = 0.0

    guardrails_triggered: int = 0
    guardrails_adjusted: float = 0.0
    vpw_rate: float = 0.0
    vpw_suggested_income: float = 0.0
    personal_allowance: float = 0.0
    basic_rate_limit: float = 0.0
    pension_growth_rate_used: float = 0.0
    savings_growth_rate_used: float = 0.0

    def other_income(self, name: str) -> float:
        """Taxable income that does not come out of the pots."""
        return (self.state_pension_by_person.get(name, 0.0)
                + self.db_pension_by_person.get(name, 0.0)
                + self.part_time_by_person.get(name, 0.0)
                + self.work_income_by_person.get(name, 0.0))

    @property
    def total_other_income(self) -> float:
        return self.total_state_pension + self.total_db_pension + self.part_time_income + self.work_income


@dataclass
class SimulationResult:
    params: SimulationParams
    years: list[YearState] = field(default_factory=list)
    total_tax_paid: float = 0.0
    total_withdrawn: float = 0.0
    ran_out_of_money: bool = False
    ran_out_year: int = 0
    final_balances: dict[str, PersonBalances] = field(default_factory=dict)
    mortgage_payoff_year: int = 0

    @property
    def final_total_balance(self) -> float:
        return sum(b.total for b in self.final_balances.values())

    def descriptive_name(self) -> str:
        return self.params.descriptive_name(self.mortgage_payoff_year)


def mortgage_payoff_year(option: MortgageOption, mortgage: MortgageConfig) -> int:
    if option in (MortgageOption.EARLY, MortgageOption.PCLS_PAYOFF):
        return mortgage.early_payoff_year
    if option is MortgageOption.EXTENDED:
        return mortgage.end_year + EXTENDED_MORTGAGE_YEARS
    return mortgage.end_year


def required_income(income: IncomeConfig, ref_age: int, initial_portfolio: float,
                    inflation_multiplier: float, people: list[Person],
                    pension_rate: float, savings_rate: float, inflation_rate: float) -> float:
    """
    Annual spending need before guardrails/VPW. Fixed and percentage amounts are
    inflated from the retirement year; an investment-gains tier spends this
    year's real (after inflation) growth and never goes negative.
    """
    annual = income.annual_income_for_age(ref_age, initial_portfolio)
    if annual != INVESTMENT_GAINS:
        return annual * inflation_multiplier

    pension = sum(p.total_pension() for p in people)
    isa = sum(p.tax_free_savings for p in people)
    gains = pension * pension_rate + isa * savings_rate
    return max(0.0, gains - (pension + isa) * inflation_rate)


def _emergency_fund_minimum(config: Config, state: YearState, ref_age: int,
                            initial_portfolio: float, people_count: int) -> float:
    fin = config.financial
    if fin.emergency_fund_inflation_adjust:
        monthly = state.required_income / 12
    else:
        monthly = max(0.0, config.income.monthly_income_for_age(ref_age, initial_portfolio))
    return monthly * fin.emergency_fund_months / people_count


def _deposit_work_surplus(people: list[Person], state: YearState, bands, tax_config):
    """Salary beyond this year's spending goes into the earner's ISA, after tax, within the allowance."""
    surplus = state.total_other_income + state.pcls_mortgage_payment - state.total_required
    if surplus <= 0 or state.work_income <= 0:
        return
    surplus = min(surplus, state.work_income)

    for p in people:
        earned = state.work_income_by_person.get(p.name, 0.0)
        if earned <= 0:
            continue
        share = surplus * earned / state.work_income
        income = state.other_income(p.name) + state.withdrawals.taxable(p.name)
        net = share - marginal_tax(share, income - share, bands, tax_config)
        room = p.isa_annual_limit - state.withdrawals.isa_deposits.get(p.name, 0.0)
        deposit = min(net, max(0.0, room))
        if deposit > 0:
            p.tax_free_savings += deposit
            state.work_isa_deposits[p.name] = deposit


def run_simulation(params: SimulationParams, config: Config) -> SimulationResult:
    people = build_people(config)
    if params.state_pension_defer_years is not None:
        for p in people:
            p.state_pension_defer_years = params.state_pension_defer_years

    fin = config.financial
    income = config.income
    start_year = config.simulation.start_year

    sim_ref = find_person(people, config.simulation.reference_person)
    end_year = sim_ref.birth_year + config.simulation.end_age
    ref = find_person(people, income.reference_person)
    retirement_year = tax_year_for_age(ref.birth_date, ref.retirement_age)

    payoff_year = mortgage_payoff_year(params.mortgage_option, config.mortgage)
    result = SimulationResult(params=params,
                              mortgage_payoff_year=payoff_year if config.has_mortgage() else 0)

    initial_portfolio = sum(p.total_wealth() for p in people)

    guardrails_on = income.guardrails_enabled if params.guardrails is None else params.guardrails
    guardrails: Optional[GuardrailsState] = GuardrailsState.from_config(income) if guardrails_on else None
    vpw = VPWState.from_config(income)

    glide_ref: Optional[Person] = None
    glide_start_age = 0
    if fin.growth_decline_enabled:
        glide_ref = find_person(people, config.growth_decline_reference_person().name)
        glide_start_age = glide_ref.age_in(start_year)

    logger.debug("Simulating {} from {} to {}", params.short_name(), start_year, end_year)

    for year in range(start_year, end_year + 1):
        state = YearState(year=year)
        years_from_start = year - start_year

        # 1. growth
        pension_rate, savings_rate = fin.pension_growth_rate, fin.savings_growth_rate
        if glide_ref is not None:
            age = glide_ref.age_in(year)
            pension_rate = growth_rate_for_year(fin.pension_growth_rate, fin.pension_growth_end_rate,
                                                glide_start_age, age, fin.growth_decline_target_age)
            savings_rate = growth_rate_for_year(fin.savings_growth_rate, fin.savings_growth_end_rate,
                                                glide_start_age, age, fin.growth_decline_target_age)
        state.pension_growth_rate_used = pension_rate
        state.savings_growth_rate_used = savings_rate
        if year > start_year:
            for p in people:
                apply_growth(p, savings_rate, pension_rate)

        portfolio = sum(p.total_wealth() for p in people)
        state.start_balance = portfolio
        state.ages = {p.name: p.age_in(year) for p in people}

        # 2. required income, only once the reference person has retired
        ref_age = ref.age_in(year)
        retired = ref_age >= ref.retirement_age
        years_from_retirement = max(0, year - retirement_year)
        inflation_multiplier = (1 + fin.income_inflation_rate) ** years_from_retirement
        if retired:
            state.required_income = required_income(income, ref_age, initial_portfolio, inflation_multiplier,
                                                    people, pension_rate, savings_rate,
                                                    fin.income_inflation_rate)

        # 3. guardrails / VPW overlays
        if guardrails is not None and retired:
            if years_from_retirement == 0 or not guardrails.initialized:
                guardrails.initialize(portfolio, state.required_income)
            else:
                state.guardrails_triggered = guardrails.is_triggered(portfolio)
                guardrails.current_withdrawal *= 1 + fin.income_inflation_rate
                state.guardrails_adjusted = guardrails.adjusted_withdrawal(portfolio, state.required_income)
                state.required_income = state.guardrails_adjusted

        if vpw is not None and retired:
            state.vpw_rate = vpw.current_rate(ref_age)
            state.vpw_suggested_income = vpw.withdrawal(portfolio, ref_age, inflation_multiplier)
            state.required_income = state.vpw_suggested_income

        if fin.emergency_fund_months > 0:
            minimum = _emergency_fund_minimum(config, state, ref_age, initial_portfolio, len(people))
            for p in people:
                p.emergency_fund_minimum = minimum

        # 4. mortgage
        pcls = WithdrawalBreakdown()
        if year < payoff_year:
            state.mortgage_cost = config.total_annual_payment()
        elif year == payoff_year:
            state.mortgage_cost = config.total_payoff_amount(year)
            if params.mortgage_option is MortgageOption.PCLS_PAYOFF:
                outstanding = state.mortgage_cost
                for p in people:
                    if not p.can_access_pension(year) or p.uncrystallised_pot <= 0 or p.pcls_taken:
                        continue
                    lump = take_pcls_lump_sum(p)
                    # the lump sum lands in the ISA; only what the mortgage needs leaves it again
                    used = min(lump.tax_free_portion, outstanding)
                    if used > 0:
                        p.tax_free_savings -= used
                        pcls.add_tax_free_pension(p.name, used)
                        outstanding -= used
                state.pcls_mortgage_payment = pcls.total_tax_free
        state.total_required = state.required_income + state.mortgage_cost

        # 5. other income
        for p in people:
            if p.receives_state_pension(year):
                started = tax_year_for_age(p.birth_date, p.effective_state_pension_age())
                amount = p.deferred_state_pension(fin.state_pension_amount)
                amount *= (1 + fin.state_pension_inflation) ** max(0, year - started)
                state.state_pension_by_person[p.name] = amount
                state.total_state_pension += amount

            if p.receives_db_pension(year):
                started = tax_year_for_age(p.birth_date, p.db_pension_start_age)
                if year == started and not p.db_pension_lump_sum_taken and p.db_pension_commutation > 0:
                    lump_sum = p.db_lump_sum()
                    if lump_sum > 0:
                        p.tax_free_savings += lump_sum
                        p.db_pension_lump_sum = lump_sum
                        p.db_pension_lump_sum_taken = True
                amount = p.effective_db_pension() * (1 + fin.state_pension_inflation) ** max(0, year - started)
                state.db_pension_by_person[p.name] = amount
                state.total_db_pension += amount

            earnings_factor = (1 + fin.income_inflation_rate) ** years_from_start
            if p.receives_part_time_income(year):
                amount = p.part_time_income * earnings_factor
                state.part_time_by_person[p.name] = amount
                state.part_time_income += amount
            if p.receives_work_income(year):
                amount = p.work_income * earnings_factor
                state.work_income_by_person[p.name] = amount
                state.work_income += amount

        other = state.total_other_income
        state.net_required = max(0.0, state.total_required - other - state.pcls_mortgage_payment)
        # the PCLS lump sum only ever pays the mortgage
        mortgage_left = max(0.0, state.mortgage_cost - state.pcls_mortgage_payment)
        if other >= state.required_income:
            state.net_income_required = 0.0
            state.net_mortgage_required = max(0.0, mortgage_left - (other - state.required_income))
        else:
            state.net_income_required = state.required_income - other
            state.net_mortgage_required = mortgage_left

        # 6. this year's tax bands
        bands = inflate_bands(config.tax_bands, start_year, year, fin.tax_band_inflation)
        tax_config = inflate_tax_config(config.tax, start_year, year, fin.tax_band_inflation)
        state.personal_allowance, state.basic_rate_limit = band_limits(bands)

        # 7. drawdown
        drawn = WithdrawalBreakdown()
        if state.net_required > 0:
            ctx = DrawdownContext(
                year=year,
                other_income={p.name: state.other_income(p.name) for p in people},
                bands=bands,
                tax_config=tax_config,
                state_pension=state.state_pension_by_person,
            )
            drawn = execute_drawdown(people, state.net_required, params, ctx)
        state.withdrawals = WithdrawalBreakdown()
        state.withdrawals.merge(drawn)
        state.withdrawals.merge(pcls)

        # 8. tax, surplus salary, balances
        for p in people:
            tax = person_tax(state.other_income(p.name), state.withdrawals.taxable(p.name), bands, tax_config)
            state.tax_by_person[p.name] = tax
            state.total_tax_paid += tax

        _deposit_work_surplus(people, state, bands, tax_config)

        state.net_income_received = (state.total_other_income + state.withdrawals.total_withdrawn
                                     - state.total_tax_paid)
        for p in people:
            state.end_balances[p.name] = p.balances()
            state.total_balance += p.total_wealth()

        if state.net_required > 0 and drawn.total_withdrawn < state.net_required - SHORTFALL_EPSILON:
            if not result.ran_out_of_money:
                result.ran_out_of_money = True
                result.ran_out_year = year
                logger.debug("{} ran out of money in {}", params.short_name(), year)

        result.years.append(state)
        result.total_tax_paid += state.total_tax_paid
        result.total_withdrawn += state.withdrawals.total_withdrawn

    result.final_balances = {p.name: p.balances() for p in people}
    logger.debug("{} finished: final balance £{:,.0f}, tax £{:,.0f}",
                 params.short_name(), result.final_total_balance, result.total_tax_paid)
    return result
