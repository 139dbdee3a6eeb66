# UK income tax. Bands are ordered and contiguous; nothing here mutates them.

from dataclasses import dataclass, replace
from datetime import date

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

# 2024/25 baseline (UK), indexed by tax_band_inflation in the sim
BASE_PERSONAL_ALLOWANCE = 12_570
BASE_BASIC_RATE_LIMIT = 50_270
BASE_HIGHER_RATE_LIMIT = 125_140
BASE_PA_TAPER_START = 100_000
BASE_PA_TAPER_RATE = 0.5
TOP_BAND_UPPER = 1e9

TAX_YEAR_START = (4, 6)  # 6 April


@dataclass
class TaxBand:
    name: str
    lower: float
    upper: float
    rate: float


@dataclass
class TaxConfig:
    personal_allowance: float = BASE_PERSONAL_ALLOWANCE
    tapering_threshold: float = BASE_PA_TAPER_START
    tapering_rate: float = BASE_PA_TAPER_RATE

    # zero means "not configured"
    def allowance(self) -> float:
        return self.personal_allowance if self.personal_allowance > 0 else BASE_PERSONAL_ALLOWANCE

    def threshold(self) -> float:
        return self.tapering_threshold if self.tapering_threshold > 0 else BASE_PA_TAPER_START

    def rate(self) -> float:
        return self.tapering_rate if self.tapering_rate > 0 else BASE_PA_TAPER_RATE

    def allowance_removed_threshold(self) -> float:
        """Income at which the personal allowance is fully tapered away."""
        return self.threshold() + self.allowance() / self.rate()


def uk_tax_bands_2024() -> list[TaxBand]:
    return [
        TaxBand("Personal Allowance", 0, BASE_PERSONAL_ALLOWANCE, 0.0),
        TaxBand("Basic Rate", BASE_PERSONAL_ALLOWANCE, BASE_BASIC_RATE_LIMIT, 0.20),
        TaxBand("Higher Rate", BASE_BASIC_RATE_LIMIT, BASE_HIGHER_RATE_LIMIT, 0.40),
        TaxBand("Additional Rate", BASE_HIGHER_RATE_LIMIT, TOP_BAND_UPPER, 0.45),
    ]


def tax_on_income(income: float, bands: list[TaxBand]) -> float:
    if income <= 0:
        return 0.0
    tax = 0.0
    for band in bands:
        if income <= band.lower:
            break
        taxable_in_band = min(income, band.upper) - band.lower
        if taxable_in_band > 0:
            tax += taxable_in_band * band.rate
    return tax


def apply_allowance_tapering(bands: list[TaxBand], total_income: float,
                             tax_config: TaxConfig = None) -> list[TaxBand]:
    """
    Returns a copy of bands with the 0% band shrunk by (income - threshold) * rate
    and the following band's lower bound moved down to meet it.
    """
    tc = tax_config or TaxConfig()
    if total_income <= tc.threshold():
        return bands

    reduction = (total_income - tc.threshold()) * tc.rate()
    reduced_allowance = max(0.0, tc.allowance() - reduction)

    out = [replace(b) for b in bands]
    for i, band in enumerate(out):
        if band.rate == 0 and band.lower == 0:
            band.upper = reduced_allowance
        elif i > 0 and band.rate > 0 and out[i - 1].rate == 0:
            band.lower = reduced_allowance
    return out


def tax_with_tapering(income: float, bands: list[TaxBand], tax_config: TaxConfig = None) -> float:
    return tax_on_income(income, apply_allowance_tapering(bands, income, tax_config))


def marginal_tax(withdrawal: float, existing_income: float, bands: list[TaxBand],
                 tax_config: TaxConfig = None) -> float:
    """Extra tax caused by stacking withdrawal on top of existing_income."""
    before = tax_with_tapering(existing_income, bands, tax_config)
    after = tax_with_tapering(existing_income + withdrawal, bands, tax_config)
    return after - before


def person_tax(other_income: float, taxable_withdrawal: float, bands: list[TaxBand],
               tax_config: TaxConfig = None) -> float:
    return tax_with_tapering(other_income + taxable_withdrawal, bands, tax_config)


def gross_up_for_tax(net_needed: float, existing_income: float, bands: list[TaxBand],
                     tax_config: TaxConfig = None) -> tuple[float, float]:
    """
    Binary search for the gross withdrawal whose after-tax value is net_needed.
    Returns (gross, tax). Never fails: the upper bracket is returned if the
    search does not settle within 100 iterations.
    """
    if net_needed <= 0:
        return 0.0, 0.0

    lo, hi = net_needed, net_needed * 2.5
    for _ in range(100):
        mid = (lo + hi) / 2.0
        tax = marginal_tax(mid, existing_income, bands, tax_config)
        net = mid - tax
        if abs(net - net_needed) < 0.01:
            return mid, tax
        if net < net_needed:
            lo = mid
        else:
            hi = mid
    return hi, marginal_tax(hi, existing_income, bands, tax_config)


def marginal_rate(income: float, bands: list[TaxBand]) -> float:
    for band in bands:
        if band.lower <= income < band.upper:
            return band.rate
    return bands[-1].rate if bands else 0.0


def band_limits(bands: list[TaxBand]) -> tuple[float, float]:
    """(personal allowance, basic-rate limit) read from possibly inflated bands."""
    personal_allowance = float(BASE_PERSONAL_ALLOWANCE)
    basic_rate_limit = float(BASE_BASIC_RATE_LIMIT)
    if bands and bands[0].rate == 0:
        personal_allowance = bands[0].upper
    if len(bands) > 1 and bands[1].rate == 0.20:
        basic_rate_limit = bands[1].upper
    return personal_allowance, basic_rate_limit


def inflation_factor(start_year: int, current_year: int, rate: float) -> float:
    if rate == 0 or current_year <= start_year:
        return 1.0
    return (1 + rate) ** (current_year - start_year)


def inflate_bands(bands: list[TaxBand], start_year: int, current_year: int, rate: float) -> list[TaxBand]:
    factor = inflation_factor(start_year, current_year, rate)
    if factor == 1.0:
        return bands
    return [TaxBand(b.name, b.lower * factor, b.upper * factor, b.rate) for b in bands]


def inflate_tax_config(tc: TaxConfig, start_year: int, current_year: int, rate: float) -> TaxConfig:
    factor = inflation_factor(start_year, current_year, rate)
    return TaxConfig(
        personal_allowance=tc.allowance() * factor,
        tapering_threshold=tc.threshold() * factor,
        tapering_rate=tc.rate(),
    )


# ---------- Tax years ----------
def parse_birth_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except ValueError as e:
        raise ValueError(f"Invalid birth date {value!r}; expected YYYY-MM-DD") from e


def tax_year_label(tax_year: int) -> str:
    return f"{tax_year}/{(tax_year + 1) % 100:02d}"


def tax_year_label_short(tax_year: int) -> str:
    return f"{tax_year % 100:02d}/{(tax_year + 1) % 100:02d}"


def age_on(birth: date, on: date) -> int:
    return relativedelta(on, birth).years


def age_in_tax_year(birth, tax_year: int) -> int:
    """Age reached during the tax year starting 6 April tax_year (i.e. age on 5 April next year)."""
    return age_on(parse_birth_date(birth), date(tax_year + 1, 4, 5))


def age_at_tax_year_start(birth, tax_year: int) -> int:
    return age_on(parse_birth_date(birth), date(tax_year, *TAX_YEAR_START))


def tax_year_for_age(birth, age: int) -> int:
    """First tax year in which the person reaches age."""
    b = parse_birth_date(birth)
    birthday = b + relativedelta(years=age)
    if (birthday.month, birthday.day) >= TAX_YEAR_START:
        return birthday.year
    return birthday.year - 1


def tax_year_of(day) -> int:
    d = parse_birth_date(day)
    if (d.month, d.day) >= TAX_YEAR_START:
        return d.year
    return d.year - 1


def pension_access_month(birth, access_age: int, tax_year: int) -> int:
    """
    Month index within tax_year (0 = April ... 11 = March) from which the pension
    can be drawn; 0 if already accessible, -1 if not accessible this tax year.
    """
    access_year = tax_year_for_age(birth, access_age)
    if access_year < tax_year:
        return 0
    if access_year > tax_year:
        return -1
    birthday = parse_birth_date(birth) + relativedelta(years=access_age)
    return (birthday.month - TAX_YEAR_START[0]) % 12
