import pytest

from tax_uk import (
    TaxBand,
    TaxConfig,
    apply_allowance_tapering,
    band_limits,
    gross_up_for_tax,
    inflate_bands,
    inflate_tax_config,
    marginal_rate,
    marginal_tax,
    person_tax,
    tax_on_income,
    tax_with_tapering,
    uk_tax_bands_2024,
)


@pytest.mark.parametrize("income, expected", [
    (0, 0),
    (12_570, 0),
    (50_270, 7_540),
    (60_000, 11_432),
    (105_000, 29_932),
    (125_140, 40_002),
])
def test_tax_with_tapering(income, expected):
    assert tax_with_tapering(income, uk_tax_bands_2024()) == pytest.approx(expected)


def test_tax_without_tapering_keeps_full_allowance():
    # 10,070 would be the tapered allowance at £105k
    assert tax_on_income(105_000, uk_tax_bands_2024()) == pytest.approx(29_432)


def test_tapering_does_not_mutate_input_bands():
    bands = uk_tax_bands_2024()
    tapered = apply_allowance_tapering(bands, 110_000)
    assert bands[0].upper == 12_570
    assert tapered[0].upper == pytest.approx(7_570)
    assert tapered[1].lower == pytest.approx(7_570)


def test_tapering_below_threshold_returns_same_bands():
    bands = uk_tax_bands_2024()
    assert apply_allowance_tapering(bands, 99_000) is bands


def test_allowance_fully_removed_threshold():
    assert TaxConfig().allowance_removed_threshold() == pytest.approx(125_140)


def test_zero_tax_config_falls_back_to_uk_defaults():
    tc = TaxConfig(personal_allowance=0, tapering_threshold=0, tapering_rate=0)
    assert (tc.allowance(), tc.threshold(), tc.rate()) == (12_570, 100_000, 0.5)


def test_marginal_tax_stacks_on_existing_income():
    bands = uk_tax_bands_2024()
    assert marginal_tax(10_000, 45_270, bands) == pytest.approx(5_000 * 0.2 + 5_000 * 0.4)


def test_person_tax_is_tax_on_combined_income():
    bands = uk_tax_bands_2024()
    assert person_tax(11_502, 20_000, bands) == pytest.approx(tax_with_tapering(31_502, bands))


def test_gross_up_in_basic_band():
    gross, tax = gross_up_for_tax(8_000, 12_570, uk_tax_bands_2024())
    assert gross == pytest.approx(10_000, abs=0.05)
    assert tax == pytest.approx(2_000, abs=0.05)


def test_gross_up_within_allowance_is_untaxed():
    gross, tax = gross_up_for_tax(5_000, 0, uk_tax_bands_2024())
    assert gross == pytest.approx(5_000, abs=0.02)
    assert tax == pytest.approx(0, abs=0.02)


def test_gross_up_of_nothing():
    assert gross_up_for_tax(0, 30_000, uk_tax_bands_2024()) == (0.0, 0.0)


def test_marginal_rate_lookup():
    bands = uk_tax_bands_2024()
    assert marginal_rate(10_000, bands) == 0.0
    assert marginal_rate(30_000, bands) == 0.20
    assert marginal_rate(80_000, bands) == 0.40
    assert marginal_rate(2e9, bands) == 0.45


def test_band_limits_read_from_bands():
    assert band_limits(uk_tax_bands_2024()) == (12_570, 50_270)
    custom = [TaxBand("PA", 0, 13_000, 0.0), TaxBand("Basic", 13_000, 52_000, 0.20)]
    assert band_limits(custom) == (13_000, 52_000)


def test_inflate_bands_compounds_from_start_year():
    bands = inflate_bands(uk_tax_bands_2024(), 2024, 2026, 0.02)
    assert bands[0].upper == pytest.approx(12_570 * 1.02 ** 2)
    assert bands[1].rate == 0.20


def test_inflate_bands_zero_rate_is_identity():
    bands = uk_tax_bands_2024()
    assert inflate_bands(bands, 2024, 2030, 0.0) is bands


def test_inflate_tax_config_keeps_taper_rate():
    tc = inflate_tax_config(TaxConfig(), 2024, 2025, 0.10)
    assert tc.personal_allowance == pytest.approx(13_827)
    assert tc.tapering_threshold == pytest.approx(110_000)
    assert tc.tapering_rate == 0.5


def test_tax_never_falls_as_income_rises():
    bands, tc = uk_tax_bands_2024(), TaxConfig()
    taxes = [tax_with_tapering(income, bands, tc) for income in range(0, 300_001, 250)]
    assert all(a <= b for a, b in zip(taxes, taxes[1:]))


@pytest.mark.parametrize("existing", [0, 12_570, 40_000, 50_270, 100_000, 110_000, 124_000, 125_140, 200_000])
@pytest.mark.parametrize("net", [500, 5_000, 20_000, 60_000, 150_000])
def test_gross_up_nets_back_to_target(net, existing):
    bands, tc = uk_tax_bands_2024(), TaxConfig()
    gross, tax = gross_up_for_tax(net, existing, bands, tc)
    assert tax == pytest.approx(marginal_tax(gross, existing, bands, tc))
    assert abs(gross - tax - net) < 1
