import pytest

from orderpipe.common.errors import GatewayError
from orderpipe.common.money import amounts_match, format_major, to_minor_units
from orderpipe.services.checkout.pricing import FlatRatePricing


@pytest.mark.parametrize(
    "amount, expected",
    [("1000.00", 100000), ("999.99", 99999), ("1000", 100000), (1000, 100000), ("10.005", 1001)],
)
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


def test_to_minor_units_rejects_garbage():
    with pytest.raises(GatewayError):
        to_minor_units("one thousand")


def test_format_major():
    assert format_major(100000) == "1000.00"
    assert format_major(5) == "0.05"


def test_mismatch_by_one_paisa_is_detected():
    assert amounts_match(100000, to_minor_units("1000.00"))
    assert not amounts_match(100000, to_minor_units("999.99"))


def test_flat_rate_pricing():
    pricing = FlatRatePricing(tax_rate_bps=1300, shipping_flat_cents=500)

    assert pricing.tax_cents(100000) == 13000
    assert pricing.shipping_cents(100000, True, None) == 500
    # Booking-only carts ship nothing.
    assert pricing.shipping_cents(100000, False, None) == 0
