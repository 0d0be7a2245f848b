"""Minor-unit money helpers.

All amounts are stored and compared as integer paisa. Gateways that speak in
major units go through `to_minor_units`, which is the exact-integer form of
`round(amount * 100)`.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from orderpipe.common.errors import GatewayError

_CENT = Decimal("0.01")


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (str, int, float or Decimal) to integer minor units."""

    try:
        value = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise GatewayError(f"Unparseable amount {amount!r}") from exc
    return int(value * 100)


def format_major(amount_cents: int) -> str:
    """Render minor units as a two-decimal major-unit string, e.g. 100000 -> '1000.00'."""

    return str((Decimal(amount_cents) / 100).quantize(_CENT))


def amounts_match(expected_cents: int, confirmed_cents: int) -> bool:
    return int(expected_cents) == int(confirmed_cents)
