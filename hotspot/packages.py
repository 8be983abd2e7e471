"""
Hotspot packages sold through M-Pesa.

The amount paid is the only thing the callback tells us about what was
bought, so each price maps to exactly one package.
"""

from collections import namedtuple
from datetime import timedelta
from decimal import Decimal, InvalidOperation

Package = namedtuple("Package", ["code", "amount", "duration"])

PACKAGES = {
    "1Hr": Package("1Hr", Decimal("10"), timedelta(hours=1)),
    "4Hrs": Package("4Hrs", Decimal("15"), timedelta(hours=4)),
    "12Hrs": Package("12Hrs", Decimal("20"), timedelta(hours=12)),
    "24Hrs": Package("24Hrs", Decimal("30"), timedelta(hours=24)),
}

_BY_AMOUNT = {package.amount: package for package in PACKAGES.values()}


def _as_decimal(amount):
    if amount is None:
        return None
    try:
        return Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None


def package_for_amount(amount):
    """Package bought with ``amount``, or None when the price is unknown."""
    value = _as_decimal(amount)
    if value is None:
        return None
    return _BY_AMOUNT.get(value)


def get_package(code):
    return PACKAGES.get(code)
