"""Credit package catalogue shown to store owners."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel


class CreditPackage(BaseModel):
    amount_usd: Decimal
    credits: int
    price_per_credit: Decimal
    popular: bool = False
    savings: str | None = None


_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(amount_usd=Decimal("10.00"), credits=100, price_per_credit=Decimal("0.100")),
    CreditPackage(
        amount_usd=Decimal("25.00"),
        credits=275,
        price_per_credit=Decimal("0.091"),
        popular=True,
        savings="9% savings",
    ),
    CreditPackage(
        amount_usd=Decimal("50.00"),
        credits=600,
        price_per_credit=Decimal("0.083"),
        savings="17% savings",
    ),
    CreditPackage(
        amount_usd=Decimal("100.00"),
        credits=1250,
        price_per_credit=Decimal("0.080"),
        savings="20% savings",
    ),
)


def get_credit_pricing() -> list[CreditPackage]:
    """Return the purchasable packages, cheapest first."""
    return [package.model_copy() for package in _PACKAGES]


def find_package(amount_usd: Decimal) -> CreditPackage | None:
    for package in _PACKAGES:
        if package.amount_usd == amount_usd:
            return package.model_copy()
    return None
