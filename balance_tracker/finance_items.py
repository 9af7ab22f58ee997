from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

REFERENCE_CURRENCY = "USD"


class Currency:
    values = {"USD", "EUR", "UAH"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Currency must be one of USD, EUR, UAH.")
        return normalized


class ExpensePeriod:
    values = {"monthly", "yearly"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid subscription period.")
        return normalized


class IncomePeriod:
    values = {"monthly", "yearly", "once"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid revenue period.")
        return normalized


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    amount: Decimal
    currency: str = REFERENCE_CURRENCY


@dataclass(frozen=True)
class RecurringExpense:
    id: str
    name: str
    amount: Decimal
    currency: str
    period: str
    anchor_date: date | str | None
    account_id: str | None = None


@dataclass(frozen=True)
class RecurringIncome:
    id: str
    name: str
    amount: Decimal
    currency: str
    period: str
    anchor_date: date | str | None = None
    account_id: str | None = None


@dataclass(frozen=True)
class Transaction:
    """A single generated cash-flow event, already in the reference currency."""

    id: str
    kind: str
    source_id: str
    account_id: str
    amount: Decimal
    date: date
    description: str
    currency: str = REFERENCE_CURRENCY


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
