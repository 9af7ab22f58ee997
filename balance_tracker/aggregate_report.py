from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import AbstractSet, Iterable

from balance_tracker.currency_conversion import CurrencyConverter
from balance_tracker.finance_items import RecurringExpense, RecurringIncome
from balance_tracker.recurrence import (
    EXPENSE_PERIODS,
    SUPPORTED_PERIODS,
    InvalidRecurrenceInput,
    validate_period,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MONTHS_PER_YEAR = Decimal("12")


async def monthly_expense_total(
    expenses: Iterable[RecurringExpense], converter: CurrencyConverter
) -> Decimal:
    return await _monthly_total(expenses, converter, EXPENSE_PERIODS)


async def monthly_income_total(
    incomes: Iterable[RecurringIncome], converter: CurrencyConverter
) -> Decimal:
    """One-time income counts in full rather than being spread over a year."""
    return await _monthly_total(incomes, converter, SUPPORTED_PERIODS)


async def _monthly_total(
    items: Iterable[RecurringExpense | RecurringIncome],
    converter: CurrencyConverter,
    allowed_periods: AbstractSet[str],
) -> Decimal:
    amounts = await asyncio.gather(
        *(_monthly_amount(item, converter, allowed_periods) for item in items)
    )
    return sum(amounts, ZERO)


async def _monthly_amount(
    item: RecurringExpense | RecurringIncome,
    converter: CurrencyConverter,
    allowed_periods: AbstractSet[str],
) -> Decimal:
    try:
        period = validate_period(item.period, allowed_periods)
    except InvalidRecurrenceInput as exc:
        logger.warning("Skipping %s from monthly total: %s", item.id, exc)
        return ZERO

    reference_amount = await converter.to_reference(item.amount, item.currency)
    if period == "yearly":
        return reference_amount / MONTHS_PER_YEAR
    return reference_amount
