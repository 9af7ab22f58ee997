from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Iterable, List

from balance_tracker.currency_conversion import CurrencyConverter
from balance_tracker.finance_items import RecurringExpense, RecurringIncome, Transaction
from balance_tracker.recurrence import (
    EXPENSE_PERIODS,
    SUPPORTED_PERIODS,
    InvalidRecurrenceInput,
    expand,
)

logger = logging.getLogger(__name__)

KIND_TO_PREFIX = {
    "expense": ("sub", "subscription", -1),
    "income": ("rev", "income", 1),
}
KIND_TO_PERIODS = {
    "expense": EXPENSE_PERIODS,
    "income": SUPPORTED_PERIODS,
}


async def generate(
    expenses: Iterable[RecurringExpense],
    incomes: Iterable[RecurringIncome],
    target_date: date,
    converter: CurrencyConverter,
) -> List[Transaction]:
    """Expand every linked recurring item into transactions up to ``target_date``.

    Items without an account or anchor date are skipped, as are items whose
    recurrence cannot be expanded. The result is ordered by date.
    """
    jobs = [_item_transactions(item, "expense", target_date, converter) for item in expenses]
    jobs.extend(_item_transactions(item, "income", target_date, converter) for item in incomes)

    transactions: List[Transaction] = []
    for item_transactions in await asyncio.gather(*jobs):
        transactions.extend(item_transactions)
    transactions.sort(key=lambda txn: txn.date)
    return transactions


async def transaction_history(
    expenses: Iterable[RecurringExpense],
    incomes: Iterable[RecurringIncome],
    start_date: date,
    end_date: date,
    converter: CurrencyConverter,
) -> List[Transaction]:
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")
    transactions = await generate(expenses, incomes, end_date, converter)
    return [txn for txn in transactions if start_date <= txn.date <= end_date]


async def _item_transactions(
    item: RecurringExpense | RecurringIncome,
    kind: str,
    target_date: date,
    converter: CurrencyConverter,
) -> List[Transaction]:
    if not item.account_id or not item.anchor_date:
        logger.debug("Skipping %s %s without account or anchor date", kind, item.id)
        return []

    try:
        occurrences = expand(
            item.anchor_date, item.period, target_date, KIND_TO_PERIODS[kind]
        )
    except InvalidRecurrenceInput as exc:
        logger.warning("Skipping %s %s: %s", kind, item.id, exc)
        return []
    if not occurrences:
        return []

    prefix, label, sign = KIND_TO_PREFIX[kind]
    reference_amount = await converter.to_reference(item.amount, item.currency)
    return [
        Transaction(
            id=f"{prefix}-{item.id}-{occurrence.isoformat()}",
            kind=kind,
            source_id=item.id,
            account_id=item.account_id,
            amount=reference_amount * sign,
            date=occurrence,
            description=f"{item.name} {label}",
        )
        for occurrence in occurrences
    ]
