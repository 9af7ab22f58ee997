from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Sequence

from balance_tracker.currency_conversion import CurrencyConverter
from balance_tracker.finance_items import (
    Account,
    RecurringExpense,
    RecurringIncome,
    Transaction,
)
from balance_tracker.transaction_generator import generate

ZERO = Decimal("0")


@dataclass(frozen=True)
class AccountBalance:
    account: Account
    calculated_amount: Decimal


@dataclass(frozen=True)
class BalanceReport:
    date: date
    accounts: List[AccountBalance]
    total: Decimal


async def account_balance(
    account: Account,
    target_date: date,
    transactions: Iterable[Transaction],
    converter: CurrencyConverter,
) -> Decimal:
    """Base amount in USD plus every linked transaction up to ``target_date``."""
    balance = await converter.to_reference(account.amount, account.currency)
    for txn in transactions:
        if txn.account_id == account.id and txn.date <= target_date:
            balance += txn.amount
    return balance


async def total_balance(
    accounts: Iterable[Account],
    target_date: date,
    transactions: Sequence[Transaction],
    converter: CurrencyConverter,
) -> Decimal:
    balances = await asyncio.gather(
        *(account_balance(account, target_date, transactions, converter) for account in accounts)
    )
    return sum(balances, ZERO)


async def calculate_balances(
    accounts: Sequence[Account],
    expenses: Iterable[RecurringExpense],
    incomes: Iterable[RecurringIncome],
    target_date: date,
    converter: CurrencyConverter,
) -> BalanceReport:
    # Expanded once and shared by every account at this date.
    transactions = await generate(expenses, incomes, target_date, converter)
    amounts = await asyncio.gather(
        *(account_balance(account, target_date, transactions, converter) for account in accounts)
    )
    balances = [
        AccountBalance(account=account, calculated_amount=amount)
        for account, amount in zip(accounts, amounts)
    ]
    return BalanceReport(
        date=target_date,
        accounts=balances,
        total=sum(amounts, ZERO),
    )
