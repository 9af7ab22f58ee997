"""Persistence for accounts and recurring items.

Two stores share one shape: ``SqlFinanceStore`` serves an authenticated
user from the relational database, ``LocalFinanceStore`` keeps anonymous
data in a JSON file. The balance engine never knows which one it got.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, List, Mapping, Protocol
import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from balance_tracker.finance_items import Account, RecurringExpense, RecurringIncome
from balance_tracker.recurrence import parse_anchor_date

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
RECURRING_EXPENSES = "recurring_expenses"
RECURRING_INCOMES = "recurring_incomes"

FinanceItem = Account | RecurringExpense | RecurringIncome

_path_locks: dict = {}
_path_locks_guard = threading.Lock()

metadata = MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

finance_items = Table(
    "finance_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Column("updated_at", DateTime, nullable=False, default=_utcnow),
)

# account_id is deliberately not a foreign key: deleting an account
# leaves its recurring items orphaned instead of cascading.
subscription_items = Table(
    "subscription_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("period", String(10), nullable=False),
    Column("repetition_date", Date, nullable=False),
    Column("account_id", String(36)),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Column("updated_at", DateTime, nullable=False, default=_utcnow),
)

revenue_items = Table(
    "revenue_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("period", String(10), nullable=False),
    Column("repetition_date", Date),
    Column("account_id", String(36)),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Column("updated_at", DateTime, nullable=False, default=_utcnow),
)

COLLECTION_TABLES = {
    ACCOUNTS: finance_items,
    RECURRING_EXPENSES: subscription_items,
    RECURRING_INCOMES: revenue_items,
}


class UnknownCollection(KeyError):
    """Raised for a collection name outside the three supported ones."""


@dataclass(frozen=True)
class FinanceData:
    accounts: List[Account] = field(default_factory=list)
    expenses: List[RecurringExpense] = field(default_factory=list)
    incomes: List[RecurringIncome] = field(default_factory=list)


class FinanceStore(Protocol):
    def get_all(self, collection: str) -> List[FinanceItem]: ...

    def create(self, collection: str, values: Mapping[str, Any]) -> FinanceItem: ...

    def update(
        self, collection: str, item_id: str, values: Mapping[str, Any]
    ) -> FinanceItem | None: ...

    def delete(self, collection: str, item_id: str) -> bool: ...


def load_all(store: FinanceStore) -> FinanceData:
    return FinanceData(
        accounts=store.get_all(ACCOUNTS),
        expenses=store.get_all(RECURRING_EXPENSES),
        incomes=store.get_all(RECURRING_INCOMES),
    )


def build_item(collection: str, record: Mapping[str, Any]) -> FinanceItem:
    """Build a domain item from a record keyed by domain field names."""
    if collection == ACCOUNTS:
        return Account(
            id=str(record["id"]),
            name=record["name"],
            amount=Decimal(str(record["amount"])),
            currency=record["currency"],
        )
    if collection == RECURRING_EXPENSES:
        return RecurringExpense(
            id=str(record["id"]),
            name=record["name"],
            amount=Decimal(str(record["amount"])),
            currency=record["currency"],
            period=record["period"],
            anchor_date=_as_date(record.get("anchor_date")),
            account_id=record.get("account_id") or None,
        )
    if collection == RECURRING_INCOMES:
        return RecurringIncome(
            id=str(record["id"]),
            name=record["name"],
            amount=Decimal(str(record["amount"])),
            currency=record["currency"],
            period=record["period"],
            anchor_date=_as_date(record.get("anchor_date")),
            account_id=record.get("account_id") or None,
        )
    raise UnknownCollection(collection)


def _as_date(value: date | str | None) -> date | None:
    if not value:
        return None
    return parse_anchor_date(value)


def _table_for(collection: str) -> Table:
    try:
        return COLLECTION_TABLES[collection]
    except KeyError as exc:
        raise UnknownCollection(collection) from exc


def _row_to_record(row: Mapping[str, Any]) -> dict:
    record = dict(row)
    if "repetition_date" in record:
        record["anchor_date"] = record.pop("repetition_date")
    return record


def _record_to_columns(values: Mapping[str, Any]) -> dict:
    columns = dict(values)
    if "anchor_date" in columns:
        columns["repetition_date"] = _as_date(columns.pop("anchor_date"))
    if "account_id" in columns:
        columns["account_id"] = columns["account_id"] or None
    return columns


@dataclass
class SqlFinanceStore:
    """Relational store scoped to a single authenticated user."""

    engine: Engine
    user_id: int

    def get_all(self, collection: str) -> List[FinanceItem]:
        table = _table_for(collection)
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(table)
                .where(table.c.user_id == self.user_id)
                .order_by(table.c.created_at.asc())
            ).mappings().all()
        return [build_item(collection, _row_to_record(row)) for row in rows]

    def create(self, collection: str, values: Mapping[str, Any]) -> FinanceItem:
        table = _table_for(collection)
        item_id = str(uuid.uuid4())
        columns = _record_to_columns(values)
        with self.engine.begin() as conn:
            conn.execute(insert(table).values(id=item_id, user_id=self.user_id, **columns))
            row = conn.execute(select(table).where(table.c.id == item_id)).mappings().first()
        return build_item(collection, _row_to_record(row))

    def update(
        self, collection: str, item_id: str, values: Mapping[str, Any]
    ) -> FinanceItem | None:
        table = _table_for(collection)
        columns = _record_to_columns(values)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(table)
                .where(table.c.id == item_id, table.c.user_id == self.user_id)
                .values(updated_at=_utcnow(), **columns)
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(select(table).where(table.c.id == item_id)).mappings().first()
        return build_item(collection, _row_to_record(row))

    def delete(self, collection: str, item_id: str) -> bool:
        table = _table_for(collection)
        with self.engine.begin() as conn:
            result = conn.execute(
                table.delete().where(table.c.id == item_id, table.c.user_id == self.user_id)
            )
        return result.rowcount > 0


@dataclass
class LocalFinanceStore:
    """JSON-file store used when no user is signed in.

    Every operation holds a lock shared by all stores on the same path, so
    concurrent requests never interleave a read-modify-write.
    """

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @property
    def _lock(self) -> threading.Lock:
        key = str(self.path.resolve())
        with _path_locks_guard:
            return _path_locks.setdefault(key, threading.Lock())

    def get_all(self, collection: str) -> List[FinanceItem]:
        _table_for(collection)
        with self._lock:
            records = self._read().get(collection, [])
        return [build_item(collection, record) for record in records]

    def create(self, collection: str, values: Mapping[str, Any]) -> FinanceItem:
        _table_for(collection)
        with self._lock:
            data = self._read(for_update=True)
            record = {"id": str(uuid.uuid4()), **_serialize(values)}
            item = build_item(collection, record)
            data.setdefault(collection, []).append(record)
            self._write(data)
        return item

    def update(
        self, collection: str, item_id: str, values: Mapping[str, Any]
    ) -> FinanceItem | None:
        _table_for(collection)
        with self._lock:
            data = self._read(for_update=True)
            for record in data.get(collection, []):
                if record["id"] == item_id:
                    record.update(_serialize(values))
                    item = build_item(collection, record)
                    self._write(data)
                    return item
        return None

    def delete(self, collection: str, item_id: str) -> bool:
        _table_for(collection)
        with self._lock:
            data = self._read(for_update=True)
            records = data.get(collection, [])
            remaining = [record for record in records if record["id"] != item_id]
            if len(remaining) == len(records):
                return False
            data[collection] = remaining
            self._write(data)
        return True

    def _read(self, for_update: bool = False) -> dict:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError):
            if for_update:
                self._quarantine()
            else:
                logger.warning("Ignoring unreadable local store at %s", self.path)
            return {}

    def _quarantine(self) -> None:
        # Keep the unreadable bytes before the next write replaces them.
        corrupt_path = self.path.with_name(self.path.name + ".corrupt")
        os.replace(self.path, corrupt_path)
        logger.warning("Moved unreadable local store %s aside to %s", self.path, corrupt_path)

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as handle:
            json.dump(data, handle, indent=2)
        try:
            os.replace(handle.name, self.path)
        except OSError:
            os.unlink(handle.name)
            raise


def _serialize(values: Mapping[str, Any]) -> dict:
    serialized = {}
    for key, value in values.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, date):
            value = value.isoformat()
        serialized[key] = value
    return serialized
