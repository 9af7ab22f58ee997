import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from pathlib import Path

from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from balance_tracker.finance_items import Account, RecurringExpense, RecurringIncome
from balance_tracker.storage import (
    ACCOUNTS,
    RECURRING_EXPENSES,
    RECURRING_INCOMES,
    LocalFinanceStore,
    SqlFinanceStore,
    UnknownCollection,
    load_all,
    metadata,
    users,
)


class FinanceStoreContract:
    """Behaviour shared by every store implementation."""

    def make_store(self):
        raise NotImplementedError

    def test_create_and_list_accounts(self) -> None:
        store = self.make_store()

        created = store.create(
            ACCOUNTS, {"name": "Checking", "amount": Decimal("125.50"), "currency": "EUR"}
        )

        self.assertIsInstance(created, Account)
        self.assertEqual(store.get_all(ACCOUNTS), [created])
        self.assertEqual(created.amount, Decimal("125.50"))

    def test_recurring_items_round_trip_anchor_and_account(self) -> None:
        store = self.make_store()

        expense = store.create(
            RECURRING_EXPENSES,
            {
                "name": "Rent",
                "amount": Decimal("300"),
                "currency": "USD",
                "period": "monthly",
                "anchor_date": date(2024, 1, 31),
                "account_id": "a1",
            },
        )
        income = store.create(
            RECURRING_INCOMES,
            {
                "name": "Gift",
                "amount": Decimal("50"),
                "currency": "UAH",
                "period": "once",
                "anchor_date": None,
                "account_id": None,
            },
        )

        self.assertIsInstance(expense, RecurringExpense)
        self.assertEqual(expense.anchor_date, date(2024, 1, 31))
        self.assertEqual(expense.account_id, "a1")
        self.assertIsInstance(income, RecurringIncome)
        self.assertIsNone(income.anchor_date)
        self.assertIsNone(income.account_id)

    def test_partial_update_keeps_other_fields(self) -> None:
        store = self.make_store()
        created = store.create(
            ACCOUNTS, {"name": "Cash", "amount": Decimal("10"), "currency": "USD"}
        )

        updated = store.update(ACCOUNTS, created.id, {"amount": Decimal("20")})

        self.assertEqual(updated, Account(id=created.id, name="Cash", amount=Decimal("20"), currency="USD"))

    def test_update_missing_item_returns_none(self) -> None:
        store = self.make_store()

        self.assertIsNone(store.update(ACCOUNTS, "missing", {"name": "x"}))

    def test_deleting_account_orphans_recurring_items(self) -> None:
        store = self.make_store()
        account = store.create(
            ACCOUNTS, {"name": "Card", "amount": Decimal("0"), "currency": "USD"}
        )
        store.create(
            RECURRING_EXPENSES,
            {
                "name": "Music",
                "amount": Decimal("5"),
                "currency": "USD",
                "period": "monthly",
                "anchor_date": date(2024, 1, 1),
                "account_id": account.id,
            },
        )

        self.assertTrue(store.delete(ACCOUNTS, account.id))
        self.assertFalse(store.delete(ACCOUNTS, account.id))

        data = load_all(store)
        self.assertEqual(data.accounts, [])
        self.assertEqual([item.account_id for item in data.expenses], [account.id])

    def test_unknown_collection_raises(self) -> None:
        store = self.make_store()

        with self.assertRaises(UnknownCollection):
            store.get_all("budgets")


class SqlFinanceStoreTests(FinanceStoreContract, unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            conn.execute(insert(users).values(id=1, email="a@example.com", hashed_password="x"))
            conn.execute(insert(users).values(id=2, email="b@example.com", hashed_password="x"))

    def make_store(self) -> SqlFinanceStore:
        return SqlFinanceStore(self.engine, user_id=1)

    def test_items_are_scoped_to_user(self) -> None:
        mine = self.make_store()
        theirs = SqlFinanceStore(self.engine, user_id=2)
        item = mine.create(ACCOUNTS, {"name": "Mine", "amount": Decimal("1"), "currency": "USD"})

        self.assertEqual(theirs.get_all(ACCOUNTS), [])
        self.assertIsNone(theirs.update(ACCOUNTS, item.id, {"name": "Stolen"}))
        self.assertFalse(theirs.delete(ACCOUNTS, item.id))


class LocalFinanceStoreTests(FinanceStoreContract, unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "local.json"

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def make_store(self) -> LocalFinanceStore:
        return LocalFinanceStore(self.path)

    def test_data_survives_new_store_instance(self) -> None:
        self.make_store().create(
            ACCOUNTS, {"name": "Wallet", "amount": Decimal("3.25"), "currency": "UAH"}
        )

        accounts = LocalFinanceStore(self.path).get_all(ACCOUNTS)

        self.assertEqual([(a.name, a.amount) for a in accounts], [("Wallet", Decimal("3.25"))])

    def test_missing_file_reads_as_empty(self) -> None:
        self.assertEqual(self.make_store().get_all(RECURRING_INCOMES), [])

    def test_concurrent_creates_are_all_kept(self) -> None:
        def create(index: int):
            # Separate instances share the same file, as separate requests do.
            return LocalFinanceStore(self.path).create(
                ACCOUNTS, {"name": f"Account {index}", "amount": Decimal("1"), "currency": "USD"}
            )

        with ThreadPoolExecutor(max_workers=16) as pool:
            created = list(pool.map(create, range(200)))

        stored = self.make_store().get_all(ACCOUNTS)
        self.assertEqual(len(created), 200)
        self.assertEqual(sorted(item.id for item in stored), sorted(item.id for item in created))
        self.assertEqual(list(self.path.parent.glob("*.tmp")), [])

    def test_corrupt_file_is_moved_aside_before_write(self) -> None:
        self.path.write_bytes(b'{"accounts": [')

        created = self.make_store().create(
            ACCOUNTS, {"name": "Fresh", "amount": Decimal("2"), "currency": "USD"}
        )

        corrupt_path = self.path.with_name(self.path.name + ".corrupt")
        self.assertEqual(corrupt_path.read_bytes(), b'{"accounts": [')
        self.assertEqual(self.make_store().get_all(ACCOUNTS), [created])

    def test_undecodable_file_reads_as_empty_and_is_left_alone(self) -> None:
        self.path.write_bytes(b"\xff\xfe\x00garbage")

        self.assertEqual(self.make_store().get_all(ACCOUNTS), [])
        self.assertEqual(self.path.read_bytes(), b"\xff\xfe\x00garbage")

    def test_undecodable_file_is_moved_aside_on_delete(self) -> None:
        self.path.write_bytes(b"\xff\xfe\x00garbage")

        self.assertFalse(self.make_store().delete(ACCOUNTS, "missing"))
        self.assertTrue(self.path.with_name(self.path.name + ".corrupt").exists())
        self.assertFalse(self.path.exists())


if __name__ == "__main__":
    unittest.main()
