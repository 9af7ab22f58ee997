import unittest
from datetime import date

from balance_tracker.recurrence import EXPENSE_PERIODS, InvalidRecurrenceInput, expand


class RecurrenceExpansionTests(unittest.TestCase):
    def test_monthly_clamps_to_month_end_and_recovers_anchor_day(self) -> None:
        occurrences = expand(date(2024, 1, 31), "monthly", date(2024, 4, 30))

        self.assertEqual(
            occurrences,
            [
                date(2024, 1, 31),
                date(2024, 2, 29),
                date(2024, 3, 31),
                date(2024, 4, 30),
            ],
        )

    def test_yearly_leap_day_falls_back_to_february_28(self) -> None:
        occurrences = expand(date(2020, 2, 29), "yearly", date(2023, 3, 1))

        self.assertEqual(
            occurrences,
            [
                date(2020, 2, 29),
                date(2021, 2, 28),
                date(2022, 2, 28),
                date(2023, 2, 28),
            ],
        )

    def test_yearly_returns_to_leap_day_in_leap_years(self) -> None:
        occurrences = expand(date(2020, 2, 29), "yearly", date(2024, 12, 31))

        self.assertEqual(occurrences[-1], date(2024, 2, 29))

    def test_target_before_anchor_is_empty(self) -> None:
        for period in ("monthly", "yearly", "once"):
            with self.subTest(period=period):
                self.assertEqual(expand(date(2024, 6, 1), period, date(2024, 5, 31)), [])

    def test_once_yields_only_the_anchor(self) -> None:
        self.assertEqual(
            expand(date(2024, 6, 1), "once", date(2030, 1, 1)),
            [date(2024, 6, 1)],
        )

    def test_target_on_anchor_includes_anchor(self) -> None:
        self.assertEqual(
            expand(date(2024, 3, 15), "monthly", date(2024, 3, 15)),
            [date(2024, 3, 15)],
        )

    def test_accepts_iso_strings_and_mixed_case_periods(self) -> None:
        occurrences = expand("2024-01-10", " Monthly ", date(2024, 3, 9))

        self.assertEqual(occurrences, [date(2024, 1, 10), date(2024, 2, 10)])

    def test_accepts_timestamp_strings(self) -> None:
        occurrences = expand("2024-01-10T00:00:00.000Z", "once", date(2024, 1, 10))

        self.assertEqual(occurrences, [date(2024, 1, 10)])

    def test_monthly_crosses_year_boundary(self) -> None:
        occurrences = expand(date(2024, 11, 30), "monthly", date(2025, 2, 28))

        self.assertEqual(
            occurrences,
            [
                date(2024, 11, 30),
                date(2024, 12, 30),
                date(2025, 1, 30),
                date(2025, 2, 28),
            ],
        )

    def test_unknown_period_raises(self) -> None:
        with self.assertRaises(InvalidRecurrenceInput):
            expand(date(2024, 1, 1), "weekly", date(2024, 2, 1))

    def test_expense_periods_reject_once(self) -> None:
        with self.assertRaises(InvalidRecurrenceInput):
            expand(date(2024, 1, 1), "once", date(2024, 2, 1), EXPENSE_PERIODS)

        self.assertEqual(
            expand(date(2024, 1, 1), "monthly", date(2024, 2, 1), EXPENSE_PERIODS),
            [date(2024, 1, 1), date(2024, 2, 1)],
        )

    def test_malformed_anchor_raises(self) -> None:
        with self.assertRaises(InvalidRecurrenceInput):
            expand("2024-13-01", "monthly", date(2024, 2, 1))


if __name__ == "__main__":
    unittest.main()
