from __future__ import annotations

import json
import tempfile
import unittest
from datetime import date
from pathlib import Path

from db_support import DatabaseTestCase

from worktime.errors import ValidationError
from worktime.services.calendar import (
    count_non_working_days_in_month,
    is_non_working_day,
    is_working_day,
    list_non_working_days,
    load_calendar_file,
    load_snapshot,
    parse_calendar_feed,
)

FEED = {
    "year": 2026,
    "months": [
        {"month": 1, "days": "1,2,3,4,5,6,7,8,10,11,17,18,24,25,31"},
        {"month": 2, "days": "1,7,8,14,15,21,22,23+,28"},
        {"month": 3, "days": "1,7,8*,9"},
    ],
}


class CalendarFeedParsingTests(unittest.TestCase):
    def test_markers_are_stripped_and_days_sorted(self) -> None:
        days = parse_calendar_feed(FEED)
        self.assertIn(date(2026, 2, 23), days)
        self.assertIn(date(2026, 3, 8), days)
        self.assertEqual(days, sorted(days))
        self.assertEqual(len(days), 15 + 9 + 4)

    def test_accepts_raw_json_text(self) -> None:
        days = parse_calendar_feed(json.dumps({"year": 2026, "months": [{"month": 5, "days": " 1, 9 ,"}]}))
        self.assertEqual(days, [date(2026, 5, 1), date(2026, 5, 9)])

    def test_invalid_day_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_calendar_feed({"year": 2026, "months": [{"month": 2, "days": "1,30"}]})
        self.assertEqual(ctx.exception.code, "INVALID_CALENDAR_FEED")

    def test_malformed_feed_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            parse_calendar_feed({"year": "soon", "months": []})
        with self.assertRaises(ValidationError):
            parse_calendar_feed({"year": 2026, "months": [{"month": 13, "days": "1"}]})

    def test_load_calendar_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "calendar.json"
            path.write_text(json.dumps(FEED), encoding="utf-8")
            self.assertEqual(len(load_calendar_file(path)), 28)

            broken = Path(tmp_dir) / "broken.json"
            broken.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ValidationError):
                load_calendar_file(broken)

        with self.assertRaises(ValidationError) as ctx:
            load_calendar_file(Path(tmp_dir) / "missing.json")
        self.assertEqual(ctx.exception.code, "CALENDAR_FEED_UNREADABLE")


class CalendarSnapshotTests(DatabaseTestCase):
    def test_snapshot_replaces_previous_set(self) -> None:
        self.assertEqual(load_snapshot(self.db, [date(2026, 1, 1), date(2026, 1, 2), date(2026, 1, 1)]), 2)
        self.assertTrue(is_non_working_day(self.db, date(2026, 1, 2)))

        self.assertEqual(load_snapshot(self.db, [date(2026, 1, 3)]), 1)
        self.assertFalse(is_non_working_day(self.db, date(2026, 1, 2)))
        self.assertTrue(is_working_day(self.db, date(2026, 1, 2)))
        self.assertTrue(is_non_working_day(self.db, date(2026, 1, 3)))

    def test_empty_snapshot_makes_every_day_working(self) -> None:
        load_snapshot(self.db, parse_calendar_feed(FEED))
        load_snapshot(self.db, [])
        self.assertEqual(count_non_working_days_in_month(self.db, 2026, 1), 0)

    def test_counts_and_lists_per_month(self) -> None:
        load_snapshot(self.db, parse_calendar_feed(FEED))
        self.assertEqual(count_non_working_days_in_month(self.db, 2026, 1), 15)
        self.assertEqual(count_non_working_days_in_month(self.db, 2026, 4), 0)

        february = list_non_working_days(self.db, year=2026, month=2)
        self.assertEqual([item.day for item in february], [1, 7, 8, 14, 15, 21, 22, 23, 28])
        self.assertEqual(len(list_non_working_days(self.db, year=2026)), 28)


if __name__ == "__main__":
    unittest.main()
