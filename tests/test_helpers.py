"""
Unit Tests for Helper Utilities
"""

import unittest
from datetime import date, datetime

from kaos_sync.utils.helpers import (
    build_jql, count_weekdays_without, parse_jira_datetime, seconds_to_hours
)


class TestHelpers(unittest.TestCase):

    def test_parse_jira_datetime_converts_to_naive_utc(self):
        parsed = parse_jira_datetime('2026-10-01T10:00:00.000+0200')
        self.assertEqual(parsed, datetime(2026, 10, 1, 8, 0))
        self.assertIsNone(parsed.tzinfo)

    def test_parse_jira_datetime_invalid(self):
        self.assertIsNone(parse_jira_datetime('not a date'))
        self.assertIsNone(parse_jira_datetime(None))

    def test_seconds_to_hours(self):
        self.assertEqual(seconds_to_hours(5400), 1.5)
        self.assertIsNone(seconds_to_hours(None))

    def test_count_weekdays_without(self):
        """Test that weekends and covered days are not counted."""
        # 2026-10-01 is a Thursday
        covered = {date(2026, 10, 1), date(2026, 10, 2)}
        self.assertEqual(count_weekdays_without(date(2026, 10, 1), date(2026, 10, 8), covered), 4)
        self.assertEqual(count_weekdays_without(date(2026, 10, 3), date(2026, 10, 4), set()), 0)
        self.assertEqual(count_weekdays_without(date(2026, 10, 8), date(2026, 10, 1), set()), 0)

    def test_build_jql_single_board(self):
        jql = build_jql(['42'])
        self.assertEqual(jql, 'sprint in openSprints() AND cf[24140] = "42" ORDER BY key ASC')

    def test_build_jql_two_boards_with_clause(self):
        jql = build_jql(['42', '43'], additional_clauses=['updated >= "2026-10-01 08:30"'])
        self.assertEqual(
            jql,
            'sprint in openSprints() AND cf[24140] in ("42", "43") '
            'AND updated >= "2026-10-01 08:30" ORDER BY key ASC'
        )


if __name__ == '__main__':
    unittest.main()
