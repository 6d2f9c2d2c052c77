"""Cron parsing and matching."""

from datetime import datetime, timezone

import pytest

from revrec_batch import CronSpec, matches_cron, next_cron_match, parse_cron


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestParseCron:
    def test_wildcards(self):
        assert parse_cron("* * * * *") == CronSpec()

    def test_hourly_at_minute_five(self):
        spec = parse_cron("5 * * * *")
        assert spec.minutes == frozenset({5})
        assert spec.hours == frozenset(range(24))

    def test_step_list_and_range(self):
        spec = parse_cron("*/15 9-17/4 1,15 * *")
        assert spec.minutes == frozenset({0, 15, 30, 45})
        assert spec.hours == frozenset({9, 13, 17})
        assert spec.days_of_month == frozenset({1, 15})

    def test_value_with_step_runs_to_max(self):
        assert parse_cron("5/20 * * * *").minutes == frozenset({5, 25, 45})

    def test_sunday_as_seven(self):
        assert parse_cron("0 0 * * 7").days_of_week == frozenset({0})
        assert parse_cron("0 0 * * 5-7").days_of_week == frozenset({5, 6, 0})

    @pytest.mark.parametrize(
        "expression",
        [
            "* * * *",
            "* * * * * *",
            "60 * * * *",
            "* 24 * * *",
            "* * 0 * *",
            "* * * 13 *",
            "* * * * 8",
            "*/0 * * * *",
            "10-5 * * * *",
            "1,,2 * * * *",
            "abc * * * *",
        ],
    )
    def test_invalid(self, expression):
        with pytest.raises(ValueError):
            parse_cron(expression)


class TestMatching:
    def test_weekday_convention(self):
        spec = parse_cron("0 9 * * 0")
        assert matches_cron(spec, _utc(2024, 1, 7, 9, 0))  # Sunday
        assert not matches_cron(spec, _utc(2024, 1, 8, 9, 0))

    def test_next_match_is_strictly_after(self):
        spec = parse_cron("5 * * * *")
        assert next_cron_match(spec, _utc(2024, 1, 1, 12, 0, 30)) == _utc(2024, 1, 1, 12, 5)
        assert next_cron_match(spec, _utc(2024, 1, 1, 12, 5)) == _utc(2024, 1, 1, 13, 5)

    def test_next_match_across_month(self):
        spec = parse_cron("0 0 1 * *")
        assert next_cron_match(spec, _utc(2024, 1, 31, 23, 59)) == _utc(2024, 2, 1, 0, 0)

    def test_impossible_schedule(self):
        with pytest.raises(ValueError):
            next_cron_match(parse_cron("0 0 30 2 *"), _utc(2024, 1, 1))
