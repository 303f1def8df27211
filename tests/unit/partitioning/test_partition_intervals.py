from datetime import datetime

import pytest

from partsmith.modules.partitioning.domain.intervals import (
    DAY_PATTERN,
    MINUTE_PATTERN,
    MONTH_PATTERN,
    QUARTER_PATTERN,
    SECOND_PATTERN,
    WEEK_PATTERN,
    YEAR_PATTERN,
    Granularity,
    TimeInterval,
    format_suffix,
    parse_id_interval,
    parse_suffix,
    suffix_pattern,
    truncate,
    truncate_for,
)
from partsmith.shared.core.exceptions import DateTimeRangeOverflowError, InvalidIntervalError


class TestTimeIntervalParse:
    def test_named_interval(self):
        interval = TimeInterval.parse("daily")
        assert interval.granularity is Granularity.DAILY
        assert interval.seconds == 86400

    def test_arithmetic_spelling_of_named_interval_is_canonicalized(self):
        assert TimeInterval.parse("1 day") == TimeInterval.named(Granularity.DAILY)
        assert TimeInterval.parse("3 months") == TimeInterval.named(Granularity.QUARTERLY)
        assert str(TimeInterval.parse("30 minutes")) == "half-hour"

    def test_arbitrary_interval(self):
        interval = TimeInterval.parse("1 year 6 months")
        assert interval.months == 18
        assert interval.seconds == 0
        assert not interval.is_named

    def test_plural_units(self):
        assert TimeInterval.parse("45 minutes").seconds == 2700
        assert TimeInterval.parse("2 weeks").seconds == 14 * 86400

    @pytest.mark.parametrize("raw", ["", "fortnightly", "3 parsecs", "every 2 days"])
    def test_rejects_unparseable(self, raw):
        with pytest.raises(InvalidIntervalError):
            TimeInterval.parse(raw)


class TestTruncation:
    def test_quarter(self):
        assert truncate(datetime(2024, 8, 17, 13, 5), Granularity.QUARTERLY) == datetime(2024, 7, 1)

    def test_week_starts_monday(self):
        # 2024-05-15 is a Wednesday
        assert truncate(datetime(2024, 5, 15, 10), Granularity.WEEKLY) == datetime(2024, 5, 13)

    def test_sub_hour_buckets(self):
        ts = datetime(2024, 5, 15, 10, 47, 12)
        assert truncate(ts, Granularity.HALF_HOUR) == datetime(2024, 5, 15, 10, 30)
        assert truncate(ts, Granularity.QUARTER_HOUR) == datetime(2024, 5, 15, 10, 45)

    def test_arbitrary_interval_truncates_by_magnitude(self):
        ts = datetime(2024, 5, 15, 10, 47)
        assert truncate_for(TimeInterval.parse("2 days"), ts) == datetime(2024, 5, 15)
        assert truncate_for(TimeInterval.parse("45 minutes"), ts) == datetime(2024, 5, 15, 10)
        assert truncate_for(TimeInterval.parse("18 months"), ts) == datetime(2024, 1, 1)


class TestCalendarArithmetic:
    def test_month_shift_is_calendar_correct(self):
        monthly = TimeInterval.named(Granularity.MONTHLY)
        assert monthly.shift(datetime(2024, 1, 1)) == datetime(2024, 2, 1)
        assert monthly.shift(datetime(2024, 3, 1), -2) == datetime(2024, 1, 1)

    def test_steps_between(self):
        monthly = TimeInterval.named(Granularity.MONTHLY)
        assert monthly.steps_between(datetime(2024, 1, 1), datetime(2024, 5, 1)) == 4
        daily = TimeInterval.named(Granularity.DAILY)
        assert daily.steps_between(datetime(2024, 5, 15), datetime(2024, 5, 13)) == -2

    def test_shift_out_of_range_raises_overflow(self):
        yearly = TimeInterval.named(Granularity.YEARLY)
        with pytest.raises(DateTimeRangeOverflowError):
            yearly.shift(datetime(9999, 6, 1))

    def test_to_sql(self):
        assert TimeInterval.parse("1 year 6 months").to_sql() == "18 months"
        assert TimeInterval.parse("45 minutes").to_sql() == "2700 seconds"


class TestSuffixes:
    def test_quarter_suffix_round_trip(self):
        suffix = format_suffix(datetime(2024, 7, 1), QUARTER_PATTERN)
        assert suffix == "2024q3"
        lower = parse_suffix(suffix, QUARTER_PATTERN)
        assert lower == datetime(2024, 7, 1)
        assert TimeInterval.named(Granularity.QUARTERLY).shift(lower) == datetime(2024, 10, 1)

    def test_iso_week_suffix(self):
        assert format_suffix(datetime(2024, 5, 13), WEEK_PATTERN) == "2024w20"
        assert parse_suffix("2024w20", WEEK_PATTERN) == datetime(2024, 5, 13)

    def test_iso_week_crossing_year_end(self):
        # Monday 2024-12-30 opens ISO week 1 of 2025
        assert format_suffix(datetime(2024, 12, 30), WEEK_PATTERN) == "2025w01"
        assert parse_suffix("2025w01", WEEK_PATTERN) == datetime(2024, 12, 30)

    def test_day_and_minute_suffixes(self):
        assert format_suffix(datetime(2024, 5, 15), DAY_PATTERN) == "2024_05_15"
        assert format_suffix(datetime(2024, 5, 15, 10, 30), MINUTE_PATTERN) == "2024_05_15_1030"
        assert parse_suffix("2024_05_15_1030", MINUTE_PATTERN) == datetime(2024, 5, 15, 10, 30)

    def test_unparseable_suffix_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_suffix("default", DAY_PATTERN)
        with pytest.raises(ValueError):
            parse_suffix("2024q5", QUARTER_PATTERN)

    @pytest.mark.parametrize(
        "raw, pattern",
        [
            ("yearly", YEAR_PATTERN),
            ("quarterly", QUARTER_PATTERN),
            ("monthly", MONTH_PATTERN),
            ("weekly", WEEK_PATTERN),
            ("daily", DAY_PATTERN),
            ("hourly", MINUTE_PATTERN),
            ("quarter-hour", MINUTE_PATTERN),
            ("45 minutes", MINUTE_PATTERN),
            ("90 seconds", SECOND_PATTERN),
            ("2 days", DAY_PATTERN),
            ("18 months", MONTH_PATTERN),
            ("2 years", YEAR_PATTERN),
        ],
    )
    def test_suffix_pattern(self, raw, pattern):
        assert suffix_pattern(TimeInterval.parse(raw)) == pattern


class TestIdInterval:
    def test_valid(self):
        assert parse_id_interval("100") == 100
        assert parse_id_interval(10) == 10

    @pytest.mark.parametrize("raw", ["1", "0", "-5", "ten", None])
    def test_invalid(self, raw):
        with pytest.raises(InvalidIntervalError):
            parse_id_interval(raw)
