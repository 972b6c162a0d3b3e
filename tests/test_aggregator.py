from datetime import datetime, timedelta, timezone

from usagewatch.aggregator import (
    UsageLevel,
    format_reset_time,
    format_time_remaining,
    format_time_since,
    highest_reset_limit,
    highest_reset_time,
    highest_utilization,
    menu_bar_text,
    present_limits,
    usage_level,
)
from usagewatch.models import ResetDisplay, UsageLimit, UsageSnapshot

NOW = datetime(2026, 2, 8, 10, 0, tzinfo=timezone.utc)


def _snapshot(
    session: "float" = 10.0,
    weekly: "float" = 5.0,
    **optional: "UsageLimit",
) -> "UsageSnapshot":
    return UsageSnapshot(
        five_hour=UsageLimit(session, NOW + timedelta(hours=2)),
        seven_day=UsageLimit(weekly, NOW + timedelta(days=3)),
        **optional,
    )


class TestHighestUtilization:
    def test_no_snapshot_is_zero(self) -> "None":
        assert highest_utilization(None) == 0

    def test_required_limits_only(self) -> "None":
        assert highest_utilization(_snapshot(17.0, 42.0)) == 42.0

    def test_includes_optional_limits(self) -> "None":
        snapshot = _snapshot(
            17.0,
            11.0,
            seven_day_opus=UsageLimit(93.0),
            extra_usage=UsageLimit(12.0),
        )
        assert highest_utilization(snapshot) == 93.0

    def test_matches_max_over_present_limits(self) -> "None":
        snapshot = _snapshot(
            3.0,
            8.0,
            seven_day_sonnet=UsageLimit(7.5),
            iguana_necktie=UsageLimit(8.5),
        )
        expected = max(item.limit.utilization for item in present_limits(snapshot))
        assert highest_utilization(snapshot) == expected == 8.5


class TestHighestResetLimit:
    def test_no_snapshot(self) -> "None":
        assert highest_reset_limit(None) is None
        assert highest_reset_time(None) is None

    def test_picks_highest(self) -> "None":
        snapshot = _snapshot(10.0, 60.0)
        best = highest_reset_limit(snapshot)
        assert best is not None
        assert best.key == "seven_day"
        assert highest_reset_time(snapshot) == NOW + timedelta(days=3)

    def test_tie_prefers_session(self) -> "None":
        best = highest_reset_limit(_snapshot(50.0, 50.0))
        assert best is not None
        assert best.key == "five_hour"

    def test_tie_between_optional_limits_uses_canonical_order(self) -> "None":
        snapshot = _snapshot(
            1.0,
            1.0,
            extra_usage=UsageLimit(70.0),
            seven_day_sonnet=UsageLimit(70.0, NOW),
        )
        best = highest_reset_limit(snapshot)
        assert best is not None
        assert best.key == "seven_day_sonnet"
        assert best.limit.resets_at == NOW

    def test_present_limits_are_in_canonical_order(self) -> "None":
        snapshot = _snapshot(extra_usage=UsageLimit(1.0), seven_day_opus=UsageLimit(2.0))
        keys = [item.key for item in present_limits(snapshot)]
        assert keys == ["five_hour", "seven_day", "seven_day_opus", "extra_usage"]


class TestFormatTimeSince:
    def test_just_now(self) -> "None":
        assert format_time_since(NOW - timedelta(seconds=30), NOW) == "just now"

    def test_minutes(self) -> "None":
        assert format_time_since(NOW - timedelta(minutes=5, seconds=20), NOW) == "5m ago"

    def test_hours(self) -> "None":
        assert format_time_since(NOW - timedelta(hours=3, minutes=59), NOW) == "3h ago"


class TestFormatTimeRemaining:
    def test_hours_and_minutes(self) -> "None":
        assert format_time_remaining(NOW + timedelta(minutes=125), NOW) == "2h 5m"

    def test_minutes_only(self) -> "None":
        assert format_time_remaining(NOW + timedelta(minutes=45), NOW) == "45m"

    def test_whole_hours(self) -> "None":
        assert format_time_remaining(NOW + timedelta(hours=2), NOW) == "2h"

    def test_under_a_minute(self) -> "None":
        assert format_time_remaining(NOW + timedelta(seconds=30), NOW) == "<1m"

    def test_past_is_now(self) -> "None":
        assert format_time_remaining(NOW - timedelta(minutes=1), NOW) == "Now"
        assert format_time_remaining(NOW, NOW) == "Now"


class TestFormatResetTime:
    def test_same_day(self) -> "None":
        reset = datetime(2026, 2, 8, 15, 5, tzinfo=timezone.utc)
        assert format_reset_time(reset, NOW, timezone.utc) == "3:05 PM"

    def test_other_day_includes_weekday(self) -> "None":
        reset = datetime(2026, 2, 9, 0, 30, tzinfo=timezone.utc)
        assert format_reset_time(reset, NOW, timezone.utc) == "Mon 12:30 AM"


class TestMenuBarText:
    def test_without_snapshot(self) -> "None":
        assert menu_bar_text(None) == "0%"

    def test_countdown(self) -> "None":
        snapshot = UsageSnapshot(
            five_hour=UsageLimit(17.9, NOW + timedelta(minutes=125)),
            seven_day=UsageLimit(11.0),
        )
        assert menu_bar_text(snapshot, ResetDisplay.COUNTDOWN, NOW) == "17% · 2h 5m"

    def test_reset_time(self) -> "None":
        snapshot = UsageSnapshot(
            five_hour=UsageLimit(17.0, datetime(2026, 2, 8, 15, 5, tzinfo=timezone.utc)),
            seven_day=UsageLimit(11.0),
        )
        text = menu_bar_text(snapshot, ResetDisplay.RESET_TIME, NOW, timezone.utc)
        assert text == "17% · 3:05 PM"

    def test_without_reset(self) -> "None":
        snapshot = UsageSnapshot(five_hour=UsageLimit(4.0), seven_day=UsageLimit(1.0))
        assert menu_bar_text(snapshot, now=NOW) == "4%"


class TestUsageLevel:
    def test_thresholds(self) -> "None":
        assert usage_level(-5.0) is UsageLevel.LOW
        assert usage_level(49.9) is UsageLevel.LOW
        assert usage_level(50.0) is UsageLevel.MEDIUM
        assert usage_level(80.0) is UsageLevel.HIGH
        assert usage_level(140.0) is UsageLevel.HIGH
