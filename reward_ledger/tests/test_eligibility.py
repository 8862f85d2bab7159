"""
Unit Tests for the daily-eligibility gate

Tests cover:
1. Calendar-day reset (not a rolling window)
2. Next-available instant
3. Reference timezone
4. Daily limits and cooldowns
"""

from datetime import datetime, timedelta, timezone

import pytz

from reward_ledger.eligibility import (
    check_cooldown,
    check_daily_eligibility,
    check_daily_limit,
    count_today,
    next_day_start,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestDailyEligibility:
    """Tests for the once-per-day gate."""

    def test_never_claimed_is_eligible(self):
        result = check_daily_eligibility(None, NOW)

        assert result.eligible is True
        assert result.next_available_at is None

    def test_same_day_is_not_eligible(self):
        result = check_daily_eligibility(NOW.replace(hour=0, minute=1), NOW)

        assert result.eligible is False
        assert result.next_available_at == datetime(2026, 3, 11, tzinfo=timezone.utc)

    def test_previous_day_is_eligible_even_within_24h(self):
        """A claim at 23:59 yesterday does not block a claim at 00:01 today."""
        last = datetime(2026, 3, 9, 23, 59, tzinfo=timezone.utc)
        now = datetime(2026, 3, 10, 0, 1, tzinfo=timezone.utc)

        assert check_daily_eligibility(last, now).eligible is True

    def test_repeated_checks_agree(self):
        last = NOW - timedelta(hours=1)

        first = check_daily_eligibility(last, NOW)
        second = check_daily_eligibility(last, NOW)

        assert first == second

    def test_reference_timezone_moves_the_boundary(self):
        """17:00 and 18:30 UTC fall on different days in Asia/Dhaka (UTC+6)."""
        dhaka = pytz.timezone("Asia/Dhaka")
        last = datetime(2026, 3, 10, 17, 0, tzinfo=timezone.utc)  # 23:00 local
        now = datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)  # 00:30 local

        assert check_daily_eligibility(last, now).eligible is False
        assert check_daily_eligibility(last, now, dhaka).eligible is True

    def test_next_day_start_is_local_midnight(self):
        dhaka = pytz.timezone("Asia/Dhaka")
        boundary = next_day_start(datetime(2026, 3, 10, 17, 0, tzinfo=timezone.utc), dhaka)

        assert boundary == datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)

    def test_naive_timestamps_are_read_as_utc(self):
        result = check_daily_eligibility(datetime(2026, 3, 10, 1, 0), NOW)

        assert result.eligible is False


class TestLimitsAndCooldowns:
    """Tests for counter-based limits."""

    def test_counter_from_yesterday_counts_as_zero(self):
        yesterday = NOW - timedelta(days=1)

        assert count_today(10, yesterday, NOW) == 0
        assert check_daily_limit(10, 10, yesterday, NOW).eligible is True

    def test_limit_reached_today(self):
        result = check_daily_limit(10, 10, NOW - timedelta(minutes=5), NOW)

        assert result.eligible is False
        assert result.next_available_at == datetime(2026, 3, 11, tzinfo=timezone.utc)

    def test_cooldown(self):
        last = NOW - timedelta(seconds=10)

        waiting = check_cooldown(last, NOW, 30)
        assert waiting.eligible is False
        assert waiting.next_available_at == last + timedelta(seconds=30)

        assert check_cooldown(last, NOW, 10).eligible is True
        assert check_cooldown(None, NOW, 30).eligible is True
