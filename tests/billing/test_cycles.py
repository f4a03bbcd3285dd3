"""
Tests for billing cycle calculations.

Covers:
- Cycle ids before, on and after the anchor day
- Year rollover
- Anchor days that do not exist in short months
- Next reset date, including timezone preservation
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from invow.billing.cycles import current_cycle, cycle_start, next_reset_date


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestCurrentCycle:
    """Test cycle identification."""

    def test_before_anchor_day_uses_previous_month(self):
        """Before the anchor day the cycle started last month."""
        assert current_cycle(_utc(2024, 1, 15), _utc(2024, 1, 10)) == "2023-12-15"

    def test_after_anchor_day_uses_this_month(self):
        assert current_cycle(_utc(2024, 1, 15), _utc(2024, 1, 20)) == "2024-01-15"

    def test_on_anchor_day_starts_new_cycle(self):
        """The anchor day itself belongs to the new cycle."""
        assert current_cycle(_utc(2023, 6, 15), _utc(2024, 1, 15)) == "2024-01-15"

    def test_year_rollover(self):
        assert current_cycle(_utc(2024, 3, 15), _utc(2024, 1, 5)) == "2023-12-15"

    @pytest.mark.parametrize(
        ("anchor", "now", "expected"),
        [
            (_utc(2024, 1, 31), _utc(2024, 2, 29), "2024-02-29"),
            (_utc(2024, 1, 31), _utc(2024, 2, 28), "2024-01-31"),
            (_utc(2023, 1, 31), _utc(2023, 4, 30), "2023-04-30"),
            (_utc(2024, 1, 31), _utc(2024, 3, 30), "2024-02-29"),
            (_utc(2023, 1, 30), _utc(2023, 3, 1), "2023-02-28"),
        ],
    )
    def test_short_month_clamps_to_last_day(self, anchor, now, expected):
        """Anchor days past a month's end are clamped to its last day."""
        assert current_cycle(anchor, now) == expected

    def test_cycle_start_returns_date(self):
        start = cycle_start(_utc(2024, 1, 15), _utc(2024, 1, 10))
        assert start.isoformat() == "2023-12-15"


class TestNextResetDate:
    """Test next reset date calculation."""

    def test_later_this_month(self):
        assert next_reset_date(_utc(2024, 1, 15), _utc(2024, 1, 10, 12)) == _utc(2024, 1, 15)

    def test_exactly_at_reset_moves_to_next_month(self):
        """The result is strictly after now."""
        assert next_reset_date(_utc(2024, 1, 15), _utc(2024, 1, 15)) == _utc(2024, 2, 15)

    def test_after_anchor_day(self):
        assert next_reset_date(_utc(2024, 1, 15), _utc(2024, 1, 20, 8)) == _utc(2024, 2, 15)

    def test_december_rolls_into_january(self):
        assert next_reset_date(_utc(2024, 1, 15), _utc(2024, 12, 20)) == _utc(2025, 1, 15)

    def test_clamped_in_february(self):
        assert next_reset_date(_utc(2024, 1, 31), _utc(2024, 2, 10)) == _utc(2024, 2, 29)
        assert next_reset_date(_utc(2024, 1, 31), _utc(2024, 1, 31, 10)) == _utc(2024, 2, 29)

    def test_keeps_timezone_of_now(self):
        """Midnight is computed in the reference time's timezone."""
        jakarta = timezone(timedelta(hours=7))
        now = datetime(2024, 1, 10, 9, 30, tzinfo=jakarta)

        reset = next_reset_date(_utc(2024, 1, 15), now)

        assert reset == datetime(2024, 1, 15, tzinfo=jakarta)
        assert reset.utcoffset() == timedelta(hours=7)
