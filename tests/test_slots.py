"""Tests for weekly slot expansion."""
from datetime import datetime, timezone
from itertools import islice

from booking.slots import (
    day_of_week, end_time_for, expand_slot_times, find_covering_slot, format_slot_date,
    format_slot_title, slot_has_started, upcoming_slot_options,
)
from models.schemas import WeeklySlot
from tests.factories import BAHRAIN, NOW

MONDAY_MORNING = WeeklySlot(staff_id="s1", day_of_week=1, start_time="09:00", end_time="10:00",
                            slot_duration=30, capacity=2)
WEDNESDAY = WeeklySlot(staff_id="s1", day_of_week=3, start_time="16:00", end_time="17:00",
                       slot_duration=25)


class TestExpansion:
    def test_day_of_week_starts_on_sunday(self):
        assert day_of_week(datetime(2026, 10, 18).date()) == 0
        assert day_of_week(NOW.date()) == 1

    def test_times_fit_inside_window(self):
        assert expand_slot_times(MONDAY_MORNING) == [("09:00", "09:30"), ("09:30", "10:00")]
        assert expand_slot_times(WEDNESDAY) == [("16:00", "16:25"), ("16:25", "16:50")]

    def test_covering_slot(self):
        slots = [MONDAY_MORNING, WEDNESDAY]
        assert find_covering_slot(slots, "2026-10-19", "09:30") is MONDAY_MORNING
        assert find_covering_slot(slots, "2026-10-21", "16:25") is WEDNESDAY
        assert find_covering_slot(slots, "2026-10-19", "09:15") is None
        assert find_covering_slot(slots, "2026-10-20", "09:00") is None
        assert find_covering_slot(slots, "not-a-date", "09:00") is None

    def test_end_time(self):
        assert end_time_for(WEDNESDAY, "16:25") == "16:50"


class TestUpcoming:
    def test_skips_past_times_today(self):
        now = datetime(2026, 10, 19, 9, 10, tzinfo=BAHRAIN)
        options = list(islice(upcoming_slot_options([MONDAY_MORNING, WEDNESDAY], now, 7), 4))
        assert [(o.slot_date, o.start_time) for o in options] == [
            ("2026-10-19", "09:30"),
            ("2026-10-21", "16:00"),
            ("2026-10-21", "16:25"),
            ("2026-10-26", "09:00"),
        ]
        assert options[0].capacity == 2
        assert options[0].end_time == "10:00"

    def test_start_tomorrow(self):
        options = list(upcoming_slot_options([MONDAY_MORNING], NOW, 7, start_today=False))
        assert [o.slot_date for o in options] == ["2026-10-26", "2026-10-26"]

    def test_horizon(self):
        assert list(upcoming_slot_options([WEDNESDAY], NOW, 1)) == []

    def test_slot_has_started(self):
        now = datetime(2026, 10, 19, 9, 10, tzinfo=BAHRAIN)
        assert slot_has_started("2026-10-19", "09:00", now)
        assert slot_has_started("2026-10-18", "23:30", now)
        assert not slot_has_started("2026-10-19", "09:30", now)
        assert not slot_has_started("2026-10-20", "08:00", now)

    def test_slot_start_read_in_reference_zone(self):
        # 06:10 UTC is 09:10 in Bahrain
        now = datetime(2026, 10, 19, 6, 10, tzinfo=timezone.utc).astimezone(BAHRAIN)
        assert slot_has_started("2026-10-19", "09:00", now)


class TestFormatting:
    def test_title(self):
        assert format_slot_title("2026-10-20", "09:30") == "Tue 20 Oct 09:30"

    def test_date(self):
        assert format_slot_date("2026-10-19") == "Monday, 19 October 2026"
