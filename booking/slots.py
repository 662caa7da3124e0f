"""
Slot arithmetic for the booking sub-flow.

Weekly availability windows (day of week + start/end + duration) are
expanded into concrete bookable times. Everything here is pure.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Optional

from models.schemas import WeeklySlot


@dataclass(frozen=True)
class SlotOption:
    staff_id: str
    slot_date: str          # YYYY-MM-DD
    start_time: str         # HH:MM
    end_time: str
    capacity: int

    @property
    def title(self) -> str:
        return format_slot_title(self.slot_date, self.start_time)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def _minutes(value: str) -> int:
    t = _parse_hhmm(value)
    return t.hour * 60 + t.minute


def _hhmm(total_minutes: int) -> str:
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def day_of_week(day: date) -> int:
    """0 = Sunday, matching how weekly slots are stored."""
    return (day.weekday() + 1) % 7


def expand_slot_times(slot: WeeklySlot) -> list[tuple[str, str]]:
    """All (start, end) pairs that fit fully inside the window."""
    duration = max(int(slot.slot_duration or 0), 1)
    start, end = _minutes(slot.start_time), _minutes(slot.end_time)
    times = []
    cursor = start
    while cursor + duration <= end:
        times.append((_hhmm(cursor), _hhmm(cursor + duration)))
        cursor += duration
    return times


def slot_has_started(slot_date: str, start_time: str, now: datetime) -> bool:
    """Whether the slot start is at or before `now`, read in now's time zone."""
    start = datetime.combine(date.fromisoformat(slot_date), _parse_hhmm(start_time), tzinfo=now.tzinfo)
    return start <= now


def find_covering_slot(slots: Iterable[WeeklySlot], slot_date: str, start_time: str) -> Optional[WeeklySlot]:
    """The weekly slot that generates `start_time` on `slot_date`, if any."""
    try:
        day = date.fromisoformat(slot_date)
        wanted = _hhmm(_minutes(start_time))
    except ValueError:
        return None
    for slot in slots:
        if slot.day_of_week != day_of_week(day):
            continue
        if any(start == wanted for start, _ in expand_slot_times(slot)):
            return slot
    return None


def end_time_for(slot: WeeklySlot, start_time: str) -> str:
    for start, end in expand_slot_times(slot):
        if start == start_time:
            return end
    return start_time


def upcoming_slot_options(
    slots: list[WeeklySlot],
    now: datetime,
    max_advance_days: int = 30,
    start_today: bool = True,
) -> Iterator[SlotOption]:
    """Yield concrete slot times in date/time order, skipping times already past."""
    today = now.date()
    first = 0 if start_today else 1
    for offset in range(first, max(max_advance_days, first) + 1):
        day = today + timedelta(days=offset)
        dow = day_of_week(day)
        options = []
        for slot in slots:
            if slot.day_of_week != dow:
                continue
            for start, end in expand_slot_times(slot):
                if day == today and _parse_hhmm(start) <= now.time():
                    continue
                options.append(SlotOption(
                    staff_id=slot.staff_id, slot_date=day.isoformat(),
                    start_time=start, end_time=end, capacity=slot.capacity,
                ))
        options.sort(key=lambda o: o.start_time)
        yield from options


def format_slot_title(slot_date: str, start_time: str) -> str:
    """'Tue 20 Oct 09:30' — short enough for a list row title."""
    day = date.fromisoformat(slot_date)
    return f"{day.strftime('%a %d %b')} {start_time}"


def format_slot_date(slot_date: str) -> str:
    return date.fromisoformat(slot_date).strftime("%A, %d %B %Y")
