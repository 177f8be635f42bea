"""
Wealth CRM Slot Engine
Bookable time slots from weekly recurring availability rules

Slots are built as timezone-aware datetimes in the template's IANA zone.
Duration and buffer arithmetic is wall-clock arithmetic inside that zone;
comparisons against "now" and existing bookings use absolute instants.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog


logger = structlog.get_logger()


@dataclass(frozen=True)
class TimeSlot:
    """A computed, non-persisted candidate interval"""
    start: datetime
    end: datetime
    available: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }


def day_of_week(day: date) -> int:
    """Day index with 0=Sunday..6=Saturday"""
    return (day.weekday() + 1) % 7


def template_zone(template) -> ZoneInfo:
    """Resolve the template's IANA timezone"""
    try:
        return ZoneInfo(template.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {template.timezone!r}") from None


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: [start_a, end_a) and [start_b, end_b)"""
    return start_a < end_b and start_b < end_a


def rules_for_day(template, day: date) -> list:
    """Available rules whose weekday matches ``day``"""
    weekday = day_of_week(day)
    return [
        rule for rule in template.rules
        if rule.day_of_week == weekday and rule.is_available
    ]


def find_overlapping_rules(rules: Iterable) -> List[Tuple[Any, Any]]:
    """Pairs of available rules on the same weekday whose windows overlap"""
    available = [rule for rule in rules if rule.is_available]
    overlaps = []
    for index, first in enumerate(available):
        for second in available[index + 1:]:
            if first.day_of_week != second.day_of_week:
                continue
            if first.start_time < second.end_time and second.start_time < first.end_time:
                overlaps.append((first, second))
    return overlaps


def _rule_bounds(day: date, rule, zone: ZoneInfo, duration: timedelta, step: timedelta) -> List[Tuple[datetime, datetime]]:
    cursor = datetime.combine(day, rule.start_time, tzinfo=zone)
    window_end = datetime.combine(day, rule.end_time, tzinfo=zone)

    bounds = []
    while cursor + duration <= window_end:
        bounds.append((cursor, cursor + duration))
        cursor += step
    return bounds


def _blocking_intervals(template, existing_bookings: Iterable) -> List[Tuple[datetime, datetime]]:
    intervals = []
    for booking in existing_bookings:
        if booking.is_cancelled:
            continue
        # Bookings of another template never block this one
        if (
            template.id is not None
            and booking.availability_id is not None
            and booking.availability_id != template.id
        ):
            continue
        intervals.append((as_utc(booking.start_time), as_utc(booking.end_time)))
    return intervals


def generate_slots(
    template,
    day: date,
    existing_bookings: Sequence = (),
    now: Optional[datetime] = None
) -> List[TimeSlot]:
    """
    Ordered candidate slots for ``day``.

    Every rule for the weekday is walked independently: a slot of
    ``duration_minutes`` is emitted, then the cursor moves by duration plus
    buffer, until the next slot would end after the rule's end time. Slots
    from all rules are sorted by start. Overlapping rules are not merged.

    A slot is flagged unavailable when its start is not strictly after
    ``now`` or when it overlaps a non-cancelled booking. Unavailable slots
    stay in the result.
    """
    rules = rules_for_day(template, day)
    if not rules:
        return []

    zone = template_zone(template)
    duration = timedelta(minutes=template.duration_minutes)
    step = duration + timedelta(minutes=template.buffer_minutes)

    bounds: List[Tuple[datetime, datetime]] = []
    for rule in rules:
        bounds.extend(_rule_bounds(day, rule, zone, duration, step))
    bounds.sort(key=lambda pair: as_utc(pair[0]))

    now_utc = as_utc(now) if now is not None else datetime.now(timezone.utc)
    blocking = _blocking_intervals(template, existing_bookings)

    slots = []
    for start, end in bounds:
        start_utc, end_utc = as_utc(start), as_utc(end)
        booked = any(
            intervals_overlap(start_utc, end_utc, booked_start, booked_end)
            for booked_start, booked_end in blocking
        )
        slots.append(TimeSlot(start=start, end=end, available=start_utc > now_utc and not booked))

    return slots


def list_available_dates(
    template,
    look_ahead_days: int,
    today: Optional[date] = None
) -> List[date]:
    """
    Dates in the look-ahead window with at least one available rule.

    The window starts at ``today`` in the template's timezone. Bookings are
    not consulted; this is a cheap pre-filter for the date picker.
    """
    if today is None:
        today = datetime.now(template_zone(template)).date()

    weekdays = {rule.day_of_week for rule in template.rules if rule.is_available}
    return [
        today + timedelta(days=offset)
        for offset in range(max(look_ahead_days, 0))
        if day_of_week(today + timedelta(days=offset)) in weekdays
    ]


def find_slot(slots: Iterable[TimeSlot], start: datetime, end: datetime) -> Optional[TimeSlot]:
    """Slot whose bounds equal [start, end) as absolute instants"""
    start_utc, end_utc = as_utc(start), as_utc(end)
    for slot in slots:
        if as_utc(slot.start) == start_utc and as_utc(slot.end) == end_utc:
            return slot
    return None
