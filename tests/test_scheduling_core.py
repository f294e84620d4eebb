from datetime import date, datetime

import pytest

from clinicos.core.conflicts import (
    PROFESSIONAL,
    ROOM,
    BookedInterval,
    detect_conflict,
    overlaps,
    raise_for_conflict,
    validate_time_range,
)
from clinicos.core.slots import AvailableSlots, WorkingWindow
from clinicos.errors import ProfessionalConflict, RoomConflict, ValidationError

DAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


def test_touching_intervals_do_not_overlap():
    assert not overlaps(at(10), at(11), at(11), at(12))
    assert not overlaps(at(11), at(12), at(10), at(11))
    assert overlaps(at(10), at(11), at(10, 59), at(12))


def test_validate_time_range_rejects_empty_and_inverted_ranges():
    with pytest.raises(ValidationError):
        validate_time_range(at(10), at(10))
    with pytest.raises(ValidationError):
        validate_time_range(at(11), at(10))
    validate_time_range(at(10), at(10, 1))


def test_detect_conflict_reports_professional_before_room():
    professional = [BookedInterval(1, at(10), at(11))]
    room = [BookedInterval(2, at(10), at(11))]

    conflict = detect_conflict(at(10, 30), at(11, 30), professional, room)

    assert conflict.kind == PROFESSIONAL
    assert conflict.appointment_id == 1


def test_detect_conflict_reports_room_when_professional_is_free():
    room = [BookedInterval(7, at(9), at(10, 30))]

    conflict = detect_conflict(at(10), at(11), [], room)

    assert conflict.kind == ROOM
    assert conflict.appointment_id == 7


def test_detect_conflict_ignores_released_and_excluded_bookings():
    bookings = [
        BookedInterval(1, at(10), at(11), status="cancelled"),
        BookedInterval(2, at(10), at(11), status="no_show"),
        BookedInterval(3, at(10), at(11), status="confirmed"),
    ]

    assert detect_conflict(at(10), at(11), bookings, exclude_appointment_id=3) is None
    assert detect_conflict(at(10), at(11), bookings).appointment_id == 3


def test_detect_conflict_without_room_skips_room_dimension():
    assert detect_conflict(at(10), at(11), [], None) is None


def test_raise_for_conflict_carries_conflicting_id():
    with pytest.raises(RoomConflict) as exc:
        raise_for_conflict(detect_conflict(at(10), at(11), [], [BookedInterval(5, at(10), at(12))]))
    assert exc.value.appointment_id == 5

    with pytest.raises(ProfessionalConflict):
        raise_for_conflict(detect_conflict(at(10), at(11), [BookedInterval(4, at(9), at(10, 15))]))

    raise_for_conflict(None)


def test_available_slots_skip_booked_ranges():
    slots = AvailableSlots(DAY, 30, WorkingWindow(8, 10), [BookedInterval(1, at(8, 30), at(9, 30))])

    assert list(slots) == [at(8), at(9, 30)]


def test_available_slots_are_empty_when_day_is_fully_booked():
    slots = AvailableSlots(DAY, 30, WorkingWindow(8, 10), [BookedInterval(1, at(8), at(10))])

    assert list(slots) == []


def test_available_slots_ignore_cancelled_bookings():
    booked = [BookedInterval(1, at(8), at(10), status="cancelled")]
    slots = AvailableSlots(DAY, 30, WorkingWindow(8, 10), booked)

    assert list(slots) == [at(8), at(8, 30), at(9), at(9, 30)]


def test_available_slots_never_run_past_closing_time():
    slots = AvailableSlots(DAY, 45, WorkingWindow(8, 10), [])

    assert list(slots) == [at(8), at(8, 45)]


def test_available_slots_iterate_the_same_way_twice():
    slots = AvailableSlots(DAY, 30, WorkingWindow(8, 12), [BookedInterval(1, at(9), at(10))])

    first = list(slots)
    second = list(slots)
    assert first == second
    assert len(first) == 6


def test_available_slots_reject_non_positive_duration():
    with pytest.raises(ValidationError):
        AvailableSlots(DAY, 0, WorkingWindow(8, 18), [])
