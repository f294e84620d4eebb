from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from ..errors import ProfessionalConflict, RoomConflict, ValidationError
from ..statuses import RELEASED_STATUSES, AppointmentStatus

PROFESSIONAL = "professional"
ROOM = "room"


@dataclass(frozen=True)
class BookedInterval:
    appointment_id: int
    start: datetime
    end: datetime
    status: str = AppointmentStatus.SCHEDULED.value


@dataclass(frozen=True)
class Conflict:
    kind: str
    appointment_id: int
    start: datetime
    end: datetime


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and b_start < a_end


def validate_time_range(start: datetime, end: datetime) -> None:
    if start is None or end is None:
        raise ValidationError("start and end are required")
    if end <= start:
        raise ValidationError("End time must be after start time")


def holds_slot(status: str | None) -> bool:
    try:
        return AppointmentStatus(status or AppointmentStatus.SCHEDULED.value) not in RELEASED_STATUSES
    except ValueError:
        return True


def first_overlap(
    booked: Iterable[BookedInterval],
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> BookedInterval | None:
    for existing in sorted(booked, key=lambda b: (b.start, b.appointment_id)):
        if exclude_appointment_id is not None and existing.appointment_id == exclude_appointment_id:
            continue
        if not holds_slot(existing.status):
            continue
        if overlaps(start, end, existing.start, existing.end):
            return existing
    return None


def detect_conflict(
    start: datetime,
    end: datetime,
    professional_bookings: Iterable[BookedInterval],
    room_bookings: Iterable[BookedInterval] | None = None,
    exclude_appointment_id: int | None = None,
) -> Conflict | None:
    """Check a candidate range against both resource dimensions.

    The professional dimension is evaluated first and wins when both collide.
    ``room_bookings`` is None when no room was requested.
    """
    validate_time_range(start, end)

    hit = first_overlap(professional_bookings, start, end, exclude_appointment_id)
    if hit is not None:
        return Conflict(PROFESSIONAL, hit.appointment_id, hit.start, hit.end)

    if room_bookings is not None:
        hit = first_overlap(room_bookings, start, end, exclude_appointment_id)
        if hit is not None:
            return Conflict(ROOM, hit.appointment_id, hit.start, hit.end)
    return None


def raise_for_conflict(conflict: Conflict | None) -> None:
    if conflict is None:
        return
    if conflict.kind == ROOM:
        raise RoomConflict(
            f"Room is already booked at this time (appointment #{conflict.appointment_id})",
            appointment_id=conflict.appointment_id,
        )
    raise ProfessionalConflict(
        f"Professional has a conflicting appointment at this time (appointment #{conflict.appointment_id})",
        appointment_id=conflict.appointment_id,
    )
