from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator

from ..errors import ValidationError
from .conflicts import BookedInterval, holds_slot, overlaps


@dataclass(frozen=True)
class WorkingWindow:
    start_hour: int
    end_hour: int

    def bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min) + timedelta(hours=self.start_hour)
        end = datetime.combine(day, time.min) + timedelta(hours=self.end_hour)
        return start, end

    @property
    def hours(self) -> int:
        return max(0, self.end_hour - self.start_hour)


class AvailableSlots:
    """Free slot starts for one professional and day.

    Iterating is lazy and may be repeated; every pass walks the same
    snapshot of bookings and yields the same sequence.
    """

    def __init__(
        self,
        day: date,
        slot_minutes: int,
        window: WorkingWindow,
        booked: Iterable[BookedInterval],
    ):
        if int(slot_minutes) <= 0:
            raise ValidationError("slot duration must be > 0 minutes")
        self.day = day
        self.slot_minutes = int(slot_minutes)
        self.window = window
        self._busy = tuple(
            sorted(
                (b for b in booked if holds_slot(b.status)),
                key=lambda b: (b.start, b.end),
            )
        )

    def __iter__(self) -> Iterator[datetime]:
        step = timedelta(minutes=self.slot_minutes)
        window_start, window_end = self.window.bounds(self.day)
        slot_start = window_start
        while slot_start + step <= window_end:
            slot_end = slot_start + step
            if not any(overlaps(slot_start, slot_end, b.start, b.end) for b in self._busy):
                yield slot_start
            slot_start = slot_end

    def __repr__(self) -> str:
        return (
            f"AvailableSlots(day={self.day.isoformat()}, slot_minutes={self.slot_minutes}, "
            f"busy={len(self._busy)})"
        )
