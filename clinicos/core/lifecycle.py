from datetime import datetime
from typing import Iterable

from ..errors import InvalidMutation, InvalidTransition, ValidationError
from ..statuses import AppointmentStatus

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset(
        {S.CONFIRMED, S.WAITING, S.IN_PROGRESS, S.COMPLETED, S.NO_SHOW, S.CANCELLED}
    ),
    S.CONFIRMED: frozenset({S.WAITING, S.IN_PROGRESS, S.COMPLETED, S.NO_SHOW, S.CANCELLED}),
    S.WAITING: frozenset({S.IN_PROGRESS, S.COMPLETED, S.NO_SHOW, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.NO_SHOW: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

NOTE_FIELDS = frozenset({"notes", "internal_notes"})

DEFAULT_CONFIRMATION_CHANNEL = "manual"


def parse_status(value) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    raw = str(value or "").strip().lower()
    try:
        return AppointmentStatus(raw)
    except ValueError:
        raise ValidationError(f"Invalid appointment status: {value!r}") from None


def is_terminal(status) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def validate_transition(current, target, start_time: datetime, now: datetime) -> None:
    current_status = parse_status(current)
    target_status = parse_status(target)

    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        reason = "terminal status" if current_status in TERMINAL_STATUSES else None
        raise InvalidTransition(current_status.value, target_status.value, reason)

    if target_status is S.NO_SHOW and start_time > now:
        raise InvalidTransition(
            current_status.value,
            target_status.value,
            "appointment has not started yet",
        )


def apply_status_change(
    appointment,
    target,
    now: datetime,
    actor: str | None = None,
    reason: str | None = None,
    via: str | None = None,
) -> tuple[str, str]:
    """Validate and apply a status change in place.

    Returns ``(from_status, to_status)`` for the audit trail.
    """
    current_status = parse_status(appointment.status)
    target_status = parse_status(target)
    validate_transition(current_status, target_status, appointment.start_time, now)

    if target_status is S.CANCELLED:
        clean_reason = (reason or "").strip()
        clean_actor = (actor or "").strip()
        if not clean_reason:
            raise ValidationError("cancellation reason is required")
        if not clean_actor:
            raise ValidationError("cancelling actor is required")
        appointment.cancelled_at = now
        appointment.cancellation_reason = clean_reason
        appointment.cancelled_by = clean_actor

    if target_status is S.CONFIRMED:
        appointment.confirmed_at = now
        appointment.confirmed_via = (via or "").strip() or DEFAULT_CONFIRMATION_CHANNEL

    appointment.status = target_status.value
    return current_status.value, target_status.value


def validate_mutation(status, fields: Iterable[str]) -> None:
    """Reject field changes other than notes on a closed appointment."""
    current_status = parse_status(status)
    if current_status not in TERMINAL_STATUSES:
        return
    disallowed = {f for f in fields if f not in NOTE_FIELDS}
    if disallowed:
        raise InvalidMutation(current_status.value, disallowed)
