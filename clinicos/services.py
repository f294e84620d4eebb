from datetime import date, datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.conflicts import (
    Conflict,
    detect_conflict,
    raise_for_conflict,
    validate_time_range,
)
from .core.lifecycle import apply_status_change, parse_status, validate_mutation
from .core.revenue import RiskIndicators, risk_indicators
from .core.slots import AvailableSlots
from .db import is_overlap_violation
from .errors import InvalidMutation, ProfessionalConflict, RoomConflict, ValidationError
from .models import Appointment, AppointmentStatusEvent, ScheduleLock, utc_now_naive
from .policies import get_schedule_policy
from .repository import (
    average_active_procedure_price,
    booked_intervals,
    count_patient_no_shows,
    day_bounds,
    get_appointment,
    get_patient,
    get_procedure,
    get_professional,
    get_room,
)
from .statuses import AppointmentStatus

logger = structlog.get_logger("clinicos.appointments")

SCHEDULING_FIELDS = frozenset({"start_time", "end_time", "professional_id", "room_id"})
UPDATABLE_FIELDS = frozenset(
    {
        "patient_id",
        "professional_id",
        "room_id",
        "procedure_id",
        "start_time",
        "end_time",
        "notes",
        "internal_notes",
    }
)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _resource_keys(professional_id: int, room_id: int | None) -> list[str]:
    keys = [f"professional:{int(professional_id)}"]
    if room_id is not None:
        keys.append(f"room:{int(room_id)}")
    return sorted(keys)


def _select_lock(db: Session, tenant_id: int, key: str) -> ScheduleLock | None:
    return db.execute(
        select(ScheduleLock)
        .where(ScheduleLock.tenant_id == tenant_id, ScheduleLock.resource_key == key)
        .with_for_update()
    ).scalar_one_or_none()


def acquire_schedule_locks(
    db: Session, tenant_id: int, professional_id: int, room_id: int | None
) -> None:
    """Serialise writers touching the same professional or room.

    Row locks are taken in a fixed order. The version bump makes SQLite take
    its database write lock here, before the conflict check reads anything.
    Must run before any other write in the transaction: a lost insert race
    rolls the transaction back.
    """
    for key in _resource_keys(professional_id, room_id):
        lock = _select_lock(db, tenant_id, key)
        if lock is None:
            db.add(ScheduleLock(tenant_id=tenant_id, resource_key=key, version=1))
            try:
                db.flush()
                continue
            except IntegrityError:
                db.rollback()
                lock = _select_lock(db, tenant_id, key)
                if lock is None:
                    raise
        lock.version = int(lock.version or 0) + 1
        db.flush()


def check_conflict(
    db: Session,
    tenant_id: int,
    professional_id: int,
    room_id: int | None,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> Conflict | None:
    start = to_utc_naive(start)
    end = to_utc_naive(end)
    validate_time_range(start, end)

    professional_bookings = booked_intervals(
        db, tenant_id, start, end, professional_id=professional_id
    )
    room_bookings = None
    if room_id is not None:
        room_bookings = booked_intervals(db, tenant_id, start, end, room_id=room_id)
    return detect_conflict(
        start,
        end,
        professional_bookings,
        room_bookings,
        exclude_appointment_id=exclude_appointment_id,
    )


def _raise_conflict(tenant_id: int, conflict: Conflict | None, **context) -> None:
    if conflict is None:
        return
    logger.info(
        "appointment_conflict",
        tenant_id=tenant_id,
        kind=conflict.kind,
        conflicting_appointment_id=conflict.appointment_id,
        **context,
    )
    raise_for_conflict(conflict)


def _translate_integrity_error(exc: IntegrityError) -> None:
    constraint = is_overlap_violation(exc)
    if constraint is None:
        return
    if "room" in constraint:
        raise RoomConflict("Room is already booked at this time") from exc
    raise ProfessionalConflict("Professional has a conflicting appointment at this time") from exc


def find_available_slots(
    db: Session,
    tenant_id: int,
    professional_id: int,
    day: date,
    slot_duration_minutes: int | None = None,
) -> AvailableSlots:
    get_professional(db, tenant_id, professional_id)
    policy = get_schedule_policy(db, tenant_id)
    duration = slot_duration_minutes if slot_duration_minutes is not None else policy.default_slot_minutes
    if int(duration) <= 0:
        raise ValidationError("slot duration must be > 0 minutes")

    start, end = day_bounds(day)
    booked = booked_intervals(db, tenant_id, start, end, professional_id=professional_id)
    return AvailableSlots(day, int(duration), policy.window, booked)


def add_appointment_status_event(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> AppointmentStatusEvent:
    event = AppointmentStatusEvent(
        tenant_id=tenant_id,
        appointment_id=appointment_id,
        from_status=from_status,
        to_status=to_status,
        actor=(actor or "").strip() or None,
        note=(note or "").strip() or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def create_appointment(
    db: Session,
    tenant_id: int,
    patient_id: int,
    professional_id: int,
    start_time: datetime,
    end_time: datetime,
    room_id: int | None = None,
    procedure_id: int | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
    actor: str | None = None,
) -> Appointment:
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    validate_time_range(start, end)

    get_patient(db, tenant_id, patient_id)
    get_professional(db, tenant_id, professional_id)
    if room_id is not None:
        get_room(db, tenant_id, room_id)
    if procedure_id is not None:
        get_procedure(db, tenant_id, procedure_id)

    try:
        acquire_schedule_locks(db, tenant_id, professional_id, room_id)
        conflict = check_conflict(db, tenant_id, professional_id, room_id, start, end)
        _raise_conflict(tenant_id, conflict, professional_id=professional_id, room_id=room_id)

        appointment = Appointment(
            tenant_id=tenant_id,
            patient_id=patient_id,
            professional_id=professional_id,
            room_id=room_id,
            procedure_id=procedure_id,
            start_time=start,
            end_time=end,
            status=AppointmentStatus.SCHEDULED.value,
            notes=notes,
            internal_notes=internal_notes,
            created_by=(actor or "").strip() or None,
        )
        db.add(appointment)
        db.flush()
        add_appointment_status_event(
            db=db,
            tenant_id=tenant_id,
            appointment_id=appointment.id,
            from_status=None,
            to_status=appointment.status,
            actor=actor,
            note="created",
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        _translate_integrity_error(exc)
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info(
        "appointment_created",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        professional_id=professional_id,
        room_id=room_id,
    )
    return appointment


def update_appointment(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    changes: dict,
    actor: str | None = None,
) -> Appointment:
    """Apply field changes, re-checking the calendar when the slot moves."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")
    for key in ("start_time", "end_time"):
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be cleared")

    changes = {
        k: to_utc_naive(v) if k in ("start_time", "end_time") else v
        for k, v in changes.items()
    }
    appointment = get_appointment(db, tenant_id, appointment_id)
    changed = {k: v for k, v in changes.items() if getattr(appointment, k) != v}
    if not changed:
        return appointment

    try:
        validate_mutation(appointment.status, changed)
    except InvalidMutation:
        logger.info(
            "appointment_mutation_rejected",
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            status=appointment.status,
            fields=sorted(changed),
        )
        raise

    if "patient_id" in changed:
        get_patient(db, tenant_id, changed["patient_id"])
    if changed.get("professional_id") is not None:
        get_professional(db, tenant_id, changed["professional_id"])
    if changed.get("room_id") is not None:
        get_room(db, tenant_id, changed["room_id"])
    if changed.get("procedure_id") is not None:
        get_procedure(db, tenant_id, changed["procedure_id"])

    start = to_utc_naive(changed.get("start_time", appointment.start_time))
    end = to_utc_naive(changed.get("end_time", appointment.end_time))
    professional_id = changed.get("professional_id", appointment.professional_id)
    room_id = changed.get("room_id", appointment.room_id)
    if professional_id is None:
        raise ValidationError("professional_id cannot be cleared")
    validate_time_range(start, end)

    try:
        if SCHEDULING_FIELDS & set(changed):
            acquire_schedule_locks(db, tenant_id, professional_id, room_id)
            appointment = get_appointment(db, tenant_id, appointment_id)
            conflict = check_conflict(
                db,
                tenant_id,
                professional_id,
                room_id,
                start,
                end,
                exclude_appointment_id=appointment.id,
            )
            _raise_conflict(
                tenant_id,
                conflict,
                appointment_id=appointment.id,
                professional_id=professional_id,
                room_id=room_id,
            )

        for field, value in changed.items():
            if field in ("start_time", "end_time"):
                value = to_utc_naive(value)
            setattr(appointment, field, value)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        _translate_integrity_error(exc)
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info(
        "appointment_updated",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        fields=sorted(changed),
        actor=actor,
    )
    return appointment


def change_appointment_status(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    new_status: str,
    actor: str | None = None,
    reason: str | None = None,
    via: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    appointment = get_appointment(db, tenant_id, appointment_id)
    target = parse_status(new_status)
    moment = to_utc_naive(now) if now else utc_now_naive()

    from_status, to_status = apply_status_change(
        appointment, target, moment, actor=actor, reason=reason, via=via
    )
    add_appointment_status_event(
        db=db,
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        note=reason,
    )
    db.commit()
    db.refresh(appointment)
    logger.info(
        "appointment_status_changed",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
    )
    return appointment


def list_appointment_status_events(
    db: Session, tenant_id: int, appointment_id: int
) -> list[AppointmentStatusEvent]:
    stmt = (
        select(AppointmentStatusEvent)
        .where(
            AppointmentStatusEvent.tenant_id == tenant_id,
            AppointmentStatusEvent.appointment_id == appointment_id,
        )
        .order_by(AppointmentStatusEvent.created_at.asc(), AppointmentStatusEvent.id.asc())
    )
    return db.execute(stmt).scalars().all()


def appointment_risk_indicators(
    db: Session, tenant_id: int, appointment_id: int, now: datetime | None = None
) -> RiskIndicators:
    appointment = get_appointment(db, tenant_id, appointment_id)
    moment = to_utc_naive(now) if now else utc_now_naive()
    average_price = average_active_procedure_price(db, tenant_id)
    if not average_price:
        average_price = settings.DEFAULT_AVERAGE_PROCEDURE_PRICE

    since = moment - timedelta(days=settings.NO_SHOW_LOOKBACK_DAYS)
    recent_no_shows = count_patient_no_shows(db, tenant_id, appointment.patient_id, since)
    price = appointment.procedure.price if appointment.procedure else 0
    return risk_indicators(appointment.status, price, average_price, recent_no_shows)
