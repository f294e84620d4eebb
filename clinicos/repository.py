"""Tenant-scoped record fetches feeding the scheduling and finance engines."""
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from .core.conflicts import BookedInterval
from .core.money import to_decimal
from .core.receivables import ReceivableRow
from .core.revenue import LedgerRow, RevenueRow
from .errors import NotFound
from .models import (
    Appointment,
    Patient,
    Payment,
    Procedure,
    Professional,
    Room,
    Tenant,
    Transaction,
)
from .statuses import RECEIVABLE_STATUSES, RELEASED_STATUSES, AppointmentStatus, values


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def get_or_create_tenant(db: Session, slug: str, name: str | None = None) -> Tenant:
    normalized_slug = slug.strip().lower()
    tenant = db.execute(
        select(Tenant).where(Tenant.slug == normalized_slug)
    ).scalar_one_or_none()
    if tenant:
        return tenant

    tenant = Tenant(slug=normalized_slug, name=(name or normalized_slug).strip())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def _get_scoped(db: Session, model, tenant_id: int, entity_id: int, label: str):
    row = db.execute(
        select(model).where(model.tenant_id == tenant_id, model.id == entity_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFound(label, entity_id)
    return row


def get_patient(db: Session, tenant_id: int, patient_id: int) -> Patient:
    return _get_scoped(db, Patient, tenant_id, patient_id, "Patient")


def get_professional(db: Session, tenant_id: int, professional_id: int) -> Professional:
    return _get_scoped(db, Professional, tenant_id, professional_id, "Professional")


def get_room(db: Session, tenant_id: int, room_id: int) -> Room:
    return _get_scoped(db, Room, tenant_id, room_id, "Room")


def get_procedure(db: Session, tenant_id: int, procedure_id: int) -> Procedure:
    return _get_scoped(db, Procedure, tenant_id, procedure_id, "Procedure")


def get_appointment(db: Session, tenant_id: int, appointment_id: int) -> Appointment:
    return _get_scoped(db, Appointment, tenant_id, appointment_id, "Appointment")


def list_active_professionals(
    db: Session, tenant_id: int, professional_id: int | None = None
) -> list[Professional]:
    stmt = select(Professional).where(
        Professional.tenant_id == tenant_id,
        Professional.is_active.is_(True),
    )
    if professional_id is not None:
        stmt = stmt.where(Professional.id == professional_id)
    return db.execute(stmt.order_by(Professional.id.asc())).scalars().all()


def count_active_professionals(db: Session, tenant_id: int) -> int:
    return int(
        db.execute(
            select(func.count(Professional.id)).where(
                Professional.tenant_id == tenant_id,
                Professional.is_active.is_(True),
            )
        ).scalar_one()
    )


def average_active_procedure_price(db: Session, tenant_id: int) -> Decimal | None:
    value = db.execute(
        select(func.avg(Procedure.price)).where(
            Procedure.tenant_id == tenant_id,
            Procedure.is_active.is_(True),
        )
    ).scalar_one()
    return to_decimal(value) if value is not None else None


def booked_intervals(
    db: Session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    professional_id: int | None = None,
    room_id: int | None = None,
) -> list[BookedInterval]:
    """Slot-holding appointments of one professional or room touching [start, end)."""
    stmt = select(Appointment.id, Appointment.start_time, Appointment.end_time, Appointment.status).where(
        Appointment.tenant_id == tenant_id,
        Appointment.status.not_in(values(RELEASED_STATUSES)),
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if professional_id is not None:
        stmt = stmt.where(Appointment.professional_id == professional_id)
    if room_id is not None:
        stmt = stmt.where(Appointment.room_id == room_id)
    rows = db.execute(stmt.order_by(Appointment.start_time.asc(), Appointment.id.asc())).all()
    return [BookedInterval(r.id, r.start_time, r.end_time, r.status) for r in rows]


def list_appointments(
    db: Session,
    tenant_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    professional_id: int | None = None,
    status: str | None = None,
) -> list[Appointment]:
    stmt = select(Appointment).where(Appointment.tenant_id == tenant_id)
    if start is not None:
        stmt = stmt.where(Appointment.start_time >= start)
    if end is not None:
        stmt = stmt.where(Appointment.start_time <= end)
    if professional_id is not None:
        stmt = stmt.where(Appointment.professional_id == professional_id)
    if status:
        stmt = stmt.where(Appointment.status == status)
    stmt = stmt.order_by(Appointment.start_time.asc(), Appointment.id.asc())
    return db.execute(stmt).scalars().all()


def revenue_rows(
    db: Session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    statuses: list[str] | None = None,
    exclude_statuses: list[str] | None = None,
    professional_id: int | None = None,
) -> list[RevenueRow]:
    """Appointments with ``start_time`` in [start, end], priced by their procedure."""
    stmt = (
        select(Appointment)
        .options(joinedload(Appointment.procedure), joinedload(Appointment.professional))
        .where(
            Appointment.tenant_id == tenant_id,
            Appointment.start_time >= start,
            Appointment.start_time <= end,
        )
    )
    if statuses:
        stmt = stmt.where(Appointment.status.in_(statuses))
    if exclude_statuses:
        stmt = stmt.where(Appointment.status.not_in(exclude_statuses))
    if professional_id is not None:
        stmt = stmt.where(Appointment.professional_id == professional_id)
    stmt = stmt.order_by(Appointment.start_time.asc(), Appointment.id.asc())

    rows = []
    for apt in db.execute(stmt).unique().scalars().all():
        procedure = apt.procedure
        rows.append(
            RevenueRow(
                appointment_id=apt.id,
                start_time=apt.start_time,
                status=apt.status,
                professional_id=apt.professional_id,
                professional_name=apt.professional.name if apt.professional else "",
                procedure_id=procedure.id if procedure else None,
                procedure_name=procedure.name if procedure else None,
                procedure_code=procedure.code if procedure else None,
                amount=to_decimal(procedure.price) if procedure else Decimal("0"),
            )
        )
    return rows


def completed_revenue_rows(db: Session, tenant_id: int, start: datetime, end: datetime, **kwargs):
    return revenue_rows(
        db, tenant_id, start, end, statuses=[AppointmentStatus.COMPLETED.value], **kwargs
    )


def ledger_rows(
    db: Session,
    tenant_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    type_: str | None = None,
) -> list[LedgerRow]:
    stmt = select(Transaction.type, Transaction.category, Transaction.amount, Transaction.date).where(
        Transaction.tenant_id == tenant_id
    )
    if start is not None:
        stmt = stmt.where(Transaction.date >= start)
    if end is not None:
        stmt = stmt.where(Transaction.date <= end)
    if type_ is not None:
        stmt = stmt.where(Transaction.type == type_)
    rows = db.execute(stmt.order_by(Transaction.date.asc(), Transaction.id.asc())).all()
    return [LedgerRow(r.type, r.category, to_decimal(r.amount), r.date) for r in rows]


def receivable_rows(db: Session, tenant_id: int) -> list[ReceivableRow]:
    stmt = (
        select(Payment)
        .options(joinedload(Payment.patient))
        .where(
            Payment.tenant_id == tenant_id,
            Payment.status.in_(values(RECEIVABLE_STATUSES)),
        )
        .order_by(Payment.due_date.asc(), Payment.id.asc())
    )
    rows = []
    for payment in db.execute(stmt).unique().scalars().all():
        patient = payment.patient
        rows.append(
            ReceivableRow(
                payment_id=payment.id,
                patient_id=payment.patient_id,
                patient_name=patient.name if patient else "",
                patient_phone=patient.phone if patient else None,
                patient_email=patient.email if patient else None,
                description=payment.description or "",
                amount=to_decimal(payment.amount),
                paid_amount=to_decimal(payment.paid_amount),
                due_date=payment.due_date,
                status=payment.status,
            )
        )
    return rows


def payment_totals(
    db: Session, tenant_id: int, statuses: list[str], due_before: datetime | None = None
) -> tuple[Decimal, int]:
    stmt = select(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id)).where(
        Payment.tenant_id == tenant_id,
        Payment.status.in_(statuses),
    )
    if due_before is not None:
        stmt = stmt.where(Payment.due_date < due_before)
    total, count = db.execute(stmt).one()
    return to_decimal(total), int(count)


def count_patient_no_shows(db: Session, tenant_id: int, patient_id: int, since: datetime) -> int:
    return int(
        db.execute(
            select(func.count(Appointment.id)).where(
                Appointment.tenant_id == tenant_id,
                Appointment.patient_id == patient_id,
                Appointment.status == AppointmentStatus.NO_SHOW.value,
                Appointment.start_time >= since,
            )
        ).scalar_one()
    )
