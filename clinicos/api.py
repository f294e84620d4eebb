from datetime import date, datetime, time, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .config import settings
from .core.money import ZERO, average_ticket, quantize_money, quantize_percent
from .db import get_db
from .errors import ClinicError, NotFound, ScheduleConflict, ValidationError
from .finance import (
    aggregate_receivables,
    aggregate_revenue,
    cash_flow_report,
    commissions_summary,
    compose_net_profit,
    financial_overview,
    get_revenue_by_procedure,
    get_revenue_by_professional,
    profit_and_loss,
    revenue_total,
    schedule_financial_summary,
)
from .models import Appointment, AppointmentStatusEvent, Tenant
from .repository import get_appointment, get_or_create_tenant, list_appointments
from .schemas import (
    AgingBucketOut,
    AppointmentCreate,
    AppointmentOut,
    AppointmentStatusEventOut,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    AvailableSlotsOut,
    CashFlowPeriodOut,
    CategoryAmountOut,
    CommissionLineOut,
    CommissionsSummaryOut,
    ConflictCheckIn,
    ConflictOut,
    ExpenseLinesOut,
    FinancialOverviewOut,
    NetProfitOut,
    PatientReceivableOut,
    PeriodComparisonOut,
    ProcedureRevenueOut,
    ProfessionalCommissionOut,
    ProfessionalRevenueOut,
    ProfitLossOut,
    ReceivablePaymentOut,
    ReceivablesOut,
    RevenueGroupOut,
    RevenueLinesOut,
    RevenueReportOut,
    RiskIndicatorsOut,
    ScheduleAlertOut,
    ScheduleFinancialSummaryOut,
)
from .services import (
    appointment_risk_indicators,
    change_appointment_status,
    check_conflict,
    create_appointment,
    find_available_slots,
    list_appointment_status_events,
    to_utc_naive,
    update_appointment,
)

router = APIRouter(prefix="/api")


def _http_error(exc: ClinicError) -> HTTPException:
    if isinstance(exc, ScheduleConflict):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, NotFound):
        code = status.HTTP_404_NOT_FOUND
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=exc.message, headers={"X-Error-Code": exc.code})


def _resolve_tenant_or_default(db: Session, tenant_slug: Optional[str]) -> Tenant:
    slug = (tenant_slug or settings.DEFAULT_TENANT_SLUG).strip().lower()
    tenant_name = settings.DEFAULT_TENANT_NAME if slug == settings.DEFAULT_TENANT_SLUG else slug
    return get_or_create_tenant(db, slug=slug, name=tenant_name)


def get_current_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> Tenant:
    return _resolve_tenant_or_default(db, x_tenant_slug)


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return (x_actor_id or "").strip() or None


def _date_range(start: Optional[date], end: Optional[date]) -> tuple[datetime, datetime]:
    """Inclusive day range; defaults to the current month up to today."""
    today = date.today()
    start_day = start or today.replace(day=1)
    end_day = end or today
    if end_day < start_day:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must not be before start",
            headers={"X-Error-Code": ValidationError.code},
        )
    return datetime.combine(start_day, time.min), datetime.combine(end_day, time.max)


def _to_appointment_out(a: Appointment) -> AppointmentOut:
    return AppointmentOut(
        id=a.id,
        patient_id=a.patient_id,
        professional_id=a.professional_id,
        room_id=a.room_id,
        procedure_id=a.procedure_id,
        start_time=a.start_time,
        end_time=a.end_time,
        status=a.status,
        notes=a.notes,
        internal_notes=a.internal_notes,
        confirmed_at=a.confirmed_at,
        confirmed_via=a.confirmed_via,
        cancelled_at=a.cancelled_at,
        cancellation_reason=a.cancellation_reason,
        cancelled_by=a.cancelled_by,
        created_by=a.created_by,
    )


def _to_status_event_out(e: AppointmentStatusEvent) -> AppointmentStatusEventOut:
    return AppointmentStatusEventOut(
        id=e.id,
        appointment_id=e.appointment_id,
        from_status=e.from_status,
        to_status=e.to_status,
        actor=e.actor,
        note=e.note,
        created_at=e.created_at,
    )


def _to_group_out(g) -> RevenueGroupOut:
    return RevenueGroupOut(
        key=g.key,
        label=g.label,
        amount=quantize_money(g.amount),
        count=g.count,
        occupancy_percent=(
            quantize_percent(g.occupancy_percent) if g.occupancy_percent is not None else None
        ),
    )


# Appointments. Static paths are declared before /appointments/{appointment_id}.


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def add_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        appointment = create_appointment(
            db=db,
            tenant_id=tenant.id,
            patient_id=payload.patient_id,
            professional_id=payload.professional_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            room_id=payload.room_id,
            procedure_id=payload.procedure_id,
            notes=payload.notes,
            internal_notes=payload.internal_notes,
            actor=actor,
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _to_appointment_out(appointment)


@router.get("/appointments", response_model=List[AppointmentOut])
def get_appointments(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    professional_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    rows = list_appointments(
        db,
        tenant.id,
        start=datetime.combine(start, time.min) if start else None,
        end=datetime.combine(end, time.max) if end else None,
        professional_id=professional_id,
        status=status_filter,
    )
    return [_to_appointment_out(a) for a in rows]


@router.post("/appointments/conflicts", response_model=ConflictOut)
def dry_run_conflict_check(
    payload: ConflictCheckIn,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        conflict = check_conflict(
            db,
            tenant.id,
            payload.professional_id,
            payload.room_id,
            payload.start_time,
            payload.end_time,
            exclude_appointment_id=payload.exclude_appointment_id,
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    if conflict is None:
        return ConflictOut(conflict=False)
    return ConflictOut(
        conflict=True,
        kind=conflict.kind,
        appointment_id=conflict.appointment_id,
        start_time=conflict.start,
        end_time=conflict.end,
    )


@router.get("/appointments/available-slots", response_model=AvailableSlotsOut)
def get_available_slots(
    professional_id: int = Query(...),
    day: date = Query(...),
    slot_minutes: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        slots = find_available_slots(db, tenant.id, professional_id, day, slot_minutes)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AvailableSlotsOut(
        day=day,
        professional_id=professional_id,
        slot_minutes=slots.slot_minutes,
        slots=list(slots),
    )


@router.get("/appointments/financial-summary", response_model=ScheduleFinancialSummaryOut)
def get_schedule_financial_summary(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    start_day = start or date.today()
    end_day = end or start_day + timedelta(days=6)
    window_start, window_end = _date_range(start_day, end_day)
    try:
        summary = schedule_financial_summary(db, tenant.id, window_start, window_end)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return ScheduleFinancialSummaryOut(
        total_expected_revenue=quantize_money(summary.total_expected_revenue),
        appointment_count=summary.appointment_count,
        average_ticket=quantize_money(summary.average_ticket),
        comparison_with_last_week=quantize_percent(summary.comparison_with_last_week),
        daily=[_to_group_out(g) for g in summary.daily],
        professionals=[_to_group_out(g) for g in summary.professionals],
        alerts=[
            ScheduleAlertOut(
                type=a.type,
                message=a.message,
                severity=a.severity,
                day=a.day,
                professional=a.professional,
            )
            for a in summary.alerts
        ],
    )


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_one_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        appointment = get_appointment(db, tenant.id, appointment_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _to_appointment_out(appointment)


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Optional[str] = Depends(get_actor),
):
    changes = payload.dict(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        appointment = update_appointment(db, tenant.id, appointment_id, changes, actor=actor)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/status", response_model=AppointmentOut)
def set_appointment_status(
    appointment_id: int,
    payload: AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    actor: Optional[str] = Depends(get_actor),
):
    try:
        appointment = change_appointment_status(
            db,
            tenant.id,
            appointment_id,
            payload.status,
            actor=actor,
            reason=payload.cancellation_reason,
            via=payload.confirmed_via,
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _to_appointment_out(appointment)


@router.get("/appointments/{appointment_id}/events", response_model=List[AppointmentStatusEventOut])
def get_appointment_events(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        get_appointment(db, tenant.id, appointment_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    events = list_appointment_status_events(db, tenant.id, appointment_id)
    return [_to_status_event_out(e) for e in events]


@router.get("/appointments/{appointment_id}/risk-indicators", response_model=RiskIndicatorsOut)
def get_risk_indicators(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        indicators = appointment_risk_indicators(db, tenant.id, appointment_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return RiskIndicatorsOut(
        appointment_id=appointment_id,
        no_show_risk=indicators.no_show_risk,
        is_premium=indicators.is_premium,
        is_confirmed=indicators.is_confirmed,
        reasons=list(indicators.reasons),
    )


# Financial reports


@router.get("/financial/revenue", response_model=RevenueReportOut)
def get_revenue(
    group_by: str = Query(default="professional"),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    try:
        groups = aggregate_revenue(db, tenant.id, window_start, window_end, group_by)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    if group_by == "category":
        total = sum((g.amount for g in groups), ZERO)
        count = sum(g.count for g in groups)
    else:
        total, count = revenue_total(db, tenant.id, window_start, window_end)
    return RevenueReportOut(
        group_by=group_by,
        start=window_start,
        end=window_end,
        total=quantize_money(total),
        count=count,
        average_ticket=quantize_money(average_ticket(total, count)),
        groups=[_to_group_out(g) for g in groups],
    )


@router.get("/financial/revenue/by-professional", response_model=List[ProfessionalRevenueOut])
def get_revenue_by_professional_report(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    rows = get_revenue_by_professional(db, tenant.id, window_start, window_end)
    return [
        ProfessionalRevenueOut(
            professional_id=r.professional_id,
            name=r.name,
            appointment_count=r.appointment_count,
            completed_count=r.completed_count,
            revenue=quantize_money(r.revenue),
            average_ticket=quantize_money(r.average_ticket),
        )
        for r in rows
    ]


@router.get("/financial/revenue/by-procedure", response_model=List[ProcedureRevenueOut])
def get_revenue_by_procedure_report(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    rows = get_revenue_by_procedure(db, tenant.id, window_start, window_end)
    return [
        ProcedureRevenueOut(
            procedure_id=r.procedure_id,
            name=r.name,
            code=r.code,
            count=r.count,
            revenue=quantize_money(r.revenue),
            average_price=quantize_money(r.average_price),
        )
        for r in rows
    ]


@router.get("/financial/commissions", response_model=CommissionsSummaryOut)
def get_commissions(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    professional_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    summary = commissions_summary(db, tenant.id, window_start, window_end, professional_id)
    return CommissionsSummaryOut(
        start=summary.start,
        end=summary.end,
        total_commissions=quantize_money(summary.total_commissions),
        total_revenue=quantize_money(summary.total_revenue),
        professionals=[
            ProfessionalCommissionOut(
                professional_id=p.professional_id,
                name=p.name,
                commission_type=p.commission_type,
                commission_value=quantize_money(p.commission_value),
                total_revenue=quantize_money(p.total_revenue),
                total_commission=quantize_money(p.total_commission),
                appointment_count=p.appointment_count,
            )
            for p in summary.professionals
        ],
    )


@router.get("/financial/accounts-receivable", response_model=ReceivablesOut)
def get_accounts_receivable(
    as_of: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    report = aggregate_receivables(db, tenant.id, to_utc_naive(as_of) if as_of else None)
    return ReceivablesOut(
        as_of=report.as_of,
        total_receivable=quantize_money(report.total_receivable),
        patients_count=report.patients_count,
        aging={
            bucket: AgingBucketOut(amount=quantize_money(total.amount), count=total.count)
            for bucket, total in report.aging.items()
        },
        patients=[
            PatientReceivableOut(
                id=p.patient_id,
                name=p.name,
                phone=p.phone,
                email=p.email,
                total_owed=quantize_money(p.total_owed),
                oldest_due=p.oldest_due,
                aging_bucket=p.aging_bucket,
                payments=[
                    ReceivablePaymentOut(
                        id=row.payment_id,
                        description=row.description,
                        amount=quantize_money(row.amount),
                        paid_amount=quantize_money(row.paid_amount),
                        owed=quantize_money(row.owed),
                        due_date=row.due_date,
                        status=row.status,
                    )
                    for row in p.payments
                ],
            )
            for p in report.patients
        ],
    )


def _to_category_lines(groups) -> list[CategoryAmountOut]:
    return [CategoryAmountOut(category=g.key, amount=quantize_money(g.amount)) for g in groups]


@router.get("/financial/net-profit", response_model=NetProfitOut)
def get_net_profit(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    summary = compose_net_profit(db, tenant.id, window_start, window_end)
    comparison = summary.comparison
    return NetProfitOut(
        start=window_start,
        end=window_end,
        gross_income=quantize_money(summary.gross_income),
        total_expenses=quantize_money(summary.total_expenses),
        total_commissions=quantize_money(summary.total_commissions),
        net_profit=quantize_money(summary.net_profit),
        profit_margin=quantize_percent(summary.profit_margin),
        comparison=PeriodComparisonOut(
            previous_gross_income=quantize_money(comparison.previous_gross_income),
            previous_expenses=quantize_money(comparison.previous_expenses),
            previous_net_profit=quantize_money(comparison.previous_net_profit),
            income_change=quantize_percent(comparison.income_change),
            expense_change=quantize_percent(comparison.expense_change),
            profit_change=quantize_percent(comparison.profit_change),
        ),
        income_by_category=_to_category_lines(summary.income_by_category),
        expenses_by_category=_to_category_lines(summary.expenses_by_category),
        commissions_by_professional=[
            CommissionLineOut(
                professional_id=c.professional_id,
                name=c.name,
                amount=quantize_money(c.amount),
            )
            for c in summary.commissions_by_professional
        ],
    )


@router.get("/financial/profit-loss", response_model=ProfitLossOut)
def get_profit_loss(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    statement = profit_and_loss(db, tenant.id, window_start, window_end)
    revenue = statement.revenue
    expenses = statement.expenses
    return ProfitLossOut(
        start=window_start,
        end=window_end,
        revenue=RevenueLinesOut(
            treatments=quantize_money(revenue.treatments),
            consultations=quantize_money(revenue.consultations),
            other=quantize_money(revenue.other),
            total=quantize_money(revenue.total),
        ),
        expenses=ExpenseLinesOut(
            salaries=quantize_money(expenses.salaries),
            rent=quantize_money(expenses.rent),
            supplies=quantize_money(expenses.supplies),
            utilities=quantize_money(expenses.utilities),
            marketing=quantize_money(expenses.marketing),
            commissions=quantize_money(expenses.commissions),
            other=quantize_money(expenses.other),
            total=quantize_money(expenses.total),
        ),
        gross_profit=quantize_money(statement.gross_profit),
        net_profit=quantize_money(statement.net_profit),
        profit_margin=quantize_percent(statement.profit_margin),
    )


@router.get("/financial/cash-flow", response_model=List[CashFlowPeriodOut])
def get_cash_flow(
    period: str = Query(default="day"),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    try:
        buckets = cash_flow_report(db, tenant.id, window_start, window_end, period)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [
        CashFlowPeriodOut(
            period=b.period,
            income=quantize_money(b.income),
            expense=quantize_money(b.expense),
            balance=quantize_money(b.balance),
        )
        for b in buckets
    ]


@router.get("/financial/summary", response_model=FinancialOverviewOut)
def get_financial_summary(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    window_start, window_end = _date_range(start, end)
    overview = financial_overview(db, tenant.id, window_start, window_end)
    return FinancialOverviewOut(
        income=quantize_money(overview.income),
        expenses=quantize_money(overview.expenses),
        balance=quantize_money(overview.balance),
        pending_amount=quantize_money(overview.pending_amount),
        pending_count=overview.pending_count,
        overdue_amount=quantize_money(overview.overdue_amount),
        overdue_count=overview.overdue_count,
    )
