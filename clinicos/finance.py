from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.orm import Session

from .config import settings
from .core.commissions import ProfessionalCommission, accumulate_commission
from .core.money import ZERO, average_ticket, percent_change
from .core.profit import (
    CommissionLine,
    NetProfitSummary,
    ProfitLossStatement,
    build_net_profit_summary,
    build_profit_and_loss,
)
from .core.receivables import Receivables, build_receivables
from .core.revenue import (
    GROUP_BY_CHOICES,
    CashFlowPeriod,
    ProcedureRevenue,
    ProfessionalRevenue,
    RevenueGroup,
    ScheduleAlert,
    cash_flow,
    group_ledger_by_category,
    group_revenue,
    previous_window,
    revenue_by_procedure,
    revenue_by_professional,
    schedule_alerts,
    sum_amounts,
)
from .errors import ValidationError
from .models import utc_now_naive
from .policies import get_schedule_policy
from .repository import (
    average_active_procedure_price,
    completed_revenue_rows,
    count_active_professionals,
    ledger_rows,
    list_active_professionals,
    payment_totals,
    receivable_rows,
    revenue_rows,
)
from .statuses import AppointmentStatus, PaymentStatus, TransactionType

logger = structlog.get_logger("clinicos.finance")

CANCELLED = [AppointmentStatus.CANCELLED.value]


def _validate_range(start: datetime, end: datetime) -> None:
    if end < start:
        raise ValidationError("end must not be before start")


def aggregate_revenue(
    db: Session, tenant_id: int, start: datetime, end: datetime, group_by: str
) -> list[RevenueGroup]:
    _validate_range(start, end)
    if group_by not in GROUP_BY_CHOICES:
        raise ValidationError(
            f"group_by must be one of: {', '.join(GROUP_BY_CHOICES)}"
        )

    if group_by == "category":
        return group_ledger_by_category(
            ledger_rows(db, tenant_id, start, end, type_=TransactionType.INCOME.value)
        )

    rows = completed_revenue_rows(db, tenant_id, start, end)
    professional_count = 0
    hours_per_day = 0
    if group_by == "day":
        professional_count = count_active_professionals(db, tenant_id)
        hours_per_day = get_schedule_policy(db, tenant_id).working_hours_per_day
    return group_revenue(rows, group_by, professional_count, hours_per_day)


def revenue_total(db: Session, tenant_id: int, start: datetime, end: datetime) -> tuple[Decimal, int]:
    """Ungrouped completed-appointment revenue and count."""
    _validate_range(start, end)
    rows = completed_revenue_rows(db, tenant_id, start, end)
    return sum_amounts(rows), len(rows)


def get_revenue_by_professional(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> list[ProfessionalRevenue]:
    _validate_range(start, end)
    professionals = list_active_professionals(db, tenant_id)
    rows = revenue_rows(db, tenant_id, start, end, exclude_statuses=CANCELLED)
    return revenue_by_professional(professionals, rows)


def get_revenue_by_procedure(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> list[ProcedureRevenue]:
    _validate_range(start, end)
    return revenue_by_procedure(completed_revenue_rows(db, tenant_id, start, end))


@dataclass
class ScheduleFinancialSummary:
    total_expected_revenue: Decimal
    appointment_count: int
    average_ticket: Decimal
    comparison_with_last_week: Decimal
    daily: list[RevenueGroup] = field(default_factory=list)
    professionals: list[RevenueGroup] = field(default_factory=list)
    alerts: list[ScheduleAlert] = field(default_factory=list)


def schedule_financial_summary(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> ScheduleFinancialSummary:
    """Expected revenue of the booked (non-cancelled) calendar for a window."""
    _validate_range(start, end)
    rows = revenue_rows(db, tenant_id, start, end, exclude_statuses=CANCELLED)
    policy = get_schedule_policy(db, tenant_id)
    professional_count = count_active_professionals(db, tenant_id)

    daily = group_revenue(rows, "day", professional_count, policy.working_hours_per_day)
    professionals = group_revenue(rows, "professional")
    total = sum_amounts(rows)

    week = timedelta(days=7)
    previous_rows = revenue_rows(
        db, tenant_id, start - week, end - week, exclude_statuses=CANCELLED
    )
    average_price = average_active_procedure_price(db, tenant_id)
    if not average_price:
        average_price = settings.DEFAULT_AVERAGE_PROCEDURE_PRICE

    return ScheduleFinancialSummary(
        total_expected_revenue=total,
        appointment_count=len(rows),
        average_ticket=average_ticket(total, len(rows)),
        comparison_with_last_week=percent_change(total, sum_amounts(previous_rows)),
        daily=daily,
        professionals=professionals,
        alerts=schedule_alerts(daily, professionals, average_price),
    )


@dataclass
class CommissionsSummary:
    start: datetime
    end: datetime
    total_commissions: Decimal
    total_revenue: Decimal
    professionals: list[ProfessionalCommission]


def _commissions_by_professional(
    db: Session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    professional_id: int | None = None,
) -> list[ProfessionalCommission]:
    professionals = list_active_professionals(db, tenant_id, professional_id)
    rows = completed_revenue_rows(db, tenant_id, start, end, professional_id=professional_id)

    completed = defaultdict(list)
    for row in rows:
        completed[row.professional_id].append((row.amount, row.procedure_id))

    # Each professional depends only on its own rows.
    return [accumulate_commission(p, completed.get(p.id, [])) for p in professionals]


def commissions_summary(
    db: Session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    professional_id: int | None = None,
) -> CommissionsSummary:
    _validate_range(start, end)
    results = [
        r
        for r in _commissions_by_professional(db, tenant_id, start, end, professional_id)
        if r.total_commission > 0
    ]
    results.sort(key=lambda r: (-r.total_commission, r.name))
    return CommissionsSummary(
        start=start,
        end=end,
        total_commissions=sum((r.total_commission for r in results), ZERO),
        total_revenue=sum((r.total_revenue for r in results), ZERO),
        professionals=results,
    )


def commissions_for_period(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> list[CommissionLine]:
    """Per-professional commission totals, omitting professionals who earned none."""
    return [
        CommissionLine(r.professional_id, r.name, r.total_commission)
        for r in _commissions_by_professional(db, tenant_id, start, end)
        if r.total_commission > 0
    ]


def aggregate_receivables(
    db: Session, tenant_id: int, as_of: datetime | None = None
) -> Receivables:
    moment = as_of or utc_now_naive()
    return build_receivables(receivable_rows(db, tenant_id), moment)


def _income_and_expenses(db: Session, tenant_id: int, start: datetime, end: datetime):
    rows = ledger_rows(db, tenant_id, start, end)
    return (
        group_ledger_by_category(rows, TransactionType.INCOME.value),
        group_ledger_by_category(rows, TransactionType.EXPENSE.value),
    )


def compose_net_profit(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> NetProfitSummary:
    _validate_range(start, end)
    previous_start, previous_end = previous_window(start, end)

    income, expenses = _income_and_expenses(db, tenant_id, start, end)
    previous_income, previous_expenses = _income_and_expenses(
        db, tenant_id, previous_start, previous_end
    )
    commissions = commissions_for_period(db, tenant_id, start, end)

    summary = build_net_profit_summary(
        income, expenses, commissions, previous_income, previous_expenses
    )
    logger.info(
        "net_profit_composed",
        tenant_id=tenant_id,
        start=start.isoformat(),
        end=end.isoformat(),
        net_profit=str(summary.net_profit),
    )
    return summary


def profit_and_loss(
    db: Session, tenant_id: int, start: datetime, end: datetime
) -> ProfitLossStatement:
    _validate_range(start, end)
    income, expenses = _income_and_expenses(db, tenant_id, start, end)
    commissions = commissions_for_period(db, tenant_id, start, end)
    return build_profit_and_loss(income, expenses, sum_amounts(commissions))


def cash_flow_report(
    db: Session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    period: str = "day",
) -> list[CashFlowPeriod]:
    _validate_range(start, end)
    return cash_flow(ledger_rows(db, tenant_id, start, end), period)


@dataclass
class FinancialOverview:
    income: Decimal
    expenses: Decimal
    pending_amount: Decimal
    pending_count: int
    overdue_amount: Decimal
    overdue_count: int

    @property
    def balance(self) -> Decimal:
        return self.income - self.expenses


def financial_overview(
    db: Session,
    tenant_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> FinancialOverview:
    rows = ledger_rows(db, tenant_id, start, end)
    open_statuses = [PaymentStatus.PENDING.value, PaymentStatus.PARTIALLY_PAID.value]
    pending_amount, pending_count = payment_totals(db, tenant_id, open_statuses)
    overdue_amount, overdue_count = payment_totals(
        db, tenant_id, open_statuses, due_before=now or utc_now_naive()
    )
    return FinancialOverview(
        income=sum_amounts(r for r in rows if r.type == TransactionType.INCOME.value),
        expenses=sum_amounts(r for r in rows if r.type == TransactionType.EXPENSE.value),
        pending_amount=pending_amount,
        pending_count=pending_count,
        overdue_amount=overdue_amount,
        overdue_count=overdue_count,
    )
