from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable

from ..errors import ValidationError
from .money import HUNDRED, ZERO, average_ticket, safe_ratio, to_decimal

GROUP_BY_CHOICES = ("category", "professional", "procedure", "day")
CASH_FLOW_PERIODS = ("day", "week", "month")
NO_PROCEDURE_KEY = "none"
WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
HIGH_DEMAND_WEEKDAYS = frozenset({0, 1, 2})


@dataclass(frozen=True)
class RevenueRow:
    appointment_id: int
    start_time: datetime
    status: str
    professional_id: int
    professional_name: str
    procedure_id: int | None = None
    procedure_name: str | None = None
    procedure_code: str | None = None
    amount: Decimal = ZERO

    @property
    def day(self) -> date:
        return self.start_time.date()


@dataclass(frozen=True)
class LedgerRow:
    type: str
    category: str
    amount: Decimal
    date: datetime


@dataclass
class RevenueGroup:
    key: str
    label: str
    amount: Decimal = ZERO
    count: int = 0
    occupancy_percent: Decimal | None = None


def occupancy_percent(appointment_count: int, professional_count: int, hours_per_day: int) -> Decimal:
    # Not clamped: overlapping rooms/professionals can push this above 100.
    capacity = int(professional_count) * int(hours_per_day)
    return safe_ratio(appointment_count, capacity) * HUNDRED


def _row_key(row: RevenueRow, group_by: str) -> tuple[str, str]:
    if group_by == "day":
        return row.day.isoformat(), WEEKDAY_NAMES[row.day.weekday()]
    if group_by == "professional":
        return str(row.professional_id), row.professional_name
    if row.procedure_id is None:
        return NO_PROCEDURE_KEY, "No procedure"
    return str(row.procedure_id), row.procedure_name or str(row.procedure_id)


def _order_groups(groups: Iterable[RevenueGroup], group_by: str) -> list[RevenueGroup]:
    if group_by == "day":
        return sorted(groups, key=lambda g: g.key)
    return sorted(groups, key=lambda g: (-g.amount, g.key))


def group_revenue(
    rows: Iterable[RevenueRow],
    group_by: str,
    professional_count: int = 0,
    hours_per_day: int = 0,
) -> list[RevenueGroup]:
    """Group appointment revenue rows by day, professional or procedure."""
    if group_by not in ("professional", "procedure", "day"):
        raise ValidationError(f"Cannot group appointment revenue by {group_by!r}")

    groups: dict[str, RevenueGroup] = {}
    for row in rows:
        key, label = _row_key(row, group_by)
        group = groups.get(key)
        if group is None:
            group = groups[key] = RevenueGroup(key=key, label=label)
        group.amount += to_decimal(row.amount)
        group.count += 1

    if group_by == "day":
        for group in groups.values():
            group.occupancy_percent = occupancy_percent(
                group.count, professional_count, hours_per_day
            )
    return _order_groups(groups.values(), group_by)


def group_ledger_by_category(rows: Iterable[LedgerRow], type_: str | None = None) -> list[RevenueGroup]:
    groups: dict[str, RevenueGroup] = {}
    for row in rows:
        if type_ is not None and row.type != type_:
            continue
        group = groups.get(row.category)
        if group is None:
            group = groups[row.category] = RevenueGroup(key=row.category, label=row.category)
        group.amount += to_decimal(row.amount)
        group.count += 1
    return _order_groups(groups.values(), "category")


def sum_amounts(items) -> Decimal:
    return sum((to_decimal(i.amount) for i in items), ZERO)


def previous_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """The window of identical length ending right before ``start``."""
    length = end - start
    return start - length, start - timedelta(microseconds=1)


@dataclass
class ProfessionalRevenue:
    professional_id: int
    name: str
    appointment_count: int = 0
    completed_count: int = 0
    revenue: Decimal = ZERO

    @property
    def average_ticket(self) -> Decimal:
        return average_ticket(self.revenue, self.completed_count)


def revenue_by_professional(professionals, rows: Iterable[RevenueRow]) -> list[ProfessionalRevenue]:
    """Per-professional counts over non-cancelled rows, revenue over completed ones.

    Every professional passed in is reported, including those with no revenue.
    """
    result = {
        p.id: ProfessionalRevenue(professional_id=p.id, name=p.name) for p in professionals
    }
    for row in rows:
        entry = result.get(row.professional_id)
        if entry is None:
            continue
        entry.appointment_count += 1
        if row.status == "completed":
            entry.completed_count += 1
            entry.revenue += to_decimal(row.amount)
    return sorted(result.values(), key=lambda r: (-r.revenue, r.name))


@dataclass
class ProcedureRevenue:
    procedure_id: int
    name: str
    code: str | None
    count: int = 0
    revenue: Decimal = ZERO

    @property
    def average_price(self) -> Decimal:
        return average_ticket(self.revenue, self.count)


def revenue_by_procedure(rows: Iterable[RevenueRow]) -> list[ProcedureRevenue]:
    result: dict[int, ProcedureRevenue] = {}
    for row in rows:
        if row.procedure_id is None:
            continue
        entry = result.get(row.procedure_id)
        if entry is None:
            entry = result[row.procedure_id] = ProcedureRevenue(
                procedure_id=row.procedure_id,
                name=row.procedure_name or "",
                code=row.procedure_code,
            )
        entry.count += 1
        entry.revenue += to_decimal(row.amount)
    return sorted(result.values(), key=lambda r: (-r.revenue, r.procedure_id))


@dataclass(frozen=True)
class ScheduleAlert:
    type: str
    message: str
    severity: str
    day: str | None = None
    professional: str | None = None


def schedule_alerts(
    daily: list[RevenueGroup],
    professionals: list[RevenueGroup],
    average_procedure_price: Decimal,
) -> list[ScheduleAlert]:
    alerts: list[ScheduleAlert] = []
    price_floor = to_decimal(average_procedure_price) * Decimal("0.7")

    for day in daily:
        occupancy = day.occupancy_percent or ZERO
        weekday = date.fromisoformat(day.key).weekday()
        if occupancy >= 80 and average_ticket(day.amount, day.count) < price_floor:
            alerts.append(
                ScheduleAlert(
                    type="low_profit",
                    message=f"{day.label} ({day.key[5:]}) is fully booked but the ticket is low",
                    severity="warning",
                    day=day.label,
                )
            )
        if occupancy < 50 and weekday in HIGH_DEMAND_WEEKDAYS:
            alerts.append(
                ScheduleAlert(
                    type="idle_schedule",
                    message=f"{day.label} ({day.key[5:]}) has an idle schedule, consider a promotion",
                    severity="info",
                    day=day.label,
                )
            )

    if professionals:
        mean = Decimal(sum(p.count for p in professionals)) / Decimal(len(professionals))
        for prof in professionals:
            if mean > 2 and prof.count < mean * Decimal("0.5"):
                alerts.append(
                    ScheduleAlert(
                        type="underutilized",
                        message=f"{prof.label} has few appointments this period",
                        severity="info",
                        professional=prof.label,
                    )
                )
    return alerts


@dataclass
class CashFlowPeriod:
    period: str
    income: Decimal = ZERO
    expense: Decimal = ZERO

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense


def _cash_flow_key(value: datetime, period: str) -> str:
    if period == "month":
        return f"{value.year:04d}-{value.month:02d}"
    if period == "week":
        # Weeks start on Sunday.
        week_start = value.date() - timedelta(days=(value.weekday() + 1) % 7)
        return week_start.isoformat()
    return value.date().isoformat()


def cash_flow(rows: Iterable[LedgerRow], period: str = "day") -> list[CashFlowPeriod]:
    if period not in CASH_FLOW_PERIODS:
        raise ValidationError(f"Invalid cash flow period: {period!r}")
    buckets: dict[str, CashFlowPeriod] = {}
    for row in rows:
        key = _cash_flow_key(row.date, period)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = CashFlowPeriod(period=key)
        if row.type == "income":
            bucket.income += to_decimal(row.amount)
        else:
            bucket.expense += to_decimal(row.amount)
    return [buckets[k] for k in sorted(buckets)]


@dataclass
class RiskIndicators:
    no_show_risk: bool = False
    is_premium: bool = False
    is_confirmed: bool = False
    reasons: list[str] = field(default_factory=list)


CONFIRMED_LIKE_STATUSES = frozenset({"confirmed", "waiting", "in_progress", "completed"})


def risk_indicators(
    status: str,
    procedure_price,
    average_procedure_price,
    recent_no_shows: int,
) -> RiskIndicators:
    indicators = RiskIndicators(
        no_show_risk=recent_no_shows > 0,
        is_premium=to_decimal(procedure_price) > to_decimal(average_procedure_price) * Decimal("1.5"),
        is_confirmed=status in CONFIRMED_LIKE_STATUSES,
    )
    if indicators.no_show_risk:
        indicators.reasons.append(f"{recent_no_shows} recent no-show(s)")
    if indicators.is_premium:
        indicators.reasons.append("premium procedure")
    return indicators
