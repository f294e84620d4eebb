from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, validator


class AppointmentCreate(BaseModel):
    patient_id: int
    professional_id: int
    room_id: int | None = None
    procedure_id: int | None = None
    start_time: datetime
    end_time: datetime
    notes: str | None = Field(default=None, max_length=4000)
    internal_notes: str | None = Field(default=None, max_length=4000)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values: dict) -> datetime:
        start_time = values.get("start_time")
        if start_time and value <= start_time:
            raise ValueError("end_time must be after start_time")
        return value


class AppointmentUpdate(BaseModel):
    patient_id: int | None = None
    professional_id: int | None = None
    room_id: int | None = None
    procedure_id: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = Field(default=None, max_length=4000)
    internal_notes: str | None = Field(default=None, max_length=4000)


class AppointmentStatusUpdate(BaseModel):
    status: str
    cancellation_reason: str | None = Field(default=None, max_length=500)
    confirmed_via: str | None = Field(default=None, max_length=40)


class AppointmentOut(BaseModel):
    id: int
    patient_id: int
    professional_id: int
    room_id: int | None = None
    procedure_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    internal_notes: str | None = None
    confirmed_at: datetime | None = None
    confirmed_via: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    created_by: str | None = None


class AppointmentStatusEventOut(BaseModel):
    id: int
    appointment_id: int
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class ConflictCheckIn(BaseModel):
    professional_id: int
    room_id: int | None = None
    start_time: datetime
    end_time: datetime
    exclude_appointment_id: int | None = None


class ConflictOut(BaseModel):
    conflict: bool
    kind: str | None = None
    appointment_id: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None


class AvailableSlotsOut(BaseModel):
    day: date
    professional_id: int
    slot_minutes: int
    slots: list[datetime]


class RiskIndicatorsOut(BaseModel):
    appointment_id: int
    no_show_risk: bool
    is_premium: bool
    is_confirmed: bool
    reasons: list[str] = []


class RevenueGroupOut(BaseModel):
    key: str
    label: str
    amount: Decimal
    count: int
    occupancy_percent: Decimal | None = None


class RevenueReportOut(BaseModel):
    group_by: str
    start: datetime
    end: datetime
    total: Decimal
    count: int
    average_ticket: Decimal
    groups: list[RevenueGroupOut]


class ProfessionalRevenueOut(BaseModel):
    professional_id: int
    name: str
    appointment_count: int
    completed_count: int
    revenue: Decimal
    average_ticket: Decimal


class ProcedureRevenueOut(BaseModel):
    procedure_id: int
    name: str
    code: str | None = None
    count: int
    revenue: Decimal
    average_price: Decimal


class ScheduleAlertOut(BaseModel):
    type: str
    message: str
    severity: str
    day: str | None = None
    professional: str | None = None


class ScheduleFinancialSummaryOut(BaseModel):
    total_expected_revenue: Decimal
    appointment_count: int
    average_ticket: Decimal
    comparison_with_last_week: Decimal
    daily: list[RevenueGroupOut]
    professionals: list[RevenueGroupOut]
    alerts: list[ScheduleAlertOut]


class ProfessionalCommissionOut(BaseModel):
    professional_id: int
    name: str
    commission_type: str
    commission_value: Decimal
    total_revenue: Decimal
    total_commission: Decimal
    appointment_count: int


class CommissionsSummaryOut(BaseModel):
    start: datetime
    end: datetime
    total_commissions: Decimal
    total_revenue: Decimal
    professionals: list[ProfessionalCommissionOut]


class AgingBucketOut(BaseModel):
    amount: Decimal
    count: int


class ReceivablePaymentOut(BaseModel):
    id: int
    description: str
    amount: Decimal
    paid_amount: Decimal
    owed: Decimal
    due_date: datetime
    status: str


class PatientReceivableOut(BaseModel):
    id: int
    name: str
    phone: str | None = None
    email: str | None = None
    total_owed: Decimal
    oldest_due: datetime
    aging_bucket: str
    payments: list[ReceivablePaymentOut]


class ReceivablesOut(BaseModel):
    as_of: datetime
    total_receivable: Decimal
    patients_count: int
    aging: dict[str, AgingBucketOut]
    patients: list[PatientReceivableOut]


class CategoryAmountOut(BaseModel):
    category: str
    amount: Decimal


class CommissionLineOut(BaseModel):
    professional_id: int
    name: str
    amount: Decimal


class PeriodComparisonOut(BaseModel):
    previous_gross_income: Decimal
    previous_expenses: Decimal
    previous_net_profit: Decimal
    income_change: Decimal
    expense_change: Decimal
    profit_change: Decimal


class NetProfitOut(BaseModel):
    start: datetime
    end: datetime
    gross_income: Decimal
    total_expenses: Decimal
    total_commissions: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    comparison: PeriodComparisonOut
    income_by_category: list[CategoryAmountOut]
    expenses_by_category: list[CategoryAmountOut]
    commissions_by_professional: list[CommissionLineOut]


class RevenueLinesOut(BaseModel):
    treatments: Decimal
    consultations: Decimal
    other: Decimal
    total: Decimal


class ExpenseLinesOut(BaseModel):
    salaries: Decimal
    rent: Decimal
    supplies: Decimal
    utilities: Decimal
    marketing: Decimal
    commissions: Decimal
    other: Decimal
    total: Decimal


class ProfitLossOut(BaseModel):
    start: datetime
    end: datetime
    revenue: RevenueLinesOut
    expenses: ExpenseLinesOut
    gross_profit: Decimal
    net_profit: Decimal
    profit_margin: Decimal


class CashFlowPeriodOut(BaseModel):
    period: str
    income: Decimal
    expense: Decimal
    balance: Decimal


class FinancialOverviewOut(BaseModel):
    income: Decimal
    expenses: Decimal
    balance: Decimal
    pending_amount: Decimal
    pending_count: int
    overdue_amount: Decimal
    overdue_count: int
