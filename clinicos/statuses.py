from enum import Enum


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


# Statuses that no longer hold a slot on the calendar.
RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    PER_PROCEDURE = "per_procedure"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


RECEIVABLE_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PARTIALLY_PAID, PaymentStatus.OVERDUE}
)


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


def values(statuses) -> list[str]:
    return sorted(s.value for s in statuses)
