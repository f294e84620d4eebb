from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from .money import ZERO, to_decimal

CURRENT = "current"
THIRTY = "30"
SIXTY = "60"
NINETY_PLUS = "90+"
BUCKETS = (CURRENT, THIRTY, SIXTY, NINETY_PLUS)


@dataclass(frozen=True)
class ReceivableRow:
    payment_id: int
    patient_id: int
    patient_name: str
    patient_phone: str | None
    patient_email: str | None
    description: str
    amount: Decimal
    paid_amount: Decimal
    due_date: datetime
    status: str

    @property
    def owed(self) -> Decimal:
        return to_decimal(self.amount) - to_decimal(self.paid_amount)


@dataclass
class AgingTotal:
    amount: Decimal = ZERO
    count: int = 0


@dataclass
class PatientReceivable:
    patient_id: int
    name: str
    phone: str | None
    email: str | None
    oldest_due: datetime
    aging_bucket: str
    total_owed: Decimal = ZERO
    payments: list[ReceivableRow] = field(default_factory=list)


@dataclass
class Receivables:
    as_of: datetime
    total_receivable: Decimal
    aging: dict[str, AgingTotal]
    patients: list[PatientReceivable]

    @property
    def patients_count(self) -> int:
        return len(self.patients)


def aging_bucket(due_date: datetime, as_of: datetime) -> str:
    if due_date >= as_of - timedelta(days=30):
        return CURRENT
    if due_date >= as_of - timedelta(days=60):
        return THIRTY
    if due_date >= as_of - timedelta(days=90):
        return SIXTY
    return NINETY_PLUS


def build_receivables(rows: Iterable[ReceivableRow], as_of: datetime) -> Receivables:
    aging = {bucket: AgingTotal() for bucket in BUCKETS}
    patients: dict[int, PatientReceivable] = {}

    for row in rows:
        owed = row.owed
        if owed <= 0:
            continue

        bucket = aging_bucket(row.due_date, as_of)
        aging[bucket].amount += owed
        aging[bucket].count += 1

        patient = patients.get(row.patient_id)
        if patient is None:
            patient = patients[row.patient_id] = PatientReceivable(
                patient_id=row.patient_id,
                name=row.patient_name,
                phone=row.patient_phone,
                email=row.patient_email,
                oldest_due=row.due_date,
                aging_bucket=bucket,
            )
        patient.total_owed += owed
        if row.due_date < patient.oldest_due:
            patient.oldest_due = row.due_date
            patient.aging_bucket = bucket
        patient.payments.append(row)

    ranked = sorted(patients.values(), key=lambda p: (-p.total_owed, p.patient_id))
    total = sum((p.total_owed for p in ranked), ZERO)
    return Receivables(as_of=as_of, total_receivable=total, aging=aging, patients=ranked)
