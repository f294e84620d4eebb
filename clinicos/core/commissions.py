from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable

import structlog

from ..statuses import CommissionType
from .money import HUNDRED, ZERO, to_decimal

logger = structlog.get_logger("clinicos.commissions")


@dataclass(frozen=True)
class CommissionSettings:
    model: CommissionType | None
    value: Decimal = ZERO
    table: dict[str, Decimal] = field(default_factory=dict)


def _parse_model(raw) -> CommissionType | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, CommissionType):
        return raw
    try:
        return CommissionType(str(raw).strip().lower())
    except ValueError:
        logger.warning("commission_type_unknown", commission_type=str(raw))
        return None


def _parse_table(raw, professional_id=None) -> dict[str, Decimal]:
    if not isinstance(raw, dict):
        return {}
    table: dict[str, Decimal] = {}
    for key, value in raw.items():
        try:
            table[str(key)] = to_decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            logger.warning(
                "commission_table_entry_ignored",
                professional_id=professional_id,
                procedure_id=str(key),
            )
    return table


def commission_settings_for(professional) -> CommissionSettings:
    """Build a typed commission record from a professional row."""
    professional_id = getattr(professional, "id", None)
    try:
        value = to_decimal(getattr(professional, "commission_value", None))
    except (InvalidOperation, TypeError, ValueError):
        value = ZERO
    return CommissionSettings(
        model=_parse_model(getattr(professional, "commission_type", None)),
        value=value,
        table=_parse_table(getattr(professional, "commission_table", None), professional_id),
    )


def compute_commission(
    settings: CommissionSettings,
    revenue_amount,
    procedure_ids: Iterable = (),
) -> Decimal:
    if settings.model is None or not settings.value:
        return ZERO

    if settings.model is CommissionType.PERCENTAGE:
        return to_decimal(revenue_amount) * (settings.value / HUNDRED)
    if settings.model is CommissionType.FIXED:
        return settings.value
    if settings.model is CommissionType.PER_PROCEDURE:
        total = ZERO
        for procedure_id in procedure_ids:
            total += settings.table.get(str(procedure_id), settings.value)
        return total
    return ZERO


@dataclass
class ProfessionalCommission:
    professional_id: int
    name: str
    commission_type: str
    commission_value: Decimal
    total_revenue: Decimal = ZERO
    total_commission: Decimal = ZERO
    appointment_count: int = 0


def accumulate_commission(
    professional,
    completed: Iterable[tuple[Decimal, int | None]],
) -> ProfessionalCommission:
    """Sum per-appointment commission for one professional.

    ``completed`` yields ``(procedure_price, procedure_id)`` per completed
    appointment; appointments without a procedure contribute zero revenue
    and no procedure to the per-procedure model.
    """
    settings = commission_settings_for(professional)
    result = ProfessionalCommission(
        professional_id=professional.id,
        name=professional.name,
        commission_type=(settings.model or CommissionType.PERCENTAGE).value,
        commission_value=settings.value,
    )
    for price, procedure_id in completed:
        revenue = to_decimal(price)
        procedures = [procedure_id] if procedure_id is not None else []
        result.total_revenue += revenue
        result.total_commission += compute_commission(settings, revenue, procedures)
        result.appointment_count += 1
    return result
