import json

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.slots import WorkingWindow
from .models import TenantPolicy, utc_now_naive

logger = structlog.get_logger("clinicos.policies")

SCHEDULE_POLICY_KEY = "schedule_policy"


class SchedulePolicy(BaseModel):
    work_start_hour: int = Field(default=settings.WORK_START_HOUR, ge=0, le=23)
    work_end_hour: int = Field(default=settings.WORK_END_HOUR, ge=1, le=24)
    default_slot_minutes: int = Field(default=settings.DEFAULT_SLOT_MINUTES, ge=5, le=480)

    @validator("work_end_hour")
    @classmethod
    def validate_end_after_start(cls, value: int, values: dict) -> int:
        start_hour = values.get("work_start_hour")
        if start_hour is not None and value <= start_hour:
            raise ValueError("work_end_hour must be greater than work_start_hour")
        return value

    @property
    def window(self) -> WorkingWindow:
        return WorkingWindow(self.work_start_hour, self.work_end_hour)

    @property
    def working_hours_per_day(self) -> int:
        return self.work_end_hour - self.work_start_hour


def _default_schedule_policy() -> SchedulePolicy:
    return SchedulePolicy(
        work_start_hour=settings.WORK_START_HOUR,
        work_end_hour=settings.WORK_END_HOUR,
        default_slot_minutes=settings.DEFAULT_SLOT_MINUTES,
    )


def _get_policy_row(db: Session, tenant_id: int, key: str) -> TenantPolicy | None:
    return db.execute(
        select(TenantPolicy).where(
            TenantPolicy.tenant_id == tenant_id,
            TenantPolicy.key == key,
        )
    ).scalar_one_or_none()


def get_schedule_policy(db: Session, tenant_id: int) -> SchedulePolicy:
    row = _get_policy_row(db, tenant_id, SCHEDULE_POLICY_KEY)
    if not row:
        return _default_schedule_policy()
    try:
        raw = json.loads(row.value_json or "{}")
        return SchedulePolicy(**(raw if isinstance(raw, dict) else {}))
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        logger.warning("schedule_policy_invalid", tenant_id=tenant_id, error=str(exc))
        return _default_schedule_policy()


def set_schedule_policy(db: Session, tenant_id: int, policy: SchedulePolicy) -> SchedulePolicy:
    row = _get_policy_row(db, tenant_id, SCHEDULE_POLICY_KEY)
    payload = json.dumps(policy.dict(), sort_keys=True)
    if row is None:
        row = TenantPolicy(tenant_id=tenant_id, key=SCHEDULE_POLICY_KEY)
        db.add(row)
    row.value_json = payload
    row.updated_at = utc_now_naive()
    db.commit()
    logger.info("schedule_policy_updated", tenant_id=tenant_id, **policy.dict())
    return policy
