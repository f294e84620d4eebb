import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


def _get_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        return Decimal(raw)
    except (InvalidOperation, ValueError):
        return Decimal(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicos.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DEFAULT_TENANT_SLUG = os.getenv("DEFAULT_TENANT_SLUG", "default")
    DEFAULT_TENANT_NAME = os.getenv("DEFAULT_TENANT_NAME", "Default Clinic")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    WORK_START_HOUR = _get_int("WORK_START_HOUR", 8)
    WORK_END_HOUR = _get_int("WORK_END_HOUR", 18)
    DEFAULT_SLOT_MINUTES = _get_int("DEFAULT_SLOT_MINUTES", 30)

    NO_SHOW_LOOKBACK_DAYS = _get_int("NO_SHOW_LOOKBACK_DAYS", 182)
    DEFAULT_AVERAGE_PROCEDURE_PRICE = _get_decimal("DEFAULT_AVERAGE_PROCEDURE_PRICE", "150")

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
