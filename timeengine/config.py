from __future__ import annotations

import os

from timeengine.currency_conversion import normalize_currency

FALLBACK_CURRENCY = "RON"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./timeengine.db")


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")


def get_system_default_currency() -> str:
    return _currency_from_env("DEFAULT_CURRENCY")


def get_fx_anchor_currency() -> str:
    return _currency_from_env("FX_ANCHOR_CURRENCY")


def get_amortize_one_time_months() -> int:
    return _int_from_env("AMORTIZE_ONE_TIME_MONTHS", 0)


def get_amortize_capex_months() -> int:
    return _int_from_env("AMORTIZE_CAPEX_MONTHS", 12)


def get_notification_dedupe_hours() -> int:
    return max(0, _int_from_env("NOTIFICATION_DEDUPE_HOURS", 24))


def get_log_level() -> str:
    raw = os.getenv("TIME_ENGINE_LOG_LEVEL", "INFO").strip().upper()
    return raw if raw in LOG_LEVELS else "INFO"


def _currency_from_env(name: str) -> str:
    raw = os.getenv(name, FALLBACK_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return FALLBACK_CURRENCY


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default
