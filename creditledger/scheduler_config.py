import logging
import os
from datetime import timedelta

from creditledger.config import settings

logger = logging.getLogger(__name__)

SWEEP_TASK_NAME = "creditledger.tasks.sweep_billing_cycles"


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or settings.redis_url
    backend = _env_value("CELERY_RESULT_BACKEND") or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


def build_beat_schedule() -> dict:
    interval_seconds = max(settings.sweep_interval_seconds, 1)
    return {
        "sweep_billing_cycles": {
            "task": SWEEP_TASK_NAME,
            "schedule": timedelta(seconds=interval_seconds),
            "args": [],
            "kwargs": {"pull": settings.sweep_pull_provider},
        }
    }
