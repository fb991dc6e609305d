"""Tests for Celery configuration and the background tasks."""

import os
from datetime import timedelta
from unittest.mock import MagicMock, patch

from creditledger import scheduler_config
from creditledger.services.reconciler import SweepReport


def test_celery_config_defaults_to_redis_url():
    with patch.dict(os.environ, {}, clear=False):
        os.environ.pop("CELERY_BROKER_URL", None)
        os.environ.pop("CELERY_RESULT_BACKEND", None)
        config = scheduler_config.get_celery_config()
    assert config["broker_url"] == scheduler_config.settings.redis_url
    assert config["result_backend"] == scheduler_config.settings.redis_url
    assert config["timezone"] == "UTC"
    assert config["task_acks_late"] is True


def test_celery_config_env_overrides():
    env = {
        "CELERY_BROKER_URL": "redis://broker:6379/2",
        "CELERY_TIMEZONE": "Europe/Berlin",
        "CELERY_BEAT_MAX_LOOP_INTERVAL": "oops",
    }
    with patch.dict(os.environ, env):
        config = scheduler_config.get_celery_config()
    assert config["broker_url"] == "redis://broker:6379/2"
    assert config["timezone"] == "Europe/Berlin"
    assert config["beat_max_loop_interval"] == 5


def test_beat_schedule_runs_sweep():
    schedule = scheduler_config.build_beat_schedule()
    entry = schedule["sweep_billing_cycles"]
    assert entry["task"] == "creditledger.tasks.sweep_billing_cycles"
    assert entry["schedule"] == timedelta(seconds=scheduler_config.settings.sweep_interval_seconds)
    assert entry["kwargs"] == {"pull": scheduler_config.settings.sweep_pull_provider}


def test_sweep_task_uses_process_services():
    from creditledger import tasks

    services = MagicMock()
    services.reconciler.sweep.return_value = SweepReport(checked=2, granted=1)
    with patch.object(tasks, "billing_services", return_value=services):
        result = tasks.sweep_billing_cycles.run(pull=True)

    assert result["checked"] == 2
    assert result["granted"] == 1
    _, kwargs = services.reconciler.sweep.call_args
    assert kwargs == {"pull": True}


def test_sweep_task_registered():
    from creditledger import tasks  # noqa: F401
    from creditledger.celery_app import celery_app

    assert "creditledger.tasks.sweep_billing_cycles" in celery_app.tasks
    assert "creditledger.tasks.reconcile_subscription" in celery_app.tasks
