"""Tests for gunicorn configuration."""
from __future__ import annotations

import importlib.util
import os
from unittest.mock import patch


def _load():
    spec = importlib.util.spec_from_file_location("gunicorn_conf", "gunicorn.conf.py")
    assert spec is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


class TestGunicornConfig:
    def test_config_loads(self) -> None:
        mod = _load()
        assert mod.worker_class == "uvicorn.workers.UvicornWorker"
        assert mod.proc_name == "credit_ledger"

    def test_default_bind(self) -> None:
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("GUNICORN_BIND", None)
            assert _load().bind == "0.0.0.0:8001"

    def test_env_overrides(self) -> None:
        with patch.dict(os.environ, {"GUNICORN_WORKERS": "3", "GUNICORN_TIMEOUT": "60"}):
            mod = _load()
        assert mod.workers == 3
        assert mod.timeout == 60
