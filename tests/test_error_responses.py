"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from creditledger.errors import (
    IdempotencyConflictError,
    LedgerUnavailableError,
    ProviderError,
    ProviderUnavailableError,
    register_error_handlers,
)
from creditledger.observability import ObservabilityMiddleware


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.get("/unavailable")
    def unavailable():
        raise LedgerUnavailableError("store down")

    @app.get("/provider-down")
    def provider_down():
        raise ProviderUnavailableError("stripe timeout")

    @app.get("/provider-error")
    def provider_error():
        raise ProviderError("bad key")

    @app.get("/conflict")
    def conflict():
        raise IdempotencyConflictError("k1", {"delta": -2}, {"delta": -1})

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_ok_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok", headers={"x-request-id": "req-123"})
        assert resp.status_code == 200
        assert resp.headers["x-request-id"] == "req-123"

    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_ledger_unavailable_is_503(self, client: TestClient) -> None:
        resp = client.get("/unavailable")
        assert resp.status_code == 503
        assert resp.json()["code"] == "ledger_unavailable"

    def test_provider_errors(self, client: TestClient) -> None:
        assert client.get("/provider-down").status_code == 503
        resp = client.get("/provider-error")
        assert resp.status_code == 502
        assert resp.json()["code"] == "provider_error"

    def test_conflict_details(self, client: TestClient) -> None:
        resp = client.get("/conflict")
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "idempotency_conflict"
        assert body["details"] == {"expected": {"delta": -2}, "recorded": {"delta": -1}}

    def test_unhandled_error_is_generic(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert "boom" not in body["message"]
