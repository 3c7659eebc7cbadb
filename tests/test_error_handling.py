# ruff: noqa: INP001
"""JSON error envelope and request-id propagation on the HTTP surface."""

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from starlette.requests import Request as StarletteRequest

from sprintboard.core import error_handling
from sprintboard.core.error_handling import (
    REQUEST_ID_HEADER,
    _error_payload,
    _get_request_id,
    _http_exception_exception_handler,
    _request_validation_exception_handler,
    error_response,
    install_error_handling,
)


def _app() -> FastAPI:
    app = FastAPI()
    install_error_handling(app)

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str, limit: int = 1) -> dict[str, object]:
        if task_id == "missing":
            raise HTTPException(status_code=404, detail="Task not found")
        if task_id == "boom":
            raise RuntimeError("boom")
        return {"task_id": task_id, "limit": limit}

    @app.post("/tasks/{task_id}/claim")
    def claim(task_id: str, request: Request):  # noqa: ANN202
        return error_response(
            request,
            status_code=503,
            detail={"task_id": task_id},
            code="persistence_unavailable",
            retryable=True,
        )

    return app


def test_validation_error_carries_request_id() -> None:
    client = TestClient(_app())

    resp = client.get("/tasks/t1?limit=abc")

    assert resp.status_code == 422
    body = resp.json()
    assert isinstance(body["detail"], list)
    assert body["request_id"]
    assert resp.headers[REQUEST_ID_HEADER] == body["request_id"]


def test_http_exception_keeps_detail() -> None:
    resp = TestClient(_app()).get("/tasks/missing")

    assert resp.status_code == 404
    assert resp.json()["detail"] == "Task not found"
    assert resp.headers[REQUEST_ID_HEADER] == resp.json()["request_id"]


def test_unhandled_exception_is_a_generic_500() -> None:
    client = TestClient(_app(), raise_server_exceptions=False)

    resp = client.get("/tasks/boom")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"
    assert resp.json()["request_id"]


def test_error_response_includes_code_and_retryable_flag() -> None:
    resp = TestClient(_app()).post("/tasks/t9/claim", headers={REQUEST_ID_HEADER: " req-7 "})

    assert resp.status_code == 503
    assert resp.json() == {
        "detail": {"task_id": "t9"},
        "request_id": "req-7",
        "code": "persistence_unavailable",
        "retryable": True,
    }
    assert resp.headers[REQUEST_ID_HEADER] == "req-7"


def test_slow_request_is_logged_with_threshold(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[tuple[str, dict[str, object]]] = []

    def _fake_warning(message: str, *args: object, **kwargs: object) -> None:
        _ = args
        extra = kwargs.get("extra")
        warnings.append((message, extra if isinstance(extra, dict) else {}))

    ticks = iter((10.0, 10.5))
    monkeypatch.setattr(error_handling.settings, "request_log_slow_ms", 100)
    monkeypatch.setattr(error_handling, "perf_counter", lambda: next(ticks))
    monkeypatch.setattr(error_handling.logger, "warning", _fake_warning)

    resp = TestClient(_app()).get("/tasks/t1")

    assert resp.status_code == 200
    slow = [extra for message, extra in warnings if message == "http.request.slow"]
    assert slow
    assert slow[0]["slow_threshold_ms"] == 100
    assert slow[0]["duration_ms"] == 500


def test_health_probe_is_not_logged_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    infos: list[str] = []
    monkeypatch.setattr(error_handling.settings, "request_log_include_health", False)
    monkeypatch.setattr(
        error_handling.logger,
        "info",
        lambda message, *args, **kwargs: infos.append(message),
    )

    app = FastAPI()
    install_error_handling(app)

    @app.get("/healthz")
    def healthz() -> dict[str, bool]:
        return {"ok": True}

    resp = TestClient(app).get("/healthz")

    assert resp.status_code == 200
    assert resp.headers[REQUEST_ID_HEADER]
    assert infos == []


def test_request_id_lookup_ignores_invalid_state() -> None:
    assert _get_request_id(StarletteRequest({"type": "http", "headers": [], "state": {}})) is None
    assert (
        _get_request_id(
            StarletteRequest({"type": "http", "headers": [], "state": {"request_id": 42}}),
        )
        is None
    )


def test_error_payload_omits_unset_fields() -> None:
    assert _error_payload(detail="x", request_id=None) == {"detail": "x"}


@pytest.mark.asyncio
async def test_handlers_reject_unexpected_exception_types() -> None:
    req = StarletteRequest({"type": "http", "headers": [], "state": {}})
    with pytest.raises(TypeError, match="Expected RequestValidationError"):
        await _request_validation_exception_handler(req, Exception("x"))
    with pytest.raises(TypeError, match="Expected StarletteHTTPException"):
        await _http_exception_exception_handler(req, Exception("x"))


def test_json_safe_decodes_bytes_and_stringifies_unknowns() -> None:
    class Marker:
        def __str__(self) -> str:
            return "marker"

    assert error_handling._json_safe(b"\xff") == "\ufffd"
    assert error_handling._json_safe({"k": (Marker(), 1)}) == {"k": ["marker", 1]}
