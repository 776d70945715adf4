from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from fieldweek.config import settings
from fieldweek.middleware import RequestTimingMiddleware
from fieldweek.state import RuntimeState


def _build_app() -> FastAPI:
    app = FastAPI()
    app.state.runtime_state = RuntimeState(settings)
    app.add_middleware(RequestTimingMiddleware)

    @app.get("/ping")
    def ping() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/boom")
    def boom():
        return JSONResponse({"detail": "down"}, status_code=503)

    return app


def test_timing_headers_are_set() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/ping")
    assert response.status_code == 200
    assert float(response.headers["X-Request-Duration-Ms"]) >= 0
    assert len(response.headers["X-Request-ID"]) == 12


def test_incoming_request_id_is_echoed() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/ping", headers={"X-Request-ID": "abc-123"})
    assert response.headers["X-Request-ID"] == "abc-123"


def test_server_errors_are_logged(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="fieldweek.middleware"):
        with TestClient(_build_app()) as client:
            client.get("/boom")
            client.get("/healthz")
    messages = [record.getMessage() for record in caplog.records if record.name == "fieldweek.middleware"]
    assert any(message.startswith("Server error: GET /boom 503") for message in messages)
    assert not any("/healthz" in message for message in messages)
