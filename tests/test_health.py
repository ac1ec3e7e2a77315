from __future__ import annotations

from fastapi.testclient import TestClient

from app import main as app_main
from app.infra.config import Settings


def test_healthz_ok() -> None:
    client = TestClient(app_main.app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_ok_when_database_ready(monkeypatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: True)
    client = TestClient(app_main.app)
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"db": "ok"}}


def test_readyz_reports_database_failure(monkeypatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: False)
    client = TestClient(app_main.app)
    response = client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["detail"]["checks"]["db"] == "fail"


def test_run_serves_app_on_configured_address(monkeypatch) -> None:
    calls: list[tuple[str, dict]] = []
    monkeypatch.setattr(
        app_main,
        "get_settings",
        lambda: Settings(_env_file=None, host="127.0.0.1", port=9100),
    )
    monkeypatch.setattr(app_main.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

    app_main.run()

    assert calls == [("app.main:app", {"host": "127.0.0.1", "port": 9100, "log_config": None})]
