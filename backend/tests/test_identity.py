from __future__ import annotations

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from billtrack.config import settings
from billtrack.middleware import Identity, IdentityMiddleware, current_identity


def _build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(IdentityMiddleware)

    @app.get("/whoami")
    def whoami(identity: Identity = Depends(current_identity)) -> dict[str, str]:
        return {"user_id": identity.user_id, "org_id": identity.org_id}

    @app.get("/ping")
    def ping() -> dict[str, str]:
        return {"status": "ok"}

    return app


def test_identity_headers_are_resolved() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/whoami", headers={settings.user_header: "alice", settings.org_header: "acme"})
    assert response.status_code == 200
    assert response.json() == {"user_id": "alice", "org_id": "acme"}


def test_missing_org_header_is_unauthorized() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/whoami", headers={settings.user_header: "alice"})
    assert response.status_code == 401


def test_blank_user_header_is_unauthorized() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/whoami", headers={settings.user_header: "   ", settings.org_header: "acme"})
    assert response.status_code == 401


def test_routes_without_identity_dependency_stay_open() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/ping")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_header_names_follow_settings(monkeypatch) -> None:
    monkeypatch.setattr(settings, "user_header", "X-Remote-User")
    monkeypatch.setattr(settings, "org_header", "X-Remote-Org")
    with TestClient(_build_app()) as client:
        response = client.get("/whoami", headers={"X-Remote-User": "bob", "X-Remote-Org": "initech"})
        legacy = client.get("/whoami", headers={"X-User-Id": "bob", "X-Org-Id": "initech"})
    assert response.status_code == 200
    assert response.json()["user_id"] == "bob"
    assert legacy.status_code == 401
