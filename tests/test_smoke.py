import pytest
from werkzeug.security import generate_password_hash

from app.pharmaqa import create_app
from app.pharmaqa.db import session_scope
from app.pharmaqa.models import Base, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "LEDGER_BACKEND"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="reviews.view", name="Reviews: view")
        r = Role(key="qa_reviewer", name="QA Reviewer")
        r.permissions.append(p)
        u = User(email="qa@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_queue_access(client):
    # Anonymous is told to log in
    r = client.get("/api/reviews/queue")
    assert r.status_code == 401
    assert r.json["error"] == "login_required"

    r = client.post("/auth/login", json={"email": "QA@example.com ", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"] == "qa@example.com"
    assert r.json["csrf_token"]

    r = client.get("/api/reviews/queue")
    assert r.status_code == 200
    assert r.json["counts"]["TOTAL"] == 0
    assert r.json["documents"] == []


def test_bad_password_is_refused(client):
    r = client.post("/auth/login", json={"email": "qa@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    r = client.get("/api/reviews/queue")
    assert r.status_code == 401


def test_unknown_route_is_json_404(client):
    r = client.get("/no-such-page")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_me_reports_permissions(client):
    assert client.get("/auth/me").status_code == 401

    client.post("/auth/login", json={"email": "qa@example.com", "password": "pw"})
    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"] == "qa@example.com"
    assert r.json["permissions"] == ["reviews.view"]
