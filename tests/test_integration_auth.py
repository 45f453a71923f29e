from fastapi.testclient import TestClient

from chatrelay import app as app_module


def _bearer(resp):
    return {"Authorization": f"Bearer {resp.json()['data']['session_id']}"}


def test_register_login_logout_flow():
    with TestClient(app_module.app) as client:
        resp = client.post(
            "/auth/register", json={"email": "writer@example.com", "password": "hunter2hunter2"}
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["user_type"] == "regular"
        assert data["token_type"] == "bearer"
        assert "session_id" in resp.headers["set-cookie"]

        dup = client.post(
            "/auth/register", json={"email": "WRITER@example.com", "password": "hunter2hunter2"}
        )
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "conflict"

        bad = client.post(
            "/auth/login", json={"email": "writer@example.com", "password": "wrong"}
        )
        assert bad.status_code == 401

        login = client.post(
            "/auth/login", json={"email": "writer@example.com", "password": "hunter2hunter2"}
        )
        assert login.status_code == 200
        headers = _bearer(login)

        assert client.post("/auth/logout", headers=headers).status_code == 200
        assert client.post("/auth/logout", headers=headers).status_code == 401


def test_session_header_is_accepted():
    with TestClient(app_module.app) as client:
        guest = client.post("/auth/guest").json()["data"]
        resp = client.delete(
            "/chat",
            params={"id": "00000000-0000-0000-0000-000000000000"},
            headers={"session_id": guest["session_id"]},
        )
        assert resp.status_code == 404


def test_register_validation_errors_are_400():
    with TestClient(app_module.app) as client:
        resp = client.post("/auth/register", json={"email": "nope", "password": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
