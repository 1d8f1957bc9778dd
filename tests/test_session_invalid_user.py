from fastapi.testclient import TestClient


def test_deleted_user_logs_out(app_module):
    client = TestClient(app_module.app)

    user = app_module.user_store.create("temp@example.com", "temporary", "Temp")
    client.post("/login", data={"email": "temp@example.com", "password": "temporary"})

    # The session is active before deletion
    resp = client.get("/api/me")
    assert resp.status_code == 200
    assert resp.json()["uid"] == user.uid

    app_module.user_store.delete(user.uid)

    resp = client.get("/api/me")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Not logged in"}

    # Session should be cleared
    resp = client.get("/login")
    assert resp.json()["logged_in"] is False


def test_api_requires_login(app_module):
    client = TestClient(app_module.app)

    for path in ("/api/calendars", "/api/notifications", "/api/search?q=team", "/api/day/2024-01-02"):
        resp = client.get(path)
        assert resp.status_code == 401, path


def test_wrong_password_rejected(app_module):
    app_module.user_store.create("alice@example.com", "secret1", "Alice")
    client = TestClient(app_module.app)

    resp = client.post("/login", data={"email": "alice@example.com", "password": "wrong!"})

    assert resp.status_code == 400
    assert client.get("/api/me").status_code == 401


def test_logout_clears_session(app_module):
    app_module.user_store.create("alice@example.com", "secret1", "Alice")
    client = TestClient(app_module.app)
    client.post("/login", data={"email": "alice@example.com", "password": "secret1"})

    resp = client.get("/logout", follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"
    assert client.get("/api/me").status_code == 401
