import io

from fastapi.testclient import TestClient
from PIL import Image


def png_bytes(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def test_profile_picture_not_cached(app_module):
    img_bytes = app_module.process_profile_picture(png_bytes(300, 200))
    user = app_module.user_store.create("bob@example.com", "bobpass", "Bob")
    app_module.user_store.update_profile(user.uid, profile_picture=img_bytes)

    client = TestClient(app_module.app)
    client.post("/login", data={"email": "bob@example.com", "password": "bobpass"})
    resp = client.get(f"/users/{user.uid}/photo")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert "no-store" in resp.headers.get("cache-control", "")


def test_uploaded_picture_is_cropped_to_square(app_module):
    user = app_module.user_store.create("bob@example.com", "bobpass", "Bob")
    client = TestClient(app_module.app)
    client.post("/login", data={"email": "bob@example.com", "password": "bobpass"})

    resp = client.post(
        "/api/me",
        data={"display_name": "Robert"},
        files={"profile_picture": ("me.png", png_bytes(300, 200), "image/png")},
    )

    assert resp.status_code == 200
    assert resp.json()["display_name"] == "Robert"
    assert resp.json()["photo_url"] == f"/users/{user.uid}/photo"
    with Image.open(io.BytesIO(app_module.user_store.get(user.uid).profile_picture)) as img:
        assert img.size == (128, 128)
        assert img.mode == "RGBA"


def test_display_name_change_updates_owned_calendars(app_module):
    client = TestClient(app_module.app)
    client.post(
        "/register",
        data={"email": "bob@example.com", "password": "bobpass", "display_name": "Bob"},
    )

    resp = client.post("/api/me", data={"display_name": "Robert"})
    assert resp.status_code == 200

    calendars = client.get("/api/calendars").json()["calendars"]
    assert [c["owner_name"] for c in calendars] == ["Robert"]

    resp = client.post("/api/me", data={"display_name": "   "})
    assert resp.status_code == 400
