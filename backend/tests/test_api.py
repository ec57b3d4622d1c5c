import base64
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from rtl_auditor import config
from rtl_auditor.main import app
from rtl_auditor.routers import history
from rtl_auditor.services.analysis_lifecycle import AnalysisSession, get_session
from rtl_auditor.services.errors import CredentialError
from rtl_auditor.services.history_store import HistoryStore


@pytest.fixture
def session(tmp_path, fake_client, clock):
    audit_session = AnalysisSession(HistoryStore(str(tmp_path)), fake_client, auto_analyze=False, clock=clock)
    fake_client.session = audit_session
    app.dependency_overrides[get_session] = lambda: audit_session
    yield audit_session
    app.dependency_overrides.clear()


@pytest.fixture
def client(session):
    return TestClient(app)


def _upload(client, payload, content_type="image/png", source="picker"):
    return client.post(
        "/api/history/upload",
        files=[("files", ("shot.png", payload, content_type))],
        data={"source": source},
    )


def test_upload_creates_pending_active_item(client, make_image):
    response = _upload(client, make_image(2000, 1000))
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "created"
    assert body["item_status"] == "pending"

    listing = client.get("/api/history").json()
    assert len(listing) == 1
    assert listing[0]["id"] == body["item_id"]
    assert listing[0]["summary"] == "无结果"
    assert listing[0]["active"] is True
    assert client.get("/api/active").json()["id"] == body["item_id"]


def test_non_image_upload_is_ignored(client):
    response = _upload(client, b"plain text", content_type="text/plain")
    assert response.json() == {"status": "ignored", "item_id": None, "item_status": None}
    assert client.get("/api/history").json() == []


def test_unknown_upload_source_is_rejected(client, make_image):
    assert _upload(client, make_image(), source="camera").status_code == 400


def test_paste_accepts_data_urls_only(client, make_image):
    encoded = base64.b64encode(make_image(40, 20)).decode("ascii")
    created = client.post("/api/history/paste", json={"image": f"data:image/png;base64,{encoded}"}).json()
    assert created["status"] == "created"

    ignored = client.post("/api/history/paste", json={"image": "garbage"}).json()
    assert ignored["status"] == "ignored"
    assert len(client.get("/api/history").json()) == 1


def test_analyze_and_render_overlay(client, make_image):
    item_id = _upload(client, make_image(2000, 1000)).json()["item_id"]

    detail = client.post(f"/api/history/{item_id}/analyze", params={"wait": True}).json()
    assert detail["status"] == "completed"
    assert detail["language"] == "阿拉伯语"
    assert detail["findings"][0]["index"] == 1
    assert detail["findings"][0]["is_frontend_defect"] is True

    overlay = client.get(f"/api/history/{item_id}/overlay", params={"width": 400, "active": 0})
    assert overlay.status_code == 200
    assert overlay.headers["content-type"] == "image/png"
    with Image.open(io.BytesIO(overlay.content)) as img:
        assert img.size == (400, 200)


def test_credential_failure_is_reported_as_notification(client, fake_client, make_image):
    fake_client.error = CredentialError("HTTP 403")
    item_id = _upload(client, make_image()).json()["item_id"]

    detail = client.post(f"/api/history/{item_id}/analyze", params={"wait": True}).json()
    assert detail["status"] == "failed"

    toasts = client.get("/api/notifications").json()
    assert toasts[0]["needs_credential"] is True
    assert toasts[0]["item_id"] == item_id


def test_deleting_active_item_clears_selection(client, make_image):
    first = _upload(client, make_image()).json()["item_id"]
    second = _upload(client, make_image()).json()["item_id"]

    assert client.delete(f"/api/history/{second}").status_code == 200
    assert client.get("/api/active").json()["id"] is None
    assert [item["id"] for item in client.get("/api/history").json()] == [first]
    assert client.delete(f"/api/history/{second}").status_code == 404


def test_active_selection(client, make_image):
    first = _upload(client, make_image()).json()["item_id"]
    _upload(client, make_image())

    assert client.put("/api/active", json={"id": first}).status_code == 200
    assert client.get("/api/active").json()["id"] == first
    assert client.put("/api/active", json={"id": "missing"}).status_code == 404
    assert client.put("/api/active", json={"id": None}).json() == {"id": None}
    assert client.get(f"/api/history/{first}").json()["active"] is False


def test_clear_history(client, make_image):
    _upload(client, make_image())
    _upload(client, make_image())
    assert client.delete("/api/history").json() == {"status": "cleared"}
    assert client.get("/api/history").json() == []
    assert client.get("/api/history/anything").status_code == 404


def test_api_key_is_stored_in_cookie(client):
    assert client.get("/api/llm-status").json()["configured"] is False
    assert client.post("/api/settings/api-key", json={"api_key": "  "}).status_code == 400

    response = client.post("/api/settings/api-key", json={"api_key": "k-123"})
    assert response.status_code == 200
    cookie = response.headers["set-cookie"]
    assert "rtl_audit_api_key=k-123" in cookie
    assert "Max-Age=31536000" in cookie

    status = client.get("/api/llm-status").json()
    assert status["configured"] is True
    assert status["provider"] == "gemini"


def test_oversized_upload_is_rejected(client, monkeypatch):
    monkeypatch.setattr(history, "MAX_FILE_SIZE", 1)
    response = _upload(client, b"\0" * (1024 * 1024 + 512 * 1024))
    assert response.status_code == 413
    assert client.get("/api/history").json() == []


def test_deleting_api_key_falls_back_to_environment_key(client, monkeypatch):
    monkeypatch.setattr(config, "_LLM_API_KEY_ENV", "env-key")
    client.post("/api/settings/api-key", json={"api_key": "k-123"})
    assert config.get_llm_config()[0] == "k-123"

    assert client.delete("/api/settings/api-key").status_code == 200
    assert config.get_llm_config()[0] == "env-key"
    assert client.get("/api/llm-status").json()["configured"] is True
