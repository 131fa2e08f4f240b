import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from api import app, get_pipeline
from meta_client import MetaAPIError

from conftest import USER_ID

HEADERS = {"X-User-Id": USER_ID}


def _png_bytes() -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (64, 64), (120, 80, 40)).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def http(pipeline, monkeypatch):
    monkeypatch.delenv("SERVICE_API_KEY", raising=False)
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def _scan_and_strategy(http, conversion_method="LEAD_FORM") -> str:
    r = http.post("/scan", json={"manual_text": "We sell artisan coffee in Pune"}, headers=HEADERS)
    assert r.status_code == 200, r.text
    task_id = r.json()["task_id"]
    r = http.post(f"/tasks/{task_id}/strategy", json={"conversion_method": conversion_method}, headers=HEADERS)
    assert r.status_code == 200, r.text
    return task_id


def test_health(http):
    assert http.get("/health").json() == {"ok": True}


def test_requires_user_header(http):
    r = http.post("/scan", json={"manual_text": "Coffee"})
    assert r.status_code == 401


def test_api_key_enforced_when_configured(http, monkeypatch):
    monkeypatch.setenv("SERVICE_API_KEY", "secret")
    assert http.get("/tasks", headers=HEADERS).status_code == 401
    assert http.get("/tasks", headers={**HEADERS, "X-API-Key": "secret"}).status_code == 200


def test_full_flow_over_http(http, fake_client):
    task_id = _scan_and_strategy(http)

    r = http.get(f"/tasks/{task_id}", headers=HEADERS)
    task = r.json()["task"]
    assert task["state"] == "REVIEW"
    headline = next(c for c in task["creatives"] if c["slot"] == "HEADLINE" and not c["selected"])

    r = http.post(
        f"/tasks/{task_id}/creatives/select",
        json={"variant_id": headline["id"], "slot": "HEADLINE"},
        headers=HEADERS,
    )
    assert r.status_code == 200

    r = http.post(f"/tasks/{task_id}/launch", files={"image_file": ("ad.png", _png_bytes(), "image/png")}, headers=HEADERS)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["campaign_id"] == "cmp_1"
    assert body["ad_id"] == "ad_1"
    assert body["lead_form_id"] == "form_1"

    uploaded = fake_client.args_of("upload_image")[1]
    assert uploaded[:2] == b"\xff\xd8"
    assert fake_client.args_of("create_creative")[3] == headline["content"]

    r = http.post(f"/tasks/{task_id}/launch", files={"image_file": ("ad.png", _png_bytes(), "image/png")}, headers=HEADERS)
    assert r.status_code == 409
    assert r.json()["detail"]["reason"] == "ALREADY_LAUNCHED"

    r = http.get("/tasks", headers=HEADERS)
    assert [t["id"] for t in r.json()["tasks"]] == [task_id]


def test_launch_without_image_is_422(http):
    task_id = _scan_and_strategy(http)
    r = http.post(f"/tasks/{task_id}/launch", data={}, headers=HEADERS)
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "MissingImage"


def test_launch_rejects_non_image(http):
    task_id = _scan_and_strategy(http)
    r = http.post(f"/tasks/{task_id}/launch", files={"image_file": ("ad.png", b"not an image", "image/png")}, headers=HEADERS)
    assert r.status_code == 422


def test_platform_failure_is_502_with_structured_error(http, fake_client):
    fake_client.fail_on = "create_campaign"
    fake_client.error = MetaAPIError(
        "Meta API error (400): Calls to this api have exceeded the rate limit.",
        http_status=400,
        error={"code": 613, "message": "Calls to this api have exceeded the rate limit."},
    )
    task_id = _scan_and_strategy(http)

    r = http.post(f"/tasks/{task_id}/launch", files={"image_file": ("ad.png", _png_bytes(), "image/png")}, headers=HEADERS)

    assert r.status_code == 502
    error = r.json()["detail"]["error"]
    assert error["kind"] == "RATE_LIMIT"
    assert error["retryable"] is True

    r = http.post(f"/tasks/{task_id}/redrive", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["task"]["state"] == "REVIEW"
    assert r.json()["task"]["id"] != task_id


def test_unknown_task_is_404(http):
    assert http.get("/tasks/missing", headers=HEADERS).status_code == 404
    assert http.post("/tasks/missing/redrive", headers=HEADERS).status_code == 404


def test_invalid_conversion_method_is_422(http):
    r = http.post("/scan", json={"manual_text": "Coffee"}, headers=HEADERS)
    task_id = r.json()["task_id"]
    r = http.post(f"/tasks/{task_id}/strategy", json={"conversion_method": "CARRIER_PIGEON"}, headers=HEADERS)
    assert r.status_code == 422


def test_business_info_for_pending_task_is_422(http):
    r = http.post("/scan", json={"manual_text": "Coffee"}, headers=HEADERS)
    task_id = r.json()["task_id"]
    r = http.post(f"/tasks/{task_id}/business-info", json={"manual_text": "More"}, headers=HEADERS)
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "InvalidTaskState"
