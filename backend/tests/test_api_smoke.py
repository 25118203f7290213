import asyncio
import hashlib
import os

import httpx
from fakes import BrokenStore


def get_client():
    # Use in-memory sqlite for tests
    os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    # Import after env is set so engine is created with sqlite
    from webar_gate.main import app  # noqa: WPS433
    from fastapi.testclient import TestClient  # noqa: WPS433
    return TestClient(app)


IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"


def test_root_ok():
    client = get_client()
    r = client.get("/")
    assert r.status_code == 200
    data = r.json()
    assert "message" in data


def test_location_and_geofence():
    client = get_client()
    payload = {"name": "Smoke plaza", "lat": 47.9, "lng": 106.9, "radiusMeters": 100}
    pr = client.put("/locations/smoke-plaza", json=payload)
    assert pr.status_code == 200, pr.text
    assert pr.json()["radiusMeters"] == 100

    gr = client.get("/locations/smoke-plaza")
    assert gr.status_code == 200
    assert gr.json()["name"] == "Smoke plaza"

    near = client.post(
        "/locations/smoke-plaza/geofence",
        json={"latitude": 47.9003, "longitude": 106.9, "accuracy": 10},
    )
    assert near.status_code == 200, near.text
    assert near.json()["ok"] is True
    assert near.json()["reason"] == "ok"

    far = client.post("/locations/smoke-plaza/geofence", json={"latitude": 48.5, "longitude": 106.9})
    assert far.json()["reason"] == "too-far"

    missing = client.post("/locations/nowhere/geofence", json={"latitude": 47.9, "longitude": 106.9})
    assert missing.status_code == 200
    assert missing.json()["reason"] == "loc-missing"

    assert client.get("/locations/nowhere").status_code == 404


def test_content_candidates_per_device():
    client = get_client()
    payload = {
        "active": True,
        "isGlobal": False,
        "locationIds": ["smoke-plaza"],
        "urls": {"webm": "https://cdn/smoke.webm", "mp4_sbs": "https://cdn/smoke_sbs.mp4"},
    }
    cr = client.put("/content/smoke-ex", json=payload)
    assert cr.status_code == 200, cr.text
    assert set(cr.json()["sources"]) == {"alpha", "sbs"}

    ios = client.post("/content/smoke-ex/candidates", json={"user_agent": IPHONE_UA})
    assert ios.status_code == 200, ios.text
    assert [c["kind"] for c in ios.json()] == ["sbs"]

    webm_only = client.post(
        "/content/smoke-ex/candidates",
        json={"user_agent": "Mozilla/5.0 (X11; Linux x86_64)", "decodable_mime_types": ["video/webm"]},
    )
    assert [c["kind"] for c in webm_only.json()] == ["alpha"]

    nothing = client.post(
        "/content/smoke-ex/candidates",
        json={"user_agent": "Mozilla/5.0 (X11; Linux x86_64)", "decodable_mime_types": []},
    )
    assert nothing.status_code == 422

    ex = client.get("/content/exercise", params={"location_id": "smoke-plaza"})
    assert ex.status_code == 200
    assert ex.json()["id"] == "smoke-ex"
    assert client.get("/content/exercise", params={"location_id": "nowhere"}).status_code == 404

    assert client.put("/content/broken", json={"active": True}).status_code == 422


def test_register_then_lookup_device():
    client = get_client()
    key_hash = hashlib.sha256(b"smoke-device").hexdigest()
    other_hash = hashlib.sha256(b"smoke-device-2").hexdigest()

    first = client.post("/registrations/", json={"phone": "9911 0000", "device_key_hash": key_hash})
    assert first.status_code == 201, first.text
    assert first.json()["phone"] == "+97699110000"
    assert first.json()["device_bound"] is True

    again = client.post("/registrations/", json={"phone": "+97699110000", "device_key_hash": other_hash})
    assert again.status_code == 200
    assert again.json()["created"] is False

    lr = client.get(f"/registrations/devices/{key_hash}")
    assert lr.status_code == 200
    assert lr.json()["phone"] == "+97699110000"

    unknown = hashlib.sha256(b"never-registered").hexdigest()
    assert client.get(f"/registrations/devices/{unknown}").status_code == 404

    bad = client.post("/registrations/", json={"phone": "12ab", "device_key_hash": key_hash})
    assert bad.status_code == 422


def test_content_is_stored_in_queryable_form():
    client = get_client()
    # no `active`, relies on the default
    ir = client.put("/content/canon-intro", json={"isGlobal": True, "url": "https://cdn/canon_sbs.mp4"})
    assert ir.status_code == 200, ir.text
    intro = client.get("/content/intro")
    assert intro.status_code == 200, intro.text
    assert intro.json()["id"] == "canon-intro"

    # snake_case field names are accepted and stored under the camelCase keys
    er = client.put(
        "/content/canon-ex",
        json={"location_ids": ["canon-loc"], "url": "https://cdn/canon.mp4", "title": "Stretch"},
    )
    assert er.status_code == 200, er.text
    ex = client.get("/content/exercise", params={"location_id": "canon-loc"})
    assert ex.status_code == 200, ex.text
    assert ex.json()["locationIds"] == ["canon-loc"]

    from webar_gate.store import get_store  # noqa: WPS433

    stored = asyncio.run(get_store().get("videos", "canon-ex"))
    assert stored["active"] is True
    assert stored["locationIds"] == ["canon-loc"]
    assert stored["title"] == "Stretch"
    assert "location_ids" not in stored


WEBM_HEAD = b"\x1a\x45\xdf\xa3" + b"\x00" * 60
MP4_HEAD = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 52


def _cdn(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/ok_sbs.mp4":
        return httpx.Response(206, content=MP4_HEAD, headers={"content-type": "video/mp4"})
    return httpx.Response(404)


def test_cdn_check_reports_first_loadable_source():
    from webar_gate.api.content import get_http_client  # noqa: WPS433
    from webar_gate.main import app  # noqa: WPS433

    async def mock_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_cdn)) as client:
            yield client

    client = get_client()
    app.dependency_overrides[get_http_client] = mock_client
    try:
        client.put(
            "/content/cdn-ok",
            json={"urls": {"webm": "https://cdn.test/gone.webm", "mp4_sbs": "https://cdn.test/ok_sbs.mp4"}},
        )
        ok = client.post("/content/cdn-ok/probe", json={"user_agent": "Mozilla/5.0 (X11; Linux x86_64)"})
        assert ok.status_code == 200, ok.text
        assert ok.json()["kind"] == "sbs"
        assert ok.json()["url"] == "https://cdn.test/ok_sbs.mp4"

        client.put("/content/cdn-gone", json={"url": "https://cdn.test/missing.mp4"})
        gone = client.post("/content/cdn-gone/probe", json={"user_agent": "Mozilla/5.0 (X11; Linux x86_64)"})
        assert gone.status_code == 502
        attempts = gone.json()["detail"]["attempts"]
        assert len(attempts) == 4
        assert {a["failure"] for a in attempts} == {"network"}
    finally:
        app.dependency_overrides.pop(get_http_client, None)


def test_store_outage_is_service_unavailable():
    from webar_gate.main import app  # noqa: WPS433
    from webar_gate.store import get_store  # noqa: WPS433

    client = get_client()
    app.dependency_overrides[get_store] = BrokenStore
    try:
        assert client.get("/content/intro").status_code == 503
        assert client.get("/content/exercise", params={"location_id": "x"}).status_code == 503
        assert client.get("/locations/x").status_code == 503
        geo = client.post("/locations/x/geofence", json={"latitude": 1.0, "longitude": 2.0})
        assert geo.status_code == 503
        cand = client.post("/content/x/candidates", json={"user_agent": IPHONE_UA})
        assert cand.status_code == 503
    finally:
        app.dependency_overrides.pop(get_store, None)


def test_malformed_location_does_not_block_registration():
    client = get_client()
    from webar_gate.store import get_store  # noqa: WPS433

    asyncio.run(get_store().set("locations", "broken-loc", {"name": "no coordinates"}))
    r = client.post(
        "/registrations/",
        json={
            "phone": "+97699110011",
            "device_key_hash": hashlib.sha256(b"broken-loc-device").hexdigest(),
            "location_id": "broken-loc",
            "position": {"latitude": 47.9, "longitude": 106.9, "accuracy": 5},
        },
    )
    assert r.status_code == 201, r.text
    assert r.json()["geofence"]["reason"] == "loc-missing"
