from fastapi.testclient import TestClient

from conftest import FakeDatabase, make_settings, mssql_result
from myydh.config.models import ProcessLoadSettings
from myydh.main import create_app
from myydh.monitoring.pressure import PressureMonitor, PressureSample
from myydh.security.headers import DEFAULT_CSP


def test_unknown_route(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json() == {"error": "Not Found", "message": "Route GET:/nope not found", "statusCode": 404}


def test_security_headers(client):
    r = client.get("/admin/healthcheck")
    assert r.headers["cache-control"] == "no-store, max-age=0, must-revalidate"
    assert r.headers["pragma"] == "no-cache"
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["content-security-policy"] == DEFAULT_CSP


def test_docs_are_cacheable(client):
    r = client.get("/docs")
    assert r.status_code == 200
    assert "no-store" not in r.headers.get("cache-control", "")
    assert "content-security-policy" not in r.headers
    assert client.get("/docs/openapi.json").json()["info"]["title"] == "MyYDH CRUD API"


def test_trace_id_is_echoed(client):
    r = client.get("/admin/healthcheck", headers={"X-Trace-Id": "abc123"})
    assert r.headers["x-trace-id"] == "abc123"
    assert client.get("/admin/healthcheck").headers["x-trace-id"]


def test_rate_limit():
    settings = make_settings(rate_limit={"max": 2})
    client = TestClient(create_app(settings, db=FakeDatabase()))
    assert client.get("/admin/healthcheck").status_code == 200
    assert client.get("/nope").status_code == 404
    r = client.get("/admin/healthcheck")
    assert r.status_code == 429
    assert r.json()["message"].startswith("Rate limit exceeded, retry in ")
    assert r.headers["retry-after"]
    assert r.headers["x-ratelimit-limit"] == "2"
    assert r.headers["x-ratelimit-remaining"] == "0"


def test_rate_limit_allow_list():
    settings = make_settings(rate_limit={"max": 1, "allow_list": ["testclient"]})
    client = TestClient(create_app(settings, db=FakeDatabase()))
    for _ in range(3):
        assert client.get("/admin/healthcheck").status_code == 200


def test_load_shedding():
    settings = make_settings()
    monitor = PressureMonitor(ProcessLoadSettings(max_rss_bytes=1000))
    client = TestClient(create_app(settings, db=FakeDatabase(), monitor=monitor))

    monitor.record_sample(PressureSample(rss_bytes=5000))
    r = client.get("/admin/healthcheck")
    assert r.status_code == 503
    assert r.json()["message"] == "Service Unavailable"

    monitor.record_sample(PressureSample(rss_bytes=10))
    assert client.get("/admin/healthcheck").status_code == 200


def test_unhandled_error_is_generic():
    db = FakeDatabase()
    # a non-numeric total fails while building the page
    db.queue(mssql_result([{"total": "many"}], []))
    client = TestClient(create_app(make_settings(), db=db), raise_server_exceptions=False)
    r = client.get(
        "/documents/register",
        params={"lastModified": "2023-01-01"},
        headers={"x-trace-id": "trace-500"},
    )
    assert r.status_code == 500
    assert r.json()["message"] == "Internal Server Error"
    assert r.headers["x-content-type-options"] == "nosniff"
    assert "no-store" in r.headers["cache-control"]
    assert r.headers["x-trace-id"] == "trace-500"
    assert "x-ratelimit-limit" in r.headers


def test_lifespan_closes_database():
    closed = []

    class ClosingDatabase(FakeDatabase):
        async def close(self):
            closed.append(True)

    with TestClient(create_app(make_settings(), db=ClosingDatabase())) as client:
        assert client.get("/admin/healthcheck").status_code == 200
    assert closed == [True]


def test_large_responses_are_gzipped():
    db = FakeDatabase()
    rows = [
        {"GUID": f"d-{i}", "Title": "Discharge letter", "Modified": "2023-02-01T09:00:00"}
        for i in range(50)
    ]
    db.queue(mssql_result([{"total": len(rows)}], rows))
    client = TestClient(create_app(make_settings(), db=db))
    r = client.get(
        "/documents/register",
        params={"lastModified": "2023-01-01"},
        headers={"Accept-Encoding": "gzip"},
    )
    assert r.status_code == 200, r.text
    assert r.headers["content-encoding"] == "gzip"
    assert "accept-encoding" in r.headers["vary"].lower()
    assert r.headers["x-content-type-options"] == "nosniff"
    assert len(r.json()["data"]) == 50


def test_small_responses_are_not_gzipped(client):
    r = client.get("/admin/healthcheck", headers={"Accept-Encoding": "gzip"})
    assert r.status_code == 200
    assert "content-encoding" not in r.headers
