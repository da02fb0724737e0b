from fastapi.testclient import TestClient

from whatsappier.__version__ import __version__
from whatsappier.main import app

client = TestClient(app)


def test_health():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_version():
    resp = client.get("/api/version")
    assert resp.json()["version"] == __version__


def test_templates_catalog():
    resp = client.get("/api/templates")
    assert resp.status_code == 200
    ids = [item["id"] for item in resp.json()["items"]]
    assert "lf-order-to-whatsapp" in ids
    assert "gsheets-order-sync" in ids


def test_template_detail():
    resp = client.get("/api/templates/lf-otp-verification")
    assert resp.json()["action"]["kind"] == "send_whatsapp_otp"
    assert client.get("/api/templates/unknown").status_code == 404


def test_metrics_exposed():
    resp = client.get("/api/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text or "http_request" in resp.text
