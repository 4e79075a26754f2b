from shared.core import HealthStatus


def test_liveness(client):
    response = client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"status": "alive"}


def test_readiness_reports_integrations(client):
    checks = client.get("/health/ready").json()["checks"]

    assert checks["database:connectivity"]["status"] == HealthStatus.PASS.value
    assert checks["gateway:credentials"]["cached"] is False
    # no carrier credentials in the test environment
    assert checks["carrier:configuration"]["status"] == HealthStatus.WARN.value
    assert checks["carrier:configuration"]["configured"] is False


def test_request_id_is_echoed(client):
    response = client.get("/health/live", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
