from fastapi.testclient import TestClient

from orderflow.container import Container
from orderflow.main import create_app


def test_health_ok(container):
    with TestClient(create_app(container)) as client:
        res = client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["db"] is True
    assert set(body["jobs"]) == {"reservation-expiration", "state-timeout", "cart-reminder"}


def test_jobs_start_with_the_app(test_settings):
    settings = test_settings.model_copy(update={"JOBS_ENABLED": True})
    container = Container(config=settings)
    try:
        with TestClient(create_app(container)) as client:
            jobs = client.get("/api/health").json()["jobs"]
            assert set(jobs.values()) == {"RUNNING"}
        assert all(job.state.value == "STOPPED" for job in container.jobs.values())
    finally:
        container.dispose()
