import logging

from fastapi.testclient import TestClient

from api.main import app


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


client = TestClient(app)


def test_root_health_check() -> None:
    response = client.get("/")
    logger.info(
        "Root health check response",
        extra={"status_code": response.status_code, "body": response.json()},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health_check() -> None:
    response = client.get("/health")
    logger.info(
        "Health check response",
        extra={"status_code": response.status_code, "body": response.json()},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_openapi_schema_available() -> None:
    response = client.get("/openapi.json")
    logger.info("OpenAPI response", extra={"status_code": response.status_code})
    assert response.status_code == 200
    payload = response.json()
    assert payload["info"]["title"] == "Dealflow Integrations API"
    paths = payload["paths"]
    assert "/api/sync/{account_id}/{provider}" in paths
    assert "/api/integrations/{provider}/callback" in paths
    assert "/api/deals/dedupe" in paths


def test_db_health_reports_pool_before_first_use() -> None:
    response = client.get("/health/db")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "pool_type" in response.json()["pool"]
