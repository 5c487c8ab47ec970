import logging
import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from consenthub.core.middleware import principal_tag
from consenthub.core.policy import Principal
from consenthub.main import app


@pytest.mark.asyncio
async def test_request_id_in_response():
    """All responses include X-Request-ID header."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert "X-Request-ID" in response.headers
    # UUID format: 8-4-4-4-12
    request_id = response.headers["X-Request-ID"]
    assert len(request_id) == 36


@pytest.mark.asyncio
async def test_incoming_request_id_is_echoed():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_404_returns_structured_json():
    """Non-existent endpoint returns structured JSON error with request_id."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/nonexistent")
    assert response.status_code == 404
    data = response.json()
    assert data["error"] is True
    assert data["status_code"] == 404
    assert "request_id" in data


@pytest.mark.asyncio
async def test_access_log_hashes_principal_and_hides_record_ids(client: AsyncClient, caplog):
    await client.post(
        "/auth/register",
        json={"email": "access-log@example.com", "password": "Pass123!"},
    )
    login = await client.post(
        "/auth/login",
        json={"email": "access-log@example.com", "password": "Pass123!"},
    )
    user_id = login.json()["user_id"]
    headers = {"X-Session-Token": login.json()["token"]}
    created = await client.post("/consents", json={"provider_id": "clinic"}, headers=headers)
    consent_id = created.json()["id"]

    with caplog.at_level(logging.INFO, logger="consenthub.access"):
        await client.get(f"/consents/{consent_id}", headers=headers)

    tag = principal_tag(Principal(user_id=uuid.UUID(user_id)))
    assert f"principal={tag}" in caplog.text
    assert "route=/consents/{consent_id}" in caplog.text
    assert user_id not in caplog.text
    assert consent_id not in caplog.text


@pytest.mark.asyncio
async def test_access_log_without_session(client: AsyncClient, caplog):
    with caplog.at_level(logging.INFO, logger="consenthub.access"):
        await client.get("/consents")
    assert "principal=- method=GET route=/consents status=401" in caplog.text
