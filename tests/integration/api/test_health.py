"""Tests for health check endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_liveness(client: AsyncClient):
    """Test liveness endpoint returns alive status."""
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "alive"}


@pytest.mark.asyncio
async def test_readiness(client: AsyncClient):
    """Test readiness endpoint checks the database."""
    response = await client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"database": "ok", "schema": "ok"}


@pytest.mark.asyncio
async def test_info_reports_dunning_policy(client: AsyncClient):
    response = await client.get("/info")

    assert response.status_code == 200
    data = response.json()
    assert data["app"] == "Billing Engine"
    assert data["dunning"] == {
        "max_retries": 4,
        "retry_days": [1, 3, 7, 14],
        "cancel_after_days": 30,
    }


@pytest.mark.asyncio
async def test_request_id_header(client: AsyncClient):
    response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
