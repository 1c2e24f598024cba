import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_root_health_check(client: AsyncClient):
    response = await client.get("/api/v1/health/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_db_health_check(client: AsyncClient):
    response = await client.get("/api/v1/health/db")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "connected"}


@pytest.mark.asyncio
async def test_redis_health_check_not_connected(client: AsyncClient, offline_cache):
    with patch("queueflow.api.health.get_cache", AsyncMock(return_value=offline_cache)):
        response = await client.get("/api/v1/health/redis")
    assert response.status_code == 200
    assert response.json() == {"status": "unavailable", "redis": "not connected"}


@pytest.mark.asyncio
async def test_redis_health_check_connected(client: AsyncClient):
    mock_cache = MagicMock()
    mock_cache.connected = True
    mock_cache.set = AsyncMock(return_value=True)
    mock_cache.get = AsyncMock(return_value={"test": True})
    mock_cache.delete = AsyncMock(return_value=True)

    with patch("queueflow.api.health.get_cache", AsyncMock(return_value=mock_cache)):
        response = await client.get("/api/v1/health/redis")
    assert response.json() == {"status": "ok", "redis": "connected"}


@pytest.mark.asyncio
async def test_redis_health_check_error(client: AsyncClient):
    with patch("queueflow.api.health.get_cache", AsyncMock(side_effect=RuntimeError("boom"))):
        response = await client.get("/api/v1/health/redis")
    assert response.status_code == 503
    assert "Redis connection failed" in response.json()["detail"]


@pytest.mark.asyncio
async def test_services_health_check(client: AsyncClient):
    response = await client.get("/api/v1/health/services")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["event_dispatcher"] == {"running": True, "publisher": "InMemoryEventPublisher"}
    assert data["queue_locks"] == {"held": 0}


@pytest.mark.asyncio
async def test_correlation_id_echoed(client: AsyncClient):
    response = await client.get("/api/v1/health/", headers={"X-Correlation-ID": "trace-123"})
    assert response.headers["X-Correlation-ID"] == "trace-123"
