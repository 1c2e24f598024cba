"""
Tests for the token endpoints, end to end through the real engine and SQLite.
"""
import uuid
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from queueflow.core.security import create_access_token
from queueflow.exceptions import DependencyUnavailableError

TOKENS = "/api/v1/tokens"


async def add_tokens(client: AsyncClient, queue_id, count: int):
    created = []
    for i in range(count):
        response = await client.post(f"{TOKENS}/", json={
            "queue_id": str(queue_id),
            "customer_name": f"Customer {i + 1}",
            "contact_email": f"customer{i + 1}@example.com",
        })
        assert response.status_code == 201
        created.append(response.json())
    return created


def names(tokens):
    return [t["customer_name"] for t in tokens]


@pytest.fixture
async def bank(queue_factory):
    return await queue_factory("Bank", max_capacity=10)


@pytest.mark.asyncio
async def test_requires_authentication(client: AsyncClient, bank):
    response = await client.get(f"{TOKENS}/queue/{bank.id}")
    assert response.status_code == 401
    assert response.json() == {"detail": "Could not validate credentials"}


@pytest.mark.asyncio
async def test_create_token(authorized_client: AsyncClient, bank):
    first, second = await add_tokens(authorized_client, bank.id, 2)

    assert first["token_number"] == "BAN-001"
    assert first["position"] == 1
    assert first["status"] == "waiting"
    assert first["estimated_wait_minutes"] == 0
    assert second["token_number"] == "BAN-002"
    assert second["estimated_wait_minutes"] == 5


@pytest.mark.asyncio
async def test_create_token_validation(authorized_client: AsyncClient, bank):
    response = await authorized_client.post(f"{TOKENS}/", json={
        "queue_id": str(bank.id),
        "customer_name": "X",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_token_capacity_conflict(authorized_client: AsyncClient, queue_factory):
    small = await queue_factory("Tiny", max_capacity=1)
    await add_tokens(authorized_client, small.id, 1)

    response = await authorized_client.post(f"{TOKENS}/", json={
        "queue_id": str(small.id),
        "customer_name": "Late Arrival",
    })

    assert response.status_code == 409
    assert response.json() == {"detail": "Queue is at maximum capacity"}


@pytest.mark.asyncio
async def test_create_token_unknown_queue(authorized_client: AsyncClient):
    response = await authorized_client.post(f"{TOKENS}/", json={
        "queue_id": str(uuid.uuid4()),
        "customer_name": "Nobody Home",
    })
    assert response.status_code == 404
    assert response.json() == {"detail": "Queue not found"}


@pytest.mark.asyncio
async def test_public_join(client: AsyncClient, bank, email_service):
    response = await client.post(f"{TOKENS}/public", json={
        "queue_id": str(bank.id),
        "customer_name": "Walk In",
        "email": "walkin@example.com",
        "priority": "high",
    })

    assert response.status_code == 201
    assert response.json() == {"token_number": "BAN-001", "position": 1, "estimated_wait_minutes": 5}
    email_service.fire_and_forget.assert_called_once()

    second = await client.post(f"{TOKENS}/public", json={
        "queue_id": str(bank.id),
        "customer_name": "Second Walk In",
        "email": "second@example.com",
    })
    assert second.json()["estimated_wait_minutes"] == 10


@pytest.mark.asyncio
async def test_public_join_requires_email(client: AsyncClient, bank):
    response = await client.post(f"{TOKENS}/public", json={
        "queue_id": str(bank.id),
        "customer_name": "Walk In",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_tokens_and_filter(authorized_client: AsyncClient, bank):
    await add_tokens(authorized_client, bank.id, 3)
    await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")

    all_tokens = await authorized_client.get(f"{TOKENS}/queue/{bank.id}")
    waiting = await authorized_client.get(f"{TOKENS}/queue/{bank.id}", params={"status": "waiting"})
    active = await authorized_client.get(f"{TOKENS}/queue/{bank.id}/active")

    assert len(all_tokens.json()) == 3
    assert names(waiting.json()) == ["Customer 2", "Customer 3"]
    assert [(t["position"], t["status"]) for t in active.json()] == [
        (1, "in_service"), (2, "waiting"), (3, "waiting"),
    ]


@pytest.mark.asyncio
async def test_call_next(authorized_client: AsyncClient, bank):
    await add_tokens(authorized_client, bank.id, 2)

    first = await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")
    second = await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")
    third = await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")

    assert first.json()["customer_name"] == "Customer 1"
    assert first.json()["status"] == "in_service"
    assert first.json()["called_at"] is not None
    assert second.json()["customer_name"] == "Customer 2"
    assert third.status_code == 404
    assert third.json() == {"detail": "No waiting tokens found"}


@pytest.mark.asyncio
@pytest.mark.parametrize("route", ["put_position", "patch_reorder"])
async def test_reorder_routes(authorized_client: AsyncClient, bank, route):
    tokens = await add_tokens(authorized_client, bank.id, 4)
    token_id = tokens[1]["id"]

    if route == "put_position":
        response = await authorized_client.put(f"{TOKENS}/{token_id}/position", json={"new_position": 4})
    else:
        response = await authorized_client.patch(f"{TOKENS}/{token_id}/reorder", json={"new_position": 4})

    assert response.status_code == 200
    data = response.json()
    assert data["token"]["position"] == 4
    assert names(data["tokens"]) == ["Customer 1", "Customer 3", "Customer 4", "Customer 2"]
    assert [t["position"] for t in data["tokens"]] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_reorder_out_of_range(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 3)

    response = await authorized_client.put(f"{TOKENS}/{tokens[0]['id']}/position", json={"new_position": 4})

    assert response.status_code == 400
    assert response.json() == {"detail": "Position must be between 1 and 3"}


@pytest.mark.asyncio
async def test_reorder_in_service_conflict(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 2)
    await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")

    response = await authorized_client.put(f"{TOKENS}/{tokens[0]['id']}/position", json={"new_position": 2})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_status_transitions(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 3)
    token_id = tokens[0]["id"]

    called = await authorized_client.patch(f"{TOKENS}/{token_id}", json={"status": "in_service"})
    served = await authorized_client.patch(f"{TOKENS}/{token_id}", json={"status": "served", "notes": "Done"})
    again = await authorized_client.patch(f"{TOKENS}/{token_id}", json={"status": "waiting"})

    assert called.json()["status"] == "in_service"
    assert served.json()["status"] == "served"
    assert served.json()["notes"] == "Done"
    assert again.status_code == 409
    assert again.json() == {"detail": "Cannot change token status from served to waiting"}

    active = await authorized_client.get(f"{TOKENS}/queue/{bank.id}/active")
    assert [(t["customer_name"], t["position"]) for t in active.json()] == [
        ("Customer 2", 1), ("Customer 3", 2),
    ]


@pytest.mark.asyncio
async def test_invalid_status_value(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 1)

    response = await authorized_client.patch(f"{TOKENS}/{tokens[0]['id']}", json={"status": "teleported"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_complete(authorized_client: AsyncClient, bank, clock):
    tokens = await add_tokens(authorized_client, bank.id, 1)
    clock.advance(minutes=3)
    await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")
    clock.advance(minutes=4)

    response = await authorized_client.put(f"{TOKENS}/{tokens[0]['id']}/complete")

    data = response.json()
    assert response.status_code == 200
    assert data["status"] == "served"
    assert data["wait_time"] == 3
    assert data["service_time"] == 4


@pytest.mark.asyncio
async def test_complete_waiting_token_conflict(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 1)

    response = await authorized_client.put(f"{TOKENS}/{tokens[0]['id']}/complete", json={"notes": "Skipped"})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 3)

    response = await authorized_client.delete(f"{TOKENS}/{tokens[0]['id']}")

    data = response.json()
    assert response.status_code == 200
    assert data["token"]["status"] == "cancelled"
    assert [(t["customer_name"], t["position"]) for t in data["tokens"]] == [
        ("Customer 2", 1), ("Customer 3", 2),
    ]

    queue = await authorized_client.get(f"/api/v1/queues/{bank.id}")
    assert queue.json()["queue"]["current_occupancy"] == 2
    assert queue.json()["queue"]["total_cancelled"] == 1


@pytest.mark.asyncio
async def test_assign(authorized_client: AsyncClient, bank):
    tokens = await add_tokens(authorized_client, bank.id, 1)

    response = await authorized_client.patch(f"{TOKENS}/{tokens[0]['id']}/assign", json={"assigned_to": "Desk 4"})

    assert response.status_code == 200
    assert response.json()["assigned_to"] == "Desk 4"
    assert "Assigned to: Desk 4" in response.json()["notes"]


@pytest.mark.asyncio
async def test_message_customer(authorized_client: AsyncClient, bank, email_service):
    tokens = await add_tokens(authorized_client, bank.id, 1)

    response = await authorized_client.post(f"{TOKENS}/{tokens[0]['id']}/message", json={"message": "  Come to desk 2  "})

    data = response.json()
    assert response.status_code == 200
    assert data["sent_to"] == "customer1@example.com"
    assert data["message_content"] == "Come to desk 2"
    assert data["email_sent"] is True
    assert "Manager: Come to desk 2" in data["token"]["notes"]
    kwargs = email_service.send_queue_message.call_args.kwargs
    assert kwargs["manager_name"] == "Manager"


@pytest.mark.asyncio
async def test_message_without_email(authorized_client: AsyncClient, bank):
    response = await authorized_client.post(f"{TOKENS}/", json={
        "queue_id": str(bank.id),
        "customer_name": "No Contact",
    })

    message = await authorized_client.post(f"{TOKENS}/{response.json()['id']}/message", json={"message": "Hello"})

    assert message.status_code == 400
    assert message.json() == {"detail": "Customer email not available"}


@pytest.mark.asyncio
async def test_other_manager_cannot_see_token(authorized_client: AsyncClient, bank, other_user):
    tokens = await add_tokens(authorized_client, bank.id, 1)
    other_token, _, _ = create_access_token(data={"sub": other_user.username})
    headers = {"Authorization": f"Bearer {other_token}"}

    get_response = await authorized_client.get(f"{TOKENS}/{tokens[0]['id']}", headers=headers)
    cancel_response = await authorized_client.delete(f"{TOKENS}/{tokens[0]['id']}", headers=headers)
    list_response = await authorized_client.get(f"{TOKENS}/queue/{bank.id}/active", headers=headers)

    assert get_response.status_code == 404
    assert get_response.json() == {"detail": "Token not found"}
    assert cancel_response.status_code == 404
    assert list_response.status_code == 404


@pytest.mark.asyncio
async def test_dependency_unavailable_maps_to_503(authorized_client: AsyncClient, bank, token_engine, monkeypatch):
    monkeypatch.setattr(
        token_engine, "call_next",
        AsyncMock(side_effect=DependencyUnavailableError("Queue is busy, please retry")),
    )

    response = await authorized_client.put(f"{TOKENS}/queue/{bank.id}/call-next")

    assert response.status_code == 503
    assert response.json() == {"detail": "Queue is busy, please retry"}
