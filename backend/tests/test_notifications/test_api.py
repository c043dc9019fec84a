"""
API tests for the seller notification inbox.
"""

import uuid

import pytest

NOTIFICATIONS_URL = "/api/v1/notifications"


@pytest.fixture
async def order_id(client, customer_headers, checkout_payload) -> str:
    """Place an order so S1 and S2 each receive a new-order notification."""
    response = await client.post("/api/v1/orders", json=checkout_payload, headers=customer_headers)
    assert response.status_code == 201
    return response.json()["order"]["id"]


class TestListNotifications:
    async def test_seller_sees_own_notifications(self, client, order_id, seller_headers) -> None:
        response = await client.get(NOTIFICATIONS_URL, headers=seller_headers("S1"))

        assert response.status_code == 200
        (notification,) = response.json()
        assert notification["recipientId"] == "S1"
        assert notification["type"] == "order"
        assert notification["relatedId"] == order_id
        assert notification["read"] is False
        assert order_id[:8].upper() in notification["message"]

    async def test_filters_and_limit(self, client, order_id, seller_headers) -> None:
        headers = seller_headers("S1")

        unread = await client.get(NOTIFICATIONS_URL, params={"filter": "unread"}, headers=headers)
        orders = await client.get(NOTIFICATIONS_URL, params={"filter": "orders"}, headers=headers)
        limited = await client.get(NOTIFICATIONS_URL, params={"limit": 1}, headers=headers)

        assert len(unread.json()) == 1
        assert len(orders.json()) == 1
        assert len(limited.json()) == 1

    async def test_unknown_filter_is_rejected(self, client, seller_headers) -> None:
        response = await client.get(
            NOTIFICATIONS_URL, params={"filter": "everything"}, headers=seller_headers("S1")
        )

        assert response.status_code == 422

    async def test_requires_seller_role(self, client, customer_headers) -> None:
        response = await client.get(NOTIFICATIONS_URL, headers=customer_headers)

        assert response.status_code == 403


class TestMarkNotifications:
    async def test_mark_one_as_read(self, client, order_id, seller_headers) -> None:
        headers = seller_headers("S1")
        (notification,) = (await client.get(NOTIFICATIONS_URL, headers=headers)).json()

        response = await client.put(
            f"{NOTIFICATIONS_URL}/{notification['id']}/read", headers=headers
        )

        assert response.status_code == 200
        assert response.json()["read"] is True
        unread = await client.get(NOTIFICATIONS_URL, params={"filter": "unread"}, headers=headers)
        assert unread.json() == []

    async def test_cannot_mark_another_sellers_notification(
        self, client, order_id, seller_headers
    ) -> None:
        (notification,) = (
            await client.get(NOTIFICATIONS_URL, headers=seller_headers("S1"))
        ).json()

        response = await client.put(
            f"{NOTIFICATIONS_URL}/{notification['id']}/read", headers=seller_headers("S2")
        )

        assert response.status_code == 403

    async def test_unknown_notification(self, client, seller_headers) -> None:
        response = await client.put(
            f"{NOTIFICATIONS_URL}/{uuid.uuid4()}/read", headers=seller_headers("S1")
        )

        assert response.status_code == 404

    async def test_mark_all_as_read(self, client, order_id, seller_headers) -> None:
        response = await client.put(f"{NOTIFICATIONS_URL}/read-all", headers=seller_headers("S2"))

        assert response.status_code == 200
        assert response.json()["updated"] == 1

        again = await client.put(f"{NOTIFICATIONS_URL}/read-all", headers=seller_headers("S2"))
        assert again.json()["updated"] == 0
