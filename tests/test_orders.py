import pytest
from fastapi import HTTPException

import database
import main
from tests.conftest import fund


@pytest.fixture
def order(client, admin_headers, user, user_headers):
    fund(client, admin_headers, user["id"], 100)
    res = client.post("/products/1/purchase", headers=user_headers)
    assert res.status_code == 201
    return res.json()["order"]


def last_notification(user_id):
    return database.get_documents("notifications", {"user_id": user_id})[-1]["message"]


def test_approve_pending_order(client, admin_headers, order):
    res = client.post(f"/admin/orders/{order['id']}/approve", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "approved"
    assert database.find_document("orders", order["id"])["status"] == "approved"
    assert last_notification(order["user_id"]) == f"Your order #{order['id']} has been approved"


def test_deliver_approved_order(client, admin_headers, order):
    client.post(f"/admin/orders/{order['id']}/approve", headers=admin_headers)
    res = client.post(f"/admin/orders/{order['id']}/deliver", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "delivered"
    assert last_notification(order["user_id"]) == f"Your order #{order['id']} has been delivered"


def test_reject_with_reason(client, admin_headers, order):
    res = client.post(f"/admin/orders/{order['id']}/reject", data={"reason": "out of stock"}, headers=admin_headers)
    assert res.status_code == 200
    stored = database.find_document("orders", order["id"])
    assert stored["status"] == "rejected"
    assert stored["rejection_reason"] == "out of stock"
    notes = database.get_documents("notifications", {"user_id": order["user_id"]})
    rejections = [n for n in notes if "rejected" in n["message"]]
    assert len(rejections) == 1
    assert "out of stock" in rejections[0]["message"]


def test_reject_without_reason(client, admin_headers, order):
    res = client.post(f"/admin/orders/{order['id']}/reject", headers=admin_headers)
    assert res.json()["order"]["rejection_reason"] is None
    assert last_notification(order["user_id"]) == f"Your order #{order['id']} has been rejected"


def test_cannot_deliver_pending_order(client, admin_headers, order):
    res = client.post(f"/admin/orders/{order['id']}/deliver", headers=admin_headers)
    assert res.status_code == 409
    assert database.find_document("orders", order["id"])["status"] == "pending"


@pytest.mark.parametrize("action", ["approve", "reject", "deliver"])
def test_delivered_is_terminal(client, admin_headers, order, action):
    client.post(f"/admin/orders/{order['id']}/approve", headers=admin_headers)
    client.post(f"/admin/orders/{order['id']}/deliver", headers=admin_headers)
    res = client.post(f"/admin/orders/{order['id']}/{action}", headers=admin_headers)
    assert res.status_code == 409
    assert database.find_document("orders", order["id"])["status"] == "delivered"


@pytest.mark.parametrize("action", ["approve", "reject", "deliver"])
def test_rejected_is_terminal(client, admin_headers, order, action):
    client.post(f"/admin/orders/{order['id']}/reject", data={"reason": "no"}, headers=admin_headers)
    res = client.post(f"/admin/orders/{order['id']}/{action}", headers=admin_headers)
    assert res.status_code == 409
    assert database.find_document("orders", order["id"])["status"] == "rejected"


def test_failed_transition_writes_nothing(client, admin_headers, order):
    notes_before = database.load("notifications")
    logs_before = database.load("logs")
    client.post(f"/admin/orders/{order['id']}/deliver", headers=admin_headers)
    assert database.load("notifications") == notes_before
    assert database.load("logs") == logs_before


def test_unknown_order(client, admin_headers):
    assert client.post("/admin/orders/99/approve", headers=admin_headers).status_code == 404


def test_transition_logged_against_admin_actor(client, admin_headers, order):
    client.post(f"/admin/orders/{order['id']}/approve", headers=admin_headers)
    logs = database.get_documents("logs", {"user_id": main.ADMIN_ACTOR_ID})
    assert logs[-1]["action"] == f"approve order #{order['id']}"


def test_transition_order_drops_reason_outside_rejected():
    stored = {"id": 1, "user_id": 2, "product_id": 3, "total_price": 5,
              "status": "pending", "rejection_reason": "stale", "created_at": "2024-01-01T00:00:00+00:00"}
    updated, message = main.transition_order(stored, "approve")
    assert updated["status"] == "approved"
    assert "rejection_reason" not in updated
    assert updated["total_price"] == 5
    assert message == "Your order #1 has been approved"


def test_transition_order_rejects_unknown_action():
    with pytest.raises(HTTPException) as exc:
        main.transition_order({"id": 1, "user_id": 1, "product_id": 1, "total_price": 1, "status": "pending"}, "refund")
    assert exc.value.status_code == 400


def test_order_stats_counts_and_revenue():
    orders = [
        {"status": "pending", "total_price": 10},
        {"status": "approved", "total_price": 20},
        {"status": "delivered", "total_price": 30},
        {"status": "rejected", "total_price": 40},
    ]
    assert main.order_stats(orders) == {
        "pending_orders": 1, "approved_orders": 1, "delivered_orders": 1, "rejected_orders": 1,
        "total_orders": 4, "total_revenue": 50,
    }


def test_transition_response_carries_fresh_stats(client, admin_headers, order):
    stats = client.post(f"/admin/orders/{order['id']}/approve", headers=admin_headers).json()["stats"]
    assert stats["approved_orders"] == 1
    assert stats["pending_orders"] == 0
    assert stats["total_revenue"] == 40


def test_admin_orders_filter_by_status(client, admin_headers, order):
    assert len(client.get("/admin/orders", params={"status": "pending"}, headers=admin_headers).json()) == 1
    assert client.get("/admin/orders", params={"status": "approved"}, headers=admin_headers).json() == []
    assert client.get("/admin/orders", params={"status": "lost"}, headers=admin_headers).status_code == 400


def test_dashboard(client, admin_headers, order, user):
    body = client.get("/admin/dashboard", headers=admin_headers).json()
    assert body["total_users"] == 2
    assert body["total_products"] == 3
    assert body["pending_orders"] == 1
    assert body["recent_orders"][0]["product_name"] == "Gold Pack"
    assert body["recent_orders"][0]["username"] == user["username"]
