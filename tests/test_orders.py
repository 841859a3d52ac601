import pytest
from bson import ObjectId

from errors import BadRequestError, EditWindowExpired, NotFoundError
from orders import list_orders, price_items, set_order_status, update_order
from schemas import OrderItemIn


def test_prices_come_from_the_menu(make_item):
    item = make_item("Paneer Tikka", 250.0)
    priced, total = price_items([OrderItemIn(item_id=item, quantity=2, price=1.0)])
    assert priced == [{"menu_item_id": item, "quantity": 2, "price": 250.0}]
    assert total == 500.0


def test_unknown_item_is_rejected():
    missing = str(ObjectId())
    with pytest.raises(BadRequestError, match=f"Item {missing} not found"):
        price_items([OrderItemIn(item_id=missing)])


def test_unavailable_item_is_rejected(make_item):
    item = make_item("Biryani", 300.0, available=False)
    with pytest.raises(BadRequestError, match="Biryani is currently unavailable"):
        price_items([OrderItemIn(item_id=item)])


def test_edit_inside_window(db, make_user, make_item, make_order):
    rider = make_user()
    pizza, cola = make_item("Pizza", 500.0), make_item("Cola", 100.0)
    order_id = make_order(rider, [(pizza, 1, 500.0)], age_seconds=119, discount=50.0)

    result = update_order(order_id, rider, [OrderItemIn(item_id=cola, quantity=2, price=1.0)], notes="no ice")

    assert result == {"order_id": order_id, "total": 150.0}
    doc = db.orders.find_one({"_id": ObjectId(order_id)})
    assert doc["items"] == [{"menu_item_id": cola, "quantity": 2, "price": 100.0}]
    assert doc["notes"] == "no ice"
    assert doc["total"] == 150.0


def test_edit_after_window(db, make_user, make_item, make_order):
    rider = make_user()
    item = make_item()
    order_id = make_order(rider, [(item, 1, 500.0)], age_seconds=121)
    with pytest.raises(EditWindowExpired) as excinfo:
        update_order(order_id, rider, [OrderItemIn(item_id=item, quantity=3)])
    assert excinfo.value.status_code == 403
    assert db.orders.find_one({"_id": ObjectId(order_id)})["items"][0]["quantity"] == 1


def test_edit_billed_order(make_user, make_item, make_order):
    rider = make_user()
    item = make_item()
    order_id = make_order(rider, [(item, 1, 500.0)], billed=True)
    with pytest.raises(EditWindowExpired):
        update_order(order_id, rider, [OrderItemIn(item_id=item)])


def test_edit_someone_elses_order(make_user, make_item, make_order):
    item = make_item()
    order_id = make_order(make_user(), [(item, 1, 500.0)])
    with pytest.raises(NotFoundError):
        update_order(order_id, make_user(), [OrderItemIn(item_id=item)])


def test_list_and_status(make_user, make_item, make_order):
    rider = make_user()
    item = make_item()
    first = make_order(rider, [(item, 1, 500.0)], age_seconds=30)
    second = make_order(rider, [(item, 2, 500.0)])

    set_order_status(first, "preparing")
    assert [o["id"] for o in list_orders()] == [second, first]
    assert [o["id"] for o in list_orders(status="preparing")] == [first]
    with pytest.raises(NotFoundError):
        set_order_status(str(ObjectId()), "ready")


def test_create_order_with_token(client, db, make_user, make_item, auth_headers):
    rider = make_user()
    item = make_item("Pizza", 500.0)
    resp = client.post(
        "/orders",
        json={"user_id": rider, "table_name": "T1", "items": [{"item_id": item, "quantity": 2, "price": 1}]},
        headers=auth_headers(rider),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1000.0
    doc = db.orders.find_one({"_id": ObjectId(body["order_id"])})
    assert doc["billed"] is False
    assert doc["status"] == "pending"


def test_create_order_for_another_user(client, make_user, make_item, auth_headers):
    rider, other = make_user(), make_user()
    resp = client.post(
        "/orders",
        json={"user_id": other, "table_name": "T1", "items": [{"item_id": make_item(), "quantity": 1}]},
        headers=auth_headers(rider),
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "Unauthorized: User mismatch or invalid session"


def test_guest_orders_through_active_session(client, db, make_user, make_item, make_session):
    guest = make_user(role="OUTSIDER", name="Ravi")
    session_id = make_session(guest)
    payload = {"user_id": guest, "session_id": session_id, "table_name": "T4", "items": [{"item_id": make_item(), "quantity": 1}]}

    resp = client.post("/orders", json=payload)
    assert resp.status_code == 200
    order = db.orders.find_one({"_id": ObjectId(resp.json()["order_id"])})
    assert order["guest_info"]["name"] == "Ravi"
    assert order["session_id"] == session_id

    # an asserted id without an active session is refused
    resp = client.post("/orders", json={**payload, "session_id": None})
    assert resp.status_code == 403


def test_kitchen_cannot_place_orders(client, make_user, make_item, auth_headers):
    kitchen = make_user(role="KITCHEN")
    resp = client.post(
        "/orders",
        json={"user_id": kitchen, "table_name": "T1", "items": [{"item_id": make_item(), "quantity": 1}]},
        headers=auth_headers(kitchen),
    )
    assert resp.status_code == 403


def test_empty_order_is_a_bad_request(client, make_user, auth_headers):
    rider = make_user()
    resp = client.post("/orders", json={"user_id": rider, "table_name": "T1", "items": []}, headers=auth_headers(rider))
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_update_order_endpoint(client, make_user, make_item, make_order, auth_headers):
    rider = make_user()
    item = make_item("Pizza", 500.0)
    order_id = make_order(rider, [(item, 1, 500.0)], age_seconds=10)

    resp = client.put(f"/orders/{order_id}", json={"user_id": rider, "items": [{"item_id": item, "quantity": 3, "price": 0.01}]}, headers=auth_headers(rider))
    assert resp.status_code == 200
    assert resp.json()["total"] == 1500.0

    late = make_order(rider, [(item, 1, 500.0)], age_seconds=300)
    resp = client.put(f"/orders/{late}", json={"user_id": rider, "items": [{"item_id": item, "quantity": 3}]}, headers=auth_headers(rider))
    assert resp.status_code == 403


def test_kitchen_order_board(client, make_user, make_item, make_order, auth_headers):
    rider, kitchen = make_user(), make_user(role="KITCHEN")
    order_id = make_order(rider, [(make_item(), 1, 500.0)])
    headers = auth_headers(kitchen)

    resp = client.get("/orders", headers=headers)
    assert [o["id"] for o in resp.json()["orders"]] == [order_id]

    resp = client.post(f"/orders/{order_id}/status", json={"status": "ready"}, headers=headers)
    assert resp.status_code == 200
    assert client.get("/orders", params={"status": "ready"}, headers=headers).json()["orders"][0]["status"] == "ready"

    assert client.get("/orders", headers=auth_headers(rider)).status_code == 403
