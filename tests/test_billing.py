import re

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import billing
from billing import UNKNOWN_ITEM, bill_for_order, bill_for_session, bill_for_user, consolidate, generate_bill_number, get_bill
from errors import AlreadyBilled, BadRequestError, ConflictError, NotFoundError, StoreError


def _order(*items, discount=0.0):
    return {"items": [{"menu_item_id": i, "quantity": q, "price": p} for i, q, p in items], "discount_amount": discount}


def test_consolidate_merges_by_name_and_price():
    names = {"p": "Pizza", "c": "Cola"}
    orders = [
        _order(("p", 2, 500.0), ("c", 3, 100.0)),
        _order(("p", 1, 500.0)),
    ]
    summary = consolidate(orders, names)

    assert [(line.item_name, line.quantity, line.subtotal) for line in summary.lines] == [
        ("Pizza", 3, 1500.0),
        ("Cola", 3, 300.0),
    ]
    assert summary.items_total == 1800.0
    assert summary.final_total == 1800.0


def test_consolidate_keeps_price_changes_apart():
    summary = consolidate([_order(("p", 1, 500.0)), _order(("p", 1, 550.0))], {"p": "Pizza"})
    assert [(line.price, line.quantity) for line in summary.lines] == [(500.0, 1), (550.0, 1)]
    assert summary.items_total == 1050.0


def test_consolidate_unknown_item_and_discount():
    summary = consolidate([_order(("gone", 2, 80.0), discount=200.0)], {})
    assert summary.lines[0].item_name == UNKNOWN_ITEM
    assert summary.discount_total == 200.0
    # credit, not clamped
    assert summary.final_total == -40.0


def test_bill_numbers_are_sequential_per_day():
    first, second = generate_bill_number(), generate_bill_number()
    assert re.fullmatch(r"BILL-\d{8}-0001", first)
    assert re.fullmatch(r"BILL-\d{8}-0002", second)


def test_session_bill(db, make_user, make_item, make_session, make_order):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    pizza, cola = make_item("Pizza", 500.0), make_item("Cola", 100.0)
    make_order(guest, [(pizza, 2, 500.0), (cola, 3, 100.0)], session_id=session_id)
    make_order(guest, [(pizza, 1, 500.0)], session_id=session_id, discount=50.0)

    bill, created = bill_for_session(session_id, "card")

    assert created
    assert bill["items_total"] == 1800.0
    assert bill["discount_amount"] == 50.0
    assert bill["final_total"] == 1750.0
    assert bill["payment_method"] == "card"
    assert bill["payment_status"] == "pending"
    assert {(i["item_name"], i["quantity"]) for i in bill["items"]} == {("Pizza", 3), ("Cola", 3)}
    assert bill["session_details"]["order_count"] == 2
    assert db.bill_items.count_documents({"bill_id": bill["id"]}) == 2
    assert db.orders.count_documents({"billed": True}) == 2
    assert db.guest_sessions.find_one({"_id": ObjectId(session_id)})["status"] == "ended"


def test_session_bill_is_idempotent(db, make_user, make_item, make_session, make_order):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    make_order(guest, [(make_item(), 1, 500.0)], session_id=session_id)

    first, created = bill_for_session(session_id)
    again, created_again = bill_for_session(session_id)

    assert created and not created_again
    assert again["bill_number"] == first["bill_number"]
    assert again["items"] == first["items"]
    assert db.bills.count_documents({}) == 1


def test_session_bill_skips_already_billed_orders(db, make_user, make_item, make_session, make_order):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    item = make_item()
    make_order(guest, [(item, 1, 500.0)], session_id=session_id, billed=True)
    make_order(guest, [(item, 2, 500.0)], session_id=session_id)

    bill, _ = bill_for_session(session_id)
    assert bill["items_total"] == 1000.0


def test_session_bill_with_everything_billed(make_user, make_item, make_session, make_order):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    make_order(guest, [(make_item(), 1, 500.0)], session_id=session_id, billed=True)
    with pytest.raises(ConflictError):
        bill_for_session(session_id)


def test_session_bill_errors(make_user, make_session):
    with pytest.raises(NotFoundError):
        bill_for_session(str(ObjectId()))
    with pytest.raises(NotFoundError):
        bill_for_session("not-an-id")
    session_id = make_session(make_user(role="OUTSIDER"))
    with pytest.raises(BadRequestError):
        bill_for_session(session_id)


def test_order_bill_only_once(db, make_user, make_item, make_order):
    rider = make_user()
    order_id = make_order(rider, [(make_item(), 2, 500.0)])

    bill = bill_for_order(order_id)
    assert bill["final_total"] == 1000.0
    assert bill["session_details"]["order_count"] == 1

    with pytest.raises(AlreadyBilled) as excinfo:
        bill_for_order(order_id)
    assert excinfo.value.extra["bill_number"] == bill["bill_number"]
    assert excinfo.value.status_code == 400


def test_order_bill_missing_order():
    with pytest.raises(NotFoundError):
        bill_for_order(str(ObjectId()))


def test_user_bill_collects_unbilled_orders(db, make_user, make_item, make_order):
    rider = make_user(name="Kiran")
    item = make_item("Dosa", 120.0)
    make_order(rider, [(item, 1, 120.0)], billed=True)
    make_order(rider, [(item, 2, 120.0)])
    make_order(rider, [(item, 1, 120.0)])

    bill = bill_for_user(rider, "upi")
    assert bill["items"] == [{"item_name": "Dosa", "quantity": 3, "price": 120.0, "subtotal": 360.0}]
    assert bill["session_details"]["guest_name"] == "Kiran"
    assert db.orders.count_documents({"billed": {"$ne": True}}) == 0


def test_user_bill_without_orders_writes_nothing(db, make_user):
    rider = make_user()
    with pytest.raises(BadRequestError):
        bill_for_user(rider)
    assert db.bills.count_documents({}) == 0
    assert db.bill_items.count_documents({}) == 0


def test_user_bill_unknown_user():
    with pytest.raises(NotFoundError):
        bill_for_user(str(ObjectId()))


def test_failed_item_insert_removes_bill(db, monkeypatch, make_user, make_item, make_order):
    rider = make_user()
    make_order(rider, [(make_item(), 1, 500.0)])

    def fail(self, *args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr(mongomock.collection.Collection, "insert_many", fail)
    with pytest.raises(StoreError, match="Failed to create bill items"):
        bill_for_user(rider)

    assert db.bills.count_documents({}) == 0
    assert db.orders.count_documents({"billed": True}) == 0


def test_get_bill(make_user, make_item, make_order):
    bill = bill_for_order(make_order(make_user(), [(make_item(), 1, 500.0)]))
    fetched = get_bill(bill["id"])
    assert fetched["bill_number"] == bill["bill_number"]
    assert fetched["items"] == bill["items"]
    with pytest.raises(NotFoundError):
        get_bill(str(ObjectId()))


def test_bill_endpoints_require_staff_token(client, make_user, make_item, make_order, auth_headers):
    rider = make_user()
    order_id = make_order(rider, [(make_item(), 1, 500.0)])

    resp = client.post("/bills/order", json={"order_id": order_id})
    assert resp.status_code == 401

    resp = client.post("/bills/order", json={"order_id": order_id}, headers=auth_headers(rider))
    assert resp.status_code == 403

    # an asserted id is not enough for billing
    kitchen = make_user(role="KITCHEN")
    resp = client.post("/bills/order", json={"order_id": order_id}, headers={"X-User-Id": kitchen})
    assert resp.status_code == 401

    resp = client.post("/bills/order", json={"order_id": order_id}, headers=auth_headers(kitchen))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["bill"]["final_total"] == 500.0

    resp = client.post("/bills/order", json={"order_id": order_id}, headers=auth_headers(kitchen))
    assert resp.status_code == 400
    assert resp.json()["bill_number"] == body["bill"]["bill_number"]


def test_session_bill_endpoint_repeats(client, make_user, make_item, make_session, make_order, auth_headers):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    make_order(guest, [(make_item(), 1, 500.0)], session_id=session_id)
    headers = auth_headers(make_user(role="ADMIN"))

    first = client.post("/bills/session", json={"session_id": session_id, "payment_method": "cash"}, headers=headers)
    second = client.post("/bills/session", json={"session_id": session_id}, headers=headers)

    assert first.status_code == second.status_code == 200
    assert second.json()["message"] == "Bill already exists for this session"
    assert second.json()["bill"]["bill_number"] == first.json()["bill"]["bill_number"]


def test_line_subtotals_add_up_to_items_total(db, make_user, make_item, make_order):
    rider = make_user()
    tea, coffee = make_item("Tea", 10.125), make_item("Coffee", 10.125)
    make_order(rider, [(tea, 1, 10.125), (coffee, 1, 10.125)])

    bill = bill_for_user(rider)

    assert round(sum(i["subtotal"] for i in bill["items"]), 2) == bill["items_total"]
    stored = db.bill_items.find({"bill_id": bill["id"]})
    assert round(sum(d["subtotal"] for d in stored), 2) == db.bills.find_one({"_id": ObjectId(bill["id"])})["items_total"]


def test_bill_number_fallback_when_counter_fails(monkeypatch):
    def fail(self, *args, **kwargs):
        raise PyMongoError("counter unavailable")

    monkeypatch.setattr(mongomock.collection.Collection, "find_one_and_update", fail)
    assert re.fullmatch(r"BILL-[0-9A-Z]+-[0-9A-F]{4}", generate_bill_number())


def _insert_competing_bill(db, monkeypatch, **scope):
    """Let another bill land between the existence check and our insert."""
    original = billing.generate_bill_number

    def racing():
        db.bills.insert_one({
            "scope": "competing",
            "bill_number": "BILL-WINNER",
            "items_total": 500.0,
            "discount_amount": 0.0,
            "final_total": 500.0,
            "payment_method": "cash",
            "payment_status": "pending",
            **scope,
        })
        return original()

    monkeypatch.setattr(billing, "generate_bill_number", racing)


def test_session_bill_race_returns_winner(db, monkeypatch, make_user, make_item, make_session, make_order):
    guest = make_user(role="OUTSIDER")
    session_id = make_session(guest)
    make_order(guest, [(make_item(), 1, 500.0)], session_id=session_id)
    _insert_competing_bill(db, monkeypatch, session_id=session_id, order_id="someone-else")

    bill, created = bill_for_session(session_id)

    assert not created
    assert bill["bill_number"] == "BILL-WINNER"
    assert db.bills.count_documents({}) == 1
    assert db.orders.count_documents({"billed": True}) == 0


def test_order_bill_race_is_already_billed(db, monkeypatch, make_user, make_item, make_order):
    order_id = make_order(make_user(), [(make_item(), 1, 500.0)])
    _insert_competing_bill(db, monkeypatch, order_id=order_id)

    with pytest.raises(AlreadyBilled):
        bill_for_order(order_id)
    assert db.bills.count_documents({}) == 1
    assert db.bill_items.count_documents({}) == 0
