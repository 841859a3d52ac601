import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from database import collection, get_documents, object_id, utcnow
from errors import BadRequestError, EditWindowExpired, NotFoundError, StoreError
from permissions import Role

logger = logging.getLogger(__name__)

EDIT_WINDOW_SECONDS = 120


def price_items(items: List[Any]) -> Tuple[List[Dict[str, Any]], float]:
    """Resolve every requested item against the menu and price it server side.

    Client supplied prices are ignored. Raises BadRequestError naming the first
    item that does not exist or is not available.
    """
    ids = [object_id(it.item_id) for it in items]
    menu = {
        str(doc["_id"]): doc
        for doc in collection("menu_item").find({"_id": {"$in": [i for i in ids if i is not None]}})
    }
    priced: List[Dict[str, Any]] = []
    total = 0.0
    for it in items:
        menu_item = menu.get(it.item_id)
        if not menu_item:
            raise BadRequestError(f"Item {it.item_id} not found")
        if not menu_item.get("available", True):
            raise BadRequestError(f"{menu_item.get('name', it.item_id)} is currently unavailable")
        price = float(menu_item.get("price", 0))
        total += price * it.quantity
        priced.append({"menu_item_id": it.item_id, "quantity": it.quantity, "price": price})
    return priced, round(total, 2)


def create_order(user: Dict[str, Any], payload) -> Dict[str, Any]:
    items, total = price_items(payload.items)
    now = utcnow()
    doc = {
        "user_id": user["id"],
        "session_id": payload.session_id,
        "guest_info": {"name": user.get("name"), "email": user.get("email")} if user.get("role") == Role.OUTSIDER else None,
        "table_name": payload.table_name,
        "num_guests": payload.num_guests,
        "location_type": payload.location_type,
        "notes": payload.notes,
        "items": items,
        "total": total,
        "discount_amount": 0.0,
        "billed": False,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    try:
        res = collection("orders").insert_one(doc)
    except PyMongoError as e:
        logger.error("order insert failed for user %s: %s", user["id"], e)
        raise StoreError("Failed to create order")
    return {"order_id": str(res.inserted_id), "total": total, "table_name": payload.table_name, "items": items}


def update_order(order_id: str, owner_id: str, items: List[Any], notes: Optional[str] = None) -> Dict[str, Any]:
    orders = collection("orders")
    oid = object_id(order_id)
    order = orders.find_one({"_id": oid, "user_id": owner_id}) if oid else None
    if not order:
        raise NotFoundError("Order not found or does not belong to you")

    created_at = order["created_at"]
    if (utcnow() - created_at).total_seconds() > EDIT_WINDOW_SECONDS:
        raise EditWindowExpired("Edit window has expired. Orders can only be modified within 2 minutes of placement.")
    if order.get("billed"):
        raise EditWindowExpired("Order has already been billed")

    priced, items_total = price_items(items)
    total = round(items_total - float(order.get("discount_amount") or 0), 2)
    fields: Dict[str, Any] = {"items": priced, "total": total, "updated_at": utcnow()}
    if notes is not None:
        fields["notes"] = notes

    # the window and billed flag are re-checked by the filter itself
    res = orders.update_one(
        {
            "_id": oid,
            "user_id": owner_id,
            "billed": {"$ne": True},
            "created_at": {"$gte": utcnow() - timedelta(seconds=EDIT_WINDOW_SECONDS)},
        },
        {"$set": fields},
    )
    if res.matched_count == 0:
        raise EditWindowExpired("Edit window has expired. Orders can only be modified within 2 minutes of placement.")
    return {"order_id": order_id, "total": total}


def list_orders(status: Optional[str] = None, session_id: Optional[str] = None, user_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    q: Dict[str, Any] = {}
    if status:
        q["status"] = status
    if session_id:
        q["session_id"] = session_id
    if user_id:
        q["user_id"] = user_id
    return get_documents("orders", q, limit=limit, sort=[("created_at", DESCENDING)])


def set_order_status(order_id: str, status: str) -> None:
    oid = object_id(order_id)
    if oid is None:
        raise NotFoundError("Order not found")
    res = collection("orders").update_one({"_id": oid}, {"$set": {"status": status, "updated_at": utcnow()}})
    if res.matched_count == 0:
        raise NotFoundError("Order not found")
