import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import collection, object_id, to_base36, utcnow
from errors import AlreadyBilled, BadRequestError, ConflictError, NotFoundError, StoreError
from users import get_user_by_id

logger = logging.getLogger(__name__)

UNKNOWN_ITEM = "Unknown Item"

SCOPE_ORDER = "order"
SCOPE_SESSION = "session"
SCOPE_USER = "user"


@dataclass
class BillLine:
    item_name: str
    price: float
    quantity: int = 0

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.price, 2)


@dataclass
class Consolidation:
    lines: List[BillLine] = field(default_factory=list)
    items_total: float = 0.0
    discount_total: float = 0.0

    @property
    def final_total(self) -> float:
        # not floored at zero: a larger discount leaves a credit
        return round(self.items_total - self.discount_total, 2)


def menu_names(orders: List[Dict[str, Any]]) -> Dict[str, str]:
    ids = {
        object_id(item.get("menu_item_id"))
        for order in orders
        for item in order.get("items") or []
    }
    ids.discard(None)
    if not ids:
        return {}
    return {str(doc["_id"]): doc.get("name") for doc in collection("menu_item").find({"_id": {"$in": list(ids)}}, {"name": 1})}


def consolidate(orders: List[Dict[str, Any]], names: Dict[str, str]) -> Consolidation:
    """Merge the line items of `orders` into one line per (name, unit price)."""
    merged: Dict[Tuple[str, float], BillLine] = {}
    result = Consolidation()
    discount_total = 0.0
    for order in orders:
        discount_total += float(order.get("discount_amount") or 0)
        for item in order.get("items") or []:
            name = names.get(str(item.get("menu_item_id"))) or UNKNOWN_ITEM
            price = float(item.get("price") or 0)
            quantity = int(item.get("quantity") or 0)
            key = (name, price)
            if key not in merged:
                merged[key] = BillLine(item_name=name, price=price)
                result.lines.append(merged[key])
            merged[key].quantity += quantity
    # the printed lines must add up to the bill total
    result.items_total = round(sum(line.subtotal for line in result.lines), 2)
    result.discount_total = round(discount_total, 2)
    return result


def generate_bill_number() -> str:
    today = utcnow().strftime("%Y%m%d")
    try:
        counter = collection("counters").find_one_and_update(
            {"_id": f"bill-{today}"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return f"BILL-{today}-{counter['seq']:04d}"
    except PyMongoError as e:
        logger.warning("bill number sequence unavailable, using fallback: %s", e)
        return f"BILL-{to_base36(int(time.time() * 1000)).upper()}-{secrets.token_hex(2).upper()}"


# ============== READ ==================
def bill_items_for(bill_id: str) -> List[Dict[str, Any]]:
    docs = collection("bill_items").find({"bill_id": bill_id}).sort("_id", ASCENDING)
    return [
        {
            "item_name": d.get("item_name") or "Item",
            "quantity": d.get("quantity", 0),
            "price": d.get("price", 0),
            "subtotal": d.get("subtotal", d.get("quantity", 0) * d.get("price", 0)),
        }
        for d in docs
    ]


def present_bill(bill: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    bill_id = str(bill["_id"])
    return {
        "id": bill_id,
        "bill_number": bill["bill_number"],
        "scope": bill.get("scope"),
        "items_total": bill.get("items_total", 0),
        "discount_amount": bill.get("discount_amount") or 0,
        "final_total": bill.get("final_total", 0),
        "payment_method": bill.get("payment_method"),
        "payment_status": bill.get("payment_status"),
        "items": items if items is not None else bill_items_for(bill_id),
        "session_details": bill.get("session_details") or {},
    }


def get_bill(bill_id: str) -> Dict[str, Any]:
    oid = object_id(bill_id)
    bill = collection("bills").find_one({"_id": oid}) if oid else None
    if not bill:
        raise NotFoundError("Bill not found")
    return present_bill(bill)


# ============== WRITE ==================
def _persist(scope: str, orders: List[Dict[str, Any]], payment_method: str, extra: Dict[str, Any]) -> Dict[str, Any]:
    summary = consolidate(orders, menu_names(orders))
    if summary.final_total < 0:
        logger.warning("bill for %s %s has negative total %.2f", scope, extra.get("session_id") or orders[0]["_id"], summary.final_total)

    bills = collection("bills")
    doc = {
        "scope": scope,
        "order_id": str(orders[0]["_id"]),
        "order_ids": [str(o["_id"]) for o in orders],
        "bill_number": generate_bill_number(),
        "items_total": summary.items_total,
        "discount_amount": summary.discount_total,
        "final_total": summary.final_total,
        "payment_method": payment_method,
        "payment_status": "pending",
        "created_at": utcnow(),
        **extra,
    }
    try:
        bill_id = bills.insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise AlreadyBilled("A bill already exists for these orders")
    except PyMongoError as e:
        logger.error("bill insert failed (%s): %s", scope, e)
        raise StoreError("Failed to create bill")

    items = [
        {"item_name": line.item_name, "quantity": line.quantity, "price": line.price, "subtotal": line.subtotal}
        for line in summary.lines
    ]
    try:
        if items:
            collection("bill_items").insert_many([{**it, "bill_id": str(bill_id)} for it in items])
    except PyMongoError as e:
        logger.error("bill item insert failed for bill %s: %s", bill_id, e)
        try:
            bills.delete_one({"_id": bill_id})
        except PyMongoError as cleanup_error:
            logger.critical("orphaned bill %s left behind, reconcile manually: %s", bill_id, cleanup_error)
        raise StoreError("Failed to create bill items")

    try:
        collection("orders").update_many(
            {"_id": {"$in": [o["_id"] for o in orders]}},
            {"$set": {"billed": True, "updated_at": utcnow()}},
        )
    except PyMongoError as e:
        logger.error("bill %s created but orders not marked billed: %s", bill_id, e)
        raise StoreError("Failed to mark orders as billed")

    doc["_id"] = bill_id
    return present_bill(doc, items)


def bill_for_order(order_id: str, payment_method: str = "cash") -> Dict[str, Any]:
    oid = object_id(order_id)
    order = collection("orders").find_one({"_id": oid}) if oid else None
    if not order:
        raise NotFoundError("Order not found")

    existing = collection("bills").find_one({"order_id": str(oid)}, {"bill_number": 1})
    if existing:
        raise AlreadyBilled("Bill already exists for this order", bill_number=existing["bill_number"])
    if order.get("billed"):
        raise AlreadyBilled("Order has already been billed")

    extra = {
        "table_name": order.get("table_name"),
        "session_details": {
            "table_name": order.get("table_name"),
            "guest_info": order.get("guest_info"),
            "notes": order.get("notes"),
            "order_count": 1,
            "started_at": order["created_at"].isoformat(),
        },
    }
    return _persist(SCOPE_ORDER, [order], payment_method, extra)


def bill_for_session(session_id: str, payment_method: str = "cash") -> Tuple[Dict[str, Any], bool]:
    """Bill every order of a dining session and end it.

    Returns (bill, created). Calling it again for an already billed session
    returns the existing bill with created=False.
    """
    sessions = collection("guest_sessions")
    oid = object_id(session_id)
    session = sessions.find_one({"_id": oid}) if oid else None
    if not session:
        raise NotFoundError("Session not found")

    orders = list(collection("orders").find({"session_id": session_id}).sort("created_at", ASCENDING))
    if not orders:
        raise BadRequestError("No orders found in this session. Please ensure orders are placed before requesting a bill.")

    existing = collection("bills").find_one({"session_id": session_id})
    if existing:
        return present_bill(existing), False

    unbilled = [o for o in orders if not o.get("billed")]
    if not unbilled:
        raise ConflictError("All orders in this session have already been billed")

    started_at = session.get("started_at") or session.get("created_at")
    extra = {
        "session_id": session_id,
        "guest_name": session.get("guest_name"),
        "guest_phone": session.get("guest_phone"),
        "table_name": session.get("table_name"),
        "session_details": {
            "guest_name": session.get("guest_name") or "Guest",
            "table_name": session.get("table_name") or "N/A",
            "num_guests": session.get("num_guests") or 1,
            "order_count": len(unbilled),
            "started_at": started_at.isoformat() if started_at else None,
        },
    }
    try:
        bill = _persist(SCOPE_SESSION, unbilled, payment_method, extra)
    except AlreadyBilled:
        existing = collection("bills").find_one({"session_id": session_id})
        if existing:
            return present_bill(existing), False
        raise

    try:
        sessions.update_one(
            {"_id": oid},
            {"$set": {"status": "ended", "ended_at": utcnow(), "total_amount": bill["final_total"], "payment_method": payment_method}},
        )
    except PyMongoError as e:
        logger.error("bill %s created but session %s not ended: %s", bill["bill_number"], session_id, e)
        raise StoreError("Failed to close session")
    return bill, True


def bill_for_user(user_id: str, payment_method: str = "cash") -> Dict[str, Any]:
    user = get_user_by_id(user_id)
    if not user:
        raise NotFoundError("User not found")

    try:
        orders = list(
            collection("orders")
            .find({"user_id": user["id"], "billed": {"$ne": True}})
            .sort("created_at", ASCENDING)
        )
    except PyMongoError as e:
        logger.error("order lookup failed for user %s: %s", user_id, e)
        raise StoreError("Failed to fetch orders")
    if not orders:
        raise BadRequestError("No unbilled orders found")

    first = orders[0]
    table_name = first.get("table_name") or user.get("name") or "N/A"
    extra = {
        "guest_name": user.get("name") or "Guest",
        "guest_phone": user.get("phone") or "",
        "table_name": table_name,
        "session_details": {
            "guest_name": user.get("name") or "Guest",
            "table_name": table_name,
            "num_guests": 1,
            "order_count": len(orders),
            "started_at": first["created_at"].isoformat(),
        },
    }
    return _persist(SCOPE_USER, orders, payment_method, extra)
