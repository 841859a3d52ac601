import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import collection, object_id, serialize, utcnow
from errors import AuthorizationError, BadRequestError, NotFoundError, StoreError
from notifications import send_sms
from permissions import Role
from security import issue_session_token, log_auth_action
from users import get_user_by_phone, public_user, sanitize_phone, update_user

logger = logging.getLogger(__name__)


def _session_orders(session_id: str) -> List[Dict[str, Any]]:
    return list(collection("orders").find({"session_id": session_id}).sort("created_at", ASCENDING))


def _orders_total(orders: List[Dict[str, Any]]) -> float:
    return round(sum(float(o.get("total") or 0) for o in orders), 2)


def guest_check_in(name: str, phone: str, table_name: str, num_guests: int = 1) -> Dict[str, Any]:
    name, table_name = name.strip(), table_name.strip()
    if not name:
        raise BadRequestError("Name is required")
    if not table_name:
        raise BadRequestError("Table number is required")
    clean_phone = sanitize_phone(phone)
    if len(clean_phone) != 10:
        raise BadRequestError("Valid 10-digit phone number is required")

    users = collection("users")
    user = get_user_by_phone(clean_phone)
    if user and user["role"] != Role.OUTSIDER:
        raise BadRequestError("This phone is registered to staff. Use staff login.")

    if user:
        if user.get("name") != name:
            update_user(user["id"], {"name": name})
            user["name"] = name
    else:
        now = utcnow()
        try:
            res = users.insert_one({
                "name": name,
                "phone": clean_phone,
                "email": f"guest_{clean_phone}@restaurant.local",
                "role": Role.OUTSIDER.value,
                "failed_login_attempts": 0,
                "locked_until": None,
                "created_at": now,
                "updated_at": now,
            })
        except DuplicateKeyError:
            raise BadRequestError("Registration failed. Try again.")
        except PyMongoError as e:
            logger.error("guest registration failed for %s: %s", clean_phone, e)
            raise StoreError("Registration failed. Try again.")
        user = {"id": str(res.inserted_id), "name": name, "phone": clean_phone, "role": Role.OUTSIDER,
                "email": f"guest_{clean_phone}@restaurant.local", "created_at": now}

    sessions = collection("guest_sessions")
    existing = sessions.find_one({"guest_phone": clean_phone, "status": "active"})
    fields = {"guest_name": name, "table_name": table_name, "num_guests": num_guests, "user_id": user["id"]}
    if existing:
        sessions.update_one({"_id": existing["_id"]}, {"$set": fields})
        session = {**existing, **fields}
    else:
        now = utcnow()
        session = {
            **fields,
            "guest_phone": clean_phone,
            "status": "active",
            "bill_requested": False,
            "total_amount": 0.0,
            "started_at": now,
            "created_at": now,
        }
        try:
            session["_id"] = sessions.insert_one(session).inserted_id
        except PyMongoError as e:
            logger.error("session creation failed for %s: %s", clean_phone, e)
            raise StoreError("Failed to start dining session.")

    token, _ = issue_session_token(user["id"])
    log_auth_action(user["id"], "guest_login", {"table_name": table_name, "num_guests": num_guests})
    session = serialize(session)
    return {
        "user": public_user(user),
        "session": {
            "id": session["id"],
            "table_name": session["table_name"],
            "num_guests": session["num_guests"],
            "total_amount": session.get("total_amount", 0),
            "started_at": session["started_at"].isoformat() if session.get("started_at") else None,
            "session_token": token,
        },
        "message": "Welcome back! Session resumed." if existing else "Dining session started!",
    }


def get_active_session(phone: Optional[str] = None, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if not phone and not user_id:
        raise BadRequestError("Phone or user_id is required")
    q: Dict[str, Any] = {"status": "active"}
    if phone:
        q["guest_phone"] = sanitize_phone(phone)
    else:
        q["user_id"] = user_id
    session = collection("guest_sessions").find_one(q)
    if not session:
        return None
    session = serialize(session)
    orders = [serialize(o) for o in _session_orders(session["id"])]
    session["orders"] = orders
    session["order_count"] = len(orders)
    session["calculated_total"] = _orders_total(orders)
    return session


def request_bill(session_id: str, caller) -> Dict[str, Any]:
    """Flag a session as waiting for its bill. The session stays open for more orders."""
    sessions = collection("guest_sessions")
    oid = object_id(session_id)
    session = sessions.find_one({"_id": oid, "status": "active"}) if oid else None
    if not session:
        raise NotFoundError("Active session not found")
    if not caller.is_staff and session.get("user_id") != caller.id:
        raise AuthorizationError("Unauthorized: You can only request bills for your own session")

    orders = _session_orders(session_id)
    total = _orders_total(orders)
    sessions.update_one(
        {"_id": oid},
        {"$set": {"bill_requested": True, "bill_requested_at": utcnow(), "total_amount": total}},
    )
    return {
        "id": session_id,
        "guest_name": session.get("guest_name"),
        "table_name": session.get("table_name"),
        "total_amount": total,
        "order_count": len(orders),
    }


def end_session(session_id: str, caller, payment_method: str = "upi") -> Dict[str, Any]:
    sessions = collection("guest_sessions")
    oid = object_id(session_id)
    session = sessions.find_one({"_id": oid}) if oid else None
    if not session:
        raise NotFoundError("Session not found")
    if not caller.is_staff and session.get("user_id") != caller.id:
        logger.warning("unauthorized session end attempt by %s for %s", caller.id, session_id)
        raise AuthorizationError("Unauthorized to end this session")
    if session.get("status") != "active":
        raise BadRequestError("Session already ended")

    orders = _session_orders(session_id)
    if not orders:
        raise BadRequestError("No orders in this session")
    total = _orders_total(orders)

    sent = send_sms(
        session.get("guest_phone"),
        f"Thank you for dining with us. Table {session.get('table_name')}: {len(orders)} order(s), total {total:.2f}.",
    )
    res = sessions.update_one(
        {"_id": oid, "status": "active"},
        {"$set": {
            "status": "ended",
            "ended_at": utcnow(),
            "total_amount": total,
            "payment_method": payment_method,
            "notes": "Bill summary sent by SMS" if sent else "Bill summary not sent",
        }},
    )
    if res.matched_count == 0:
        raise BadRequestError("Session already ended")
    return {"id": session_id, "total_amount": total, "order_count": len(orders), "sms_sent": sent}
