import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import collection, object_id, serialize, utcnow
from errors import BadRequestError, NotFoundError
from permissions import Role, normalize_role, role_display_name

logger = logging.getLogger(__name__)

SAFE_FIELDS = ("id", "email", "phone", "name", "role", "parent_name", "position", "last_login", "created_at")


def sanitize_phone(phone: Any) -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    # tolerate a leading country code on 12 digit input
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    return digits[:10]


def adapt_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    user = serialize(doc)
    user["role"] = normalize_role(user.get("role"))
    return user


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = {key: user.get(key) for key in SAFE_FIELDS}
    if isinstance(out["role"], Role):
        out["role_name"] = role_display_name(out["role"])
        out["role"] = out["role"].value
    return out


def get_user_by_phone(phone: str) -> Optional[Dict[str, Any]]:
    return adapt_user(collection("users").find_one({"phone": phone}))


def get_user_by_id(user_id: Any) -> Optional[Dict[str, Any]]:
    oid = object_id(user_id)
    if oid is None:
        return None
    return adapt_user(collection("users").find_one({"_id": oid}))


def get_user_by_token(token: str) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    return adapt_user(collection("users").find_one({"session_token": token}))


def update_user(user_id: Any, fields: Dict[str, Any], unset: Optional[List[str]] = None) -> bool:
    oid = object_id(user_id)
    if oid is None:
        return False
    update: Dict[str, Any] = {"$set": {**fields, "updated_at": utcnow()}}
    if unset:
        update["$unset"] = {name: "" for name in unset}
    res = collection("users").update_one({"_id": oid}, update)
    return res.matched_count > 0


# ============== ADMIN ==================
def list_users() -> List[Dict[str, Any]]:
    docs = collection("users").find({}).sort("created_at", DESCENDING)
    return [public_user(adapt_user(d)) for d in docs]


def _user_fields(user_data: Dict[str, Any]) -> Dict[str, Any]:
    role = normalize_role(user_data.get("role"))
    if user_data.get("role") and role is None:
        raise BadRequestError(f"Unknown role: {user_data.get('role')}")
    fields: Dict[str, Any] = {}
    if user_data.get("name"):
        fields["name"] = str(user_data["name"]).strip()
    if user_data.get("phone"):
        phone = sanitize_phone(user_data["phone"])
        if len(phone) != 10:
            raise BadRequestError("Valid 10-digit phone number required")
        fields["phone"] = phone
    if user_data.get("email"):
        fields["email"] = user_data["email"]
    if role is not None:
        fields["role"] = role.value
        fields["parent_name"] = user_data.get("parent_name") if role == Role.RIDER else None
    if user_data.get("position") is not None:
        fields["position"] = user_data.get("position")
    return fields


def create_user(user_data: Dict[str, Any]) -> str:
    # security imports this module
    from security import hash_pin

    fields = _user_fields(user_data)
    if not fields.get("name") or not fields.get("role"):
        raise BadRequestError("Name and role are required")
    if not fields.get("email"):
        fields["email"] = f"{fields['phone']}@restaurant.local" if fields.get("phone") else None
    if user_data.get("pin"):
        fields["pin_hash"] = hash_pin(str(user_data["pin"]))
    fields.update({"failed_login_attempts": 0, "locked_until": None, "session_token": None, "session_expires_at": None})
    now = utcnow()
    fields["created_at"] = now
    fields["updated_at"] = now
    try:
        res = collection("users").insert_one(fields)
    except DuplicateKeyError:
        raise BadRequestError("A user with this phone number already exists")
    return str(res.inserted_id)


def admin_update_user(user_data: Dict[str, Any]) -> None:
    from security import hash_pin

    user_id = user_data.get("id")
    if not user_id:
        raise BadRequestError("User id is required")
    fields = _user_fields(user_data)
    unset = None
    if user_data.get("pin"):
        fields["pin_hash"] = hash_pin(str(user_data["pin"]))
        unset = ["pin"]
    try:
        found = update_user(user_id, fields, unset=unset)
    except DuplicateKeyError:
        raise BadRequestError("A user with this phone number already exists")
    if not found:
        raise NotFoundError("User not found")


def delete_user(user_id: Any) -> None:
    oid = object_id(user_id)
    if oid is None or collection("users").find_one({"_id": oid}) is None:
        raise NotFoundError("User not found")
    uid = str(oid)
    # orders and sessions reference the user by id
    collection("orders").delete_many({"user_id": uid})
    collection("guest_sessions").delete_many({"user_id": uid})
    collection("users").delete_one({"_id": oid})
    logger.info("deleted user %s with orders and sessions", uid)
