import hashlib
import hmac
import logging
import os
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import bcrypt
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import collection, object_id, to_base36, utcnow
from users import update_user

logger = logging.getLogger(__name__)

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))
PIN_HASH_ROUNDS = int(os.getenv("PIN_HASH_ROUNDS", "10"))
MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 30

_TOKEN_ALPHABET = string.ascii_letters + string.digits


# ============== PIN ==================
def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=PIN_HASH_ROUNDS)).decode("utf-8")


def is_bcrypt_hash(value: Optional[str]) -> bool:
    return bool(value) and value.startswith("$2")


def legacy_digest_matches(candidate: str, stored_hash: str) -> bool:
    """Check a pre-bcrypt digest: `sha256$<salt>$<hex>` or a bare SHA-256 hex string."""
    if stored_hash.startswith("sha256$"):
        _, salt, expected = stored_hash.split("$", 2)
        actual = hashlib.sha256((salt + candidate).encode("utf-8")).hexdigest()
    else:
        expected = stored_hash
        actual = hashlib.sha256(candidate.encode("utf-8")).hexdigest()
    return hmac.compare_digest(actual, expected.lower())


def verify_pin(candidate: str, user: Dict[str, Any]) -> bool:
    pin_hash = user.get("pin_hash")
    if pin_hash:
        if is_bcrypt_hash(pin_hash):
            try:
                return bcrypt.checkpw(candidate.encode("utf-8"), pin_hash.encode("utf-8"))
            except ValueError:
                return False
        try:
            if legacy_digest_matches(candidate, pin_hash):
                return True
        except (ValueError, TypeError):
            # unreadable digest, try the plaintext column
            pass

    plain = user.get("pin")
    if plain and hmac.compare_digest(str(plain).encode("utf-8"), candidate.encode("utf-8")):
        try:
            update_user(user["id"], {"pin_hash": hash_pin(candidate)}, unset=["pin"])
        except PyMongoError as e:
            logger.warning("PIN hash upgrade failed for user %s: %s", user.get("id"), e)
        return True

    return False


# ============== SESSION TOKENS ==================
def generate_session_token() -> str:
    body = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(64))
    return f"{to_base36(int(time.time() * 1000))}_{body}"


def issue_session_token(user_id: Any, hours: int = SESSION_TTL_HOURS) -> Tuple[str, datetime]:
    token = generate_session_token()
    now = utcnow()
    expires_at = now + timedelta(hours=hours)
    update_user(user_id, {"session_token": token, "session_expires_at": expires_at, "last_login": now})
    return token, expires_at


def validate_session_token(user_id: Any, token: str) -> bool:
    oid = object_id(user_id)
    if oid is None or not token:
        return False
    doc = collection("users").find_one({"_id": oid}, {"session_token": 1, "session_expires_at": 1})
    if not doc or doc.get("session_token") != token:
        return False
    expires_at = doc.get("session_expires_at")
    return expires_at is not None and expires_at > utcnow()


def token_expired(user: Dict[str, Any]) -> bool:
    expires_at = user.get("session_expires_at")
    return expires_at is None or expires_at <= utcnow()


def slide_session_expiry(user_id: Any, hours: int = SESSION_TTL_HOURS) -> datetime:
    expires_at = utcnow() + timedelta(hours=hours)
    update_user(user_id, {"session_expires_at": expires_at})
    return expires_at


def revoke_session_token(user_id: Any) -> bool:
    return update_user(user_id, {"session_token": None, "session_expires_at": None})


# ============== LOCKOUT ==================
def is_user_locked(phone: str) -> Tuple[bool, Optional[datetime]]:
    users = collection("users")
    doc = users.find_one({"phone": phone}, {"locked_until": 1})
    if not doc or not doc.get("locked_until"):
        return False, None
    locked_until = doc["locked_until"]
    if locked_until <= utcnow():
        users.update_one({"_id": doc["_id"]}, {"$set": {"locked_until": None, "failed_login_attempts": 0}})
        return False, None
    return True, locked_until


def record_failed_login(phone: str, reason: str = "Invalid credentials") -> None:
    try:
        users = collection("users")
        doc = users.find_one_and_update(
            {"phone": phone},
            {"$inc": {"failed_login_attempts": 1}},
            projection={"failed_login_attempts": 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            log_auth_action(None, "failed_login", {"phone": phone, "reason": reason}, status="failed", reason=reason)
            return
        attempts = doc.get("failed_login_attempts", 1)
        locked = attempts >= MAX_FAILED_LOGINS
        if locked:
            users.update_one({"_id": doc["_id"]}, {"$set": {"locked_until": utcnow() + timedelta(minutes=LOCKOUT_MINUTES)}})
            logger.warning("account %s locked after %d failed logins", phone, attempts)
        log_auth_action(str(doc["_id"]), "failed_login", {"attempts": attempts, "locked": locked}, status="failed", reason=reason)
    except PyMongoError as e:
        logger.error("record_failed_login error for %s: %s", phone, e)


def clear_failed_login_attempts(user_id: Any) -> None:
    try:
        update_user(user_id, {"failed_login_attempts": 0, "locked_until": None})
    except PyMongoError as e:
        logger.error("clear_failed_login_attempts error for %s: %s", user_id, e)


# ============== AUDIT ==================
def log_auth_action(user_id: Optional[str], event_type: str, details: Optional[Dict[str, Any]] = None, status: str = "success", reason: Optional[str] = None) -> None:
    try:
        collection("auth_logs").insert_one({
            "user_id": user_id,
            "event_type": event_type,
            "status": status,
            "reason": reason,
            "details": details or {},
            "created_at": utcnow(),
        })
    except Exception as e:
        logger.warning("auth log write failed (%s): %s", event_type, e)
