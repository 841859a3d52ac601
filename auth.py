import logging
import math
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Request
from pymongo.errors import PyMongoError

from database import collection, object_id, utcnow
from errors import (
    AccountLocked,
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    NotFoundError,
    StoreError,
)
from notifications import send_sms
from permissions import PIN_LOGIN_ROLES, Role, can_access, has_permission
from security import (
    SESSION_TTL_HOURS,
    clear_failed_login_attempts,
    hash_pin,
    is_user_locked,
    issue_session_token,
    log_auth_action,
    record_failed_login,
    revoke_session_token,
    slide_session_expiry,
    token_expired,
    verify_pin,
)
from users import get_user_by_id, get_user_by_phone, get_user_by_token, public_user, sanitize_phone, update_user

logger = logging.getLogger(__name__)

APP_ENV = os.getenv("APP_ENV", "production")
OTP_TTL_MINUTES = 5
PIN_RESET_ROLES = (Role.RIDER, Role.KITCHEN)

SOURCE_TOKEN = "token"
SOURCE_SESSION = "session"
SOURCE_USER_ID = "user_id"


@dataclass
class Caller:
    user: Dict[str, Any]
    role: Optional[Role]
    source: str
    session_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.user["id"]

    @property
    def verified(self) -> bool:
        return self.source == SOURCE_TOKEN

    @property
    def is_staff(self) -> bool:
        return self.verified and self.role in (Role.KITCHEN, Role.ADMIN)


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    token = header[7:].strip() if header.lower().startswith("bearer ") else header.strip()
    if token in ("", "null", "undefined"):
        token = None
    return token or request.cookies.get("session_token")


def resolve_caller(request: Request, user_id: Optional[str] = None, session_id: Optional[str] = None, required: bool = True) -> Optional[Caller]:
    token = bearer_token(request)
    if token:
        user = get_user_by_token(token)
        if user:
            if token_expired(user):
                revoke_session_token(user["id"])
                raise AuthenticationError("Session expired")
            slide_session_expiry(user["id"])
            return Caller(user=user, role=user["role"], source=SOURCE_TOKEN)

    asserted = user_id or request.headers.get("X-User-Id")
    if asserted:
        user = get_user_by_id(asserted)
        if user:
            if session_id:
                active = collection("guest_sessions").find_one(
                    {"_id": object_id(session_id), "user_id": user["id"], "status": "active"}
                )
                if active:
                    return Caller(user=user, role=user["role"], source=SOURCE_SESSION, session_id=session_id)
            return Caller(user=user, role=user["role"], source=SOURCE_USER_ID)

    if not required:
        return None
    if token or asserted:
        raise AuthenticationError("Invalid session")
    raise AuthenticationError("Not authenticated")


def require_roles(*roles: Role, allow_asserted: bool = False):
    def dependency(request: Request) -> Caller:
        caller = resolve_caller(request)
        if not caller.verified and not allow_asserted:
            raise AuthenticationError("Authorization required")
        if not can_access(caller.role, roles):
            raise AuthorizationError("Forbidden: Insufficient permissions")
        return caller
    return dependency


def require_permission(permission: str, allow_asserted: bool = False):
    def dependency(request: Request) -> Caller:
        caller = resolve_caller(request)
        if not caller.verified and not allow_asserted:
            raise AuthenticationError("Authorization required")
        if not has_permission(caller.role, permission):
            raise AuthorizationError("Forbidden: Missing required permission")
        return caller
    return dependency


# ============== LOGIN ==================
def session_payload(token: str) -> Dict[str, Any]:
    return {"session_token": token, "expires_in": SESSION_TTL_HOURS * 3600}


def login_with_pin(phone: str, pin: str) -> Dict[str, Any]:
    clean_phone = sanitize_phone(phone)
    if len(clean_phone) != 10:
        raise BadRequestError("Valid 10-digit phone number required")
    if not pin:
        raise BadRequestError("Phone and PIN are required")

    locked, until = is_user_locked(clean_phone)
    if locked:
        minutes_left = max(1, math.ceil((until - utcnow()).total_seconds() / 60))
        raise AccountLocked(f"Account locked. Try again in {minutes_left} minutes.")

    user = get_user_by_phone(clean_phone)
    if not user:
        record_failed_login(clean_phone, "User not found")
        raise NotFoundError("Account not found with this phone number")

    if user["role"] not in PIN_LOGIN_ROLES:
        raise AuthorizationError("Use guest check-in for this account")

    if not verify_pin(pin, user):
        record_failed_login(clean_phone, "Invalid PIN")
        raise AuthenticationError("Invalid phone or PIN")

    clear_failed_login_attempts(user["id"])
    token, _ = issue_session_token(user["id"])
    log_auth_action(user["id"], "login", {"method": "pin", "role": user["role"].value})
    return {
        "user": public_user(user),
        "session": session_payload(token),
        "message": f"Welcome back, {user.get('name')}!",
    }


def logout(user_id: Optional[str]) -> None:
    if not user_id:
        return
    try:
        revoke_session_token(user_id)
        log_auth_action(user_id, "logout")
    except PyMongoError as e:
        logger.warning("logout cleanup failed for %s: %s", user_id, e)


def refresh_session(request: Request) -> Dict[str, Any]:
    token = bearer_token(request)
    if not token:
        raise AuthenticationError("No session token")
    user = get_user_by_token(token)
    if not user:
        raise AuthenticationError("Invalid session")
    if token_expired(user):
        revoke_session_token(user["id"])
        raise AuthenticationError("Session expired")
    expires_at = slide_session_expiry(user["id"])
    return {
        "user": public_user(user),
        "session": {"session_token": token, "expires_at": expires_at.isoformat()},
    }


# ============== PIN RESET ==================
def send_otp(phone: str) -> Dict[str, Any]:
    clean_phone = sanitize_phone(phone)
    if len(clean_phone) != 10:
        raise BadRequestError("Invalid phone number")
    user = get_user_by_phone(clean_phone)
    if not user:
        raise NotFoundError("User not found")
    if user["role"] not in PIN_RESET_ROLES:
        raise AuthorizationError("PIN reset not available for this user type")

    code = f"{secrets.randbelow(900000) + 100000}"
    now = utcnow()
    collection("otp_codes").insert_one({
        "phone": clean_phone,
        "otp_code": code,
        "expires_at": now + timedelta(minutes=OTP_TTL_MINUTES),
        "verified": False,
        "used": False,
        "created_at": now,
    })
    send_sms(clean_phone, f"Your PIN reset OTP is: {code}. Valid for {OTP_TTL_MINUTES} minutes.")

    result: Dict[str, Any] = {"message": "OTP sent successfully"}
    if APP_ENV == "development":
        result["otp"] = code
    return result


def verify_otp(phone: str, otp: str) -> str:
    clean_phone = sanitize_phone(phone)
    record = collection("otp_codes").find_one(
        {"phone": clean_phone, "otp_code": otp, "used": False},
        sort=[("created_at", -1)],
    )
    if not record:
        raise BadRequestError("Invalid OTP")
    if record["expires_at"] < utcnow():
        raise BadRequestError("OTP has expired")
    collection("otp_codes").update_one({"_id": record["_id"]}, {"$set": {"verified": True}})
    return str(record["_id"])


def reset_pin(phone: str, new_pin: str, otp_id: str) -> None:
    if len(new_pin) != 6 or not new_pin.isdigit():
        raise BadRequestError("PIN must be 6 digits")
    clean_phone = sanitize_phone(phone)
    record = collection("otp_codes").find_one(
        {"_id": object_id(otp_id), "phone": clean_phone, "verified": True, "used": False}
    )
    if not record:
        raise BadRequestError("Invalid or expired verification")
    user = get_user_by_phone(clean_phone)
    if not user:
        raise NotFoundError("User not found")
    if not update_user(user["id"], {"pin_hash": hash_pin(new_pin), "failed_login_attempts": 0, "locked_until": None}, unset=["pin"]):
        raise StoreError("Failed to update PIN")
    collection("otp_codes").update_one({"_id": record["_id"]}, {"$set": {"used": True}})
    log_auth_action(user["id"], "pin_reset")
