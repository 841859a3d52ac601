import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import auth
import billing
import menu
import orders
import sessions
import users
from auth import Caller, bearer_token, require_permission, require_roles, resolve_caller
from database import ensure_indexes, get_db
from errors import AppError, AuthorizationError
from notifications import NotificationHub, log_handler
from permissions import STAFF_ROLES, has_permission
from schemas import (
    AdminUserAction,
    AnnouncementAction,
    BillRequest,
    GuestCheckIn,
    LoginRequest,
    LogoutRequest,
    MenuImportPayload,
    OrderBillRequest,
    OrderCreate,
    OrderStatusUpdate,
    OrderUpdate,
    OtpSend,
    OtpVerify,
    PinReset,
    SessionBillRequest,
    SessionEnd,
    SpecialCreate,
    UserBillRequest,
)
from security import validate_session_token

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    app.state.notifications = NotificationHub()
    app.state.notifications.subscribe(log_handler)
    yield
    app.state.notifications.unsubscribe()


app = FastAPI(title="Restaurant Ordering API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"Missing or invalid field: {field}"},
    )


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def notify(request: Request, event: str, payload: dict) -> None:
    hub: Optional[NotificationHub] = getattr(request.app.state, "notifications", None)
    if hub is not None:
        hub.publish(event, payload)


@app.get("/")
def root():
    return {"message": "Restaurant Ordering API running"}


@app.get("/test")
def test_db():
    try:
        collections = get_db().list_collection_names()
        return {
            "backend": "fastapi",
            "database": "mongodb",
            "database_url": "set" if os.getenv("DATABASE_URL") else "(env not set)",
            "database_name": os.getenv("DATABASE_NAME", "(env not set)"),
            "connection_status": "ok",
            "collections": collections,
        }
    except PyMongoError as e:
        return {"backend": "fastapi", "database": "mongodb", "connection_status": f"error: {e}"}


# ============== AUTH ==================
@app.post("/auth/login")
def login(payload: LoginRequest):
    return {"success": True, **auth.login_with_pin(payload.phone, payload.pin)}


@app.post("/auth/guest")
def guest_login(payload: GuestCheckIn):
    result = sessions.guest_check_in(payload.name, payload.phone, payload.table_name, payload.num_guests)
    return {"success": True, **result}


@app.post("/auth/refresh")
def refresh(request: Request):
    return {"success": True, **auth.refresh_session(request)}


@app.post("/auth/logout")
def logout(payload: Optional[LogoutRequest] = None):
    auth.logout(payload.user_id if payload else None)
    return {"success": True, "message": "Logged out successfully"}


@app.post("/auth/otp/send")
def send_otp(payload: OtpSend):
    return {"success": True, **auth.send_otp(payload.phone)}


@app.post("/auth/otp/verify")
def verify_otp(payload: OtpVerify):
    otp_id = auth.verify_otp(payload.phone, payload.otp)
    return {"success": True, "message": "OTP verified successfully", "otp_id": otp_id}


@app.post("/auth/pin/reset")
def reset_pin(payload: PinReset):
    auth.reset_pin(payload.phone, payload.new_pin, payload.otp_id)
    return {"success": True, "message": "PIN reset successfully"}


# ============== MENU ==================
@app.get("/menu")
async def get_menu():
    return {"success": True, **(await menu.get_menu())}


@app.post("/admin/menu/import")
def import_menu(payload: MenuImportPayload, caller: Caller = Depends(require_permission("manage_menu"))):
    counts = menu.import_menu(payload)
    logger.info("menu imported by %s: %s", caller.id, counts)
    return {"success": True, **counts}


@app.post("/kitchen/specials")
def add_special(payload: SpecialCreate, caller: Caller = Depends(require_permission("manage_specials"))):
    return {"success": True, "data": menu.add_special(payload.menu_item_id, payload.period, payload.date)}


@app.delete("/kitchen/specials/{special_id}")
def remove_special(special_id: str, caller: Caller = Depends(require_permission("manage_specials"))):
    menu.remove_special(special_id)
    return {"success": True}


# ============== ORDERS ==================
@app.post("/orders")
def create_order(payload: OrderCreate, request: Request):
    caller = resolve_caller(request, user_id=payload.user_id, session_id=payload.session_id)
    if not ((caller.verified and caller.id == payload.user_id) or caller.source == auth.SOURCE_SESSION):
        logger.warning("order creation blocked for user %s", payload.user_id)
        raise AuthorizationError("Unauthorized: User mismatch or invalid session")
    if not has_permission(caller.role, "create_order"):
        raise AuthorizationError("Forbidden: Missing required permission")

    result = orders.create_order(caller.user, payload)
    notify(request, "order_created", {"order_id": result["order_id"], "table_name": result["table_name"], "total": result["total"]})
    return {"success": True, "order_id": result["order_id"], "total": result["total"], "message": "Order created successfully"}


@app.put("/orders/{order_id}")
def update_order(order_id: str, payload: OrderUpdate, request: Request):
    caller = resolve_caller(request, user_id=payload.user_id)
    if caller.verified and not validate_session_token(payload.user_id, bearer_token(request)):
        raise AuthorizationError("Unauthorized")
    result = orders.update_order(order_id, payload.user_id, payload.items, payload.notes)
    notify(request, "order_updated", result)
    return {"success": True, **result, "message": "Order updated successfully"}


@app.get("/orders")
def list_orders(status: Optional[str] = None, session_id: Optional[str] = None, caller: Caller = Depends(require_permission("view_all_orders"))):
    return {"success": True, "orders": orders.list_orders(status=status, session_id=session_id)}


@app.post("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, request: Request, caller: Caller = Depends(require_permission("update_order_status"))):
    orders.set_order_status(order_id, payload.status)
    notify(request, "order_status", {"order_id": order_id, "status": payload.status})
    return {"success": True}


# ============== BILLS ==================
@app.post("/bills/order")
def generate_order_bill(payload: OrderBillRequest, request: Request, caller: Caller = Depends(require_roles(*STAFF_ROLES))):
    bill = billing.bill_for_order(payload.order_id, payload.payment_method)
    notify(request, "bill_generated", {"bill_number": bill["bill_number"], "scope": billing.SCOPE_ORDER})
    return {"success": True, "bill": bill}


@app.post("/bills/session")
def generate_session_bill(payload: SessionBillRequest, request: Request, caller: Caller = Depends(require_roles(*STAFF_ROLES))):
    bill, created = billing.bill_for_session(payload.session_id, payload.payment_method)
    if not created:
        return {"success": True, "message": "Bill already exists for this session", "bill": bill}
    notify(request, "bill_generated", {"bill_number": bill["bill_number"], "scope": billing.SCOPE_SESSION})
    return {"success": True, "bill": bill}


@app.post("/bills/user")
def generate_user_bill(payload: UserBillRequest, request: Request, caller: Caller = Depends(require_roles(*STAFF_ROLES))):
    bill = billing.bill_for_user(payload.user_id, payload.payment_method)
    notify(request, "bill_generated", {"bill_number": bill["bill_number"], "scope": billing.SCOPE_USER})
    return {"success": True, "bill": bill}


@app.post("/bills/request")
def request_bill(payload: BillRequest, request: Request):
    caller = resolve_caller(request, user_id=payload.user_id, session_id=payload.session_id)
    if not caller.is_staff and not has_permission(caller.role, "request_bill") and caller.source != auth.SOURCE_SESSION:
        raise AuthorizationError("Forbidden: Missing required permission")
    summary = sessions.request_bill(payload.session_id, caller)
    notify(request, "bill_requested", summary)
    return {
        "success": True,
        "message": "Bill request sent to kitchen. A waiter will bring your bill shortly.",
        "session": summary,
    }


@app.get("/bills/{bill_id}")
def get_bill(bill_id: str, caller: Caller = Depends(require_roles(*STAFF_ROLES))):
    return {"success": True, "bill": billing.get_bill(bill_id)}


# ============== SESSIONS ==================
@app.get("/sessions/active")
def active_session(phone: Optional[str] = None, user_id: Optional[str] = None):
    return {"success": True, "session": sessions.get_active_session(phone=phone, user_id=user_id)}


@app.post("/sessions/{session_id}/end")
def end_session(session_id: str, request: Request, payload: Optional[SessionEnd] = None, caller: Caller = Depends(require_roles())):
    result = sessions.end_session(session_id, caller, (payload or SessionEnd()).payment_method)
    message = "Session ended! Bill summary sent by SMS." if result["sms_sent"] else "Session ended."
    return {"success": True, "session": result, "message": message}


# ============== ADMIN ==================
@app.get("/admin/users")
def admin_list_users(caller: Caller = Depends(require_roles(*STAFF_ROLES, allow_asserted=True))):
    return {"success": True, "data": users.list_users()}


@app.post("/admin/users")
def admin_users(payload: AdminUserAction, caller: Caller = Depends(require_roles(*STAFF_ROLES, allow_asserted=True))):
    if payload.action == "create":
        user_id = users.create_user(payload.user_data)
        return {"success": True, "id": user_id, "message": "User created successfully"}
    if payload.action == "update":
        users.admin_update_user(payload.user_data)
        return {"success": True, "message": "User updated successfully"}
    users.delete_user(payload.user_data.get("id"))
    return {"success": True, "message": "User deleted successfully"}


@app.get("/announcements")
def public_announcements():
    return {"success": True, "data": menu.list_announcements(active_only=True)}


@app.get("/admin/announcements")
def admin_announcements(caller: Caller = Depends(require_roles(*STAFF_ROLES, allow_asserted=True))):
    return {"success": True, "data": menu.list_announcements()}


@app.post("/admin/announcements")
def manage_announcements(payload: AnnouncementAction, caller: Caller = Depends(require_roles(*STAFF_ROLES, allow_asserted=True))):
    if payload.action == "create":
        announcement_id = menu.create_announcement(payload.payload)
        return {"success": True, "id": announcement_id, "message": "Announcement created successfully"}
    menu.delete_announcement(payload.payload.get("id"))
    return {"success": True, "message": "Announcement deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
