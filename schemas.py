from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal

# Collections:
# - users
# - guest_sessions
# - orders (order items embedded)
# - bills, bill_items
# - menu_category, menu_item, daily_specials
# - announcements, otp_codes, auth_logs, counters

PaymentMethod = Literal["cash", "card", "upi", "online"]
OrderStatus = Literal["pending", "preparing", "ready", "served", "completed", "cancelled"]


# ---------- Auth ----------
class LoginRequest(BaseModel):
    phone: str = Field(..., min_length=1)
    pin: str = Field(..., min_length=1)


class GuestCheckIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    table_name: str = Field(..., min_length=1)
    num_guests: int = Field(1, ge=1)


class LogoutRequest(BaseModel):
    user_id: Optional[str] = None


class OtpSend(BaseModel):
    phone: str


class OtpVerify(BaseModel):
    phone: str
    otp: str


class PinReset(BaseModel):
    phone: str
    new_pin: str
    otp_id: str


# ---------- Menu ----------
class MenuItemIn(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    image: Optional[str] = None
    available: bool = True


class MenuCategoryIn(BaseModel):
    name: str
    slug: Optional[str] = None
    order: Optional[int] = None
    items: List[MenuItemIn] = []


class MenuImportPayload(BaseModel):
    categories: List[MenuCategoryIn]


class SpecialCreate(BaseModel):
    menu_item_id: str
    period: str
    date: Optional[str] = None  # YYYY-MM-DD, defaults to today


# ---------- Orders ----------
class OrderItemIn(BaseModel):
    item_id: str
    quantity: int = Field(1, ge=1)
    # accepted for compatibility with older clients; never used for pricing
    price: Optional[float] = None


class OrderCreate(BaseModel):
    user_id: str
    table_name: str = Field(..., min_length=1)
    items: List[OrderItemIn] = Field(..., min_length=1)
    session_id: Optional[str] = None
    num_guests: Optional[int] = None
    location_type: Optional[str] = None
    notes: Optional[str] = None


class OrderUpdate(BaseModel):
    user_id: str
    items: List[OrderItemIn] = Field(..., min_length=1)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# ---------- Bills ----------
class OrderBillRequest(BaseModel):
    order_id: str
    payment_method: PaymentMethod = "cash"


class SessionBillRequest(BaseModel):
    session_id: str
    payment_method: PaymentMethod = "cash"


class UserBillRequest(BaseModel):
    user_id: str
    payment_method: PaymentMethod = "cash"


class BillRequest(BaseModel):
    session_id: str
    user_id: Optional[str] = None


# ---------- Sessions ----------
class SessionEnd(BaseModel):
    payment_method: PaymentMethod = "upi"


# ---------- Admin ----------
class AdminUserAction(BaseModel):
    action: Literal["create", "update", "delete"]
    user_data: Dict[str, Any]


class AnnouncementAction(BaseModel):
    action: Literal["create", "delete"]
    payload: Dict[str, Any] = {}
