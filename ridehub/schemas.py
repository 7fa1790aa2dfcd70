from typing import Dict, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import (
    AccountStatus,
    DocStatus,
    DriverStatus,
    MessageStatus,
    MessageType,
    OfficialRouteStatus,
    OrderStatus,
    OrderType,
    Region,
    TicketStatus,
    UserRole,
    VoucherStatus,
    VoucherType,
    WalletLogType,
)


# ------------------------------------------------------------------
# Base class: reads ORM objects, speaks camelCase on the wire
# ------------------------------------------------------------------
class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------
class UserRead(ORMModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: str
    role: UserRole
    status: AccountStatus
    points: int
    driver_status: Optional[DriverStatus] = None
    rejection_reason: Optional[str] = None
    created_at: datetime


# ------------------------------------------------------------------
# Pricing
# ------------------------------------------------------------------
class QuoteRequest(ORMModel):
    pickup: dict
    dropoff: dict
    date: str = ""


class QuoteRead(ORMModel):
    start_region: Region
    end_region: Region
    base_price: int
    order_fee: int
    total_price: int
    currency: str
    is_estimate: bool
    pricing_system: str
    distance_km: Optional[float] = None
    surcharges: Dict[str, int] = {}
    note: str = ""


# ------------------------------------------------------------------
# Official routes
# ------------------------------------------------------------------
class RouteCreate(ORMModel):
    pickup: dict
    dropoff: dict
    date: str
    price_per_seat: int
    total_seats: int = 6
    charter_price: int = 0
    admin_note: Optional[str] = None


class RouteAdvance(ORMModel):
    status: OfficialRouteStatus
    driver_id: Optional[str] = None


class RouteRead(ORMModel):
    id: str
    pickup: dict
    dropoff: dict
    date: str
    status: OfficialRouteStatus
    total_seats: int
    occupied_seats: int
    price_per_seat: int
    charter_price: int
    driver_id: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime


class JoinRequest(ORMModel):
    pax_count: int = 1


# ------------------------------------------------------------------
# Orders
# ------------------------------------------------------------------
class OrderCreate(ORMModel):
    pickup: dict
    dropoff: dict
    price: int
    platform_fee: int
    passengers_count: int = 1
    date: str = ""
    type: OrderType = OrderType.CHARTER
    notes: Optional[str] = None


class OrderRead(ORMModel):
    id: str
    passenger_id: str
    driver_id: Optional[str] = None
    official_route_id: Optional[str] = None
    type: OrderType
    pickup: dict
    dropoff: dict
    status: OrderStatus
    price: int
    platform_fee: int
    passengers_count: int
    date: str
    notes: Optional[str] = None
    is_official: bool
    created_at: datetime
    completed_at: Optional[datetime] = None


# ------------------------------------------------------------------
# Wallet
# ------------------------------------------------------------------
class AmountRequest(ORMModel):
    amount: int


class PointsMove(ORMModel):
    target_user_id: str
    amount: int
    note: str = ""


class VoucherIssue(ORMModel):
    user_id: str
    type: VoucherType
    amount: int
    title: str
    days_valid: int = 30
    description: Optional[str] = None


class WalletLogRead(ORMModel):
    id: str
    type: WalletLogType
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    operator_id: str
    operator_name: str
    amount: int
    note: str
    voucher_id: Optional[str] = None
    created_at: datetime


class VoucherRead(ORMModel):
    id: str
    user_id: str
    type: VoucherType
    title: str
    description: Optional[str] = None
    amount: int
    balance: int
    expiry_date: datetime
    status: VoucherStatus
    issuer_id: str
    created_at: datetime


class TreasuryRead(ORMModel):
    total_points: int


# ------------------------------------------------------------------
# Messaging
# ------------------------------------------------------------------
class ConversationOpen(ORMModel):
    partner_id: str
    order_id: Optional[str] = None


class ConversationRead(ORMModel):
    id: str
    participant_a: str
    participant_b: str
    order_id: Optional[str] = None
    type: str
    last_message: str
    last_sender_id: str
    updated_at: datetime


class MessageRead(ORMModel):
    id: str
    conversation_id: str
    sender_id: str
    real_sender_id: str
    receiver_id: str
    type: MessageType
    content: str
    image_url: str
    order_id: Optional[str] = None
    ticket_id: Optional[str] = None
    is_read: bool
    status: MessageStatus
    upload_error: bool
    is_synced: bool
    is_admin_reply: bool
    created_at: datetime


class BroadcastRequest(ORMModel):
    content: str
    title: Optional[str] = None


class TicketCreate(ORMModel):
    subject: str
    category: str
    order_id: Optional[str] = None


class TicketRead(ORMModel):
    id: str
    creator_id: str
    creator_name: str
    creator_role: UserRole
    category: str
    subject: str
    order_id: Optional[str] = None
    status: TicketStatus
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ------------------------------------------------------------------
# Driver documents
# ------------------------------------------------------------------
class DocumentRead(ORMModel):
    id: str
    user_id: str
    doc_type: str
    url: str
    number: Optional[str] = None
    expiry_date: Optional[str] = None
    status: DocStatus
    reject_reason: Optional[str] = None
    upload_error: bool
    updated_at: datetime
    reviewed_at: Optional[datetime] = None


class DocumentReview(ORMModel):
    status: DocStatus
    reason: Optional[str] = None


class DriverReject(ORMModel):
    reason: str


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------
class CleanupReportRead(ORMModel):
    ghosts_deleted: int
    orders_archived: int
    messages_archived: int
