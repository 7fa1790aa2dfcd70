import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field, UniqueConstraint


TZDateTime = DateTime(timezone=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class UserRole(str, Enum):
    PASSENGER = "PASSENGER"
    DRIVER = "DRIVER"
    ADMIN_SUPER = "ADMIN_SUPER"
    ADMIN_CS = "ADMIN_CS"
    ADMIN_DB = "ADMIN_DB"


ADMIN_ROLES = frozenset({UserRole.ADMIN_SUPER, UserRole.ADMIN_CS, UserRole.ADMIN_DB})


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"
    PENDING = "PENDING"


class DriverStatus(str, Enum):
    PENDING_DOCS = "PENDING_DOCS"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DocStatus(str, Enum):
    MISSING = "MISSING"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    WAITING_FOR_DRIVER = "WAITING_FOR_DRIVER"
    ON_THE_WAY = "ON_THE_WAY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    LOCKED = "LOCKED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
DRIVER_BOUND_STATUSES = frozenset({OrderStatus.ACCEPTED, OrderStatus.ON_THE_WAY, OrderStatus.COMPLETED})


class OrderType(str, Enum):
    CARPOOL = "CARPOOL"
    CHARTER = "CHARTER"


class OfficialRouteStatus(str, Enum):
    COLLECTING = "COLLECTING"
    CONFIRMED = "CONFIRMED"
    DISPATCHING = "DISPATCHING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class WalletLogType(str, Enum):
    MINT = "MINT"
    GRANT = "GRANT"
    PURCHASE = "PURCHASE"
    TRANSFER = "TRANSFER"
    VOUCHER_ISSUE = "VOUCHER_ISSUE"


class VoucherType(str, Enum):
    DRIVER_FEE = "DRIVER_FEE"
    RIDE_DISCOUNT = "RIDE_DISCOUNT"


class VoucherStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    SYSTEM = "SYSTEM"


class MessageStatus(str, Enum):
    UPLOADING = "uploading"
    SENT = "sent"


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    RESOLVED = "RESOLVED"


class Region(str, Enum):
    HK_ISLAND = "HK_ISLAND"
    HK_KOWLOON = "HK_KOWLOON"
    HK_NEW_TERRITORIES = "HK_NEW_TERRITORIES"
    HK_AIRPORT = "HK_AIRPORT"
    HK_DISNEY = "HK_DISNEY"
    SZ_BAY_PORT = "SZ_BAY_PORT"
    SZ_CITY_MAIN = "SZ_CITY_MAIN"
    SZ_BAOAN_WEST = "SZ_BAOAN_WEST"
    GZ_CITY = "GZ_CITY"
    GZ_REMOTE = "GZ_REMOTE"
    ZH_CITY = "ZH_CITY"
    MO_MACAU = "MO_MACAU"
    DG_CITY = "DG_CITY"
    HZ_CITY = "HZ_CITY"
    UNKNOWN = "UNKNOWN"


# sender id used for every admin-authored message
SYSTEM_ADMIN_ID = "SYSTEM_ADMIN"
BROADCAST_RECEIVER_ID = "ALL"
TREASURY_ID = "platform_wallet"


class User(SQLModel, table=True):
    __tablename__ = "users"
    id: str = Field(default_factory=new_id, primary_key=True)
    phone: str = ""
    # NULL for accounts that never signed in with an address
    email: Optional[str] = Field(default=None, unique=True)
    name: str = ""
    role: UserRole = UserRole.PASSENGER
    status: AccountStatus = AccountStatus.ACTIVE
    points: int = 0
    driver_status: Optional[DriverStatus] = None
    rejection_reason: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class Treasury(SQLModel, table=True):
    __tablename__ = "platform_wallet"
    id: str = Field(default=TREASURY_ID, primary_key=True)
    total_points: int = 0
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class OfficialRoute(SQLModel, table=True):
    __tablename__ = "official_routes"
    id: str = Field(default_factory=new_id, primary_key=True)
    pickup: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    dropoff: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    date: str = ""
    status: OfficialRouteStatus = OfficialRouteStatus.COLLECTING
    total_seats: int = 6
    occupied_seats: int = 0
    price_per_seat: int = 0
    charter_price: int = 0
    driver_id: Optional[str] = Field(default=None, foreign_key="users.id")
    admin_note: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    id: str = Field(default_factory=new_id, primary_key=True)
    passenger_id: str = Field(foreign_key="users.id", index=True)
    driver_id: Optional[str] = Field(default=None, foreign_key="users.id", index=True)
    official_route_id: Optional[str] = Field(default=None, foreign_key="official_routes.id", index=True)
    type: OrderType = OrderType.CHARTER
    pickup: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    dropoff: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    price: int = 0
    platform_fee: int = 0
    passengers_count: int = 1
    date: str = ""
    notes: Optional[str] = None
    is_official: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime, index=True)
    completed_at: Optional[datetime] = Field(default=None, sa_type=TZDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=TZDateTime)


class WalletLog(SQLModel, table=True):
    __tablename__ = "wallet_logs"
    id: str = Field(default_factory=new_id, primary_key=True)
    type: WalletLogType
    user_id: Optional[str] = Field(default=None, index=True)
    user_name: Optional[str] = None
    operator_id: str
    operator_name: str = ""
    amount: int
    note: str = ""
    voucher_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime, index=True)


class Voucher(SQLModel, table=True):
    __tablename__ = "vouchers"
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    type: VoucherType
    title: str
    description: Optional[str] = None
    amount: int
    balance: int
    expiry_date: datetime = Field(sa_type=TZDateTime)
    status: VoucherStatus = VoucherStatus.ACTIVE
    issuer_id: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("participant_a", "participant_b"),)
    id: str = Field(default_factory=new_id, primary_key=True)
    # participants are stored sorted so a pair has one stable key
    participant_a: str = Field(index=True)
    participant_b: str = Field(index=True)
    order_id: Optional[str] = Field(default=None, index=True)
    type: str = "direct"
    last_message: str = ""
    last_sender_id: str = ""
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime, index=True)


class Message(SQLModel, table=True):
    __tablename__ = "messages"
    id: str = Field(default_factory=new_id, primary_key=True)
    conversation_id: str = Field(foreign_key="conversations.id", index=True)
    sender_id: str = Field(index=True)
    real_sender_id: str
    receiver_id: str = Field(index=True)
    type: MessageType = MessageType.TEXT
    content: str = ""
    image_url: str = ""
    order_id: Optional[str] = None
    ticket_id: Optional[str] = None
    is_read: bool = False
    status: MessageStatus = MessageStatus.SENT
    upload_error: bool = False
    is_synced: bool = True
    is_admin_reply: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime, index=True)


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"
    id: str = Field(default_factory=new_id, primary_key=True)
    creator_id: str = Field(index=True)
    creator_name: str = ""
    creator_role: UserRole
    category: str
    subject: str
    order_id: Optional[str] = None
    status: TicketStatus = TicketStatus.OPEN
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class DriverDocument(SQLModel, table=True):
    __tablename__ = "driver_documents"
    __table_args__ = (UniqueConstraint("user_id", "doc_type"),)
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    doc_type: str
    url: str = ""
    number: Optional[str] = None
    expiry_date: Optional[str] = None
    status: DocStatus = DocStatus.MISSING
    reject_reason: Optional[str] = None
    upload_error: bool = False
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=TZDateTime)


class PriceRule(SQLModel, table=True):
    __tablename__ = "price_rules"
    __table_args__ = (UniqueConstraint("start_region", "end_region"),)
    id: str = Field(default_factory=new_id, primary_key=True)
    start_region: Region
    end_region: Region
    base_price: int
    order_fee: int = 0


class LocationKeyword(SQLModel, table=True):
    __tablename__ = "location_keywords"
    id: str = Field(default_factory=new_id, primary_key=True)
    keyword: str
    region_id: Region


class ArchivedOrder(SQLModel, table=True):
    __tablename__ = "archive_orders"
    id: str = Field(primary_key=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    original_created_at: datetime = Field(sa_type=TZDateTime)
    archived_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)


class ArchivedMessage(SQLModel, table=True):
    __tablename__ = "archive_messages"
    id: str = Field(primary_key=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    original_created_at: datetime = Field(sa_type=TZDateTime)
    archived_at: datetime = Field(default_factory=utcnow, sa_type=TZDateTime)
