"""
Realtime Relay Models
Notification records, bus event payloads and status snapshots.
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New notification"
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please login again."


class NotificationType(str, Enum):
    """Known notification tags issued by the backend."""
    LOGIN_REQUEST = "login_request"
    LOGIN_APPROVED = "login_approved"
    LOGIN_REJECTED = "login_rejected"
    USER_REGISTRATION = "user_registration"
    USER_REGISTERED = "user_registered"
    REGISTRATION_STATUS = "registration_status"
    NEW_ORDER = "new_order"
    ORDER_STATUS_UPDATED = "order_status_updated"
    CART_UPDATED = "cart_updated"
    PRODUCT_ADDED_TO_CART = "product_added_to_cart"
    ADMIN_NOTIFICATION = "admin_notification"
    SYSTEM_ALERT = "system_alert"
    GENERAL = "general"


class EventType(str, Enum):
    """Bus keys for process-wide events and polled data streams."""
    NEW_NOTIFICATION = "new-notification"
    SHOW_TOAST = "show-toast"
    NOTIFICATION_UPDATED = "notification-updated"
    LOGIN_REQUEST = "login-request"
    SESSION_EXPIRED = "session-expired"
    CATEGORIES = "categories"
    PRODUCTS = "products"
    ORDERS = "orders"
    SLIDERS = "sliders"
    CART = "cart"


class ToastCategory(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


class NotificationRecord(BaseModel):
    """A notification as returned by GET /notifications/user/{id}."""
    id: int
    type: str = NotificationType.GENERAL.value
    title: str = DEFAULT_TITLE
    body: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: Optional[datetime] = None
    user_name: Optional[str] = None

    class Config:
        extra = "ignore"

    @field_validator("type", mode="before")
    @classmethod
    def default_type(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return NotificationType.GENERAL.value
        return str(v)

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_TITLE
        return str(v)

    @field_validator("body", mode="before")
    @classmethod
    def default_body(cls, v):
        return "" if v is None else str(v)

    @field_validator("is_read", mode="before")
    @classmethod
    def default_is_read(cls, v):
        return False if v is None else v

    @field_validator("data", mode="before")
    @classmethod
    def parse_data(cls, v):
        # MySQL stores the payload as a JSON string column
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                logger.warning("Notification payload is not valid JSON, ignoring it")
                return {}
        return v if isinstance(v, dict) else {}

    @property
    def notification_type(self) -> str:
        """Effective type: the column, else the notificationType carried in the payload."""
        if self.type and self.type != NotificationType.GENERAL.value:
            return self.type
        return str(self.data.get("notificationType") or self.type)

    def is_type(self, notification_type: str) -> bool:
        return notification_type in (self.type, self.data.get("notificationType"))

    @property
    def action(self) -> Optional[str]:
        action = self.data.get("action")
        return str(action) if action else None


class Toast(BaseModel):
    """A transient UI notification built from a record."""
    category: ToastCategory
    title: str
    message: str
    duration_seconds: float
    notification_id: Optional[int] = None
    notification_type: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ShowToastEvent(BaseModel):
    notification: NotificationRecord
    toast: Toast


class NotificationUpdatedEvent(BaseModel):
    """Signals "refetch your badge count"; carries nothing else."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class LoginRequestEvent(BaseModel):
    phone_number: Optional[str] = None
    category_ids: List[Any] = Field(default_factory=list)
    notification_id: Optional[int] = None

    @classmethod
    def from_record(cls, record: NotificationRecord) -> "LoginRequestEvent":
        data = record.data
        phone = data.get("phoneNumber") or data.get("userName") or record.user_name
        category_ids = data.get("categoryIds") or []
        if not isinstance(category_ids, list):
            category_ids = [category_ids]
        return cls(
            phone_number=str(phone) if phone is not None else None,
            category_ids=category_ids,
            notification_id=record.id,
        )


class SessionExpiredEvent(BaseModel):
    reason: str = SESSION_EXPIRED_MESSAGE
    status_code: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class DataUpdateEvent(BaseModel):
    """A changed payload for a polled data type (categories, products, ...)."""
    data_type: str
    data: Any = None
    options: Dict[str, Any] = Field(default_factory=dict)
    source: str = "poll"
    action: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class PollerStatus(BaseModel):
    is_running: bool
    authenticated: bool
    profile: str
    interval_seconds: float
    last_unread_count: int
    last_notification_id: int
    processed_count: int
    last_poll_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    consecutive_errors: int = 0


class LoginRequest(BaseModel):
    """Body of POST /session/login."""
    token: str = Field(..., min_length=1, description="Bearer token issued by the backend")
    user_id: str = Field(..., min_length=1, description="Backend user id")


class UnreadCountResponse(BaseModel):
    unreadCount: int


class NotificationListResponse(BaseModel):
    notifications: List[NotificationRecord]
    total: int
