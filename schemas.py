"""
Database Schemas

Each Pydantic model represents one collection in the record store.
Collection names are fixed (see database.COLLECTIONS):
- User -> "users"
- Product -> "products"
- Category -> "categories"
- Order -> "orders" (tagged by status)
- Coupon -> "coupons"
- Notification -> "notifications"
- Log -> "logs"
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    id: int
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash, never returned")
    username: str
    full_name: str = ""
    address: str = ""
    role: Literal["admin", "user"] = Field("user", description="user | admin")
    balance: int = Field(0, ge=0, description="Coin balance")
    created_at: datetime = Field(default_factory=utcnow)


class PublicProfile(BaseModel):
    """The trimmed user record kept in a session. Has no password field."""
    id: int
    email: str
    username: str
    full_name: str = ""
    address: str = ""
    role: Literal["admin", "user"] = "user"
    balance: int = 0

    @classmethod
    def from_user(cls, user: dict) -> "PublicProfile":
        return cls.model_validate(user)


class Session(BaseModel):
    id: str = Field(..., description="Session id carried in the token as 'sid'")
    user: PublicProfile
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(None, description="Matches the token's exp claim")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


class Category(BaseModel):
    id: int
    name: str = Field(..., description="Category display name")
    description: str = ""
    image: Optional[str] = None
    order: int = Field(0, description="Display position")


class Product(BaseModel):
    id: int
    name: str
    description: str = ""
    price: int = Field(..., ge=0, description="Price in coins")
    image: Optional[str] = None
    category_id: int
    stock: int = Field(0, ge=0, description="Available inventory")
    created_at: datetime = Field(default_factory=utcnow)


class OrderBase(BaseModel):
    id: int
    user_id: int
    product_id: int
    quantity: int = Field(1, ge=1)
    total_price: int = Field(..., ge=0, description="Fixed at creation")
    coupon_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class PendingOrder(OrderBase):
    status: Literal["pending"] = "pending"


class ApprovedOrder(OrderBase):
    status: Literal["approved"] = "approved"


class DeliveredOrder(OrderBase):
    status: Literal["delivered"] = "delivered"


class RejectedOrder(OrderBase):
    status: Literal["rejected"] = "rejected"
    rejection_reason: Optional[str] = None


Order = Annotated[
    Union[PendingOrder, ApprovedOrder, DeliveredOrder, RejectedOrder],
    Field(discriminator="status"),
]
order_adapter = TypeAdapter(Order)

ORDER_STATUSES = ("pending", "approved", "delivered", "rejected")


class Coupon(BaseModel):
    id: int
    code: str
    discount: int = Field(..., ge=0)
    expires_at: datetime
    max_uses: int = Field(..., ge=0)
    used_count: int = Field(0, ge=0)


class Notification(BaseModel):
    id: int
    user_id: int
    message: str
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = False


class Log(BaseModel):
    id: int
    user_id: int
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
