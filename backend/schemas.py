from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import MessageType, PaymentMethod, PaymentStatus, Role


def _not_blank(v: str, what: str) -> str:
    if not v or len(v.strip()) == 0:
        raise ValueError(f"{what} cannot be empty")
    return v.strip()


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ========== Accounts ==========

class UserRegister(BaseModel):
    username: str
    email: EmailStr
    password: str
    phone_number: str = ""

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = _not_blank(v, "Username")
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Username cannot exceed 50 characters")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password cannot be empty")
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class StaffCreate(UserRegister):
    role: str = Role.STAFF.value
    restaurant_id: Optional[int] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        allowed = (Role.STAFF.value, Role.DELIVERY.value, Role.ADMIN.value)
        if v not in allowed:
            raise ValueError(f"Role must be one of {list(allowed)}")
        return v


class UserLogin(BaseModel):
    email: str
    password: str


class UserResponse(ORMModel):
    id: int
    username: str
    email: str
    phone_number: str
    profile_image: str
    role: str
    restaurant_id: Optional[int] = None


class ProfileUpdate(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    profile_image: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = _not_blank(v, "Username")
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        return v


class PasswordChange(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password cannot be empty")
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


# ========== Restaurants ==========

class RestaurantBase(BaseModel):
    name: str
    address: str = ""
    phone: str = ""
    image: str = ""
    description: str = ""
    rating: float = Field(default=0, ge=0, le=5)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = _not_blank(v, "Restaurant name")
        if len(v) > 100:
            raise ValueError("Restaurant name cannot exceed 100 characters")
        return v


class RestaurantCreate(RestaurantBase):
    admin_email: Optional[EmailStr] = None
    admin_password: Optional[str] = None
    admin_username: Optional[str] = None


class RestaurantUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    image: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)


class RestaurantResponse(ORMModel):
    id: int
    name: str
    address: str
    phone: str
    image: str
    description: str
    rating: float


# ========== Foods ==========

class FoodCreate(BaseModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    image: str = ""
    category: str = ""
    quantity: int = Field(default=0, ge=0)
    is_popular: bool = False
    size: str = ""
    rating: float = Field(default=0, ge=0, le=5)
    restaurant_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = _not_blank(v, "Food name")
        if len(v) > 100:
            raise ValueError("Food name cannot exceed 100 characters")
        return v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: float) -> float:
        return round(v, 2)


class FoodUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    is_popular: Optional[bool] = None
    size: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    restaurant_id: Optional[int] = None


class FoodResponse(ORMModel):
    id: int
    restaurant_id: int
    name: str
    description: str
    price: float
    image: str
    category: str
    rating: float
    quantity: int
    is_popular: bool
    size: str


# ========== Orders ==========

class OrderItemCreate(BaseModel):
    food_id: int
    quantity: int

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class OrderCreate(BaseModel):
    items: List[OrderItemCreate]
    restaurant_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY
    address: str = ""


class OrderItemResponse(ORMModel):
    food_id: Optional[int] = None
    name: str
    description: str
    price: float
    quantity: int
    image: str
    size: str


class OrderResponse(ORMModel):
    id: int
    user_id: int
    restaurant_id: int
    items: List[OrderItemResponse]
    total_amount: float
    delivery_fee: float
    status: str
    staff_id: Optional[int] = None
    delivery_id: Optional[int] = None
    rejection_reason: str
    payment_method: str
    payment_status: str
    address: str
    delivery_rating: Optional[int] = None
    delivery_review: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderAccept(BaseModel):
    staff_id: Optional[int] = None


class OrderReject(BaseModel):
    rejection_reason: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str


class DeliveryReject(BaseModel):
    reason: Optional[str] = None


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus


class DeliveryRating(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None


# ========== Messages ==========

class MessageCreate(BaseModel):
    content: str
    restaurant_id: Optional[int] = None
    order_id: Optional[int] = None
    type: MessageType = MessageType.GENERAL

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _not_blank(v, "Message content")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: MessageType) -> MessageType:
        if v == MessageType.REPLY:
            raise ValueError("Use the reply endpoint to send replies")
        return v


class ReplyCreate(BaseModel):
    receiver_id: int
    content: str
    restaurant_id: Optional[int] = None
    order_id: Optional[int] = None

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _not_blank(v, "Message content")


class MessageResponse(ORMModel):
    id: int
    sender_id: int
    receiver_id: Optional[int] = None
    restaurant_id: int
    order_id: Optional[int] = None
    content: str
    type: str
    is_read: bool
    created_at: Optional[datetime] = None

