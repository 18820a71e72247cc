# models.py
import enum

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from database import Base


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    DELIVERY = "delivery"
    SUPERADMIN = "superadmin"


# roles that must be bound to a restaurant
TENANT_ROLES = frozenset({Role.STAFF.value, Role.ADMIN.value, Role.DELIVERY.value})


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    PREPARING = "Preparing"
    READY = "Ready"
    HANDED_TO_DELIVERY = "Handed to Delivery"
    DELIVERED = "Delivered"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.REJECTED.value,
    OrderStatus.CANCELLED.value,
})


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "Cash on Delivery"
    CREDIT_CARD = "Credit Card"
    DEBIT_CARD = "Debit Card"
    MOBILE_MONEY = "Mobile Money"
    EVC_PLUS = "EVC-PLUS"
    SAHAL = "SAHAL"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"


class MessageType(str, enum.Enum):
    DELAY_REPORT = "delay_report"
    FEEDBACK = "feedback"
    GENERAL = "general"
    REPLY = "reply"


def _check_choice(enum_cls, key, value):
    allowed = [e.value for e in enum_cls]
    if isinstance(value, enum.Enum):
        value = value.value
    if value not in allowed:
        raise ValueError(f"{key} must be one of {allowed}, got {value!r}")
    return value


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    address = Column(String(255), nullable=False, default="")
    phone = Column(String(50), nullable=False, default="")
    image = Column(String(500), nullable=False, default="")
    rating = Column(Float, nullable=False, default=0)
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @validates("name")
    def validate_name(self, key, value):
        if not value or not value.strip():
            raise ValueError("Restaurant name is required")
        return value.strip()

    @validates("rating")
    def validate_rating(self, key, value):
        if value is not None and not 0 <= value <= 5:
            raise ValueError("Rating must be between 0 and 5")
        return value


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)
    phone_number = Column(String(50), nullable=False, default="")
    profile_image = Column(String(500), nullable=False, default="")
    role = Column(String(20), nullable=False, default=Role.CUSTOMER.value)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    restaurant = relationship("Restaurant")

    @validates("role")
    def validate_role(self, key, value):
        return _check_choice(Role, key, value)

    @validates("username", "email")
    def validate_identity(self, key, value):
        if not value or not value.strip():
            raise ValueError(f"{key} is required")
        value = value.strip()
        return value.lower() if key == "email" else value

    @property
    def is_misconfigured(self) -> bool:
        return self.role in TENANT_ROLES and self.restaurant_id is None


class Food(Base):
    __tablename__ = "foods"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Float, nullable=False)
    image = Column(String(500), nullable=False, default="")
    category = Column(String(50), nullable=False, default="")
    rating = Column(Float, nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=0)
    is_popular = Column(Boolean, nullable=False, default=False)
    size = Column(String(50), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    restaurant = relationship("Restaurant")

    @validates("name")
    def validate_name(self, key, value):
        if not value or not value.strip():
            raise ValueError("Food name is required")
        return value.strip()

    @validates("price")
    def validate_price(self, key, value):
        if value is None or value < 0:
            raise ValueError("Price cannot be negative")
        return value

    @validates("quantity")
    def validate_quantity(self, key, value):
        if value is None or value < 0:
            raise ValueError("Quantity cannot be negative")
        return value

    @validates("rating")
    def validate_rating(self, key, value):
        if value is not None and not 0 <= value <= 5:
            raise ValueError("Rating must be between 0 and 5")
        return value


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    total_amount = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False, default=5.0)
    status = Column(String(30), nullable=False, default=OrderStatus.PENDING.value, index=True)
    staff_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    delivery_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejection_reason = Column(String(500), nullable=False, default="")
    payment_method = Column(String(30), nullable=False, default=PaymentMethod.CASH_ON_DELIVERY.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    address = Column(String(255), nullable=False, default="")
    delivery_rating = Column(Integer, nullable=True)
    delivery_review = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    customer = relationship("User", foreign_keys=[user_id])
    staff = relationship("User", foreign_keys=[staff_id])
    delivery = relationship("User", foreign_keys=[delivery_id])
    restaurant = relationship("Restaurant")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    @validates("status")
    def validate_status(self, key, value):
        return _check_choice(OrderStatus, key, value)

    @validates("payment_method")
    def validate_payment_method(self, key, value):
        return _check_choice(PaymentMethod, key, value)

    @validates("payment_status")
    def validate_payment_status(self, key, value):
        return _check_choice(PaymentStatus, key, value)

    @validates("total_amount", "delivery_fee")
    def validate_amount(self, key, value):
        if value is None or value < 0:
            raise ValueError(f"{key} cannot be negative")
        return value

    @validates("delivery_rating")
    def validate_delivery_rating(self, key, value):
        if value is not None and not 1 <= value <= 5:
            raise ValueError("Delivery rating must be between 1 and 5")
        return value


class OrderItem(Base):
    """Snapshot of a food at order time; never follows later catalog edits."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    # plain column, not a foreign key: deleting a food must not touch placed orders
    food_id = Column(Integer, nullable=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    image = Column(String(500), nullable=False, default="")
    size = Column(String(50), nullable=False, default="")

    order = relationship("Order", back_populates="items")

    @validates("quantity")
    def validate_quantity(self, key, value):
        if value is None or value < 1:
            raise ValueError("Quantity must be at least 1")
        return value

    @validates("price")
    def validate_price(self, key, value):
        if value is None or value < 0:
            raise ValueError("Price cannot be negative")
        return value


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    content = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default=MessageType.GENERAL.value)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])

    @validates("content")
    def validate_content(self, key, value):
        if not value or not value.strip():
            raise ValueError("Message content is required")
        return value

    @validates("type")
    def validate_type(self, key, value):
        return _check_choice(MessageType, key, value)
