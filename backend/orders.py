"""
Order ledger: order creation against stock, and the status pipeline.

    Pending -> Accepted -> Preparing -> Ready -> Handed to Delivery -> Delivered
    Pending -> Handed to Delivery          (accepted by a delivery agent)
    Pending -> Rejected

Delivered, Rejected and Cancelled are terminal. Assigning a delivery agent
is tracked separately in Order.delivery_id and never changes the status.

Every mutation loads the order first (NotFoundError), then checks the
caller's restaurant scope (ForbiddenError), then the transition itself
(InvalidTransitionError).
"""
import logging
import os
from collections import OrderedDict
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

import catalog
import isolation
from errors import (
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from isolation import Caller
from models import Food, Order, OrderItem, OrderStatus, PaymentStatus, Role, TERMINAL_STATUSES, User
from redis_client import redis_client
from schemas import OrderCreate

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_FEE = float(os.getenv("DELIVERY_FEE", "5"))
DEFAULT_REJECTION_REASON = "No reason provided"
DEFAULT_DELIVERY_REJECTION_REASON = "Delivery person cannot take this order"

PENDING = OrderStatus.PENDING.value
ACCEPTED = OrderStatus.ACCEPTED.value
PREPARING = OrderStatus.PREPARING.value
READY = OrderStatus.READY.value
HANDED_TO_DELIVERY = OrderStatus.HANDED_TO_DELIVERY.value
DELIVERED = OrderStatus.DELIVERED.value
REJECTED = OrderStatus.REJECTED.value

# statuses reachable through update_status, in pipeline order
PIPELINE = [ACCEPTED, PREPARING, READY, HANDED_TO_DELIVERY, DELIVERED]
UPDATABLE_STATUSES = frozenset({PREPARING, READY, HANDED_TO_DELIVERY, DELIVERED})
IN_FLIGHT_STATUSES = frozenset({ACCEPTED, PREPARING, READY, HANDED_TO_DELIVERY})
CLAIMABLE_STATUSES = frozenset({ACCEPTED, PREPARING, READY})


def accept_target(actor_role: str) -> str:
    """Delivery agents skip the kitchen states."""
    return HANDED_TO_DELIVERY if actor_role == Role.DELIVERY.value else ACCEPTED


def _base_query(db: Session):
    return db.query(Order).options(selectinload(Order.items))


# ========== Creation ==========

def create_order(db: Session, caller: Caller, data: OrderCreate) -> Order:
    if caller.role != Role.CUSTOMER.value:
        raise ForbiddenError("Only customers can place orders")
    if not data.items:
        raise ValidationError("Order must contain at least one item")

    # merge repeated lines so availability is checked on the total
    requested = OrderedDict()
    for item in data.items:
        requested[item.food_id] = requested.get(item.food_id, 0) + item.quantity

    foods = {f.id: f for f in db.query(Food).filter(Food.id.in_(list(requested))).all()}
    for food_id in requested:
        if food_id not in foods:
            raise NotFoundError(f"Food {food_id} not found")

    restaurant_ids = {f.restaurant_id for f in foods.values()}
    if len(restaurant_ids) != 1:
        raise ValidationError("All items in an order must come from the same restaurant")
    restaurant_id = restaurant_ids.pop()
    if data.restaurant_id is not None and data.restaurant_id != restaurant_id:
        raise ValidationError(f"Items do not belong to restaurant {data.restaurant_id}")

    for food_id, quantity in requested.items():
        food = foods[food_id]
        if food.quantity < quantity:
            raise InsufficientStockError(food.id, food.name, food.quantity, quantity)

    subtotal = sum(foods[i.food_id].price * i.quantity for i in data.items)
    try:
        order = Order(
            user_id=caller.account_id,
            restaurant_id=restaurant_id,
            delivery_fee=DEFAULT_DELIVERY_FEE,
            total_amount=round(subtotal + DEFAULT_DELIVERY_FEE, 2),
            payment_method=data.payment_method,
            address=data.address,
            status=PENDING,
        )
        for position, item in enumerate(data.items):
            food = foods[item.food_id]
            order.items.append(OrderItem(
                position=position,
                food_id=food.id,
                name=food.name,
                description=food.description,
                price=food.price,
                quantity=item.quantity,
                image=food.image,
                size=food.size,
            ))
        db.add(order)
        db.flush()

        for food_id, quantity in requested.items():
            if not catalog.decrement_stock(db, food_id, quantity):
                # a concurrent order took the stock after our check
                available = db.query(Food.quantity).filter(Food.id == food_id).scalar() or 0
                raise InsufficientStockError(food_id, foods[food_id].name, available, quantity)

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    redis_client.invalidate_foods_cache()
    logger.info(
        "Order %s created by customer %s in restaurant %s (total %.2f)",
        order.id, caller.account_id, restaurant_id, order.total_amount,
    )
    return order


# ========== Loading ==========

def get_order(db: Session, caller: Caller, order_id: int) -> Order:
    order = _base_query(db).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    if caller.is_customer:
        if order.user_id != caller.account_id:
            raise ForbiddenError("You can only view your own orders")
        return order
    scope = isolation.require(caller, "order:list")
    isolation.ensure_in_scope(scope, order.restaurant_id, "order")
    return order


def _load_for(db: Session, caller: Caller, order_id: int, action: str) -> Order:
    scope = isolation.require(caller, action)
    order = _base_query(db).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    isolation.ensure_in_scope(scope, order.restaurant_id, "order")
    return order


def _commit(db: Session, order: Order) -> Order:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


# ========== Transitions ==========

def accept_order(db: Session, caller: Caller, order_id: int, staff_id: Optional[int] = None) -> Order:
    order = _load_for(db, caller, order_id, "order:accept")
    if order.status != PENDING:
        raise InvalidTransitionError(f"Cannot accept an order in status {order.status}")

    target = accept_target(caller.role)
    if target == HANDED_TO_DELIVERY:
        order.delivery_id = caller.account_id
    else:
        order.staff_id = _resolve_staff(db, order, staff_id) if staff_id else caller.account_id
    order.status = target

    _commit(db, order)
    logger.info("Order %s accepted by %s %s -> %s", order.id, caller.role, caller.account_id, target)
    return order


def _resolve_staff(db: Session, order: Order, staff_id: int) -> int:
    staff = db.query(User).filter(User.id == staff_id).first()
    if not staff:
        raise NotFoundError(f"Staff member {staff_id} not found")
    if staff.role not in (Role.STAFF.value, Role.ADMIN.value) or staff.restaurant_id != order.restaurant_id:
        raise ValidationError(f"User {staff_id} is not staff of restaurant {order.restaurant_id}")
    return staff.id


def reject_order(db: Session, caller: Caller, order_id: int, reason: Optional[str] = None) -> Order:
    order = _load_for(db, caller, order_id, "order:reject")
    if order.status != PENDING:
        raise InvalidTransitionError(f"Cannot reject an order in status {order.status}")

    order.status = REJECTED
    order.rejection_reason = (reason or "").strip() or DEFAULT_REJECTION_REASON

    _commit(db, order)
    logger.info("Order %s rejected by %s: %s", order.id, caller.account_id, order.rejection_reason)
    return order


def update_status(db: Session, caller: Caller, order_id: int, status: str) -> Order:
    if status not in UPDATABLE_STATUSES:
        raise ValidationError("Invalid status update")

    order = _load_for(db, caller, order_id, "order:status")
    if order.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Order is already {order.status}")
    if order.status not in IN_FLIGHT_STATUSES:
        raise InvalidTransitionError(f"Cannot change status of an order in status {order.status}")
    if PIPELINE.index(status) <= PIPELINE.index(order.status):
        raise InvalidTransitionError(f"Cannot move order from {order.status} back to {status}")

    previous = order.status
    order.status = status
    _commit(db, order)
    logger.info("Order %s moved %s -> %s by %s", order.id, previous, status, caller.account_id)
    return order


def agree_delivery(db: Session, caller: Caller, order_id: int) -> Order:
    order = _load_for(db, caller, order_id, "order:delivery")
    if order.status not in CLAIMABLE_STATUSES:
        raise InvalidTransitionError(f"Order in status {order.status} is not available for delivery")
    if order.delivery_id is not None:
        if order.delivery_id == caller.account_id:
            return order
        raise ConflictError(f"Order {order.id} is already assigned to a delivery agent")

    order.delivery_id = caller.account_id
    _commit(db, order)
    logger.info("Order %s claimed for delivery by %s", order.id, caller.account_id)
    return order


def reject_delivery(db: Session, caller: Caller, order_id: int, reason: Optional[str] = None) -> Order:
    """Release the delivery assignment; the order stays in its current status."""
    order = _load_for(db, caller, order_id, "order:delivery")
    if order.status not in CLAIMABLE_STATUSES:
        raise InvalidTransitionError(f"Order in status {order.status} cannot be declined for delivery")
    if (
        caller.role == Role.DELIVERY.value
        and order.delivery_id is not None
        and order.delivery_id != caller.account_id
    ):
        raise ForbiddenError("This order is assigned to another delivery agent")

    order.delivery_id = None
    order.rejection_reason = (reason or "").strip() or DEFAULT_DELIVERY_REJECTION_REASON
    _commit(db, order)
    logger.info("Order %s declined for delivery by %s", order.id, caller.account_id)
    return order


def update_payment_status(db: Session, caller: Caller, order_id: int, payment_status: PaymentStatus) -> Order:
    order = _load_for(db, caller, order_id, "order:payment")
    order.payment_status = payment_status
    _commit(db, order)
    logger.info("Order %s payment status -> %s", order.id, order.payment_status)
    return order


def rate_delivery(db: Session, caller: Caller, order_id: int, rating: int, review: Optional[str] = None) -> Order:
    order = _base_query(db).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    if order.user_id != caller.account_id:
        raise ForbiddenError("You can only rate your own orders")
    if order.status != DELIVERED:
        raise InvalidTransitionError("Only delivered orders can be rated")
    if order.delivery_rating is not None:
        raise ConflictError("This order has already been rated")

    order.delivery_rating = rating
    order.delivery_review = review
    return _commit(db, order)


def delete_order(db: Session, caller: Caller, order_id: int) -> None:
    order = _load_for(db, caller, order_id, "order:delete")
    db.delete(order)
    db.commit()
    logger.info("Order %s deleted by %s", order_id, caller.account_id)


# ========== Queries ==========

def list_pending(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None) -> List[Order]:
    """Pending orders, or claimable deliveries when the caller is a delivery agent."""
    scope = isolation.require(caller, "order:list", requested_restaurant_id)
    query = _base_query(db)
    if caller.role == Role.DELIVERY.value:
        query = query.filter(Order.status.in_(CLAIMABLE_STATUSES), Order.delivery_id.is_(None))
    else:
        query = query.filter(Order.status == PENDING)
    query = isolation.apply_scope(query, Order.restaurant_id, scope)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_managed(db: Session, caller: Caller) -> List[Order]:
    scope = isolation.require(caller, "order:list")
    query = _base_query(db).filter(
        or_(Order.staff_id == caller.account_id, Order.delivery_id == caller.account_id),
        Order.status.in_(IN_FLIGHT_STATUSES),
    )
    query = isolation.apply_scope(query, Order.restaurant_id, scope)
    return query.order_by(Order.updated_at.desc(), Order.id.desc()).all()


def list_for_customer(db: Session, caller: Caller, customer_id: int) -> List[Order]:
    query = _base_query(db).filter(Order.user_id == customer_id)
    if caller.is_customer:
        if caller.account_id != customer_id:
            raise ForbiddenError("You can only view your own orders")
    else:
        scope = isolation.require(caller, "order:list")
        query = isolation.apply_scope(query, Order.restaurant_id, scope)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_orders(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None,
                status: Optional[str] = None) -> List[Order]:
    scope = isolation.require(caller, "order:list", requested_restaurant_id)
    query = isolation.apply_scope(_base_query(db), Order.restaurant_id, scope)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()
