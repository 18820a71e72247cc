"""Messages between customers and a restaurant, optionally about one order."""
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

import isolation
from errors import ForbiddenError, NotFoundError, ValidationError
from isolation import Caller
from models import Message, MessageType, Order, Restaurant, Role, User
from schemas import MessageCreate, ReplyCreate

logger = logging.getLogger(__name__)


def _save(db: Session, message: Message) -> Message:
    try:
        db.add(message)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    return message


def _restaurant_admin_id(db: Session, restaurant_id: int) -> Optional[int]:
    admin = (
        db.query(User.id)
        .filter(User.restaurant_id == restaurant_id, User.role == Role.ADMIN.value)
        .order_by(User.id)
        .first()
    )
    return admin.id if admin else None


def _load_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def create_message(db: Session, caller: Caller, data: MessageCreate) -> Message:
    restaurant_id = data.restaurant_id
    order = None
    if data.order_id is not None:
        order = _load_order(db, data.order_id)
        if caller.is_customer and order.user_id != caller.account_id:
            raise ForbiddenError("You can only send messages about your own orders")
        if restaurant_id is None:
            restaurant_id = order.restaurant_id
        elif restaurant_id != order.restaurant_id:
            raise ValidationError("Order does not belong to the given restaurant")

    if not caller.is_customer:
        scope = isolation.require(caller, "message:tenant", restaurant_id)
        if order is not None:
            isolation.ensure_in_scope(scope, order.restaurant_id, "order")
        if scope is not None:
            restaurant_id = scope

    if restaurant_id is None:
        raise ValidationError("restaurant_id or order_id is required")
    if not db.query(Restaurant.id).filter(Restaurant.id == restaurant_id).first():
        raise NotFoundError(f"Restaurant {restaurant_id} not found")

    message = _save(db, Message(
        sender_id=caller.account_id,
        receiver_id=_restaurant_admin_id(db, restaurant_id),
        restaurant_id=restaurant_id,
        order_id=data.order_id,
        content=data.content,
        type=data.type,
    ))
    logger.info("Message %s (%s) sent by %s to restaurant %s",
                message.id, message.type, caller.account_id, restaurant_id)
    return message


def reply(db: Session, caller: Caller, data: ReplyCreate) -> Message:
    scope = isolation.require(caller, "message:reply", data.restaurant_id)
    if scope is None:
        raise ValidationError("restaurant_id is required to reply")
    if not db.query(User.id).filter(User.id == data.receiver_id).first():
        raise NotFoundError(f"Receiver {data.receiver_id} not found")
    if data.order_id is not None:
        isolation.ensure_in_scope(scope, _load_order(db, data.order_id).restaurant_id, "order")

    message = _save(db, Message(
        sender_id=caller.account_id,
        receiver_id=data.receiver_id,
        restaurant_id=scope,
        order_id=data.order_id,
        content=data.content,
        type=MessageType.REPLY.value,
    ))
    logger.info("Reply %s sent by %s to %s", message.id, caller.account_id, data.receiver_id)
    return message


def list_for_user(db: Session, caller: Caller, user_id: int) -> List[Message]:
    query = db.query(Message).filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
    if caller.is_customer:
        if caller.account_id != user_id:
            raise ForbiddenError("You can only view your own messages")
    else:
        scope = isolation.require(caller, "message:tenant")
        query = isolation.apply_scope(query, Message.restaurant_id, scope)
    return query.order_by(Message.created_at.desc(), Message.id.desc()).all()


def list_for_restaurant(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None) -> List[Message]:
    scope = isolation.require(caller, "message:tenant", requested_restaurant_id)
    query = isolation.apply_scope(db.query(Message), Message.restaurant_id, scope)
    return query.order_by(Message.created_at.desc(), Message.id.desc()).all()


def mark_read(db: Session, caller: Caller, message_id: int) -> Message:
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        raise NotFoundError(f"Message {message_id} not found")

    if message.receiver_id != caller.account_id:
        scope = isolation.require(caller, "message:tenant")
        isolation.ensure_in_scope(scope, message.restaurant_id, "message")

    message.is_read = True
    return _save(db, message)
