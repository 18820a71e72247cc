"""
Read-side dashboard projections.

Everything here goes through the same restaurant scope as the order ledger.
Cancelled orders never count towards revenue, items sold or top sellers.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import isolation
from isolation import Caller
from models import Order, OrderItem, OrderStatus, Restaurant, Role, User
from orders import CLAIMABLE_STATUSES, IN_FLIGHT_STATUSES

CANCELLED = OrderStatus.CANCELLED.value
TEAM_ROLES = (Role.STAFF.value, Role.ADMIN.value, Role.DELIVERY.value)
TOP_ITEMS_LIMIT = 5
TOP_RESTAURANTS_LIMIT = 5
PERFORMANCE_DAYS = 7


def _scoped(query, scope):
    return isolation.apply_scope(query, Order.restaurant_id, scope)


def _revenue(db: Session, scope: Optional[int]) -> float:
    query = _scoped(db.query(func.coalesce(func.sum(Order.total_amount), 0.0)), scope)
    total = query.filter(Order.status != CANCELLED).scalar()
    return round(float(total or 0), 2)


def get_stats(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None) -> dict:
    scope = isolation.require(caller, "dashboard:view", requested_restaurant_id)

    total_orders = _scoped(db.query(func.count(Order.id)), scope).scalar()
    status_counts = {s.value: 0 for s in OrderStatus}
    for status, count in _scoped(db.query(Order.status, func.count(Order.id)), scope).group_by(Order.status):
        status_counts[status] = count

    unique_customers = _scoped(db.query(func.count(func.distinct(Order.user_id))), scope).scalar()
    total_revenue = _revenue(db, scope)
    counted_orders = total_orders - status_counts[CANCELLED]

    items = _scoped(db.query(OrderItem).join(Order, OrderItem.order_id == Order.id), scope)
    items = items.filter(Order.status != CANCELLED)
    items_sold = items.with_entities(func.coalesce(func.sum(OrderItem.quantity), 0)).scalar()

    top_items = (
        items.with_entities(
            OrderItem.name,
            func.count(OrderItem.id).label("orders"),
            func.sum(OrderItem.quantity).label("quantity"),
            func.sum(OrderItem.price * OrderItem.quantity).label("revenue"),
        )
        .group_by(OrderItem.name)
        .order_by(func.sum(OrderItem.quantity).desc(), OrderItem.name)
        .limit(TOP_ITEMS_LIMIT)
        .all()
    )

    pending_deliveries = _scoped(db.query(func.count(Order.id)), scope).filter(
        Order.status.in_(CLAIMABLE_STATUSES), Order.delivery_id.is_(None)
    ).scalar()
    staff_count = isolation.apply_scope(
        db.query(func.count(User.id)).filter(User.role.in_(TEAM_ROLES)), User.restaurant_id, scope
    ).scalar()

    return {
        "restaurant_id": scope,
        "total_orders": total_orders,
        "total_customers": unique_customers,
        "total_revenue": total_revenue,
        "ongoing_orders": sum(status_counts[s] for s in IN_FLIGHT_STATUSES) + status_counts[OrderStatus.PENDING.value],
        "status_counts": status_counts,
        "pending_deliveries": pending_deliveries,
        "total_delivered": status_counts[OrderStatus.DELIVERED.value],
        "total_items_sold": int(items_sold or 0),
        "avg_order_value": round(total_revenue / counted_orders, 2) if counted_orders else 0,
        "top_selling_items": [
            {
                "name": row.name,
                "total_orders": row.orders,
                "total_quantity": int(row.quantity or 0),
                "total_revenue": round(float(row.revenue or 0), 2),
            }
            for row in top_items
        ],
        "total_staff": staff_count,
        "total_restaurants": db.query(func.count(Restaurant.id)).scalar() if scope is None else 1,
    }


def _as_utc_date(value: datetime):
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def get_performance(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None,
                    now: Optional[datetime] = None) -> List[dict]:
    """Orders and revenue per day for the last seven days, oldest first."""
    scope = isolation.require(caller, "dashboard:view", requested_restaurant_id)

    today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
    days = [today - timedelta(days=offset) for offset in range(PERFORMANCE_DAYS - 1, -1, -1)]
    start = datetime.combine(days[0], datetime.min.time())

    buckets = {day: {"orders": 0, "revenue": 0.0} for day in days}
    rows = _scoped(db.query(Order.created_at, Order.status, Order.total_amount), scope)
    for created_at, status, amount in rows.filter(Order.created_at >= start):
        if created_at is None:
            continue
        bucket = buckets.get(_as_utc_date(created_at))
        if bucket is None:
            continue
        bucket["orders"] += 1
        if status != CANCELLED:
            bucket["revenue"] += amount

    return [
        {
            "date": day.isoformat(),
            "day": day.strftime("%a"),
            "orders": buckets[day]["orders"],
            "revenue": round(buckets[day]["revenue"], 2),
        }
        for day in days
    ]


def top_restaurants(db: Session, caller: Caller, limit: int = TOP_RESTAURANTS_LIMIT) -> List[dict]:
    isolation.require_role(caller, "restaurant:manage")
    rows = (
        db.query(
            Restaurant.id,
            Restaurant.name,
            Restaurant.image,
            func.count(Order.id).label("orders"),
            func.sum(Order.total_amount).label("revenue"),
        )
        .join(Order, Order.restaurant_id == Restaurant.id)
        .filter(Order.status != CANCELLED)
        .group_by(Restaurant.id, Restaurant.name, Restaurant.image)
        .order_by(func.count(Order.id).desc(), Restaurant.id)
        .limit(limit)
        .all()
    )
    return [
        {
            "id": row.id,
            "name": row.name,
            "image": row.image,
            "total_orders": row.orders,
            "total_revenue": round(float(row.revenue or 0), 2),
        }
        for row in rows
    ]


def restaurants_with_stats(db: Session, caller: Caller) -> List[dict]:
    isolation.require_role(caller, "restaurant:manage")
    result = []
    for restaurant in db.query(Restaurant).order_by(Restaurant.id).all():
        placed = db.query(Order).filter(Order.restaurant_id == restaurant.id)
        result.append({
            "id": restaurant.id,
            "name": restaurant.name,
            "address": restaurant.address,
            "phone": restaurant.phone,
            "image": restaurant.image,
            "description": restaurant.description,
            "rating": restaurant.rating,
            "stats": {
                "total_orders": placed.count(),
                "total_revenue": _revenue(db, restaurant.id),
                "total_customers": placed.with_entities(func.count(func.distinct(Order.user_id))).scalar(),
                "total_staff": db.query(func.count(User.id)).filter(
                    User.restaurant_id == restaurant.id, User.role == Role.STAFF.value
                ).scalar(),
            },
        })
    return result
