"""Restaurant directory. Creation can bundle the restaurant's first admin account."""
import logging
import re
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import auth
import isolation
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from isolation import Caller
from models import Food, Message, Order, Restaurant, Role, User
from redis_client import redis_client
from schemas import RestaurantCreate, RestaurantResponse, RestaurantUpdate

logger = logging.getLogger(__name__)


def list_restaurants(db: Session) -> List[dict]:
    cached = redis_client.get_cached_restaurants()
    if cached is not None:
        return cached

    restaurants = [
        RestaurantResponse.model_validate(r).model_dump(mode="json")
        for r in db.query(Restaurant).order_by(Restaurant.id).all()
    ]
    redis_client.cache_restaurants(restaurants)
    return restaurants


def get_restaurant(db: Session, restaurant_id: int) -> Restaurant:
    restaurant = db.query(Restaurant).filter(Restaurant.id == restaurant_id).first()
    if not restaurant:
        raise NotFoundError(f"Restaurant {restaurant_id} not found")
    return restaurant


def get_my_restaurant(db: Session, caller: Caller) -> Restaurant:
    isolation.require_role(caller, "restaurant:view-own")
    if caller.restaurant_id is None:
        raise ForbiddenError("User is not assigned to a restaurant")
    return get_restaurant(db, caller.restaurant_id)


def default_admin_username(restaurant_name: str) -> str:
    compact = re.sub(r"\s+", "", restaurant_name).lower()
    return f"{compact}_admin"


def ensure_admin_available(db: Session, email: str, username: str) -> None:
    if db.query(User.id).filter(User.email == email.strip().lower()).first():
        raise ConflictError(f"Admin user with email {email} already exists. Please use a unique email.")
    if db.query(User.id).filter(User.username == username).first():
        raise ConflictError(f"Admin username {username} already exists. Please provide a custom username.")


def create_restaurant(db: Session, caller: Caller, data: RestaurantCreate) -> Restaurant:
    isolation.require_role(caller, "restaurant:manage")

    with_admin = bool(data.admin_email or data.admin_password or data.admin_username)
    if with_admin and not (data.admin_email and data.admin_password):
        raise ValidationError("admin_email and admin_password are both required to create the restaurant admin")

    username = data.admin_username or default_admin_username(data.name)
    if with_admin:
        ensure_admin_available(db, data.admin_email, username)

    fields = data.model_dump(include={"name", "address", "phone", "image", "description", "rating"})
    try:
        restaurant = Restaurant(**fields)
        db.add(restaurant)
        db.flush()

        if with_admin:
            db.add(User(
                username=username,
                email=data.admin_email,
                password=auth.get_password_hash(data.admin_password),
                role=Role.ADMIN.value,
                restaurant_id=restaurant.id,
            ))
            db.flush()
        db.commit()
    except IntegrityError as e:
        # the restaurant row goes away with the failed admin
        db.rollback()
        logger.warning("Restaurant creation rolled back: %s", e.orig)
        raise ConflictError("Restaurant admin account could not be created: email or username already exists")
    except Exception:
        db.rollback()
        raise

    db.refresh(restaurant)
    redis_client.invalidate_restaurants_cache()
    logger.info("Restaurant %s (%s) created by %s", restaurant.id, restaurant.name, caller.account_id)
    return restaurant


def update_restaurant(db: Session, caller: Caller, restaurant_id: int, data: RestaurantUpdate) -> Restaurant:
    isolation.require_role(caller, "restaurant:manage")
    restaurant = get_restaurant(db, restaurant_id)
    try:
        for key, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(restaurant, key, value)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(restaurant)
    redis_client.invalidate_restaurants_cache()
    logger.info("Restaurant %s updated by %s", restaurant_id, caller.account_id)
    return restaurant


def delete_restaurant(db: Session, caller: Caller, restaurant_id: int) -> None:
    """
    Deletion never cascades. A restaurant that still owns accounts, foods,
    orders or messages is refused with a conflict instead of leaving them dangling.
    """
    isolation.require_role(caller, "restaurant:manage")
    restaurant = get_restaurant(db, restaurant_id)

    dependents = {
        "accounts": db.query(User).filter(User.restaurant_id == restaurant_id).count(),
        "foods": db.query(Food).filter(Food.restaurant_id == restaurant_id).count(),
        "orders": db.query(Order).filter(Order.restaurant_id == restaurant_id).count(),
        "messages": db.query(Message).filter(Message.restaurant_id == restaurant_id).count(),
    }
    remaining = {k: v for k, v in dependents.items() if v}
    if remaining:
        details = ", ".join(f"{v} {k}" for k, v in remaining.items())
        raise ConflictError(f"Restaurant {restaurant_id} still has {details}; remove them first")

    db.delete(restaurant)
    db.commit()
    redis_client.invalidate_restaurants_cache()
    logger.info("Restaurant %s deleted by %s", restaurant_id, caller.account_id)
