"""Per-restaurant menu items and their quantity-on-hand."""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

import isolation
from errors import ForbiddenError, NotFoundError, ValidationError
from isolation import Caller
from models import Food, Restaurant
from redis_client import redis_client
from schemas import FoodCreate, FoodResponse, FoodUpdate

logger = logging.getLogger(__name__)


def list_foods(db: Session, restaurant_id: Optional[int] = None, category: Optional[str] = None) -> List[dict]:
    key = redis_client.foods_key(restaurant_id, category)
    cached = redis_client.get_cached_foods(key)
    if cached is not None:
        return cached

    query = db.query(Food)
    if restaurant_id is not None:
        query = query.filter(Food.restaurant_id == restaurant_id)
    if category:
        query = query.filter(Food.category == category)
    foods = [FoodResponse.model_validate(f).model_dump(mode="json") for f in query.order_by(Food.id).all()]

    redis_client.cache_foods(key, foods)
    return foods


def get_food(db: Session, food_id: int) -> Food:
    food = db.query(Food).filter(Food.id == food_id).first()
    if not food:
        raise NotFoundError(f"Food {food_id} not found")
    return food


def create_food(db: Session, caller: Caller, data: FoodCreate) -> Food:
    scope = isolation.require(caller, "food:create", data.restaurant_id)
    if scope is None:
        raise ValidationError("restaurant_id is required to add food")

    if not db.query(Restaurant.id).filter(Restaurant.id == scope).first():
        raise NotFoundError(f"Restaurant {scope} not found")

    fields = data.model_dump(exclude={"restaurant_id"})
    try:
        food = Food(restaurant_id=scope, **fields)
        db.add(food)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(food)

    redis_client.invalidate_foods_cache()
    logger.info("Food %s created in restaurant %s by account %s", food.id, scope, caller.account_id)
    return food


def _load_owned_food(db: Session, caller: Caller, food_id: int, action: str) -> Food:
    scope = isolation.require(caller, action)
    food = get_food(db, food_id)
    isolation.ensure_in_scope(scope, food.restaurant_id, "food")
    return food


def update_food(db: Session, caller: Caller, food_id: int, data: FoodUpdate) -> Food:
    food = _load_owned_food(db, caller, food_id, "food:update")

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    new_restaurant = changes.pop("restaurant_id", None)
    if new_restaurant is not None and new_restaurant != food.restaurant_id:
        if not caller.is_superadmin:
            raise ForbiddenError("Only a super-admin can move food to another restaurant")
        if not db.query(Restaurant.id).filter(Restaurant.id == new_restaurant).first():
            raise NotFoundError(f"Restaurant {new_restaurant} not found")
        changes["restaurant_id"] = new_restaurant

    try:
        for key, value in changes.items():
            setattr(food, key, value)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(food)

    redis_client.invalidate_foods_cache()
    logger.info("Food %s updated by account %s", food_id, caller.account_id)
    return food


def delete_food(db: Session, caller: Caller, food_id: int) -> None:
    food = _load_owned_food(db, caller, food_id, "food:delete")
    db.delete(food)
    db.commit()
    redis_client.invalidate_foods_cache()
    logger.info("Food %s deleted by account %s", food_id, caller.account_id)


def decrement_stock(db: Session, food_id: int, amount: int) -> bool:
    """
    Take `amount` units off the shelf in one conditional UPDATE.

    Returns False (and changes nothing) when fewer than `amount` units are
    on hand. Runs inside the caller's transaction; committing is up to it.
    """
    if amount <= 0:
        raise ValidationError("Quantity must be greater than 0")
    updated = (
        db.query(Food)
        .filter(Food.id == food_id, Food.quantity >= amount)
        .update({Food.quantity: Food.quantity - amount}, synchronize_session=False)
    )
    return updated == 1
