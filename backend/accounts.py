"""Accounts and roles: registration, login, profiles and restaurant staff."""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import auth
import isolation
from errors import AuthenticationError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from isolation import Caller
from models import Restaurant, Role, User
from schemas import ProfileUpdate, StaffCreate, UserRegister

logger = logging.getLogger(__name__)

STAFF_ROLES = (Role.STAFF.value, Role.DELIVERY.value)


def _ensure_unique(db: Session, email: Optional[str], username: Optional[str], exclude_id: Optional[int] = None):
    if email:
        query = db.query(User.id).filter(User.email == email.strip().lower())
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ConflictError("Email already registered")
    if username:
        query = db.query(User.id).filter(User.username == username.strip())
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ConflictError("Username already taken")


def _save(db: Session, user: User) -> User:
    try:
        db.add(user)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email or username already exists")
    except Exception:
        db.rollback()
        raise
    db.refresh(user)
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def register(db: Session, data: UserRegister) -> User:
    """Public sign-up. Always creates a customer."""
    _ensure_unique(db, data.email, data.username)
    user = _save(db, User(
        username=data.username,
        email=data.email,
        password=auth.get_password_hash(data.password),
        phone_number=data.phone_number,
        role=Role.CUSTOMER.value,
    ))
    logger.info("Customer %s registered", user.id)
    return user


def login(db: Session, email: str, password: str):
    """Return (token, user) or raise AuthenticationError."""
    user = auth.authenticate_user(db, email, password)
    if not user:
        logger.warning("Failed login for %s", email)
        raise AuthenticationError("Invalid email or password")
    if user.is_misconfigured:
        logger.warning("Account %s (%s) has no restaurant assigned", user.id, user.role)
    return auth.create_user_token(user), user


def _self_or_superadmin(caller: Caller, user_id: int) -> None:
    if caller.account_id != user_id and not caller.is_superadmin:
        raise ForbiddenError("You can only access your own profile")


def get_profile(db: Session, caller: Caller, user_id: int) -> User:
    _self_or_superadmin(caller, user_id)
    return get_user(db, user_id)


def update_profile(db: Session, caller: Caller, user_id: int, data: ProfileUpdate) -> User:
    _self_or_superadmin(caller, user_id)
    user = get_user(db, user_id)

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    _ensure_unique(db, changes.get("email"), changes.get("username"), exclude_id=user.id)
    for key, value in changes.items():
        setattr(user, key, value)
    user = _save(db, user)
    logger.info("Profile %s updated by %s", user_id, caller.account_id)
    return user


def change_password(db: Session, caller: Caller, user_id: int, new_password: str) -> None:
    if caller.account_id != user_id:
        raise ForbiddenError("You can only change your own password")
    user = get_user(db, user_id)
    user.password = auth.get_password_hash(new_password)
    _save(db, user)
    logger.info("Password changed for account %s", user_id)


# ========== Restaurant staff ==========

def create_staff(db: Session, caller: Caller, data: StaffCreate) -> User:
    scope = isolation.require(caller, "staff:manage", data.restaurant_id)
    if data.role == Role.ADMIN.value and not caller.is_superadmin:
        raise ForbiddenError("Only a super-admin can create restaurant admins")
    if scope is None:
        raise ValidationError("restaurant_id is required to create staff")
    if not db.query(Restaurant.id).filter(Restaurant.id == scope).first():
        raise NotFoundError(f"Restaurant {scope} not found")

    _ensure_unique(db, data.email, data.username)
    user = _save(db, User(
        username=data.username,
        email=data.email,
        password=auth.get_password_hash(data.password),
        phone_number=data.phone_number,
        role=data.role,
        restaurant_id=scope,
    ))
    logger.info("%s account %s created in restaurant %s by %s", data.role, user.id, scope, caller.account_id)
    return user


def list_staff(db: Session, caller: Caller, requested_restaurant_id: Optional[int] = None,
               role: Optional[str] = None) -> List[User]:
    scope = isolation.require(caller, "staff:manage", requested_restaurant_id)
    if role is not None and role not in STAFF_ROLES:
        raise ValidationError(f"Role must be one of {list(STAFF_ROLES)}")

    query = db.query(User).filter(User.role.in_([role] if role else STAFF_ROLES))
    query = isolation.apply_scope(query, User.restaurant_id, scope)
    return query.order_by(User.id).all()


def delete_staff(db: Session, caller: Caller, user_id: int) -> None:
    scope = isolation.require(caller, "staff:manage")
    user = get_user(db, user_id)
    if user.role not in STAFF_ROLES:
        raise ForbiddenError("Only staff and delivery accounts can be removed here")
    isolation.ensure_in_scope(scope, user.restaurant_id, "account")
    role = user.role

    try:
        db.delete(user)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Account {user_id} is still referenced by orders or messages")
    logger.info("%s account %s deleted by %s", role, user_id, caller.account_id)
