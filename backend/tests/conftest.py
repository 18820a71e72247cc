"""
Shared fixtures: an in-memory SQLite database with a fresh schema per test,
a FastAPI TestClient bound to it, and factories for restaurants, accounts
and foods. Redis caching is switched off.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

import auth
from database import Base, SessionLocal, engine, get_db
from isolation import Caller
from main import app
from models import Food, Restaurant, Role, User


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


PASSWORD = "secret123"
_hashed_password = None


def hashed_password():
    global _hashed_password
    if _hashed_password is None:
        _hashed_password = auth.get_password_hash(PASSWORD)
    return _hashed_password


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_restaurant(db_session):
    def _make(name="Test Kitchen", **fields):
        restaurant = Restaurant(name=name, **fields)
        db_session.add(restaurant)
        db_session.commit()
        db_session.refresh(restaurant)
        return restaurant
    return _make


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(role=Role.CUSTOMER.value, restaurant=None, username=None, email=None):
        counter["n"] += 1
        username = username or f"{role}{counter['n']}"
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            password=hashed_password(),
            role=role,
            restaurant_id=restaurant.id if restaurant is not None else None,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make


@pytest.fixture
def make_food(db_session):
    def _make(restaurant, name="Burger", price=10.0, quantity=10, **fields):
        food = Food(restaurant_id=restaurant.id, name=name, price=price, quantity=quantity, **fields)
        db_session.add(food)
        db_session.commit()
        db_session.refresh(food)
        return food
    return _make


@pytest.fixture
def as_caller():
    return Caller.from_user


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {auth.create_user_token(user)}"}
    return _headers


@pytest.fixture
def two_tenants(make_restaurant, make_user, make_food):
    """Restaurants A and B, each with an admin, a staff member, a delivery agent and one food."""
    tenants = {}
    for key in ("a", "b"):
        restaurant = make_restaurant(name=f"Restaurant {key.upper()}")
        tenants[key] = {
            "restaurant": restaurant,
            "admin": make_user(Role.ADMIN.value, restaurant, username=f"admin_{key}"),
            "staff": make_user(Role.STAFF.value, restaurant, username=f"staff_{key}"),
            "delivery": make_user(Role.DELIVERY.value, restaurant, username=f"delivery_{key}"),
            "food": make_food(restaurant, name=f"Dish {key.upper()}", price=12.5, quantity=20),
        }
    return tenants
