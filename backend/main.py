import logging
import os
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import accounts
import auth
import catalog
import dashboard
import messaging
import models
import orders
import tenants
from database import engine, get_db, init_superadmin, wait_for_db
from errors import AuthenticationError, OrderingError
from isolation import Caller
from redis_client import rate_limit, redis_client
from schemas import (
    DeliveryRating,
    DeliveryReject,
    FoodCreate,
    FoodResponse,
    FoodUpdate,
    MessageCreate,
    MessageResponse,
    OrderAccept,
    OrderCreate,
    OrderReject,
    OrderResponse,
    OrderStatusUpdate,
    PasswordChange,
    PaymentUpdate,
    ProfileUpdate,
    ReplyCreate,
    RestaurantCreate,
    RestaurantResponse,
    RestaurantUpdate,
    StaffCreate,
    UserLogin,
    UserRegister,
    UserResponse,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("food_ordering")


app = FastAPI(title="Food Ordering API")


origins = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost,http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    if not wait_for_db():
        raise RuntimeError("Database is not reachable, refusing to start")

    logger.info("Creating database tables...")
    models.Base.metadata.create_all(bind=engine)
    init_superadmin()
    logger.info("Database initialised")

    if redis_client.is_available():
        logger.info("Redis available")
    else:
        logger.warning("Redis unavailable, caching disabled")


# ========== Error envelope ==========

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ========== Identity ==========

async def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Not authenticated")

    token = authorization.replace("Bearer ", "", 1)
    payload = auth.verify_token(token)
    if not payload:
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id or not str(user_id).isdigit():
        raise AuthenticationError("Invalid token")

    user = db.query(models.User).filter(models.User.id == int(user_id)).first()
    if not user:
        raise AuthenticationError("User not found")
    if user.is_misconfigured:
        logger.warning("Account %s (%s) is not assigned to a restaurant", user.id, user.role)
    return user


def get_caller(current_user: models.User = Depends(get_current_user)) -> Caller:
    return Caller.from_user(current_user)


def _dump(schema, obj):
    return schema.model_validate(obj).model_dump(mode="json")


def _dump_all(schema, objs) -> List[dict]:
    return [_dump(schema, o) for o in objs]


# ========== Service ==========

@app.get("/")
def read_root():
    return {"success": True, "message": "Food Ordering API is working!"}


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running"}


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


# ========== Users ==========

@app.post("/users/register", status_code=201)
def register(user: UserRegister, db: Session = Depends(get_db)):
    created = accounts.register(db, user)
    return {"success": True, "user": _dump(UserResponse, created)}


@app.post("/users/login")
@rate_limit(max_requests=10, window=60, key_prefix="login")
def login(request: Request, credentials: UserLogin, db: Session = Depends(get_db)):
    token, user = accounts.login(db, credentials.email, credentials.password)
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "user": _dump(UserResponse, user),
    }


@app.get("/users/profile/{user_id}")
def get_profile(user_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "user": _dump(UserResponse, accounts.get_profile(db, caller, user_id))}


@app.put("/users/profile/{user_id}")
def update_profile(user_id: int, data: ProfileUpdate, db: Session = Depends(get_db),
                   caller: Caller = Depends(get_caller)):
    user = accounts.update_profile(db, caller, user_id, data)
    return {"success": True, "user": _dump(UserResponse, user)}


@app.put("/users/{user_id}/password")
def change_password(user_id: int, data: PasswordChange, db: Session = Depends(get_db),
                    caller: Caller = Depends(get_caller)):
    accounts.change_password(db, caller, user_id, data.new_password)
    return {"success": True, "message": "Password updated successfully"}


# ========== Foods ==========

@app.get("/foods")
def get_foods(restaurant_id: Optional[int] = None, category: Optional[str] = None, db: Session = Depends(get_db)):
    foods = catalog.list_foods(db, restaurant_id, category)
    return {"success": True, "count": len(foods), "foods": foods}


@app.get("/foods/{food_id}")
def get_food(food_id: int, db: Session = Depends(get_db)):
    return {"success": True, "food": _dump(FoodResponse, catalog.get_food(db, food_id))}


@app.post("/foods", status_code=201)
def create_food(food: FoodCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "food": _dump(FoodResponse, catalog.create_food(db, caller, food))}


@app.put("/foods/{food_id}")
def update_food(food_id: int, food: FoodUpdate, db: Session = Depends(get_db),
                caller: Caller = Depends(get_caller)):
    return {"success": True, "food": _dump(FoodResponse, catalog.update_food(db, caller, food_id, food))}


@app.delete("/foods/{food_id}")
def delete_food(food_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    catalog.delete_food(db, caller, food_id)
    return {"success": True, "message": "Food deleted successfully"}


# ========== Orders ==========

@app.post("/orders", status_code=201)
def create_order(order: OrderCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    created = orders.create_order(db, caller, order)
    return {"success": True, "order": _dump(OrderResponse, created)}


@app.get("/orders")
def get_orders(restaurant_id: Optional[int] = None, status: Optional[str] = None,
               db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    found = orders.list_orders(db, caller, restaurant_id, status)
    return {"success": True, "count": len(found), "orders": _dump_all(OrderResponse, found)}


@app.get("/orders/user/{user_id}")
def get_user_orders(user_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    found = orders.list_for_customer(db, caller, user_id)
    return {"success": True, "count": len(found), "orders": _dump_all(OrderResponse, found)}


@app.get("/orders/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "order": _dump(OrderResponse, orders.get_order(db, caller, order_id))}


@app.delete("/orders/{order_id}")
def delete_order(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    orders.delete_order(db, caller, order_id)
    return {"success": True, "message": "Order deleted successfully"}


@app.patch("/orders/{order_id}/payment")
def update_payment(order_id: int, data: PaymentUpdate, db: Session = Depends(get_db),
                   caller: Caller = Depends(get_caller)):
    order = orders.update_payment_status(db, caller, order_id, data.payment_status)
    return {"success": True, "order": _dump(OrderResponse, order)}


@app.patch("/orders/{order_id}/rating")
def rate_delivery(order_id: int, data: DeliveryRating, db: Session = Depends(get_db),
                  caller: Caller = Depends(get_caller)):
    order = orders.rate_delivery(db, caller, order_id, data.rating, data.review)
    return {"success": True, "order": _dump(OrderResponse, order)}


# ========== Staff order handling ==========

@app.get("/staff/orders/pending")
def get_pending_orders(restaurant_id: Optional[int] = None, db: Session = Depends(get_db),
                       caller: Caller = Depends(get_caller)):
    found = orders.list_pending(db, caller, restaurant_id)
    return {"success": True, "count": len(found), "orders": _dump_all(OrderResponse, found)}


@app.get("/staff/orders/managed")
def get_managed_orders(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    found = orders.list_managed(db, caller)
    return {"success": True, "count": len(found), "orders": _dump_all(OrderResponse, found)}


@app.patch("/staff/orders/{order_id}/accept")
def accept_order(order_id: int, data: Optional[OrderAccept] = None, db: Session = Depends(get_db),
                 caller: Caller = Depends(get_caller)):
    staff_id = data.staff_id if data else None
    order = orders.accept_order(db, caller, order_id, staff_id)
    return {"success": True, "message": f"Order {order.status}", "order": _dump(OrderResponse, order)}


@app.patch("/staff/orders/{order_id}/reject")
def reject_order(order_id: int, data: Optional[OrderReject] = None, db: Session = Depends(get_db),
                 caller: Caller = Depends(get_caller)):
    order = orders.reject_order(db, caller, order_id, data.rejection_reason if data else None)
    return {"success": True, "message": "Order rejected", "order": _dump(OrderResponse, order)}


@app.patch("/staff/orders/{order_id}/status")
def update_order_status(order_id: int, data: OrderStatusUpdate, db: Session = Depends(get_db),
                        caller: Caller = Depends(get_caller)):
    order = orders.update_status(db, caller, order_id, data.status)
    return {"success": True, "message": f"Order status updated to {order.status}",
            "order": _dump(OrderResponse, order)}


@app.patch("/staff/orders/{order_id}/agree-delivery")
def agree_delivery(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    order = orders.agree_delivery(db, caller, order_id)
    return {"success": True, "message": "Delivery accepted", "order": _dump(OrderResponse, order)}


@app.patch("/staff/orders/{order_id}/reject-delivery")
def reject_delivery(order_id: int, data: Optional[DeliveryReject] = None, db: Session = Depends(get_db),
                    caller: Caller = Depends(get_caller)):
    order = orders.reject_delivery(db, caller, order_id, data.reason if data else None)
    return {"success": True, "message": "Delivery declined", "order": _dump(OrderResponse, order)}


@app.get("/staff/stats")
def get_staff_stats(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "stats": dashboard.get_stats(db, caller)}


# ========== Admin dashboard ==========

@app.get("/admin/stats")
def get_admin_stats(restaurant_id: Optional[int] = None, db: Session = Depends(get_db),
                    caller: Caller = Depends(get_caller)):
    return {"success": True, "stats": dashboard.get_stats(db, caller, restaurant_id)}


@app.get("/admin/performance")
def get_performance(restaurant_id: Optional[int] = None, db: Session = Depends(get_db),
                    caller: Caller = Depends(get_caller)):
    return {"success": True, "performance": dashboard.get_performance(db, caller, restaurant_id)}


@app.get("/admin/top-restaurants")
def get_top_restaurants(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "restaurants": dashboard.top_restaurants(db, caller)}


@app.get("/admin/restaurants-with-stats")
def get_restaurants_with_stats(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "restaurants": dashboard.restaurants_with_stats(db, caller)}


# ========== Restaurants ==========

@app.get("/admin/restaurants")
def get_restaurants(db: Session = Depends(get_db)):
    restaurants = tenants.list_restaurants(db)
    return {"success": True, "count": len(restaurants), "restaurants": restaurants}


@app.get("/admin/my-restaurant")
def get_my_restaurant(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "restaurant": _dump(RestaurantResponse, tenants.get_my_restaurant(db, caller))}


@app.get("/admin/restaurants/{restaurant_id}")
def get_restaurant(restaurant_id: int, db: Session = Depends(get_db)):
    return {"success": True, "restaurant": _dump(RestaurantResponse, tenants.get_restaurant(db, restaurant_id))}


@app.post("/admin/restaurants", status_code=201)
def create_restaurant(data: RestaurantCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    restaurant = tenants.create_restaurant(db, caller, data)
    return {"success": True, "restaurant": _dump(RestaurantResponse, restaurant)}


@app.put("/admin/restaurants/{restaurant_id}")
def update_restaurant(restaurant_id: int, data: RestaurantUpdate, db: Session = Depends(get_db),
                      caller: Caller = Depends(get_caller)):
    restaurant = tenants.update_restaurant(db, caller, restaurant_id, data)
    return {"success": True, "restaurant": _dump(RestaurantResponse, restaurant)}


@app.delete("/admin/restaurants/{restaurant_id}")
def delete_restaurant(restaurant_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    tenants.delete_restaurant(db, caller, restaurant_id)
    return {"success": True, "message": "Restaurant deleted successfully"}


# ========== Staff accounts ==========

@app.get("/admin/staff")
def get_staff(restaurant_id: Optional[int] = None, role: Optional[str] = None,
              db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    staff = accounts.list_staff(db, caller, restaurant_id, role)
    return {"success": True, "count": len(staff), "staff": _dump_all(UserResponse, staff)}


@app.post("/admin/staff", status_code=201)
def create_staff(data: StaffCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "user": _dump(UserResponse, accounts.create_staff(db, caller, data))}


@app.delete("/admin/staff/{user_id}")
def delete_staff(user_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    accounts.delete_staff(db, caller, user_id)
    return {"success": True, "message": "Staff member removed"}


# ========== Messages ==========

@app.post("/messages", status_code=201)
def send_message(data: MessageCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "data": _dump(MessageResponse, messaging.create_message(db, caller, data))}


@app.post("/messages/reply", status_code=201)
def send_reply(data: ReplyCreate, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "data": _dump(MessageResponse, messaging.reply(db, caller, data))}


@app.get("/messages/user/{user_id}")
def get_user_messages(user_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    found = messaging.list_for_user(db, caller, user_id)
    return {"success": True, "count": len(found), "data": _dump_all(MessageResponse, found)}


@app.get("/messages/restaurant")
def get_restaurant_messages(restaurant_id: Optional[int] = None, db: Session = Depends(get_db),
                            caller: Caller = Depends(get_caller)):
    found = messaging.list_for_restaurant(db, caller, restaurant_id)
    return {"success": True, "count": len(found), "data": _dump_all(MessageResponse, found)}


@app.patch("/messages/{message_id}/read")
def mark_message_read(message_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return {"success": True, "data": _dump(MessageResponse, messaging.mark_read(db, caller, message_id))}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
