import pytest

import orders
from errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models import Food, Message, Order, OrderStatus, PaymentStatus, Role
from schemas import OrderCreate, OrderItemCreate


def place(db, caller, *lines, **fields):
    items = [OrderItemCreate(food_id=food.id, quantity=qty) for food, qty in lines]
    return orders.create_order(db, caller, OrderCreate(items=items, **fields))


@pytest.fixture
def customer(make_user, as_caller):
    return as_caller(make_user())


@pytest.fixture
def pending(db_session, two_tenants, customer):
    return place(db_session, customer, (two_tenants["a"]["food"], 2))


def stock(db, food):
    return db.query(Food.quantity).filter(Food.id == food.id).scalar()


# ========== Creation ==========

def test_create_order_snapshots_items_and_totals(db_session, two_tenants, customer):
    food = two_tenants["a"]["food"]

    order = place(db_session, customer, (food, 2), address="1 Main St")

    assert order.status == OrderStatus.PENDING.value
    assert order.restaurant_id == two_tenants["a"]["restaurant"].id
    assert order.user_id == customer.account_id
    assert order.total_amount == pytest.approx(12.5 * 2 + orders.DEFAULT_DELIVERY_FEE)
    assert [(i.name, i.price, i.quantity) for i in order.items] == [("Dish A", 12.5, 2)]
    assert stock(db_session, food) == 18


def test_snapshot_is_not_affected_by_catalog_edits(db_session, two_tenants, customer):
    food = two_tenants["a"]["food"]
    order = place(db_session, customer, (food, 1))

    food.price = 99.0
    food.name = "Renamed"
    db_session.commit()

    db_session.expire_all()
    item = orders.get_order(db_session, customer, order.id).items[0]
    assert (item.name, item.price) == ("Dish A", 12.5)


def test_stock_scenario_no_oversell(db_session, make_restaurant, make_food, customer):
    food = make_food(make_restaurant(), quantity=2)

    place(db_session, customer, (food, 2))
    assert stock(db_session, food) == 0

    with pytest.raises(InsufficientStockError) as exc_info:
        place(db_session, customer, (food, 1))

    assert exc_info.value.available == 0
    assert exc_info.value.to_dict()["item"]["food_id"] == food.id
    assert stock(db_session, food) == 0
    assert db_session.query(Order).count() == 1


def test_repeated_lines_are_checked_together(db_session, make_restaurant, make_food, customer):
    food = make_food(make_restaurant(), quantity=3)

    with pytest.raises(InsufficientStockError):
        place(db_session, customer, (food, 2), (food, 2))

    assert stock(db_session, food) == 3
    assert db_session.query(Order).count() == 0


def test_failed_decrement_rolls_back_whole_order(db_session, make_restaurant, make_food, customer, monkeypatch):
    restaurant = make_restaurant()
    first = make_food(restaurant, name="First", quantity=5)
    second = make_food(restaurant, name="Second", quantity=5)

    import catalog
    real_decrement = catalog.decrement_stock

    def racing_decrement(db, food_id, amount):
        if food_id == second.id:
            return False
        return real_decrement(db, food_id, amount)

    monkeypatch.setattr(catalog, "decrement_stock", racing_decrement)

    with pytest.raises(InsufficientStockError):
        place(db_session, customer, (first, 1), (second, 1))

    assert stock(db_session, first) == 5
    assert db_session.query(Order).count() == 0


def test_items_must_share_a_restaurant(db_session, two_tenants, customer):
    with pytest.raises(ValidationError):
        place(db_session, customer, (two_tenants["a"]["food"], 1), (two_tenants["b"]["food"], 1))


def test_requested_restaurant_must_match_items(db_session, two_tenants, customer):
    with pytest.raises(ValidationError):
        place(db_session, customer, (two_tenants["a"]["food"], 1),
              restaurant_id=two_tenants["b"]["restaurant"].id)


def test_unknown_food_and_empty_order(db_session, customer):
    with pytest.raises(NotFoundError):
        orders.create_order(db_session, customer, OrderCreate(items=[OrderItemCreate(food_id=404, quantity=1)]))
    with pytest.raises(ValidationError):
        orders.create_order(db_session, customer, OrderCreate(items=[]))


def test_only_customers_place_orders(db_session, two_tenants, as_caller):
    with pytest.raises(ForbiddenError):
        place(db_session, as_caller(two_tenants["a"]["staff"]), (two_tenants["a"]["food"], 1))


# ========== Transitions ==========

def test_staff_accept_then_pipeline_forward(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])

    order = orders.accept_order(db_session, staff, pending.id)
    assert order.status == "Accepted"
    assert order.staff_id == staff.account_id

    for status in ("Preparing", "Ready", "Handed to Delivery", "Delivered"):
        order = orders.update_status(db_session, staff, order.id, status)
        assert order.status == status


def test_delivery_accept_hands_to_delivery(db_session, two_tenants, pending, as_caller):
    agent = as_caller(two_tenants["a"]["delivery"])

    order = orders.accept_order(db_session, agent, pending.id)

    assert order.status == "Handed to Delivery"
    assert order.delivery_id == agent.account_id
    assert order.staff_id is None


def test_accept_assigns_named_staff_of_same_restaurant(db_session, two_tenants, pending, as_caller):
    admin = as_caller(two_tenants["a"]["admin"])

    with pytest.raises(ValidationError):
        orders.accept_order(db_session, admin, pending.id, staff_id=two_tenants["b"]["staff"].id)

    order = orders.accept_order(db_session, admin, pending.id, staff_id=two_tenants["a"]["staff"].id)
    assert order.staff_id == two_tenants["a"]["staff"].id


def test_reject_records_reason(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])

    order = orders.reject_order(db_session, staff, pending.id, "  ")

    assert order.status == "Rejected"
    assert order.rejection_reason == orders.DEFAULT_REJECTION_REASON


def test_pending_only_reaches_accepted_handed_or_rejected(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])

    for status in ("Preparing", "Ready", "Handed to Delivery", "Delivered"):
        with pytest.raises(InvalidTransitionError):
            orders.update_status(db_session, staff, pending.id, status)
    for status in ("Pending", "Cancelled", "Accepted", "Rejected", "Teleported"):
        with pytest.raises(ValidationError):
            orders.update_status(db_session, staff, pending.id, status)

    db_session.refresh(pending)
    assert pending.status == "Pending"


@pytest.mark.parametrize("terminal", ["Delivered", "Rejected", "Cancelled"])
def test_terminal_orders_do_not_move(db_session, two_tenants, pending, as_caller, terminal):
    staff = as_caller(two_tenants["a"]["staff"])
    agent = as_caller(two_tenants["a"]["delivery"])
    pending.status = terminal
    db_session.commit()

    attempts = [
        lambda: orders.accept_order(db_session, staff, pending.id),
        lambda: orders.reject_order(db_session, staff, pending.id),
        lambda: orders.update_status(db_session, staff, pending.id, "Ready"),
        lambda: orders.agree_delivery(db_session, agent, pending.id),
        lambda: orders.reject_delivery(db_session, agent, pending.id),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidTransitionError):
            attempt()

    db_session.refresh(pending)
    assert pending.status == terminal


def test_status_cannot_go_backwards(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])
    orders.accept_order(db_session, staff, pending.id)
    orders.update_status(db_session, staff, pending.id, "Ready")

    with pytest.raises(InvalidTransitionError):
        orders.update_status(db_session, staff, pending.id, "Preparing")


def test_other_restaurant_cannot_transition(db_session, two_tenants, pending, as_caller):
    staff_b = as_caller(two_tenants["b"]["staff"])

    with pytest.raises(ForbiddenError):
        orders.accept_order(db_session, staff_b, pending.id)
    with pytest.raises(ForbiddenError):
        orders.reject_order(db_session, staff_b, pending.id)

    db_session.refresh(pending)
    assert pending.status == "Pending"


def test_missing_order_is_not_found(db_session, two_tenants, as_caller):
    with pytest.raises(NotFoundError):
        orders.accept_order(db_session, as_caller(two_tenants["a"]["staff"]), 12345)


# ========== Delivery ==========

def test_agree_and_reject_delivery(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])
    agent = as_caller(two_tenants["a"]["delivery"])

    with pytest.raises(InvalidTransitionError):
        orders.agree_delivery(db_session, agent, pending.id)

    orders.accept_order(db_session, staff, pending.id)
    order = orders.agree_delivery(db_session, agent, pending.id)
    assert order.delivery_id == agent.account_id
    assert order.status == "Accepted"
    assert orders.agree_delivery(db_session, agent, pending.id).delivery_id == agent.account_id

    order = orders.reject_delivery(db_session, agent, pending.id)
    assert order.delivery_id is None
    assert order.status == "Accepted"
    assert order.rejection_reason == orders.DEFAULT_DELIVERY_REJECTION_REASON


def test_second_agent_cannot_steal_delivery(db_session, two_tenants, pending, make_user, as_caller):
    restaurant = two_tenants["a"]["restaurant"]
    first = as_caller(two_tenants["a"]["delivery"])
    second = as_caller(make_user(Role.DELIVERY.value, restaurant))
    orders.accept_order(db_session, as_caller(two_tenants["a"]["staff"]), pending.id)
    orders.agree_delivery(db_session, first, pending.id)

    with pytest.raises(ConflictError):
        orders.agree_delivery(db_session, second, pending.id)
    with pytest.raises(ForbiddenError):
        orders.reject_delivery(db_session, second, pending.id)


def test_staff_cannot_claim_delivery(db_session, two_tenants, pending, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])
    orders.accept_order(db_session, staff, pending.id)

    with pytest.raises(ForbiddenError):
        orders.agree_delivery(db_session, staff, pending.id)


# ========== Payment, rating, deletion ==========

def test_payment_status_is_independent_of_order_status(db_session, two_tenants, pending, as_caller):
    order = orders.update_payment_status(db_session, as_caller(two_tenants["a"]["staff"]),
                                         pending.id, PaymentStatus.PAID)
    assert order.payment_status == "Paid"
    assert order.status == "Pending"


def test_rate_delivery_once_after_delivered(db_session, two_tenants, pending, customer, make_user, as_caller):
    with pytest.raises(InvalidTransitionError):
        orders.rate_delivery(db_session, customer, pending.id, 5)

    pending.status = "Delivered"
    db_session.commit()

    with pytest.raises(ForbiddenError):
        orders.rate_delivery(db_session, as_caller(make_user()), pending.id, 5)

    order = orders.rate_delivery(db_session, customer, pending.id, 4, "Quick")
    assert (order.delivery_rating, order.delivery_review) == (4, "Quick")

    with pytest.raises(ConflictError):
        orders.rate_delivery(db_session, customer, pending.id, 1)


def test_delete_order_keeps_messages(db_session, two_tenants, pending, customer, as_caller):
    db_session.add(Message(sender_id=customer.account_id, restaurant_id=pending.restaurant_id,
                           order_id=pending.id, content="Where is it?"))
    db_session.commit()

    with pytest.raises(ForbiddenError):
        orders.delete_order(db_session, as_caller(two_tenants["a"]["staff"]), pending.id)

    orders.delete_order(db_session, as_caller(two_tenants["a"]["admin"]), pending.id)

    assert db_session.query(Order).count() == 0
    message = db_session.query(Message).one()
    db_session.refresh(message)
    assert message.order_id is None


# ========== Queries ==========

def test_tenant_admin_only_sees_own_orders(db_session, two_tenants, customer, as_caller):
    place(db_session, customer, (two_tenants["a"]["food"], 1))
    place(db_session, customer, (two_tenants["b"]["food"], 1))
    admin_a = as_caller(two_tenants["a"]["admin"])
    restaurant_a = two_tenants["a"]["restaurant"].id

    found = orders.list_orders(db_session, admin_a, two_tenants["b"]["restaurant"].id)

    assert found
    assert {o.restaurant_id for o in found} == {restaurant_a}


def test_superadmin_sees_everything_or_requested(db_session, two_tenants, customer, make_user, as_caller):
    place(db_session, customer, (two_tenants["a"]["food"], 1))
    place(db_session, customer, (two_tenants["b"]["food"], 1))
    root = as_caller(make_user(Role.SUPERADMIN.value))

    assert len(orders.list_orders(db_session, root)) == 2
    only_b = orders.list_orders(db_session, root, two_tenants["b"]["restaurant"].id)
    assert [o.restaurant_id for o in only_b] == [two_tenants["b"]["restaurant"].id]


def test_pending_and_claimable_lists(db_session, two_tenants, customer, as_caller):
    staff = as_caller(two_tenants["a"]["staff"])
    agent = as_caller(two_tenants["a"]["delivery"])
    first = place(db_session, customer, (two_tenants["a"]["food"], 1))
    second = place(db_session, customer, (two_tenants["a"]["food"], 1))
    orders.accept_order(db_session, staff, second.id)

    assert [o.id for o in orders.list_pending(db_session, staff)] == [first.id]
    assert [o.id for o in orders.list_pending(db_session, agent)] == [second.id]

    orders.agree_delivery(db_session, agent, second.id)
    assert orders.list_pending(db_session, agent) == []
    assert [o.id for o in orders.list_managed(db_session, agent)] == [second.id]
    assert [o.id for o in orders.list_managed(db_session, staff)] == [second.id]


def test_customer_order_history(db_session, two_tenants, customer, make_user, as_caller):
    order = place(db_session, customer, (two_tenants["a"]["food"], 1))
    stranger = as_caller(make_user())

    assert [o.id for o in orders.list_for_customer(db_session, customer, customer.account_id)] == [order.id]
    with pytest.raises(ForbiddenError):
        orders.list_for_customer(db_session, stranger, customer.account_id)
    with pytest.raises(ForbiddenError):
        orders.get_order(db_session, stranger, order.id)

    staff_b = as_caller(two_tenants["b"]["staff"])
    assert orders.list_for_customer(db_session, staff_b, customer.account_id) == []
    with pytest.raises(ForbiddenError):
        orders.get_order(db_session, staff_b, order.id)
