import pytest

import accounts
import auth
from errors import AuthenticationError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import Role, User
from schemas import ProfileUpdate, StaffCreate, UserRegister


def test_register_always_creates_customer(db_session):
    user = accounts.register(db_session, UserRegister(username="alice", email="Alice@Example.com",
                                                      password="secret123"))

    assert user.role == Role.CUSTOMER.value
    assert user.restaurant_id is None
    assert user.email == "alice@example.com"
    assert auth.verify_password("secret123", user.password)


def test_register_rejects_duplicates(db_session, make_user):
    make_user(username="bob", email="bob@example.com")

    with pytest.raises(ConflictError):
        accounts.register(db_session, UserRegister(username="bobby", email="BOB@example.com", password="secret123"))
    with pytest.raises(ConflictError):
        accounts.register(db_session, UserRegister(username="bob", email="new@example.com", password="secret123"))


def test_login_returns_token_for_valid_credentials(db_session, make_user):
    user = make_user(email="carol@example.com")

    token, logged_in = accounts.login(db_session, "carol@example.com", "secret123")

    assert logged_in.id == user.id
    assert auth.verify_token(token)["sub"] == str(user.id)
    with pytest.raises(AuthenticationError):
        accounts.login(db_session, "carol@example.com", "nope")


def test_profile_is_self_or_superadmin(db_session, make_user, as_caller):
    owner = make_user()
    other = as_caller(make_user())
    root = as_caller(make_user(Role.SUPERADMIN.value))

    assert accounts.get_profile(db_session, as_caller(owner), owner.id).id == owner.id
    assert accounts.get_profile(db_session, root, owner.id).id == owner.id
    with pytest.raises(ForbiddenError):
        accounts.get_profile(db_session, other, owner.id)
    with pytest.raises(NotFoundError):
        accounts.get_profile(db_session, root, 999)


def test_update_profile_checks_uniqueness(db_session, make_user, as_caller):
    owner = make_user()
    make_user(username="taken")

    updated = accounts.update_profile(db_session, as_caller(owner), owner.id,
                                      ProfileUpdate(phone_number="555-0100", username=owner.username))
    assert updated.phone_number == "555-0100"

    with pytest.raises(ConflictError):
        accounts.update_profile(db_session, as_caller(owner), owner.id, ProfileUpdate(username="taken"))


def test_change_password_only_for_self(db_session, make_user, as_caller):
    owner = make_user()
    root = as_caller(make_user(Role.SUPERADMIN.value))

    with pytest.raises(ForbiddenError):
        accounts.change_password(db_session, root, owner.id, "another123")

    accounts.change_password(db_session, as_caller(owner), owner.id, "another123")
    db_session.refresh(owner)
    assert auth.verify_password("another123", owner.password)


def test_admin_creates_staff_in_own_restaurant(db_session, two_tenants, as_caller):
    admin_a = as_caller(two_tenants["a"]["admin"])

    user = accounts.create_staff(db_session, admin_a, StaffCreate(
        username="newcook", email="cook@example.com", password="secret123",
        role="staff", restaurant_id=two_tenants["b"]["restaurant"].id,
    ))

    assert user.restaurant_id == two_tenants["a"]["restaurant"].id
    assert user.role == "staff"


def test_only_superadmin_creates_admins(db_session, two_tenants, make_user, as_caller):
    payload = dict(username="boss", email="boss@example.com", password="secret123", role="admin")

    with pytest.raises(ForbiddenError):
        accounts.create_staff(db_session, as_caller(two_tenants["a"]["admin"]), StaffCreate(**payload))

    root = as_caller(make_user(Role.SUPERADMIN.value))
    with pytest.raises(ValidationError):
        accounts.create_staff(db_session, root, StaffCreate(**payload))

    user = accounts.create_staff(db_session, root, StaffCreate(
        restaurant_id=two_tenants["b"]["restaurant"].id, **payload))
    assert (user.role, user.restaurant_id) == ("admin", two_tenants["b"]["restaurant"].id)


def test_staff_cannot_manage_staff(db_session, two_tenants, as_caller):
    with pytest.raises(ForbiddenError):
        accounts.list_staff(db_session, as_caller(two_tenants["a"]["staff"]))


def test_list_staff_is_scoped(db_session, two_tenants, as_caller):
    admin_a = as_caller(two_tenants["a"]["admin"])

    names = {u.username for u in accounts.list_staff(db_session, admin_a)}
    assert names == {"staff_a", "delivery_a"}
    assert [u.username for u in accounts.list_staff(db_session, admin_a, role="delivery")] == ["delivery_a"]
    with pytest.raises(ValidationError):
        accounts.list_staff(db_session, admin_a, role="customer")


def test_delete_staff_respects_scope_and_role(db_session, two_tenants, as_caller):
    admin_a = as_caller(two_tenants["a"]["admin"])

    with pytest.raises(ForbiddenError):
        accounts.delete_staff(db_session, admin_a, two_tenants["b"]["staff"].id)
    with pytest.raises(ForbiddenError):
        accounts.delete_staff(db_session, admin_a, two_tenants["a"]["admin"].id)

    staff_id = two_tenants["a"]["staff"].id
    accounts.delete_staff(db_session, admin_a, staff_id)
    assert db_session.query(User).filter(User.id == staff_id).first() is None
