import pytest

from haulhub.errors import (
    AlreadyRegistered,
    DuplicateAccount,
    InvalidCode,
    NotFound,
    RoleNotGranted,
    Unauthorized,
    ValidationError,
)
from haulhub.services import accounts, orders

from conftest import DOCS, next_phone


def test_one_account_per_phone(factory):
    phone = next_phone()
    accounts.register(factory.db, role="client", phone=phone, name="Ann")
    with pytest.raises(DuplicateAccount):
        accounts.register(factory.db, role="executor", phone=phone, name="Ann", vehicle_capacity=5,
                          vehicle_number="X1", **DOCS)


def test_phone_is_normalized_and_checked(factory):
    user = accounts.register(factory.db, role="client", phone="+7 (900) 123-45-67", name="Ann")
    assert user.phone == "+79001234567"
    with pytest.raises(ValidationError):
        accounts.register(factory.db, role="client", phone="12ab", name="Bob")


def test_executor_registration_lists_missing_fields(factory):
    with pytest.raises(ValidationError) as exc:
        accounts.register(factory.db, role="executor", phone=next_phone(), name="Ivan", vehicle_capacity=4)
    assert set(exc.value.details["fields"]) == {
        "vehicle_capacity",
        "vehicle_number",
        "passport_photo_uri",
        "driver_license_photo_uri",
        "vehicle_registration_photo_uri",
    }


def test_new_executor_starts_unverified(factory):
    user = accounts.register(factory.db, role="executor", phone=next_phone(), name="Ivan",
                             vehicle_capacity=10, vehicle_number="B777OP", **DOCS)
    assert user.active_role == "executor"
    assert user.executor_profile.is_verified is False
    assert user.executor_profile.is_working is False


def test_add_and_switch_roles(factory):
    user = factory.client()
    with pytest.raises(RoleNotGranted):
        accounts.switch_active_role(factory.db, user, "executor")
    with pytest.raises(AlreadyRegistered):
        accounts.add_role(factory.db, user, "client")

    accounts.add_role(factory.db, user, "executor", vehicle_capacity=5, vehicle_number="C1", **DOCS)
    assert user.role_names >= {"client", "executor"}
    assert accounts.switch_active_role(factory.db, user, "executor").active_role == "executor"


def test_admin_is_not_self_service(factory):
    with pytest.raises(ValidationError):
        accounts.register(factory.db, role="admin", phone=next_phone(), name="Eve")


def test_password_login(factory):
    accounts.register(factory.db, role="client", email="Ann@Example.com", name="Ann", password="s3cret!")
    assert accounts.authenticate(factory.db, "ann@example.com", "s3cret!").email == "ann@example.com"
    with pytest.raises(Unauthorized):
        accounts.authenticate(factory.db, "ann@example.com", "wrong")


def test_sms_code_flow(factory):
    phone = next_phone()
    accounts.send_sms_code(factory.db, phone)
    with pytest.raises(InvalidCode) as exc:
        accounts.verify_sms_code(factory.db, phone, "0000")
    assert exc.value.details == {"attempts_left": 4}

    assert accounts.verify_sms_code(factory.db, phone, "1234") is None
    # Consumed codes cannot be replayed
    with pytest.raises(InvalidCode):
        accounts.verify_sms_code(factory.db, phone, "1234")


def test_sms_code_for_known_user(factory):
    user = factory.client()
    accounts.send_sms_code(factory.db, user.phone)
    assert accounts.verify_sms_code(factory.db, user.phone, "1234").id == user.id


def test_sms_code_burns_after_max_attempts(factory):
    phone = next_phone()
    accounts.send_sms_code(factory.db, phone)
    for _ in range(5):
        with pytest.raises(InvalidCode):
            accounts.verify_sms_code(factory.db, phone, "9999")
    with pytest.raises(InvalidCode):
        accounts.verify_sms_code(factory.db, phone, "1234")


def test_new_documents_need_review(factory):
    executor = factory.executor(verified=True)
    profile = accounts.set_executor_documents(factory.db, executor, passport_photo_uri="local://documents/new.jpg")
    assert profile.is_verified is False

    admin = factory.admin()
    assert accounts.verify_executor(factory.db, admin, executor.id).is_verified is True


def test_profile_update_rejects_taken_phone(factory):
    first = factory.client()
    second = factory.client()
    with pytest.raises(DuplicateAccount):
        accounts.update_profile(factory.db, second, phone=first.phone)
    updated = accounts.update_profile(factory.db, second, name="Renamed")
    assert updated.name == "Renamed"


def test_rejected_profile_update_changes_nothing(factory):
    executor = factory.executor(name="Driver", capacity=5)
    phone = executor.phone
    with pytest.raises(ValidationError):
        accounts.update_profile(factory.db, executor, name="Renamed", phone=next_phone(), vehicle_capacity=7)
    # A later commit in the same session must not flush the rejected values
    factory.db.commit()
    factory.db.refresh(executor)
    assert executor.name == "Driver"
    assert executor.phone == phone
    assert executor.executor_profile.vehicle_capacity == 5


def test_delete_account_cancels_open_orders(factory):
    client = factory.client()
    executor = factory.on_duty(factory.executor())
    order = factory.order(client)
    orders.accept_order(factory.db, executor.id, order.id)

    accounts.delete_account(factory.db, client)
    factory.db.refresh(order)
    assert order.status == "cancelled"
    assert order.cancel_reason == "account_deleted"
    assert client.phone is None
    assert client.is_active is False
    with pytest.raises(NotFound):
        accounts.get_user(factory.db, client.id)
