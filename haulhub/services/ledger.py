"""
Payments and executor balances.

Every balance change is a SQL-side increment paired with one
BalanceTransaction row whose ``idempotency_key`` is unique, so a retried or
concurrent request can never settle the same thing twice.
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    AlreadyPaid,
    Forbidden,
    GatewayError,
    InsufficientFunds,
    InvalidOrderState,
    NotFound,
    ValidationError,
)
from ..logging import get_logger
from ..models.models import (
    BalanceTransaction,
    Deposit,
    ExecutorProfile,
    Order,
    Payment,
    SavedPaymentMethod,
    User,
    WithdrawalRequest,
)
from ..payments.gateway import PaymentGateway, get_gateway
from .audit import create_audit_log
from .notifications import create_notification, notify_order_event
from .order_states import PAYABLE, OrderStatus, check_transition, values
from .time_rules import utcnow


log = get_logger(__name__)

CENTS = Decimal("0.01")
PAYMENT_METHODS = ("card", "saved_card", "cash")


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def commission_for(amount: Decimal) -> Decimal:
    return (Decimal(amount) * settings.commission_percent / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _apply_balance(
    db: Session,
    executor_id,
    delta: Decimal,
    kind: str,
    idempotency_key: str,
    order_id=None,
    reference_id=None,
    require_funds: bool = False,
) -> BalanceTransaction:
    """Increment the balance in SQL and write the matching ledger line. Caller commits."""
    stmt = update(ExecutorProfile).where(ExecutorProfile.user_id == executor_id)
    if require_funds:
        stmt = stmt.where(ExecutorProfile.balance + delta >= 0)
    result = db.execute(
        stmt.values(balance=ExecutorProfile.balance + delta).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if require_funds:
            raise InsufficientFunds()
        raise NotFound("Executor not found")

    balance_after = db.query(ExecutorProfile.balance).filter(ExecutorProfile.user_id == executor_id).scalar()
    entry = BalanceTransaction(
        executor_id=executor_id,
        kind=kind,
        amount=delta,
        balance_after=balance_after,
        order_id=order_id,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    db.flush()
    return entry


def _refresh_profile(db: Session, executor_id) -> None:
    profile = db.query(ExecutorProfile).filter(ExecutorProfile.user_id == executor_id).first()
    if profile is not None:
        db.refresh(profile)


# Order payment

def pay_order(
    db: Session,
    client: User,
    order_id,
    method: str,
    card_token: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """
    Settle a finished order.

    Card / saved card: the executor is credited price minus commission.
    Cash: the executor already holds the money, so only the commission is
    debited, even if that takes the balance below zero.
    """
    now = now or utcnow()
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    if order.client_id != client.id:
        raise Forbidden("Only the order's client may pay for it")
    if order.status == OrderStatus.PAID.value or order.payment is not None:
        raise AlreadyPaid()
    if order.status not in values(PAYABLE):
        raise InvalidOrderState(f"Order in '{order.status}' cannot be paid", details={"status": order.status})
    if method not in PAYMENT_METHODS:
        raise ValidationError.for_fields({"method": f"must be one of {list(PAYMENT_METHODS)}"})
    if method == "saved_card":
        saved = (
            db.query(SavedPaymentMethod)
            .filter(SavedPaymentMethod.user_id == client.id, SavedPaymentMethod.card_token == card_token)
            .first()
        )
        if not card_token or saved is None:
            raise ValidationError.for_fields({"card_token": "unknown saved card"})
    if idempotency_key:
        reused = (
            db.query(Payment.id)
            .filter(Payment.client_id == client.id, Payment.idempotency_key == idempotency_key,
                    Payment.order_id != order.id)
            .first()
        )
        if reused is not None:
            raise ValidationError.for_fields({"idempotency_key": "already used for another order"})
    check_transition(order.status, OrderStatus.PAID)

    amount = to_money(order.price)
    commission = commission_for(amount)
    if method == "cash":
        delta, kind = -commission, "commission"
    else:
        (gateway or get_gateway()).charge(
            amount, card_token, idempotency_key=f"order:{order.id}:charge", description=f"Order {order.id}"
        )
        delta, kind = amount - commission, "settlement"

    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(values(PAYABLE)))
        .values(status=OrderStatus.PAID.value, paid_at=now, payment_method=method)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(order)
        if order.status == OrderStatus.PAID.value:
            raise AlreadyPaid()
        raise InvalidOrderState(f"Order in '{order.status}' cannot be paid", details={"status": order.status})

    payment = Payment(
        order_id=order.id,
        client_id=client.id,
        executor_id=order.executor_id,
        amount=amount,
        commission=commission,
        method=method,
        card_token=card_token if method != "cash" else None,
        status="completed",
        idempotency_key=idempotency_key,
    )
    try:
        db.add(payment)
        db.flush()
        _apply_balance(db, order.executor_id, delta, kind, f"order:{order.id}:settlement",
                       order_id=order.id, reference_id=payment.id)
    except IntegrityError:
        db.rollback()
        raise AlreadyPaid()

    db.refresh(order)
    create_audit_log(db, "order", order.id, "PAY", actor_id=client.id, actor_role="client", source="api",
                     context={"method": method, "amount": amount, "commission": commission, "executor_delta": delta})
    notify_order_event(db, order.executor_id, "paid", order)
    db.commit()
    _refresh_profile(db, order.executor_id)
    log.info("order_paid", order_id=str(order.id), method=method, amount=str(amount), commission=str(commission))
    return payment


# Saved cards

def list_payment_methods(db: Session, user: User) -> List[SavedPaymentMethod]:
    return (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.user_id == user.id)
        .order_by(SavedPaymentMethod.created_at.desc())
        .all()
    )


def add_payment_method(db: Session, user: User, card_token: str, card_last4: str, card_type: Optional[str] = None) -> SavedPaymentMethod:
    errors = {}
    if not (card_token or "").strip():
        errors["card_token"] = "required"
    if not (card_last4 or "").isdigit() or len(card_last4) != 4:
        errors["card_last4"] = "expected 4 digits"
    if errors:
        raise ValidationError.for_fields(errors)
    existing = db.query(SavedPaymentMethod).filter(SavedPaymentMethod.card_token == card_token).first()
    if existing is not None:
        if existing.user_id != user.id:
            raise ValidationError.for_fields({"card_token": "already in use"})
        return existing
    method = SavedPaymentMethod(user_id=user.id, card_token=card_token, card_last4=card_last4, card_type=card_type)
    db.add(method)
    db.commit()
    db.refresh(method)
    return method


def remove_payment_method(db: Session, user: User, method_id) -> None:
    method = (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.id == method_id, SavedPaymentMethod.user_id == user.id)
        .first()
    )
    if not method:
        raise NotFound("Payment method not found")
    db.delete(method)
    db.commit()


# Executor balance

def _check_amount(amount, minimum: Decimal) -> Decimal:
    try:
        value = to_money(amount)
    except ArithmeticError:
        raise ValidationError.for_fields({"amount": "must be a number"})
    if value < minimum:
        raise ValidationError.for_fields({"amount": f"must be at least {minimum}"})
    return value


def deposit_to_executor(db: Session, executor_id, amount, gateway: Optional[PaymentGateway] = None) -> Deposit:
    """Start a top-up. The balance moves only when the gateway confirms it."""
    value = _check_amount(amount, settings.min_deposit)
    if not db.query(ExecutorProfile.id).filter(ExecutorProfile.user_id == executor_id).first():
        raise NotFound("Executor not found")
    deposit = Deposit(executor_id=executor_id, amount=value, status="pending")
    db.add(deposit)
    db.flush()
    try:
        checkout = (gateway or get_gateway()).create_checkout(
            value, idempotency_key=f"deposit:{deposit.id}", description="Balance top-up"
        )
    except GatewayError:
        db.rollback()
        raise
    deposit.external_id = checkout.external_id
    deposit.payment_url = checkout.payment_url
    create_audit_log(db, "deposit", deposit.id, "CREATE", actor_id=executor_id, actor_role="executor", source="api",
                     context={"amount": value})
    db.commit()
    db.refresh(deposit)
    log.info("deposit_created", deposit_id=str(deposit.id), executor_id=str(executor_id), amount=str(value))
    return deposit


def confirm_deposit(
    db: Session,
    deposit_id=None,
    external_id: Optional[str] = None,
    succeeded: bool = True,
    now: Optional[datetime] = None,
) -> Deposit:
    """Gateway callback. Safe to repeat: the balance is credited once."""
    now = now or utcnow()
    query = db.query(Deposit)
    if deposit_id is not None:
        query = query.filter(Deposit.id == deposit_id)
    elif external_id:
        query = query.filter(Deposit.external_id == external_id)
    else:
        raise ValidationError.for_fields({"deposit_id": "deposit_id or external_id required"})
    deposit = query.first()
    if not deposit:
        raise NotFound("Deposit not found")
    if deposit.status != "pending":
        return deposit

    new_status = "succeeded" if succeeded else "failed"
    result = db.execute(
        update(Deposit)
        .where(Deposit.id == deposit.id, Deposit.status == "pending")
        .values(status=new_status, confirmed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(deposit)
        return deposit

    if succeeded:
        try:
            _apply_balance(db, deposit.executor_id, to_money(deposit.amount), "deposit",
                           f"deposit:{deposit.id}", reference_id=deposit.id)
        except IntegrityError:
            db.rollback()
            db.refresh(deposit)
            return deposit
        create_notification(db, deposit.executor_id, "deposit_confirmed", {
            "deposit_id": str(deposit.id),
            "amount": str(deposit.amount),
        })
    create_audit_log(db, "deposit", deposit.id, "CONFIRM" if succeeded else "FAIL", actor_role="system",
                     source="webhook", context={"amount": deposit.amount})
    db.commit()
    db.refresh(deposit)
    _refresh_profile(db, deposit.executor_id)
    log.info("deposit_confirmed", deposit_id=str(deposit.id), status=new_status)
    return deposit


def withdraw_from_executor(db: Session, executor_id, amount, gateway: Optional[PaymentGateway] = None) -> WithdrawalRequest:
    value = _check_amount(amount, settings.min_withdrawal)
    withdrawal = WithdrawalRequest(executor_id=executor_id, amount=value, status="queued")
    db.add(withdrawal)
    db.flush()
    try:
        _apply_balance(db, executor_id, -value, "withdrawal", f"withdrawal:{withdrawal.id}",
                       reference_id=withdrawal.id, require_funds=True)
        payout = (gateway or get_gateway()).payout(
            value, idempotency_key=f"withdrawal:{withdrawal.id}", description="Balance withdrawal"
        )
    except (InsufficientFunds, GatewayError, NotFound):
        db.rollback()
        raise
    withdrawal.external_id = payout.external_id
    create_audit_log(db, "withdrawal", withdrawal.id, "CREATE", actor_id=executor_id, actor_role="executor",
                     source="api", context={"amount": value})
    db.commit()
    db.refresh(withdrawal)
    _refresh_profile(db, executor_id)
    log.info("withdrawal_queued", withdrawal_id=str(withdrawal.id), executor_id=str(executor_id), amount=str(value))
    return withdrawal


def get_balance(db: Session, executor_id) -> Dict:
    profile = db.query(ExecutorProfile).filter(ExecutorProfile.user_id == executor_id).first()
    if not profile:
        raise NotFound("Executor not found")
    return {
        "balance": profile.balance,
        "min_work_balance": settings.min_work_balance,
        "commission_percent": settings.commission_percent,
    }


def list_transactions(db: Session, executor_id, limit: int = 50, offset: int = 0) -> List[BalanceTransaction]:
    return (
        db.query(BalanceTransaction)
        .filter(BalanceTransaction.executor_id == executor_id)
        .order_by(BalanceTransaction.created_at.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
