from datetime import datetime
from typing import Any, Dict, Optional

from ..models.models import (
    BalanceTransaction,
    Deposit,
    ExecutorProfile,
    Notification,
    Order,
    Payment,
    SavedPaymentMethod,
    Ticket,
    TicketMessage,
    User,
    WithdrawalRequest,
)
from ..services.time_rules import ensure_utc


def _dt(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None


def _id(value) -> Optional[str]:
    return str(value) if value else None


def serialize_executor_profile(profile: ExecutorProfile) -> Dict[str, Any]:
    return {
        "vehicle_capacity": profile.vehicle_capacity,
        "vehicle_number": profile.vehicle_number,
        "is_verified": profile.is_verified,
        "verified_at": _dt(profile.verified_at),
        "passport_photo_uri": profile.passport_photo_uri,
        "driver_license_photo_uri": profile.driver_license_photo_uri,
        "vehicle_registration_photo_uri": profile.vehicle_registration_photo_uri,
        "balance": str(profile.balance),
        "is_working": profile.is_working,
        "rating": str(profile.rating) if profile.rating is not None else None,
        "completed_orders_count": profile.completed_orders_count,
    }


def serialize_user(user: User) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(user.id),
        "name": user.name,
        "phone": user.phone,
        "email": user.email,
        "photo_uri": user.photo_uri,
        "roles": sorted(user.role_names),
        "active_role": user.active_role,
        "created_at": _dt(user.created_at),
        "client_profile": None,
        "executor_profile": None,
    }
    if user.client_profile is not None:
        cp = user.client_profile
        data["client_profile"] = {"city": cp.city, "street": cp.street, "house_number": cp.house_number}
    if user.executor_profile is not None:
        data["executor_profile"] = serialize_executor_profile(user.executor_profile)
    return data


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": str(order.id),
        "client_id": str(order.client_id),
        "executor_id": _id(order.executor_id),
        "city": order.city,
        "street": order.street,
        "house_number": order.house_number,
        "vehicle_capacity": order.vehicle_capacity,
        "scheduled_at": _dt(order.scheduled_at),
        "comment": order.comment,
        "is_urgent": order.is_urgent,
        "price": str(order.price),
        "status": order.status,
        "payment_method": order.payment_method,
        "created_at": _dt(order.created_at),
        "accepted_at": _dt(order.accepted_at),
        "started_at": _dt(order.started_at),
        "completed_at": _dt(order.completed_at),
        "closed_at": _dt(order.closed_at),
        "paid_at": _dt(order.paid_at),
        "cancelled_at": _dt(order.cancelled_at),
        "cancel_reason": order.cancel_reason,
        "cancelled_by_role": order.cancelled_by_role,
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "amount": str(payment.amount),
        "commission": str(payment.commission),
        "method": payment.method,
        "status": payment.status,
        "created_at": _dt(payment.created_at),
    }


def serialize_transaction(tx: BalanceTransaction) -> Dict[str, Any]:
    return {
        "id": str(tx.id),
        "kind": tx.kind,
        "amount": str(tx.amount),
        "balance_after": str(tx.balance_after),
        "order_id": _id(tx.order_id),
        "created_at": _dt(tx.created_at),
    }


def serialize_deposit(deposit: Deposit) -> Dict[str, Any]:
    return {
        "id": str(deposit.id),
        "amount": str(deposit.amount),
        "status": deposit.status,
        "payment_url": deposit.payment_url,
        "external_id": deposit.external_id,
        "created_at": _dt(deposit.created_at),
        "confirmed_at": _dt(deposit.confirmed_at),
    }


def serialize_withdrawal(withdrawal: WithdrawalRequest) -> Dict[str, Any]:
    return {
        "id": str(withdrawal.id),
        "amount": str(withdrawal.amount),
        "status": withdrawal.status,
        "created_at": _dt(withdrawal.created_at),
    }


def serialize_payment_method(method: SavedPaymentMethod) -> Dict[str, Any]:
    return {
        "id": str(method.id),
        "card_last4": method.card_last4,
        "card_type": method.card_type,
        "created_at": _dt(method.created_at),
    }


def serialize_message(message: TicketMessage) -> Dict[str, Any]:
    return {
        "id": str(message.id),
        "sender_id": _id(message.sender_id),
        "sender_role": message.sender_role,
        "body": message.body,
        "created_at": _dt(message.created_at),
    }


def serialize_ticket(ticket: Ticket, with_messages: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(ticket.id),
        "user_id": str(ticket.user_id),
        "subject": ticket.subject,
        "description": ticket.description,
        "status": ticket.status,
        "created_at": _dt(ticket.created_at),
        "updated_at": _dt(ticket.updated_at),
    }
    if with_messages:
        data["messages"] = [serialize_message(m) for m in ticket.messages]
    return data


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": str(notification.id),
        "template_key": notification.template_key,
        "payload": notification.payload_json or {},
        "status": notification.status,
        "read": notification.read_at is not None,
        "created_at": _dt(notification.created_at),
    }
