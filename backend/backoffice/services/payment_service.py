# Overview: Payment records and the order payment-status derivation.

"""
Payment Sync

WHY: An order's payment_status is never set by hand. It is derived from the
payments recorded against the order every time one of them changes.

DERIVATION (sync_order_payment_status):
- paid:     net confirmed amount (completed - refunded) >= order total,
            or the order total is zero
- refunded: completed payments exist and all were refunded to zero
- failed:   nothing confirmed and the latest payment failed
- pending:  everything else (including partial payment)

When the status becomes paid, order_service.on_payment_confirmed is
notified. This module never touches stock.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError, PaymentError
from ..models import Order, Payment
from ..models.payments import PAYMENT_METHODS
from ..time_utils import utcnow
from ..validation import ValidationError, coerce_positive_int
from .concurrency import lock_for_update, run_in_transaction
from .document_service import PAYMENT_PREFIX, next_document_number


PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_COMPLETED = "completed"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUS_CANCELLED = "cancelled"

CLOSED_ORDER_STATUSES = ("cancelled", "refunded")


def get_payment(payment_id: int, *, lock: bool = False) -> Payment:
    query = db.session.query(Payment).filter_by(id=payment_id)
    if lock:
        query = lock_for_update(query)
    payment = query.execution_options(populate_existing=True).one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found", details={"payment_id": payment_id})
    return payment


def list_payments_for_order(order_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id)
        .order_by(Payment.id.asc())
        .execution_options(populate_existing=True)
        .all()
    )


def _get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.execution_options(populate_existing=True).one_or_none()
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def _append_note(payment: Payment, note: str | None) -> None:
    note = (note or "").strip()
    if note:
        payment.notes = f"{payment.notes}\n{note}" if payment.notes else note


# =============================================================================
# STATUS DERIVATION
# =============================================================================

def derive_payment_status(order_total_cents: int, payments: list[Payment]) -> str:
    if order_total_cents <= 0:
        # Nothing is owed
        return "paid"
    completed = [p for p in payments if p.status == PAYMENT_STATUS_COMPLETED]
    if completed:
        net = sum(p.amount_cents - (p.refunded_amount_cents or 0) for p in completed)
        if net >= order_total_cents:
            return "paid"
        if all((p.refunded_amount_cents or 0) >= p.amount_cents for p in completed):
            return "refunded"
        return "pending"
    if payments and max(payments, key=lambda p: p.id).status == PAYMENT_STATUS_FAILED:
        return "failed"
    return "pending"


def sync_order_payment_status(order_id: int, *, commit: bool = True) -> str | None:
    """
    Recompute order.payment_status from its payments. Returns the new
    status, or None when the order no longer exists (payments outlive
    deleted orders).
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).execution_options(
            populate_existing=True
        ).one_or_none()
        if order is None:
            if commit:
                db.session.commit()
            return None
        new_status = derive_payment_status(order.total_cents, list_payments_for_order(order_id))
        old_status = order.payment_status
        if new_status != old_status:
            order.payment_status = new_status
            db.session.flush()
            current_app.logger.info(
                "order payment status: %s %s -> %s", order.order_number, old_status, new_status
            )
            if new_status == "paid":
                from .order_service import on_payment_confirmed
                on_payment_confirmed(order_id, commit=False)

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return new_status

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# PAYMENT OPERATIONS
# =============================================================================

def record_payment(
    order_id: int,
    amount_cents: int,
    method: str = "cash",
    *,
    status: str = PAYMENT_STATUS_COMPLETED,
    reference: str | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> Payment:
    """
    Record a payment (or a pending payment intent) against an order.

    Split and partial payments are allowed; the order only becomes paid
    once confirmed payments cover its total.
    """
    order_id = coerce_positive_int("order_id", order_id)
    amount = coerce_positive_int("amount_cents", amount_cents)
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"method must be one of {', '.join(PAYMENT_METHODS)}")
    if status not in (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_COMPLETED):
        raise ValidationError("status must be pending or completed")

    def _op():
        order = _get_order(order_id, lock=True)
        if order.status in CLOSED_ORDER_STATUSES:
            raise PaymentError(
                f"Cannot add payment to a {order.status} order",
                details={"order_id": order_id, "status": order.status},
            )

        payment = Payment(
            payment_number=next_document_number(document_type="PAYMENT", prefix=PAYMENT_PREFIX),
            order_id=order.id,
            amount_cents=amount,
            refunded_amount_cents=0,
            method=method,
            status=status,
            reference=reference,
            notes=notes,
            completed_at=utcnow() if status == PAYMENT_STATUS_COMPLETED else None,
        )
        db.session.add(payment)
        db.session.flush()

        sync_order_payment_status(order.id, commit=False)

        if commit:
            db.session.commit()
        return payment

    return run_in_transaction(_op, commit=commit)


def _change_pending(payment_id: int, to_status: str, *, reason: str | None, commit: bool) -> Payment:
    def _op():
        payment = get_payment(payment_id, lock=True)
        if payment.status != PAYMENT_STATUS_PENDING:
            raise PaymentError(
                f"Payment is {payment.status}; only pending payments can become {to_status}",
                details={"payment_id": payment_id, "status": payment.status},
            )
        payment.status = to_status
        if to_status == PAYMENT_STATUS_COMPLETED:
            payment.completed_at = utcnow()
        elif to_status == PAYMENT_STATUS_FAILED:
            payment.failure_reason = (reason or "").strip() or None
        else:
            _append_note(payment, reason)
        db.session.flush()

        sync_order_payment_status(payment.order_id, commit=False)

        if commit:
            db.session.commit()
        return payment

    return run_in_transaction(_op, commit=commit)


def complete_payment(payment_id: int, *, commit: bool = True) -> Payment:
    return _change_pending(payment_id, PAYMENT_STATUS_COMPLETED, reason=None, commit=commit)


def fail_payment(payment_id: int, reason: str | None = None, *, commit: bool = True) -> Payment:
    return _change_pending(payment_id, PAYMENT_STATUS_FAILED, reason=reason, commit=commit)


def cancel_payment(payment_id: int, reason: str | None = None, *, commit: bool = True) -> Payment:
    return _change_pending(payment_id, PAYMENT_STATUS_CANCELLED, reason=reason, commit=commit)


def refund_payment(
    payment_id: int,
    amount_cents: int | None = None,
    reason: str | None = None,
    *,
    commit: bool = True,
) -> Payment:
    """
    Refund part or all of a completed payment. Defaults to the full
    remaining amount. Stock is not touched; use order_service.refund_order
    to return goods.
    """
    def _op():
        payment = get_payment(payment_id, lock=True)
        if payment.status != PAYMENT_STATUS_COMPLETED:
            raise PaymentError(
                "Only completed payments can be refunded",
                details={"payment_id": payment_id, "status": payment.status},
            )
        refundable = payment.amount_cents - (payment.refunded_amount_cents or 0)
        amount = refundable if amount_cents is None else coerce_positive_int("amount_cents", amount_cents)
        if amount <= 0 or amount > refundable:
            raise PaymentError(
                f"Refund amount must be between 1 and {refundable}",
                details={"payment_id": payment_id, "refundable_cents": refundable, "requested_cents": amount},
            )
        payment.refunded_amount_cents = (payment.refunded_amount_cents or 0) + amount
        payment.refunded_at = utcnow()
        _append_note(payment, f"Refunded {amount}: {reason}" if reason else None)
        db.session.flush()

        sync_order_payment_status(payment.order_id, commit=False)

        if commit:
            db.session.commit()
        return payment

    return run_in_transaction(_op, commit=commit)


def get_payment_summary(order_id: int) -> dict:
    order = _get_order(order_id)
    payments = list_payments_for_order(order_id)
    completed = [p for p in payments if p.status == PAYMENT_STATUS_COMPLETED]
    paid = sum(p.amount_cents for p in completed)
    refunded = sum(p.refunded_amount_cents or 0 for p in completed)
    net = paid - refunded
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_cents": order.total_cents,
        "paid_cents": paid,
        "refunded_cents": refunded,
        "net_paid_cents": net,
        "remaining_cents": max(order.total_cents - net, 0),
        "payment_status": order.payment_status,
        "payments": [p.to_dict() for p in payments],
    }
