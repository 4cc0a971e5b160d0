# Overview: Order creation and the order fulfillment state machine.

"""
Order lifecycle.

STATUS TRANSITIONS:
    draft      -> pending, processing, delivered, cancelled
    pending    -> processing, delivered, cancelled
    processing -> shipping (delivery orders), delivered (pickup orders), cancelled
    shipping   -> delivered, cancelled
    delivered  -> refunded (refund_order only)
    cancelled, refunded: terminal

STOCK EFFECTS:
- create: FEFO (or explicit fresh picks) allocation, then reservation
- -> delivered: requires payment_status == paid, consumes reservations
- -> cancelled: releases reservations
- refund: restores consumed units to the shelf

Every guard is checked before any stock call, so a refused transition
changes nothing.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import (
    DeleteNotAllowedError,
    InvalidTransitionError,
    NotFoundError,
    PaymentNotCompleteError,
    RefundNotAllowedError,
)
from ..models import Customer, Order, OrderLine, Product
from ..models.orders import ORDER_STATUSES
from ..money import percent_of_cents
from ..time_utils import utcnow
from ..validation import ValidationError, enforce_rules_order_create
from .concurrency import lock_for_update, run_in_transaction
from .document_service import ORDER_PREFIX, next_document_number
from .fefo_allocator import plan_allocation, plan_explicit_allocation
from .payment_service import sync_order_payment_status
from .reservation_service import (
    consume_for_order,
    release_for_order,
    reserve_for_order,
    restore_for_order,
)


ALLOWED_TRANSITIONS = {
    "draft": {"pending", "processing", "delivered", "cancelled"},
    "pending": {"processing", "delivered", "cancelled"},
    "processing": {"shipping", "delivered", "cancelled"},
    "shipping": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}

INITIAL_STATUSES = ("draft", "pending")
DELETABLE_STATUSES = ("draft", "pending")


def get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.execution_options(populate_existing=True).one_or_none()
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def list_orders(*, status: str | None = None, customer_id: int | None = None, limit: int = 100) -> list[Order]:
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    return query.order_by(Order.id.desc()).limit(max(1, min(limit, 500))).all()


def discount_percentage_for(customer: Customer) -> int:
    tiers = current_app.config.get("CUSTOMER_TIER_DISCOUNTS") or {}
    return int(tiers.get(customer.customer_type, 0))


def _plan_item(item: dict, fresh_category: str) -> list:
    product = db.session.get(Product, item["product_id"])
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": item["product_id"]})
    if not product.is_active:
        raise ValidationError(f"Product {product.code} is inactive")

    selections = item.get("batch_selections")
    if selections is None:
        return plan_allocation(product.id, item["quantity"])

    if (product.category or "").lower() != fresh_category.lower():
        raise ValidationError(
            f"Product {product.code} is not a {fresh_category} product; batches are chosen FEFO"
        )
    return plan_explicit_allocation(product.id, selections)


def create_order(
    customer_id: int,
    delivery_type: str,
    shipping_address: str | None,
    items: list[dict],
    *,
    shipping_fee_cents: int = 0,
    created_by_user_id: int | None = None,
    status: str = "draft",
    commit: bool = True,
) -> Order:
    """
    Create an order and reserve its stock.

    items: [{product_id, quantity, batch_selections?}]. batch_selections
    ({batch_id, quantity, location_id?}) are accepted for fresh-category
    products only; everything else is allocated FEFO.

    total = subtotal + shipping_fee - round_half_up(subtotal * discount% / 100)
    """
    data = enforce_rules_order_create({
        "customer_id": customer_id,
        "delivery_type": delivery_type,
        "shipping_address": shipping_address,
        "shipping_fee_cents": shipping_fee_cents,
        "created_by_user_id": created_by_user_id,
        "items": items,
    })
    if status not in INITIAL_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(INITIAL_STATUSES)}")

    def _op():
        customer = db.session.get(Customer, data["customer_id"])
        if customer is None:
            raise NotFoundError("Customer not found", details={"customer_id": data["customer_id"]})
        if not customer.is_active:
            raise ValidationError("Customer is inactive")

        fresh_category = current_app.config["FRESH_CATEGORY"]
        planned = []
        for item in data["items"]:
            for alloc in _plan_item(item, fresh_category):
                planned.append((item["product_id"], alloc))

        order = Order(
            order_number=next_document_number(document_type="ORDER", prefix=ORDER_PREFIX),
            customer_id=customer.id,
            delivery_type=data["delivery_type"],
            shipping_address=data["shipping_address"],
            shipping_fee_cents=data["shipping_fee_cents"],
            discount_percentage=discount_percentage_for(customer),
            status=status,
            payment_status="pending",
            created_by_user_id=data["created_by_user_id"],
        )
        db.session.add(order)
        db.session.flush()

        reserve_for_order(order.id, [alloc for _, alloc in planned], commit=False)

        subtotal = 0
        for product_id, alloc in planned:
            line_total = alloc.quantity * alloc.unit_price_cents
            order.lines.append(
                OrderLine(
                    product_id=product_id,
                    batch_id=alloc.batch_id,
                    location_id=alloc.location_id,
                    quantity=alloc.quantity,
                    unit_price_cents=alloc.unit_price_cents,
                    line_total_cents=line_total,
                    stock_status="RESERVED",
                )
            )
            subtotal += line_total

        order.subtotal_cents = subtotal
        order.discount_cents = percent_of_cents(subtotal, order.discount_percentage)
        order.total_cents = subtotal + order.shipping_fee_cents - order.discount_cents

        if order.total_cents == 0:
            # No payment will ever arrive for a free order
            db.session.flush()
            sync_order_payment_status(order.id, commit=False)

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        current_app.logger.info(
            "order created: %s customer=%s lines=%s total_cents=%s",
            order.order_number,
            order.customer_id,
            len(planned),
            order.total_cents,
        )
        return order

    return run_in_transaction(_op, commit=commit)


def _check_transition(order: Order, new_status: str) -> None:
    if new_status == "refunded":
        raise InvalidTransitionError(
            "Refunds go through refund_order",
            details={"order_id": order.id, "from": order.status, "to": new_status},
        )
    if new_status not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise InvalidTransitionError(
            f"Cannot change order status from {order.status} to {new_status}",
            details={"order_id": order.id, "from": order.status, "to": new_status},
        )
    if order.status == "processing":
        if new_status == "shipping" and order.delivery_type != "delivery":
            raise InvalidTransitionError(
                "Pickup orders are not shipped",
                details={"order_id": order.id, "from": order.status, "to": new_status},
            )
        if new_status == "delivered" and order.delivery_type != "pickup":
            raise InvalidTransitionError(
                "Delivery orders must be shipped before delivery",
                details={"order_id": order.id, "from": order.status, "to": new_status},
            )
    if new_status == "delivered" and order.payment_status != "paid":
        raise PaymentNotCompleteError(
            "Order must be paid before it is delivered",
            details={"order_id": order.id, "payment_status": order.payment_status},
        )


def _apply_transition(order: Order, new_status: str, *, reason: str | None = None) -> None:
    """Guards already passed. Performs the stock effect and stamps the order."""
    if new_status == "delivered":
        consume_for_order(order.id, commit=False)
        order.delivered_at = utcnow()
    elif new_status == "cancelled":
        release_for_order(order.id, commit=False)
        order.cancelled_at = utcnow()
        order.cancellation_reason = reason
    order.status = new_status


def update_order_status(
    order_id: int,
    new_status: str,
    *,
    reason: str | None = None,
    commit: bool = True,
) -> Order:
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")

    def _op():
        order = get_order(order_id, lock=True)
        old_status = order.status
        _check_transition(order, new_status)
        _apply_transition(order, new_status, reason=reason)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        current_app.logger.info("order status: %s %s -> %s", order.order_number, old_status, new_status)
        return order

    return run_in_transaction(_op, commit=commit)


def cancel_order(order_id: int, reason: str | None = None, *, commit: bool = True) -> Order:
    return update_order_status(order_id, "cancelled", reason=reason, commit=commit)


def refund_order(order_id: int, reason: str, *, commit: bool = True) -> Order:
    """Return a delivered, paid order. Consumed units go back on the shelf."""
    def _op():
        order = get_order(order_id, lock=True)
        if order.status != "delivered" or order.payment_status != "paid":
            raise RefundNotAllowedError(
                "Only delivered and paid orders can be refunded",
                details={
                    "order_id": order.id,
                    "status": order.status,
                    "payment_status": order.payment_status,
                },
            )
        restore_for_order(order.id, commit=False)
        order.status = "refunded"
        order.refund_reason = (reason or "").strip() or None
        order.refunded_at = utcnow()
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        current_app.logger.info("order refunded: %s", order.order_number)
        return order

    return run_in_transaction(_op, commit=commit)


def delete_order(order_id: int, *, commit: bool = True) -> None:
    """
    Hard delete an order that never progressed: status draft or pending and
    no confirmed payment. Reservations are released first. Payments keep
    their (weak) order_id.
    """
    def _op():
        order = get_order(order_id, lock=True)
        if order.status not in DELETABLE_STATUSES or order.payment_status != "pending":
            raise DeleteNotAllowedError(
                f"Order in status {order.status} with payment {order.payment_status} cannot be deleted",
                details={
                    "order_id": order.id,
                    "status": order.status,
                    "payment_status": order.payment_status,
                },
            )
        release_for_order(order.id, commit=False)
        number = order.order_number
        db.session.delete(order)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        current_app.logger.info("order deleted: %s", number)

    run_in_transaction(_op, commit=commit)


def on_payment_confirmed(order_id: int, *, commit: bool = True) -> Order:
    """
    Called by payment_service when an order's payment status becomes paid.

    A draft order is a walk-in (POS) sale: it is delivered on the spot.
    Any other status is left for the operator to advance.
    """
    def _op():
        order = get_order(order_id, lock=True)
        if order.status == "draft" and order.payment_status == "paid":
            _apply_transition(order, "delivered")
            current_app.logger.info("order delivered on payment: %s", order.order_number)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return order

    return run_in_transaction(_op, commit=commit)
