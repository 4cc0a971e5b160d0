# Overview: FEFO allocation planning; read-only, reservation re-validates every tuple.

"""
FEFO (First-Expired-First-Out) allocation.

ORDER:
1. expiry_date ASC (NULL last)
2. batch id ASC (stable tie-breaker, creation order)
3. within a batch: location id ASC

A plan is a snapshot. Nothing is reserved here; reservation_service
re-checks each tuple with a guarded update and the loser of a race gets
InsufficientStockError there.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..errors import InsufficientStockError, NotFoundError
from ..models import Product
from ..models.inventory import BATCH_STATUS_ACTIVE
from ..time_utils import utcnow
from ..validation import ValidationError
from . import stock_ledger
from .batch_catalog import current_unit_price_cents, get_batch, list_active_batches_for_product


@dataclass(frozen=True)
class Allocation:
    batch_id: int
    location_id: int
    quantity: int
    unit_price_cents: int
    expiry_date: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }


def _get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def _available_by_location(batch_id: int) -> list[tuple[int, int]]:
    return [
        (record.location_id, record.quantity_available)
        for record in stock_ledger.list_stock_for_batch(batch_id)
        if record.quantity_available > 0
    ]


def plan_allocation(product_id: int, quantity: int, *, now: datetime | None = None) -> list[Allocation]:
    """
    Greedy FEFO plan covering quantity units of a product.

    Raises InsufficientStockError (details: requested, available) when the
    active batches cannot cover the request. Writes nothing to stock.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    _get_product(product_id)

    remaining = quantity
    plan: list[Allocation] = []
    for batch in list_active_batches_for_product(product_id, now=now):
        if remaining <= 0:
            break
        price = current_unit_price_cents(batch)
        for location_id, available in _available_by_location(batch.id):
            if remaining <= 0:
                break
            take = min(remaining, available)
            plan.append(
                Allocation(
                    batch_id=batch.id,
                    location_id=location_id,
                    quantity=take,
                    unit_price_cents=price,
                    expiry_date=batch.expiry_date,
                )
            )
            remaining -= take

    if remaining > 0:
        available = quantity - remaining
        raise InsufficientStockError(
            f"Insufficient stock: requested {quantity}, available {available}",
            details={"product_id": product_id, "requested": quantity, "available": available},
        )
    return plan


def plan_explicit_allocation(product_id: int, selections: list[dict], *, now: datetime | None = None) -> list[Allocation]:
    """
    Turn operator batch picks ({batch_id, quantity, location_id?}) into
    allocation tuples. Used for fresh-category products.

    Without location_id the batch's quantity is spread over its locations
    in location id order.
    """
    _get_product(product_id)
    if not selections:
        raise ValidationError("batch_selections must not be empty")

    plan: list[Allocation] = []
    for sel in selections:
        batch = get_batch(sel["batch_id"])
        qty = sel["quantity"]
        if batch.product_id != product_id:
            raise ValidationError(
                f"Batch {batch.batch_code} does not belong to product {product_id}"
            )
        expired = batch.expiry_date is not None and batch.expiry_date < (now or utcnow())
        if batch.status != BATCH_STATUS_ACTIVE or expired:
            raise InsufficientStockError(
                f"Batch {batch.batch_code} is not available for sale",
                details={"batch_id": batch.id, "status": batch.status, "requested": qty, "available": 0},
            )

        price = current_unit_price_cents(batch)
        location_id = sel.get("location_id")
        if location_id is not None:
            available = stock_ledger.quantity_available(batch.id, location_id)
            if available < qty:
                raise InsufficientStockError(
                    f"Batch {batch.batch_code}: requested {qty}, available {available}",
                    details={
                        "batch_id": batch.id,
                        "location_id": location_id,
                        "requested": qty,
                        "available": available,
                    },
                )
            plan.append(Allocation(batch.id, location_id, qty, price, batch.expiry_date))
            continue

        remaining = qty
        slices = []
        for loc_id, available in _available_by_location(batch.id):
            if remaining <= 0:
                break
            take = min(remaining, available)
            slices.append(Allocation(batch.id, loc_id, take, price, batch.expiry_date))
            remaining -= take
        if remaining > 0:
            raise InsufficientStockError(
                f"Batch {batch.batch_code}: requested {qty}, available {qty - remaining}",
                details={"batch_id": batch.id, "requested": qty, "available": qty - remaining},
            )
        plan.extend(slices)

    return plan
