# Overview: Batch registry, FEFO ordering, lifecycle and fresh-product promotions.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..errors import InvalidBatchTransitionError, NotFoundError
from ..models import Batch, Product
from ..models.inventory import BATCH_STATUS_ACTIVE, BATCH_STATUS_DISPOSED, BATCH_STATUS_EXPIRED
from ..money import percent_of_cents
from ..time_utils import normalize_datetime, utcnow
from ..validation import ValidationError, enforce_rules_batch
from . import stock_ledger
from .concurrency import guarded_update, run_in_transaction


def get_batch(batch_id: int) -> Batch:
    batch = (
        db.session.query(Batch)
        .filter_by(id=batch_id)
        .execution_options(populate_existing=True)
        .one_or_none()
    )
    if batch is None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})
    return batch


def _require_active_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    if not product.is_active:
        raise ValidationError("Product is inactive")
    return product


def create_batch(
    *,
    product_id: int,
    batch_code: str,
    unit_price_cents: int | None = None,
    cost_price_cents: int = 0,
    quantity: int = 0,
    mfg_date=None,
    expiry_date=None,
    notes: str | None = None,
    location_id: int | None = None,
    commit: bool = True,
) -> Batch:
    """
    Register a batch of an active product.

    When location_id is given, the produced quantity is received on hand at
    that location through the stock ledger (capacity-guarded) in the same
    transaction.
    """
    def _op():
        product = _require_active_product(product_id)

        code = (batch_code or "").strip().upper()
        if not code:
            raise ValidationError("batch_code is required")
        if db.session.query(Batch.id).filter_by(batch_code=code).first():
            raise ValidationError(f"Batch code {code} already exists")

        patch = {
            "unit_price_cents": product.unit_price_cents if unit_price_cents is None else unit_price_cents,
            "cost_price_cents": cost_price_cents or 0,
            "quantity": quantity or 0,
            "mfg_date": normalize_datetime(mfg_date),
            "expiry_date": normalize_datetime(expiry_date),
        }
        enforce_rules_batch(patch)

        batch = Batch(
            product_id=product.id,
            batch_code=code,
            notes=notes,
            status=BATCH_STATUS_ACTIVE,
            **patch,
        )
        db.session.add(batch)
        db.session.flush()

        if location_id is not None and batch.quantity > 0:
            stock_ledger.adjust_on_hand(
                batch.id,
                location_id,
                batch.quantity,
                note=f"Initial receipt of batch {code}",
                commit=False,
            )

        if commit:
            db.session.commit()
        return batch

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# FEFO ORDERING
# =============================================================================

def _expire_overdue(product_id: int | None, now: datetime) -> int:
    """Flip active batches past their expiry date to expired. Returns count."""
    guards = [
        Batch.status == BATCH_STATUS_ACTIVE,
        Batch.expiry_date.isnot(None),
        Batch.expiry_date < now,
    ]
    if product_id is not None:
        guards.append(Batch.product_id == product_id)
    query = db.session.query(Batch.id).filter(*guards)
    expired = 0
    for (batch_id,) in query.all():
        if guarded_update(
            Batch,
            guards=[Batch.id == batch_id, Batch.status == BATCH_STATUS_ACTIVE],
            values={"status": BATCH_STATUS_EXPIRED},
        ):
            expired += 1
    if expired:
        current_app.logger.info("batches expired: product=%s count=%s", product_id, expired)
    return expired


class ActiveBatchSequence:
    """
    Active batches of one product in FEFO order.

    Lazy and restartable: every iteration runs a fresh query and streams
    rows in chunks, so callers that stop early never load the rest.
    Order: expiry ascending, batches without expiry last, ties by id
    (creation order). Batches found past expiry are marked expired and
    skipped.
    """

    chunk_size = 50

    def __init__(self, product_id: int, *, now: datetime | None = None):
        self.product_id = product_id
        self._now = now

    def __iter__(self):
        now = self._now or utcnow()
        _expire_overdue(self.product_id, now)
        query = (
            db.session.query(Batch)
            .filter(
                Batch.product_id == self.product_id,
                Batch.status == BATCH_STATUS_ACTIVE,
                or_(Batch.expiry_date.is_(None), Batch.expiry_date >= now),
            )
            .order_by(
                Batch.expiry_date.is_(None).asc(),
                Batch.expiry_date.asc(),
                Batch.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        yield from query.yield_per(self.chunk_size)

    def __repr__(self) -> str:
        return f"<ActiveBatchSequence product={self.product_id}>"


def list_active_batches_for_product(product_id: int, *, now: datetime | None = None) -> ActiveBatchSequence:
    return ActiveBatchSequence(product_id, now=now)


def current_unit_price_cents(batch: Batch) -> int:
    """Unit price after an active promotion discount (half-up)."""
    price = batch.unit_price_cents
    if batch.promotion_applied and batch.discount_percentage:
        return price - percent_of_cents(price, batch.discount_percentage)
    return price


# =============================================================================
# LIFECYCLE
# =============================================================================

def _transition_from_active(batch_id: int, to_status: str, *, notes: str | None = None, commit: bool = True) -> Batch:
    def _op():
        batch = get_batch(batch_id)
        values = {"status": to_status}
        if notes is not None:
            values["notes"] = notes
        if not guarded_update(
            Batch,
            guards=[Batch.id == batch_id, Batch.status == BATCH_STATUS_ACTIVE],
            values=values,
        ):
            raise InvalidBatchTransitionError(
                f"Batch is {batch.status}; only active batches can become {to_status}",
                details={"batch_id": batch_id, "status": batch.status, "to_status": to_status},
            )
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return get_batch(batch_id)

    return run_in_transaction(_op, commit=commit)


def mark_expired(batch_id: int, *, commit: bool = True) -> Batch:
    return _transition_from_active(batch_id, BATCH_STATUS_EXPIRED, commit=commit)


def mark_disposed(batch_id: int, reason: str, *, commit: bool = True) -> Batch:
    """Take a batch out of sale. The reason is appended to the batch notes."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    batch = get_batch(batch_id)
    line = f"Disposed {utcnow().date().isoformat()}: {reason}"
    notes = f"{batch.notes}\n{line}" if batch.notes else line
    return _transition_from_active(batch_id, BATCH_STATUS_DISPOSED, notes=notes, commit=commit)


# =============================================================================
# PROMOTIONS
# =============================================================================

def apply_promotion(batch_id: int, discount_percentage: int, *, commit: bool = True) -> Batch:
    if isinstance(discount_percentage, bool) or not isinstance(discount_percentage, int):
        raise ValidationError("discount_percentage must be an integer")
    if discount_percentage < 1 or discount_percentage > 100:
        raise ValidationError("discount_percentage must be between 1 and 100")

    batch = get_batch(batch_id)
    if batch.status != BATCH_STATUS_ACTIVE:
        raise InvalidBatchTransitionError(
            "Promotions apply to active batches only",
            details={"batch_id": batch_id, "status": batch.status},
        )
    batch.promotion_applied = True
    batch.discount_percentage = discount_percentage
    batch.promotion_applied_at = utcnow()
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return batch


def clear_promotion(batch_id: int, *, commit: bool = True) -> Batch:
    batch = get_batch(batch_id)
    batch.promotion_applied = False
    batch.discount_percentage = 0
    batch.promotion_applied_at = None
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return batch


def _fresh_batches_query(fresh_category: str):
    return (
        db.session.query(Batch)
        .join(Product, Product.id == Batch.product_id)
        .filter(db.func.lower(Product.category) == fresh_category.lower())
    )


def apply_fresh_promotions(now: datetime | None = None) -> dict:
    """
    Discount fresh-category batches that are close to expiry.

    - Active batches expiring within FRESH_PROMOTION_WINDOW_HOURS get
      FRESH_PROMOTION_DISCOUNT_PERCENT unless they already carry an equal or
      larger discount.
    - Batches past expiry lose their promotion and are marked expired.
    """
    cfg = current_app.config
    now = now or utcnow()
    pct = int(cfg["FRESH_PROMOTION_DISCOUNT_PERCENT"])
    window_end = now + timedelta(hours=int(cfg["FRESH_PROMOTION_WINDOW_HOURS"]))
    fresh_category = cfg["FRESH_CATEGORY"]

    def _op():
        applied = []
        skipped = []
        eligible = (
            _fresh_batches_query(fresh_category)
            .filter(
                Batch.status == BATCH_STATUS_ACTIVE,
                Batch.expiry_date.isnot(None),
                Batch.expiry_date >= now,
                Batch.expiry_date <= window_end,
            )
            .order_by(Batch.expiry_date.asc(), Batch.id.asc())
            .all()
        )
        for batch in eligible:
            if batch.promotion_applied and batch.discount_percentage >= pct:
                skipped.append(batch.batch_code)
                continue
            batch.promotion_applied = True
            batch.discount_percentage = pct
            batch.promotion_applied_at = now
            applied.append(batch.batch_code)

        removed = []
        overdue = (
            _fresh_batches_query(fresh_category)
            .filter(
                Batch.expiry_date.isnot(None),
                Batch.expiry_date < now,
                Batch.promotion_applied.is_(True),
            )
            .all()
        )
        for batch in overdue:
            batch.promotion_applied = False
            batch.discount_percentage = 0
            batch.promotion_applied_at = None
            if batch.status == BATCH_STATUS_ACTIVE:
                batch.status = BATCH_STATUS_EXPIRED
            removed.append(batch.batch_code)

        db.session.commit()
        return {
            "discount_percentage": pct,
            "applied": len(applied),
            "removed": len(removed),
            "skipped": len(skipped),
            "applied_batches": applied,
            "removed_batches": removed,
        }

    summary = run_in_transaction(_op, commit=True)
    current_app.logger.info(
        "fresh promotions applied: applied=%s removed=%s skipped=%s",
        summary["applied"],
        summary["removed"],
        summary["skipped"],
    )
    return summary
