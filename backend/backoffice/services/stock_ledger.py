# Overview: Stock ledger; every quantity change is one guarded UPDATE on a stock record.

"""
Single source of truth for (batch, location) quantities.

WRITE PATH:
Each mutation is one UPDATE ... WHERE <guard>. The affected row count decides
success, so two writers racing for the same units can never both win and a
read-modify-write window never exists. A failed guard writes nothing; the
record is then re-read only to build a precise error.

QUANTITIES:
- on_hand: warehouse stock
- on_shelf: stock on the sales floor
- reserved: part of on_shelf promised to open orders
- available = on_shelf - reserved

Shelf units leave through consume (sale), unshelve (back to on hand) or
write_off_shelf (loss). The last two only touch unreserved units.

Every successful call appends a StockMovement in the same transaction.
The ledger does not de-duplicate retries; callers (reservation_service) do.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite

from ..extensions import db
from ..errors import (
    InsufficientAvailableError,
    InsufficientOnHandError,
    LocationCapacityError,
    NegativeStockError,
    NotFoundError,
)
from ..models import Batch, Location, StockMovement, StockRecord
from ..validation import ValidationError
from .concurrency import guarded_update, lock_for_update, run_in_transaction


MOVEMENT_TYPES = (
    "RECEIVE",
    "ADJUST",
    "SHELVE",
    "UNSHELVE",
    "WRITE_OFF",
    "RESERVE",
    "RELEASE",
    "CONSUME",
    "RESTORE",
)


def _require_qty(qty) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer")
    return qty


def _fresh_record(batch_id: int, location_id: int) -> StockRecord | None:
    # Guarded updates bypass the identity map; always reload.
    return (
        db.session.query(StockRecord)
        .filter_by(batch_id=batch_id, location_id=location_id)
        .execution_options(populate_existing=True)
        .one_or_none()
    )


def _get_location(location_id: int, *, lock: bool = False) -> Location:
    query = db.session.query(Location).filter_by(id=location_id)
    if lock:
        query = lock_for_update(query)
    location = query.execution_options(populate_existing=True).one_or_none()
    if location is None:
        raise NotFoundError("Location not found", details={"location_id": location_id})
    return location


def _occupancy(location_id: int) -> int:
    return (
        db.session.query(
            func.coalesce(func.sum(StockRecord.quantity_on_hand + StockRecord.quantity_on_shelf), 0)
        )
        .filter(StockRecord.location_id == location_id)
        .scalar()
    )


def _capacity_guard(location_id: int, qty: int):
    """SQL predicate: location is active and occupancy + qty <= max_capacity."""
    occ = StockRecord.__table__.alias("occ")
    occupied = (
        select(func.coalesce(func.sum(occ.c.quantity_on_hand + occ.c.quantity_on_shelf), 0))
        .where(occ.c.location_id == location_id)
        .scalar_subquery()
    )
    capacity = (
        select(Location.max_capacity)
        .where(Location.id == location_id, Location.is_active.is_(True))
        .scalar_subquery()
    )
    return occupied + qty <= capacity


def _capacity_error(location_id: int, qty: int) -> LocationCapacityError:
    location = _get_location(location_id)
    occupied = _occupancy(location_id)
    details = {
        "location_id": location_id,
        "max_capacity": location.max_capacity,
        "occupied": occupied,
        "requested": qty,
    }
    if not location.is_active:
        return LocationCapacityError("Location is inactive", details=details)
    return LocationCapacityError(
        f"Location {location.name} cannot hold {qty} more units "
        f"({occupied}/{location.max_capacity} occupied)",
        details=details,
    )


def _ensure_record(batch_id: int, location_id: int) -> None:
    """Create an empty stock record for (batch, location) if none exists."""
    if _fresh_record(batch_id, location_id) is not None:
        return
    if db.session.get(Batch, batch_id) is None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})

    values = {
        "batch_id": batch_id,
        "location_id": location_id,
        "quantity_on_hand": 0,
        "quantity_on_shelf": 0,
        "quantity_reserved": 0,
        "version": 1,
    }
    dialect = db.session.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite.insert(StockRecord.__table__).values(**values)
    elif dialect == "postgresql":
        stmt = postgresql.insert(StockRecord.__table__).values(**values)
    else:
        db.session.add(StockRecord(**values))
        db.session.flush()
        return
    # A concurrent first receipt may create the same row
    db.session.execute(stmt.on_conflict_do_nothing(index_elements=["batch_id", "location_id"]))


def _record_movement(
    movement_type: str,
    batch_id: int,
    location_id: int,
    quantity: int,
    *,
    order_id: int | None,
    note: str | None,
) -> None:
    db.session.add(
        StockMovement(
            movement_type=movement_type,
            batch_id=batch_id,
            location_id=location_id,
            quantity=quantity,
            order_id=order_id,
            note=note,
        )
    )
    db.session.flush()


def _finish(batch_id: int, location_id: int, commit: bool) -> StockRecord:
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return _fresh_record(batch_id, location_id)


def _bump(**values) -> dict:
    values["version"] = StockRecord.version + 1
    return values


def _same_record(batch_id: int, location_id: int) -> list:
    return [StockRecord.batch_id == batch_id, StockRecord.location_id == location_id]


# =============================================================================
# MUTATIONS
# =============================================================================

def adjust_on_hand(
    batch_id: int,
    location_id: int,
    delta: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """
    Warehouse receipt (delta > 0) or correction (delta < 0).

    Positive deltas are capacity-guarded and create the stock record on
    first receipt. Never clamps: a result below zero raises
    NegativeStockError.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")

    def _op():
        guards = _same_record(batch_id, location_id) + [StockRecord.quantity_on_hand + delta >= 0]
        if delta > 0:
            _get_location(location_id, lock=True)
            _ensure_record(batch_id, location_id)
            guards.append(_capacity_guard(location_id, delta))

        ok = guarded_update(
            StockRecord,
            guards=guards,
            values=_bump(quantity_on_hand=StockRecord.quantity_on_hand + delta),
        )
        if not ok:
            record = _fresh_record(batch_id, location_id)
            on_hand = record.quantity_on_hand if record else 0
            if on_hand + delta < 0:
                raise NegativeStockError(
                    "Adjustment would make on-hand stock negative",
                    details={
                        "batch_id": batch_id,
                        "location_id": location_id,
                        "on_hand": on_hand,
                        "delta": delta,
                    },
                )
            raise _capacity_error(location_id, delta)

        _record_movement(
            "RECEIVE" if delta > 0 else "ADJUST",
            batch_id,
            location_id,
            delta,
            order_id=order_id,
            note=note,
        )
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def shelve_stock(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """Move qty units from on hand to on shelf. Occupancy is unchanged."""
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id) + [StockRecord.quantity_on_hand >= qty],
            values=_bump(
                quantity_on_hand=StockRecord.quantity_on_hand - qty,
                quantity_on_shelf=StockRecord.quantity_on_shelf + qty,
            ),
        )
        if not ok:
            record = _fresh_record(batch_id, location_id)
            raise InsufficientOnHandError(
                f"Only {record.quantity_on_hand if record else 0} units on hand, {qty} requested",
                details={
                    "batch_id": batch_id,
                    "location_id": location_id,
                    "on_hand": record.quantity_on_hand if record else 0,
                    "requested": qty,
                },
            )

        _record_movement("SHELVE", batch_id, location_id, qty, order_id=order_id, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def _unreserved_shelf_error(batch_id: int, location_id: int, qty: int) -> InsufficientAvailableError:
    record = _fresh_record(batch_id, location_id)
    available = record.quantity_available if record else 0
    return InsufficientAvailableError(
        f"Only {available} unreserved units on shelf, {qty} requested",
        details={
            "batch_id": batch_id,
            "location_id": location_id,
            "available": available,
            "requested": qty,
        },
    )


def unshelve_stock(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """Move qty unreserved units from the shelf back to on hand."""
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id)
            + [StockRecord.quantity_on_shelf - StockRecord.quantity_reserved >= qty],
            values=_bump(
                quantity_on_hand=StockRecord.quantity_on_hand + qty,
                quantity_on_shelf=StockRecord.quantity_on_shelf - qty,
            ),
        )
        if not ok:
            raise _unreserved_shelf_error(batch_id, location_id, qty)

        _record_movement("UNSHELVE", batch_id, location_id, qty, order_id=None, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def write_off_shelf(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """
    Remove qty units from the shelf without a sale (spoilage, disposal).

    Reserved units belong to open orders and cannot be written off.
    """
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id)
            + [StockRecord.quantity_on_shelf - StockRecord.quantity_reserved >= qty],
            values=_bump(quantity_on_shelf=StockRecord.quantity_on_shelf - qty),
        )
        if not ok:
            raise _unreserved_shelf_error(batch_id, location_id, qty)

        _record_movement("WRITE_OFF", batch_id, location_id, qty, order_id=None, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def reserve(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """
    Reserve qty units of shelf stock.

    The guard (on_shelf - reserved >= qty) is evaluated by the database in
    the same statement that increments reserved, so of two racing callers
    that together exceed availability exactly one succeeds.
    """
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id)
            + [StockRecord.quantity_on_shelf - StockRecord.quantity_reserved >= qty],
            values=_bump(quantity_reserved=StockRecord.quantity_reserved + qty),
        )
        if not ok:
            record = _fresh_record(batch_id, location_id)
            available = record.quantity_available if record else 0
            raise InsufficientAvailableError(
                f"Only {available} units available, {qty} requested",
                details={
                    "batch_id": batch_id,
                    "location_id": location_id,
                    "available": available,
                    "requested": qty,
                },
            )

        _record_movement("RESERVE", batch_id, location_id, qty, order_id=order_id, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def release(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """Return qty reserved units to availability."""
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id) + [StockRecord.quantity_reserved >= qty],
            values=_bump(quantity_reserved=StockRecord.quantity_reserved - qty),
        )
        if not ok:
            record = _fresh_record(batch_id, location_id)
            raise NegativeStockError(
                "Release exceeds reserved quantity",
                details={
                    "batch_id": batch_id,
                    "location_id": location_id,
                    "reserved": record.quantity_reserved if record else 0,
                    "requested": qty,
                },
            )

        _record_movement("RELEASE", batch_id, location_id, qty, order_id=order_id, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def consume(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """Reserved units leave the shelf (delivery)."""
    _require_qty(qty)

    def _op():
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id) + [StockRecord.quantity_reserved >= qty],
            values=_bump(
                quantity_on_shelf=StockRecord.quantity_on_shelf - qty,
                quantity_reserved=StockRecord.quantity_reserved - qty,
            ),
        )
        if not ok:
            record = _fresh_record(batch_id, location_id)
            raise NegativeStockError(
                "Consume exceeds reserved quantity",
                details={
                    "batch_id": batch_id,
                    "location_id": location_id,
                    "reserved": record.quantity_reserved if record else 0,
                    "requested": qty,
                },
            )

        _record_movement("CONSUME", batch_id, location_id, qty, order_id=order_id, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


def restore(
    batch_id: int,
    location_id: int,
    qty: int,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> StockRecord:
    """Put qty units back on the shelf (refund). Capacity-guarded."""
    _require_qty(qty)

    def _op():
        _get_location(location_id, lock=True)
        _ensure_record(batch_id, location_id)
        ok = guarded_update(
            StockRecord,
            guards=_same_record(batch_id, location_id) + [_capacity_guard(location_id, qty)],
            values=_bump(quantity_on_shelf=StockRecord.quantity_on_shelf + qty),
        )
        if not ok:
            raise _capacity_error(location_id, qty)

        _record_movement("RESTORE", batch_id, location_id, qty, order_id=order_id, note=note)
        return _finish(batch_id, location_id, commit)

    return run_in_transaction(_op, commit=commit)


# =============================================================================
# READS
# =============================================================================

def get_stock_record(batch_id: int, location_id: int) -> StockRecord | None:
    return _fresh_record(batch_id, location_id)


def quantity_available(batch_id: int, location_id: int | None = None) -> int:
    """on_shelf - reserved for one location, or summed over all of a batch's locations."""
    query = db.session.query(
        func.coalesce(func.sum(StockRecord.quantity_on_shelf - StockRecord.quantity_reserved), 0)
    ).filter(StockRecord.batch_id == batch_id)
    if location_id is not None:
        query = query.filter(StockRecord.location_id == location_id)
    return query.scalar()


def list_stock_for_batch(batch_id: int) -> list[StockRecord]:
    """Stock records of a batch in location id order."""
    return (
        db.session.query(StockRecord)
        .filter(StockRecord.batch_id == batch_id)
        .order_by(StockRecord.location_id.asc())
        .execution_options(populate_existing=True)
        .all()
    )


def list_stock(
    *,
    product_id: int | None = None,
    batch_id: int | None = None,
    location_id: int | None = None,
) -> list[StockRecord]:
    query = db.session.query(StockRecord)
    if product_id is not None:
        query = query.join(Batch, Batch.id == StockRecord.batch_id).filter(Batch.product_id == product_id)
    if batch_id is not None:
        query = query.filter(StockRecord.batch_id == batch_id)
    if location_id is not None:
        query = query.filter(StockRecord.location_id == location_id)
    return (
        query.order_by(StockRecord.batch_id.asc(), StockRecord.location_id.asc())
        .execution_options(populate_existing=True)
        .all()
    )


def list_movements(
    *,
    batch_id: int | None = None,
    location_id: int | None = None,
    order_id: int | None = None,
    movement_type: str | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    query = db.session.query(StockMovement)
    if movement_type is not None:
        movement_type = movement_type.upper()
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"movement_type must be one of {', '.join(MOVEMENT_TYPES)}")
        query = query.filter(StockMovement.movement_type == movement_type)
    if batch_id is not None:
        query = query.filter(StockMovement.batch_id == batch_id)
    if location_id is not None:
        query = query.filter(StockMovement.location_id == location_id)
    if order_id is not None:
        query = query.filter(StockMovement.order_id == order_id)
    return query.order_by(StockMovement.id.asc()).limit(limit).all()
