# Overview: Storage locations and their unit capacity.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import LocationCapacityError, LocationOccupiedError, NotFoundError
from ..models import Location, StockRecord
from ..validation import ValidationError, coerce_int, enforce_rules_location
from .concurrency import lock_for_update, run_in_transaction
from .document_service import LOCATION_PREFIX, next_document_number


def get_location(location_id: int, *, lock: bool = False) -> Location:
    query = db.session.query(Location).filter_by(id=location_id)
    if lock:
        query = lock_for_update(query)
    location = query.execution_options(populate_existing=True).one_or_none()
    if location is None:
        raise NotFoundError("Location not found", details={"location_id": location_id})
    return location


def list_locations(*, include_inactive: bool = False) -> list[Location]:
    query = db.session.query(Location)
    if not include_inactive:
        query = query.filter(Location.is_active.is_(True))
    return query.order_by(Location.id.asc()).all()


def current_occupancy(location_id: int) -> int:
    """Units physically at the location: sum of on_hand + on_shelf."""
    return (
        db.session.query(
            func.coalesce(func.sum(StockRecord.quantity_on_hand + StockRecord.quantity_on_shelf), 0)
        )
        .filter(StockRecord.location_id == location_id)
        .scalar()
    )


def can_accept(location_id: int, qty: int) -> bool:
    location = get_location(location_id)
    if not location.is_active:
        return False
    return current_occupancy(location_id) + qty <= location.max_capacity


def capacity_summary(location_id: int) -> dict:
    location = get_location(location_id)
    occupied = current_occupancy(location_id)
    return {
        "location_id": location.id,
        "code": location.code,
        "name": location.name,
        "is_active": location.is_active,
        "max_capacity": location.max_capacity,
        "occupied": occupied,
        "available": max(location.max_capacity - occupied, 0),
    }


def create_location(name: str, max_capacity: int = 100, *, commit: bool = True) -> Location:
    """Create a location. Names are stored uppercased and must be unique."""
    def _op():
        clean = (name or "").strip().upper()
        if not clean:
            raise ValidationError("name is required")
        if len(clean) > 50:
            raise ValidationError("name exceeds max length 50")
        capacity = coerce_int("max_capacity", max_capacity)
        enforce_rules_location({"max_capacity": capacity})

        if db.session.query(Location.id).filter_by(name=clean).first():
            raise ValidationError(f"Location {clean} already exists")

        location = Location(
            code=next_document_number(document_type="LOCATION", prefix=LOCATION_PREFIX),
            name=clean,
            max_capacity=capacity,
            is_active=True,
        )
        db.session.add(location)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return location

    return run_in_transaction(_op, commit=commit)


def update_capacity(location_id: int, max_capacity: int, *, commit: bool = True) -> Location:
    """Change max_capacity. Never below what the location already holds."""
    def _op():
        capacity = coerce_int("max_capacity", max_capacity)
        enforce_rules_location({"max_capacity": capacity})
        location = get_location(location_id, lock=True)
        occupied = current_occupancy(location_id)
        if capacity < occupied:
            raise LocationCapacityError(
                f"Location {location.name} holds {occupied} units; capacity cannot drop to {capacity}",
                details={"location_id": location_id, "occupied": occupied, "max_capacity": capacity},
            )
        location.max_capacity = capacity
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return location

    return run_in_transaction(_op, commit=commit)


def _require_empty(location: Location, action: str) -> None:
    occupied = current_occupancy(location.id)
    if occupied > 0:
        raise LocationOccupiedError(
            f"Cannot {action} location {location.name}: it still holds {occupied} units",
            details={"location_id": location.id, "occupied": occupied},
        )


def deactivate_location(location_id: int, *, commit: bool = True) -> Location:
    def _op():
        location = get_location(location_id, lock=True)
        _require_empty(location, "deactivate")
        location.is_active = False
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return location

    return run_in_transaction(_op, commit=commit)


def delete_location(location_id: int, *, commit: bool = True) -> None:
    """Hard delete an empty location together with its zeroed stock records."""
    def _op():
        location = get_location(location_id, lock=True)
        _require_empty(location, "delete")
        db.session.query(StockRecord).filter(StockRecord.location_id == location_id).delete(
            synchronize_session=False
        )
        db.session.delete(location)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        current_app.logger.info("location deleted: id=%s name=%s", location_id, location.name)

    run_in_transaction(_op, commit=commit)
