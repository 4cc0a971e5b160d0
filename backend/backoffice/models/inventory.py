from __future__ import annotations

from sqlalchemy import event, inspect

from ..extensions import db
from ..errors import BatchImmutableError
from backoffice.time_utils import to_utc_z


BATCH_STATUS_ACTIVE = "active"
BATCH_STATUS_EXPIRED = "expired"
BATCH_STATUS_DISPOSED = "disposed"


class Batch(db.Model):
    """
    A production/receipt batch of exactly one product.

    LIFECYCLE:
    - active -> expired: observed lazily when expiry_date < now is read
    - active -> disposed: explicit operator action
    - expired and disposed are terminal

    IMMUTABLE: everything except status, promotion fields and notes is fixed
    once the batch exists (see _guard_batch_immutability below).

    PRICING: current price = unit_price_cents minus discount_percentage while
    promotion_applied is set.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.UniqueConstraint("batch_code", name="uq_batches_code"),
        # FEFO scan: active batches of a product by expiry
        db.Index("ix_batches_product_status_expiry", "product_id", "status", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    batch_code = db.Column(db.String(64), nullable=False)

    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    # Quantity produced/received for this batch (informational, not stock)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    mfg_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=BATCH_STATUS_ACTIVE, index=True)

    promotion_applied = db.Column(db.Boolean, nullable=False, default=False)
    discount_percentage = db.Column(db.Integer, nullable=False, default=0)
    promotion_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))

    def __repr__(self) -> str:
        return f"<Batch id={self.id} code={self.batch_code!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_code": self.batch_code,
            "cost_price_cents": self.cost_price_cents,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "mfg_date": to_utc_z(self.mfg_date) if self.mfg_date else None,
            "expiry_date": to_utc_z(self.expiry_date) if self.expiry_date else None,
            "status": self.status,
            "promotion_applied": self.promotion_applied,
            "discount_percentage": self.discount_percentage,
            "promotion_applied_at": to_utc_z(self.promotion_applied_at) if self.promotion_applied_at else None,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


BATCH_MUTABLE_FIELDS = frozenset({
    "status",
    "promotion_applied",
    "discount_percentage",
    "promotion_applied_at",
    "notes",
})


@event.listens_for(Batch, "before_update")
def _guard_batch_immutability(mapper, connection, target):
    state = inspect(target)
    changed = [
        attr.key
        for attr in state.attrs
        if attr.key not in BATCH_MUTABLE_FIELDS
        and attr.key in mapper.columns
        and attr.history.has_changes()
    ]
    if changed:
        raise BatchImmutableError(
            "Batch fields are immutable once created",
            details={"batch_id": target.id, "fields": sorted(changed)},
        )


class Location(db.Model):
    """
    Named storage slot (warehouse bin or shelf) with a unit capacity.

    Occupancy is SUM(quantity_on_hand + quantity_on_shelf) of the stock
    records at this location and may never exceed max_capacity.
    """
    __tablename__ = "locations"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_locations_code"),
        db.UniqueConstraint("name", name="uq_locations_name"),
        db.CheckConstraint("max_capacity >= 1", name="ck_locations_capacity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(50), nullable=False)
    max_capacity = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Location id={self.id} name={self.name!r} max={self.max_capacity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "max_capacity": self.max_capacity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockRecord(db.Model):
    """
    Quantities for one (batch, location) pair. The only contended rows in
    the system.

    INVARIANTS (enforced by guarded UPDATEs in stock_ledger, backed by
    check constraints):
    - quantity_on_hand >= 0
    - quantity_on_shelf >= 0
    - 0 <= quantity_reserved <= quantity_on_shelf

    Never modify quantities through the ORM; every write goes through
    services.stock_ledger. version is bumped by each guarded update.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "location_id", name="uq_stock_records_batch_location"),
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_stock_on_hand_nonneg"),
        db.CheckConstraint("quantity_on_shelf >= 0", name="ck_stock_on_shelf_nonneg"),
        db.CheckConstraint("quantity_reserved >= 0", name="ck_stock_reserved_nonneg"),
        db.CheckConstraint("quantity_reserved <= quantity_on_shelf", name="ck_stock_reserved_le_shelf"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    quantity_on_shelf = db.Column(db.Integer, nullable=False, default=0)
    quantity_reserved = db.Column(db.Integer, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    batch = db.relationship("Batch", backref=db.backref("stock_records", lazy=True))
    location = db.relationship("Location", backref=db.backref("stock_records", lazy=True))

    @property
    def quantity_available(self) -> int:
        return self.quantity_on_shelf - self.quantity_reserved

    def __repr__(self) -> str:
        return (
            f"<StockRecord batch={self.batch_id} location={self.location_id} "
            f"on_hand={self.quantity_on_hand} on_shelf={self.quantity_on_shelf} "
            f"reserved={self.quantity_reserved}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "location_id": self.location_id,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_on_shelf": self.quantity_on_shelf,
            "quantity_reserved": self.quantity_reserved,
            "quantity_available": self.quantity_available,
            "version": self.version,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit trail of ledger mutations.

    One row per successful StockLedger call, written in the same DB
    transaction as the quantity change it records.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_batch_location", "batch_id", "location_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False)
    # Weak link: locations can be deleted once empty
    location_id = db.Column(db.Integer, nullable=False, index=True)

    # RECEIVE, ADJUST, SHELVE, RESERVE, RELEASE, CONSUME, RESTORE
    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    order_id = db.Column(db.Integer, nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "location_id": self.location_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "order_id": self.order_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
