from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


ORDER_STATUSES = (
    "draft",
    "pending",
    "processing",
    "shipping",
    "delivered",
    "cancelled",
    "refunded",
)


class Order(db.Model):
    """
    Customer order (delivery or pickup, also used for POS walk-in sales).

    TWO STATE MACHINES:
    - status: draft -> pending -> processing -> shipping -> delivered,
      cancelled from any pre-delivered state, refunded only from delivered
    - payment_status: derived from payments by payment_service

    Money is frozen at creation: discount_percentage comes from the customer
    tier at that moment and line prices are snapshots.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "ORD-000123")
    order_number = db.Column(db.String(32), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    delivery_type = db.Column(db.String(16), nullable=False, default="delivery")
    shipping_address = db.Column(db.String(300), nullable=True)

    # Money (in cents)
    shipping_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_percentage = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)

    # Lifecycle timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancellation_reason = db.Column(db.String(255), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status} payment={self.payment_status}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "delivery_type": self.delivery_type,
            "shipping_address": self.shipping_address,
            "shipping_fee_cents": self.shipping_fee_cents,
            "discount_percentage": self.discount_percentage,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "cancellation_reason": self.cancellation_reason,
            "refund_reason": self.refund_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    One (batch, location, quantity) slice of an order.

    stock_status tracks what the ledger has done for this slice:
    RESERVED -> RELEASED (cancel/delete), RESERVED -> CONSUMED (delivery),
    CONSUMED -> RESTORED (refund). Changed only by reservation_service.
    """
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False, index=True)
    # Weak link: locations can be deleted once empty
    location_id = db.Column(db.Integer, nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)

    # Snapshot of the batch price at allocation time (in cents)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    stock_status = db.Column(db.String(16), nullable=False, default="RESERVED", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    batch = db.relationship("Batch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_status": self.stock_status,
        }
