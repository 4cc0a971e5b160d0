from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


PAYMENT_METHODS = ("cash", "bank_transfer", "card")

class Payment(db.Model):
    """
    Payment recorded against an order.

    order_id is a WEAK link (plain indexed integer, no foreign key):
    deleting a draft order keeps its payment history.

    Multiple payments per order are allowed (split and partial payments).
    Refunds are tracked on the payment itself via refunded_amount_cents.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("payment_number", name="uq_payments_number"),
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        db.CheckConstraint("refunded_amount_cents >= 0", name="ck_payments_refunded_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "PAY-000042")
    payment_number = db.Column(db.String(32), nullable=False)

    order_id = db.Column(db.Integer, nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    refunded_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    method = db.Column(db.String(32), nullable=False, default="cash")
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Reference info (bank transfer id, card auth code, ...)
    reference = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def net_amount_cents(self) -> int:
        return self.amount_cents - (self.refunded_amount_cents or 0)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} order={self.order_id} amount={self.amount_cents} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_number": self.payment_number,
            "order_id": self.order_id,
            "amount_cents": self.amount_cents,
            "refunded_amount_cents": self.refunded_amount_cents,
            "net_amount_cents": self.net_amount_cents,
            "method": self.method,
            "status": self.status,
            "reference": self.reference,
            "notes": self.notes,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
        }
