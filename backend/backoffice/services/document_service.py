# Overview: Atomic document numbering for orders, payments and locations.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .concurrency import run_in_transaction


ORDER_PREFIX = "ORD"
PAYMENT_PREFIX = "PAY"
LOCATION_PREFIX = "LOC"


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current_number(document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    pad: int = 6,
    commit: bool = False,
) -> str:
    """
    Atomically allocate the next document number for a type.

    The increment is a single UPDATE, so two writers never read the same
    value. Runs inside the caller's transaction unless commit=True.
    """
    def _op() -> str:
        if not document_type:
            raise DocumentSequenceError("document_type is required")

        stmt = (
            update(DocumentSequence)
            .where(DocumentSequence.document_type == document_type)
            .values(next_number=DocumentSequence.next_number + 1)
            .execution_options(synchronize_session=False)
        )

        result = db.session.execute(stmt)
        if result.rowcount:
            next_num = _current_number(document_type) - 1
        else:
            seq = DocumentSequence(document_type=document_type, next_number=2)
            db.session.add(seq)
            try:
                db.session.flush()
                next_num = 1
            except IntegrityError:
                # Another writer created the sequence first. A failed flush
                # poisons the transaction, so only an owning caller recovers.
                if not commit:
                    raise
                db.session.rollback()
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                next_num = _current_number(document_type) - 1

        if commit:
            db.session.commit()
        return f"{prefix}-{next_num:0{pad}d}"

    return run_in_transaction(_op, commit=commit)
