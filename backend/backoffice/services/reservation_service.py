# Overview: Order-level reservation, release, consumption and restore over the stock ledger.

"""
Reservation bookkeeping for orders.

Each order line carries stock_status (RESERVED, RELEASED, CONSUMED,
RESTORED). Moving a line out of its source state is a guarded UPDATE on
that line; only the caller that wins the line performs the ledger call.
A repeated release/consume/restore therefore finds nothing to do.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import InsufficientStockError
from ..models import OrderLine
from . import stock_ledger
from .concurrency import guarded_update, run_in_transaction


def reserve_for_order(order_id: int | None, allocations, *, commit: bool = True) -> list:
    """
    Reserve every allocation tuple, all or nothing.

    On the first failing tuple the tuples reserved earlier in this call are
    released again, then InsufficientStockError is raised with the failing
    tuple's details.
    """
    allocations = list(allocations)

    def _op():
        done = []
        for alloc in allocations:
            try:
                stock_ledger.reserve(
                    alloc.batch_id,
                    alloc.location_id,
                    alloc.quantity,
                    order_id=order_id,
                    commit=False,
                )
            except InsufficientStockError as exc:
                for prev in reversed(done):
                    stock_ledger.release(
                        prev.batch_id,
                        prev.location_id,
                        prev.quantity,
                        order_id=order_id,
                        note="reservation rolled back",
                        commit=False,
                    )
                current_app.logger.warning(
                    "reservation rolled back: order=%s batch=%s location=%s requested=%s",
                    order_id,
                    alloc.batch_id,
                    alloc.location_id,
                    alloc.quantity,
                )
                raise InsufficientStockError(str(exc), details=exc.details) from exc
            done.append(alloc)

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return done

    return run_in_transaction(_op, commit=commit)


def _lines_in_state(order_id: int, stock_status: str) -> list[OrderLine]:
    return (
        db.session.query(OrderLine)
        .filter(OrderLine.order_id == order_id, OrderLine.stock_status == stock_status)
        .order_by(OrderLine.id.asc())
        .execution_options(populate_existing=True)
        .all()
    )


def _claim_line(line: OrderLine, from_status: str, to_status: str) -> bool:
    return guarded_update(
        OrderLine,
        guards=[OrderLine.id == line.id, OrderLine.stock_status == from_status],
        values={"stock_status": to_status},
    )


def _transition_lines(order_id: int, from_status: str, to_status: str, ledger_call, *, commit: bool) -> int:
    def _op():
        moved = 0
        for line in _lines_in_state(order_id, from_status):
            if not _claim_line(line, from_status, to_status):
                continue
            ledger_call(
                line.batch_id,
                line.location_id,
                line.quantity,
                order_id=order_id,
                commit=False,
            )
            moved += 1

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return moved

    return run_in_transaction(_op, commit=commit)


def release_for_order(order_id: int, *, commit: bool = True) -> int:
    """RESERVED lines -> RELEASED. Returns the number of lines released."""
    return _transition_lines(order_id, "RESERVED", "RELEASED", stock_ledger.release, commit=commit)


def consume_for_order(order_id: int, *, commit: bool = True) -> int:
    """RESERVED lines -> CONSUMED (units leave the shelf)."""
    return _transition_lines(order_id, "RESERVED", "CONSUMED", stock_ledger.consume, commit=commit)


def restore_for_order(order_id: int, *, commit: bool = True) -> int:
    """CONSUMED lines -> RESTORED (units go back on the shelf)."""
    return _transition_lines(order_id, "CONSUMED", "RESTORED", stock_ledger.restore, commit=commit)


def reserved_quantity_for_order(order_id: int) -> int:
    return (
        db.session.query(db.func.coalesce(db.func.sum(OrderLine.quantity), 0))
        .filter(OrderLine.order_id == order_id, OrderLine.stock_status == "RESERVED")
        .scalar()
    )

