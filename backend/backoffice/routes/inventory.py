# Overview: Flask API routes for stock adjustments and stock queries.

# backend/backoffice/routes/inventory.py
"""
Inventory API Routes

POST /api/inventory/adjust
    kind=on_hand:   warehouse receipt (delta > 0) or correction (delta < 0)
    kind=shelve:    move delta units from on hand to shelf
    kind=unshelve:  move delta unreserved units from shelf back to on hand
    kind=write_off: remove delta unreserved units from the shelf

All quantity changes go through the stock ledger; nothing here writes a
StockRecord directly.
"""

from flask import Blueprint, request, current_app

from ..errors import CoreError, ValidationError, error_response
from ..services import stock_ledger
from ..validation import coerce_positive_int, enforce_rules_inventory_adjust


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def adjust_inventory(batch_id: int, location_id: int, delta: int, kind: str = "on_hand", note: str | None = None):
    if kind == "shelve":
        return stock_ledger.shelve_stock(batch_id, location_id, delta, note=note)
    if kind == "unshelve":
        return stock_ledger.unshelve_stock(batch_id, location_id, delta, note=note)
    if kind == "write_off":
        return stock_ledger.write_off_shelf(batch_id, location_id, delta, note=note)
    return stock_ledger.adjust_on_hand(batch_id, location_id, delta, note=note)


@inventory_bp.post("/adjust")
def adjust_route():
    """
    Request body:
    {
        "batch_id": 1,
        "location_id": 2,
        "delta": 10,
        "kind": "on_hand" | "shelve" | "unshelve" | "write_off",
        "note": "optional"
    }
    """
    try:
        data = enforce_rules_inventory_adjust(request.get_json(silent=True))
        record = adjust_inventory(**data)
        return {"stock": record.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return {"error": "Internal server error"}, 500


@inventory_bp.get("/stock")
def list_stock_route():
    """Stock records filtered by product_id, batch_id or location_id."""
    try:
        filters = {}
        for key in ("product_id", "batch_id", "location_id"):
            raw = request.args.get(key)
            if raw is not None:
                filters[key] = coerce_positive_int(key, raw)
        records = stock_ledger.list_stock(**filters)
        return {"stock": [r.to_dict() for r in records]}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock")
        return {"error": "Internal server error"}, 500


@inventory_bp.get("/movements")
def list_movements_route():
    try:
        filters = {}
        for key in ("batch_id", "location_id", "order_id"):
            raw = request.args.get(key)
            if raw is not None:
                filters[key] = coerce_positive_int(key, raw)
        if request.args.get("movement_type"):
            filters["movement_type"] = request.args["movement_type"]
        movements = stock_ledger.list_movements(**filters)
        return {"movements": [m.to_dict() for m in movements]}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return {"error": "Internal server error"}, 500
