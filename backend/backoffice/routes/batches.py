# Overview: Flask API routes for batches: registration, FEFO preview, disposal, promotions.

# backend/backoffice/routes/batches.py

from flask import Blueprint, request, current_app

from ..extensions import db
from ..errors import CoreError, ValidationError, error_response
from ..models import Batch
from ..services import batch_catalog
from ..services.fefo_allocator import plan_allocation
from ..validation import ModelValidationPolicy, coerce_int, coerce_positive_int, validate_payload


batches_bp = Blueprint("batches", __name__, url_prefix="/api/batches")


BATCH_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id",
        "batch_code",
        "cost_price_cents",
        "unit_price_cents",
        "quantity",
        "mfg_date",
        "expiry_date",
        "notes",
    },
    required_on_create={"product_id", "batch_code"},
)


@batches_bp.post("")
def create_batch_route():
    """
    Register a batch. With "location_id" the quantity is received on hand
    at that location.
    """
    try:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")
        payload = dict(payload)
        location_id = payload.pop("location_id", None)
        patch = validate_payload(model=Batch, payload=payload, policy=BATCH_POLICY, partial=False)
        if location_id is not None:
            patch["location_id"] = coerce_positive_int("location_id", location_id)
        batch = batch_catalog.create_batch(**patch)
        return {"batch": batch.to_dict()}, 201
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create batch")
        return {"error": "Internal server error"}, 500


@batches_bp.get("/<int:batch_id>")
def get_batch_route(batch_id: int):
    try:
        batch = batch_catalog.get_batch(batch_id)
        data = batch.to_dict()
        data["current_unit_price_cents"] = batch_catalog.current_unit_price_cents(batch)
        return {"batch": data}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load batch")
        return {"error": "Internal server error"}, 500


@batches_bp.get("/fefo/<int:product_id>")
def fefo_preview_route(product_id: int):
    """
    FEFO allocation preview for ?quantity=N (default: list active batches).
    Nothing is reserved. On success, overdue batches found on the way are
    committed as expired.
    """
    try:
        raw = request.args.get("quantity")
        if raw is None:
            batches = [b.to_dict() for b in batch_catalog.list_active_batches_for_product(product_id)]
            db.session.commit()
            return {"product_id": product_id, "batches": batches}, 200
        quantity = coerce_positive_int("quantity", raw)
        plan = plan_allocation(product_id, quantity)
        db.session.commit()
        return {
            "product_id": product_id,
            "quantity": quantity,
            "allocations": [a.to_dict() for a in plan],
        }, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to plan FEFO allocation")
        return {"error": "Internal server error"}, 500


@batches_bp.post("/<int:batch_id>/dispose")
def dispose_batch_route(batch_id: int):
    try:
        data = request.get_json(silent=True) or {}
        batch = batch_catalog.mark_disposed(batch_id, data.get("reason"))
        return {"batch": batch.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to dispose batch")
        return {"error": "Internal server error"}, 500


@batches_bp.post("/<int:batch_id>/promotion")
def promotion_route(batch_id: int):
    """
    {"discount_percentage": 25} applies a promotion,
    {"discount_percentage": 0} clears it.
    """
    try:
        data = request.get_json(silent=True) or {}
        pct = coerce_int("discount_percentage", data.get("discount_percentage"))
        if pct == 0:
            batch = batch_catalog.clear_promotion(batch_id)
        else:
            batch = batch_catalog.apply_promotion(batch_id, pct)
        result = batch.to_dict()
        result["current_unit_price_cents"] = batch_catalog.current_unit_price_cents(batch)
        return {"batch": result}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update batch promotion")
        return {"error": "Internal server error"}, 500


@batches_bp.post("/fresh-promotions")
def fresh_promotions_route():
    try:
        return {"result": batch_catalog.apply_fresh_promotions()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply fresh promotions")
        return {"error": "Internal server error"}, 500
