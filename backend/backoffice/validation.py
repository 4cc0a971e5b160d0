from __future__ import annotations
from datetime import datetime
from backoffice.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

DELIVERY_TYPES = ("delivery", "pickup")
ADJUST_KINDS = ("on_hand", "shelve", "unshelve", "write_off")


class ValidationError(ValueError):
    """400-level input problem. Raised before anything touches the ledger."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """
    Strict integer coercion. All money is integer cents, so this is also the
    single normalization point for monetary input: floats, decimals and
    scientific notation are rejected rather than rounded.
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_positive_int(key: str, value: Any) -> int:
    if value is None:
        raise ValidationError(f"{key} is required")
    n = coerce_int(key, value)
    if n <= 0:
        raise ValidationError(f"{key} must be > 0")
    return n


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_price(key: str, value) -> None:
    if value is None:
        return
    if value < 0:
        raise ValidationError(f"{key} must be >= 0")
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")


def _check_percentage(key: str, value) -> None:
    if value is None:
        return
    if value < 0 or value > 100:
        raise ValidationError(f"{key} must be between 0 and 100")


def enforce_rules_batch(patch: dict) -> None:
    _check_price("cost_price_cents", patch.get("cost_price_cents"))
    _check_price("unit_price_cents", patch.get("unit_price_cents"))
    _check_percentage("discount_percentage", patch.get("discount_percentage"))

    if patch.get("quantity") is not None and patch["quantity"] < 0:
        raise ValidationError("quantity must be >= 0")

    mfg, expiry = patch.get("mfg_date"), patch.get("expiry_date")
    if mfg is not None and expiry is not None and expiry <= mfg:
        raise ValidationError("expiry_date must be after mfg_date")


def enforce_rules_location(patch: dict) -> None:
    if "max_capacity" in patch:
        if patch["max_capacity"] is None or patch["max_capacity"] < 1:
            raise ValidationError("max_capacity must be at least 1")


def enforce_rules_inventory_adjust(payload: dict) -> dict:
    """
    Normalize an inventory adjustment request.

    kind=on_hand:   warehouse receipt/correction, delta is signed and non-zero.
    kind=shelve:    move delta units from on hand to shelf.
    kind=unshelve:  move delta unreserved shelf units back to on hand.
    kind=write_off: remove delta unreserved units from the shelf.
    Every kind except on_hand needs delta > 0.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    kind = payload.get("kind", "on_hand")
    if kind not in ADJUST_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(ADJUST_KINDS)}")

    batch_id = coerce_positive_int("batch_id", payload.get("batch_id"))
    location_id = coerce_positive_int("location_id", payload.get("location_id"))

    if payload.get("delta") is None:
        raise ValidationError("delta is required")
    delta = coerce_int("delta", payload["delta"])
    if delta == 0:
        raise ValidationError("delta must be non-zero")
    if kind != "on_hand" and delta < 0:
        raise ValidationError(f"delta must be > 0 for {kind}")

    note = payload.get("note")
    return {
        "batch_id": batch_id,
        "location_id": location_id,
        "delta": delta,
        "kind": kind,
        "note": str(note).strip() if note else None,
    }


def _normalize_batch_selections(raw, index: int) -> list[dict] | None:
    if raw is None:
        return None
    if not isinstance(raw, list) or not raw:
        raise ValidationError(f"items[{index}].batch_selections must be a non-empty list")

    selections = []
    for j, sel in enumerate(raw):
        if not isinstance(sel, dict):
            raise ValidationError(f"items[{index}].batch_selections[{j}] must be an object")
        location_id = sel.get("location_id")
        selections.append({
            "batch_id": coerce_positive_int(f"items[{index}].batch_selections[{j}].batch_id", sel.get("batch_id")),
            "quantity": coerce_positive_int(f"items[{index}].batch_selections[{j}].quantity", sel.get("quantity")),
            "location_id": (
                coerce_positive_int(f"items[{index}].batch_selections[{j}].location_id", location_id)
                if location_id is not None else None
            ),
        })
    return selections


def enforce_rules_order_create(payload: dict) -> dict:
    """
    Validate the shape of an order creation request.

    Rules:
    - customer_id required
    - delivery_type in (delivery, pickup), default delivery
    - shipping_address required iff delivery
    - at least one item, each with product_id and quantity > 0
    - explicit batch_selections must add up to the item quantity
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    customer_id = coerce_positive_int("customer_id", payload.get("customer_id"))

    delivery_type = payload.get("delivery_type") or "delivery"
    if delivery_type not in DELIVERY_TYPES:
        raise ValidationError(f"delivery_type must be one of {', '.join(DELIVERY_TYPES)}")

    address = payload.get("shipping_address")
    address = str(address).strip() if address is not None else None
    if delivery_type == "delivery" and not address:
        raise ValidationError("shipping_address is required for delivery orders")
    if delivery_type == "pickup":
        address = None
    if address and len(address) > 300:
        raise ValidationError("shipping_address exceeds max length 300")

    fee = payload.get("shipping_fee_cents")
    shipping_fee_cents = coerce_int("shipping_fee_cents", fee) if fee is not None else 0
    _check_price("shipping_fee_cents", shipping_fee_cents)

    created_by = payload.get("created_by_user_id")
    created_by_user_id = coerce_int("created_by_user_id", created_by) if created_by is not None else None

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must have at least one item")

    normalized_items = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{i}] must be an object")
        quantity = coerce_positive_int(f"items[{i}].quantity", item.get("quantity"))
        selections = _normalize_batch_selections(item.get("batch_selections"), i)
        if selections is not None and sum(s["quantity"] for s in selections) != quantity:
            raise ValidationError(f"items[{i}].batch_selections must add up to quantity {quantity}")
        normalized_items.append({
            "product_id": coerce_positive_int(f"items[{i}].product_id", item.get("product_id")),
            "quantity": quantity,
            "batch_selections": selections,
        })

    return {
        "customer_id": customer_id,
        "delivery_type": delivery_type,
        "shipping_address": address,
        "shipping_fee_cents": shipping_fee_cents,
        "created_by_user_id": created_by_user_id,
        "items": normalized_items,
    }
