# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/backoffice/routes/orders.py
"""
Order API Routes

DESIGN:
- POST creates the order and reserves stock (FEFO or explicit fresh picks)
- PATCH /status drives the fulfillment state machine
- refund and delete are separate endpoints with their own guards
"""

from flask import Blueprint, request, current_app

from ..errors import CoreError, ValidationError, error_response
from ..services import order_service
from ..services.payment_service import get_payment_summary


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
def create_order_route():
    """
    Request body:
    {
        "customer_id": 1,
        "delivery_type": "delivery" | "pickup",
        "shipping_address": "...",        (delivery only)
        "shipping_fee_cents": 3000,       (optional)
        "status": "draft" | "pending",    (optional, default draft)
        "items": [
            {"product_id": 5, "quantity": 3},
            {"product_id": 9, "quantity": 2,
             "batch_selections": [{"batch_id": 4, "quantity": 2, "location_id": 1}]}
        ]
    }

    Returns:
        201: order with lines
        400: invalid input
        404: customer/product/batch not found
        409: insufficient stock
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        order = order_service.create_order(
            data.get("customer_id"),
            data.get("delivery_type") or "delivery",
            data.get("shipping_address"),
            data.get("items"),
            shipping_fee_cents=data.get("shipping_fee_cents", 0),
            created_by_user_id=data.get("created_by_user_id"),
            status=data.get("status") or "draft",
        )
        return {"order": order.to_dict()}, 201
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return {"error": "Internal server error"}, 500


@orders_bp.get("")
def list_orders_route():
    try:
        orders = order_service.list_orders(status=request.args.get("status"))
        return {"orders": [o.to_dict(include_lines=False) for o in orders]}, 200
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return {"error": "Internal server error"}, 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return {"order": order.to_dict(), "payments": get_payment_summary(order_id)}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return {"error": "Internal server error"}, 500


@orders_bp.patch("/<int:order_id>/status")
def update_status_route(order_id: int):
    """Request body: {"status": "processing", "reason": "optional (cancel)"}"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("status"):
            raise ValidationError("status is required")
        order = order_service.update_order_status(order_id, data["status"], reason=data.get("reason"))
        return {"order": order.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return {"error": "Internal server error"}, 500


@orders_bp.post("/<int:order_id>/refund")
def refund_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.refund_order(order_id, data.get("reason") or "")
        return {"order": order.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return {"error": "Internal server error"}, 500


@orders_bp.delete("/<int:order_id>")
def delete_route(order_id: int):
    try:
        order_service.delete_order(order_id)
        return {"deleted": True, "order_id": order_id}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return {"error": "Internal server error"}, 500
