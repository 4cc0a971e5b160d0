# Overview: Flask API routes for payments; parses input and returns JSON responses.

# backend/backoffice/routes/payments.py
"""
Payment API Routes

DESIGN:
- Payments are recorded against orders (split/partial allowed)
- Every change re-derives the order payment status
- Refunds here move money only; goods are returned via /api/orders/<id>/refund
"""

from flask import Blueprint, request, current_app

from ..errors import CoreError, ValidationError, error_response
from ..services import payment_service


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _payment_response(payment, status: int = 200):
    return {
        "payment": payment.to_dict(),
        "summary": payment_service.get_payment_summary(payment.order_id),
    }, status


@payments_bp.post("")
def record_payment_route():
    """
    Request body:
    {
        "order_id": 123,
        "amount_cents": 10000,
        "method": "cash" | "bank_transfer" | "card",
        "status": "completed" | "pending",   (optional, default completed)
        "reference": "TX-1",                 (optional)
        "notes": "..."                       (optional)
    }
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        if data.get("order_id") is None:
            raise ValidationError("order_id is required")
        payment = payment_service.record_payment(
            data["order_id"],
            data.get("amount_cents"),
            data.get("method") or "cash",
            status=data.get("status") or "completed",
            reference=data.get("reference"),
            notes=data.get("notes"),
        )
        return _payment_response(payment, 201)
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return {"error": "Internal server error"}, 500


@payments_bp.get("/orders/<int:order_id>")
def order_payments_route(order_id: int):
    try:
        return {"summary": payment_service.get_payment_summary(order_id)}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load payment summary")
        return {"error": "Internal server error"}, 500


@payments_bp.post("/<int:payment_id>/complete")
def complete_route(payment_id: int):
    try:
        return _payment_response(payment_service.complete_payment(payment_id))
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete payment")
        return {"error": "Internal server error"}, 500


@payments_bp.post("/<int:payment_id>/fail")
def fail_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        return _payment_response(payment_service.fail_payment(payment_id, data.get("reason")))
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark payment failed")
        return {"error": "Internal server error"}, 500


@payments_bp.post("/<int:payment_id>/cancel")
def cancel_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        return _payment_response(payment_service.cancel_payment(payment_id, data.get("reason")))
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel payment")
        return {"error": "Internal server error"}, 500


@payments_bp.post("/<int:payment_id>/refund")
def refund_route(payment_id: int):
    """Request body: {"amount_cents": 500, "reason": "..."} (amount defaults to the full remainder)"""
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.refund_payment(
            payment_id,
            data.get("amount_cents"),
            data.get("reason"),
        )
        return _payment_response(payment)
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund payment")
        return {"error": "Internal server error"}, 500
