# Overview: Flask API routes for storage locations and their capacity.

# backend/backoffice/routes/locations.py

from flask import Blueprint, request, current_app

from ..errors import CoreError, ValidationError, error_response
from ..services import location_registry


locations_bp = Blueprint("locations", __name__, url_prefix="/api/locations")


@locations_bp.get("")
def list_locations_route():
    try:
        include_inactive = request.args.get("include_inactive", "false").lower() == "true"
        locations = location_registry.list_locations(include_inactive=include_inactive)
        return {"locations": [loc.to_dict() for loc in locations]}, 200
    except Exception:
        current_app.logger.exception("Failed to list locations")
        return {"error": "Internal server error"}, 500


@locations_bp.post("")
def create_location_route():
    """Request body: {"name": "A-01", "max_capacity": 100}"""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        location = location_registry.create_location(
            data.get("name"),
            data.get("max_capacity", 100),
        )
        return {"location": location.to_dict()}, 201
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create location")
        return {"error": "Internal server error"}, 500


@locations_bp.get("/<int:location_id>/capacity")
def capacity_route(location_id: int):
    try:
        return {"capacity": location_registry.capacity_summary(location_id)}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load location capacity")
        return {"error": "Internal server error"}, 500


@locations_bp.patch("/<int:location_id>/capacity")
def update_capacity_route(location_id: int):
    try:
        data = request.get_json(silent=True) or {}
        location = location_registry.update_capacity(location_id, data.get("max_capacity"))
        return {"location": location.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update location capacity")
        return {"error": "Internal server error"}, 500


@locations_bp.post("/<int:location_id>/deactivate")
def deactivate_route(location_id: int):
    try:
        location = location_registry.deactivate_location(location_id)
        return {"location": location.to_dict()}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate location")
        return {"error": "Internal server error"}, 500


@locations_bp.delete("/<int:location_id>")
def delete_route(location_id: int):
    try:
        location_registry.delete_location(location_id)
        return {"deleted": True, "location_id": location_id}, 200
    except (CoreError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete location")
        return {"error": "Internal server error"}, 500
