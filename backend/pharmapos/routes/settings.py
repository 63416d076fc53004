# Overview: Flask API routes for branch settings.

# backend/pharmapos/routes/settings.py
"""
Branch settings routes.

Every role can read settings (the POS needs currency and tax rate);
only owners and managers can change them. Owners without a home branch
pick one with the X-Branch-Id header.
"""
from flask import Blueprint, request, jsonify

from ..decorators import require_auth, require_role
from ..permissions import ALL_ROLES, MANAGEMENT
from ..services import settings_service
from ..services.settings_service import SettingsNotFoundError, SettingsValidationError
from ..services.tenant_service import TenantAccessError, current_scope

settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.get("")
@require_auth
@require_role(*ALL_ROLES)
def get_all_settings_route():
    try:
        return jsonify({"settings": settings_service.get_all_settings(current_scope())}), 200
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 400


@settings_bp.get("/<section>")
@require_auth
@require_role(*ALL_ROLES)
def get_section_route(section: str):
    try:
        values = settings_service.get_settings(current_scope(), section)
    except SettingsNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"section": section, "settings": values}), 200


@settings_bp.put("/<section>")
@require_auth
@require_role(*MANAGEMENT)
def update_section_route(section: str):
    """Body: {key: value, ...}. Nothing is written if any key is invalid."""
    data = request.get_json(silent=True)
    try:
        values = settings_service.update_settings(current_scope(), section, data)
    except SettingsNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (SettingsValidationError, TenantAccessError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"section": section, "settings": values}), 200
