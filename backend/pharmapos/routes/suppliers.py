# Overview: Flask API routes for supplier management.

# backend/pharmapos/routes/suppliers.py
"""
Supplier routes (owner and manager only).

MULTI-TENANT: Suppliers are branch scoped.
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..models import Supplier
from ..permissions import MANAGEMENT
from ..services import suppliers_service
from ..services.suppliers_service import SUPPLIER_POLICY, enforce_rules_supplier
from ..services.tenant_service import TenantAccessError, current_scope
from ..validation import validate_payload, ValidationError, ConflictError

suppliers_bp = Blueprint("suppliers", __name__, url_prefix="/api/suppliers")


@suppliers_bp.get("")
@require_auth
@require_role(*MANAGEMENT)
def list_suppliers_route():
    """Query params: search, status, sort_by, sort_order, page, per_page."""
    result = suppliers_service.list_suppliers(
        current_scope(),
        search=request.args.get("search"),
        status=request.args.get("status"),
        sort_by=request.args.get("sort_by"),
        sort_order=request.args.get("sort_order", "asc"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@suppliers_bp.get("/stats")
@require_auth
@require_role(*MANAGEMENT)
def supplier_stats_route():
    try:
        return jsonify({"stats": suppliers_service.supplier_stats(current_scope())}), 200
    except Exception:
        current_app.logger.exception("Failed to compute supplier stats")
        return jsonify({"error": "Internal server error"}), 500


@suppliers_bp.get("/<int:supplier_id>")
@require_auth
@require_role(*MANAGEMENT)
def get_supplier_route(supplier_id: int):
    supplier = suppliers_service.get_supplier(supplier_id, current_scope())
    if supplier is None:
        return jsonify({"error": "Supplier not found"}), 404
    return jsonify({"supplier": supplier.to_dict()}), 200


@suppliers_bp.post("")
@require_auth
@require_role(*MANAGEMENT)
def create_supplier_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=False)
        enforce_rules_supplier(patch)
        supplier = suppliers_service.create_supplier(current_scope(), patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({"supplier": supplier.to_dict()}), 201


@suppliers_bp.put("/<int:supplier_id>")
@require_auth
@require_role(*MANAGEMENT)
def update_supplier_route(supplier_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=True)
        enforce_rules_supplier(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    supplier = suppliers_service.update_supplier(supplier_id, current_scope(), patch)
    if supplier is None:
        return jsonify({"error": "Supplier not found"}), 404
    return jsonify({"supplier": supplier.to_dict()}), 200


@suppliers_bp.delete("/<int:supplier_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_supplier_route(supplier_id: int):
    try:
        deleted = suppliers_service.delete_supplier(supplier_id, current_scope())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if not deleted:
        return jsonify({"error": "Supplier not found"}), 404
    return jsonify({"message": "Supplier deleted"}), 200
