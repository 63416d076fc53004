# Overview: Flask API routes for stock audits.

# backend/pharmapos/routes/audits.py
"""
Stock audit routes (owner and manager only).

Counts are recorded against an open audit; completing it applies each
counted difference to stock exactly once.
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..permissions import MANAGEMENT
from ..services import audit_service
from ..services.audit_service import AuditError
from ..services.products_service import StockError
from ..services.tenant_service import TenantAccessError, current_scope
from ..time_utils import parse_iso_date
from ..validation import ValidationError

audits_bp = Blueprint("audits", __name__, url_prefix="/api/audits")


def _audit_error(e):
    status = 404 if str(e).endswith("not found") else 400
    return jsonify({"error": str(e), "details": e.details}), status


@audits_bp.get("")
@require_auth
@require_role(*MANAGEMENT)
def list_audits_route():
    """Query params: status, date_from, date_to, page, per_page."""
    try:
        result = audit_service.list_audits(
            current_scope(),
            status=request.args.get("status"),
            date_from=parse_iso_date(request.args.get("date_from")),
            date_to=parse_iso_date(request.args.get("date_to")),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "date_from/date_to must be YYYY-MM-DD"}), 400
    return jsonify(result), 200


@audits_bp.get("/<int:audit_id>")
@require_auth
@require_role(*MANAGEMENT)
def get_audit_route(audit_id: int):
    audit = audit_service.get_audit(audit_id, current_scope())
    if audit is None:
        return jsonify({"error": "Audit not found"}), 404
    return jsonify({"audit": audit_service.audit_detail(audit)}), 200


@audits_bp.post("")
@require_auth
@require_role(*MANAGEMENT)
def create_audit_route():
    """Body: audit_date, notes, product_ids=[...] or all_products=true."""
    try:
        audit = audit_service.create_audit(current_scope(), request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except AuditError as e:
        return _audit_error(e)
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"audit": audit_service.audit_detail(audit)}), 201


@audits_bp.put("/<int:audit_id>/counts")
@require_auth
@require_role(*MANAGEMENT)
def record_counts_route(audit_id: int):
    """Body: counts=[{product_id, actual_quantity, notes?}]."""
    payload = request.get_json(silent=True) or {}
    try:
        audit = audit_service.record_counts(audit_id, current_scope(), payload.get("counts"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except AuditError as e:
        return _audit_error(e)
    return jsonify({"audit": audit_service.audit_detail(audit)}), 200


@audits_bp.post("/<int:audit_id>/complete")
@require_auth
@require_role(*MANAGEMENT)
def complete_audit_route(audit_id: int):
    try:
        audit = audit_service.complete_audit(audit_id, current_scope())
    except (AuditError, StockError) as e:
        return _audit_error(e)
    except Exception:
        current_app.logger.exception("Failed to complete audit %s", audit_id)
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"audit": audit_service.audit_detail(audit)}), 200


@audits_bp.post("/<int:audit_id>/cancel")
@require_auth
@require_role(*MANAGEMENT)
def cancel_audit_route(audit_id: int):
    try:
        audit = audit_service.cancel_audit(audit_id, current_scope())
    except AuditError as e:
        return _audit_error(e)
    return jsonify({"audit": audit_service.audit_detail(audit)}), 200
