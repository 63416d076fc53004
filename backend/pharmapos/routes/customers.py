# Overview: Flask API routes for customers, their sales history and loyalty points.

# backend/pharmapos/routes/customers.py
"""
Customer and loyalty routes.

MULTI-TENANT: Customers are branch scoped; the loyalty ledger is reached
through the customer, so a customer id from another branch is a 404.

SECURITY:
- Every role can view customers
- Owners, managers and cashiers can create/edit customers and adjust points
- Deleting customers requires owner or manager
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..models import Customer
from ..permissions import ALL_ROLES, MANAGEMENT, SELLERS
from ..services import customers_service, loyalty_service
from ..services.customers_service import CUSTOMER_POLICY
from ..services.loyalty_service import LoyaltyError
from ..services.tenant_service import TenantAccessError, current_scope
from ..validation import validate_payload, ValidationError, ConflictError

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
@require_auth
@require_role(*ALL_ROLES)
def list_customers_route():
    """
    Query params: search, status, gender, sort_by, sort_order, page, per_page.
    """
    result = customers_service.list_customers(
        current_scope(),
        search=request.args.get("search"),
        status=request.args.get("status"),
        gender=request.args.get("gender"),
        sort_by=request.args.get("sort_by"),
        sort_order=request.args.get("sort_order", "desc"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@customers_bp.get("/stats")
@require_auth
@require_role(*ALL_ROLES)
def customer_stats_route():
    try:
        return jsonify({"stats": customers_service.customer_stats(current_scope())}), 200
    except Exception:
        current_app.logger.exception("Failed to compute customer stats")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>")
@require_auth
@require_role(*ALL_ROLES)
def get_customer_route(customer_id: int):
    customer = customers_service.get_customer(customer_id, current_scope())
    if customer is None:
        return jsonify({"error": "Customer not found"}), 404
    return jsonify({"customer": customer.to_dict()}), 200


@customers_bp.get("/<int:customer_id>/sales")
@require_auth
@require_role(*ALL_ROLES)
def customer_sales_route(customer_id: int):
    scope = current_scope()
    if customers_service.get_customer(customer_id, scope) is None:
        return jsonify({"error": "Customer not found"}), 404
    sales = customers_service.customer_sales(customer_id, scope)
    return jsonify({"items": [s.to_dict() for s in sales], "count": len(sales)}), 200


@customers_bp.post("")
@require_auth
@require_role(*SELLERS)
def create_customer_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False)
        customer = customers_service.create_customer(current_scope(), patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({"customer": customer.to_dict()}), 201


@customers_bp.put("/<int:customer_id>")
@require_auth
@require_role(*SELLERS)
def update_customer_route(customer_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=True)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    customer = customers_service.update_customer(customer_id, current_scope(), patch)
    if customer is None:
        return jsonify({"error": "Customer not found"}), 404
    return jsonify({"customer": customer.to_dict()}), 200


@customers_bp.delete("/<int:customer_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_customer_route(customer_id: int):
    try:
        deleted = customers_service.delete_customer(customer_id, current_scope())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if not deleted:
        return jsonify({"error": "Customer not found"}), 404
    return jsonify({"message": "Customer deleted"}), 200


# ---------------------------------------------------------------------------
# Loyalty points
# ---------------------------------------------------------------------------

@customers_bp.get("/<int:customer_id>/loyalty")
@require_auth
@require_role(*ALL_ROLES)
def loyalty_history_route(customer_id: int):
    """Balance, reconciliation and the newest ledger rows (?limit=, default 20)."""
    scope = current_scope()
    limit = request.args.get("limit", default=loyalty_service.DEFAULT_HISTORY_LIMIT, type=int)
    try:
        balance = loyalty_service.reconcile_balance(customer_id, scope)
    except LoyaltyError as e:
        return jsonify({"error": str(e), "details": e.details}), 404

    entries = loyalty_service.list_transactions(customer_id, scope, limit=max(1, min(limit, 100)))
    return jsonify({
        "balance": balance,
        "transactions": [t.to_dict() for t in entries],
    }), 200


def _loyalty_write(customer_id: int, operation):
    data = request.get_json(silent=True) or {}
    expected = data.get("expected_balance")
    if expected is not None and (isinstance(expected, bool) or not isinstance(expected, int)):
        return jsonify({"error": "expected_balance must be an integer"}), 400

    try:
        customer, entry = operation(
            customer_id,
            data.get("points"),
            data.get("reason"),
            current_scope(),
            expected_balance=expected,
        )
    except LoyaltyError as e:
        status = 404 if str(e) == "Customer not found" else 400
        return jsonify({"error": str(e), "details": e.details}), status
    except Exception:
        current_app.logger.exception("Failed to update loyalty points")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "customer": customer.to_dict(),
        "transaction": entry.to_dict(),
        "balance": customer.loyalty_points,
    }), 201


@customers_bp.post("/<int:customer_id>/loyalty/add")
@require_auth
@require_role(*SELLERS)
def add_points_route(customer_id: int):
    """Body: points (positive integer), reason, optional expected_balance."""
    return _loyalty_write(customer_id, loyalty_service.add_points)


@customers_bp.post("/<int:customer_id>/loyalty/redeem")
@require_auth
@require_role(*SELLERS)
def redeem_points_route(customer_id: int):
    """Body: points (positive integer, at most the balance), reason, optional expected_balance."""
    return _loyalty_write(customer_id, loyalty_service.redeem_points)
