# Overview: Flask API routes for products, categories and stock statistics.

# backend/pharmapos/routes/products.py
"""
Product and category routes with multi-tenant support.

MULTI-TENANT: All operations are scoped to the caller's tenant and branch
(current_scope() from g, set by @require_auth).

SECURITY:
- Reads are open to every role (stock screens)
- Product writes require owner or manager
- Categories can be created by any role that sees the categories screen
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..models import Category, Product
from ..permissions import ALL_ROLES, MANAGEMENT
from ..services import audit_service, products_service
from ..services.products_service import CATEGORY_POLICY, PRODUCT_POLICY
from ..services.tenant_service import TenantAccessError, current_scope
from ..validation import (
    validate_payload,
    enforce_rules_product,
    ValidationError,
    ConflictError,
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
@require_role(*ALL_ROLES)
def list_products_route():
    """
    List products of the current branch.

    Query params:
    - search, category_id, supplier_id, status
    - stock_status: all | in_stock | low_stock | out_of_stock
    - sort_by, sort_order (asc|desc)
    - page (1-indexed, omit for all), per_page (default 20, max 100)
    """
    try:
        result = products_service.list_products(
            current_scope(),
            search=request.args.get("search"),
            category_id=request.args.get("category_id", type=int),
            supplier_id=request.args.get("supplier_id", type=int),
            status=request.args.get("status"),
            stock_status=request.args.get("stock_status"),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order", "asc"),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404


@products_bp.get("/stats")
@require_auth
@require_role(*MANAGEMENT)
def stock_stats_route():
    """Inventory KPIs for the stock summary screen, with open and recent audits."""
    try:
        scope = current_scope()
        stats = products_service.stock_stats(scope)
        stats.update(audit_service.audit_stats(scope))
        return jsonify({"stats": stats}), 200
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to compute stock stats")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
@require_auth
@require_role(*ALL_ROLES)
def get_product_route(product_id: int):
    product = products_service.get_product(product_id, current_scope())
    if product is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"product": product.to_dict()}), 200


@products_bp.post("")
@require_auth
@require_role(*MANAGEMENT)
def create_product_route():
    """Create a product in the current branch."""
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        product = products_service.create_product(current_scope(), patch)
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"product": product.to_dict()}), 201


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(*MANAGEMENT)
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        product = products_service.update_product(product_id, current_scope(), patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if product is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"product": product.to_dict()}), 200


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_product_route(product_id: int):
    try:
        deleted = products_service.delete_product(product_id, current_scope())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if not deleted:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"message": "Product deleted"}), 200


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@products_bp.get("/categories")
@require_auth
@require_role(*ALL_ROLES)
def list_categories_route():
    categories = products_service.list_categories(
        current_scope(),
        search=request.args.get("search"),
        status=request.args.get("status"),
        parent_id=request.args.get("parent_id", type=int),
    )
    return jsonify({"items": [c.to_dict() for c in categories], "count": len(categories)}), 200


@products_bp.post("/categories")
@require_auth
@require_role(*ALL_ROLES)
def create_category_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Category, payload=payload, policy=CATEGORY_POLICY, partial=False)
        category = products_service.create_category(current_scope(), patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({"category": category.to_dict()}), 201


@products_bp.put("/categories/<int:category_id>")
@require_auth
@require_role(*ALL_ROLES)
def update_category_route(category_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Category, payload=payload, policy=CATEGORY_POLICY, partial=True)
        category = products_service.update_category(category_id, current_scope(), patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if category is None:
        return jsonify({"error": "Category not found"}), 404
    return jsonify({"category": category.to_dict()}), 200


@products_bp.delete("/categories/<int:category_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_category_route(category_id: int):
    try:
        deleted = products_service.delete_category(category_id, current_scope())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    if not deleted:
        return jsonify({"error": "Category not found"}), 404
    return jsonify({"message": "Category deleted"}), 200
