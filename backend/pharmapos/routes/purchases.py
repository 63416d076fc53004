# Overview: Flask API routes for purchase orders and receiving stock.

# backend/pharmapos/routes/purchases.py
"""
Purchase order routes (owner and manager only).

Receiving increments product stock with atomic updates and can only
happen once per order.
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..permissions import MANAGEMENT
from ..services import purchase_service
from ..services.products_service import StockError
from ..services.purchase_service import PurchaseError
from ..services.tenant_service import TenantAccessError, current_scope
from ..validation import ValidationError

purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")


def _purchase_error(e: PurchaseError):
    status = 404 if str(e).endswith("not found") else 400
    return jsonify({"error": str(e), "details": e.details}), status


@purchases_bp.get("")
@require_auth
@require_role(*MANAGEMENT)
def list_purchase_orders_route():
    """Query params: status, payment_status, supplier_id, search, page, per_page."""
    result = purchase_service.list_purchase_orders(
        current_scope(),
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        supplier_id=request.args.get("supplier_id", type=int),
        search=request.args.get("search"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@purchases_bp.get("/<int:order_id>")
@require_auth
@require_role(*MANAGEMENT)
def get_purchase_order_route(order_id: int):
    order = purchase_service.get_purchase_order(order_id, current_scope())
    if order is None:
        return jsonify({"error": "Purchase order not found"}), 404
    return jsonify({"purchase_order": purchase_service.purchase_order_detail(order)}), 200


@purchases_bp.post("")
@require_auth
@require_role(*MANAGEMENT)
def create_purchase_order_route():
    """
    Body: supplier_id, items=[{product_id, quantity, unit_cost?}], optional
    order_date, expected_delivery_date, discount, tax, notes.
    """
    payload = request.get_json(silent=True) or {}
    try:
        order = purchase_service.create_purchase_order(current_scope(), payload)
        return jsonify({"purchase_order": purchase_service.purchase_order_detail(order)}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchases_bp.put("/<int:order_id>")
@require_auth
@require_role(*MANAGEMENT)
def update_purchase_order_route(order_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        order = purchase_service.update_purchase_order(order_id, current_scope(), payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PurchaseError as e:
        return _purchase_error(e)

    if order is None:
        return jsonify({"error": "Purchase order not found"}), 404
    return jsonify({"purchase_order": purchase_service.purchase_order_detail(order)}), 200


@purchases_bp.post("/<int:order_id>/cancel")
@require_auth
@require_role(*MANAGEMENT)
def cancel_purchase_order_route(order_id: int):
    try:
        order = purchase_service.cancel_purchase_order(order_id, current_scope())
    except PurchaseError as e:
        return _purchase_error(e)

    if order is None:
        return jsonify({"error": "Purchase order not found"}), 404
    return jsonify({"purchase_order": order.to_dict()}), 200


@purchases_bp.post("/<int:order_id>/receive")
@require_auth
@require_role(*MANAGEMENT)
def receive_purchase_order_route(order_id: int):
    """Body (optional): items=[{item_id, received_quantity}]; unlisted lines are received in full."""
    data = request.get_json(silent=True) or {}
    received_items = data.get("items")
    if received_items is not None and not isinstance(received_items, list):
        return jsonify({"error": "items must be a list"}), 400

    try:
        order = purchase_service.receive_purchase_order(order_id, current_scope(), received_items)
        return jsonify({"purchase_order": purchase_service.purchase_order_detail(order)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except (PurchaseError, StockError) as e:
        status = 404 if str(e).endswith("not found") else 400
        return jsonify({"error": str(e), "details": e.details}), status
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchases_bp.delete("/<int:order_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_purchase_order_route(order_id: int):
    try:
        deleted = purchase_service.delete_purchase_order(order_id, current_scope())
    except PurchaseError as e:
        return _purchase_error(e)

    if not deleted:
        return jsonify({"error": "Purchase order not found"}), 404
    return jsonify({"message": "Purchase order deleted"}), 200
