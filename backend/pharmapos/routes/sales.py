# Overview: Flask API routes for sales; drafts, saves, history and receipts.

# backend/pharmapos/routes/sales.py
"""
Sales API routes

- POS / edit screens: GET /draft/<new|id>, POST /draft/preview, POST "" (new
  sale), PUT /<id> (edit). Saves run header, items and stock changes in one
  transaction.
- History screen: list, stats, delete (owner and manager)
- Refunds screen: list, record and cancel refunds (owner and manager)
- Detail screen: GET /<id>, receipts (text, HTML) and the WhatsApp share link
"""

from flask import Blueprint, Response, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..permissions import MANAGEMENT, SELLERS
from ..services import receipt_service, refund_service, sales_service, settings_service
from ..services.products_service import StockError
from ..services.receipt_service import ReceiptError
from ..services.refund_service import RefundError
from ..services.sales_service import SaleError
from ..services.tenant_service import TenantAccessError, current_scope
from ..time_utils import parse_iso_date
from ..validation import ConflictError, ValidationError


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _sale_error(e):
    status = 404 if str(e).endswith("not found") else 400
    return jsonify({"error": str(e), "details": e.details}), status


def _receipt_options(scope) -> tuple[str, str | None]:
    currency = settings_service.get_setting(scope, "general", "currency")
    footer = settings_service.get_setting(scope, "sales", "receipt_footer")
    return currency, footer


@sales_bp.get("")
@require_auth
@require_role(*MANAGEMENT)
def list_sales_route():
    """
    Sales history.

    Query params: search, status, payment_method, payment_status,
    customer_id, date_from, date_to (YYYY-MM-DD), page, per_page.
    """
    try:
        date_from = parse_iso_date(request.args.get("date_from"))
        date_to = parse_iso_date(request.args.get("date_to"))
    except ValueError:
        return jsonify({"error": "date_from/date_to must be YYYY-MM-DD"}), 400

    result = sales_service.list_sales(
        current_scope(),
        search=request.args.get("search"),
        status=request.args.get("status"),
        payment_method=request.args.get("payment_method"),
        payment_status=request.args.get("payment_status"),
        customer_id=request.args.get("customer_id", type=int),
        date_from=date_from,
        date_to=date_to,
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@sales_bp.get("/stats")
@require_auth
@require_role(*MANAGEMENT)
def sales_stats_route():
    try:
        return jsonify({"stats": sales_service.sales_stats(current_scope())}), 200
    except Exception:
        current_app.logger.exception("Failed to compute sales stats")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/draft/<sale_ref>")
@require_auth
@require_role(*SELLERS)
def load_draft_route(sale_ref: str):
    """Editable draft for "new" or an existing sale id."""
    if sale_ref != sales_service.NEW_SALE and not sale_ref.isdigit():
        return jsonify({"error": "Sale not found"}), 404
    try:
        draft = sales_service.load_draft(sale_ref, current_scope())
    except SaleError as e:
        return _sale_error(e)
    return jsonify({"draft": draft.to_dict()}), 200


@sales_bp.post("/draft/preview")
@require_auth
@require_role(*SELLERS)
def preview_draft_route():
    """
    Recompute a draft's totals without saving.

    Body: same as POST /api/sales, plus optional sale_id to start from a
    saved sale.
    """
    payload = dict(request.get_json(silent=True) or {})
    sale_ref = payload.pop("sale_id", None) or sales_service.NEW_SALE
    try:
        draft = sales_service.draft_from_payload(payload, current_scope(), sale_ref)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SaleError as e:
        return _sale_error(e)
    return jsonify({"draft": draft.to_dict()}), 200


def _save(payload: dict, sale_ref):
    scope = current_scope()
    try:
        draft = sales_service.draft_from_payload(payload, scope, sale_ref)
        sale = sales_service.save_draft(draft, scope)
        return sales_service.get_sale_detail(sale.id, scope), None
    except ValidationError as e:
        return None, (jsonify({"error": str(e)}), 400)
    except (SaleError, StockError) as e:
        return None, _sale_error(e)
    except TenantAccessError as e:
        return None, (jsonify({"error": str(e)}), 404)


@sales_bp.post("")
@require_auth
@require_role(*SELLERS)
def create_sale_route():
    """
    Save a new sale.

    Body: items=[{product_id, quantity, unit_price?, discount_amount?}],
    tax, discount, customer_id, sale_date, payment_method, payment_status,
    notes. Status is always "completed" for new sales.
    """
    try:
        detail, error = _save(request.get_json(silent=True) or {}, sales_service.NEW_SALE)
        if error:
            return error
        return jsonify(detail), 201
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.put("/<int:sale_id>")
@require_auth
@require_role(*SELLERS)
def update_sale_route(sale_id: int):
    """
    Save edits to an existing sale.

    Previously sold quantities go back to stock, then the new lines are
    taken out. An "items" key replaces all lines (an empty list leaves
    the sale with no items).
    """
    try:
        detail, error = _save(request.get_json(silent=True) or {}, sale_id)
        if error:
            return error
        return jsonify(detail), 200
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_role(*SELLERS)
def get_sale_route(sale_id: int):
    try:
        return jsonify(sales_service.get_sale_detail(sale_id, current_scope())), 200
    except SaleError as e:
        return _sale_error(e)


@sales_bp.delete("/<int:sale_id>")
@require_auth
@require_role(*MANAGEMENT)
def delete_sale_route(sale_id: int):
    """Delete a sale and its items. Stock is not returned."""
    try:
        deleted = sales_service.delete_sale(sale_id, current_scope())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    if not deleted:
        return jsonify({"error": "Sale not found"}), 404
    return jsonify({"message": "Sale deleted"}), 200


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

@sales_bp.get("/<int:sale_id>/receipt.txt")
@require_auth
@require_role(*SELLERS)
def text_receipt_route(sale_id: int):
    scope = current_scope()
    try:
        detail = sales_service.get_sale_detail(sale_id, scope)
    except SaleError as e:
        return _sale_error(e)

    currency, footer = _receipt_options(scope)
    body = receipt_service.render_text_receipt(detail, currency, footer)
    return Response(
        body,
        mimetype="text/plain",
        headers={"Content-Disposition": f'attachment; filename="{receipt_service.receipt_filename(detail)}"'},
    )


@sales_bp.get("/<int:sale_id>/receipt.html")
@require_auth
@require_role(*SELLERS)
def html_receipt_route(sale_id: int):
    scope = current_scope()
    try:
        detail = sales_service.get_sale_detail(sale_id, scope)
    except SaleError as e:
        return _sale_error(e)

    currency, footer = _receipt_options(scope)
    return Response(receipt_service.render_html_receipt(detail, currency, footer), mimetype="text/html")


@sales_bp.get("/<int:sale_id>/share/whatsapp")
@require_auth
@require_role(*SELLERS)
def whatsapp_share_route(sale_id: int):
    """WhatsApp link for the customer's phone (or ?phone= when it has none)."""
    scope = current_scope()
    try:
        detail = sales_service.get_sale_detail(sale_id, scope)
        currency, _footer = _receipt_options(scope)
        link = receipt_service.whatsapp_share_link(detail, currency, phone=request.args.get("phone"))
    except SaleError as e:
        return _sale_error(e)
    except ReceiptError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    return jsonify({"url": link}), 200


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def _refund_error(e: RefundError):
    status = 404 if str(e).endswith("not found") else 400
    return jsonify({"error": str(e), "details": e.details}), status


@sales_bp.get("/refunds")
@require_auth
@require_role(*MANAGEMENT)
def list_refunds_route():
    """
    Refund history.

    Query params: search, status, refund_method, date_from, date_to,
    sort_by (refund_date|refund_amount|created_at), sort_order, page, per_page.
    """
    try:
        result = refund_service.list_refunds(
            current_scope(),
            search=request.args.get("search"),
            status=request.args.get("status"),
            refund_method=request.args.get("refund_method"),
            date_from=parse_iso_date(request.args.get("date_from")),
            date_to=parse_iso_date(request.args.get("date_to")),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order", "desc"),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "date_from/date_to must be YYYY-MM-DD"}), 400
    return jsonify(result), 200


@sales_bp.post("/refunds")
@require_auth
@require_role(*MANAGEMENT)
def create_refund_route():
    """
    Body: sale_id, refund_amount, refund_reason, refund_method
    (cash|card|bank_transfer|mobile_money), refund_date, notes.
    """
    try:
        refund = refund_service.create_refund(current_scope(), request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except RefundError as e:
        return _refund_error(e)
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"refund": refund.to_dict(), "sale": refund.sale.to_dict()}), 201


@sales_bp.get("/refunds/<int:refund_id>")
@require_auth
@require_role(*MANAGEMENT)
def get_refund_route(refund_id: int):
    refund = refund_service.get_refund(refund_id, current_scope())
    if refund is None:
        return jsonify({"error": "Refund not found"}), 404
    return jsonify({"refund": refund.to_dict()}), 200


@sales_bp.post("/refunds/<int:refund_id>/cancel")
@require_auth
@require_role(*MANAGEMENT)
def cancel_refund_route(refund_id: int):
    try:
        refund = refund_service.cancel_refund(refund_id, current_scope())
    except RefundError as e:
        return _refund_error(e)
    if refund is None:
        return jsonify({"error": "Refund not found"}), 404
    return jsonify({"refund": refund.to_dict(), "sale": refund.sale.to_dict()}), 200
