# Overview: Flask API routes for the generic table query, page and mutation surface.

# backend/pharmapos/routes/data.py
"""
Generic data routes.

GET  /api/data/<table>?select=a,b&order=col.desc&<col>=eq.<value>
GET  /api/data/<table>/page?page=0&page_size=20 (same select/order/filters)
POST /api/data/<table>   insert (object or list) or delete ({"id": n})

MULTI-TENANT: Every table is read through the caller's scope
(query_service.TABLES), so filters can narrow results but never widen
them past the tenant or branch.

SECURITY: Reads are open to every role. Mutations require owner or
manager.
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..permissions import ALL_ROLES, MANAGEMENT
from ..services import query_service
from ..services.purchase_service import PurchaseError
from ..services.query_service import QueryError
from ..services.tenant_service import TenantAccessError, current_scope
from ..validation import ValidationError, ConflictError

data_bp = Blueprint("data", __name__, url_prefix="/api/data")

RESERVED_ARGS = frozenset({"select", "order", "page", "page_size"})


def _parse_order(raw: str | None) -> dict | None:
    """"name.asc,id.desc" -> {"name": "asc", "id": "desc"}; no suffix means asc."""
    if not raw:
        return None
    order = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        column, _, direction = part.partition(".")
        order[column] = direction or "asc"
    return order


def _read_options() -> dict:
    filters = {k: v for k, v in request.args.items() if k not in RESERVED_ARGS}
    return {
        "columns": request.args.get("select", "*"),
        "filters": filters or None,
        "order_by": _parse_order(request.args.get("order")),
    }


def _query_error(e: QueryError):
    message = str(e)
    status = 404 if message.startswith("Unknown table") or message == "Row not found" else 400
    return jsonify({"error": message, "details": e.details}), status


@data_bp.get("/<table>")
@require_auth
@require_role(*ALL_ROLES)
def query_table_route(table: str):
    try:
        query_service.get_table(table)
    except QueryError as e:
        return _query_error(e)

    result = query_service.query(table, current_scope(), **_read_options())
    if result.status == "error":
        return jsonify(result.to_dict()), 400
    return jsonify(result.to_dict()), 200


@data_bp.get("/<table>/page")
@require_auth
@require_role(*ALL_ROLES)
def page_table_route(table: str):
    page = request.args.get("page", default=0, type=int)
    page_size = request.args.get("page_size", default=query_service.DEFAULT_PAGE_SIZE, type=int)
    try:
        result = query_service.fetch_page(
            table, current_scope(), page, page_size=min(page_size, query_service.MAX_LIMIT), **_read_options()
        )
    except QueryError as e:
        return _query_error(e)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result), 200


@data_bp.post("/<table>")
@require_auth
@require_role(*MANAGEMENT)
def mutate_table_route(table: str):
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"error": "JSON body required"}), 400

    try:
        result = query_service.mutation(table, payload, current_scope())
    except QueryError as e:
        return _query_error(e)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except PurchaseError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except TenantAccessError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to mutate %s", table)
        return jsonify({"error": "Internal server error"}), 500

    status = 201 if result["operation"] == "insert" else 200
    return jsonify(result), status
