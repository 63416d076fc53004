# Overview: Service-layer operations for refunds against saved sales.

"""
Refunds

WHY: Money handed back to a customer must be traceable to the sale it came
from. A refund is a separate row; the sale keeps its amounts and only its
payment_status moves to "refunded".

RULES (create_refund):
- The sale must be in scope and not cancelled
- refund_amount is a positive integer in minor units
- The sale's completed and pending refunds never add up to more than its
  total_amount
- Refunds do not return stock

The sale row is locked and version-checked (Sale.version_id), so two
refunds racing for the same sale cannot both pass the total check.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import func

from ..extensions import db
from ..models import REFUND_METHODS, REFUND_STATUSES, Customer, Refund, Sale
from ..time_utils import parse_iso_date, start_of_month, today, utcnow
from ..validation import MAX_AMOUNT, ValidationError, require_positive_int
from .concurrency import lock_for_update, run_with_retry
from .listing import like_pattern, paginate
from .tenant_service import Scope, scoped_query

SORT_FIELDS = {
    "refund_date": Refund.refund_date,
    "refund_amount": Refund.refund_amount,
    "created_at": Refund.created_at,
}


class RefundError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def refunded_total(sale_id: int) -> int:
    """Sum of the sale's refunds that are not cancelled."""
    total = db.session.query(func.coalesce(func.sum(Refund.refund_amount), 0)).filter(
        Refund.sale_id == sale_id,
        Refund.status != "cancelled",
    ).scalar()
    return int(total)


def _refund_date(value: Any) -> date:
    if value in (None, ""):
        return today()
    if isinstance(value, str):
        try:
            parsed = parse_iso_date(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError("refund_date must be an ISO-8601 date")


def create_refund(scope: Scope, payload: dict) -> Refund:
    """
    Record a completed refund and mark the sale as refunded.

    Body keys: sale_id, refund_amount, refund_reason, refund_method
    (default "cash"), refund_date (default today), notes.
    """
    branch_id = scope.require_branch()

    sale_id = require_positive_int(payload.get("sale_id"), "sale_id")
    amount = require_positive_int(payload.get("refund_amount"), "refund_amount")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"refund_amount cannot exceed {MAX_AMOUNT}")

    reason = payload.get("refund_reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("refund_reason is required")

    method = payload.get("refund_method") or "cash"
    if method not in REFUND_METHODS:
        raise ValidationError(f"refund_method must be one of: {', '.join(REFUND_METHODS)}")

    refund_date = _refund_date(payload.get("refund_date"))
    notes = payload.get("notes")

    def _op():
        sale = lock_for_update(scoped_query(Sale, scope).filter(Sale.id == sale_id)).first()
        if sale is None:
            raise RefundError("Sale not found", {"sale_id": sale_id})
        if sale.status == "cancelled":
            raise RefundError("Cannot refund a cancelled sale", {"sale_id": sale_id})

        available = sale.total_amount - refunded_total(sale.id)
        if amount > available:
            raise RefundError(
                "Refund exceeds the amount left on the sale",
                {"sale_id": sale_id, "requested": amount, "available": max(available, 0)},
            )

        refund = Refund(
            tenant_id=scope.tenant_id,
            branch_id=branch_id,
            sale_id=sale.id,
            customer_id=sale.customer_id,
            user_id=scope.user_id,
            refund_date=refund_date,
            refund_amount=amount,
            refund_reason=reason.strip(),
            refund_method=method,
            status="completed",
            notes=notes,
        )
        db.session.add(refund)
        sale.payment_status = "refunded"
        db.session.commit()
        return refund

    return run_with_retry(_op)


def get_refund(refund_id: int, scope: Scope) -> Refund | None:
    return scoped_query(Refund, scope).filter(Refund.id == refund_id).first()


def cancel_refund(refund_id: int, scope: Scope) -> Refund | None:
    """
    Cancel a refund. When no live refund is left on the sale its
    payment_status goes back to "completed".
    """
    def _op():
        refund = lock_for_update(scoped_query(Refund, scope).filter(Refund.id == refund_id)).first()
        if refund is None:
            return None
        if refund.status == "cancelled":
            raise RefundError("Refund is already cancelled", {"refund_id": refund_id})

        refund.status = "cancelled"
        db.session.flush()
        if refunded_total(refund.sale_id) == 0:
            refund.sale.payment_status = "completed"
        db.session.commit()
        return refund

    return run_with_retry(_op)


def _refund_row(refund: Refund) -> dict:
    data = refund.to_dict()
    data["transaction_number"] = refund.sale.transaction_number if refund.sale else None
    data["customer_name"] = refund.customer.full_name if refund.customer else None
    data["processed_by"] = refund.user.full_name if refund.user else None
    return data


def list_refunds(
    scope: Scope,
    *,
    search: str | None = None,
    status: str | None = None,
    refund_method: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    sort_by: str | None = None,
    sort_order: str = "desc",
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Refund history.

    search matches the reason, the sale's transaction number and the
    customer's name. Defaults to newest refund_date first.
    """
    query = scoped_query(Refund, scope)

    if search:
        pattern = like_pattern(search)
        query = (
            query.join(Sale, Sale.id == Refund.sale_id)
            .outerjoin(Customer, Customer.id == Refund.customer_id)
            .filter(db.or_(
                Refund.refund_reason.ilike(pattern, escape="\\"),
                Sale.transaction_number.ilike(pattern, escape="\\"),
                Customer.first_name.ilike(pattern, escape="\\"),
                Customer.last_name.ilike(pattern, escape="\\"),
            ))
        )
    if status and status != "all":
        if status not in REFUND_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(REFUND_STATUSES)}")
        query = query.filter(Refund.status == status)
    if refund_method and refund_method != "all":
        query = query.filter(Refund.refund_method == refund_method)
    if date_from is not None:
        query = query.filter(Refund.refund_date >= date_from)
    if date_to is not None:
        query = query.filter(Refund.refund_date <= date_to)

    column = SORT_FIELDS.get(sort_by or "refund_date")
    if column is None:
        raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}")
    ordering = column.asc() if sort_order == "asc" else column.desc()
    query = query.order_by(ordering, Refund.id.desc())

    return paginate(query, page, per_page, serialize=_refund_row)


def refund_stats(scope: Scope) -> dict:
    """Completed refunds: count, amount, and this month's amount."""
    base = scoped_query(Refund, scope).filter(Refund.status == "completed")
    month_start = start_of_month(utcnow()).date()

    count, amount = base.with_entities(
        func.count(Refund.id), func.coalesce(func.sum(Refund.refund_amount), 0)
    ).one()
    month_amount = base.filter(Refund.refund_date >= month_start).with_entities(
        func.coalesce(func.sum(Refund.refund_amount), 0)
    ).scalar()

    return {
        "total_refunds": count,
        "refund_amount": int(amount),
        "month_refund_amount": int(month_amount),
    }