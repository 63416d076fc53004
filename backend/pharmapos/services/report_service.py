# Overview: Tenant-wide dashboard aggregates across branches.

"""
Tenant dashboard

MULTI-TENANT: The owner sees every branch of their tenant side by side.
Figures per branch come from the same functions the branch screens use,
run with a Scope naming that branch; tenant totals use a Scope without a
branch, which scoped_query widens to the whole tenant.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Branch, Sale, User
from .audit_service import audit_stats
from .products_service import stock_stats
from .sales_service import sales_stats
from .tenant_service import Scope, scoped_query

TOP_SELLERS = 5


def top_sellers(scope: Scope, limit: int = TOP_SELLERS) -> list[dict]:
    """Cashiers ranked by revenue of their non-cancelled sales."""
    rows = (
        scoped_query(Sale, scope)
        .filter(Sale.status != "cancelled", Sale.cashier_id.isnot(None))
        .join(User, User.id == Sale.cashier_id)
        .with_entities(
            User.id,
            User.first_name,
            User.last_name,
            User.email,
            func.count(Sale.id),
            func.coalesce(func.sum(Sale.total_amount), 0),
        )
        .group_by(User.id, User.first_name, User.last_name, User.email)
        .order_by(func.sum(Sale.total_amount).desc(), User.id)
        .limit(limit)
        .all()
    )
    return [
        {
            "user_id": user_id,
            "name": " ".join(p for p in (first, last) if p) or email,
            "sales": count,
            "revenue": int(revenue),
        }
        for user_id, first, last, email, count, revenue in rows
    ]


def tenant_overview(tenant_id: int) -> dict:
    tenant_scope = Scope(tenant_id=tenant_id, branch_id=None)

    branches = []
    for branch in db.session.query(Branch).filter_by(tenant_id=tenant_id).order_by(Branch.name):
        scope = Scope(tenant_id=tenant_id, branch_id=branch.id)
        branches.append({
            "branch": branch.to_dict(),
            "sales": sales_stats(scope),
            "stock": stock_stats(scope),
        })

    stock = stock_stats(tenant_scope)
    stock.update(audit_stats(tenant_scope))

    return {
        "sales": sales_stats(tenant_scope),
        "stock": stock,
        "top_sellers": top_sellers(tenant_scope),
        "branches": branches,
    }
