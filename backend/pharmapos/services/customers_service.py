# Overview: Service-layer operations for customers; listing, stats and sales history.

"""
Customers Service

MULTI-TENANT: Customers are branch scoped. Loyalty balances are NOT
writable here; they only change through loyalty_service so the ledger and
the denormalized balance cannot drift.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Customer, LoyaltyTransaction, Sale
from ..time_utils import start_of_month, utcnow
from ..validation import ConflictError, ModelValidationPolicy
from .listing import like_pattern, paginate
from .tenant_service import Scope, scoped_query

CUSTOMER_STATUSES = ("active", "inactive")
GENDERS = ("male", "female", "other")

CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={
        "first_name", "last_name", "email", "phone", "address",
        "date_of_birth", "gender", "status", "notes",
    },
    required_on_create={"first_name", "last_name"},
    choices={"status": CUSTOMER_STATUSES, "gender": GENDERS},
)

SORTABLE_FIELDS = {"first_name", "last_name", "created_at", "total_spent", "loyalty_points", "last_purchase_date"}


def list_customers(
    scope: Scope,
    *,
    search: str | None = None,
    status: str | None = None,
    gender: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "desc",
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Newest first unless sort_by names one of SORTABLE_FIELDS."""
    query = scoped_query(Customer, scope)

    if search:
        pattern = like_pattern(search)
        query = query.filter(db.or_(
            Customer.first_name.ilike(pattern, escape="\\"),
            Customer.last_name.ilike(pattern, escape="\\"),
            Customer.email.ilike(pattern, escape="\\"),
            Customer.phone.ilike(pattern, escape="\\"),
        ))
    if status:
        query = query.filter(Customer.status == status)
    if gender:
        query = query.filter(Customer.gender == gender)

    column = getattr(Customer, sort_by) if sort_by in SORTABLE_FIELDS else Customer.created_at
    ordering = column.asc() if sort_order == "asc" else column.desc()
    query = query.order_by(ordering, Customer.id.desc())

    return paginate(query, page, per_page)


def get_customer(customer_id: int, scope: Scope) -> Customer | None:
    return scoped_query(Customer, scope).filter(Customer.id == customer_id).first()


def create_customer(scope: Scope, patch: dict, *, commit: bool = True) -> Customer:
    branch_id = scope.require_branch()
    customer = Customer(
        tenant_id=scope.tenant_id,
        branch_id=branch_id,
        created_by=scope.user_id,
        loyalty_points=0,
    )
    for key, value in patch.items():
        setattr(customer, key, value)

    db.session.add(customer)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return customer


def update_customer(customer_id: int, scope: Scope, patch: dict) -> Customer | None:
    customer = get_customer(customer_id, scope)
    if customer is None:
        return None
    for key, value in patch.items():
        setattr(customer, key, value)
    db.session.commit()
    return customer


def delete_customer(customer_id: int, scope: Scope, *, commit: bool = True) -> bool:
    """
    Delete a customer with no sales.

    Raises ConflictError when sales reference the customer; history rows
    must keep pointing at a real customer.
    """
    customer = get_customer(customer_id, scope)
    if customer is None:
        return False

    has_sales = scoped_query(Sale, scope).filter(Sale.customer_id == customer.id).first()
    if has_sales:
        raise ConflictError("Cannot delete customer with existing sales records")

    has_ledger = db.session.query(LoyaltyTransaction.id).filter_by(customer_id=customer.id).first()
    if has_ledger:
        raise ConflictError("Cannot delete customer with loyalty history")

    db.session.delete(customer)
    if commit:
        db.session.commit()
    return True


def customer_sales(customer_id: int, scope: Scope) -> list[Sale]:
    return (
        scoped_query(Sale, scope)
        .filter(Sale.customer_id == customer_id)
        .order_by(Sale.sale_date.desc(), Sale.id.desc())
        .all()
    )


def customer_stats(scope: Scope) -> dict:
    month_start = start_of_month(utcnow())
    customers = scoped_query(Customer, scope)

    total = customers.count()
    active = customers.filter(Customer.status == "active").count()
    new_this_month = customers.filter(Customer.created_at >= month_start).count()

    sales_count, revenue = (
        scoped_query(Sale, scope)
        .filter(Sale.customer_id.isnot(None))
        .with_entities(func.count(Sale.id), func.coalesce(func.sum(Sale.total_amount), 0))
        .one()
    )

    return {
        "total_customers": total,
        "active_customers": active,
        "new_customers_this_month": new_this_month,
        "total_sales": sales_count,
        "total_revenue": int(revenue),
        "average_order_value": round(int(revenue) / sales_count) if sales_count else 0,
    }
