# Overview: Service-layer operations for products, categories and stock.

"""
Products Service with Multi-Tenant Support

MULTI-TENANT: All product operations are tenant + branch scoped.
- list/get only ever see rows of scope.branch_id
- create stamps tenant_id/branch_id from the scope, never from the payload
- category_id/supplier_id references are validated against the same branch

CONCURRENCY: Product.quantity is shared between the sale flow and purchase
receipts. adjust_stock() changes it with a single UPDATE statement so two
cashiers selling the last unit cannot both write a stale snapshot back.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import case, func

from ..extensions import db
from ..models import Category, Product, PurchaseOrderItem, SaleItem, StockAuditItem, Supplier
from ..time_utils import start_of_month, today, utcnow
from ..validation import ConflictError, ModelValidationPolicy, ValidationError
from .listing import like_pattern, paginate
from .realtime_service import record_change
from .tenant_service import Scope, scoped_query

PRODUCT_STATUSES = ("active", "inactive", "discontinued")
CATEGORY_STATUSES = ("active", "inactive")

# Products expiring within this window count as "expiring soon"
EXPIRY_WARNING_DAYS = 30

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "sku", "barcode", "manufacturer", "description",
        "category_id", "supplier_id", "price", "cost_price", "quantity",
        "min_stock_level", "reorder_point", "batch_number", "expiry_date", "status",
    },
    required_on_create={"name", "price"},
    choices={"status": PRODUCT_STATUSES},
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "parent_id", "status"},
    required_on_create={"name"},
    choices={"status": CATEGORY_STATUSES},
)


class StockError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _require_reference(model, object_id, scope: Scope, label: str) -> None:
    if object_id is None:
        return
    if scoped_query(model, scope).filter(model.id == object_id).first() is None:
        raise ValidationError(f"{label} not found")


def _check_sku_unique(scope: Scope, sku: str | None, exclude_id: int | None = None) -> None:
    if not sku:
        return
    query = scoped_query(Product, scope).filter(Product.sku == sku)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first():
        raise ConflictError("SKU already exists for this branch.")


def list_products(
    scope: Scope,
    *,
    search: str | None = None,
    category_id: int | None = None,
    supplier_id: int | None = None,
    status: str | None = None,
    stock_status: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "asc",
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Branch-scoped product listing.

    stock_status:
    - out_of_stock: quantity == 0
    - low_stock: 0 < quantity <= min_stock_level
    - in_stock: quantity > 0
    """
    query = scoped_query(Product, scope)

    if search:
        pattern = like_pattern(search)
        query = query.filter(db.or_(
            Product.name.ilike(pattern, escape="\\"),
            Product.sku.ilike(pattern, escape="\\"),
            Product.barcode.ilike(pattern, escape="\\"),
            Product.description.ilike(pattern, escape="\\"),
        ))
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if supplier_id is not None:
        query = query.filter(Product.supplier_id == supplier_id)
    if status:
        query = query.filter(Product.status == status)

    if stock_status == "out_of_stock":
        query = query.filter(Product.quantity == 0)
    elif stock_status == "low_stock":
        query = query.filter(Product.quantity > 0, Product.quantity <= Product.min_stock_level)
    elif stock_status == "in_stock":
        query = query.filter(Product.quantity > 0)
    elif stock_status not in (None, "", "all"):
        raise ValidationError(f"Unknown stock_status: {stock_status}")

    sortable = {"name", "price", "quantity", "created_at", "expiry_date", "sku"}
    column = getattr(Product, sort_by) if sort_by in sortable else Product.name
    ordering = column.desc() if sort_order == "desc" else column.asc()
    query = query.order_by(ordering, Product.id.asc())

    return paginate(query, page, per_page)


def get_product(product_id: int, scope: Scope) -> Product | None:
    return scoped_query(Product, scope).filter(Product.id == product_id).first()


def create_product(scope: Scope, patch: dict, *, commit: bool = True) -> Product:
    branch_id = scope.require_branch()

    _check_sku_unique(scope, patch.get("sku"))
    _require_reference(Category, patch.get("category_id"), scope, "Category")
    _require_reference(Supplier, patch.get("supplier_id"), scope, "Supplier")

    product = Product(tenant_id=scope.tenant_id, branch_id=branch_id)
    for key, value in patch.items():
        setattr(product, key, value)

    db.session.add(product)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return product


def update_product(product_id: int, scope: Scope, patch: dict) -> Product | None:
    """
    Apply a validated patch to a product.

    Stock can be set directly here (stock take). version_id makes a
    concurrent sale's atomic decrement and this write detect each other.
    """
    product = get_product(product_id, scope)
    if product is None:
        return None

    if "sku" in patch and patch["sku"] != product.sku:
        _check_sku_unique(scope, patch["sku"], exclude_id=product.id)
    if "category_id" in patch:
        _require_reference(Category, patch["category_id"], scope, "Category")
    if "supplier_id" in patch:
        _require_reference(Supplier, patch["supplier_id"], scope, "Supplier")

    for key, value in patch.items():
        setattr(product, key, value)

    db.session.commit()
    return product


def delete_product(product_id: int, scope: Scope, *, commit: bool = True) -> bool:
    """
    Delete a product no sale or purchase order refers to.

    Raises ConflictError otherwise; set the status to "discontinued" instead.
    """
    product = get_product(product_id, scope)
    if product is None:
        return False

    if db.session.query(SaleItem.id).filter_by(product_id=product.id).first():
        raise ConflictError("Cannot delete product with existing sales records")
    if db.session.query(PurchaseOrderItem.id).filter_by(product_id=product.id).first():
        raise ConflictError("Cannot delete product with purchase orders")

    # Audit items keep their product_name snapshot
    db.session.query(StockAuditItem).filter_by(product_id=product.id).update(
        {"product_id": None}, synchronize_session=False
    )
    db.session.delete(product)
    if commit:
        db.session.commit()
    return True


def product_exists(product_id: int | None, scope: Scope) -> bool:
    if product_id is None:
        return False
    return scoped_query(Product, scope).filter(Product.id == product_id).first() is not None


def adjust_stock(product_id: int, delta: int, scope: Scope) -> Product:
    """
    Atomically add delta to a product's quantity, flooring at zero.

    Decrements compile to
        UPDATE products SET quantity = CASE WHEN quantity > n THEN quantity - n ELSE 0 END
    so the new value is computed by the database from the current row,
    not from a snapshot the caller read earlier. version_id is bumped so
    concurrent ORM writers see a stale row and retry.

    Does not commit: callers run this inside their own transaction.
    """
    if delta >= 0:
        new_quantity = Product.quantity + delta
    else:
        amount = -delta
        new_quantity = case((Product.quantity > amount, Product.quantity - amount), else_=0)

    updated = (
        scoped_query(Product, scope)
        .filter(Product.id == product_id)
        .update(
            {
                Product.quantity: new_quantity,
                Product.version_id: Product.version_id + 1,
                Product.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if not updated:
        raise StockError("Product not found", {"product_id": product_id})

    product = db.session.get(Product, product_id, populate_existing=True)
    record_change(product, "UPDATE")
    return product


def stock_stats(scope: Scope) -> dict:
    """
    Inventory KPIs for the branch, computed in SQL.

    low stock follows the list filter: 0 < quantity <= min_stock_level.
    """
    base = scoped_query(Product, scope)
    month_start = start_of_month(utcnow())
    expiry_cutoff = today() + timedelta(days=EXPIRY_WARNING_DAYS)

    row = base.with_entities(
        func.count(Product.id),
        func.coalesce(func.sum(case((Product.status == "active", 1), else_=0)), 0),
        func.coalesce(func.sum(case(
            (db.and_(Product.quantity > 0, Product.quantity <= Product.min_stock_level), 1),
            else_=0,
        )), 0),
        func.coalesce(func.sum(case((Product.quantity == 0, 1), else_=0)), 0),
        func.coalesce(func.sum(Product.quantity * Product.price), 0),
        func.coalesce(func.sum(Product.quantity), 0),
        func.coalesce(func.sum(case((Product.created_at >= month_start, 1), else_=0)), 0),
        func.coalesce(func.sum(case((
            db.and_(
                Product.expiry_date.isnot(None),
                Product.expiry_date >= today(),
                Product.expiry_date <= expiry_cutoff,
            ), 1), else_=0)), 0),
        func.coalesce(func.sum(case((
            db.and_(Product.expiry_date.isnot(None), Product.expiry_date < today()), 1), else_=0)), 0),
    ).one()

    total, active, low, out, value, units, added, expiring, expired = row
    return {
        "total_products": total,
        "active_products": int(active),
        "low_stock_products": int(low),
        "out_of_stock_products": int(out),
        "total_stock_value": int(value),
        "average_stock_level": round(int(units) / total, 2) if total else 0,
        "products_added_this_month": int(added),
        "expiring_soon": int(expiring),
        "expired": int(expired),
    }


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def list_categories(scope: Scope, *, search: str | None = None, status: str | None = None,
                    parent_id: int | None = None) -> list[Category]:
    query = scoped_query(Category, scope)
    if search:
        query = query.filter(Category.name.ilike(like_pattern(search), escape="\\"))
    if status:
        query = query.filter(Category.status == status)
    if parent_id is not None:
        query = query.filter(Category.parent_id == parent_id)
    return query.order_by(Category.name.asc()).all()


def get_category(category_id: int, scope: Scope) -> Category | None:
    return scoped_query(Category, scope).filter(Category.id == category_id).first()


def _check_category_name(scope: Scope, name: str, exclude_id: int | None = None) -> None:
    query = scoped_query(Category, scope).filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise ConflictError("Category name already exists for this branch.")


def create_category(scope: Scope, patch: dict, *, commit: bool = True) -> Category:
    branch_id = scope.require_branch()
    _check_category_name(scope, patch["name"])
    _require_reference(Category, patch.get("parent_id"), scope, "Parent category")

    category = Category(tenant_id=scope.tenant_id, branch_id=branch_id)
    for key, value in patch.items():
        setattr(category, key, value)

    db.session.add(category)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return category


def update_category(category_id: int, scope: Scope, patch: dict) -> Category | None:
    category = get_category(category_id, scope)
    if category is None:
        return None

    if "name" in patch and patch["name"] != category.name:
        _check_category_name(scope, patch["name"], exclude_id=category.id)
    if patch.get("parent_id") is not None:
        if patch["parent_id"] == category.id:
            raise ValidationError("A category cannot be its own parent")
        _require_reference(Category, patch["parent_id"], scope, "Parent category")

    for key, value in patch.items():
        setattr(category, key, value)

    db.session.commit()
    return category


def delete_category(category_id: int, scope: Scope, *, commit: bool = True) -> bool:
    category = get_category(category_id, scope)
    if category is None:
        return False
    in_use = scoped_query(Product, scope).filter(Product.category_id == category.id).count()
    if in_use:
        raise ConflictError("Category is assigned to products.")
    db.session.delete(category)
    if commit:
        db.session.commit()
    return True
