from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z, to_iso_date


SALE_STATUSES = ("pending", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "partial", "completed", "refunded")
PAYMENT_METHODS = ("cash", "card", "mobile_money", "insurance", "credit")
REFUND_METHODS = ("cash", "card", "bank_transfer", "mobile_money")
REFUND_STATUSES = ("pending", "completed", "cancelled")


class Sale(db.Model):
    """
    Sale header.

    Amounts are integer minor currency units and must satisfy
    total_amount == subtotal - discount + tax, with subtotal equal to the
    sum of the item totals. Edits overwrite the header and replace the
    items wholesale inside one transaction (see sales_service.save_draft).
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "transaction_number", name="uq_sales_branch_txn"),
        db.Index("ix_sales_branch_status_date", "branch_id", "status", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Human-readable number, e.g. "SALE-1760601600000"
    transaction_number = db.Column(db.String(64), nullable=False)
    sale_date = db.Column(db.Date, nullable=False)

    subtotal = db.Column(db.Integer, nullable=False, default=0)
    tax = db.Column(db.Integer, nullable=False, default=0)
    discount = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    cashier = db.relationship("User", foreign_keys=[cashier_id])
    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SaleItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
            "cashier_id": self.cashier_id,
            "transaction_number": self.transaction_number,
            "sale_date": to_iso_date(self.sale_date),
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "total_amount": self.total_amount,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SaleItem(db.Model):
    """Line item owned by exactly one sale."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    # Snapshot of the product name at sale time
    product_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Integer, nullable=False)
    total_price = db.Column(db.Integer, nullable=False)
    cost_price = db.Column(db.Integer, nullable=True)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "cost_price": self.cost_price,
            "discount_amount": self.discount_amount,
            "created_at": to_utc_z(self.created_at),
        }


class Refund(db.Model):
    """
    Money returned against a sale.

    Refunds never touch stock. The sum of a sale's non-cancelled refunds
    never exceeds its total_amount (see refund_service.create_refund).
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.Index("ix_refunds_branch_date", "branch_id", "refund_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    refund_date = db.Column(db.Date, nullable=False)
    refund_amount = db.Column(db.Integer, nullable=False)
    refund_reason = db.Column(db.String(255), nullable=False)
    refund_method = db.Column(db.String(32), nullable=False, default="cash")
    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("refunds", lazy=True))
    customer = db.relationship("Customer")
    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "refund_date": to_iso_date(self.refund_date),
            "refund_amount": self.refund_amount,
            "refund_reason": self.refund_reason,
            "refund_method": self.refund_method,
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
