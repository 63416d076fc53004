from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z, to_iso_date


LOYALTY_TRANSACTION_TYPES = ("earned", "redeemed", "expired", "adjusted")


class Customer(db.Model):
    """
    Pharmacy customer, branch scoped.

    total_purchases, total_spent and loyalty_points are denormalized
    aggregates. loyalty_points must equal points_balance_after of the
    customer's latest LoyaltyTransaction; loyalty_service writes both in
    the same transaction.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_branch_status", "branch_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    date_of_birth = db.Column(db.Date, nullable=True)
    gender = db.Column(db.String(16), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="active")  # active, inactive
    notes = db.Column(db.Text, nullable=True)

    total_purchases = db.Column(db.Integer, nullable=False, default=0)
    total_spent = db.Column(db.Integer, nullable=False, default=0)
    last_purchase_date = db.Column(db.DateTime(timezone=True), nullable=True)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "date_of_birth": to_iso_date(self.date_of_birth),
            "gender": self.gender,
            "status": self.status,
            "notes": self.notes,
            "total_purchases": self.total_purchases,
            "total_spent": self.total_spent,
            "last_purchase_date": to_utc_z(self.last_purchase_date) if self.last_purchase_date else None,
            "loyalty_points": self.loyalty_points,
            "created_by": self.created_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - earned: points from a sale
    - redeemed: points spent by the customer
    - expired: points removed by policy
    - adjusted: manual addition by staff

    points_amount is always positive; the type carries the direction.
    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    points_amount = db.Column(db.Integer, nullable=False)
    points_balance_before = db.Column(db.Integer, nullable=False)
    points_balance_after = db.Column(db.Integer, nullable=False)
    currency_amount = db.Column(db.Integer, nullable=True)
    description = db.Column(db.String(255), nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    customer = db.relationship("Customer", backref=db.backref("loyalty_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
            "transaction_type": self.transaction_type,
            "points_amount": self.points_amount,
            "points_balance_before": self.points_balance_before,
            "points_balance_after": self.points_balance_after,
            "currency_amount": self.currency_amount,
            "description": self.description,
            "sale_id": self.sale_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
