from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z, to_iso_date


STOCK_AUDIT_STATUSES = ("pending", "in_progress", "completed", "cancelled")


class StockAudit(db.Model):
    """
    Physical stock count for one branch.

    Items capture the system quantity when they are added (expected) and
    what was counted on the shelf (actual). Completing the audit applies
    each difference to stock once; completed and cancelled audits are
    frozen.
    """
    __tablename__ = "stock_audits"
    __table_args__ = (
        db.Index("ix_stock_audits_branch_status", "branch_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    audit_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    notes = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    items = db.relationship(
        "StockAuditItem",
        backref="audit",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="StockAuditItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def counted_items(self) -> int:
        return sum(1 for item in self.items if item.actual_quantity is not None)

    @property
    def discrepancies(self) -> int:
        return sum(1 for item in self.items if item.difference not in (None, 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "user_id": self.user_id,
            "completed_by": self.completed_by,
            "audit_date": to_iso_date(self.audit_date),
            "status": self.status,
            "notes": self.notes,
            "total_items": self.total_items,
            "counted_items": self.counted_items,
            "discrepancies": self.discrepancies,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockAuditItem(db.Model):
    """One counted product; difference is actual - expected once counted."""
    __tablename__ = "stock_audit_items"
    __table_args__ = (
        db.UniqueConstraint("audit_id", "product_id", name="uq_stock_audit_items_audit_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    audit_id = db.Column(db.Integer, db.ForeignKey("stock_audits.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=False)

    expected_quantity = db.Column(db.Integer, nullable=False)
    actual_quantity = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    @property
    def difference(self) -> int | None:
        if self.actual_quantity is None:
            return None
        return self.actual_quantity - self.expected_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "audit_id": self.audit_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "expected_quantity": self.expected_quantity,
            "actual_quantity": self.actual_quantity,
            "difference": self.difference,
            "notes": self.notes,
        }
