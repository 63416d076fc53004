from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class BranchSetting(db.Model):
    """
    Key-value settings at the branch level, grouped by section.

    value holds JSON text; settings_service owns the registry of sections,
    keys, defaults and types.
    """
    __tablename__ = "branch_settings"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "section", "key", name="uq_branch_settings_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    section = db.Column(db.String(32), nullable=False)
    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)

    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "section": self.section,
            "key": self.key,
            "value": self.value,
            "updated_by_user_id": self.updated_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
        }
