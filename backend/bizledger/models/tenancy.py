from __future__ import annotations

from ..extensions import db
from bizledger.time_utils import to_utc_z

class Company(db.Model):
    """
    Multi-tenant root: every tenant is a Company.

    WHY: Shared-database multi-tenancy with strict isolation. Products,
    warehouses, sales, cash sessions and movements all carry company_id
    and every ledger query filters on it.
    """
    __tablename__ = "companies"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)  # Short code for lookups

    # Business profile (retail, pharmacy, hospitality, bottle_store)
    business_type = db.Column(db.String(32), nullable=False, default="retail")

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Company id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "business_type": self.business_type,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

class Warehouse(db.Model):
    """
    Stock location within a company.

    MULTI-TENANT: Warehouse codes are unique within a company, not globally.
    """
    __tablename__ = "warehouses"
    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_warehouses_company_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    location = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    company = db.relationship("Company", backref=db.backref("warehouses", lazy=True))

    def __repr__(self) -> str:
        return f"<Warehouse id={self.id} name={self.name!r} company_id={self.company_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "code": self.code,
            "location": self.location,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
