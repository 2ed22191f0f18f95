from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from bizledger.time_utils import to_utc_z, to_iso_date, utcnow
from bizledger.services.errors import InvalidState

class Product(db.Model):
    """
    Product master data with its global stock balance.

    MULTI-TENANT: Products are scoped to companies via company_id.

    BALANCE: `quantity` is a materialized projection of the stock movement
    log. It is written only by stock_service.record_movement (and the batch
    paths that delegate to it), inside the same transaction as the movement
    that produced it.

    STATUS: `status` is derived by status_service from quantity and
    min_threshold. Never set it by hand.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("company_id", "sku", name="uq_products_company_sku"),
        db.Index("ix_products_company_status", "company_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_threshold = db.Column(db.Integer, nullable=True)  # None -> LEDGER_DEFAULT_MIN_THRESHOLD
    max_threshold = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="out_of_stock")

    # Regulated goods (pharmacy) are sold per batch and may require a prescription
    is_regulated = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    company = db.relationship("Company", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} quantity={self.quantity} company_id={self.company_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "price_cents": self.price_cents,
            "quantity": self.quantity,
            "min_threshold": self.min_threshold,
            "max_threshold": self.max_threshold,
            "status": self.status,
            "is_regulated": self.is_regulated,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

class WarehouseStock(db.Model):
    """Per-warehouse balance of a product. Created on the first movement touching the pair."""
    __tablename__ = "warehouse_stocks"
    __table_args__ = (
        db.UniqueConstraint("warehouse_id", "product_id", name="uq_warehouse_stocks_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    warehouse = db.relationship("Warehouse", backref=db.backref("stocks", lazy=True))
    product = db.relationship("Product", backref=db.backref("warehouse_stocks", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
        }

class Batch(db.Model):
    """
    Receipt lot of a product (pharmacy batches, bottle-store lots).

    LIFECYCLE:
    - active: quantity_available > 0, eligible for sale
    - depleted: quantity_available reached 0. Terminal; never reactivated.

    quantity is what was received; quantity_available only decreases after
    receipt (sales, expiry write-offs).
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.UniqueConstraint("product_id", "batch_number", name="uq_batches_product_number"),
        db.CheckConstraint("quantity_available >= 0", name="ck_batches_available_nonnegative"),
        db.Index("ix_batches_product_status_expiry", "product_id", "status", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    batch_number = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    quantity_available = db.Column(db.Integer, nullable=False)
    expiry_date = db.Column(db.Date, nullable=False)

    cost_price_cents = db.Column(db.Integer, nullable=True)
    sell_price_cents = db.Column(db.Integer, nullable=True)

    supplier_invoice = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)  # active, depleted
    depleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Batch id={self.id} number={self.batch_number!r} available={self.quantity_available} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "batch_number": self.batch_number,
            "quantity": self.quantity,
            "quantity_available": self.quantity_available,
            "expiry_date": to_iso_date(self.expiry_date),
            "cost_price_cents": self.cost_price_cents,
            "sell_price_cents": self.sell_price_cents,
            "supplier_invoice": self.supplier_invoice,
            "status": self.status,
            "depleted_at": to_utc_z(self.depleted_at) if self.depleted_at else None,
            "received_at": to_utc_z(self.received_at),
        }

class StockMovement(db.Model):
    """
    Immutable stock movement: one balance-changing event.

    APPEND-ONLY: rows are never updated or deleted (enforced by mapper events
    below). quantity stores the magnitude; the sign is recoverable as
    balance_after - balance_before.

    balance_before/balance_after snapshot the product-global balance, so the
    chain of movements for a product replays to Product.quantity.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_movements_company_product_created", "company_id", "product_id", "created_at"),
        db.Index("ix_movements_company_reference", "company_id", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)  # abs(delta)
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    origin_module = db.Column(db.String(32), nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    performed_by = db.Column(db.String(128), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))
    warehouse = db.relationship("Warehouse")
    batch = db.relationship("Batch", backref=db.backref("movements", lazy=True))

    @property
    def delta(self) -> int:
        return self.balance_after - self.balance_before

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "batch_id": self.batch_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "delta": self.delta,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "origin_module": self.origin_module,
            "reference_type": self.reference_type,
            "reference": self.reference,
            "reason": self.reason,
            "performed_by": self.performed_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise InvalidState(f"Stock movement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise InvalidState(f"Stock movement {target.id} is immutable")


class Alert(db.Model):
    """
    Derived stock alert.

    At most one unresolved alert per (company, related product, type). The
    partial unique index backs up the check done by status_service.
    """
    __tablename__ = "alerts"
    __table_args__ = (
        db.Index(
            "uq_alerts_open_per_related",
            "company_id", "related_type", "related_id", "type",
            unique=True,
            sqlite_where=db.text("is_resolved = 0"),
            postgresql_where=db.text("is_resolved = false"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    type = db.Column(db.String(32), nullable=False, index=True)  # low_stock
    priority = db.Column(db.String(16), nullable=False)  # critical, high
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.String(500), nullable=True)

    related_type = db.Column(db.String(32), nullable=False, default="product")
    related_id = db.Column(db.Integer, nullable=False, index=True)

    is_resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "related_type": self.related_type,
            "related_id": self.related_id,
            "is_resolved": self.is_resolved,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "created_at": to_utc_z(self.created_at),
        }
