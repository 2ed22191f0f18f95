from __future__ import annotations

from ..extensions import db
from bizledger.time_utils import to_utc_z, utcnow

class Customer(db.Model):
    """
    Customer account within a company.

    loyalty_points and total_purchases_cents are best-effort aggregates
    updated after a sale. Credit exposure is NOT stored here; it is folded
    from the customer's credit sales at query time (credit_service).
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    credit_limit_cents = db.Column(db.Integer, nullable=True)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    total_purchases_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "phone": self.phone,
            "credit_limit_cents": self.credit_limit_cents,
            "loyalty_points": self.loyalty_points,
            "total_purchases_cents": self.total_purchases_cents,
            "created_at": to_utc_z(self.created_at),
        }

class Sale(db.Model):
    """
    Completed sale (retail or regulated).

    WHY: A sale is written in the same transaction as the stock movements it
    causes, so a sale row exists if and only if its stock was consumed.

    CREDIT: is_credit sales start with paid_amount_cents=0 and are settled
    through CreditPayment rows. Non-credit sales are fully paid at creation.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("company_id", "sale_number", name="uq_sales_company_number"),
        db.Index("ix_sales_company_created", "company_id", "created_at"),
        db.Index("ix_sales_company_credit", "company_id", "is_credit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Human-readable number from the per-company sequence (e.g., "FR-001-0042")
    sale_number = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="retail")  # retail, regulated

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default="cash", index=True)
    is_credit = db.Column(db.Boolean, nullable=False, default=False)

    prescription_reference = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_cents(self) -> int:
        return self.total_cents - self.paid_amount_cents

    @property
    def is_paid(self) -> bool:
        return self.paid_amount_cents >= self.total_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "customer_id": self.customer_id,
            "sale_number": self.sale_number,
            "kind": self.kind,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_cents": self.remaining_cents,
            "is_paid": self.is_paid,
            "payment_method": self.payment_method,
            "is_credit": self.is_credit,
            "prescription_reference": self.prescription_reference,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }

class SaleLine(db.Model):
    """Individual line items on a sale."""
    __tablename__ = "sale_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # Links to the stock movement that consumed the stock
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    sale = db.relationship("Sale", backref=db.backref("lines", lazy=True, order_by="SaleLine.id"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "stock_movement_id": self.stock_movement_id,
        }

class CreditPayment(db.Model):
    """
    Partial or full settlement of a credit sale.

    INVARIANT: Sum of amount_cents per sale never exceeds Sale.total_cents
    (enforced by credit_service under a row lock on the sale).
    """
    __tablename__ = "credit_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_credit_payments_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    reference = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    received_by = db.Column(db.String(128), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    sale = db.relationship("Sale", backref=db.backref("credit_payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference": self.reference,
            "notes": self.notes,
            "received_by": self.received_by,
            "paid_at": to_utc_z(self.paid_at),
        }
