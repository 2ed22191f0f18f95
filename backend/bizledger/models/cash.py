from __future__ import annotations

from ..extensions import db
from bizledger.time_utils import to_utc_z, utcnow

class CashSession(db.Model):
    """
    Cash drawer session for a company.

    WHY: Cashier accountability. Each session has an opening float, running
    withdrawals/deposits, and at close a per-payment-method breakdown of the
    sales recorded since it opened, plus expected vs counted cash.

    LIFECYCLE:
    - open: at most one per company (partial unique index below)
    - closed: terminal. A new session is required to trade again.

    The breakdown, expected, closing and difference columns stay NULL until
    close.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_one_open",
            "company_id",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        db.Index("ix_cash_sessions_company_closed", "company_id", "closed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="open", index=True)  # open, closed

    opened_by = db.Column(db.String(128), nullable=False)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    closed_by = db.Column(db.String(128), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Running counters (all amounts in cents)
    opening_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    withdrawals_cents = db.Column(db.Integer, nullable=False, default=0)
    deposits_cents = db.Column(db.Integer, nullable=False, default=0)

    # Computed at close
    cash_sales_cents = db.Column(db.Integer, nullable=True)
    mpesa_sales_cents = db.Column(db.Integer, nullable=True)
    emola_sales_cents = db.Column(db.Integer, nullable=True)
    mobile_sales_cents = db.Column(db.Integer, nullable=True)  # mpesa + emola
    card_sales_cents = db.Column(db.Integer, nullable=True)
    credit_sales_cents = db.Column(db.Integer, nullable=True)
    total_sales_cents = db.Column(db.Integer, nullable=True)
    sales_count = db.Column(db.Integer, nullable=True)
    expected_balance_cents = db.Column(db.Integer, nullable=True)
    closing_balance_cents = db.Column(db.Integer, nullable=True)
    difference_cents = db.Column(db.Integer, nullable=True)  # closing - expected

    notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "status": self.status,
            "opened_by": self.opened_by,
            "opened_at": to_utc_z(self.opened_at),
            "closed_by": self.closed_by,
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "opening_balance_cents": self.opening_balance_cents,
            "withdrawals_cents": self.withdrawals_cents,
            "deposits_cents": self.deposits_cents,
            "cash_sales_cents": self.cash_sales_cents,
            "mpesa_sales_cents": self.mpesa_sales_cents,
            "emola_sales_cents": self.emola_sales_cents,
            "mobile_sales_cents": self.mobile_sales_cents,
            "card_sales_cents": self.card_sales_cents,
            "credit_sales_cents": self.credit_sales_cents,
            "total_sales_cents": self.total_sales_cents,
            "sales_count": self.sales_count,
            "expected_balance_cents": self.expected_balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "difference_cents": self.difference_cents,
            "notes": self.notes,
            "version_id": self.version_id,
        }
