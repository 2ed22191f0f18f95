# Overview: Credit sale settlement and customer debt reporting.

"""
Credit Service

WHY: Credit sales leave the shop unpaid. Payments arrive later in any number
of installments; each is a CreditPayment row, and Sale.paid_amount_cents is
their running sum.

INVARIANT:
    sum(CreditPayment.amount_cents for a sale) <= Sale.total_cents

The sale row is locked while a payment is validated and written, so two
concurrent payments cannot both fit into the same remaining balance.

Customer aggregates (total credit, paid, outstanding) are folded from the
customer's credit sales at query time. There are no stored running totals
to drift.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Sale, Customer, CreditPayment
from .concurrency import run_atomic
from .errors import ValidationError, InvalidState, PolicyViolation
from .sales_service import PAYMENT_METHODS
from .tenant_service import TenantContext, require_context, require_sale, require_customer


CREDIT_STATUSES = ("pending", "partial", "paid")

# Credit cannot be settled with more credit
SETTLEMENT_METHODS = tuple(m for m in PAYMENT_METHODS if m != "credit")


def credit_status(sale: Sale) -> str:
    if sale.paid_amount_cents <= 0:
        return "pending"
    if sale.paid_amount_cents < sale.total_cents:
        return "partial"
    return "paid"


def register_credit_payment(
    ctx: TenantContext,
    sale_id: int,
    amount_cents: int,
    payment_method: str = "cash",
    reference: str | None = None,
    notes: str | None = None,
) -> CreditPayment:
    """
    Record a payment against a credit sale.

    Raises:
        NotFound: sale absent or owned by another company
        InvalidState: sale is not a credit sale
        ValidationError: amount not positive, or unknown payment method
        PolicyViolation: amount exceeds the remaining balance

    Returns:
        The created payment; sale.paid_amount_cents is incremented in the
        same transaction.
    """
    require_context(ctx)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("Payment amount must be positive")
    if payment_method not in SETTLEMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method}",
            details={"allowed": list(SETTLEMENT_METHODS)},
        )

    def _op():
        sale = require_sale(ctx, sale_id, lock=True)
        if not sale.is_credit:
            raise InvalidState("Sale is not a credit sale", details={"sale_id": sale.id})

        remaining = sale.total_cents - sale.paid_amount_cents
        if amount_cents > remaining:
            raise PolicyViolation(
                "Payment exceeds remaining balance",
                details={"sale_id": sale.id, "remaining_cents": remaining, "amount_cents": amount_cents},
            )

        payment = CreditPayment(
            company_id=ctx.company_id,
            sale_id=sale.id,
            customer_id=sale.customer_id,
            amount_cents=amount_cents,
            payment_method=payment_method,
            reference=reference,
            notes=notes,
            received_by=ctx.performed_by,
        )
        db.session.add(payment)
        sale.paid_amount_cents += amount_cents
        db.session.flush()

        current_app.logger.info(
            "Credit payment of %s on sale %s by %s (remaining=%s)",
            amount_cents, sale.sale_number, ctx.performed_by, sale.remaining_cents,
        )
        return payment

    return run_atomic(_op)


def list_credit_sales(
    ctx: TenantContext,
    *,
    status: str | None = None,
    customer_id: int | None = None,
    limit: int = 100,
) -> list[Sale]:
    """Credit sales, newest first, optionally filtered by settlement status."""
    require_context(ctx)
    if status is not None and status not in CREDIT_STATUSES:
        raise ValidationError(
            f"Invalid credit status: {status}",
            details={"allowed": list(CREDIT_STATUSES)},
        )

    q = db.session.query(Sale).filter(Sale.company_id == ctx.company_id, Sale.is_credit.is_(True))
    if customer_id is not None:
        q = q.filter(Sale.customer_id == customer_id)
    if status == "pending":
        q = q.filter(Sale.paid_amount_cents == 0)
    elif status == "partial":
        q = q.filter(Sale.paid_amount_cents > 0, Sale.paid_amount_cents < Sale.total_cents)
    elif status == "paid":
        q = q.filter(Sale.paid_amount_cents >= Sale.total_cents)
    return q.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(limit).all()


def get_payment_history(ctx: TenantContext, sale_id: int) -> dict:
    require_context(ctx)
    sale = require_sale(ctx, sale_id)
    payments = db.session.query(CreditPayment).filter_by(
        company_id=ctx.company_id,
        sale_id=sale.id,
    ).order_by(CreditPayment.paid_at.desc(), CreditPayment.id.desc()).all()
    return {
        "sale_id": sale.id,
        "sale_number": sale.sale_number,
        "total_cents": sale.total_cents,
        "paid_amount_cents": sale.paid_amount_cents,
        "remaining_cents": sale.remaining_cents,
        "status": credit_status(sale),
        "payments": [p.to_dict() for p in payments],
    }


def _fold_credit(sales: list[Sale]) -> dict:
    total_credit = sum(s.total_cents for s in sales)
    total_paid = sum(s.paid_amount_cents for s in sales)
    unpaid = [s.created_at for s in sales if s.paid_amount_cents < s.total_cents]
    return {
        "total_credit_cents": total_credit,
        "total_paid_cents": total_paid,
        "outstanding_cents": total_credit - total_paid,
        "sales_count": len(sales),
        "oldest_debt_at": min(unpaid) if unpaid else None,
    }


def _customer_credit_sales(company_id: int, customer_id: int) -> list[Sale]:
    return db.session.query(Sale).filter(
        Sale.company_id == company_id,
        Sale.customer_id == customer_id,
        Sale.is_credit.is_(True),
    ).all()


def get_customer_credit_summary(ctx: TenantContext, customer_id: int) -> dict:
    """
    Credit exposure of one customer.

    available_credit_cents is None when the customer has no credit limit.
    """
    require_context(ctx)
    customer = require_customer(ctx, customer_id)
    folded = _fold_credit(_customer_credit_sales(ctx.company_id, customer.id))

    available = None
    if customer.credit_limit_cents is not None:
        available = customer.credit_limit_cents - folded["outstanding_cents"]

    return {
        "customer": {
            "id": customer.id,
            "name": customer.name,
            "phone": customer.phone,
            "credit_limit_cents": customer.credit_limit_cents,
        },
        **folded,
        "available_credit_cents": available,
    }


def get_debtors_report(ctx: TenantContext) -> dict:
    """Customers with an outstanding credit balance, largest debt first."""
    require_context(ctx)
    rows = db.session.query(Customer, Sale).join(
        Sale, Sale.customer_id == Customer.id
    ).filter(
        Customer.company_id == ctx.company_id,
        Sale.company_id == ctx.company_id,
        Sale.is_credit.is_(True),
    ).order_by(Customer.id).all()

    by_customer: dict[int, tuple[Customer, list[Sale]]] = {}
    for customer, sale in rows:
        by_customer.setdefault(customer.id, (customer, []))[1].append(sale)

    debtors = []
    for customer, sales in by_customer.values():
        folded = _fold_credit(sales)
        if folded["outstanding_cents"] <= 0:
            continue
        debtors.append({
            "customer_id": customer.id,
            "name": customer.name,
            "phone": customer.phone,
            **folded,
        })

    debtors.sort(key=lambda d: d["outstanding_cents"], reverse=True)
    return {
        "debtors": debtors,
        "total_debtors": len(debtors),
        "total_outstanding_cents": sum(d["outstanding_cents"] for d in debtors),
    }
