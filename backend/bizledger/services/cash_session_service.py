# Overview: Cash drawer session lifecycle and close-time reconciliation.

"""
Cash Session Service

WHY: Cashier accountability. A session tracks the opening float and the cash
taken out or put in while it is open; closing it reconciles the counted
drawer against what the recorded sales say should be there.

SESSION LIFECYCLE:
    (none) -> open -> closed (terminal; trading again requires a new session)

EXPECTED CASH AT CLOSE:
    expected = opening + cash_sales + deposits - withdrawals
    difference = counted - expected

cash_sales counts only non-credit sales paid in cash. Mpesa, emola, card and
credit sales are reported in their own buckets and never reach the drawer;
mobile is the mpesa and emola total.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashSession, Sale
from bizledger.time_utils import utcnow
from .concurrency import lock_for_update, run_atomic
from .errors import ValidationError, NotFound, InvalidState
from .sales_service import MOBILE_METHODS
from .tenant_service import TenantContext, require_context, require_company


STATUS_OPEN = "open"
STATUS_CLOSED = "closed"


def _validate_amount(amount_cents: int, *, allow_zero: bool = False) -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("Amount must be an integer number of cents")
    if amount_cents < 0:
        raise ValidationError("Amount cannot be negative")
    if amount_cents == 0 and not allow_zero:
        raise ValidationError("Amount must be positive")


def _open_session_query(company_id: int):
    return db.session.query(CashSession).filter_by(company_id=company_id, status=STATUS_OPEN)


def get_current_session(ctx: TenantContext) -> CashSession | None:
    """The company's open session, if any."""
    require_context(ctx)
    return _open_session_query(ctx.company_id).first()


def open_session(ctx: TenantContext, opening_balance_cents: int = 0) -> CashSession:
    """
    Open a new cash session for the company.

    Raises:
        InvalidState: a session is already open (also enforced by the
            one-open-session partial unique index)
    """
    require_context(ctx)
    _validate_amount(opening_balance_cents, allow_zero=True)

    def _op():
        require_company(ctx)
        existing = _open_session_query(ctx.company_id).first()
        if existing is not None:
            raise InvalidState(
                "A cash session is already open",
                details={"session_id": existing.id},
            )

        session = CashSession(
            company_id=ctx.company_id,
            status=STATUS_OPEN,
            opened_by=ctx.performed_by,
            opened_at=utcnow(),
            opening_balance_cents=opening_balance_cents,
            withdrawals_cents=0,
            deposits_cents=0,
        )
        db.session.add(session)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise InvalidState("A cash session is already open") from exc

        current_app.logger.info(
            "Cash session %s opened for company %s by %s (opening=%s)",
            session.id, ctx.company_id, ctx.performed_by, opening_balance_cents,
        )
        return session

    return run_atomic(_op)


def _increment_counter(ctx: TenantContext, column_name: str, amount_cents: int) -> CashSession:
    require_context(ctx)
    _validate_amount(amount_cents)

    def _op():
        session = lock_for_update(_open_session_query(ctx.company_id)).first()
        if session is None:
            raise InvalidState("No open cash session")

        column = getattr(CashSession, column_name)
        db.session.execute(
            update(CashSession)
            .where(CashSession.id == session.id, CashSession.status == STATUS_OPEN)
            .values({column: column + amount_cents, CashSession.version_id: CashSession.version_id + 1})
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(session)
        return session

    return run_atomic(_op)


def register_withdrawal(ctx: TenantContext, amount_cents: int, reason: str | None = None) -> CashSession:
    """Record cash taken out of the drawer (bank drop, supplier payout)."""
    session = _increment_counter(ctx, "withdrawals_cents", amount_cents)
    current_app.logger.info(
        "Withdrawal of %s on cash session %s by %s%s",
        amount_cents, session.id, ctx.performed_by, f" ({reason})" if reason else "",
    )
    return session


def register_deposit(ctx: TenantContext, amount_cents: int, reason: str | None = None) -> CashSession:
    """Record cash put into the drawer (change top-up)."""
    session = _increment_counter(ctx, "deposits_cents", amount_cents)
    current_app.logger.info(
        "Deposit of %s on cash session %s by %s%s",
        amount_cents, session.id, ctx.performed_by, f" ({reason})" if reason else "",
    )
    return session


def _sales_breakdown(company_id: int, since: datetime, until: datetime | None = None) -> dict:
    q = db.session.query(Sale).filter(
        Sale.company_id == company_id,
        Sale.created_at >= since,
    )
    if until is not None:
        q = q.filter(Sale.created_at <= until)

    breakdown = {
        "cash_sales_cents": 0,
        "mpesa_sales_cents": 0,
        "emola_sales_cents": 0,
        "mobile_sales_cents": 0,
        "card_sales_cents": 0,
        "credit_sales_cents": 0,
        "total_sales_cents": 0,
        "sales_count": 0,
    }
    for sale in q.all():
        breakdown["sales_count"] += 1
        breakdown["total_sales_cents"] += sale.total_cents
        if sale.is_credit:
            breakdown["credit_sales_cents"] += sale.total_cents
        elif sale.payment_method == "cash":
            breakdown["cash_sales_cents"] += sale.total_cents
        elif sale.payment_method in MOBILE_METHODS:
            breakdown[f"{sale.payment_method}_sales_cents"] += sale.total_cents
        elif sale.payment_method == "card":
            breakdown["card_sales_cents"] += sale.total_cents
    breakdown["mobile_sales_cents"] = sum(breakdown[f"{method}_sales_cents"] for method in MOBILE_METHODS)
    return breakdown


def _expected_cash(session: CashSession, cash_sales_cents: int) -> int:
    return (
        session.opening_balance_cents
        + cash_sales_cents
        + session.deposits_cents
        - session.withdrawals_cents
    )


def close_session(
    ctx: TenantContext,
    actual_balance_cents: int,
    notes: str | None = None,
    *,
    session_id: int | None = None,
) -> CashSession:
    """
    Close the open session and reconcile the drawer.

    Args:
        actual_balance_cents: Cash counted in the drawer
        session_id: Close this specific session. Without it, the company's
            open session is closed.

    Raises:
        InvalidState: no open session, or session_id names a closed session
        NotFound: session_id does not exist for this company

    Returns:
        Closed session with breakdown, expected, closing and difference set
    """
    require_context(ctx)
    _validate_amount(actual_balance_cents, allow_zero=True)

    def _op():
        if session_id is not None:
            session = lock_for_update(
                db.session.query(CashSession).filter_by(id=session_id, company_id=ctx.company_id)
            ).first()
            if session is None:
                raise NotFound("Cash session not found", details={"session_id": session_id})
        else:
            session = lock_for_update(_open_session_query(ctx.company_id)).first()
            if session is None:
                raise InvalidState("No open cash session")

        if session.status != STATUS_OPEN:
            raise InvalidState("Cash session already closed", details={"session_id": session.id})

        closed_at = utcnow()
        breakdown = _sales_breakdown(ctx.company_id, session.opened_at)
        expected = _expected_cash(session, breakdown["cash_sales_cents"])

        session.cash_sales_cents = breakdown["cash_sales_cents"]
        session.mpesa_sales_cents = breakdown["mpesa_sales_cents"]
        session.emola_sales_cents = breakdown["emola_sales_cents"]
        session.mobile_sales_cents = breakdown["mobile_sales_cents"]
        session.card_sales_cents = breakdown["card_sales_cents"]
        session.credit_sales_cents = breakdown["credit_sales_cents"]
        session.total_sales_cents = breakdown["total_sales_cents"]
        session.sales_count = breakdown["sales_count"]
        session.expected_balance_cents = expected
        session.closing_balance_cents = actual_balance_cents
        session.difference_cents = actual_balance_cents - expected
        session.notes = notes
        session.status = STATUS_CLOSED
        session.closed_by = ctx.performed_by
        session.closed_at = closed_at

        log = current_app.logger.warning if session.difference_cents else current_app.logger.info
        log(
            "Cash session %s closed by %s: expected=%s counted=%s difference=%s",
            session.id, ctx.performed_by, expected, actual_balance_cents, session.difference_cents,
        )
        return session

    return run_atomic(_op)


def get_session_summary(ctx: TenantContext, session_id: int | None = None) -> dict:
    """
    Live reconciliation figures for a session without closing it.

    For a closed session the stored close-time figures are returned.
    """
    require_context(ctx)
    if session_id is not None:
        session = db.session.query(CashSession).filter_by(id=session_id, company_id=ctx.company_id).first()
        if session is None:
            raise NotFound("Cash session not found", details={"session_id": session_id})
    else:
        session = _open_session_query(ctx.company_id).first()
        if session is None:
            raise InvalidState("No open cash session")

    if session.status == STATUS_CLOSED:
        return {"session": session.to_dict(), "is_closed": True}

    breakdown = _sales_breakdown(ctx.company_id, session.opened_at)
    return {
        "session": session.to_dict(),
        "is_closed": False,
        **breakdown,
        "expected_balance_cents": _expected_cash(session, breakdown["cash_sales_cents"]),
    }


def get_session_history(
    ctx: TenantContext,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    limit: int = 100,
) -> list[CashSession]:
    """Closed sessions for a company, most recently closed first."""
    require_context(ctx)
    q = db.session.query(CashSession).filter(
        CashSession.company_id == ctx.company_id,
        CashSession.status == STATUS_CLOSED,
    )
    if start is not None:
        q = q.filter(CashSession.closed_at >= start)
    if end is not None:
        q = q.filter(CashSession.closed_at <= end)
    return q.order_by(CashSession.closed_at.desc(), CashSession.id.desc()).limit(limit).all()
