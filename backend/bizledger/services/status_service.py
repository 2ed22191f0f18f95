# Overview: Stock status evaluation and low-stock alert lifecycle.

"""
Stock Status Evaluator

Derived state machine over a product's global balance:

    out_of_stock   balance <= 0
    low_stock      balance <= min_threshold (LEDGER_DEFAULT_MIN_THRESHOLD when unset)
    in_stock       otherwise

evaluate_product_status() is the single place that writes Product.status and
creates/resolves low_stock alerts. stock_service.record_movement calls it as
the final step of every balance mutation, so status and alerts cannot drift
from the balance.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product, Alert
from bizledger.time_utils import utcnow
from .errors import NotFound, InvalidState
from .tenant_service import TenantContext, require_context


STATUS_IN_STOCK = "in_stock"
STATUS_LOW_STOCK = "low_stock"
STATUS_OUT_OF_STOCK = "out_of_stock"

ALERT_LOW_STOCK = "low_stock"

PRIORITY_BY_STATUS = {
    STATUS_OUT_OF_STOCK: "critical",
    STATUS_LOW_STOCK: "high",
}


def default_min_threshold() -> int:
    return int(current_app.config.get("LEDGER_DEFAULT_MIN_THRESHOLD", 5))


def classify_stock(balance: int, min_threshold: int | None = None) -> str:
    """Pure status function of (balance, min_threshold)."""
    if min_threshold is None:
        min_threshold = default_min_threshold()
    if balance <= 0:
        return STATUS_OUT_OF_STOCK
    if balance <= min_threshold:
        return STATUS_LOW_STOCK
    return STATUS_IN_STOCK


def _find_open_alert(product: Product) -> Alert | None:
    return db.session.query(Alert).filter_by(
        company_id=product.company_id,
        related_type="product",
        related_id=product.id,
        type=ALERT_LOW_STOCK,
        is_resolved=False,
    ).first()


def _alert_text(product: Product, status: str) -> tuple[str, str]:
    if status == STATUS_OUT_OF_STOCK:
        title = f"Out of stock: {product.name}"
    else:
        title = f"Low stock: {product.name}"
    threshold = product.min_threshold if product.min_threshold is not None else default_min_threshold()
    message = f"{product.name} ({product.sku}) has {product.quantity} units. Minimum: {threshold}"
    return title, message


def evaluate_product_status(product: Product) -> str:
    """
    Recompute status for a product and reconcile its low_stock alert.

    - non-normal status: ensure exactly one unresolved alert exists; refresh
      its priority/text when the product moves between low and out
    - in_stock: resolve the open alert, if any

    Runs inside the caller's transaction; never commits.
    """
    new_status = classify_stock(product.quantity, product.min_threshold)
    if new_status != product.status:
        product.status = new_status

    open_alert = _find_open_alert(product)

    if new_status == STATUS_IN_STOCK:
        if open_alert is not None:
            open_alert.is_resolved = True
            open_alert.resolved_at = utcnow()
            current_app.logger.info(
                "Resolved low_stock alert %s for product %s", open_alert.id, product.id
            )
        db.session.flush()
        return new_status

    priority = PRIORITY_BY_STATUS[new_status]
    title, message = _alert_text(product, new_status)

    if open_alert is None:
        alert = Alert(
            company_id=product.company_id,
            type=ALERT_LOW_STOCK,
            priority=priority,
            title=title,
            message=message,
            related_type="product",
            related_id=product.id,
        )
        db.session.add(alert)
        current_app.logger.info(
            "Raised %s low_stock alert for product %s (quantity=%s)",
            priority, product.id, product.quantity,
        )
    elif open_alert.priority != priority:
        open_alert.priority = priority
        open_alert.title = title
        open_alert.message = message

    db.session.flush()
    return new_status


def list_open_alerts(ctx: TenantContext) -> list[Alert]:
    """Unresolved alerts for a company, most severe first."""
    require_context(ctx)
    alerts = db.session.query(Alert).filter_by(
        company_id=ctx.company_id,
        is_resolved=False,
    ).order_by(Alert.created_at.desc(), Alert.id.desc()).all()
    return sorted(alerts, key=lambda a: 0 if a.priority == "critical" else 1)


def resolve_alert(ctx: TenantContext, alert_id: int) -> Alert:
    """
    Manually acknowledge an alert.

    The evaluator raises a fresh alert on the next mutation if the product is
    still below threshold.
    """
    require_context(ctx)
    alert = db.session.query(Alert).filter_by(id=alert_id, company_id=ctx.company_id).first()
    if alert is None:
        raise NotFound("Alert not found", details={"alert_id": alert_id})
    if alert.is_resolved:
        raise InvalidState("Alert already resolved")

    alert.is_resolved = True
    alert.resolved_at = utcnow()
    db.session.commit()
    return alert
