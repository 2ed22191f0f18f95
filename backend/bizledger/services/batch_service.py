# Overview: Batch (lot) receipt, FEFO listing, consumption and expiry write-off.

"""
Batch Service

WHY: Regulated and lot-tracked goods (pharmacy, bottle store) are stocked and
sold per receipt batch. A batch's quantity_available is the third balance
projection next to Product.quantity and WarehouseStock.quantity, and moves in
the same transaction as the StockMovement that references it.

BATCH LIFECYCLE:
    active -> depleted (quantity_available reached 0; terminal)

Depleted batches are never selected, sold from, or reactivated.
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Batch, StockMovement
from bizledger.time_utils import utcnow
from .concurrency import run_atomic
from .errors import ValidationError, InvalidState, InsufficientResource
from .stock_service import apply_movement
from .tenant_service import (
    TenantContext,
    require_context,
    require_product,
    require_warehouse,
    require_batch,
)


BATCH_ACTIVE = "active"
BATCH_DEPLETED = "depleted"


def create_batch(
    ctx: TenantContext,
    *,
    product_id: int,
    batch_number: str,
    quantity: int,
    expiry_date: date,
    warehouse_id: int | None = None,
    cost_price_cents: int | None = None,
    sell_price_cents: int | None = None,
    supplier_invoice: str | None = None,
    origin_module: str = "PHARMACY",
    commit: bool = True,
) -> Batch:
    """
    Receive a batch and record the purchase movement that brings it on hand.

    Args:
        quantity: Units received (> 0); quantity_available starts equal to it
        expiry_date: Required; drives FEFO ordering

    Returns:
        Created batch (status=active)
    """
    require_context(ctx)
    if not batch_number or not str(batch_number).strip():
        raise ValidationError("batch_number is required")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Batch quantity must be a positive integer")
    if not isinstance(expiry_date, date):
        raise ValidationError("expiry_date is required")

    def _op():
        product = require_product(ctx, product_id, lock=True)
        warehouse = require_warehouse(ctx, warehouse_id) if warehouse_id is not None else None

        duplicate = db.session.query(Batch.id).filter_by(
            product_id=product.id,
            batch_number=batch_number,
        ).first()
        if duplicate:
            raise ValidationError(
                f"Batch '{batch_number}' already exists for this product",
                details={"product_id": product.id, "batch_number": batch_number},
            )

        batch = Batch(
            company_id=ctx.company_id,
            product_id=product.id,
            warehouse_id=warehouse.id if warehouse is not None else None,
            batch_number=batch_number,
            quantity=quantity,
            quantity_available=quantity,
            expiry_date=expiry_date,
            cost_price_cents=cost_price_cents,
            sell_price_cents=sell_price_cents,
            supplier_invoice=supplier_invoice,
            status=BATCH_ACTIVE,
        )
        db.session.add(batch)
        db.session.flush()

        apply_movement(
            ctx,
            product,
            quantity=quantity,
            movement_type="purchase",
            origin_module=origin_module,
            warehouse=warehouse,
            batch=batch,
            reference_type="BATCH",
            reference=batch_number,
            reason=f"Batch {batch_number} received",
        )
        return batch

    return run_atomic(_op, commit=commit)


def list_batches_fefo(ctx: TenantContext, product_id: int) -> list[Batch]:
    """
    Sellable batches of a product, nearest expiry first.

    Selection is the caller's decision; this only provides the ordering.
    """
    require_context(ctx)
    product = require_product(ctx, product_id)
    return db.session.query(Batch).filter(
        Batch.company_id == ctx.company_id,
        Batch.product_id == product.id,
        Batch.status == BATCH_ACTIVE,
        Batch.quantity_available > 0,
    ).order_by(Batch.expiry_date.asc(), Batch.id.asc()).all()


def consume_batch(
    ctx: TenantContext,
    batch: Batch,
    quantity: int,
    *,
    movement_type: str = "sale",
    origin_module: str = "PHARMACY",
    reference_type: str | None = None,
    reference: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Decrement a locked batch and the product's balances by quantity.

    The caller must hold the batch lock and own the transaction (composite
    operations only). Never commits.

    Raises:
        InvalidState: batch is depleted
        InsufficientResource: quantity_available < quantity
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive", details={"batch_id": batch.id})
    if batch.status == BATCH_DEPLETED:
        raise InvalidState(
            f"Batch {batch.batch_number} is depleted",
            details={"batch_id": batch.id},
        )
    if batch.quantity_available < quantity:
        raise InsufficientResource(
            f"Insufficient quantity in batch {batch.batch_number}",
            details={
                "batch_id": batch.id,
                "available": batch.quantity_available,
                "requested": quantity,
            },
        )

    product = require_product(ctx, batch.product_id, lock=True)
    warehouse = require_warehouse(ctx, batch.warehouse_id) if batch.warehouse_id is not None else None

    batch.quantity_available -= quantity
    if batch.quantity_available == 0:
        batch.status = BATCH_DEPLETED
        batch.depleted_at = utcnow()
        current_app.logger.info("Batch %s depleted", batch.id)

    return apply_movement(
        ctx,
        product,
        quantity=-quantity,
        movement_type=movement_type,
        origin_module=origin_module,
        warehouse=warehouse,
        batch=batch,
        reference_type=reference_type,
        reference=reference,
        reason=reason,
    )


def expire_batch(ctx: TenantContext, batch_id: int, *, reason: str | None = None, commit: bool = True) -> Batch:
    """
    Write off everything left in a batch as expired.

    Records an `expired` movement for the remaining quantity and depletes
    the batch.
    """
    require_context(ctx)

    def _op():
        # Product before batch, the order regulated sales lock in
        product_id = require_batch(ctx, batch_id).product_id
        require_product(ctx, product_id, lock=True)
        batch = require_batch(ctx, batch_id, lock=True)
        if batch.status == BATCH_DEPLETED:
            raise InvalidState("Batch already depleted", details={"batch_id": batch.id})

        consume_batch(
            ctx,
            batch,
            batch.quantity_available,
            movement_type="expired",
            origin_module="INVENTORY",
            reference_type="BATCH",
            reference=batch.batch_number,
            reason=reason or f"Batch {batch.batch_number} expired",
        )
        return batch

    return run_atomic(_op, commit=commit)
