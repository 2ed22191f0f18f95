# Overview: Ledger core for stock balances; the only writer of product and warehouse quantities.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product, Warehouse, WarehouseStock, Batch, StockMovement
from .concurrency import lock_for_update, run_atomic
from .document_service import next_document_number, DOC_TRANSFER
from .errors import ValidationError, InsufficientResource, InvalidState
from .status_service import evaluate_product_status
from .tenant_service import (
    TenantContext,
    require_context,
    require_product,
    require_warehouse,
    require_batch,
)
"""
Stock Ledger Invariants (authoritative)

Balances:
- Product.quantity (global), WarehouseStock.quantity (per warehouse) and
  Batch.quantity_available (per lot) are projections of the movement log.
- They change only inside the same DB transaction that appends the
  StockMovement describing the change.

Movements:
- Append-only. quantity = abs(delta); balance_after - balance_before = delta.
- balance_before/after snapshot the product-global balance, so for any
  product: Product.quantity = first balance_before + sum(deltas).

Concurrency:
- The product row is locked (SELECT ... FOR UPDATE, BEGIN IMMEDIATE on
  SQLite) before balance_before is read. Two writers for the same product
  serialize; neither can commit a balance computed from a stale read.

Status:
- status_service.evaluate_product_status runs as the last step of every
  movement. No other path updates Product.status or low_stock alerts.
"""


MOVEMENT_TYPES = (
    "purchase",
    "sale",
    "return_in",
    "return_out",
    "adjustment",
    "expired",
    "transfer",
    "loss",
)

ORIGIN_MODULES = (
    "PHARMACY",
    "COMMERCIAL",
    "BOTTLE_STORE",
    "HOTEL",
    "RESTAURANT",
    "LOGISTICS",
    "INVENTORY",
    "POS",
)

ADJUST_OPERATIONS = ("add", "subtract", "set")


def _validate_movement_input(quantity: int, movement_type: str, origin_module: str) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"Invalid movement type: {movement_type}",
            details={"allowed": list(MOVEMENT_TYPES)},
        )
    if origin_module not in ORIGIN_MODULES:
        raise ValidationError(
            f"Invalid origin module: {origin_module}",
            details={"allowed": list(ORIGIN_MODULES)},
        )


def _upsert_warehouse_balance(warehouse_id: int, product_id: int, delta: int) -> WarehouseStock:
    stock = lock_for_update(
        db.session.query(WarehouseStock).filter_by(warehouse_id=warehouse_id, product_id=product_id)
    ).first()
    if stock is None:
        stock = WarehouseStock(warehouse_id=warehouse_id, product_id=product_id, quantity=0)
        db.session.add(stock)
    stock.quantity = (stock.quantity or 0) + delta
    return stock


def apply_movement(
    ctx: TenantContext,
    product: Product,
    *,
    quantity: int,
    movement_type: str,
    origin_module: str,
    warehouse: Warehouse | None = None,
    batch: Batch | None = None,
    reference_type: str | None = None,
    reference: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Apply a signed delta to a product that the caller has already locked.

    For composite operations (sales, transfers, batch receipts) that resolve
    and lock their rows first. Never commits.
    """
    balance_before = product.quantity
    balance_after = balance_before + quantity
    product.quantity = balance_after

    if warehouse is not None:
        _upsert_warehouse_balance(warehouse.id, product.id, quantity)

    movement = StockMovement(
        company_id=ctx.company_id,
        product_id=product.id,
        warehouse_id=warehouse.id if warehouse is not None else None,
        batch_id=batch.id if batch is not None else None,
        movement_type=movement_type,
        quantity=abs(quantity),
        balance_before=balance_before,
        balance_after=balance_after,
        origin_module=origin_module,
        reference_type=reference_type,
        reference=reference,
        reason=reason,
        performed_by=ctx.performed_by,
    )
    db.session.add(movement)
    db.session.flush()

    evaluate_product_status(product)
    return movement


def record_movement(
    ctx: TenantContext,
    *,
    product_id: int,
    quantity: int,
    movement_type: str,
    origin_module: str,
    warehouse_id: int | None = None,
    batch_id: int | None = None,
    reference_type: str | None = None,
    reference: str | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> StockMovement:
    """
    Atomically apply one signed quantity change to a product's balances.

    1. Lock the product (NotFound if absent or owned by another company)
    2. balance_after = balance_before + quantity
    3. Upsert the (warehouse, product) balance when warehouse_id is given
    4. Append the immutable movement with both snapshots
    5. Re-evaluate stock status and alerts

    The caller is responsible for checking availability before a negative
    delta; the ledger records what it is told.

    Args:
        quantity: Positive to increase stock, negative to decrease
        batch_id: Recorded on the movement only. Batch balances are adjusted
            by batch_service, never here.
        commit: False to enlist in the caller's transaction

    Raises:
        InvalidState: batch_id names a depleted batch and the movement is
            not a return_in
    """
    require_context(ctx)
    _validate_movement_input(quantity, movement_type, origin_module)

    def _op():
        product = require_product(ctx, product_id, lock=True)
        warehouse = require_warehouse(ctx, warehouse_id) if warehouse_id is not None else None
        batch = None
        if batch_id is not None:
            batch = require_batch(ctx, batch_id)
            if batch.product_id != product.id:
                raise ValidationError(
                    "Batch does not belong to product",
                    details={"batch_id": batch_id, "product_id": product_id},
                )
            # A depleted batch only takes returns; its balance stays with batch_service
            if batch.status == "depleted" and movement_type != "return_in":
                raise InvalidState(
                    "Batch is depleted",
                    details={"batch_id": batch_id, "movement_type": movement_type},
                )

        return apply_movement(
            ctx,
            product,
            quantity=quantity,
            movement_type=movement_type,
            origin_module=origin_module,
            warehouse=warehouse,
            batch=batch,
            reference_type=reference_type,
            reference=reference,
            reason=reason,
        )

    return run_atomic(_op, commit=commit)


def adjust_stock(
    ctx: TenantContext,
    *,
    product_id: int,
    operation: str,
    quantity: int,
    warehouse_id: int | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> StockMovement | None:
    """
    Manual stock adjustment.

    operation:
    - add: +quantity
    - subtract: -quantity; refused if it would take the global (or the
      warehouse) balance below zero
    - set: delta = quantity - current global balance

    Returns None when the adjustment is a no-op (set to the current value).
    """
    require_context(ctx)
    if operation not in ADJUST_OPERATIONS:
        raise ValidationError(
            f"Invalid adjustment operation: {operation}",
            details={"allowed": list(ADJUST_OPERATIONS)},
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError("quantity must be a non-negative integer")
    if operation != "set" and quantity == 0:
        raise ValidationError("quantity must be positive")

    def _op():
        product = require_product(ctx, product_id, lock=True)
        warehouse = require_warehouse(ctx, warehouse_id) if warehouse_id is not None else None

        if operation == "add":
            delta = quantity
        elif operation == "subtract":
            delta = -quantity
        else:
            delta = quantity - product.quantity

        if delta == 0:
            return None

        if delta < 0:
            if product.quantity + delta < 0:
                raise InsufficientResource(
                    "Adjustment would make stock negative",
                    details={"product_id": product.id, "on_hand": product.quantity, "requested": -delta},
                )
            if warehouse is not None:
                on_hand = get_warehouse_quantity(warehouse.id, product.id)
                if on_hand + delta < 0:
                    raise InsufficientResource(
                        "Adjustment would make warehouse stock negative",
                        details={"product_id": product.id, "warehouse_id": warehouse.id, "on_hand": on_hand, "requested": -delta},
                    )

        return apply_movement(
            ctx,
            product,
            quantity=delta,
            movement_type="adjustment",
            origin_module="INVENTORY",
            warehouse=warehouse,
            reference_type="ADJUSTMENT",
            reason=reason or f"Manual adjustment ({operation})",
        )

    return run_atomic(_op, commit=commit)


def transfer_stock(
    ctx: TenantContext,
    *,
    source_warehouse_id: int,
    target_warehouse_id: int,
    items: list[dict],
    reason: str | None = None,
    commit: bool = True,
) -> dict:
    """
    Move stock between two warehouses of the same company in one transaction.

    Each item yields two transfer movements: +q at the target, then -q at
    the source. The global balance nets to zero, and applying the increase
    first keeps the intermediate balance above both endpoints so the status
    evaluator cannot raise a transient low_stock alert.

    Args:
        items: [{"product_id": int, "quantity": int}, ...]

    Returns:
        {"transfer_number": str, "movements": [StockMovement, ...]}
    """
    require_context(ctx)
    if source_warehouse_id == target_warehouse_id:
        raise ValidationError("Source and target warehouse must differ")
    if not items:
        raise ValidationError("Transfer must have at least one item")

    requested: dict[int, int] = {}
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Transfer items must be mappings", details={"item": item})
        pid = item.get("product_id")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise ValidationError("Transfer product_id must be a positive integer", details={"item": item})
        qty = item.get("quantity")
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise ValidationError("Transfer quantities must be positive integers", details={"item": item})
        requested[pid] = requested.get(pid, 0) + qty

    def _op():
        source = require_warehouse(ctx, source_warehouse_id)
        target = require_warehouse(ctx, target_warehouse_id)

        # Lock in id order so concurrent transfers cannot deadlock
        products = {pid: require_product(ctx, pid, lock=True) for pid in sorted(requested)}

        short = []
        for pid, qty in requested.items():
            on_hand = get_warehouse_quantity(source.id, pid)
            if on_hand < qty:
                short.append({"product_id": pid, "requested_quantity": qty, "on_hand": on_hand})
        if short:
            raise InsufficientResource(
                "Insufficient stock in source warehouse",
                details={"warehouse_id": source.id, "items": short},
            )

        number = next_document_number(company_id=ctx.company_id, document_type=DOC_TRANSFER, prefix="GT")

        movements = []
        for pid, qty in requested.items():
            product = products[pid]
            movements.append(apply_movement(
                ctx, product,
                quantity=qty,
                movement_type="transfer",
                origin_module="INVENTORY",
                warehouse=target,
                reference_type="TRANSFER",
                reference=number,
                reason=reason or f"Transfer in from {source.name}",
            ))
            movements.append(apply_movement(
                ctx, product,
                quantity=-qty,
                movement_type="transfer",
                origin_module="INVENTORY",
                warehouse=source,
                reference_type="TRANSFER",
                reference=number,
                reason=reason or f"Transfer out to {target.name}",
            ))

        current_app.logger.info(
            "Transfer %s: %s product(s) from warehouse %s to %s",
            number, len(requested), source.id, target.id,
        )
        return {"transfer_number": number, "movements": movements}

    return run_atomic(_op, commit=commit)


# =============================================================================
# READ SIDE
# =============================================================================

def get_warehouse_quantity(warehouse_id: int, product_id: int) -> int:
    stock = db.session.query(WarehouseStock).filter_by(
        warehouse_id=warehouse_id,
        product_id=product_id,
    ).first()
    return stock.quantity if stock else 0


def get_warehouse_stock(ctx: TenantContext, warehouse_id: int) -> list[WarehouseStock]:
    require_context(ctx)
    require_warehouse(ctx, warehouse_id)
    return db.session.query(WarehouseStock).filter_by(
        warehouse_id=warehouse_id
    ).order_by(WarehouseStock.product_id).all()


def get_movements(
    ctx: TenantContext,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    batch_id: int | None = None,
    movement_type: str | None = None,
    reference: str | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    """Movements for a company, newest first."""
    require_context(ctx)
    q = db.session.query(StockMovement).filter(StockMovement.company_id == ctx.company_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if warehouse_id is not None:
        q = q.filter(StockMovement.warehouse_id == warehouse_id)
    if batch_id is not None:
        q = q.filter(StockMovement.batch_id == batch_id)
    if movement_type is not None:
        q = q.filter(StockMovement.movement_type == movement_type)
    if reference is not None:
        q = q.filter(StockMovement.reference == reference)
    return q.order_by(StockMovement.id.desc()).limit(limit).all()


def verify_product_balance(ctx: TenantContext, product_id: int) -> dict:
    """
    Replay a product's movement log and compare it to the stored balance.

    The first movement's balance_before is the baseline. Every later
    movement must start where the previous one ended, and each stored
    magnitude must equal abs(balance_after - balance_before).

    Returns:
        {"product_id", "expected", "actual", "movement_count",
         "consistent", "first_break_movement_id"}
    """
    require_context(ctx)
    product = require_product(ctx, product_id)

    movements = db.session.query(StockMovement).filter_by(
        company_id=ctx.company_id,
        product_id=product.id,
    ).order_by(StockMovement.id).all()

    running = movements[0].balance_before if movements else product.quantity
    first_break = None
    for movement in movements:
        chain_ok = movement.balance_before == running
        magnitude_ok = movement.quantity == abs(movement.delta)
        if first_break is None and not (chain_ok and magnitude_ok):
            first_break = movement.id
        running = movement.balance_after

    return {
        "product_id": product.id,
        "expected": running,
        "actual": product.quantity,
        "movement_count": len(movements),
        "consistent": first_break is None and running == product.quantity,
        "first_break_movement_id": first_break,
    }
