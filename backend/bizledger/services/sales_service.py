# Overview: Sale consumption engine for retail and batch-tracked (regulated) sales.

"""
Sales Service

WHY: A sale and the stock it consumes are one unit of work. The Sale row, its
lines, every StockMovement and every batch decrement are written in the same
transaction; if any line fails, none of them exist afterwards.

TWO VARIANTS:
- create_sale: retail, per product. Balances are pre-validated for all lines
  before anything is written.
- create_regulated_sale: per batch. The caller has already chosen the batch
  (FEFO via batch_service.list_batches_fefo) and applied any prescription
  policy; this engine enforces batch availability and depletion only.

Loyalty points and lifetime purchase totals are applied afterwards in a
savepoint. They do not guard a physical resource, so a failure there is
logged and the sale still commits.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Sale, SaleLine, Customer
from .batch_service import consume_batch
from .concurrency import run_atomic
from .document_service import next_document_number, DOC_SALE, DOC_REGULATED_SALE
from .errors import ValidationError, InsufficientResource
from .stock_service import apply_movement
from .tenant_service import (
    TenantContext,
    require_context,
    require_product,
    require_batch,
    require_customer,
    require_sale,
)


PAYMENT_METHODS = ("cash", "mpesa", "emola", "card", "credit")
MOBILE_METHODS = ("mpesa", "emola")

KIND_RETAIL = "retail"
KIND_REGULATED = "regulated"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _positive_int(value) -> bool:
    return _is_int(value) and value > 0


def _validate_items(items: list[dict], id_key: str) -> None:
    """Reject empty or malformed line items before any row is touched."""
    if not items:
        raise ValidationError("Sale must have at least one item")
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Sale items must be mappings", details={"item": item})
        if not _positive_int(item.get(id_key)):
            raise ValidationError(f"Item {id_key} must be a positive integer", details={"item": item})
        if not _positive_int(item.get("quantity")):
            raise ValidationError("Item quantities must be positive integers", details={"item": item})
        for amount_key in ("unit_price_cents", "discount_cents"):
            value = item.get(amount_key)
            if value is not None and not _is_int(value):
                raise ValidationError(
                    f"Item {amount_key} must be an integer number of cents",
                    details={"item": item},
                )


def _validate_header(payment_method: str, is_credit: bool, customer_id: int | None, discount_cents: int) -> bool:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method}",
            details={"allowed": list(PAYMENT_METHODS)},
        )
    is_credit = bool(is_credit) or payment_method == "credit"
    if is_credit and customer_id is None:
        raise ValidationError("Credit sales require a customer")
    if not _is_int(discount_cents):
        raise ValidationError(
            "discount_cents must be an integer number of cents",
            details={"discount_cents": discount_cents},
        )
    if discount_cents < 0:
        raise ValidationError("discount_cents cannot be negative")
    return is_credit


def _open_sale(
    ctx: TenantContext,
    *,
    kind: str,
    sale_number: str,
    customer: Customer | None,
    payment_method: str,
    is_credit: bool,
    notes: str | None,
    prescription_reference: str | None = None,
) -> Sale:
    sale = Sale(
        company_id=ctx.company_id,
        customer_id=customer.id if customer is not None else None,
        sale_number=sale_number,
        kind=kind,
        payment_method=payment_method,
        is_credit=is_credit,
        prescription_reference=prescription_reference,
        notes=notes,
        created_by=ctx.performed_by,
    )
    db.session.add(sale)
    db.session.flush()
    return sale


def _finalize_totals(sale: Sale, subtotal_cents: int, discount_cents: int) -> None:
    if discount_cents > subtotal_cents:
        raise ValidationError(
            "Discount exceeds sale subtotal",
            details={"subtotal_cents": subtotal_cents, "discount_cents": discount_cents},
        )
    sale.subtotal_cents = subtotal_cents
    sale.discount_cents = discount_cents
    sale.total_cents = subtotal_cents - discount_cents
    sale.paid_amount_cents = 0 if sale.is_credit else sale.total_cents


def _line_total(quantity: int, unit_price_cents: int, discount_cents: int) -> int:
    if not _is_int(unit_price_cents) or unit_price_cents < 0:
        raise ValidationError("Line unit price must be a non-negative amount")
    if discount_cents < 0:
        raise ValidationError("Line discount cannot be negative")
    gross = quantity * unit_price_cents
    if discount_cents > gross:
        raise ValidationError("Line discount exceeds line amount")
    return gross - discount_cents


def _apply_customer_side_effects(sale: Sale) -> None:
    """
    Best-effort loyalty update for the sale's customer.

    Runs in a savepoint so a failure rolls back only these counters.
    """
    if sale.customer_id is None:
        return

    point_unit = int(current_app.config.get("LEDGER_LOYALTY_POINT_UNIT_CENTS", 10000))
    try:
        with db.session.begin_nested():
            customer = db.session.get(Customer, sale.customer_id)
            customer.loyalty_points = (customer.loyalty_points or 0) + sale.total_cents // point_unit
            customer.total_purchases_cents = (customer.total_purchases_cents or 0) + sale.total_cents
    except SQLAlchemyError:
        current_app.logger.exception(
            "Loyalty update failed for sale %s (customer %s)", sale.sale_number, sale.customer_id
        )


def create_sale(
    ctx: TenantContext,
    *,
    items: list[dict],
    payment_method: str = "cash",
    customer_id: int | None = None,
    is_credit: bool = False,
    discount_cents: int = 0,
    notes: str | None = None,
    origin_module: str = "POS",
    commit: bool = True,
) -> Sale:
    """
    Create a completed retail sale and consume its stock.

    Args:
        items: [{"product_id", "quantity", "unit_price_cents"?, "discount_cents"?}]
            unit_price_cents defaults to the product's price_cents.
        payment_method: cash, mpesa, emola, card or credit
        is_credit: Sale is settled later through credit payments; implied by
            payment_method="credit". Requires customer_id.
        discount_cents: Sale-level discount on top of line discounts

    Raises:
        InsufficientResource: one or more products lack stock; details["items"]
            lists each short product with requested_quantity and on_hand.
    """
    require_context(ctx)
    _validate_items(items, "product_id")
    is_credit = _validate_header(payment_method, is_credit, customer_id, discount_cents)

    def _op():
        customer = require_customer(ctx, customer_id) if customer_id is not None else None

        requested: dict[int, int] = {}
        for item in items:
            requested[item["product_id"]] = requested.get(item["product_id"], 0) + item["quantity"]

        # Lock in id order so concurrent sales cannot deadlock
        products = {pid: require_product(ctx, pid, lock=True) for pid in sorted(requested)}

        short = []
        for pid, qty in requested.items():
            on_hand = products[pid].quantity
            if on_hand < qty:
                short.append({
                    "product_id": pid,
                    "sku": products[pid].sku,
                    "requested_quantity": qty,
                    "on_hand": on_hand,
                })
        if short:
            raise InsufficientResource("Insufficient stock for sale", details={"items": short})

        sale_number = next_document_number(company_id=ctx.company_id, document_type=DOC_SALE, prefix="FR")
        sale = _open_sale(
            ctx,
            kind=KIND_RETAIL,
            sale_number=sale_number,
            customer=customer,
            payment_method=payment_method,
            is_credit=is_credit,
            notes=notes,
        )

        subtotal = 0
        for item in items:
            product = products[item["product_id"]]
            quantity = item["quantity"]
            unit_price = item.get("unit_price_cents")
            if unit_price is None:
                unit_price = product.price_cents
            line_discount = item.get("discount_cents") or 0
            line_total = _line_total(quantity, unit_price, line_discount)

            movement = apply_movement(
                ctx,
                product,
                quantity=-quantity,
                movement_type="sale",
                origin_module=origin_module,
                reference_type="SALE",
                reference=sale_number,
                reason=f"Sale {sale_number}",
            )
            db.session.add(SaleLine(
                sale_id=sale.id,
                product_id=product.id,
                quantity=quantity,
                unit_price_cents=unit_price,
                discount_cents=line_discount,
                line_total_cents=line_total,
                stock_movement_id=movement.id,
            ))
            subtotal += line_total

        _finalize_totals(sale, subtotal, discount_cents)
        db.session.flush()

        _apply_customer_side_effects(sale)

        current_app.logger.info(
            "Sale %s recorded: %s line(s), total=%s, method=%s, credit=%s",
            sale_number, len(items), sale.total_cents, payment_method, is_credit,
        )
        return sale

    return run_atomic(_op, commit=commit)


def create_regulated_sale(
    ctx: TenantContext,
    *,
    items: list[dict],
    payment_method: str = "cash",
    customer_id: int | None = None,
    is_credit: bool = False,
    discount_cents: int = 0,
    prescription_reference: str | None = None,
    notes: str | None = None,
    origin_module: str = "PHARMACY",
    commit: bool = True,
) -> Sale:
    """
    Create a sale that consumes specific batches.

    Each line names the batch to sell from. Lines are applied in order; the
    first line that fails (unknown batch, depleted batch, not enough
    available) aborts the whole sale and nothing is written.

    Args:
        items: [{"batch_id", "quantity", "unit_price_cents"?, "discount_cents"?}]
            unit_price_cents defaults to the batch sell price, then the
            product price.
        prescription_reference: Stored on the sale; validity is the
            caller's concern.

    Raises:
        NotFound: batch absent or owned by another company
        InvalidState: batch depleted
        InsufficientResource: batch quantity_available below the line quantity
    """
    require_context(ctx)
    _validate_items(items, "batch_id")
    is_credit = _validate_header(payment_method, is_credit, customer_id, discount_cents)

    def _op():
        customer = require_customer(ctx, customer_id) if customer_id is not None else None

        # Products before batches, each in id order, matching expire_batch
        batch_ids = sorted({item["batch_id"] for item in items})
        product_ids = sorted({require_batch(ctx, bid).product_id for bid in batch_ids})
        for pid in product_ids:
            require_product(ctx, pid, lock=True)
        batches = {bid: require_batch(ctx, bid, lock=True) for bid in batch_ids}

        sale_number = next_document_number(
            company_id=ctx.company_id,
            document_type=DOC_REGULATED_SALE,
            prefix="PH",
            pad=6,
        )
        sale = _open_sale(
            ctx,
            kind=KIND_REGULATED,
            sale_number=sale_number,
            customer=customer,
            payment_method=payment_method,
            is_credit=is_credit,
            notes=notes,
            prescription_reference=prescription_reference,
        )

        subtotal = 0
        for item in items:
            batch = batches[item["batch_id"]]
            quantity = item["quantity"]

            movement = consume_batch(
                ctx,
                batch,
                quantity,
                movement_type="sale",
                origin_module=origin_module,
                reference_type="SALE",
                reference=sale_number,
                reason=f"Sale {sale_number}",
            )

            unit_price = item.get("unit_price_cents")
            if unit_price is None:
                unit_price = batch.sell_price_cents if batch.sell_price_cents is not None else batch.product.price_cents
            line_discount = item.get("discount_cents") or 0
            line_total = _line_total(quantity, unit_price, line_discount)

            db.session.add(SaleLine(
                sale_id=sale.id,
                product_id=batch.product_id,
                batch_id=batch.id,
                quantity=quantity,
                unit_price_cents=unit_price,
                discount_cents=line_discount,
                line_total_cents=line_total,
                stock_movement_id=movement.id,
            ))
            subtotal += line_total

        _finalize_totals(sale, subtotal, discount_cents)
        db.session.flush()

        _apply_customer_side_effects(sale)

        current_app.logger.info(
            "Regulated sale %s recorded: %s line(s), total=%s, prescription=%s",
            sale_number, len(items), sale.total_cents, prescription_reference,
        )
        return sale

    return run_atomic(_op, commit=commit)


def get_sale(ctx: TenantContext, sale_id: int) -> Sale:
    require_context(ctx)
    return require_sale(ctx, sale_id)
