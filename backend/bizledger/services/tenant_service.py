"""
Tenant context and tenant-scoped lookups.

WHY: Every ledger operation is scoped to one company and attributed to a
human-readable performer. Both arrive as an explicit TenantContext argument
on every call; there is no ambient tenant state to leak between requests or
threads.

SECURITY INVARIANTS:
1. No ledger operation runs without company_id and performed_by
2. Entity ids from client input are resolved through the require_* helpers
3. An entity owned by another company is reported as NotFound (never
   revealing that it exists elsewhere)
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import Company, Warehouse, Product, Batch, Sale, Customer
from .concurrency import lock_for_update
from .errors import NotFound, ValidationError


@dataclass(frozen=True)
class TenantContext:
    """Identity supplied by the (out of scope) auth middleware."""
    company_id: int
    performed_by: str


def require_context(ctx: TenantContext | None) -> TenantContext:
    if ctx is None:
        raise ValidationError("Tenant context is required")
    if not ctx.company_id:
        raise ValidationError("company_id is required")
    if not ctx.performed_by or not str(ctx.performed_by).strip():
        raise ValidationError("performed_by is required")
    return ctx


def require_company(ctx: TenantContext) -> Company:
    company = db.session.get(Company, ctx.company_id)
    if company is None or not company.is_active:
        raise NotFound("Company not found")
    return company


def _scoped(model, entity_id: int, company_id: int, *, lock: bool = False):
    query = db.session.query(model).filter_by(id=entity_id, company_id=company_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def require_product(ctx: TenantContext, product_id: int, *, lock: bool = False) -> Product:
    product = _scoped(Product, product_id, ctx.company_id, lock=lock)
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    return product


def require_warehouse(ctx: TenantContext, warehouse_id: int) -> Warehouse:
    warehouse = _scoped(Warehouse, warehouse_id, ctx.company_id)
    if warehouse is None:
        raise NotFound("Warehouse not found", details={"warehouse_id": warehouse_id})
    return warehouse


def require_batch(ctx: TenantContext, batch_id: int, *, lock: bool = False) -> Batch:
    batch = _scoped(Batch, batch_id, ctx.company_id, lock=lock)
    if batch is None:
        raise NotFound("Batch not found", details={"batch_id": batch_id})
    return batch


def require_sale(ctx: TenantContext, sale_id: int, *, lock: bool = False) -> Sale:
    sale = _scoped(Sale, sale_id, ctx.company_id, lock=lock)
    if sale is None:
        raise NotFound("Sale not found", details={"sale_id": sale_id})
    return sale


def require_customer(ctx: TenantContext, customer_id: int) -> Customer:
    customer = _scoped(Customer, customer_id, ctx.company_id)
    if customer is None:
        raise NotFound("Customer not found", details={"customer_id": customer_id})
    return customer
