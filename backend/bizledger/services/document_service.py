# Overview: Atomic per-company document numbering.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .errors import ConcurrencyConflict, ValidationError


DOC_SALE = "SALE"
DOC_REGULATED_SALE = "REGULATED_SALE"
DOC_TRANSFER = "TRANSFER"


def _bump(company_id: int, document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.company_id == company_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(company_id=company_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def allocate_number(company_id: int, document_type: str) -> int:
    """
    Atomically allocate the next integer in a company's sequence.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock, so
    concurrent writers of the same company serialize on it and each sees a
    distinct value. Runs inside the caller's transaction: a rolled-back sale
    returns its number.

    First use creates the counter row inside a savepoint; if another writer
    created it concurrently the savepoint is discarded and the increment is
    retried once. A second miss raises ConcurrencyConflict.
    """
    if not company_id:
        raise ValidationError("company_id is required")
    if not document_type:
        raise ValidationError("document_type is required")

    number = _bump(company_id, document_type)
    if number is not None:
        return number

    savepoint = db.session.begin_nested()
    try:
        db.session.add(DocumentSequence(company_id=company_id, document_type=document_type, next_number=2))
        db.session.flush()
        savepoint.commit()
        return 1
    except IntegrityError:
        savepoint.rollback()

    number = _bump(company_id, document_type)
    if number is None:
        raise ConcurrencyConflict(
            "Could not allocate document number",
            details={"company_id": company_id, "document_type": document_type},
        )
    return number


def next_document_number(
    *,
    company_id: int,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """Allocate and format a document number, e.g. FR-001-0042."""
    next_num = allocate_number(company_id, document_type)
    return f"{prefix}-{company_id:03d}-{next_num:0{pad}d}"
