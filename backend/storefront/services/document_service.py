# Overview: Per-store document number allocation.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current_number(store_id: int, document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    store_id: int,
    document_type: str,
    prefix: str,
    pad: int = 5,
) -> str:
    """
    Allocate the next document number for a store/type.

    Runs inside the caller's transaction: the counter bump commits or rolls
    back together with the document that consumes it. The UPDATE takes the
    row lock on (store_id, document_type); the first allocation for a pair
    inserts the row inside a savepoint so a concurrent first insert only
    costs a retry of the UPDATE, not the caller's whole transaction.
    """
    if not store_id:
        raise DocumentSequenceError("store_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == store_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_number(store_id, document_type)
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(store_id=store_id, document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise DocumentSequenceError(
                    f"Could not allocate {document_type} number for store {store_id}"
                )
            next_num = _current_number(store_id, document_type)

    return f"{prefix}-{store_id:03d}-{next_num:0{pad}d}"
