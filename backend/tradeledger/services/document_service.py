# Overview: Human-readable document number allocation.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ValidationError
from ..models import DocumentSequence


def _read_allocated(document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(*, document_type: str, prefix: str, pad: int = 4) -> str:
    """
    Allocate the next document number for a type inside the caller's unit of work.

    The counter row is bumped with an atomic UPDATE, so two concurrent callers
    never observe the same number. The first allocation for a type inserts the
    row inside a savepoint; losing that insert race falls back to the UPDATE.
    """
    if not document_type:
        raise ValidationError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _read_allocated(document_type)
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _read_allocated(document_type)

    return f"{prefix}-{next_num:0{pad}d}"
