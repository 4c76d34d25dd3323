# Overview: Typed references from ledger/movement rows back to their originating document.

from __future__ import annotations

from dataclasses import dataclass

from .extensions import db
from .errors import NotFound, ValidationError
from .models import CreditMemo, Expense, Order, PartyPayment, PurchaseOrder, Sale, SaleReturn, Shipment

REFERENCE_PURCHASE_ORDER = "PURCHASE_ORDER"
REFERENCE_CREDIT_MEMO = "CREDIT_MEMO"
REFERENCE_SHIPMENT = "SHIPMENT"
REFERENCE_SALE = "SALE"
REFERENCE_ORDER = "ORDER"
REFERENCE_PAYMENT = "PAYMENT"
REFERENCE_RECEIPT = "RECEIPT"
REFERENCE_RETURN = "RETURN"
REFERENCE_EXPENSE = "EXPENSE"

REFERENCE_MODELS = {
    REFERENCE_PURCHASE_ORDER: PurchaseOrder,
    REFERENCE_CREDIT_MEMO: CreditMemo,
    REFERENCE_SHIPMENT: Shipment,
    REFERENCE_SALE: Sale,
    REFERENCE_ORDER: Order,
    REFERENCE_PAYMENT: PartyPayment,
    REFERENCE_RECEIPT: PartyPayment,
    REFERENCE_RETURN: SaleReturn,
    REFERENCE_EXPENSE: Expense,
}


@dataclass(frozen=True)
class DocumentRef:
    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in REFERENCE_MODELS:
            raise ValidationError(f"Unknown reference kind {self.kind!r}", {"kind": self.kind})
        if self.id is None:
            raise ValidationError("Reference id is required", {"kind": self.kind})

    def as_dict(self) -> dict:
        return {"reference_type": self.kind, "reference_id": self.id}


def ref_for(document) -> DocumentRef:
    """Build the reference for a persisted document (must already be flushed)."""
    kind = getattr(document, "reference_kind", None)
    if kind is None:
        raise ValidationError(f"{type(document).__name__} cannot be a ledger reference")
    return DocumentRef(kind, document.id)


def resolve_reference(ref: DocumentRef):
    model = REFERENCE_MODELS[ref.kind]
    doc = db.session.get(model, ref.id)
    if doc is None or getattr(doc, "reference_kind", None) != ref.kind:
        raise NotFound(f"{ref.kind} {ref.id} not found", ref.as_dict())
    return doc
