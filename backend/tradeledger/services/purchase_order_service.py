# Overview: Purchase order lifecycle; drives inbound stock and the vendor payable.

"""
Purchase Receiving

LIFECYCLE:
1. draft: Created, editable
2. sent: Issued to the vendor
3. partial: A receive has been applied but not every line is complete
4. received: Every line fully received (terminal)
5. cancelled: From draft/sent/partial (terminal)

RECEIVING:
- Each line increments by min(requested, ordered - received); excess is clamped.
- Every positive increment writes one PURCHASE stock movement.
- Header status is received iff all lines are complete, else partial.
- The vendor payable (DR VENDOR / CR PURCHASE, PO total) is posted only on the
  transition into received. Receiving an already-received PO is a no-op.
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..errors import InvalidState, MissingParty, NotFound, ValidationError
from ..models import Product, PurchaseOrder, PurchaseOrderLine, Vendor
from ..models.ledger import ACCOUNT_PURCHASE, ACCOUNT_VENDOR
from ..references import ref_for
from ..time_utils import utcnow
from . import ledger_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import Party, PostingLine

STATUS_DRAFT = "draft"
STATUS_SENT = "sent"
STATUS_PARTIAL = "partial"
STATUS_RECEIVED = "received"
STATUS_CANCELLED = "cancelled"

RECEIVABLE_STATUSES = {STATUS_SENT, STATUS_PARTIAL, STATUS_RECEIVED}
CANCELLABLE_STATUSES = {STATUS_DRAFT, STATUS_SENT, STATUS_PARTIAL}


def _require_vendor(vendor_id: int | None) -> Vendor:
    if vendor_id is None:
        raise MissingParty("Purchase order requires a vendor")
    vendor = db.session.get(Vendor, vendor_id)
    if vendor is None:
        raise NotFound(f"Vendor {vendor_id} not found", {"vendor_id": vendor_id})
    return vendor


def _build_lines(lines: list[dict]) -> list[PurchaseOrderLine]:
    if not lines:
        raise ValidationError("Purchase order requires at least one line")

    built = []
    seen = set()
    for i, raw in enumerate(lines):
        product_id = raw.get("product_id")
        qty = raw.get("quantity_ordered")
        unit_cost = raw.get("unit_cost_cents", 0)
        details = {"line": i, "product_id": product_id}

        if product_id is None or db.session.get(Product, product_id) is None:
            raise NotFound(f"Product {product_id} not found", details)
        if product_id in seen:
            raise ValidationError("Duplicate product on purchase order", details)
        seen.add(product_id)
        if not isinstance(qty, int) or qty <= 0:
            raise ValidationError("quantity_ordered must be a positive integer", details)
        if not isinstance(unit_cost, int) or unit_cost < 0:
            raise ValidationError("unit_cost_cents must be a non-negative integer", details)

        built.append(PurchaseOrderLine(
            product_id=product_id,
            quantity_ordered=qty,
            quantity_received=0,
            unit_cost_cents=unit_cost,
            line_cost_cents=qty * unit_cost,
        ))
    return built


def _recompute_totals(po: PurchaseOrder) -> None:
    po.subtotal_cents = sum(line.line_cost_cents for line in po.lines)
    po.total_cents = po.subtotal_cents + (po.tax_cents or 0)


def _get_po_locked(po_id: int) -> PurchaseOrder:
    po = lock_for_update(db.session.query(PurchaseOrder).filter_by(id=po_id)).first()
    if po is None:
        raise NotFound(f"Purchase order {po_id} not found", {"purchase_order_id": po_id})
    return po


def create_purchase_order(
    *,
    vendor_id: int | None,
    lines: list[dict],
    expected_date: date | None = None,
    tax_cents: int = 0,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> PurchaseOrder:
    """
    Create a draft purchase order.

    Args:
        vendor_id: Supplying vendor (required)
        lines: [{"product_id", "quantity_ordered", "unit_cost_cents"}]
        expected_date: Expected delivery date; drives the overdue heuristic
        tax_cents: Header-level tax added on top of the line subtotal
    """
    def _op():
        _require_vendor(vendor_id)
        if not isinstance(tax_cents, int) or tax_cents < 0:
            raise ValidationError("tax_cents must be a non-negative integer")

        po = PurchaseOrder(
            document_number=next_document_number(document_type="PURCHASE_ORDER", prefix="PO"),
            vendor_id=vendor_id,
            status=STATUS_DRAFT,
            expected_date=expected_date,
            tax_cents=tax_cents,
            notes=notes,
            created_by_user_id=actor_user_id,
        )
        po.lines = _build_lines(lines)
        _recompute_totals(po)

        db.session.add(po)
        db.session.commit()
        return po

    return run_with_retry(_op)


def update_purchase_order(
    po_id: int,
    *,
    lines: list[dict] | None = None,
    expected_date: date | None = None,
    tax_cents: int | None = None,
    notes: str | None = None,
) -> PurchaseOrder:
    """Edit a draft purchase order. Lines, when given, replace the existing set."""
    def _op():
        po = _get_po_locked(po_id)
        if po.status != STATUS_DRAFT:
            raise InvalidState(
                "Only draft purchase orders can be edited",
                {"purchase_order_id": po_id, "status": po.status},
            )
        if lines is not None:
            new_lines = _build_lines(lines)
            # Old rows must be gone before re-inserting the same products.
            po.lines.clear()
            db.session.flush()
            po.lines = new_lines
        if expected_date is not None:
            po.expected_date = expected_date
        if tax_cents is not None:
            if not isinstance(tax_cents, int) or tax_cents < 0:
                raise ValidationError("tax_cents must be a non-negative integer")
            po.tax_cents = tax_cents
        if notes is not None:
            po.notes = notes
        _recompute_totals(po)

        db.session.commit()
        return po

    return run_with_retry(_op)


def send_purchase_order(po_id: int, *, actor_user_id: int | None = None) -> PurchaseOrder:
    """draft -> sent."""
    def _op():
        po = _get_po_locked(po_id)
        if po.status != STATUS_DRAFT:
            raise InvalidState(
                f"Cannot send purchase order in status {po.status}",
                {"purchase_order_id": po_id, "status": po.status},
            )
        po.status = STATUS_SENT
        po.sent_at = utcnow()
        db.session.commit()
        return po

    return run_with_retry(_op)


def _derive_status(po: PurchaseOrder) -> str:
    # Any receive call on an incomplete PO leaves it partial, even a zero-quantity one.
    if all(line.is_complete for line in po.lines):
        return STATUS_RECEIVED
    return STATUS_PARTIAL


def receive_purchase_order(
    po_id: int,
    received_lines: list[dict],
    *,
    actor_user_id: int | None = None,
) -> PurchaseOrder:
    """
    Receive goods against a purchase order.

    Args:
        received_lines: [{"product_id", "quantity_received"}]

    Raises:
        InvalidState: PO is draft or cancelled
        ValidationError: unknown product line or negative quantity
    """
    def _op():
        po = _get_po_locked(po_id)
        if po.status not in RECEIVABLE_STATUSES:
            raise InvalidState(
                f"Cannot receive purchase order in status {po.status}",
                {"purchase_order_id": po_id, "status": po.status},
            )
        if po.status == STATUS_RECEIVED:
            # Fully received already; nothing left to apply.
            return po

        lines_by_product = {line.product_id: line for line in po.lines}
        ref = ref_for(po)
        previous_status = po.status

        for i, raw in enumerate(received_lines or []):
            product_id = raw.get("product_id")
            requested = raw.get("quantity_received", 0)
            line = lines_by_product.get(product_id)
            details = {"purchase_order_id": po_id, "line": i, "product_id": product_id}
            if line is None:
                raise ValidationError("Product is not on this purchase order", details)
            if not isinstance(requested, int) or requested < 0:
                raise ValidationError("quantity_received must be a non-negative integer", details)

            qty = min(requested, line.quantity_outstanding)
            if qty <= 0:
                continue

            line.quantity_received = (line.quantity_received or 0) + qty
            product = stock_ledger_service.get_product(product_id)
            if product.is_stock_tracked:
                stock_ledger_service.adjust(
                    product_id=product_id,
                    delta=qty,
                    movement_type=stock_ledger_service.MOVEMENT_PURCHASE,
                    reference=ref,
                    actor_user_id=actor_user_id,
                    note=f"PO {po.document_number}",
                )

        po.status = _derive_status(po)

        if po.status == STATUS_RECEIVED and previous_status != STATUS_RECEIVED:
            po.received_at = utcnow()
            if po.total_cents > 0:
                vendor = Party.vendor(po.vendor_id)
                ledger_service.post(
                    [
                        PostingLine.debit(ACCOUNT_VENDOR, po.total_cents, party=vendor),
                        PostingLine.credit(ACCOUNT_PURCHASE, po.total_cents),
                    ],
                    reference=ref,
                    actor_user_id=actor_user_id,
                    description=f"Purchase order {po.document_number} received",
                    occurred_at=po.received_at,
                )

        db.session.commit()
        return po

    return run_with_retry(_op)


def cancel_purchase_order(po_id: int, *, actor_user_id: int | None = None) -> PurchaseOrder:
    """draft/sent/partial -> cancelled. Nothing has been posted, so nothing is reversed."""
    def _op():
        po = _get_po_locked(po_id)
        if po.status not in CANCELLABLE_STATUSES:
            raise InvalidState(
                f"Cannot cancel purchase order in status {po.status}",
                {"purchase_order_id": po_id, "status": po.status},
            )
        po.status = STATUS_CANCELLED
        po.cancelled_at = utcnow()
        db.session.commit()
        return po

    return run_with_retry(_op)


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFound(f"Purchase order {po_id} not found", {"purchase_order_id": po_id})
    return po


def list_purchase_orders(*, vendor_id: int | None = None, status: str | None = None) -> list[PurchaseOrder]:
    query = db.session.query(PurchaseOrder)
    if vendor_id is not None:
        query = query.filter(PurchaseOrder.vendor_id == vendor_id)
    if status is not None:
        query = query.filter(PurchaseOrder.status == status)
    return query.order_by(PurchaseOrder.id.desc()).all()
