# Overview: Credit memo workflow; vendor/customer returns, damages and rate corrections.

"""
Credit Memo Workflow

LIFECYCLE:
1. DRAFT: Created, editable, no side effects outside the document
2. APPROVED: Side effects applied exactly once
3. CANCELLED: From DRAFT (pure status change) or from APPROVED with
   acknowledge_unreversed=True

APPROVAL SIDE EFFECTS:
- VENDOR memo:   DR VENDOR / CR PURCHASE_RETURN (total)
- CUSTOMER memo: DR SALES_RETURN / CR CUSTOMER (total), and the customer's
  cached receivable drops by the total
- affects_inventory: one +qty CREDIT_MEMO movement per stock-tracked line

Cancelling an APPROVED memo performs NO ledger or stock reversal. Callers must
opt in to that explicitly; the memo is flagged cancelled_without_reversal.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import InvalidState, MissingParty, NotFound, ValidationError
from ..models import CreditMemo, CreditMemoLine, Customer, Product, Vendor
from ..models.ledger import (
    ACCOUNT_CUSTOMER,
    ACCOUNT_PURCHASE_RETURN,
    ACCOUNT_SALES_RETURN,
    ACCOUNT_VENDOR,
)
from ..money import percent_to_bps, round_half_up, tax_on
from ..references import ref_for
from ..time_utils import utcnow
from . import ledger_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import Party, PostingLine

MEMO_TYPE_VENDOR = "VENDOR"
MEMO_TYPE_CUSTOMER = "CUSTOMER"
MEMO_TYPES = {MEMO_TYPE_VENDOR, MEMO_TYPE_CUSTOMER}

REASONS = {"DAMAGED", "RATE_DIFFERENCE", "RETURN", "SCHEME", "OTHER"}

STATUS_DRAFT = "DRAFT"
STATUS_APPROVED = "APPROVED"
STATUS_ADJUSTED = "ADJUSTED"
STATUS_CLOSED = "CLOSED"
STATUS_CANCELLED = "CANCELLED"


def _line_tax_bps(raw: dict, details: dict) -> int:
    if raw.get("tax_rate_bps") is not None:
        bps = raw["tax_rate_bps"]
    else:
        try:
            bps = percent_to_bps(raw.get("tax_percent", 0) or 0)
        except ValueError as exc:
            raise ValidationError(str(exc), details) from exc
    if not isinstance(bps, int) or bps < 0:
        raise ValidationError("tax rate must be non-negative", details)
    return bps


def _build_lines(lines: list[dict]) -> list[CreditMemoLine]:
    """
    Price memo lines.

    tax = quantity * unit_price * tax% / 100 (rounded half-up per line)
    total = quantity * unit_price + tax
    """
    if not lines:
        raise ValidationError("Credit memo requires at least one line")

    built = []
    for i, raw in enumerate(lines):
        product_id = raw.get("product_id")
        qty = raw.get("quantity")
        unit_price = raw.get("unit_price_cents")
        details = {"line": i, "product_id": product_id}

        if product_id is not None and db.session.get(Product, product_id) is None:
            raise NotFound(f"Product {product_id} not found", details)
        if not isinstance(qty, int) or qty <= 0:
            raise ValidationError("quantity must be a positive integer", details)
        if not isinstance(unit_price, int) or unit_price < 0:
            raise ValidationError("unit_price_cents must be a non-negative integer", details)

        bps = _line_tax_bps(raw, details)
        amount = qty * unit_price
        tax = round_half_up(tax_on(amount, bps))

        built.append(CreditMemoLine(
            product_id=product_id,
            description=raw.get("description"),
            quantity=qty,
            unit_price_cents=unit_price,
            tax_rate_bps=bps,
            tax_cents=tax,
            total_cents=amount + tax,
        ))
    return built


def _recompute_totals(memo: CreditMemo) -> None:
    memo.subtotal_cents = sum(line.quantity * line.unit_price_cents for line in memo.lines)
    memo.tax_cents = sum(line.tax_cents for line in memo.lines)
    memo.total_cents = memo.subtotal_cents + memo.tax_cents


def _validate_party(memo_type: str, vendor_id: int | None, customer_id: int | None) -> None:
    if memo_type == MEMO_TYPE_VENDOR:
        if customer_id is not None:
            raise ValidationError("VENDOR credit memo cannot reference a customer")
        if vendor_id is not None and db.session.get(Vendor, vendor_id) is None:
            raise NotFound(f"Vendor {vendor_id} not found", {"vendor_id": vendor_id})
    else:
        if vendor_id is not None:
            raise ValidationError("CUSTOMER credit memo cannot reference a vendor")
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise NotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})


def build_credit_memo(
    *,
    memo_type: str,
    reason: str,
    lines: list[dict],
    vendor_id: int | None = None,
    customer_id: int | None = None,
    affects_inventory: bool = True,
    reference_shipment_id: int | None = None,
    reference_sale_id: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> CreditMemo:
    """Create a DRAFT memo inside the caller's unit of work (flush, no commit)."""
    if memo_type not in MEMO_TYPES:
        raise ValidationError(f"Invalid memo_type {memo_type!r}", {"memo_type": memo_type})
    if reason not in REASONS:
        raise ValidationError(f"Invalid reason {reason!r}", {"reason": reason})
    _validate_party(memo_type, vendor_id, customer_id)

    memo = CreditMemo(
        document_number=next_document_number(document_type="CREDIT_MEMO", prefix="CM"),
        memo_type=memo_type,
        reason=reason,
        status=STATUS_DRAFT,
        vendor_id=vendor_id,
        customer_id=customer_id,
        affects_inventory=bool(affects_inventory),
        reference_shipment_id=reference_shipment_id,
        reference_sale_id=reference_sale_id,
        notes=notes,
        created_by_user_id=actor_user_id,
    )
    memo.lines = _build_lines(lines)
    _recompute_totals(memo)

    db.session.add(memo)
    db.session.flush()
    return memo


def create_credit_memo(**kwargs) -> CreditMemo:
    """
    Create a DRAFT credit memo. Accepts the same keyword arguments as build_credit_memo.

    Lines: [{"product_id", "quantity", "unit_price_cents", "tax_percent" | "tax_rate_bps", "description"}]
    """
    def _op():
        memo = build_credit_memo(**kwargs)
        db.session.commit()
        return memo

    return run_with_retry(_op)


def _get_memo_locked(memo_id: int) -> CreditMemo:
    memo = lock_for_update(db.session.query(CreditMemo).filter_by(id=memo_id)).first()
    if memo is None:
        raise NotFound(f"Credit memo {memo_id} not found", {"credit_memo_id": memo_id})
    return memo


def update_credit_memo(
    memo_id: int,
    *,
    lines: list[dict] | None = None,
    reason: str | None = None,
    affects_inventory: bool | None = None,
    notes: str | None = None,
) -> CreditMemo:
    """Edit a DRAFT memo; totals are recomputed from the lines."""
    def _op():
        memo = _get_memo_locked(memo_id)
        if memo.status != STATUS_DRAFT:
            raise InvalidState(
                "Only DRAFT credit memos can be edited",
                {"credit_memo_id": memo_id, "status": memo.status},
            )
        if lines is not None:
            memo.lines = _build_lines(lines)
        if reason is not None:
            if reason not in REASONS:
                raise ValidationError(f"Invalid reason {reason!r}", {"reason": reason})
            memo.reason = reason
        if affects_inventory is not None:
            memo.affects_inventory = bool(affects_inventory)
        if notes is not None:
            memo.notes = notes
        _recompute_totals(memo)

        db.session.commit()
        return memo

    return run_with_retry(_op)


def _post_memo(memo: CreditMemo, actor_user_id: int | None) -> None:
    ref = ref_for(memo)
    description = f"Credit memo {memo.document_number} approved"

    if memo.memo_type == MEMO_TYPE_VENDOR:
        if memo.vendor_id is None:
            raise MissingParty("VENDOR credit memo has no vendor", {"credit_memo_id": memo.id})
        if memo.total_cents > 0:
            ledger_service.post(
                [
                    PostingLine.debit(ACCOUNT_VENDOR, memo.total_cents, party=Party.vendor(memo.vendor_id)),
                    PostingLine.credit(ACCOUNT_PURCHASE_RETURN, memo.total_cents),
                ],
                reference=ref,
                actor_user_id=actor_user_id,
                description=description,
            )
        return

    if memo.customer_id is None:
        raise MissingParty("CUSTOMER credit memo has no customer", {"credit_memo_id": memo.id})
    customer = lock_for_update(db.session.query(Customer).filter_by(id=memo.customer_id)).first()
    if customer is None:
        raise NotFound(f"Customer {memo.customer_id} not found", {"customer_id": memo.customer_id})
    if memo.total_cents > 0:
        ledger_service.post(
            [
                PostingLine.debit(ACCOUNT_SALES_RETURN, memo.total_cents),
                PostingLine.credit(ACCOUNT_CUSTOMER, memo.total_cents, party=Party.customer(memo.customer_id)),
            ],
            reference=ref,
            actor_user_id=actor_user_id,
            description=description,
        )
        customer.outstanding_balance_cents = (customer.outstanding_balance_cents or 0) - memo.total_cents


def approve_credit_memo(memo_id: int, *, actor_user_id: int | None = None) -> CreditMemo:
    """
    DRAFT -> APPROVED, applying ledger and stock effects once.

    Raises:
        InvalidState: memo is not DRAFT (including a lost concurrent approval)
        MissingParty: vendor/customer required by memo_type is absent
    """
    def _op():
        memo = _get_memo_locked(memo_id)
        if memo.status != STATUS_DRAFT:
            raise InvalidState(
                f"Cannot approve credit memo in status {memo.status}",
                {"credit_memo_id": memo_id, "status": memo.status},
            )

        _post_memo(memo, actor_user_id)

        if memo.affects_inventory:
            ref = ref_for(memo)
            for line in memo.lines:
                if line.product_id is None:
                    continue
                product = stock_ledger_service.get_product(line.product_id)
                if not product.is_stock_tracked:
                    continue
                stock_ledger_service.adjust(
                    product_id=line.product_id,
                    delta=line.quantity,
                    movement_type=stock_ledger_service.MOVEMENT_CREDIT_MEMO,
                    reference=ref,
                    actor_user_id=actor_user_id,
                    note=f"Credit memo {memo.document_number}",
                )

        memo.status = STATUS_APPROVED
        memo.approved_at = utcnow()
        memo.approved_by_user_id = actor_user_id

        db.session.commit()
        return memo

    return run_with_retry(_op)


def cancel_credit_memo(
    memo_id: int,
    *,
    actor_user_id: int | None = None,
    acknowledge_unreversed: bool = False,
) -> CreditMemo:
    """
    Cancel a memo.

    DRAFT -> CANCELLED is a pure status change. APPROVED -> CANCELLED leaves
    the ledger posting and stock movements in place; it is refused unless
    acknowledge_unreversed=True.
    """
    def _op():
        memo = _get_memo_locked(memo_id)
        if memo.status == STATUS_APPROVED:
            if not acknowledge_unreversed:
                raise InvalidState(
                    "Approved credit memo cancellation does not reverse ledger or stock; "
                    "pass acknowledge_unreversed=True to proceed",
                    {"credit_memo_id": memo_id, "status": memo.status},
                )
            memo.cancelled_without_reversal = True
            current_app.logger.warning(
                "Credit memo %s cancelled after approval; ledger and stock effects were not reversed",
                memo.document_number,
            )
        elif memo.status != STATUS_DRAFT:
            raise InvalidState(
                f"Cannot cancel credit memo in status {memo.status}",
                {"credit_memo_id": memo_id, "status": memo.status},
            )

        memo.status = STATUS_CANCELLED
        memo.cancelled_at = utcnow()
        memo.cancelled_by_user_id = actor_user_id

        db.session.commit()
        return memo

    return run_with_retry(_op)


def get_credit_memo(memo_id: int) -> CreditMemo:
    memo = db.session.get(CreditMemo, memo_id)
    if memo is None:
        raise NotFound(f"Credit memo {memo_id} not found", {"credit_memo_id": memo_id})
    return memo


def list_credit_memos(
    *,
    memo_type: str | None = None,
    status: str | None = None,
    vendor_id: int | None = None,
    customer_id: int | None = None,
) -> list[CreditMemo]:
    query = db.session.query(CreditMemo)
    if memo_type is not None:
        query = query.filter(CreditMemo.memo_type == memo_type)
    if status is not None:
        query = query.filter(CreditMemo.status == status)
    if vendor_id is not None:
        query = query.filter(CreditMemo.vendor_id == vendor_id)
    if customer_id is not None:
        query = query.filter(CreditMemo.customer_id == customer_id)
    return query.order_by(CreditMemo.id.desc()).all()
