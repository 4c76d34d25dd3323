# Overview: Sale returns; restock, refund posting and loyalty clawback for goods handed back.

"""
Sale Returns

A return is recorded complete in one unit of work against a COMPLETED or
PARTIALLY_RETURNED sale:

- every stock-tracked line gets one +qty RETURN movement
- the refund posts DR SALES_RETURN / CR <refund account>
- store credit and on-account refunds credit the CUSTOMER control account and
  lower the cached receivable
- loyalty points earned on the refunded spend are clawed back
- the sale moves to PARTIALLY_RETURNED, or RETURNED once every unit is back

REFUND ARITHMETIC:
Each returned unit refunds its share of what the customer actually paid:
    refund = sale.total * (line_total * qty / line_quantity) / (subtotal - line discounts)
summed exactly across lines and rounded half-up once. The refund never exceeds
what is left unrefunded on the sale, and the return that brings back the last
unit refunds exactly that remainder.
"""

from __future__ import annotations

from datetime import datetime
from fractions import Fraction

from sqlalchemy.orm.attributes import flag_modified

from ..extensions import db
from ..errors import InvalidState, MissingParty, NotFound, ValidationError
from ..models import Customer, Sale, SaleReturn, SaleReturnLine
from ..models.ledger import (
    ACCOUNT_CARD,
    ACCOUNT_CASH,
    ACCOUNT_CUSTOMER,
    ACCOUNT_SALES_RETURN,
    ACCOUNT_UPI,
)
from ..money import round_half_up
from ..references import ref_for
from ..time_utils import utcnow, normalize_datetime
from . import ledger_service, rewards_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import Party, PostingLine
from .sales_service import PAYMENT_SPLIT, TENDER_ACCOUNTS

REFUND_ORIGINAL = "original"
REFUND_CASH = "cash"
REFUND_CARD = "card"
REFUND_DIGITAL = "digital"
REFUND_STORE_CREDIT = "store_credit"
REFUND_METHODS = {REFUND_ORIGINAL, REFUND_CASH, REFUND_CARD, REFUND_DIGITAL, REFUND_STORE_CREDIT}

REFUND_ACCOUNTS = {
    REFUND_CASH: ACCOUNT_CASH,
    REFUND_CARD: ACCOUNT_CARD,
    REFUND_DIGITAL: ACCOUNT_UPI,
    REFUND_STORE_CREDIT: ACCOUNT_CUSTOMER,
}

SALE_COMPLETED = "COMPLETED"
SALE_PARTIALLY_RETURNED = "PARTIALLY_RETURNED"
SALE_RETURNED = "RETURNED"
RETURNABLE_STATUSES = {SALE_COMPLETED, SALE_PARTIALLY_RETURNED}


def _refund_account(sale: Sale, refund_method: str) -> str:
    if refund_method not in REFUND_METHODS:
        raise ValidationError(f"Invalid refund_method {refund_method!r}", {"refund_method": refund_method})
    if refund_method != REFUND_ORIGINAL:
        return REFUND_ACCOUNTS[refund_method]
    if sale.payment_method == PAYMENT_SPLIT:
        raise ValidationError(
            "Split sales must be refunded with an explicit refund_method",
            {"sale_id": sale.id, "payment_method": sale.payment_method},
        )
    return TENDER_ACCOUNTS[sale.payment_method]


def _collect_lines(sale: Sale, items: list[dict]) -> list[tuple]:
    """Match requested items to sale lines. Returns [(sale_line, quantity, reason)]."""
    by_product = {line.product_id: line for line in sale.lines}
    requested: dict[int, list] = {}
    for i, raw in enumerate(items or []):
        product_id = raw.get("product_id")
        qty = raw.get("quantity")
        details = {"sale_id": sale.id, "line": i, "product_id": product_id}
        sale_line = by_product.get(product_id)
        if sale_line is None:
            raise ValidationError("Product is not on this sale", details)
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError("quantity must be a positive integer", details)
        entry = requested.setdefault(product_id, [sale_line, 0, raw.get("reason")])
        entry[1] += qty

    if not requested:
        raise ValidationError("Return requires at least one item", {"sale_id": sale.id})

    for sale_line, qty, _ in requested.values():
        returnable = sale_line.quantity - (sale_line.returned_quantity or 0)
        if qty > returnable:
            raise ValidationError(
                "Return quantity exceeds quantity sold",
                {
                    "sale_id": sale.id,
                    "product_id": sale_line.product_id,
                    "requested": qty,
                    "returnable": returnable,
                },
            )
    return [tuple(entry) for entry in requested.values()]


def compute_refund(sale: Sale, lines: list[tuple]) -> int:
    """Refund in cents for [(sale_line, quantity, ...)] against sale, before the remaining cap."""
    net = (sale.subtotal_cents or 0) - (sale.line_discount_cents or 0)
    if net <= 0:
        return 0
    exact = Fraction(0)
    for sale_line, qty, *_ in lines:
        exact += Fraction(sale.total_cents * sale_line.line_total_cents * qty, net * sale_line.quantity)
    return round_half_up(exact)


def create_return(
    *,
    sale_id: int,
    items: list[dict],
    reason: str,
    refund_method: str = REFUND_ORIGINAL,
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
) -> SaleReturn:
    """
    Record goods handed back against a sale.

    Args:
        items: [{"product_id", "quantity", "reason"}]
        refund_method: original, cash, card, digital or store_credit

    Raises:
        InvalidState: sale is already fully returned or not completed
        MissingParty: store credit for a walk-in sale
        ValidationError: unknown product, over-return or missing reason
    """
    def _op():
        if not reason or not str(reason).strip():
            raise ValidationError("reason is required", {"sale_id": sale_id})

        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise NotFound(f"Sale {sale_id} not found", {"sale_id": sale_id})
        if sale.status not in RETURNABLE_STATUSES:
            raise InvalidState(
                f"Cannot return against sale in status {sale.status}",
                {"sale_id": sale_id, "status": sale.status},
            )

        account = _refund_account(sale, refund_method)
        customer = None
        if account == ACCOUNT_CUSTOMER:
            if sale.customer_id is None:
                raise MissingParty("Store credit requires a customer on the sale", {"sale_id": sale_id})
            customer = lock_for_update(db.session.query(Customer).filter_by(id=sale.customer_id)).first()

        lines = _collect_lines(sale, items)
        for sale_line, qty, _ in lines:
            sale_line.returned_quantity = (sale_line.returned_quantity or 0) + qty
        fully_returned = all(line.returned_quantity >= line.quantity for line in sale.lines)

        remaining = (sale.total_cents or 0) - (sale.refunded_cents or 0)
        refund = remaining if fully_returned else min(compute_refund(sale, lines), remaining)

        when = normalize_datetime(occurred_at) or utcnow()
        sale_return = SaleReturn(
            document_number=next_document_number(document_type="RETURN", prefix="RET"),
            sale_id=sale.id,
            customer_id=sale.customer_id,
            status="COMPLETED",
            reason=str(reason).strip(),
            refund_method=refund_method,
            refund_account=account,
            total_refund_cents=refund,
            occurred_at=when,
            created_by_user_id=actor_user_id,
        )
        db.session.add(sale_return)
        db.session.flush()
        ref = ref_for(sale_return)

        for sale_line, qty, line_reason in lines:
            product = stock_ledger_service.get_product(sale_line.product_id)
            restock = product.is_stock_tracked
            db.session.add(SaleReturnLine(
                sale_return_id=sale_return.id,
                sale_line_id=sale_line.id,
                product_id=sale_line.product_id,
                product_name=sale_line.product_name,
                quantity=qty,
                unit_price_cents=sale_line.unit_price_cents,
                reason=line_reason,
                restocked=restock,
            ))
            if restock:
                stock_ledger_service.adjust(
                    product_id=sale_line.product_id,
                    delta=qty,
                    movement_type=stock_ledger_service.MOVEMENT_RETURN,
                    reference=ref,
                    actor_user_id=actor_user_id,
                    note=line_reason or f"Return {sale_return.document_number}",
                    occurred_at=when,
                )

        if refund > 0:
            party = Party.customer(sale.customer_id) if account == ACCOUNT_CUSTOMER else None
            ledger_service.post(
                [
                    PostingLine.debit(ACCOUNT_SALES_RETURN, refund),
                    PostingLine.credit(account, refund, party=party),
                ],
                reference=ref,
                actor_user_id=actor_user_id,
                description=f"Return {sale_return.document_number}",
                occurred_at=when,
            )
            if customer is not None:
                customer.outstanding_balance_cents = (customer.outstanding_balance_cents or 0) - refund

        if sale.customer_id is not None:
            rewards_service.claw_back_points(
                customer_id=sale.customer_id,
                refund_cents=refund,
                reference=ref,
                reason=f"Return {sale_return.document_number}",
                actor_user_id=actor_user_id,
            )

        sale.refunded_cents = (sale.refunded_cents or 0) + refund
        sale.status = SALE_RETURNED if fully_returned else SALE_PARTIALLY_RETURNED
        # Always version the sale row so concurrent returns against it conflict.
        flag_modified(sale, "refunded_cents")

        db.session.commit()
        return sale_return

    return run_with_retry(_op)


def get_return(return_id: int) -> SaleReturn:
    sale_return = db.session.get(SaleReturn, return_id)
    if sale_return is None:
        raise NotFound(f"Return {return_id} not found", {"return_id": return_id})
    return sale_return


def list_returns(*, sale_id: int | None = None, customer_id: int | None = None, limit: int = 50) -> list[SaleReturn]:
    query = db.session.query(SaleReturn)
    if sale_id is not None:
        query = query.filter(SaleReturn.sale_id == sale_id)
    if customer_id is not None:
        query = query.filter(SaleReturn.customer_id == customer_id)
    return query.order_by(SaleReturn.occurred_at.desc(), SaleReturn.id.desc()).limit(limit).all()
