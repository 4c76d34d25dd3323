# Overview: Sale transaction processor; POS sales with stock, ledger and loyalty effects.

"""
Sale Transaction Processor - POS and counter sales

Creates an immutable Sale/Invoice snapshot, decrements stock for every
stock-tracked line, posts the tender to the ledger and awards loyalty, all in
one unit of work.

TAX & DISCOUNT ARITHMETIC:
- Items are consolidated per product (quantities and line discounts summed).
- line_tax = (quantity * price - line_discount) * tax_rate / 100
- subtotal = SUM(quantity * price)
- The bill discount scales the summed line tax by (subtotal - bill_discount) / subtotal;
  when subtotal is 0 the unadjusted tax is used. Rounded half-up once.
- total = subtotal - line discounts - bill_discount + adjusted tax
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction

from flask import current_app

from ..extensions import db
from ..errors import InsufficientStock, MissingParty, NotFound, SplitMismatch, ValidationError
from ..models import Customer, Product, Sale, SaleLine, SalePayment
from ..models.ledger import (
    ACCOUNT_CARD,
    ACCOUNT_CASH,
    ACCOUNT_CUSTOMER,
    ACCOUNT_SALES,
    ACCOUNT_UPI,
)
from ..money import round_half_up, tax_on
from ..references import ref_for
from ..time_utils import utcnow, normalize_datetime
from . import ledger_service, rewards_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import Party, PostingLine

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_DIGITAL = "digital"
PAYMENT_SPLIT = "split"
PAYMENT_ON_ACCOUNT = "on_account"
PAYMENT_METHODS = {PAYMENT_CASH, PAYMENT_CARD, PAYMENT_DIGITAL, PAYMENT_SPLIT, PAYMENT_ON_ACCOUNT}

# Tender -> ledger account it settles into
TENDER_ACCOUNTS = {
    PAYMENT_CASH: ACCOUNT_CASH,
    PAYMENT_CARD: ACCOUNT_CARD,
    PAYMENT_DIGITAL: ACCOUNT_UPI,
    PAYMENT_ON_ACCOUNT: ACCOUNT_CUSTOMER,
}
SPLIT_TENDERS = (PAYMENT_CASH, PAYMENT_CARD, PAYMENT_DIGITAL)

SALE_TYPES = {"pos", "website", "store_pickup"}


@dataclass
class PricedLine:
    product: Product
    quantity: int
    discount_cents: int
    gross_cents: int
    tax_exact: Fraction

    @property
    def tax_cents(self) -> int:
        return round_half_up(self.tax_exact)


@dataclass
class SaleTotals:
    lines: list[PricedLine] = field(default_factory=list)
    subtotal_cents: int = 0
    line_discount_cents: int = 0
    bill_discount_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0


def consolidate_items(items: list[dict]) -> list[dict]:
    """Merge repeated products, summing quantity and line discount, keeping first-seen order."""
    merged: dict[int, dict] = {}
    for i, raw in enumerate(items or []):
        product_id = raw.get("product_id")
        qty = raw.get("quantity")
        discount = raw.get("line_discount_cents", 0) or 0
        details = {"line": i, "product_id": product_id}
        if product_id is None:
            raise ValidationError("product_id is required", details)
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError("quantity must be a positive integer", details)
        if not isinstance(discount, int) or discount < 0:
            raise ValidationError("line_discount_cents must be a non-negative integer", details)

        entry = merged.setdefault(product_id, {"product_id": product_id, "quantity": 0, "line_discount_cents": 0})
        entry["quantity"] += qty
        entry["line_discount_cents"] += discount

    if not merged:
        raise ValidationError("Sale requires at least one item")
    return list(merged.values())


def compute_totals(items: list[dict], bill_discount_cents: int = 0, *, tax_exempt: bool = False) -> SaleTotals:
    """Price consolidated items. Pure read: no stock or ledger effects."""
    if not isinstance(bill_discount_cents, int) or bill_discount_cents < 0:
        raise ValidationError("bill_discount_cents must be a non-negative integer")

    totals = SaleTotals(bill_discount_cents=bill_discount_cents)
    tax_exact = Fraction(0)

    for raw in consolidate_items(items):
        product = db.session.get(Product, raw["product_id"])
        if product is None:
            raise NotFound(f"Product {raw['product_id']} not found", {"product_id": raw["product_id"]})
        if not product.is_active:
            raise ValidationError("Product is inactive", {"product_id": product.id})

        gross = raw["quantity"] * (product.price_cents or 0)
        discount = raw["line_discount_cents"]
        if discount > gross:
            raise ValidationError(
                "Line discount exceeds line amount",
                {"product_id": product.id, "line_discount_cents": discount, "line_amount_cents": gross},
            )
        rate = 0 if tax_exempt else (product.tax_rate_bps or 0)
        line = PricedLine(
            product=product,
            quantity=raw["quantity"],
            discount_cents=discount,
            gross_cents=gross,
            tax_exact=tax_on(gross - discount, rate),
        )
        totals.lines.append(line)
        totals.subtotal_cents += gross
        totals.line_discount_cents += discount
        tax_exact += line.tax_exact

    net_before_bill = totals.subtotal_cents - totals.line_discount_cents
    if bill_discount_cents > net_before_bill:
        raise ValidationError(
            "Bill discount exceeds sale amount",
            {"bill_discount_cents": bill_discount_cents, "net_cents": net_before_bill},
        )

    if totals.subtotal_cents > 0:
        adjusted = tax_exact * Fraction(totals.subtotal_cents - bill_discount_cents, totals.subtotal_cents)
    else:
        adjusted = tax_exact

    totals.tax_cents = round_half_up(adjusted)
    totals.total_cents = net_before_bill - bill_discount_cents + totals.tax_cents
    return totals


def _check_availability(totals: SaleTotals) -> None:
    for line in totals.lines:
        if not line.product.is_stock_tracked:
            continue
        if line.product.available_quantity < line.quantity:
            raise InsufficientStock(
                f"Insufficient stock for product {line.product.id}",
                {
                    "product_id": line.product.id,
                    "requested": line.quantity,
                    "available": line.product.available_quantity,
                },
            )


def resolve_tenders(payment_method: str, total_cents: int, payment_split: dict | None) -> list[tuple[str, int]]:
    """
    Map a payment method onto (tender, amount) pairs that sum to total_cents exactly.

    For split payments the given amounts must match the total within
    SPLIT_PAYMENT_TOLERANCE_CENTS; the last non-zero tender absorbs the
    sub-tolerance rounding gap so the ledger posting balances.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment_method {payment_method!r}", {"payment_method": payment_method})

    if payment_method != PAYMENT_SPLIT:
        return [(payment_method, total_cents)]

    split = payment_split or {}
    unknown = set(split) - set(SPLIT_TENDERS)
    if unknown:
        raise ValidationError("Unknown split tender", {"tenders": sorted(unknown)})

    tenders = []
    for tender in SPLIT_TENDERS:
        amount = split.get(tender, 0) or 0
        if not isinstance(amount, int) or amount < 0:
            raise ValidationError("Split amounts must be non-negative integer cents", {"tender": tender})
        if amount:
            tenders.append((tender, amount))

    tolerance = current_app.config.get("SPLIT_PAYMENT_TOLERANCE_CENTS", 1)
    paid = sum(amount for _, amount in tenders)
    if abs(paid - total_cents) > tolerance or (total_cents > 0 and not tenders):
        raise SplitMismatch(
            "Split payment does not match sale total",
            {"total_cents": total_cents, "paid_cents": paid, "split": dict(split)},
        )

    gap = total_cents - paid
    if gap and tenders:
        tender, amount = tenders[-1]
        tenders[-1] = (tender, amount + gap)
    return tenders


def create_sale(
    *,
    items: list[dict],
    payment_method: str,
    bill_discount_cents: int = 0,
    payment_split: dict | None = None,
    customer_id: int | None = None,
    sale_type: str = "pos",
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
) -> Sale:
    """
    Create a completed sale.

    Args:
        items: [{"product_id", "quantity", "line_discount_cents"}]
        payment_method: cash, card, digital, split or on_account
        payment_split: {"cash", "card", "digital"} amounts in cents (split only)

    Raises:
        InsufficientStock: a stock-tracked line exceeds available quantity
        SplitMismatch: split tenders do not sum to the total
        MissingParty: on_account without a customer
    """
    def _op():
        if sale_type not in SALE_TYPES:
            raise ValidationError(f"Invalid sale_type {sale_type!r}", {"sale_type": sale_type})

        customer = None
        if customer_id is not None:
            customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
            if customer is None:
                raise NotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})
        if payment_method == PAYMENT_ON_ACCOUNT and customer is None:
            raise MissingParty("On-account sale requires a customer")

        totals = compute_totals(items, bill_discount_cents, tax_exempt=bool(customer and customer.tax_exempt))
        _check_availability(totals)
        tenders = resolve_tenders(payment_method, totals.total_cents, payment_split)

        when = normalize_datetime(occurred_at) or utcnow()
        sale = Sale(
            document_number=next_document_number(document_type="SALE", prefix="S"),
            invoice_number=next_document_number(document_type="INVOICE", prefix="INV"),
            customer_id=customer_id,
            sale_type=sale_type,
            status="COMPLETED",
            payment_method=payment_method,
            subtotal_cents=totals.subtotal_cents,
            line_discount_cents=totals.line_discount_cents,
            bill_discount_cents=totals.bill_discount_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            occurred_at=when,
            created_by_user_id=actor_user_id,
        )
        db.session.add(sale)
        db.session.flush()

        for line in totals.lines:
            db.session.add(SaleLine(
                sale_id=sale.id,
                product_id=line.product.id,
                sku=line.product.sku,
                product_name=line.product.name,
                quantity=line.quantity,
                unit_price_cents=line.product.price_cents or 0,
                tax_rate_bps=0 if (customer and customer.tax_exempt) else (line.product.tax_rate_bps or 0),
                discount_cents=line.discount_cents,
                tax_cents=line.tax_cents,
                line_total_cents=line.gross_cents - line.discount_cents,
            ))
        for tender, amount in tenders:
            db.session.add(SalePayment(
                sale_id=sale.id,
                tender=tender,
                account_type=TENDER_ACCOUNTS[tender],
                amount_cents=amount,
            ))

        ref = ref_for(sale)
        for line in totals.lines:
            if not line.product.is_stock_tracked:
                continue
            stock_ledger_service.adjust(
                product_id=line.product.id,
                delta=-line.quantity,
                movement_type=stock_ledger_service.MOVEMENT_SALE,
                reference=ref,
                actor_user_id=actor_user_id,
                note=f"Sale {sale.document_number}",
                enforce_available=True,
                occurred_at=when,
            )

        if totals.total_cents > 0:
            posting = []
            for tender, amount in tenders:
                if amount <= 0:
                    continue
                party = Party.customer(customer_id) if tender == PAYMENT_ON_ACCOUNT else None
                posting.append(PostingLine.debit(TENDER_ACCOUNTS[tender], amount, party=party))
            posting.append(PostingLine.credit(ACCOUNT_SALES, totals.total_cents))
            ledger_service.post(
                posting,
                reference=ref,
                actor_user_id=actor_user_id,
                description=f"Sale {sale.document_number}",
                occurred_at=when,
            )

        if customer is not None:
            if payment_method == PAYMENT_ON_ACCOUNT:
                customer.outstanding_balance_cents = (customer.outstanding_balance_cents or 0) + totals.total_cents
            rewards_service.record_purchase(customer.id, totals.total_cents, occurred_at=when)
            sale.loyalty_points_awarded = rewards_service.earn_points(
                customer_id=customer.id,
                total_cents=totals.total_cents,
                reference=ref,
                actor_user_id=actor_user_id,
            )

        db.session.commit()
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found", {"sale_id": sale_id})
    return sale


def list_sales(*, customer_id: int | None = None, payment_method: str | None = None, limit: int = 100) -> list[Sale]:
    query = db.session.query(Sale)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if payment_method is not None:
        query = query.filter(Sale.payment_method == payment_method)
    return query.order_by(Sale.occurred_at.desc(), Sale.id.desc()).limit(limit).all()
