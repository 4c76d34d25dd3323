# Overview: Consistency verification and cache regeneration from the append-only logs.

"""
Integrity checks

- verify_stock: on_hand_quantity == opening_quantity + SUM(quantity_change)
- verify_ledger: every posting and every reference nets to zero, and every
  reference resolves to its originating document
- rebuild_cached_balances: regenerate Customer.outstanding_balance_cents from
  the ledger and Product.committed_quantity from open orders

Findings are returned, never auto-corrected, except by rebuild_cached_balances,
which only touches cache columns.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import NotFound
from ..models import Customer, LedgerEntry, Order, OrderLine, Product, StockMovement
from ..models.ledger import PARTY_CUSTOMER
from ..references import REFERENCE_MODELS, DocumentRef, resolve_reference
from .concurrency import run_with_retry
from .order_service import TERMINAL_STATUSES
from . import ledger_service


def verify_stock(product_id: int | None = None) -> list[dict]:
    sums = db.session.query(
        StockMovement.product_id,
        func.coalesce(func.sum(StockMovement.quantity_change), 0),
    ).group_by(StockMovement.product_id)
    if product_id is not None:
        sums = sums.filter(StockMovement.product_id == product_id)
    movement_totals = {pid: int(total) for pid, total in sums.all()}

    query = db.session.query(Product)
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    findings = []
    for product in query.order_by(Product.id).all():
        expected = (product.opening_quantity or 0) + movement_totals.get(product.id, 0)
        if expected != product.on_hand_quantity:
            findings.append({
                "product_id": product.id,
                "sku": product.sku,
                "on_hand_quantity": product.on_hand_quantity,
                "expected_quantity": expected,
            })
    return findings


def verify_ledger() -> list[dict]:
    findings = []

    postings = (
        db.session.query(
            LedgerEntry.posting_id,
            func.sum(LedgerEntry.debit_cents),
            func.sum(LedgerEntry.credit_cents),
        )
        .group_by(LedgerEntry.posting_id)
        .having(func.sum(LedgerEntry.debit_cents) != func.sum(LedgerEntry.credit_cents))
        .all()
    )
    for posting_id, debit, credit in postings:
        findings.append({"posting_id": posting_id, "debit_cents": int(debit), "credit_cents": int(credit)})

    references = (
        db.session.query(
            LedgerEntry.reference_type,
            LedgerEntry.reference_id,
            func.sum(LedgerEntry.debit_cents),
            func.sum(LedgerEntry.credit_cents),
        )
        .group_by(LedgerEntry.reference_type, LedgerEntry.reference_id)
        .having(func.sum(LedgerEntry.debit_cents) != func.sum(LedgerEntry.credit_cents))
        .all()
    )
    for ref_type, ref_id, debit, credit in references:
        findings.append({
            "reference_type": ref_type,
            "reference_id": ref_id,
            "debit_cents": int(debit),
            "credit_cents": int(credit),
        })

    for ref_type, ref_id in (
        db.session.query(LedgerEntry.reference_type, LedgerEntry.reference_id)
        .distinct()
        .order_by(LedgerEntry.reference_type, LedgerEntry.reference_id)
        .all()
    ):
        if not _document_exists(ref_type, ref_id):
            findings.append({"reference_type": ref_type, "reference_id": ref_id, "missing_document": True})
    return findings


def _document_exists(kind: str, doc_id: int) -> bool:
    if kind not in REFERENCE_MODELS:
        return False
    try:
        resolve_reference(DocumentRef(kind, doc_id))
    except NotFound:
        return False
    return True


def rebuild_cached_balances() -> dict:
    """
    Regenerate cache columns from their sources of truth.

    Returns the corrections applied: {"customers": [...], "products": [...]}.
    """
    def _op():
        corrections = {"customers": [], "products": []}

        receivables = ledger_service.balances_bulk(PARTY_CUSTOMER)
        for customer in db.session.query(Customer).order_by(Customer.id).all():
            actual = receivables.get(customer.id, 0)
            if customer.outstanding_balance_cents != actual:
                corrections["customers"].append({
                    "customer_id": customer.id,
                    "cached_cents": customer.outstanding_balance_cents,
                    "ledger_cents": actual,
                })
                customer.outstanding_balance_cents = actual

        reserved = dict(
            db.session.query(OrderLine.product_id, func.sum(OrderLine.quantity))
            .join(Order, Order.id == OrderLine.order_id)
            .filter(Order.status.notin_(TERMINAL_STATUSES))
            .group_by(OrderLine.product_id)
            .all()
        )
        for product in db.session.query(Product).order_by(Product.id).all():
            expected = int(reserved.get(product.id, 0) or 0) if product.is_stock_tracked else 0
            if product.committed_quantity != expected:
                corrections["products"].append({
                    "product_id": product.id,
                    "cached_committed": product.committed_quantity,
                    "open_order_committed": expected,
                })
                product.committed_quantity = expected

        for kind, rows in corrections.items():
            for row in rows:
                current_app.logger.warning("Cache drift corrected (%s): %s", kind, row)

        db.session.commit()
        return corrections

    return run_with_retry(_op)
