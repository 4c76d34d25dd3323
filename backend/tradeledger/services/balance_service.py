# Overview: Read-side vendor/customer balances, statements, outstanding and overdue views.

"""
Balance & Statement Aggregator

Pure read path over LedgerEntry. Owns no state.

- Positive vendor balance = payable; positive customer balance = receivable.
- outstanding: active parties with balance > 0, with credit-limit utilization
  min(100, round(balance / credit_limit * 100)), sorted by balance descending.
- overdue: best-effort projection. Due date = latest relevant document date +
  payment terms (party terms, else DEFAULT_PAYMENT_TERMS_DAYS).
  Vendors: latest PO in sent/partial/received by expected_date.
  Customers: latest on-account sale by occurred_at.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import NotFound, ValidationError
from ..models import Customer, PurchaseOrder, Sale, Vendor
from ..models.ledger import PARTY_CUSTOMER, PARTY_VENDOR
from ..time_utils import utcnow
from . import ledger_service
from .ledger_service import Party

PARTY_MODELS = {
    PARTY_VENDOR: Vendor,
    PARTY_CUSTOMER: Customer,
}

OVERDUE_PO_STATUSES = ("sent", "partial", "received")


def _party_model(party_type: str):
    model = PARTY_MODELS.get(party_type)
    if model is None:
        raise ValidationError(f"Invalid party_type {party_type!r}", {"party_type": party_type})
    return model


def _require_party(party_type: str, party_id: int):
    party = db.session.get(_party_model(party_type), party_id)
    if party is None:
        raise NotFound(f"{party_type} {party_id} not found", {"party_type": party_type, "party_id": party_id})
    return party


def get_balance(party_type: str, party_id: int, as_of: datetime | None = None) -> int:
    _require_party(party_type, party_id)
    return ledger_service.balance(Party(party_type, party_id), as_of=as_of)


def get_statement(
    party_type: str,
    party_id: int,
    *,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int | None = None,
) -> dict:
    party = _require_party(party_type, party_id)
    data = ledger_service.statement(Party(party_type, party_id), from_date=from_date, to_date=to_date, limit=limit)
    data["party_name"] = party.name
    return data


def credit_utilization(balance_cents: int, credit_limit_cents: int | None) -> int | None:
    """Percent of credit limit in use, capped at 100; None when no limit is set."""
    if not credit_limit_cents or credit_limit_cents <= 0:
        return None
    pct = (Decimal(balance_cents) * 100 / Decimal(credit_limit_cents)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(100, int(pct))


def list_outstanding(party_type: str) -> list[dict]:
    model = _party_model(party_type)
    parties = db.session.query(model).filter(model.is_active.is_(True)).all()
    balances = ledger_service.balances_bulk(party_type, [p.id for p in parties])

    rows = []
    for party in parties:
        bal = balances.get(party.id, 0)
        if bal <= 0:
            continue
        rows.append({
            "party_type": party_type,
            "party_id": party.id,
            "name": party.name,
            "balance_cents": bal,
            "credit_limit_cents": party.credit_limit_cents,
            "credit_utilization_pct": credit_utilization(bal, party.credit_limit_cents),
        })
    rows.sort(key=lambda r: (-r["balance_cents"], r["party_id"]))
    return rows


def _latest_vendor_documents(vendor_ids: list[int]) -> dict[int, date]:
    rows = (
        db.session.query(PurchaseOrder.vendor_id, func.max(PurchaseOrder.expected_date))
        .filter(
            PurchaseOrder.vendor_id.in_(vendor_ids),
            PurchaseOrder.status.in_(OVERDUE_PO_STATUSES),
            PurchaseOrder.expected_date.isnot(None),
        )
        .group_by(PurchaseOrder.vendor_id)
        .all()
    )
    return {vendor_id: latest for vendor_id, latest in rows if latest is not None}


def _latest_customer_documents(customer_ids: list[int]) -> dict[int, date]:
    rows = (
        db.session.query(Sale.customer_id, func.max(Sale.occurred_at))
        .filter(
            Sale.customer_id.in_(customer_ids),
            Sale.payment_method == "on_account",
        )
        .group_by(Sale.customer_id)
        .all()
    )
    result = {}
    for customer_id, latest in rows:
        if latest is None:
            continue
        result[customer_id] = latest.date() if isinstance(latest, datetime) else latest
    return result


def list_overdue(party_type: str, *, today: date | None = None) -> list[dict]:
    """Outstanding parties whose projected due date has passed, most overdue first."""
    today = today or utcnow().date()
    default_terms = current_app.config.get("DEFAULT_PAYMENT_TERMS_DAYS", 30)

    outstanding = list_outstanding(party_type)
    if not outstanding:
        return []
    ids = [row["party_id"] for row in outstanding]

    if party_type == PARTY_VENDOR:
        latest = _latest_vendor_documents(ids)
    else:
        latest = _latest_customer_documents(ids)

    model = _party_model(party_type)
    terms = {
        p.id: p.payment_terms_days
        for p in db.session.query(model).filter(model.id.in_(ids)).all()
    }

    rows = []
    for row in outstanding:
        doc_date = latest.get(row["party_id"])
        if doc_date is None:
            continue
        term_days = terms.get(row["party_id"])
        if term_days is None:
            term_days = default_terms
        due = doc_date + timedelta(days=term_days)
        if due >= today:
            continue
        rows.append({
            **row,
            "last_document_date": doc_date.isoformat(),
            "payment_terms_days": term_days,
            "due_date": due.isoformat(),
            "overdue_days": (today - due).days,
        })
    rows.sort(key=lambda r: (-r["overdue_days"], -r["balance_cents"]))
    return rows
