# Overview: Double-entry financial ledger; posting, reversal and balance derivation.

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InvalidState, MissingParty, NotFound, UnbalancedPosting, ValidationError
from ..models import LedgerEntry
from ..models.ledger import ACCOUNT_TYPES, CONTROL_ACCOUNTS, PARTY_TYPES
from ..references import DocumentRef
from ..time_utils import utcnow, normalize_datetime
"""
Financial Ledger Invariants (authoritative)

- Entries are written in balanced postings: SUM(debit) == SUM(credit) per
  posting_id, and therefore per reference.
- A posting is flushed as one set inside the caller's unit of work; it is
  committed together with the document state change that caused it.
- Entries are never updated or deleted. Reversal is a new opposite posting.
- Party (VENDOR/CUSTOMER) is attached only to the control-account row.
- balance(party) = SUM(debit) - SUM(credit) over the party's rows. This is the
  only source of truth for payables and receivables.
- As-of filters are inclusive: occurred_at <= as_of.
"""


@dataclass(frozen=True)
class Party:
    party_type: str
    party_id: int

    def __post_init__(self):
        if self.party_type not in PARTY_TYPES:
            raise ValidationError(f"Invalid party_type {self.party_type!r}", {"party_type": self.party_type})
        if self.party_id is None:
            raise MissingParty(f"{self.party_type} id is required", {"party_type": self.party_type})

    @classmethod
    def vendor(cls, vendor_id: int) -> "Party":
        return cls("VENDOR", vendor_id)

    @classmethod
    def customer(cls, customer_id: int) -> "Party":
        return cls("CUSTOMER", customer_id)


@dataclass(frozen=True)
class PostingLine:
    account_type: str
    debit_cents: int = 0
    credit_cents: int = 0
    party: Optional[Party] = None

    @classmethod
    def debit(cls, account_type: str, amount_cents: int, party: Party | None = None) -> "PostingLine":
        return cls(account_type, debit_cents=amount_cents, party=party)

    @classmethod
    def credit(cls, account_type: str, amount_cents: int, party: Party | None = None) -> "PostingLine":
        return cls(account_type, credit_cents=amount_cents, party=party)


def _validate_line(index: int, line: PostingLine) -> None:
    details = {"line": index, "account_type": line.account_type}
    if line.account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"Invalid account_type {line.account_type!r}", details)
    for amount in (line.debit_cents, line.credit_cents):
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("Ledger amounts must be integer cents", details)
    if line.debit_cents < 0 or line.credit_cents < 0:
        raise ValidationError("Ledger amounts must be non-negative", details)
    if (line.debit_cents > 0) == (line.credit_cents > 0):
        raise ValidationError("Each ledger row must be exactly one of debit or credit", details)

    expected_party_type = CONTROL_ACCOUNTS.get(line.account_type)
    if expected_party_type is not None:
        if line.party is None:
            raise MissingParty(f"{line.account_type} row requires a party", details)
        if line.party.party_type != expected_party_type:
            raise ValidationError(
                f"{line.account_type} row cannot carry a {line.party.party_type} party", details
            )
    elif line.party is not None:
        raise ValidationError(f"{line.account_type} row cannot carry a party", details)


def post(
    lines: Iterable[PostingLine],
    *,
    reference: DocumentRef,
    actor_user_id: int | None = None,
    description: str | None = None,
    occurred_at: datetime | None = None,
    reverses_posting_id: str | None = None,
) -> list[LedgerEntry]:
    """
    Write one balanced posting. Flushes but does not commit.

    Raises UnbalancedPosting when debits and credits differ; that is logged
    at CRITICAL since valid callers can never produce it.
    """
    lines = list(lines)
    if not lines:
        raise ValidationError("A posting needs at least one row", reference.as_dict())
    for i, line in enumerate(lines):
        _validate_line(i, line)

    total_debit = sum(line.debit_cents for line in lines)
    total_credit = sum(line.credit_cents for line in lines)
    if total_debit != total_credit:
        details = {
            **reference.as_dict(),
            "debit_cents": total_debit,
            "credit_cents": total_credit,
        }
        current_app.logger.critical("Unbalanced ledger posting rejected: %s", details)
        raise UnbalancedPosting("Ledger posting does not balance", details)

    posting_id = str(uuid.uuid4())
    when = normalize_datetime(occurred_at) or utcnow()

    entries = []
    for line in lines:
        entry = LedgerEntry(
            posting_id=posting_id,
            account_type=line.account_type,
            party_type=line.party.party_type if line.party else None,
            party_id=line.party.party_id if line.party else None,
            debit_cents=line.debit_cents,
            credit_cents=line.credit_cents,
            reference_type=reference.kind,
            reference_id=reference.id,
            reverses_posting_id=reverses_posting_id,
            description=description,
            actor_user_id=actor_user_id,
            occurred_at=when,
        )
        db.session.add(entry)
        entries.append(entry)

    db.session.flush()
    return entries


def reverse_posting(
    posting_id: str,
    *,
    actor_user_id: int | None = None,
    description: str | None = None,
    occurred_at: datetime | None = None,
) -> list[LedgerEntry]:
    """Write the mirror image of an existing posting. Flushes but does not commit."""
    originals = (
        db.session.query(LedgerEntry)
        .filter_by(posting_id=posting_id)
        .order_by(LedgerEntry.id.asc())
        .all()
    )
    if not originals:
        raise NotFound(f"Posting {posting_id} not found", {"posting_id": posting_id})
    if originals[0].reverses_posting_id is not None:
        raise InvalidState("Cannot reverse a reversal", {"posting_id": posting_id})

    already = db.session.query(LedgerEntry.id).filter_by(reverses_posting_id=posting_id).first()
    if already:
        raise InvalidState("Posting already reversed", {"posting_id": posting_id})

    mirrored = [
        PostingLine(
            account_type=e.account_type,
            debit_cents=e.credit_cents,
            credit_cents=e.debit_cents,
            party=Party(e.party_type, e.party_id) if e.party_type else None,
        )
        for e in originals
    ]
    return post(
        mirrored,
        reference=DocumentRef(originals[0].reference_type, originals[0].reference_id),
        actor_user_id=actor_user_id,
        description=description or f"Reversal of {posting_id}",
        occurred_at=occurred_at,
        reverses_posting_id=posting_id,
    )


def _party_query(party: Party):
    return db.session.query(
        func.coalesce(func.sum(LedgerEntry.debit_cents), 0),
        func.coalesce(func.sum(LedgerEntry.credit_cents), 0),
    ).filter(
        LedgerEntry.party_type == party.party_type,
        LedgerEntry.party_id == party.party_id,
    )


def balance(party: Party, as_of: datetime | None = None) -> int:
    """SUM(debit) - SUM(credit) for the party, inclusive of as_of."""
    q = _party_query(party)
    if as_of is not None:
        q = q.filter(LedgerEntry.occurred_at <= normalize_datetime(as_of))
    debit, credit = q.one()
    return int(debit) - int(credit)


def balance_before(party: Party, moment: datetime) -> int:
    """Balance strictly before moment; the anchor for statements."""
    debit, credit = _party_query(party).filter(LedgerEntry.occurred_at < normalize_datetime(moment)).one()
    return int(debit) - int(credit)


def balances_bulk(party_type: str, party_ids: Iterable[int] | None = None, as_of: datetime | None = None) -> dict[int, int]:
    """Balances for many parties of one type in a single grouped query."""
    q = db.session.query(
        LedgerEntry.party_id,
        func.coalesce(func.sum(LedgerEntry.debit_cents), 0) - func.coalesce(func.sum(LedgerEntry.credit_cents), 0),
    ).filter(LedgerEntry.party_type == party_type)
    if party_ids is not None:
        ids = list(party_ids)
        if not ids:
            return {}
        q = q.filter(LedgerEntry.party_id.in_(ids))
    if as_of is not None:
        q = q.filter(LedgerEntry.occurred_at <= normalize_datetime(as_of))
    rows = q.group_by(LedgerEntry.party_id).all()
    return {party_id: int(amount) for party_id, amount in rows}


def statement(
    party: Party,
    *,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int | None = None,
) -> dict:
    """
    Chronological entries for a party annotated with a running balance.

    The running balance folds forward from the balance just before from_date,
    so it agrees with balance(party, as_of=entry.occurred_at) at every row.
    limit truncates the rows only; the closing balance always covers the
    whole window up to to_date.
    """
    from_dt = normalize_datetime(from_date)
    to_dt = normalize_datetime(to_date)
    if from_dt and to_dt and from_dt > to_dt:
        raise ValidationError("from_date must not be after to_date")

    opening = balance_before(party, from_dt) if from_dt else 0

    q = db.session.query(LedgerEntry).filter(
        LedgerEntry.party_type == party.party_type,
        LedgerEntry.party_id == party.party_id,
    )
    if from_dt:
        q = q.filter(LedgerEntry.occurred_at >= from_dt)
    if to_dt:
        q = q.filter(LedgerEntry.occurred_at <= to_dt)
    q = q.order_by(LedgerEntry.occurred_at.asc(), LedgerEntry.id.asc())
    if limit:
        q = q.limit(limit)

    running = opening
    rows = []
    for entry in q.all():
        running += entry.debit_cents - entry.credit_cents
        row = entry.to_dict()
        row["running_balance_cents"] = running
        rows.append(row)

    return {
        "party_type": party.party_type,
        "party_id": party.party_id,
        "from_date": from_dt,
        "to_date": to_dt,
        "opening_balance_cents": opening,
        "closing_balance_cents": balance(party, as_of=to_dt),
        "entries": rows,
    }


def entries_for_reference(reference: DocumentRef) -> list[LedgerEntry]:
    return (
        db.session.query(LedgerEntry)
        .filter_by(reference_type=reference.kind, reference_id=reference.id)
        .order_by(LedgerEntry.id.asc())
        .all()
    )
