# Overview: Party payments; settling vendor payables and customer receivables.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..errors import MissingParty, NotFound, ValidationError
from ..models import Customer, PartyPayment, Vendor
from ..models.ledger import ACCOUNT_CUSTOMER, ACCOUNT_VENDOR, SETTLEMENT_ACCOUNTS
from ..references import ref_for
from ..time_utils import utcnow, normalize_datetime
from . import ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import Party, PostingLine

DIRECTION_PAYMENT = "PAYMENT"
DIRECTION_RECEIPT = "RECEIPT"


def _validate_amount(amount_cents: int, settlement_account: str) -> None:
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", {"amount_cents": amount_cents})
    if settlement_account not in SETTLEMENT_ACCOUNTS:
        raise ValidationError(
            f"Invalid settlement account {settlement_account!r}",
            {"settlement_account": settlement_account},
        )


def record_vendor_payment(
    *,
    vendor_id: int | None,
    amount_cents: int,
    settlement_account: str = "BANK",
    reference_number: str | None = None,
    notes: str | None = None,
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
) -> PartyPayment:
    """Pay a vendor: DR <settlement account> / CR VENDOR. Reduces the payable."""
    def _op():
        if vendor_id is None:
            raise MissingParty("Vendor payment requires a vendor")
        _validate_amount(amount_cents, settlement_account)
        if db.session.get(Vendor, vendor_id) is None:
            raise NotFound(f"Vendor {vendor_id} not found", {"vendor_id": vendor_id})

        payment = PartyPayment(
            document_number=next_document_number(document_type="PAYMENT", prefix="PAY"),
            direction=DIRECTION_PAYMENT,
            party_type="VENDOR",
            party_id=vendor_id,
            settlement_account=settlement_account,
            amount_cents=amount_cents,
            reference_number=reference_number,
            notes=notes,
            actor_user_id=actor_user_id,
            occurred_at=normalize_datetime(occurred_at) or utcnow(),
        )
        db.session.add(payment)
        db.session.flush()

        ledger_service.post(
            [
                PostingLine.debit(settlement_account, amount_cents),
                PostingLine.credit(ACCOUNT_VENDOR, amount_cents, party=Party.vendor(vendor_id)),
            ],
            reference=ref_for(payment),
            actor_user_id=actor_user_id,
            description=f"Payment {payment.document_number}",
            occurred_at=payment.occurred_at,
        )

        db.session.commit()
        return payment

    return run_with_retry(_op)


def record_customer_receipt(
    *,
    customer_id: int | None,
    amount_cents: int,
    settlement_account: str = "CASH",
    reference_number: str | None = None,
    notes: str | None = None,
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
) -> PartyPayment:
    """Receive from a customer: DR <settlement account> / CR CUSTOMER. Reduces the receivable."""
    def _op():
        if customer_id is None:
            raise MissingParty("Customer receipt requires a customer")
        _validate_amount(amount_cents, settlement_account)
        customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})

        receipt = PartyPayment(
            document_number=next_document_number(document_type="RECEIPT", prefix="RCT"),
            direction=DIRECTION_RECEIPT,
            party_type="CUSTOMER",
            party_id=customer_id,
            settlement_account=settlement_account,
            amount_cents=amount_cents,
            reference_number=reference_number,
            notes=notes,
            actor_user_id=actor_user_id,
            occurred_at=normalize_datetime(occurred_at) or utcnow(),
        )
        db.session.add(receipt)
        db.session.flush()

        ledger_service.post(
            [
                PostingLine.debit(settlement_account, amount_cents),
                PostingLine.credit(ACCOUNT_CUSTOMER, amount_cents, party=Party.customer(customer_id)),
            ],
            reference=ref_for(receipt),
            actor_user_id=actor_user_id,
            description=f"Receipt {receipt.document_number}",
            occurred_at=receipt.occurred_at,
        )
        customer.outstanding_balance_cents = (customer.outstanding_balance_cents or 0) - amount_cents

        db.session.commit()
        return receipt

    return run_with_retry(_op)
