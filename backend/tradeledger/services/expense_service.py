# Overview: Operating expenses; recording and posting DR EXPENSE / CR payment mode.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..errors import NotFound, ValidationError
from ..models import Expense
from ..models.ledger import ACCOUNT_EXPENSE, SETTLEMENT_ACCOUNTS
from ..references import ref_for
from ..time_utils import utcnow, normalize_datetime
from . import ledger_service
from .concurrency import run_with_retry
from .document_service import next_document_number
from .ledger_service import PostingLine


def record_expense(
    *,
    expense_type: str,
    amount_cents: int,
    payment_mode: str = "CASH",
    description: str | None = None,
    vendor_name: str | None = None,
    occurred_at: datetime | str | None = None,
    actor_user_id: int | None = None,
) -> Expense:
    """
    Record an expense and post it: DR EXPENSE / CR <payment mode>.

    payment_mode is one of CASH, BANK, UPI, CARD. Neither ledger row carries
    a party; vendor_name is informational only.
    """
    def _op():
        if not expense_type or not str(expense_type).strip():
            raise ValidationError("expense_type is required")
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationError("amount_cents must be a positive integer", {"amount_cents": amount_cents})
        if payment_mode not in SETTLEMENT_ACCOUNTS:
            raise ValidationError(f"Invalid payment_mode {payment_mode!r}", {"payment_mode": payment_mode})

        expense = Expense(
            document_number=next_document_number(document_type="EXPENSE", prefix="EXP"),
            expense_type=str(expense_type).strip(),
            description=description,
            amount_cents=amount_cents,
            payment_mode=payment_mode,
            vendor_name=vendor_name,
            created_by_user_id=actor_user_id,
            occurred_at=normalize_datetime(occurred_at) or utcnow(),
        )
        db.session.add(expense)
        db.session.flush()

        ledger_service.post(
            [
                PostingLine.debit(ACCOUNT_EXPENSE, amount_cents),
                PostingLine.credit(payment_mode, amount_cents),
            ],
            reference=ref_for(expense),
            actor_user_id=actor_user_id,
            description=description or f"Expense {expense.document_number}",
            occurred_at=expense.occurred_at,
        )

        db.session.commit()
        return expense

    return run_with_retry(_op)


def get_expense(expense_id: int) -> Expense:
    expense = db.session.get(Expense, expense_id)
    if expense is None:
        raise NotFound(f"Expense {expense_id} not found", {"expense_id": expense_id})
    return expense


def list_expenses(
    *,
    expense_type: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = 100,
) -> list[Expense]:
    query = db.session.query(Expense)
    if expense_type is not None:
        query = query.filter(Expense.expense_type == expense_type)
    if from_date is not None:
        query = query.filter(Expense.occurred_at >= normalize_datetime(from_date))
    if to_date is not None:
        query = query.filter(Expense.occurred_at <= normalize_datetime(to_date))
    return query.order_by(Expense.occurred_at.desc(), Expense.id.desc()).limit(limit).all()
