# Overview: Customer loyalty points and purchase aggregates.

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import NotFound
from ..models import Customer, CustomerRewardAccount, CustomerRewardTransaction
from ..references import DocumentRef
from ..time_utils import utcnow
from .concurrency import lock_for_update

TXN_EARN = "EARN"
TXN_ADJUST = "ADJUST"


def points_for_amount(total_cents: int) -> int:
    """One point per whole currency unit (configurable), never negative."""
    cents_per_point = current_app.config.get("LOYALTY_CENTS_PER_POINT", 100)
    if total_cents <= 0 or cents_per_point <= 0:
        return 0
    return total_cents // cents_per_point


def get_or_create_account(customer_id: int) -> CustomerRewardAccount:
    account = lock_for_update(
        db.session.query(CustomerRewardAccount).filter_by(customer_id=customer_id)
    ).first()
    if account is None:
        account = CustomerRewardAccount(
            customer_id=customer_id,
            points_balance=0,
            lifetime_points_earned=0,
        )
        db.session.add(account)
        db.session.flush()
    return account


def _append(account: CustomerRewardAccount, txn_type: str, points: int, *,
            reference: DocumentRef | None, reason: str | None, actor_user_id: int | None) -> CustomerRewardTransaction:
    txn = CustomerRewardTransaction(
        reward_account_id=account.id,
        transaction_type=txn_type,
        points=points,
        reference_type=reference.kind if reference else None,
        reference_id=reference.id if reference else None,
        reason=reason,
        actor_user_id=actor_user_id,
        occurred_at=utcnow(),
    )
    db.session.add(txn)
    return txn


def earn_points(
    *,
    customer_id: int,
    total_cents: int,
    reference: DocumentRef,
    actor_user_id: int | None = None,
) -> int:
    """Award points for a purchase inside the caller's unit of work. Returns points awarded."""
    points = points_for_amount(total_cents)
    if points == 0:
        return 0
    account = get_or_create_account(customer_id)
    account.points_balance += points
    account.lifetime_points_earned += points
    _append(account, TXN_EARN, points, reference=reference, reason=None, actor_user_id=actor_user_id)
    db.session.flush()
    return points


def claw_back_points(
    *,
    customer_id: int,
    refund_cents: int,
    reference: DocumentRef,
    reason: str | None = None,
    actor_user_id: int | None = None,
) -> int:
    """
    Take back points earned on refunded spend inside the caller's unit of work.

    Capped at the current balance; points already spent elsewhere stay spent.
    Returns points removed.
    """
    points = points_for_amount(refund_cents)
    if points == 0:
        return 0
    account = get_or_create_account(customer_id)
    points = min(points, account.points_balance)
    if points == 0:
        return 0
    account.points_balance -= points
    _append(account, TXN_ADJUST, -points, reference=reference, reason=reason, actor_user_id=actor_user_id)
    db.session.flush()
    return points


def record_purchase(customer_id: int, total_cents: int, occurred_at: datetime | None = None) -> Customer:
    """Bump denormalized spend/visit aggregates for a completed purchase."""
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if customer is None:
        raise NotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})
    customer.total_spent_cents = (customer.total_spent_cents or 0) + total_cents
    customer.total_visits = (customer.total_visits or 0) + 1
    customer.last_visit_at = occurred_at or utcnow()
    return customer
