from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer master data for receivables and loyalty.

    outstanding_balance_cents is a CACHE of the ledger receivable. The ledger
    is the source of truth; integrity_service.rebuild_cached_balances
    regenerates the cache from it.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_customers_email"),
        db.Index("ix_customers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    reference_kind = "CUSTOMER"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    payment_terms_days = db.Column(db.Integer, nullable=True)
    credit_limit_cents = db.Column(db.Integer, nullable=True)
    tax_exempt = db.Column(db.Boolean, nullable=False, default=False)

    # Cached receivable (derived from ledger)
    outstanding_balance_cents = db.Column(db.Integer, nullable=False, default=0)

    # Denormalized aggregates (updated when sales are completed)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    total_visits = db.Column(db.Integer, nullable=False, default=0)
    last_visit_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "payment_terms_days": self.payment_terms_days,
            "credit_limit_cents": self.credit_limit_cents,
            "tax_exempt": self.tax_exempt,
            "outstanding_balance_cents": self.outstanding_balance_cents,
            "total_spent_cents": self.total_spent_cents,
            "total_visits": self.total_visits,
            "last_visit_at": to_utc_z(self.last_visit_at) if self.last_visit_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class CustomerRewardAccount(db.Model):
    """
    Loyalty/rewards account for a customer.

    Tracks points balance and lifetime earning/redemption. One account per customer.
    """
    __tablename__ = "customer_reward_accounts"
    __table_args__ = (
        db.UniqueConstraint("customer_id", name="uq_reward_accounts_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    points_balance = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_earned = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("reward_account", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "points_balance": self.points_balance,
            "lifetime_points_earned": self.lifetime_points_earned,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class CustomerRewardTransaction(db.Model):
    """
    Append-only ledger of reward point events.

    TRANSACTION TYPES:
    - EARN: Points earned from a sale or online order
    - ADJUST: Points taken back when a sale is returned

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "customer_reward_transactions"
    __table_args__ = (
        db.Index("ix_reward_txns_account_occurred", "reward_account_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reward_account_id = db.Column(db.Integer, db.ForeignKey("customer_reward_accounts.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)  # EARN, ADJUST
    points = db.Column(db.Integer, nullable=False)  # Positive for earn, negative for adjust

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    reward_account = db.relationship("CustomerRewardAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reward_account_id": self.reward_account_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reason": self.reason,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
