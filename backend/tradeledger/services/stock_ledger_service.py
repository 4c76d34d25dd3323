# Overview: Stock ledger; owns on-hand/committed quantities and the append-only movement log.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..errors import InsufficientStock, NotFound, ValidationError
from ..models import Product, StockMovement
from ..references import DocumentRef
from ..time_utils import utcnow, normalize_datetime
from .concurrency import lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

- Product.on_hand_quantity and StockMovement rows change together: one
  adjust() call = one quantity change = one movement row. Nothing else writes
  on_hand_quantity.
- on_hand_quantity == opening_quantity + SUM(quantity_change) at all times.
- available_quantity = on_hand_quantity - committed_quantity.
- Validated decrements (sale path) may never drive available below zero.
  Manual adjustments and shipment-out are allowed to go negative (backorder
  corrections).
- adjust/reserve/release never commit; they run inside the caller's unit of
  work. adjust_stock is the only public operation that opens its own.
"""

MOVEMENT_PURCHASE = "PURCHASE"
MOVEMENT_SALE = "SALE"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_CREDIT_MEMO = "CREDIT_MEMO"
MOVEMENT_SHIPMENT_OUT = "SHIPMENT_OUT"
MOVEMENT_SHIPMENT_IN = "SHIPMENT_IN"

MOVEMENT_TYPES = {
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_RETURN,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_CREDIT_MEMO,
    MOVEMENT_SHIPMENT_OUT,
    MOVEMENT_SHIPMENT_IN,
}


def get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFound(f"Product {product_id} not found", {"product_id": product_id})
    return product


def adjust(
    *,
    product_id: int,
    delta: int,
    movement_type: str,
    reference: DocumentRef | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
    enforce_available: bool = False,
    occurred_at: datetime | None = None,
) -> StockMovement:
    """
    Change on-hand quantity by delta and append exactly one movement row.

    Must be called inside a unit of work; flushes but does not commit.
    With enforce_available=True a decrement that would take
    available_quantity below zero raises InsufficientStock.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement_type {movement_type!r}", {"movement_type": movement_type})
    if not isinstance(delta, int) or isinstance(delta, bool):
        raise ValidationError("delta must be an integer", {"delta": delta})
    if delta == 0:
        raise ValidationError("delta must be non-zero", {"product_id": product_id})

    product = get_product(product_id, lock=True)
    if not product.is_stock_tracked:
        raise ValidationError(
            f"Product {product_id} is not stock-tracked",
            {"product_id": product_id, "product_type": product.product_type},
        )

    if enforce_available and delta < 0 and product.available_quantity + delta < 0:
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}",
            {
                "product_id": product_id,
                "requested": -delta,
                "available": product.available_quantity,
            },
        )

    product.on_hand_quantity = (product.on_hand_quantity or 0) + delta

    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_change=delta,
        reference_type=reference.kind if reference else None,
        reference_id=reference.id if reference else None,
        note=note,
        actor_user_id=actor_user_id,
        occurred_at=normalize_datetime(occurred_at) or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def reserve(*, product_id: int, quantity: int) -> Product:
    """Commit quantity to an open order. No movement row is written."""
    if quantity <= 0:
        raise ValidationError("quantity must be positive", {"product_id": product_id, "quantity": quantity})

    product = get_product(product_id, lock=True)
    if not product.is_stock_tracked:
        return product
    if product.available_quantity < quantity:
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}",
            {
                "product_id": product_id,
                "requested": quantity,
                "available": product.available_quantity,
            },
        )
    product.committed_quantity = (product.committed_quantity or 0) + quantity
    db.session.flush()
    return product


def release(*, product_id: int, quantity: int) -> Product:
    """Return previously committed quantity. No movement row is written."""
    if quantity <= 0:
        raise ValidationError("quantity must be positive", {"product_id": product_id, "quantity": quantity})

    product = get_product(product_id, lock=True)
    if not product.is_stock_tracked:
        return product
    if (product.committed_quantity or 0) < quantity:
        raise ValidationError(
            f"Cannot release more than committed for product {product_id}",
            {
                "product_id": product_id,
                "requested": quantity,
                "committed": product.committed_quantity,
            },
        )
    product.committed_quantity -= quantity
    db.session.flush()
    return product


def adjust_stock(
    *,
    product_id: int,
    delta: int,
    note: str | None = None,
    actor_user_id: int | None = None,
    occurred_at: datetime | str | None = None,
) -> StockMovement:
    """
    Manual stock adjustment (count corrections, shrinkage, backorder fixes).

    Runs as its own unit of work and may drive on-hand negative.
    """
    def _op():
        movement = adjust(
            product_id=product_id,
            delta=delta,
            movement_type=MOVEMENT_ADJUSTMENT,
            actor_user_id=actor_user_id,
            note=note,
            occurred_at=normalize_datetime(occurred_at),
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def movement_total(product_id: int, as_of: datetime | None = None) -> int:
    """SUM(quantity_change) for a product, optionally as-of (inclusive)."""
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity_change), 0)
    ).filter(StockMovement.product_id == product_id)
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)
    return int(q.scalar() or 0)


def list_movements(
    *,
    product_id: int | None = None,
    reference: DocumentRef | None = None,
    movement_type: str | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    query = db.session.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if reference is not None:
        query = query.filter(
            StockMovement.reference_type == reference.kind,
            StockMovement.reference_id == reference.id,
        )
    if movement_type is not None:
        query = query.filter(StockMovement.movement_type == movement_type)
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500
    return query.order_by(StockMovement.occurred_at.asc(), StockMovement.id.asc()).limit(limit).all()


def is_low_stock(product: Product) -> bool:
    if not product.is_stock_tracked:
        return False
    return product.available_quantity <= (product.low_stock_threshold or 0)


def get_stock_summary(product_id: int) -> dict:
    product = get_product(product_id)
    return {
        "product_id": product.id,
        "sku": product.sku,
        "on_hand_quantity": product.on_hand_quantity,
        "committed_quantity": product.committed_quantity,
        "available_quantity": product.available_quantity,
        "low_stock_threshold": product.low_stock_threshold,
        "is_low_stock": is_low_stock(product),
    }
