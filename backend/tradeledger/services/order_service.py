# Overview: Online order processing; reservation-backed website and store-pickup orders.

"""
Online Orders

LIFECYCLE:
placed -> packed -> ready_for_pickup -> completed
placed/packed/ready_for_pickup -> cancelled

STOCK:
- place: reserve (committed_quantity) per stock-tracked line; on-hand is untouched
- completed: release the reservation and write a -qty SALE movement
- cancelled: release the reservation

MONEY:
- Orders are prepaid through an external gateway (payment_reference).
  Revenue is posted at completion: DR BANK / CR SALES (total).
- Loyalty points are awarded at placement.
"""

from __future__ import annotations

from ..extensions import db
from ..errors import InvalidState, NotFound, ValidationError
from ..models import Customer, Order, OrderLine, Product
from ..models.ledger import ACCOUNT_BANK, ACCOUNT_SALES
from ..money import round_half_up, tax_on
from ..references import ref_for
from ..time_utils import utcnow
from . import ledger_service, rewards_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import PostingLine
from .sales_service import consolidate_items

STATUS_PLACED = "placed"
STATUS_PACKED = "packed"
STATUS_READY = "ready_for_pickup"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED}

# Forward path; each status may only advance to the next one
NEXT_STATUS = {
    STATUS_PLACED: STATUS_PACKED,
    STATUS_PACKED: STATUS_READY,
    STATUS_READY: STATUS_COMPLETED,
}

_STATUS_STAMPS = {
    STATUS_PACKED: "packed_at",
    STATUS_READY: "ready_at",
    STATUS_COMPLETED: "completed_at",
    STATUS_CANCELLED: "cancelled_at",
}


def place_order(
    *,
    customer_id: int,
    items: list[dict],
    payment_reference: str | None = None,
    actor_user_id: int | None = None,
) -> Order:
    """
    Place an online order, reserving stock for every stock-tracked line.

    Args:
        items: [{"product_id", "quantity"}]
    """
    def _op():
        customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})

        order = Order(
            document_number=next_document_number(document_type="ORDER", prefix="ORD"),
            customer_id=customer_id,
            status=STATUS_PLACED,
            payment_reference=payment_reference,
            placed_at=utcnow(),
        )

        subtotal = 0
        tax = 0
        for raw in consolidate_items(items):
            product = db.session.get(Product, raw["product_id"])
            if product is None:
                raise NotFound(f"Product {raw['product_id']} not found", {"product_id": raw["product_id"]})
            if not product.is_active:
                raise ValidationError("Product is inactive", {"product_id": product.id})

            qty = raw["quantity"]
            gross = qty * (product.price_cents or 0)
            rate = 0 if customer.tax_exempt else (product.tax_rate_bps or 0)
            line_tax = round_half_up(tax_on(gross, rate))
            order.lines.append(OrderLine(
                product_id=product.id,
                product_name=product.name,
                quantity=qty,
                unit_price_cents=product.price_cents or 0,
                tax_rate_bps=rate,
                tax_cents=line_tax,
                line_total_cents=gross + line_tax,
            ))
            subtotal += gross
            tax += line_tax

            if product.is_stock_tracked:
                stock_ledger_service.reserve(product_id=product.id, quantity=qty)

        order.subtotal_cents = subtotal
        order.tax_cents = tax
        order.total_cents = subtotal + tax

        db.session.add(order)
        db.session.flush()

        order.loyalty_points_awarded = rewards_service.earn_points(
            customer_id=customer_id,
            total_cents=order.total_cents,
            reference=ref_for(order),
            actor_user_id=actor_user_id,
        )
        rewards_service.record_purchase(customer_id, order.total_cents, occurred_at=order.placed_at)

        db.session.commit()
        return order

    return run_with_retry(_op)


def _release_reservations(order: Order) -> None:
    for line in order.lines:
        product = stock_ledger_service.get_product(line.product_id)
        if product.is_stock_tracked:
            stock_ledger_service.release(product_id=line.product_id, quantity=line.quantity)


def _complete(order: Order, actor_user_id: int | None) -> None:
    ref = ref_for(order)
    _release_reservations(order)
    for line in order.lines:
        product = stock_ledger_service.get_product(line.product_id)
        if not product.is_stock_tracked:
            continue
        stock_ledger_service.adjust(
            product_id=line.product_id,
            delta=-line.quantity,
            movement_type=stock_ledger_service.MOVEMENT_SALE,
            reference=ref,
            actor_user_id=actor_user_id,
            note=f"Order {order.document_number}",
            enforce_available=True,
        )
    if order.total_cents > 0:
        ledger_service.post(
            [
                PostingLine.debit(ACCOUNT_BANK, order.total_cents),
                PostingLine.credit(ACCOUNT_SALES, order.total_cents),
            ],
            reference=ref,
            actor_user_id=actor_user_id,
            description=f"Order {order.document_number} completed",
        )


def update_order_status(order_id: int, status: str, *, actor_user_id: int | None = None) -> Order:
    """Advance an order one step along its path, or cancel it while non-terminal."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFound(f"Order {order_id} not found", {"order_id": order_id})
        if order.status in TERMINAL_STATUSES:
            raise InvalidState(
                f"Order is already {order.status}",
                {"order_id": order_id, "status": order.status},
            )

        if status == STATUS_CANCELLED:
            _release_reservations(order)
        elif NEXT_STATUS.get(order.status) == status:
            if status == STATUS_COMPLETED:
                _complete(order, actor_user_id)
        else:
            raise InvalidState(
                f"Cannot move order from {order.status} to {status}",
                {"order_id": order_id, "status": order.status, "requested": status},
            )

        order.status = status
        setattr(order, _STATUS_STAMPS[status], utcnow())

        db.session.commit()
        return order

    return run_with_retry(_op)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", {"order_id": order_id})
    return order


def list_open_orders() -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.status.notin_(TERMINAL_STATUSES))
        .order_by(Order.id.asc())
        .all()
    )
