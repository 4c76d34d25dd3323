# Overview: Shipment lifecycle; outbound delivery and return-goods intake.

"""
Shipment Lifecycle

STATES:
PENDING -> PACKED -> DISPATCHED -> IN_TRANSIT (free metadata edits while non-terminal)
terminal: DELIVERED, RETURNED, FAILED

STOCK EFFECTS (once, at the terminal transition):
- GROUND delivered: -qty SHIPMENT_OUT per stock-tracked line. Goods leave
  inventory at delivery confirmation, not at dispatch.
- GROUND_RG return received: +qty SHIPMENT_IN per stock-tracked line, and
  optionally a DRAFT customer credit memo with affects_inventory=False so its
  later approval posts money without moving stock again.
- FAILED: no stock effect.
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..errors import InvalidState, NotFound, ValidationError
from ..models import CreditMemo, Customer, Product, Sale, SaleLine, Shipment, ShipmentLine
from ..references import ref_for
from ..time_utils import utcnow
from . import credit_memo_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number

TYPE_GROUND = "GROUND"
TYPE_GROUND_RG = "GROUND_RG"
SHIPMENT_TYPES = {TYPE_GROUND, TYPE_GROUND_RG}

STATUS_PENDING = "PENDING"
STATUS_PACKED = "PACKED"
STATUS_DISPATCHED = "DISPATCHED"
STATUS_IN_TRANSIT = "IN_TRANSIT"
STATUS_DELIVERED = "DELIVERED"
STATUS_FAILED = "FAILED"
STATUS_RETURNED = "RETURNED"

METADATA_STATUSES = {STATUS_PENDING, STATUS_PACKED, STATUS_DISPATCHED, STATUS_IN_TRANSIT}
TERMINAL_STATUSES = {STATUS_DELIVERED, STATUS_FAILED, STATUS_RETURNED}


def _build_lines(lines: list[dict]) -> list[ShipmentLine]:
    if not lines:
        raise ValidationError("Shipment requires at least one line")
    built = []
    for i, raw in enumerate(lines):
        product_id = raw.get("product_id")
        qty = raw.get("quantity")
        details = {"line": i, "product_id": product_id}
        product = db.session.get(Product, product_id) if product_id is not None else None
        if product is None:
            raise NotFound(f"Product {product_id} not found", details)
        if not isinstance(qty, int) or qty <= 0:
            raise ValidationError("quantity must be a positive integer", details)
        built.append(ShipmentLine(
            product_id=product_id,
            product_name=raw.get("product_name") or product.name,
            quantity=qty,
        ))
    return built


def _get_shipment_locked(shipment_id: int) -> Shipment:
    shipment = lock_for_update(db.session.query(Shipment).filter_by(id=shipment_id)).first()
    if shipment is None:
        raise NotFound(f"Shipment {shipment_id} not found", {"shipment_id": shipment_id})
    return shipment


def create_shipment(
    *,
    shipment_type: str,
    lines: list[dict],
    sale_id: int | None = None,
    customer_id: int | None = None,
    transporter_name: str | None = None,
    vehicle_number: str | None = None,
    lr_number: str | None = None,
    expected_delivery_date: date | None = None,
    freight_charge_cents: int = 0,
    weight_kg=None,
    volume_cbm=None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Shipment:
    """Create a PENDING shipment. GROUND_RG shipments are numbered RG-, others SH-."""
    def _op():
        if shipment_type not in SHIPMENT_TYPES:
            raise ValidationError(f"Invalid shipment_type {shipment_type!r}", {"shipment_type": shipment_type})
        if not isinstance(freight_charge_cents, int) or freight_charge_cents < 0:
            raise ValidationError("freight_charge_cents must be a non-negative integer")

        resolved_customer_id = customer_id
        if sale_id is not None:
            sale = db.session.get(Sale, sale_id)
            if sale is None:
                raise NotFound(f"Sale {sale_id} not found", {"sale_id": sale_id})
            if resolved_customer_id is None:
                resolved_customer_id = sale.customer_id
        if resolved_customer_id is not None and db.session.get(Customer, resolved_customer_id) is None:
            raise NotFound(f"Customer {resolved_customer_id} not found", {"customer_id": resolved_customer_id})

        prefix = "RG" if shipment_type == TYPE_GROUND_RG else "SH"
        shipment = Shipment(
            document_number=next_document_number(document_type=f"SHIPMENT_{prefix}", prefix=prefix),
            shipment_type=shipment_type,
            status=STATUS_PENDING,
            sale_id=sale_id,
            customer_id=resolved_customer_id,
            transporter_name=transporter_name,
            vehicle_number=vehicle_number,
            lr_number=lr_number,
            expected_delivery_date=expected_delivery_date,
            freight_charge_cents=freight_charge_cents,
            weight_kg=weight_kg,
            volume_cbm=volume_cbm,
            notes=notes,
            created_by_user_id=actor_user_id,
        )
        shipment.lines = _build_lines(lines)

        db.session.add(shipment)
        db.session.commit()
        return shipment

    return run_with_retry(_op)


def update_shipment_status(shipment_id: int, status: str, *, actor_user_id: int | None = None) -> Shipment:
    """Metadata-only status change while non-terminal; DISPATCHED stamps dispatch_date."""
    def _op():
        if status not in METADATA_STATUSES:
            raise ValidationError(
                f"Status {status!r} cannot be set directly",
                {"shipment_id": shipment_id, "status": status},
            )
        shipment = _get_shipment_locked(shipment_id)
        if shipment.status in TERMINAL_STATUSES:
            raise InvalidState(
                f"Shipment is already {shipment.status}",
                {"shipment_id": shipment_id, "status": shipment.status},
            )
        shipment.status = status
        if status == STATUS_DISPATCHED:
            shipment.dispatch_date = utcnow()

        db.session.commit()
        return shipment

    return run_with_retry(_op)


def _move_stock(shipment: Shipment, sign: int, movement_type: str, actor_user_id: int | None) -> None:
    ref = ref_for(shipment)
    for line in shipment.lines:
        product = stock_ledger_service.get_product(line.product_id)
        if not product.is_stock_tracked:
            continue
        stock_ledger_service.adjust(
            product_id=line.product_id,
            delta=sign * line.quantity,
            movement_type=movement_type,
            reference=ref,
            actor_user_id=actor_user_id,
            note=f"Shipment {shipment.document_number}",
        )


def mark_delivered(
    shipment_id: int,
    *,
    proof_of_delivery_url: str | None = None,
    actor_user_id: int | None = None,
) -> Shipment:
    """Terminal DELIVERED. GROUND shipments decrement stock here."""
    def _op():
        shipment = _get_shipment_locked(shipment_id)
        if shipment.status in TERMINAL_STATUSES:
            raise InvalidState(
                f"Shipment is already {shipment.status}",
                {"shipment_id": shipment_id, "status": shipment.status},
            )

        if shipment.shipment_type == TYPE_GROUND:
            _move_stock(shipment, -1, stock_ledger_service.MOVEMENT_SHIPMENT_OUT, actor_user_id)

        shipment.status = STATUS_DELIVERED
        shipment.delivered_date = utcnow()
        if proof_of_delivery_url:
            shipment.proof_of_delivery_url = proof_of_delivery_url

        db.session.commit()
        return shipment

    return run_with_retry(_op)


def _return_memo_lines(shipment: Shipment) -> list[dict]:
    """
    Price returned goods from the linked sale's snapshot, falling back to the
    product's current price and tax rate.
    """
    snapshot = {}
    if shipment.sale_id is not None:
        for sale_line in db.session.query(SaleLine).filter_by(sale_id=shipment.sale_id).all():
            snapshot.setdefault(sale_line.product_id, sale_line)

    lines = []
    for line in shipment.lines:
        sale_line = snapshot.get(line.product_id)
        if sale_line is not None:
            unit_price = sale_line.unit_price_cents
            tax_bps = sale_line.tax_rate_bps
        else:
            product = stock_ledger_service.get_product(line.product_id)
            unit_price = product.price_cents or 0
            tax_bps = product.tax_rate_bps or 0
        lines.append({
            "product_id": line.product_id,
            "description": line.product_name,
            "quantity": line.quantity,
            "unit_price_cents": unit_price,
            "tax_rate_bps": tax_bps,
        })
    return lines


def mark_return_received(
    shipment_id: int,
    *,
    auto_create_credit_memo: bool = False,
    customer_id: int | None = None,
    actor_user_id: int | None = None,
) -> tuple[Shipment, CreditMemo | None]:
    """
    Terminal RETURNED for a GROUND_RG shipment.

    Returns (shipment, credit_memo); credit_memo is None unless
    auto_create_credit_memo was requested and a customer is known.
    """
    def _op():
        shipment = _get_shipment_locked(shipment_id)
        if shipment.shipment_type != TYPE_GROUND_RG:
            raise InvalidState(
                "Only GROUND_RG shipments can receive returns",
                {"shipment_id": shipment_id, "shipment_type": shipment.shipment_type},
            )
        if shipment.status in TERMINAL_STATUSES:
            raise InvalidState(
                f"Shipment is already {shipment.status}",
                {"shipment_id": shipment_id, "status": shipment.status},
            )

        _move_stock(shipment, 1, stock_ledger_service.MOVEMENT_SHIPMENT_IN, actor_user_id)

        memo = None
        memo_customer_id = customer_id if customer_id is not None else shipment.customer_id
        if auto_create_credit_memo and memo_customer_id is not None:
            memo = credit_memo_service.build_credit_memo(
                memo_type=credit_memo_service.MEMO_TYPE_CUSTOMER,
                reason="RETURN",
                lines=_return_memo_lines(shipment),
                customer_id=memo_customer_id,
                affects_inventory=False,
                reference_shipment_id=shipment.id,
                reference_sale_id=shipment.sale_id,
                notes=f"Auto-created from return shipment {shipment.document_number}",
                actor_user_id=actor_user_id,
            )

        shipment.status = STATUS_RETURNED
        shipment.delivered_date = utcnow()

        db.session.commit()
        return shipment, memo

    return run_with_retry(_op)


def mark_failed(shipment_id: int, *, reason: str | None = None, actor_user_id: int | None = None) -> Shipment:
    """Terminal FAILED; no stock effect."""
    def _op():
        shipment = _get_shipment_locked(shipment_id)
        if shipment.status in TERMINAL_STATUSES:
            raise InvalidState(
                f"Shipment is already {shipment.status}",
                {"shipment_id": shipment_id, "status": shipment.status},
            )
        shipment.status = STATUS_FAILED
        shipment.failure_reason = reason
        db.session.commit()
        return shipment

    return run_with_retry(_op)


def get_shipment(shipment_id: int) -> Shipment:
    shipment = db.session.get(Shipment, shipment_id)
    if shipment is None:
        raise NotFound(f"Shipment {shipment_id} not found", {"shipment_id": shipment_id})
    return shipment


def list_shipments(*, shipment_type: str | None = None, status: str | None = None) -> list[Shipment]:
    query = db.session.query(Shipment)
    if shipment_type is not None:
        query = query.filter(Shipment.shipment_type == shipment_type)
    if status is not None:
        query = query.filter(Shipment.status == status)
    return query.order_by(Shipment.id.desc()).all()
