from datetime import datetime, date, time
from typing import Optional

from models.order import Order, OrderStatus, DeliveryStatus, PayoutStatus, PlaceOrderPayload
from utils.errors import ValidationError
from utils.transitions import (
    Command,
    Entity,
    Outcome,
    StateChange,
    TransitionType,
    require_text,
    require_transition,
)

ORDER_EVENTS = {
    Command.CONFIRM_ORDER: "OrderConfirmed",
    Command.MARK_PROCESSING: "OrderProcessing",
    Command.MARK_SHIPPED: "OrderShipped",
    Command.CONFIRM_DELIVERY: "OrderDelivered",
    Command.CANCEL_ORDER: "OrderCanceled",
    Command.COMPLETE_RETURN: "OrderReturned",
}


def open_order(payload: PlaceOrderPayload, *, order_id: str, buyer_id: str, now: datetime) -> Order:
    return Order(
        id=order_id,
        buyer_id=buyer_id,
        seller_id=payload.seller_id,
        listing_id=payload.listing_id,
        quantity=payload.quantity,
        amount_cents=payload.amount_cents,
        currency=payload.currency.upper(),
        funds_captured=payload.funds_captured,
        order_status=OrderStatus.PENDING,
        delivery_status=DeliveryStatus.NOT_SHIPPED,
        payout_status=PayoutStatus.IN_ESCROW,
        created_at=now,
        updated_at=now,
    )


def _advance(
    order: Order,
    command: Command,
    *,
    now: datetime,
    transition_type: TransitionType = TransitionType.MANUAL,
    reason: Optional[str] = None,
    validate=None,
) -> Outcome:
    decision = require_transition(Entity.ORDER, order.order_status, command)
    if decision.noop:
        return Outcome(order=order, noop=True)

    updates = validate() if validate else {}
    updated = order.model_copy(update={
        "order_status": decision.next_state,
        "updated_at": now,
        **updates,
    })

    outcome = Outcome(order=updated)
    outcome.record(
        StateChange(
            entity=Entity.ORDER,
            entity_id=order.id,
            from_state=order.order_status.value,
            to_state=decision.next_state.value,
            command=command,
            transition_type=transition_type,
            reason=reason,
        ),
        ORDER_EVENTS[command],
        order_status=decision.next_state.value,
    )
    return outcome


def confirm_order(order: Order, *, now: datetime, transition_type=TransitionType.MANUAL) -> Outcome:
    return _advance(order, Command.CONFIRM_ORDER, now=now, transition_type=transition_type)


def mark_processing(order: Order, *, now: datetime, transition_type=TransitionType.MANUAL) -> Outcome:
    return _advance(order, Command.MARK_PROCESSING, now=now, transition_type=transition_type)


def mark_shipped(
    order: Order,
    *,
    tracking_number: Optional[str],
    carrier: Optional[str],
    estimated_delivery: Optional[date],
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:

    def validate():
        tracking = require_text(tracking_number, "tracking_number")
        carrier_name = require_text(carrier, "carrier")
        if estimated_delivery is None:
            raise ValidationError("estimated_delivery is required", field="estimated_delivery")
        eta = estimated_delivery
        if isinstance(eta, datetime):
            eta = eta.date()
        if eta < now.date():
            raise ValidationError(
                "estimated_delivery must be today or later",
                field="estimated_delivery",
            )
        return {
            "tracking_number": tracking,
            "carrier": carrier_name,
            "estimated_delivery": datetime.combine(eta, time.min),
            "delivery_status": DeliveryStatus.IN_TRANSIT,
        }

    return _advance(
        order,
        Command.MARK_SHIPPED,
        now=now,
        transition_type=transition_type,
        validate=validate,
    )


def confirm_delivery(order: Order, *, now: datetime, transition_type=TransitionType.MANUAL) -> Outcome:
    return _advance(
        order,
        Command.CONFIRM_DELIVERY,
        now=now,
        transition_type=transition_type,
        validate=lambda: {
            "delivery_status": DeliveryStatus.DELIVERED,
            # written once
            "delivered_at": order.delivered_at or now,
        },
    )


def cancel_order(
    order: Order,
    *,
    reason: Optional[str],
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    cleaned = (reason or "").strip()

    def validate():
        return {"cancel_reason": require_text(reason, "reason")}

    return _advance(
        order,
        Command.CANCEL_ORDER,
        now=now,
        transition_type=transition_type,
        reason=cleaned or None,
        validate=validate,
    )


def complete_return(order: Order, *, now: datetime) -> Outcome:
    """Raised by the return workflow once every ordered unit has come back."""
    return _advance(
        order,
        Command.COMPLETE_RETURN,
        now=now,
        transition_type=TransitionType.AUTOMATIC,
    )


def order_invariant_violations(order: Order) -> list[str]:
    violations = []
    if order.delivery_status == DeliveryStatus.DELIVERED and order.order_status not in {
        OrderStatus.DELIVERED,
        OrderStatus.RETURNED,
    }:
        violations.append("delivery_status delivered while order is not delivered/returned")
    if order.order_status == OrderStatus.SHIPPED and not order.tracking_number:
        violations.append("shipped order without tracking number")
    if order.payout_status == PayoutStatus.PAID and order.delivered_at is None:
        violations.append("payout paid before delivery")
    if order.refunded_cents > order.amount_cents:
        violations.append("refunded more than the order amount")
    if order.returned_quantity > order.quantity:
        violations.append("returned more units than ordered")
    return violations
