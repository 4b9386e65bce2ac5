from datetime import datetime
from enum import Enum

from models.order import Order
from models.return_request import ReturnRequest
from utils.transitions import Entity, allowed_commands


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else None


def _value(value):
    return value.value if isinstance(value, Enum) else value


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "listing_id": order.listing_id,

        "quantity": order.quantity,
        "amount_cents": order.amount_cents,
        "currency": order.currency,

        "order_status": order.order_status.value,
        "delivery_status": order.delivery_status.value,
        "payout_status": order.payout_status.value,
        "allowed_commands": [c.value for c in allowed_commands(Entity.ORDER, order.order_status)],

        "shipping": {
            "tracking_number": order.tracking_number,
            "carrier": order.carrier,
            "estimated_delivery": _iso(order.estimated_delivery),
        },
        "cancel_reason": order.cancel_reason,

        "returns": {
            "active_return_id": order.active_return_id,
            "returned_quantity": order.returned_quantity,
            "refunded_cents": order.refunded_cents,
        },

        "payout": {
            "payable_cents": order.payable_cents,
            "released_cents": order.released_cents,
            "reversed_cents": order.reversed_cents,
            "settlement_required": order.settlement_required,
            "pending_transfer": (
                order.pending_transfer.model_dump(mode="json") if order.pending_transfer else None
            ),
            "error": order.payout_error,
            "paid_at": _iso(order.paid_at),
            "reversed_at": _iso(order.reversed_at),
        },

        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
        "delivered_at": _iso(order.delivered_at),
        "version": order.version,
    }


def serialize_return(ret: ReturnRequest) -> dict:
    data = ret.model_dump()
    out = {}
    for key, value in data.items():
        if key == "policy":
            out[key] = {k: _value(v) for k, v in value.items()}
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = _value(value)
    out["allowed_commands"] = [c.value for c in allowed_commands(Entity.RETURN, ret.status)]
    return out


def serialize_aggregate(agg) -> dict:
    return {
        "order": serialize_order(agg.order),
        "return": serialize_return(agg.ret) if agg.ret is not None else None,
    }
