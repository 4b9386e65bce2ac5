from fastapi import HTTPException

from models.order import Order
from models.return_request import ReturnRequest
from utils.fulfillment_service import Actor


# -------------------------------
# Ownership Guards
# -------------------------------

def _deny(detail: str):
    raise HTTPException(status_code=403, detail=detail)


def assert_order_party(order: Order, actor: Actor):
    """Buyer, seller of the order, or an admin."""
    if actor.role == "admin":
        return
    if actor.role == "buyer" and order.buyer_id == actor.id:
        return
    if actor.role == "seller" and order.seller_id == actor.id:
        return
    _deny("Not your order")


def assert_order_buyer(order: Order, actor: Actor):
    if actor.role != "buyer" or order.buyer_id != actor.id:
        _deny("Only the buyer can do this")


def assert_order_seller(order: Order, actor: Actor):
    if actor.role == "admin":
        return
    if actor.role != "seller" or order.seller_id != actor.id:
        _deny("Only the seller can do this")


def assert_return_buyer(ret: ReturnRequest, actor: Actor):
    if actor.role != "buyer" or ret.buyer_id != actor.id:
        _deny("Only the buyer can do this")


def assert_return_seller(ret: ReturnRequest, actor: Actor):
    if actor.role == "admin":
        return
    if actor.role != "seller" or ret.seller_id != actor.id:
        _deny("Only the seller can do this")


def assert_return_party(ret: ReturnRequest, actor: Actor):
    if actor.role == "admin":
        return
    if actor.id in {ret.buyer_id, ret.seller_id}:
        return
    _deny("Not your return")
