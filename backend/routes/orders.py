from fastapi import APIRouter, Depends

from database import get_db
from models.order import CancelOrderPayload, MarkShippedPayload, PlaceOrderPayload
from models.return_request import RequestReturnPayload
from utils.dependencies import get_service
from utils.guards import assert_order_buyer, assert_order_party, assert_order_seller
from utils.order_timeline import get_order_timeline, get_state_history
from utils.security import require_role
from utils.serializers import serialize_aggregate, serialize_order, serialize_return

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


# ======================================================
# PLACE ORDER (BUYER)
# ======================================================

@router.post("", status_code=201)
async def place_order(
    payload: PlaceOrderPayload,
    buyer=Depends(require_role("buyer")),
    service=Depends(get_service),
):
    order = await service.place_order(payload, buyer)
    return serialize_order(order)


# ======================================================
# READ
# ======================================================

@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor=Depends(require_role("buyer", "seller", "admin")),
    service=Depends(get_service),
):
    order, returns = await service.order_with_returns(order_id)
    assert_order_party(order, actor)
    return {
        "order": serialize_order(order),
        "returns": [serialize_return(r) for r in returns],
    }


@router.get("/{order_id}/timeline")
async def order_timeline(
    order_id: str,
    actor=Depends(require_role("buyer", "seller", "admin")),
    service=Depends(get_service),
    db=Depends(get_db),
):
    order = await service.store.get_order(order_id)
    assert_order_party(order, actor)
    return {
        "order_id": order_id,
        "timeline": await get_order_timeline(db, order_id),
        "transitions": await get_state_history(db, order_id),
    }


# ======================================================
# SELLER FULFILMENT
# ======================================================

@router.post("/{order_id}/confirm")
async def confirm_order(
    order_id: str,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_order_seller(await service.store.get_order(order_id), seller)
    return serialize_aggregate(await service.confirm_order(order_id, seller))


@router.post("/{order_id}/processing")
async def mark_processing(
    order_id: str,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_order_seller(await service.store.get_order(order_id), seller)
    return serialize_aggregate(await service.mark_processing(order_id, seller))


@router.post("/{order_id}/ship")
async def mark_shipped(
    order_id: str,
    payload: MarkShippedPayload,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_order_seller(await service.store.get_order(order_id), seller)
    return serialize_aggregate(await service.mark_shipped(order_id, payload, seller))


# ======================================================
# DELIVERY (BUYER CONFIRMS / ADMIN OVERRIDE)
# ======================================================

@router.post("/{order_id}/deliver")
async def confirm_delivery(
    order_id: str,
    actor=Depends(require_role("buyer", "admin")),
    service=Depends(get_service),
):
    order = await service.store.get_order(order_id)
    if actor.role == "buyer":
        assert_order_buyer(order, actor)
    return serialize_aggregate(await service.confirm_delivery(order_id, actor))


# ======================================================
# CANCEL
# ======================================================

@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    payload: CancelOrderPayload,
    actor=Depends(require_role("buyer", "seller", "admin")),
    service=Depends(get_service),
):
    assert_order_party(await service.store.get_order(order_id), actor)
    return serialize_aggregate(await service.cancel_order(order_id, payload.reason, actor))


# ======================================================
# RETURNS FOR AN ORDER
# ======================================================

@router.post("/{order_id}/returns", status_code=201)
async def request_return(
    order_id: str,
    payload: RequestReturnPayload,
    buyer=Depends(require_role("buyer")),
    service=Depends(get_service),
):
    assert_order_buyer(await service.store.get_order(order_id), buyer)
    return serialize_aggregate(await service.request_return(order_id, payload, buyer))


@router.get("/{order_id}/returns")
async def list_order_returns(
    order_id: str,
    actor=Depends(require_role("buyer", "seller", "admin")),
    service=Depends(get_service),
):
    order, returns = await service.order_with_returns(order_id)
    assert_order_party(order, actor)
    return {"returns": [serialize_return(r) for r in returns]}
