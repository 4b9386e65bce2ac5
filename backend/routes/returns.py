from fastapi import APIRouter, Depends

from models.return_request import (
    ApproveReturnPayload,
    CancelReturnPayload,
    InspectionPayload,
    ProcessRefundPayload,
    RejectReturnPayload,
    ReturnReceiptPayload,
    ReturnShipmentPayload,
)
from utils.dependencies import get_service
from utils.guards import assert_return_buyer, assert_return_party, assert_return_seller
from utils.security import require_role
from utils.serializers import serialize_aggregate, serialize_return

router = APIRouter(
    prefix="/returns",
    tags=["Returns"]
)


@router.get("/{return_id}")
async def get_return(
    return_id: str,
    actor=Depends(require_role("buyer", "seller", "admin")),
    service=Depends(get_service),
):
    ret = await service.store.get_return(return_id)
    assert_return_party(ret, actor)
    return serialize_return(ret)


# ======================================================
# SELLER DECISION
# ======================================================

@router.post("/{return_id}/approve")
async def approve_return(
    return_id: str,
    payload: ApproveReturnPayload,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_return_seller(await service.store.get_return(return_id), seller)
    return serialize_aggregate(await service.approve_return(return_id, payload, seller))


@router.post("/{return_id}/reject")
async def reject_return(
    return_id: str,
    payload: RejectReturnPayload,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_return_seller(await service.store.get_return(return_id), seller)
    return serialize_aggregate(await service.reject_return(return_id, payload.reason, seller))


# ======================================================
# LOGISTICS
# ======================================================

@router.post("/{return_id}/ship")
async def mark_return_in_transit(
    return_id: str,
    payload: ReturnShipmentPayload,
    buyer=Depends(require_role("buyer")),
    service=Depends(get_service),
):
    assert_return_buyer(await service.store.get_return(return_id), buyer)
    return serialize_aggregate(
        await service.mark_return_in_transit(return_id, payload.tracking_number, buyer)
    )


@router.post("/{return_id}/receive")
async def confirm_return_receipt(
    return_id: str,
    payload: ReturnReceiptPayload,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_return_seller(await service.store.get_return(return_id), seller)
    return serialize_aggregate(
        await service.confirm_return_receipt(
            return_id,
            payload.tracking_number,
            payload.inspection_notes,
            seller,
        )
    )


@router.post("/{return_id}/inspect")
async def record_inspection(
    return_id: str,
    payload: InspectionPayload,
    seller=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_return_seller(await service.store.get_return(return_id), seller)
    return serialize_aggregate(
        await service.record_inspection(return_id, payload.notes, payload.outcome, seller)
    )


# ======================================================
# REFUND
# ======================================================

@router.post("/{return_id}/refund")
async def process_refund(
    return_id: str,
    payload: ProcessRefundPayload,
    actor=Depends(require_role("seller", "admin")),
    service=Depends(get_service),
):
    assert_return_seller(await service.store.get_return(return_id), actor)
    return serialize_aggregate(await service.process_refund(return_id, payload.method, actor))


# ======================================================
# BUYER WITHDRAWS
# ======================================================

@router.post("/{return_id}/cancel")
async def cancel_return(
    return_id: str,
    payload: CancelReturnPayload,
    buyer=Depends(require_role("buyer")),
    service=Depends(get_service),
):
    assert_return_buyer(await service.store.get_return(return_id), buyer)
    return serialize_aggregate(await service.cancel_return(return_id, payload.reason, buyer))
