from fastapi import APIRouter, Depends

from database import get_db
from models.order import AdminReversePayload
from utils.dependencies import get_service
from utils.order_timeline import log_audit
from utils.security import require_role
from utils.serializers import serialize_aggregate, serialize_order
from utils.wallet_service import get_order_ledger, get_wallet_balance


router = APIRouter(prefix="/admin", tags=["Admin"])


# =====================================================
# SETTLEMENT QUEUE
# =====================================================

@router.get("/settlements")
async def settlement_queue(
    admin=Depends(require_role("admin")),
    service=Depends(get_service),
):
    """Orders paid out before a return, waiting on a manual reversal."""
    orders = await service.store.orders_requiring_settlement()
    return {"orders": [serialize_order(o) for o in orders]}


@router.get("/orders/{order_id}/ledger")
async def order_ledger(
    order_id: str,
    admin=Depends(require_role("admin")),
    service=Depends(get_service),
    db=Depends(get_db),
):
    order = await service.store.get_order(order_id)
    return {
        "order": serialize_order(order),
        "entries": await get_order_ledger(db, order.id),
    }


@router.get("/sellers/{seller_id}/wallet")
async def seller_wallet(
    seller_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return {
        "seller_id": seller_id,
        "balance_cents": await get_wallet_balance(db, seller_id),
    }


# =====================================================
# PAYOUT RECONCILIATION
# =====================================================

@router.post("/orders/{order_id}/reconcile")
async def reconcile_payout(
    order_id: str,
    admin=Depends(require_role("admin")),
    service=Depends(get_service),
    db=Depends(get_db),
):
    agg = await service.reconcile(order_id, admin)

    await log_audit(
        db,
        actor_id=admin.id,
        actor_role="admin",
        action="PAYOUT_RECONCILED",
        order_id=order_id,
        metadata={"payout_status": agg.order.payout_status.value},
    )
    return serialize_aggregate(agg)


@router.post("/orders/{order_id}/reverse-payout")
async def reverse_payout(
    order_id: str,
    payload: AdminReversePayload,
    admin=Depends(require_role("admin")),
    service=Depends(get_service),
):
    agg = await service.admin_reverse_payout(order_id, payload.reason, admin)
    return serialize_aggregate(agg)
