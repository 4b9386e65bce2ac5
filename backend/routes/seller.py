from fastapi import APIRouter, Depends, Query

from database import get_db
from models.return_policy import ReturnPolicy
from models.return_request import ReturnStatus
from utils.dependencies import get_service
from utils.order_timeline import log_audit
from utils.security import require_role
from utils.serializers import serialize_return
from utils.wallet_service import get_wallet_balance

router = APIRouter(
    prefix="/seller",
    tags=["Seller"]
)


# ======================================================
# RETURN POLICY
# ======================================================

@router.get("/return-policy")
async def get_return_policy(
    seller=Depends(require_role("seller")),
    service=Depends(get_service),
):
    policy = await service.store.get_policy(seller.id)
    return policy.model_dump()


@router.put("/return-policy")
async def update_return_policy(
    payload: ReturnPolicy,
    seller=Depends(require_role("seller")),
    service=Depends(get_service),
    db=Depends(get_db),
):
    # applies to returns requested from now on; open returns keep their snapshot
    policy = await service.store.save_policy(seller.id, payload)

    await log_audit(
        db,
        actor_id=seller.id,
        actor_role="seller",
        action="RETURN_POLICY_UPDATED",
        metadata=policy.model_dump(),
    )
    return policy.model_dump()


# ======================================================
# RETURNS QUEUE
# ======================================================

@router.get("/returns")
async def list_seller_returns(
    status: ReturnStatus | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    seller=Depends(require_role("seller")),
    service=Depends(get_service),
):
    returns = await service.store.list_seller_returns(seller.id, status, limit=limit, offset=offset)
    return {
        "returns": [serialize_return(r) for r in returns],
        "limit": limit,
        "offset": offset,
    }


# ======================================================
# SELLER WALLET (READ ONLY)
# ======================================================

@router.get("/wallet")
async def get_seller_wallet(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    balance = await get_wallet_balance(db, seller.id)

    ledger = (
        await db.wallet_ledger
        .find({"seller_id": seller.id, "account": "seller"}, {"_id": 0})
        .sort("created_at", -1)
        .limit(50)
        .to_list(50)
    )

    return {
        "balance_cents": balance,
        "ledger": ledger,
    }
