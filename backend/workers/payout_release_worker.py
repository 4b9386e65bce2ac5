import asyncio
import logging

from database import get_db
from utils.fulfillment_service import FulfillmentService, SYSTEM_ACTOR
from utils.gateway import get_gateway

CHECK_INTERVAL_SECONDS = 60 * 30  # every 30 min
logger = logging.getLogger(__name__)


async def release_due_payouts(service: FulfillmentService) -> int:
    """
    One reconciliation pass over every order whose payout may still move.
    Returns how many orders changed payout status.
    """
    changed = 0
    for order_id in await service.store.orders_awaiting_settlement():
        try:
            before = await service.store.get_order(order_id)
            agg = await service.reconcile(order_id, SYSTEM_ACTOR)
            if agg.order.payout_status != before.payout_status:
                changed += 1
        except Exception:
            # Never crash worker for one bad order
            logger.exception("PAYOUT_RELEASE_ERROR order=%s", order_id)
    return changed


async def payout_release_worker():
    service = FulfillmentService(get_db(), get_gateway())

    while True:
        changed = await release_due_payouts(service)
        if changed:
            logger.info("PAYOUT_RELEASE_PASS changed=%s", changed)
        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
