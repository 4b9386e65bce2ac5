import asyncio
import logging

from config.constants import SELLER_DEADLINE_REJECTION_REASON
from database import get_db
from utils.errors import InvalidTransition
from utils.fulfillment_service import FulfillmentService, SYSTEM_ACTOR
from utils.gateway import get_gateway
from utils.order_timeline import log_audit

CHECK_INTERVAL_SECONDS = 60 * 10  # every 10 min
logger = logging.getLogger(__name__)


async def reject_overdue_returns(service: FulfillmentService) -> int:
    """Reject every return the seller left unanswered past its action deadline."""
    rejected = 0
    for ret in await service.store.overdue_requested_returns(service.clock()):
        try:
            await service.reject_return(ret.id, SELLER_DEADLINE_REJECTION_REASON, SYSTEM_ACTOR)
        except InvalidTransition:
            # the seller or buyer acted in the meantime
            continue
        except Exception:
            logger.exception("RETURN_DEADLINE_ERROR return=%s", ret.id)
            continue

        await log_audit(
            service.db,
            actor_id=None,
            actor_role="system",
            action="RETURN_AUTO_REJECTED",
            order_id=ret.order_id,
            metadata={"return_id": ret.id, "rma_number": ret.rma_number},
        )
        rejected += 1
    return rejected


async def return_deadline_worker():
    service = FulfillmentService(get_db(), get_gateway())

    while True:
        rejected = await reject_overdue_returns(service)
        if rejected:
            logger.info("RETURN_DEADLINE_PASS rejected=%s", rejected)
        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
