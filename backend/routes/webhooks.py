from fastapi import APIRouter, Depends, Request, HTTPException
import hmac
import hashlib
import json
import logging

from config.env import DELIVERY_WEBHOOK_SECRET
from database import get_db
from utils.dependencies import get_service
from utils.errors import InvalidTransition
from utils.fulfillment_service import SYSTEM_ACTOR
from utils.order_timeline import record_order_event
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

DELIVERED_STATUSES = {"delivered"}


# =========================================================
# SIGNATURE VERIFICATION
# =========================================================

def verify_signature(raw_body: bytes, received_signature: str, secret: str | None = None):
    secret = secret if secret is not None else DELIVERY_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(500, "Webhook secret not configured")

    computed = hmac.new(
        secret.encode(),
        raw_body,
        hashlib.sha256
    ).hexdigest()

    if not hmac.compare_digest(computed, received_signature):
        raise HTTPException(401, "Invalid webhook signature")


# =========================================================
# COURIER WEBHOOK
# =========================================================

@router.post("/courier")
async def courier_webhook(
    request: Request,
    db=Depends(get_db),
    service=Depends(get_service),
):
    """
    Courier status webhook.

    Signature verified, idempotent per (tracking number, status).
    A delivered status confirms delivery on behalf of the system.
    """

    signature = request.headers.get("X-Delivery-Signature")
    if not signature:
        raise HTTPException(401, "Missing signature")

    raw_body = await request.body()
    verify_signature(raw_body, signature)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(400, "Invalid JSON payload")

    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")

    tracking_number = str(payload.get("tracking_number") or "").strip()
    status = str(payload.get("status") or "").strip().lower()

    if not tracking_number or not status:
        return {"ok": True, "ignored": True}

    idempotency_key = f"courier:{tracking_number}:{status}"
    existing = await reserve_idempotency_key(
        db=db,
        key=idempotency_key,
        scope="courier_webhook",
    )
    if existing:
        return existing

    try:
        order = await service.store.find_order_by_tracking(tracking_number)

        if not order:
            response = {"ok": True, "order": "not_found"}
        else:
            await record_order_event(
                db,
                order_id=order.id,
                event="CourierStatusUpdate",
                actor_role="system",
                metadata={"tracking_number": tracking_number, "courier_status": status},
            )

            response = {"ok": True, "order_id": order.id}
            if status in DELIVERED_STATUSES:
                try:
                    agg = await service.confirm_delivery(order.id, SYSTEM_ACTOR)
                    response["order_status"] = agg.order.order_status.value
                except InvalidTransition as e:
                    logger.warning("COURIER_DELIVERY_IGNORED order=%s reason=%s", order.id, e.message)
                    response.update({"ignored": True, "reason": e.message})
    except Exception as e:
        await fail_idempotency_key(
            db=db,
            key=idempotency_key,
            scope="courier_webhook",
            error=str(e),
        )
        raise

    await complete_idempotency_key(
        db=db,
        key=idempotency_key,
        scope="courier_webhook",
        response=response,
    )
    return response
