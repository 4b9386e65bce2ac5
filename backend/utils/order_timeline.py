from datetime import datetime
from bson import ObjectId


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    Rows stay undispatched until the external notifier picks them up.
    """

    doc = {
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": actor_id,
        "metadata": metadata or {},
        "dispatched": False,
        "created_at": datetime.utcnow(),
    }

    await db.order_timeline.insert_one(doc)


async def record_state_transition(
    db,
    *,
    order_id,
    entity: str,
    entity_id,
    from_state: str | None,
    to_state: str,
    transition_type: str,
    initiated_by=None,
    reason: str | None = None,
    command: str | None = None,
):
    await db.order_state_transitions.insert_one({
        "order_id": ObjectId(order_id),
        "entity": entity,
        "entity_id": str(entity_id),
        "from_state": from_state,
        "to_state": to_state,
        "transition_type": transition_type,
        "command": command,
        "initiated_by": initiated_by,
        "reason": reason,
        "created_at": datetime.utcnow(),
    })


async def get_order_timeline(db, order_id) -> list[dict]:
    return await db.order_timeline.find(
        {"order_id": ObjectId(order_id)},
        {"_id": 0, "order_id": 0},
    ).sort("created_at", 1).to_list(None)


async def get_state_history(db, order_id) -> list[dict]:
    return await db.order_state_transitions.find(
        {"order_id": ObjectId(order_id)},
        {"_id": 0, "order_id": 0},
    ).sort("created_at", 1).to_list(None)


async def log_audit(
    db,
    *,
    actor_id: str | None,
    actor_role: str,
    action: str,
    order_id=None,
    metadata: dict | None = None,
):
    """Administrative and system actions, kept apart from the buyer/seller timeline."""
    await db.audit_logs.insert_one({
        "actor_id": actor_id,
        "actor_role": actor_role,
        "action": action,
        "order_id": str(order_id) if order_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    })
