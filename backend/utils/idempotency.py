from datetime import datetime
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24 * 30  # 30 days; gateway references must outlive retries
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

IN_PROGRESS = {
    "message": "Request already in progress",
    "status": "processing",
    "in_progress": True,
}


def is_in_progress(response: dict | None) -> bool:
    return bool(response and response.get("in_progress"))


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve an idempotency key.
    If key already exists and is completed, return stored response.
    If key is reserved and fresh, return the in-progress marker.
    If key is stale or failed, take it over and allow retry.
    """
    now = datetime.utcnow()
    existing = await db.idempotency_keys.find_one({
        "key": key,
        "scope": scope,
    })

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at")
        age_seconds = (
            (now - created_at).total_seconds()
            if created_at else 0
        )
        if age_seconds <= IN_PROGRESS_STALE_SECONDS and existing.get("status") == "reserved":
            return dict(IN_PROGRESS)

        # Conditional on the state we just read, so only one retry wins the takeover
        claimed = await db.idempotency_keys.find_one_and_update(
            {
                "_id": existing["_id"],
                "status": existing.get("status"),
                "created_at": created_at,
            },
            {
                "$set": {
                    "status": "reserved",
                    "created_at": now,
                    "error": None,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            return dict(IN_PROGRESS)
        return None

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        # Concurrent request won the race; return canonical response/state.
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return dict(IN_PROGRESS)
    return None


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    """
    Mark idempotency key as completed and store response.
    """
    await db.idempotency_keys.find_one_and_update(
        {
            "key": key,
            "scope": scope,
        },
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def fail_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    error: str,
):
    """
    Mark idempotency key as failed so retries can be attempted explicitly.
    """
    await db.idempotency_keys.find_one_and_update(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "failed",
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )
