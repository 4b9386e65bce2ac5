from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("order_status", ASCENDING), ("created_at", DESCENDING)],
        name="orders_seller_status_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("tracking_number", ASCENDING)],
        name="orders_tracking_number_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("order_status", ASCENDING), ("payout_status", ASCENDING), ("delivered_at", ASCENDING)],
        name="orders_payout_idx",
    )
    await _create_index_safe(
        db.orders,
        [("settlement_required", ASCENDING), ("updated_at", ASCENDING)],
        name="orders_settlement_required_idx",
    )

    # Returns, embedded in their order
    await _create_index_safe(
        db.orders,
        [("returns.id", ASCENDING)],
        name="orders_returns_id_idx",
    )
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("returns.status", ASCENDING), ("returns.requested_at", DESCENDING)],
        name="orders_returns_seller_status_idx",
    )
    await _create_index_safe(
        db.orders,
        [("returns.status", ASCENDING), ("returns.seller_action_deadline", ASCENDING)],
        name="orders_returns_deadline_idx",
    )
    await _create_index_safe(
        db.orders,
        [("returns.rma_number", ASCENDING)],
        name="orders_returns_rma_idx",
    )
    await _create_index_safe(
        db.orders,
        [("pending_transfer.reference", ASCENDING)],
        name="orders_pending_transfer_idx",
        sparse=True,
    )

    # Return policies
    await _create_index_safe(
        db.return_policies,
        [("seller_id", ASCENDING)],
        name="return_policies_seller_unique_idx",
        unique=True,
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Timeline + history
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )
    await _create_index_safe(
        db.order_timeline,
        [("dispatched", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_undispatched_idx",
    )
    await _create_index_safe(
        db.order_state_transitions,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_state_transitions_order_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("order_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_order_idx",
    )

    # Wallet ledger
    await _create_index_safe(
        db.wallet_ledger,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_ledger_seller_created_at_idx",
    )
    await _create_index_safe(
        db.wallet_ledger,
        [("reference", ASCENDING)],
        name="wallet_ledger_reference_idx",
        sparse=True,
    )
