import asyncio
from datetime import timedelta

import pytest
from bson import ObjectId

from conftest import ADMIN, BUYER, SELLER
from models.order import DeliveryStatus, MarkShippedPayload, OrderStatus, PayoutStatus
from models.return_policy import ReturnPolicy
from models.return_request import (
    ApproveReturnPayload,
    InspectionOutcome,
    RefundMethod,
    RefundStatus,
    RequestReturnPayload,
    ReturnReason,
    ReturnStatus,
)
from utils.aggregate_store import AggregateStore
from utils.errors import (
    ConcurrencyConflict,
    ExternalCapabilityFailure,
    InvalidTransition,
    PolicyViolation,
    ValidationError,
)
from utils.fulfillment_service import FulfillmentService
from utils.order_timeline import get_order_timeline, get_state_history
from utils.wallet_service import get_wallet_balance


async def open_return(service, order_id, quantity=1):
    agg = await service.request_return(
        order_id,
        RequestReturnPayload(reason=ReturnReason.DEFECTIVE, quantity=quantity),
        BUYER,
    )
    return agg.ret


async def run_return_to_inspection(service, return_id, outcome=InspectionOutcome.VALID):
    await service.approve_return(return_id, ApproveReturnPayload(return_tracking_number="RT1"), SELLER)
    await service.mark_return_in_transit(return_id, "RT1", BUYER)
    await service.confirm_return_receipt(return_id, "RT1", None, SELLER)
    return await service.record_inspection(return_id, "looks fine", outcome, SELLER)


# ------------------------------------------------------------------
# end-to-end lifecycles
# ------------------------------------------------------------------

async def test_happy_path_delivers_and_eventually_pays(service, delivered, clock, gateway, db):
    order = await delivered()

    assert order.order_status == OrderStatus.DELIVERED
    assert order.delivery_status == DeliveryStatus.DELIVERED
    assert order.payout_status == PayoutStatus.PROCESSING
    assert gateway.releases == []

    clock.advance(days=7)
    agg = await service.reconcile(order.id)

    assert agg.order.payout_status == PayoutStatus.PAID
    assert agg.order.released_cents == 450000
    assert agg.order.paid_at == clock.now
    assert [r["amount_cents"] for r in gateway.releases] == [450000]
    assert await get_wallet_balance(db, SELLER.id) == 450000


async def test_full_return_refunds_and_reverses_payout(service, delivered, gateway):
    order = await delivered()
    ret = await open_return(service, order.id)

    frozen = await service.store.get_order(order.id)
    assert frozen.payout_status == PayoutStatus.IN_ESCROW
    assert frozen.active_return_id == ret.id

    await run_return_to_inspection(service, ret.id)
    agg = await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    assert agg.ret.status == ReturnStatus.COMPLETED
    assert agg.ret.refund_status == RefundStatus.COMPLETED
    assert agg.ret.refund_amount == 450000
    assert agg.order.order_status == OrderStatus.RETURNED
    assert agg.order.payout_status == PayoutStatus.REVERSED
    assert agg.order.active_return_id is None
    assert gateway.reversals[0]["reference"] == f"{order.id}:refund:{ret.id}"
    assert gateway.releases == []


async def test_cancel_pending_order_then_confirm_is_invalid(service, place, gateway):
    order = await place()

    agg = await service.cancel_order(order.id, "out_of_stock", BUYER)
    assert agg.order.order_status == OrderStatus.CANCELED
    assert agg.order.payout_status == PayoutStatus.REVERSED
    assert gateway.reversals[0]["reference"] == f"{order.id}:cancel"

    with pytest.raises(InvalidTransition):
        await service.confirm_order(order.id, SELLER)


async def test_cancel_before_capture_moves_no_money(service, place, gateway):
    order = await place(funds_captured=False)
    agg = await service.cancel_order(order.id, "buyer changed mind", BUYER)

    assert agg.order.payout_status == PayoutStatus.IN_ESCROW
    assert gateway.reversals == []


async def test_return_before_delivery_is_policy_violation(service, place):
    order = await place()
    await service.confirm_order(order.id, SELLER)
    await service.mark_processing(order.id, SELLER)

    with pytest.raises(PolicyViolation):
        await open_return(service, order.id)


async def test_concurrent_delivery_confirmations_write_once(service, place, ship, db):
    order = await place()
    await ship(order.id)

    first, second = await asyncio.gather(
        service.confirm_delivery(order.id, BUYER),
        service.confirm_delivery(order.id, BUYER),
    )

    assert first.order.delivered_at == second.order.delivered_at
    history = await get_state_history(db, order.id)
    delivered = [h for h in history if h["to_state"] == "delivered"]
    assert len(delivered) == 1


async def test_repeat_delivery_is_noop(service, delivered, clock):
    order = await delivered()
    clock.advance(hours=2)

    agg = await service.confirm_delivery(order.id, BUYER)
    assert agg.order.delivered_at == order.delivered_at
    assert agg.order.version == order.version


# ------------------------------------------------------------------
# optimistic concurrency
# ------------------------------------------------------------------

class RacingStore(AggregateStore):
    """Bumps the order version behind the caller's back before the first `races` commits."""

    def __init__(self, db, races):
        super().__init__(db)
        self.races = races
        self.commits = 0

    async def commit(self, before, order, ret=None, *, new_return=False):
        self.commits += 1
        if self.races > 0:
            self.races -= 1
            await self.orders.update_one({"_id": ObjectId(before.order.id)}, {"$inc": {"version": 1}})
        return await super().commit(before, order, ret, new_return=new_return)


async def test_lost_race_is_retried_against_fresh_state(db, gateway, clock, place):
    order = await place()
    store = RacingStore(db, races=1)
    racing = FulfillmentService(db, gateway, clock=clock, store=store, max_retries=3)

    agg = await racing.confirm_order(order.id, SELLER)

    assert agg.order.order_status == OrderStatus.CONFIRMED
    assert store.commits == 2


async def test_conflict_surfaces_after_retry_budget(db, gateway, clock, place):
    order = await place()
    store = RacingStore(db, races=10)
    racing = FulfillmentService(db, gateway, clock=clock, store=store, max_retries=3)

    with pytest.raises(ConcurrencyConflict):
        await racing.confirm_order(order.id, SELLER)
    assert store.commits == 3

    unchanged = await racing.store.get_order(order.id)
    assert unchanged.order_status == OrderStatus.PENDING


async def test_stale_commit_is_rejected(service, place):
    order = await place()
    stale = await service.store.load(order.id)
    await service.confirm_order(order.id, SELLER)

    with pytest.raises(ConcurrencyConflict):
        await service.store.commit(stale, stale.order.model_copy(update={"cancel_reason": "x"}))


class InterleavingStore(AggregateStore):
    """Runs another command once, just before or just after the first commit that writes a return."""

    def __init__(self, db, *, run_before=None, run_after=None):
        super().__init__(db)
        self.run_before = run_before
        self.run_after = run_after

    async def commit(self, before, order, ret=None, *, new_return=False):
        if ret is not None and self.run_before is not None:
            hook, self.run_before = self.run_before, None
            await hook()
        committed = await super().commit(before, order, ret, new_return=new_return)
        if ret is not None and self.run_after is not None:
            hook, self.run_after = self.run_after, None
            await hook()
        return committed


def interleaved(db, gateway, clock, **hooks):
    store = InterleavingStore(db, **hooks)
    return FulfillmentService(db, gateway, clock=clock, hold=timedelta(days=7), store=store)


async def test_settlement_right_after_return_request_sees_the_return(db, gateway, clock, delivered, service):
    order = await delivered()
    clock.advance(days=7)
    seen = {}

    async def settle():
        seen["agg"] = await service.reconcile(order.id)

    racing = interleaved(db, gateway, clock, run_after=settle)
    agg = await racing.request_return(order.id, RequestReturnPayload(reason=ReturnReason.DEFECTIVE), BUYER)

    assert seen["agg"].ret.id == agg.ret.id
    assert gateway.releases == []

    stored = await service.store.load(order.id)
    assert stored.order.payout_status == PayoutStatus.IN_ESCROW
    assert stored.order.active_return_id == agg.ret.id
    assert stored.ret.status == ReturnStatus.REQUESTED


async def test_release_claimed_before_return_request_is_recorded(db, gateway, clock, delivered, service):
    order = await delivered()
    clock.advance(days=7)

    racing = interleaved(db, gateway, clock, run_before=lambda: service.reconcile(order.id))
    agg = await racing.request_return(order.id, RequestReturnPayload(reason=ReturnReason.DEFECTIVE), BUYER)

    assert len(gateway.releases) == 1
    assert agg.order.payout_status == PayoutStatus.PAID
    assert agg.order.released_cents == 450000
    assert agg.order.active_return_id == agg.ret.id
    assert agg.order.pending_transfer is None
    assert agg.order.settlement_required is False

    approved = await service.approve_return(agg.ret.id, ApproveReturnPayload(return_tracking_number="RT1"), SELLER)
    assert approved.order.settlement_required


async def test_approve_racing_reject_leaves_one_outcome(db, gateway, clock, delivered, service):
    order = await delivered()
    ret = await open_return(service, order.id)

    racing = interleaved(db, gateway, clock, run_before=lambda: service.reject_return(ret.id, "no receipt", SELLER))
    with pytest.raises(InvalidTransition):
        await racing.approve_return(ret.id, ApproveReturnPayload(return_tracking_number="RT1"), SELLER)

    agg = await service.store.load_for_return(ret.id)
    assert agg.ret.status == ReturnStatus.REJECTED
    assert agg.ret.approved_at is None
    assert agg.order.active_return_id is None
    assert agg.order.payout_status == PayoutStatus.PROCESSING


async def test_duplicate_return_requests_open_one_return(db, gateway, clock, delivered, service):
    order = await delivered()

    racing = interleaved(db, gateway, clock, run_before=lambda: open_return(service, order.id))
    with pytest.raises(InvalidTransition):
        await open_return(racing, order.id)

    returns = await service.store.list_returns(order.id)
    assert len(returns) == 1
    assert (await service.store.get_order(order.id)).active_return_id == returns[0].id


# ------------------------------------------------------------------
# refunds
# ------------------------------------------------------------------

async def test_refund_failure_is_recorded_and_retryable(service, delivered, gateway):
    order = await delivered()
    ret = await open_return(service, order.id)
    await run_return_to_inspection(service, ret.id)

    gateway.failures_left = 1
    with pytest.raises(ExternalCapabilityFailure):
        await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    failed = await service.store.get_return(ret.id)
    assert failed.status == ReturnStatus.INSPECTED
    assert failed.refund_status == RefundStatus.FAILED
    assert failed.refund_error

    agg = await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)
    assert agg.ret.status == ReturnStatus.COMPLETED
    assert len(gateway.reversals) == 1


async def test_refund_cannot_be_paid_twice(service, delivered, gateway):
    order = await delivered()
    ret = await open_return(service, order.id)
    await run_return_to_inspection(service, ret.id)
    await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    with pytest.raises(InvalidTransition):
        await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)
    assert len(gateway.reversals) == 1


async def test_rejected_inspection_releases_full_payout(service, delivered, gateway, clock):
    order = await delivered()
    ret = await open_return(service, order.id)
    await run_return_to_inspection(service, ret.id, InspectionOutcome.REJECTED)

    agg = await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)
    assert agg.ret.refund_amount == 0
    assert agg.order.order_status == OrderStatus.DELIVERED
    assert agg.order.payout_status == PayoutStatus.PROCESSING
    assert gateway.reversals == []

    clock.advance(days=7)
    paid = await service.reconcile(order.id)
    assert paid.order.released_cents == 450000


async def test_partial_return_releases_remainder(service, delivered, gateway, clock):
    order = await delivered(amount_cents=1000, quantity=2)
    ret = await open_return(service, order.id, quantity=1)
    await run_return_to_inspection(service, ret.id)
    agg = await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    assert agg.order.order_status == OrderStatus.DELIVERED
    assert agg.order.refunded_cents == 500
    assert agg.order.returned_quantity == 1

    clock.advance(days=7)
    paid = await service.reconcile(order.id)
    assert paid.order.payout_status == PayoutStatus.PAID
    assert gateway.releases[0]["amount_cents"] == 500


async def test_auto_approved_return_without_inspection(service, delivered, gateway):
    await service.store.save_policy(
        SELLER.id,
        ReturnPolicy(auto_approve_returns=True, require_inspection=False),
    )
    order = await delivered()
    ret = await open_return(service, order.id)
    assert ret.status == ReturnStatus.APPROVED
    assert ret.refund_amount == 450000

    await service.mark_return_in_transit(ret.id, "RT9", BUYER)
    received = await service.confirm_return_receipt(ret.id, "RT9", None, SELLER)
    assert received.ret.status == ReturnStatus.INSPECTED

    agg = await service.process_refund(ret.id, RefundMethod.STORE_CREDIT, SELLER)
    assert agg.ret.refund_method == RefundMethod.STORE_CREDIT
    assert agg.order.order_status == OrderStatus.RETURNED


async def test_policy_change_does_not_touch_open_return(service, delivered):
    order = await delivered()
    ret = await open_return(service, order.id)

    await service.store.save_policy(SELLER.id, ReturnPolicy(refund_percentage=10))
    await run_return_to_inspection(service, ret.id)

    stored = await service.store.get_return(ret.id)
    assert stored.refund_amount == 450000


async def test_cancel_return_unfreezes_payout(service, delivered):
    order = await delivered()
    ret = await open_return(service, order.id)

    agg = await service.cancel_return(ret.id, "found a use for it", BUYER)
    assert agg.ret.status == ReturnStatus.CANCELED
    assert agg.order.active_return_id is None
    assert agg.order.payout_status == PayoutStatus.PROCESSING

    # a fresh return is allowed once the previous one is terminal
    second = await open_return(service, order.id)
    assert second.id != ret.id


# ------------------------------------------------------------------
# payout after release
# ------------------------------------------------------------------

@pytest.fixture
def paid_order(service, delivered, clock):
    async def _paid(**kwargs):
        await service.store.save_policy(SELLER.id, ReturnPolicy(return_window_days=30))
        order = await delivered(**kwargs)
        clock.advance(days=7)
        agg = await service.reconcile(order.id)
        assert agg.order.payout_status == PayoutStatus.PAID
        return agg.order

    return _paid


async def test_return_after_payout_flags_settlement_then_admin_reverses(service, delivered, clock, gateway, db):
    order = await delivered()
    clock.advance(days=6)
    ret = await open_return(service, order.id)
    assert (await service.store.get_order(order.id)).payout_status == PayoutStatus.IN_ESCROW

    await service.cancel_return(ret.id, "never mind", BUYER)
    clock.advance(days=1)
    paid = await service.reconcile(order.id)
    assert paid.order.payout_status == PayoutStatus.PAID

    # a second, late-window return opens against a paid order
    ret = await open_return(service, order.id)
    requested = await service.store.get_order(order.id)
    assert requested.payout_status == PayoutStatus.PAID
    assert requested.settlement_required is False

    await service.approve_return(ret.id, ApproveReturnPayload(return_tracking_number="RT1"), SELLER)
    assert (await service.store.get_order(order.id)).settlement_required

    with pytest.raises(PolicyViolation):
        await service.admin_reverse_payout(order.id, "refund pending", ADMIN)

    await service.mark_return_in_transit(ret.id, "RT1", BUYER)
    await service.confirm_return_receipt(ret.id, "RT1", None, SELLER)
    await service.record_inspection(ret.id, "looks fine", InspectionOutcome.VALID, SELLER)
    await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    agg = await service.admin_reverse_payout(order.id, "buyer refunded after payout", ADMIN)
    assert agg.order.payout_status == PayoutStatus.REVERSED
    assert agg.order.settlement_required is False
    assert agg.order.reversed_cents == 450000
    assert await get_wallet_balance(db, SELLER.id) == 0
    assert await db.audit_logs.count_documents({"action": "PAYOUT_REVERSED"}) == 1


async def test_second_return_after_partial_clawback_is_clawed_back_again(service, paid_order, gateway, db):
    order = await paid_order(amount_cents=1000, quantity=2)

    first = await open_return(service, order.id, quantity=1)
    await run_return_to_inspection(service, first.id)
    refunded = await service.process_refund(first.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)
    assert refunded.order.settlement_required
    assert refunded.order.overpaid_cents == 500

    agg = await service.admin_reverse_payout(order.id, "first unit refunded", ADMIN)
    assert agg.order.payout_status == PayoutStatus.PAID
    assert agg.order.reversed_cents == 500
    assert agg.order.settlement_required is False

    second = await open_return(service, order.id, quantity=1)
    await run_return_to_inspection(service, second.id)
    done = await service.process_refund(second.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)
    assert done.order.order_status == OrderStatus.RETURNED
    assert done.order.settlement_required

    agg = await service.admin_reverse_payout(order.id, "second unit refunded", ADMIN)
    assert agg.order.payout_status == PayoutStatus.REVERSED
    assert agg.order.reversed_cents == 1000
    assert agg.order.settlement_required is False

    clawbacks = [r["reference"] for r in gateway.reversals if r["source"] == "seller"]
    assert clawbacks == [f"{order.id}:clawback:500", f"{order.id}:clawback:1000"]
    assert await get_wallet_balance(db, SELLER.id) == 0


async def test_rejected_return_after_payout_never_needs_settlement(service, paid_order):
    order = await paid_order()
    ret = await open_return(service, order.id)
    await service.reject_return(ret.id, "outside policy", SELLER)
    await service.reconcile(order.id)

    assert (await service.store.get_order(order.id)).settlement_required is False
    assert await service.store.orders_requiring_settlement() == []
    with pytest.raises(PolicyViolation):
        await service.admin_reverse_payout(order.id, "nothing refunded", ADMIN)


async def test_canceled_return_after_payout_clears_settlement_flag(service, paid_order):
    order = await paid_order()
    ret = await open_return(service, order.id)
    await service.approve_return(ret.id, ApproveReturnPayload(return_tracking_number="RT1"), SELLER)
    assert [o.id for o in await service.store.orders_requiring_settlement()] == [order.id]

    agg = await service.cancel_return(ret.id, "kept the item", BUYER)
    assert agg.order.settlement_required is False
    assert agg.order.payout_status == PayoutStatus.PAID
    assert await service.store.orders_requiring_settlement() == []


async def test_failed_clawback_is_finished_by_the_next_reversal(service, paid_order, gateway, db):
    order = await paid_order()
    ret = await open_return(service, order.id)
    await run_return_to_inspection(service, ret.id)
    await service.process_refund(ret.id, RefundMethod.ORIGINAL_PAYMENT, SELLER)

    gateway.failures_left = 1
    with pytest.raises(ExternalCapabilityFailure):
        await service.admin_reverse_payout(order.id, "refunded after payout", ADMIN)

    pending = await service.store.get_order(order.id)
    assert pending.pending_transfer.reference == f"{order.id}:clawback:450000"
    assert pending.payout_error
    assert pending.payout_status == PayoutStatus.PAID

    agg = await service.admin_reverse_payout(order.id, "retry", ADMIN)
    assert agg.order.payout_status == PayoutStatus.REVERSED
    assert agg.order.pending_transfer is None
    assert len([r for r in gateway.reversals if r["source"] == "seller"]) == 1
    assert await db.audit_logs.count_documents({"action": "PAYOUT_REVERSED"}) == 1


async def test_admin_reverse_requires_paid_payout(service, delivered):
    order = await delivered()
    with pytest.raises(InvalidTransition):
        await service.admin_reverse_payout(order.id, "why not", ADMIN)


async def test_release_failure_keeps_processing_with_error(service, delivered, clock, gateway):
    order = await delivered()
    clock.advance(days=7)
    gateway.failures_left = 1

    with pytest.raises(ExternalCapabilityFailure):
        await service.reconcile(order.id)

    pending = await service.store.get_order(order.id)
    assert pending.payout_status == PayoutStatus.PROCESSING
    assert pending.payout_error

    agg = await service.reconcile(order.id)
    assert agg.order.payout_status == PayoutStatus.PAID
    assert agg.order.payout_error is None
    assert len(gateway.releases) == 1


# ------------------------------------------------------------------
# history
# ------------------------------------------------------------------

async def test_history_and_timeline_are_recorded(service, delivered, db):
    order = await delivered()

    history = await get_state_history(db, order.id)
    assert [h["to_state"] for h in history] == [
        "pending",
        "confirmed",
        "processing",
        "shipped",
        "delivered",
    ]
    assert history[0]["command"] == "PlaceOrder"
    assert history[-1]["transition_type"] == "manual"

    events = [e["event"] for e in await get_order_timeline(db, order.id)]
    assert events[:5] == ["OrderPlaced", "OrderConfirmed", "OrderProcessing", "OrderShipped", "OrderDelivered"]
    assert "PayoutProcessing" in events
    assert all(e["dispatched"] is False for e in await get_order_timeline(db, order.id))


async def test_mark_shipped_payload_validation(service, place, clock):
    order = await place()
    await service.confirm_order(order.id, SELLER)
    await service.mark_processing(order.id, SELLER)

    with pytest.raises(ValidationError):
        await service.mark_shipped(
            order.id,
            MarkShippedPayload(tracking_number="T1", carrier="dhl", estimated_delivery=None),
            SELLER,
        )
    unchanged = await service.store.get_order(order.id)
    assert unchanged.order_status == OrderStatus.PROCESSING
