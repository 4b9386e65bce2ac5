import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from config.env import MAX_CONFLICT_RETRIES
from models.order import (
    MarkShippedPayload,
    Order,
    PayoutStatus,
    PendingTransfer,
    PlaceOrderPayload,
    TransferKind,
)
from models.return_request import (
    ApproveReturnPayload,
    InspectionOutcome,
    RefundMethod,
    RequestReturnPayload,
    ReturnRequest,
)
from utils import order_ledger, return_engine
from utils.aggregate_store import Aggregate, AggregateStore, new_id
from utils.errors import (
    ConcurrencyConflict,
    ExternalCapabilityFailure,
    InvalidTransition,
    PolicyViolation,
)
from utils.order_timeline import log_audit, record_order_event, record_state_transition
from utils.payout_reconciler import PayoutDecision, PayoutReconciler, provisional_status
from utils.transitions import (
    Command,
    DomainEvent,
    Entity,
    Outcome,
    TransitionType,
    require_text,
)

logger = logging.getLogger(__name__)

PAYOUT_EVENTS = {
    PayoutStatus.IN_ESCROW: "PayoutFrozen",
    PayoutStatus.PROCESSING: "PayoutProcessing",
    PayoutStatus.PAID: "PayoutReleased",
    PayoutStatus.REVERSED: "PayoutReversed",
}


@dataclass(frozen=True)
class Actor:
    id: Optional[str]
    role: str

    @property
    def transition_type(self) -> TransitionType:
        return TransitionType.SYSTEM if self.role == "system" else TransitionType.MANUAL


SYSTEM_ACTOR = Actor(id=None, role="system")


class FulfillmentService:
    """
    Command entry points for orders, returns and payouts.

    Each command re-reads the aggregate, validates against that fresh
    state, applies the transition and commits conditionally on the
    version it read. A lost race is retried from the read, up to
    MAX_CONFLICT_RETRIES times, before ConcurrencyConflict reaches the caller.
    """

    def __init__(
        self,
        db,
        gateway,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
        hold: timedelta | None = None,
        max_retries: int = MAX_CONFLICT_RETRIES,
        store: AggregateStore | None = None,
    ):
        self.db = db
        self.store = store or AggregateStore(db)
        self.reconciler = PayoutReconciler(db, gateway, hold=hold)
        self.clock = clock
        self.max_retries = max(1, max_retries)

    # =====================================================
    # CORE LOOP
    # =====================================================

    async def _load(self, order_id: str | None, return_id: str | None) -> Aggregate:
        if return_id is not None:
            return await self.store.load_for_return(return_id)
        return await self.store.load(order_id)

    async def _execute(
        self,
        command: Command,
        actor: Actor,
        apply: Callable[[Aggregate, datetime], Outcome],
        *,
        order_id: str | None = None,
        return_id: str | None = None,
    ) -> Aggregate:
        for attempt in range(1, self.max_retries + 1):
            agg = await self._load(order_id, return_id)
            now = self.clock()
            outcome = apply(agg, now)

            if outcome.noop:
                logger.info("COMMAND_NOOP command=%s order=%s", command.value, agg.order.id)
                return agg

            decision = self._reconcile_outcome(agg, outcome, now)

            violations = order_ledger.order_invariant_violations(outcome.order)
            if violations:
                raise InvalidTransition(
                    f"{command.value} would break order invariants",
                    violations=violations,
                )

            try:
                committed = await self.store.commit(
                    agg,
                    outcome.order,
                    outcome.ret,
                    new_return=outcome.new_return,
                )
            except ConcurrencyConflict:
                logger.warning(
                    "CONCURRENCY_CONFLICT command=%s order=%s attempt=%s",
                    command.value,
                    agg.order.id,
                    attempt,
                )
                continue

            await self._publish(committed.order, outcome, actor)

            if decision.moves_money:
                await self._settle_quietly(committed.order.id, actor)
                order = await self.store.get_order(committed.order.id)
                committed = Aggregate(order=order, ret=committed.ret, returns=committed.returns)

            return committed

        raise ConcurrencyConflict(
            f"{command.value} gave up after {self.max_retries} conflicting attempts",
            order_id=order_id,
            return_id=return_id,
        )

    def _reconcile_outcome(self, agg: Aggregate, outcome: Outcome, now: datetime) -> PayoutDecision:
        order = outcome.order
        candidate = outcome.ret if outcome.ret is not None else agg.ret
        active = candidate if candidate is not None and candidate.id == order.active_return_id else None

        decision = self.reconciler.decide(order, active, now)
        outcome.order = self._apply_payout(
            order,
            provisional_status(decision),
            decision,
            now,
            outcome.events,
        )
        return decision

    def _apply_payout(
        self,
        order: Order,
        status: PayoutStatus,
        decision: PayoutDecision,
        now: datetime,
        events: list[DomainEvent],
        **extra,
    ) -> Order:
        updates = dict(extra)
        if status != order.payout_status:
            updates["payout_status"] = status
            if status == PayoutStatus.REVERSED and order.reversed_at is None:
                updates["reversed_at"] = now
            events.append(DomainEvent(PAYOUT_EVENTS[status], {
                "from": order.payout_status.value,
                "to": status.value,
                "reason": decision.reason,
            }))
        if decision.settlement_required != order.settlement_required:
            updates["settlement_required"] = decision.settlement_required
            events.append(DomainEvent(
                "SettlementRequired" if decision.settlement_required else "SettlementCleared",
                {
                    "released_cents": order.released_cents,
                    "reversed_cents": order.reversed_cents,
                    "refunded_cents": order.refunded_cents,
                },
            ))
        if not updates:
            return order
        updates["updated_at"] = now
        return order.model_copy(update=updates)

    async def _publish(self, order: Order, outcome: Outcome, actor: Actor):
        for change in outcome.changes:
            logger.info(
                "TRANSITION order=%s entity=%s command=%s from=%s to=%s",
                order.id,
                change.entity.value,
                change.command.value,
                change.from_state,
                change.to_state,
            )
            await record_state_transition(
                self.db,
                order_id=order.id,
                entity=change.entity.value,
                entity_id=change.entity_id,
                from_state=change.from_state,
                to_state=change.to_state,
                transition_type=change.transition_type.value,
                initiated_by=actor.id,
                reason=change.reason,
                command=change.command.value,
            )
        for event in outcome.events:
            await record_order_event(
                self.db,
                order_id=order.id,
                event=event.name,
                actor_role=actor.role,
                actor_id=actor.id,
                metadata=event.metadata,
            )

    # =====================================================
    # ORDER COMMANDS
    # =====================================================

    async def place_order(self, payload: PlaceOrderPayload, actor: Actor) -> Order:
        now = self.clock()
        order = order_ledger.open_order(payload, order_id=new_id(), buyer_id=actor.id, now=now)
        await self.store.insert_order(order)

        logger.info("ORDER_PLACED order=%s seller=%s amount=%s", order.id, order.seller_id, order.amount_cents)
        await record_state_transition(
            self.db,
            order_id=order.id,
            entity=Entity.ORDER.value,
            entity_id=order.id,
            from_state=None,
            to_state=order.order_status.value,
            transition_type=actor.transition_type.value,
            initiated_by=actor.id,
            command="PlaceOrder",
        )
        await record_order_event(
            self.db,
            order_id=order.id,
            event="OrderPlaced",
            actor_role=actor.role,
            actor_id=actor.id,
            metadata={
                "amount_cents": order.amount_cents,
                "currency": order.currency,
                "quantity": order.quantity,
            },
        )
        return order

    async def confirm_order(self, order_id: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.CONFIRM_ORDER,
            actor,
            lambda agg, now: order_ledger.confirm_order(
                agg.order, now=now, transition_type=actor.transition_type
            ),
            order_id=order_id,
        )

    async def mark_processing(self, order_id: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.MARK_PROCESSING,
            actor,
            lambda agg, now: order_ledger.mark_processing(
                agg.order, now=now, transition_type=actor.transition_type
            ),
            order_id=order_id,
        )

    async def mark_shipped(self, order_id: str, payload: MarkShippedPayload, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.MARK_SHIPPED,
            actor,
            lambda agg, now: order_ledger.mark_shipped(
                agg.order,
                tracking_number=payload.tracking_number,
                carrier=payload.carrier,
                estimated_delivery=payload.estimated_delivery,
                now=now,
                transition_type=actor.transition_type,
            ),
            order_id=order_id,
        )

    async def confirm_delivery(self, order_id: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.CONFIRM_DELIVERY,
            actor,
            lambda agg, now: order_ledger.confirm_delivery(
                agg.order, now=now, transition_type=actor.transition_type
            ),
            order_id=order_id,
        )

    async def cancel_order(self, order_id: str, reason: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.CANCEL_ORDER,
            actor,
            lambda agg, now: order_ledger.cancel_order(
                agg.order, reason=reason, now=now, transition_type=actor.transition_type
            ),
            order_id=order_id,
        )

    # =====================================================
    # RETURN COMMANDS
    # =====================================================

    async def request_return(self, order_id: str, payload: RequestReturnPayload, actor: Actor) -> Aggregate:
        order = await self.store.get_order(order_id)
        # snapshot of the policy as it stands right now
        policy = await self.store.get_policy(order.seller_id)
        return_id = new_id()

        return await self._execute(
            Command.REQUEST_RETURN,
            actor,
            lambda agg, now: return_engine.request_return(
                agg.order,
                agg.ret,
                policy,
                payload,
                return_id=return_id,
                buyer_id=actor.id or agg.order.buyer_id,
                now=now,
            ),
            order_id=order_id,
        )

    async def approve_return(self, return_id: str, payload: ApproveReturnPayload, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.APPROVE_RETURN,
            actor,
            lambda agg, now: return_engine.approve_return(
                agg.order,
                agg.ret,
                return_label=payload.return_label,
                return_tracking_number=payload.return_tracking_number,
                now=now,
                transition_type=actor.transition_type,
            ),
            return_id=return_id,
        )

    async def reject_return(self, return_id: str, reason: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.REJECT_RETURN,
            actor,
            lambda agg, now: return_engine.reject_return(
                agg.order, agg.ret, reason=reason, now=now, transition_type=actor.transition_type
            ),
            return_id=return_id,
        )

    async def mark_return_in_transit(self, return_id: str, tracking_number: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.MARK_RETURN_IN_TRANSIT,
            actor,
            lambda agg, now: return_engine.mark_return_in_transit(
                agg.order,
                agg.ret,
                tracking_number=tracking_number,
                now=now,
                transition_type=actor.transition_type,
            ),
            return_id=return_id,
        )

    async def confirm_return_receipt(
        self,
        return_id: str,
        tracking_number: str,
        inspection_notes: str | None,
        actor: Actor,
    ) -> Aggregate:
        return await self._execute(
            Command.CONFIRM_RETURN_RECEIPT,
            actor,
            lambda agg, now: return_engine.confirm_return_receipt(
                agg.order,
                agg.ret,
                tracking_number=tracking_number,
                inspection_notes=inspection_notes,
                now=now,
                transition_type=actor.transition_type,
            ),
            return_id=return_id,
        )

    async def record_inspection(
        self,
        return_id: str,
        notes: str,
        outcome: InspectionOutcome,
        actor: Actor,
    ) -> Aggregate:
        return await self._execute(
            Command.RECORD_INSPECTION,
            actor,
            lambda agg, now: return_engine.record_inspection(
                agg.order,
                agg.ret,
                notes=notes,
                outcome=outcome,
                now=now,
                transition_type=actor.transition_type,
            ),
            return_id=return_id,
        )

    async def cancel_return(self, return_id: str, reason: str, actor: Actor) -> Aggregate:
        return await self._execute(
            Command.CANCEL_RETURN,
            actor,
            lambda agg, now: return_engine.cancel_return(
                agg.order, agg.ret, reason=reason, now=now, transition_type=actor.transition_type
            ),
            return_id=return_id,
        )

    async def process_refund(self, return_id: str, method: RefundMethod, actor: Actor) -> Aggregate:
        started = await self._execute(
            Command.PROCESS_REFUND,
            actor,
            lambda agg, now: return_engine.begin_refund(agg.order, agg.ret, method=method, now=now),
            return_id=return_id,
        )

        try:
            await self.reconciler.refund_buyer(started.order, started.ret)
        except ExternalCapabilityFailure as e:
            logger.error("REFUND_FAILED return=%s order=%s error=%s", return_id, started.order.id, e.message)
            await self._execute(
                Command.PROCESS_REFUND,
                actor,
                lambda agg, now: return_engine.fail_refund(agg.order, agg.ret, error=e.message, now=now),
                return_id=return_id,
            )
            raise

        return await self._execute(
            Command.PROCESS_REFUND,
            actor,
            lambda agg, now: return_engine.complete_refund(
                agg.order, agg.ret, now=now, transition_type=actor.transition_type
            ),
            return_id=return_id,
        )

    # =====================================================
    # PAYOUT
    # =====================================================

    async def _settle_quietly(self, order_id: str, actor: Actor):
        try:
            await self.reconcile(order_id, actor)
        except (ExternalCapabilityFailure, ConcurrencyConflict) as e:
            # left retryable: the claimed transfer stays on the order with payout_error recorded
            logger.warning("SETTLEMENT_DEFERRED order=%s error=%s", order_id, e.message)

    async def reconcile(self, order_id: str, actor: Actor = SYSTEM_ACTOR) -> Aggregate:
        """Recompute the payout decision and move money when it calls for it."""
        agg = await self._claim_transfer(order_id, actor)
        if agg.order.pending_transfer is None:
            return agg
        return await self._finish_transfer(agg, actor)

    async def _claim_transfer(self, order_id: str, actor: Actor) -> Aggregate:
        for attempt in range(1, self.max_retries + 1):
            agg = await self.store.load(order_id)
            order = agg.order
            if order.pending_transfer is not None:
                return agg

            now = self.clock()
            decision = self.reconciler.decide(order, agg.ret, now)
            transfer = self.reconciler.plan(order, decision, now)
            events: list[DomainEvent] = []
            if transfer is not None:
                updated = self._apply_payout(
                    order, PayoutStatus.PROCESSING, decision, now, events, pending_transfer=transfer
                )
            else:
                updated = self._apply_payout(order, decision.status, decision, now, events)
            if updated is order:
                return agg

            try:
                committed = await self.store.commit(agg, updated)
            except ConcurrencyConflict:
                logger.warning("CONCURRENCY_CONFLICT command=reconcile order=%s attempt=%s", order_id, attempt)
                continue

            if transfer is not None:
                logger.info("TRANSFER_CLAIMED order=%s reference=%s amount=%s",
                            order_id, transfer.reference, transfer.amount_cents)
            await self._publish(committed.order, Outcome(order=committed.order, events=events), actor)
            return Aggregate(order=committed.order, ret=agg.ret, returns=agg.returns)

        raise ConcurrencyConflict(
            f"reconcile gave up after {self.max_retries} conflicting attempts",
            order_id=order_id,
        )

    async def _finish_transfer(self, agg: Aggregate, actor: Actor) -> Aggregate:
        """Runs the order's claimed transfer and records it against the freshest state."""
        order_id = agg.order.id
        transfer = agg.order.pending_transfer

        try:
            result = await self.reconciler.execute(agg.order, transfer)
        except ExternalCapabilityFailure as e:
            await self._record_transfer_failure(order_id, transfer, e, actor)
            raise

        for attempt in range(1, self.max_retries + 1):
            fresh = await self.store.load(order_id)
            order = fresh.order
            if order.pending_transfer is None or order.pending_transfer.reference != transfer.reference:
                # recorded by a concurrent settle
                return fresh

            now = self.clock()
            if transfer.kind == TransferKind.RELEASE:
                amounts = {"released_cents": order.released_cents + transfer.amount_cents, "paid_at": now}
            else:
                amounts = {"reversed_cents": order.reversed_cents + transfer.amount_cents}
            settled = order.model_copy(update={
                **amounts,
                "pending_transfer": None,
                "payout_error": None,
                "updated_at": now,
            })

            decision = self.reconciler.decide(settled, fresh.ret, now)
            events = [DomainEvent("PayoutTransfer", {
                "kind": transfer.kind.value,
                "amount_cents": transfer.amount_cents,
                "reference": result.get("reference"),
                "transfer_id": result.get("transfer_id"),
            })]
            updated = self._apply_payout(settled, decision.status, decision, now, events)

            try:
                committed = await self.store.commit(fresh, updated)
            except ConcurrencyConflict:
                logger.warning("CONCURRENCY_CONFLICT command=settle order=%s attempt=%s", order_id, attempt)
                continue

            await self._publish(committed.order, Outcome(order=committed.order, events=events), actor)
            return Aggregate(order=committed.order, ret=fresh.ret, returns=fresh.returns)

        raise ConcurrencyConflict(
            f"settling {transfer.reference} gave up after {self.max_retries} conflicting attempts",
            order_id=order_id,
        )

    async def _record_transfer_failure(
        self,
        order_id: str,
        transfer: PendingTransfer,
        error: ExternalCapabilityFailure,
        actor: Actor,
    ):
        for _ in range(self.max_retries):
            fresh = await self.store.load(order_id)
            order = fresh.order
            if order.pending_transfer is None or order.pending_transfer.reference != transfer.reference:
                return

            now = self.clock()
            updated = order.model_copy(update={"payout_error": error.message, "updated_at": now})
            try:
                committed = await self.store.commit(fresh, updated)
            except ConcurrencyConflict:
                continue

            events = [DomainEvent("PayoutFailed", {"reference": transfer.reference, "error": error.message})]
            await self._publish(committed.order, Outcome(order=committed.order, events=events), actor)
            return

    async def admin_reverse_payout(self, order_id: str, reason: str, actor: Actor) -> Aggregate:
        """Claws back from the seller what was paid out beyond the payable amount."""
        cleaned = require_text(reason, "reason")

        for attempt in range(1, self.max_retries + 1):
            agg = await self.store.load(order_id)
            order = agg.order

            pending = order.pending_transfer
            if pending is not None:
                finished = await self._finish_transfer(agg, actor)
                if pending.kind == TransferKind.CLAWBACK:
                    # an earlier reversal was claimed but not settled
                    await self._audit_reversal(actor, order_id, pending)
                    return finished
                continue

            if order.payout_status != PayoutStatus.PAID:
                raise InvalidTransition(
                    f"Payout is {order.payout_status.value}; only paid payouts can be reversed",
                    payout_status=order.payout_status.value,
                )

            overpaid = order.overpaid_cents
            if overpaid <= 0:
                raise PolicyViolation(
                    "Seller holds no more than the payable amount; nothing to claw back",
                    released_cents=order.released_cents,
                    reversed_cents=order.reversed_cents,
                    payable_cents=order.payable_cents,
                )

            now = self.clock()
            transfer = self.reconciler.plan_clawback(order, overpaid, cleaned, now)
            claimed = order.model_copy(update={"pending_transfer": transfer, "updated_at": now})

            try:
                committed = await self.store.commit(agg, claimed)
            except ConcurrencyConflict:
                logger.warning("CONCURRENCY_CONFLICT command=admin_reverse order=%s attempt=%s", order_id, attempt)
                continue

            finished = await self._finish_transfer(
                Aggregate(order=committed.order, ret=agg.ret, returns=agg.returns),
                actor,
            )
            await self._audit_reversal(actor, order_id, transfer)
            return finished

        raise ConcurrencyConflict(
            f"admin reversal gave up after {self.max_retries} conflicting attempts",
            order_id=order_id,
        )

    async def _audit_reversal(self, actor: Actor, order_id: str, transfer: PendingTransfer):
        await log_audit(
            self.db,
            actor_id=actor.id,
            actor_role=actor.role,
            action="PAYOUT_REVERSED",
            order_id=order_id,
            metadata={
                "amount_cents": transfer.amount_cents,
                "reference": transfer.reference,
                "reason": transfer.reason,
            },
        )

    # =====================================================
    # READS
    # =====================================================

    async def order_with_returns(self, order_id: str) -> tuple[Order, list[ReturnRequest]]:
        agg = await self.store.load(order_id)
        return agg.order, sorted(agg.returns, key=lambda r: r.requested_at)
