"""
Payout reconciliation.

`decide_payout` is a pure function of the persisted order and its active
return; it keeps no state of its own, so recomputing after a crash is
always safe. `PayoutReconciler` performs the money movements a decision
calls for, through the payment gateway, guarded by idempotency keys.
Each movement is first claimed on the order as its `pending_transfer`
and recorded when the gateway answers, whatever else changed meanwhile.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config.constants import PAYOUT_HOLD_DAYS
from models.order import Order, OrderStatus, PayoutStatus, PendingTransfer, TransferKind
from models.return_request import ReturnRequest, ReturnStatus
from utils.errors import ConcurrencyConflict, ExternalCapabilityFailure
from utils.idempotency import (
    complete_idempotency_key,
    fail_idempotency_key,
    is_in_progress,
    reserve_idempotency_key,
)
from utils.wallet_service import (
    ENTRY_BUYER_REFUND,
    ENTRY_CANCEL_REVERSAL,
    ENTRY_PAYOUT_CLAWBACK,
    ENTRY_PAYOUT_RELEASE,
    add_ledger_entry,
)

logger = logging.getLogger(__name__)

SETTLED_ORDER_STATUSES = {OrderStatus.DELIVERED, OrderStatus.RETURNED}


@dataclass(frozen=True)
class PayoutDecision:
    status: PayoutStatus
    release_cents: int = 0
    reverse_cents: int = 0
    settlement_required: bool = False
    reason: str = ""

    @property
    def moves_money(self) -> bool:
        return self.release_cents > 0 or self.reverse_cents > 0


def _after_release(order: Order, active: Optional[ReturnRequest]) -> PayoutDecision:
    # money already left escrow; returns from here on are settled by an admin
    approved = active is not None and active.status != ReturnStatus.REQUESTED
    overpaid = order.overpaid_cents
    if order.seller_net_cents <= 0:
        return PayoutDecision(PayoutStatus.REVERSED, reason="clawed back")
    if overpaid > 0:
        reason = "seller overpaid"
    elif approved:
        reason = "return approved after payout"
    else:
        reason = "paid"
    return PayoutDecision(
        PayoutStatus.PAID,
        settlement_required=overpaid > 0 or approved,
        reason=reason,
    )


def decide_payout(
    order: Order,
    active_return: Optional[ReturnRequest],
    *,
    now: datetime,
    hold: timedelta,
) -> PayoutDecision:
    active = active_return if active_return is not None and not active_return.is_terminal else None

    if order.pending_transfer is not None:
        # a claimed transfer is finished before anything new is decided
        return PayoutDecision(
            order.payout_status,
            settlement_required=order.settlement_required,
            reason="transfer pending",
        )

    if order.order_status == OrderStatus.CANCELED:
        if not order.funds_captured:
            return PayoutDecision(PayoutStatus.IN_ESCROW, reason="canceled before capture")
        outstanding = order.amount_cents - order.reversed_cents
        return PayoutDecision(
            PayoutStatus.REVERSED,
            reverse_cents=max(outstanding, 0),
            reason="order canceled",
        )

    if order.released_cents > 0:
        return _after_release(order, active)

    if order.order_status not in SETTLED_ORDER_STATUSES or order.delivered_at is None:
        return PayoutDecision(PayoutStatus.IN_ESCROW, reason="awaiting delivery")

    if active is not None:
        return PayoutDecision(PayoutStatus.IN_ESCROW, reason="return in progress")

    payable = order.payable_cents
    if payable == 0:
        # refunds already returned the whole amount to the buyer
        return PayoutDecision(PayoutStatus.REVERSED, reason="fully refunded")

    if now >= order.delivered_at + hold:
        return PayoutDecision(PayoutStatus.PAID, release_cents=payable, reason="hold elapsed")

    return PayoutDecision(PayoutStatus.PROCESSING, reason="hold window")


def provisional_status(decision: PayoutDecision) -> PayoutStatus:
    """Status a command may persist before the money movement has actually happened."""
    return PayoutStatus.PROCESSING if decision.moves_money else decision.status


class PayoutReconciler:

    def __init__(self, db, gateway, *, hold: timedelta | None = None):
        self.db = db
        self.gateway = gateway
        self.hold = hold if hold is not None else timedelta(days=PAYOUT_HOLD_DAYS)

    def decide(self, order: Order, active_return: Optional[ReturnRequest], now: datetime) -> PayoutDecision:
        return decide_payout(order, active_return, now=now, hold=self.hold)

    def plan(self, order: Order, decision: PayoutDecision, now: datetime) -> Optional[PendingTransfer]:
        """The transfer a decision calls for, to be claimed on the order before it runs."""
        if decision.release_cents:
            kind, amount = TransferKind.RELEASE, decision.release_cents
        elif decision.reverse_cents:
            kind, amount = TransferKind.CANCEL, decision.reverse_cents
        else:
            return None
        return PendingTransfer(
            kind=kind,
            reference=f"{order.id}:{kind.value}",
            amount_cents=amount,
            reason=decision.reason,
            requested_at=now,
        )

    def plan_clawback(self, order: Order, amount_cents: int, reason: str, now: datetime) -> PendingTransfer:
        # keyed by the clawed-back total this brings the order to
        total = order.reversed_cents + amount_cents
        return PendingTransfer(
            kind=TransferKind.CLAWBACK,
            reference=f"{order.id}:clawback:{total}",
            amount_cents=amount_cents,
            reason=reason,
            requested_at=now,
        )

    async def execute(self, order: Order, transfer: PendingTransfer) -> dict:
        if transfer.kind == TransferKind.RELEASE:
            return await self.release(order, transfer.amount_cents, reference=transfer.reference)
        if transfer.kind == TransferKind.CANCEL:
            return await self.reverse_canceled(order, transfer.amount_cents, reference=transfer.reference)
        return await self.claw_back(order, transfer.amount_cents, reference=transfer.reference)

    async def _move(
        self,
        *,
        scope: str,
        reference: str,
        order: Order,
        call,
        entry_type: str,
        credit: int = 0,
        debit: int = 0,
        reason_code: str,
    ) -> dict:
        existing = await reserve_idempotency_key(db=self.db, key=reference, scope=scope)
        if is_in_progress(existing):
            raise ConcurrencyConflict("Money movement already in progress", reference=reference)
        if existing:
            logger.info("GATEWAY_REPLAY reference=%s", reference)
            return existing

        try:
            result = await call()
        except ExternalCapabilityFailure as e:
            await fail_idempotency_key(db=self.db, key=reference, scope=scope, error=e.message)
            raise

        await add_ledger_entry(
            self.db,
            order.seller_id,
            entry_type,
            credit=credit,
            debit=debit,
            order_id=order.id,
            reason_code=reason_code,
            reference=reference,
        )
        await complete_idempotency_key(db=self.db, key=reference, scope=scope, response=result)
        logger.info("GATEWAY_%s order=%s reference=%s", entry_type, order.id, reference)
        return result

    async def release(self, order: Order, amount_cents: int, *, reference: str | None = None) -> dict:
        reference = reference or f"{order.id}:release"
        return await self._move(
            scope="payout_release",
            reference=reference,
            order=order,
            call=lambda: self.gateway.release_funds(
                order_id=order.id,
                amount_cents=amount_cents,
                currency=order.currency,
                reference=reference,
            ),
            entry_type=ENTRY_PAYOUT_RELEASE,
            credit=amount_cents,
            reason_code="ESCROW_RELEASED",
        )

    async def reverse_canceled(self, order: Order, amount_cents: int, *, reference: str | None = None) -> dict:
        reference = reference or f"{order.id}:cancel"
        return await self._move(
            scope="payout_reversal",
            reference=reference,
            order=order,
            call=lambda: self.gateway.reverse_funds(
                order_id=order.id,
                amount_cents=amount_cents,
                currency=order.currency,
                reference=reference,
            ),
            entry_type=ENTRY_CANCEL_REVERSAL,
            debit=amount_cents,
            reason_code="ORDER_CANCELED",
        )

    async def refund_buyer(self, order: Order, ret: ReturnRequest) -> dict:
        reference = f"{order.id}:refund:{ret.id}"
        amount = ret.refund_amount or 0
        if amount == 0:
            # nothing to send back; the inspection rejected the refund
            return {"reference": reference, "transfer_id": None, "transfer_status": "skipped"}
        return await self._move(
            scope="refund",
            reference=reference,
            order=order,
            call=lambda: self.gateway.reverse_funds(
                order_id=order.id,
                amount_cents=amount,
                currency=order.currency,
                reference=reference,
            ),
            entry_type=ENTRY_BUYER_REFUND,
            debit=amount,
            reason_code=f"RETURN_{ret.reason.value.upper()}",
        )

    async def claw_back(self, order: Order, amount_cents: int, *, reference: str) -> dict:
        return await self._move(
            scope="payout_clawback",
            reference=reference,
            order=order,
            call=lambda: self.gateway.reverse_funds(
                order_id=order.id,
                amount_cents=amount_cents,
                currency=order.currency,
                reference=reference,
                source="seller",
            ),
            entry_type=ENTRY_PAYOUT_CLAWBACK,
            debit=amount_cents,
            reason_code="ADMIN_REVERSAL",
        )
