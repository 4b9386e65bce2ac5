"""
Return workflow.

Every function takes the current Order and ReturnRequest (as just read
from storage) and returns an Outcome describing the new state of both.
Steps that a policy collapses (auto approval, inspection skipped) are
applied one after another so every intermediate state and timestamp is
still written.
"""

from datetime import datetime, timedelta
from typing import Optional

from models.order import Order, OrderStatus
from models.return_policy import ReturnPolicy
from models.return_request import (
    InspectionOutcome,
    RefundMethod,
    RefundStatus,
    RequestReturnPayload,
    ReturnReason,
    ReturnRequest,
    ReturnStatus,
)
from config.constants import RETURN_SELLER_ACTION_HOURS
from utils.errors import InvalidTransition, PolicyViolation, ValidationError
from utils.order_ledger import complete_return
from utils.transitions import (
    Command,
    DomainEvent,
    Entity,
    Outcome,
    StateChange,
    TransitionType,
    require_text,
    require_transition,
)

RETURN_EVENTS = {
    Command.REQUEST_RETURN: "ReturnRequested",
    Command.APPROVE_RETURN: "ReturnApproved",
    Command.REJECT_RETURN: "ReturnRejected",
    Command.MARK_RETURN_IN_TRANSIT: "ReturnInTransit",
    Command.CONFIRM_RETURN_RECEIPT: "ReturnReceived",
    Command.RECORD_INSPECTION: "ReturnInspected",
    Command.PROCESS_REFUND: "RefundCompleted",
    Command.CANCEL_RETURN: "ReturnCanceled",
}


def compute_refund_amount(
    original_amount: int,
    refund_percentage: int,
    quantity: int,
    ordered_quantity: int,
) -> int:
    """min(original, pct/100 * original * qty/ordered), floored to whole cents."""
    if ordered_quantity <= 0:
        return 0
    share = (original_amount * refund_percentage * quantity) // (100 * ordered_quantity)
    return max(0, min(original_amount, share))


def generate_rma_number(order_id: str, now: datetime) -> str:
    return f"RMA-{int(now.timestamp() * 1000)}-{order_id[:8].upper()}"


def _refund_for(ret: ReturnRequest, order: Order) -> int:
    return compute_refund_amount(
        ret.original_amount,
        ret.policy.refund_percentage,
        ret.quantity,
        order.quantity,
    )


def _step(
    outcome: Outcome,
    command: Command,
    *,
    now: datetime,
    transition_type: TransitionType,
    reason: Optional[str] = None,
    updates=None,
) -> Outcome:
    """Apply one return transition on top of an outcome (which may already hold earlier steps)."""
    ret = outcome.ret
    decision = require_transition(Entity.RETURN, ret.status, command)
    if decision.noop:
        if not outcome.changes and not outcome.new_return:
            outcome.noop = True
        return outcome

    fields = updates() if callable(updates) else (updates or {})
    outcome.ret = ret.model_copy(update={
        "status": decision.next_state,
        "updated_at": now,
        **fields,
    })
    outcome.noop = False
    outcome.record(
        StateChange(
            entity=Entity.RETURN,
            entity_id=ret.id,
            from_state=ret.status.value,
            to_state=decision.next_state.value,
            command=command,
            transition_type=transition_type,
            reason=reason,
        ),
        RETURN_EVENTS[command],
        return_id=ret.id,
        rma_number=ret.rma_number,
        status=decision.next_state.value,
    )
    return outcome


def _release_active_return(outcome: Outcome, now: datetime):
    if outcome.order.active_return_id == outcome.ret.id:
        outcome.order = outcome.order.model_copy(update={
            "active_return_id": None,
            "updated_at": now,
        })


# ======================================================
# REQUEST
# ======================================================

def request_return(
    order: Order,
    active_return: Optional[ReturnRequest],
    policy: ReturnPolicy,
    payload: RequestReturnPayload,
    *,
    return_id: str,
    buyer_id: str,
    now: datetime,
) -> Outcome:
    require_transition(Entity.RETURN, None, Command.REQUEST_RETURN)

    if order.order_status != OrderStatus.DELIVERED or order.delivered_at is None:
        raise PolicyViolation(
            "Returns are accepted only for delivered orders",
            order_status=order.order_status.value,
        )

    if not policy.enable_returns:
        raise PolicyViolation("Seller does not accept returns")

    if active_return is not None and not active_return.is_terminal:
        raise InvalidTransition(
            "An active return already exists for this order",
            return_id=active_return.id,
            return_status=active_return.status.value,
        )

    window_closes_at = order.delivered_at + timedelta(days=policy.return_window_days)
    if now > window_closes_at:
        raise PolicyViolation(
            "Return window expired",
            window_closed_at=window_closes_at.isoformat(),
        )

    available = order.quantity - order.returned_quantity
    if payload.quantity > available:
        raise PolicyViolation(
            f"Return quantity exceeds returnable quantity ({available})",
            returnable_quantity=available,
        )

    description = (payload.reason_description or "").strip()
    if payload.reason == ReturnReason.OTHER and not description:
        raise ValidationError(
            "reason_description is required when reason is 'other'",
            field="reason_description",
        )

    image_urls = [url.strip() for url in payload.image_urls if url and url.strip()]
    if policy.require_image_proof and not image_urls:
        raise ValidationError("Image proof is required by the seller's return policy", field="image_urls")

    ret = ReturnRequest(
        id=return_id,
        order_id=order.id,
        buyer_id=buyer_id,
        seller_id=order.seller_id,
        rma_number=generate_rma_number(order.id, now),
        reason=payload.reason,
        reason_description=description,
        image_urls=image_urls,
        quantity=payload.quantity,
        status=ReturnStatus.REQUESTED,
        refund_status=RefundStatus.PENDING,
        original_amount=order.amount_cents,
        policy=policy.model_copy(),
        requested_at=now,
        seller_action_deadline=now + timedelta(hours=RETURN_SELLER_ACTION_HOURS),
        updated_at=now,
    )

    outcome = Outcome(
        order=order.model_copy(update={"active_return_id": ret.id, "updated_at": now}),
        ret=ret,
        new_return=True,
    )
    outcome.record(
        StateChange(
            entity=Entity.RETURN,
            entity_id=ret.id,
            from_state=None,
            to_state=ReturnStatus.REQUESTED.value,
            command=Command.REQUEST_RETURN,
        ),
        RETURN_EVENTS[Command.REQUEST_RETURN],
        return_id=ret.id,
        rma_number=ret.rma_number,
        reason=ret.reason.value,
        quantity=ret.quantity,
    )

    if policy.auto_approve_returns:
        _approve(outcome, order, None, None, now=now, transition_type=TransitionType.AUTOMATIC)

    return outcome


# ======================================================
# SELLER DECISION
# ======================================================

def _approve(outcome, order, return_label, return_tracking_number, *, now, transition_type):
    ret = outcome.ret

    def updates():
        fields = {
            "approved_at": now,
            "return_label": (return_label or "").strip() or None,
            "return_tracking_number": (return_tracking_number or "").strip() or None,
        }
        if ret.policy.finalizes_on_approval:
            fields["refund_amount"] = _refund_for(ret, order)
        return fields

    return _step(
        outcome,
        Command.APPROVE_RETURN,
        now=now,
        transition_type=transition_type,
        updates=updates,
    )


def approve_return(
    order: Order,
    ret: ReturnRequest,
    *,
    return_label: Optional[str] = None,
    return_tracking_number: Optional[str] = None,
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)
    return _approve(
        outcome,
        order,
        return_label,
        return_tracking_number,
        now=now,
        transition_type=transition_type,
    )


def reject_return(
    order: Order,
    ret: ReturnRequest,
    *,
    reason: Optional[str],
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)
    cleaned = (reason or "").strip()
    _step(
        outcome,
        Command.REJECT_RETURN,
        now=now,
        transition_type=transition_type,
        reason=cleaned or None,
        updates=lambda: {
            "rejection_reason": require_text(reason, "reason"),
            "rejected_at": now,
            "refund_status": RefundStatus.CANCELED,
        },
    )
    if not outcome.noop:
        _release_active_return(outcome, now)
    return outcome


def cancel_return(
    order: Order,
    ret: ReturnRequest,
    *,
    reason: Optional[str],
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)
    cleaned = (reason or "").strip()
    _step(
        outcome,
        Command.CANCEL_RETURN,
        now=now,
        transition_type=transition_type,
        reason=cleaned or None,
        updates=lambda: {
            "cancel_reason": require_text(reason, "reason"),
            "canceled_at": now,
            "refund_status": RefundStatus.CANCELED,
        },
    )
    if not outcome.noop:
        _release_active_return(outcome, now)
    return outcome


# ======================================================
# LOGISTICS
# ======================================================

def mark_return_in_transit(
    order: Order,
    ret: ReturnRequest,
    *,
    tracking_number: Optional[str],
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)

    def updates():
        tracking = require_text(tracking_number, "tracking_number")
        if ret.return_tracking_number and tracking != ret.return_tracking_number:
            raise ValidationError(
                "tracking_number does not match the issued return label",
                field="tracking_number",
            )
        return {"shipment_tracking_number": tracking, "shipped_at": now}

    return _step(
        outcome,
        Command.MARK_RETURN_IN_TRANSIT,
        now=now,
        transition_type=transition_type,
        updates=updates,
    )


def _inspect(outcome, order, *, notes, result, now, transition_type):
    ret = outcome.ret

    def updates():
        if (
            result == InspectionOutcome.REJECTED
            and ret.inspection_due_at is not None
            and now > ret.inspection_due_at
        ):
            raise PolicyViolation(
                "Inspection window elapsed; the return can no longer be rejected at inspection",
                inspection_due_at=ret.inspection_due_at.isoformat(),
            )
        refund = 0 if result == InspectionOutcome.REJECTED else _refund_for(ret, order)
        fields = {
            "inspected_at": now,
            "inspection_outcome": result,
            "refund_amount": refund,
        }
        if notes:
            fields["inspection_notes"] = notes
        return fields

    return _step(
        outcome,
        Command.RECORD_INSPECTION,
        now=now,
        transition_type=transition_type,
        updates=updates,
    )


def confirm_return_receipt(
    order: Order,
    ret: ReturnRequest,
    *,
    tracking_number: Optional[str],
    inspection_notes: Optional[str] = None,
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)

    def updates():
        tracking = require_text(tracking_number, "tracking_number")
        if ret.shipment_tracking_number and tracking != ret.shipment_tracking_number:
            raise ValidationError(
                "tracking_number does not match the return shipment",
                field="tracking_number",
            )
        fields = {
            "received_at": now,
            "inspection_due_at": now + timedelta(days=ret.policy.inspection_days),
        }
        if inspection_notes:
            fields["inspection_notes"] = inspection_notes.strip()
        return fields

    _step(
        outcome,
        Command.CONFIRM_RETURN_RECEIPT,
        now=now,
        transition_type=transition_type,
        updates=updates,
    )

    if not outcome.noop and not ret.policy.require_inspection:
        _inspect(
            outcome,
            order,
            notes=None,
            result=InspectionOutcome.VALID,
            now=now,
            transition_type=TransitionType.AUTOMATIC,
        )
    return outcome


def record_inspection(
    order: Order,
    ret: ReturnRequest,
    *,
    notes: Optional[str],
    outcome: InspectionOutcome,
    now: datetime,
    transition_type=TransitionType.MANUAL,
) -> Outcome:
    result = Outcome(order=order, ret=ret)
    return _inspect(
        result,
        order,
        notes=(notes or "").strip() or None,
        result=outcome,
        now=now,
        transition_type=transition_type,
    )


# ======================================================
# REFUND
# ======================================================

def begin_refund(
    order: Order,
    ret: ReturnRequest,
    *,
    method: RefundMethod,
    now: datetime,
) -> Outcome:
    """Marks the refund as in flight; the return stays inspected until money has moved."""
    require_transition(Entity.RETURN, ret.status, Command.PROCESS_REFUND)
    if ret.refund_amount is None:
        raise PolicyViolation("Refund amount has not been finalized")

    outcome = Outcome(order=order, ret=ret)
    if ret.refund_status == RefundStatus.PROCESSING and ret.refund_method == method:
        # resumed after a crash between this write and the gateway call
        outcome.noop = True
        return outcome

    outcome.ret = ret.model_copy(update={
        "refund_status": RefundStatus.PROCESSING,
        "refund_method": method,
        "refund_error": None,
        "updated_at": now,
    })
    outcome.events.append(DomainEvent("RefundProcessing", {
        "return_id": ret.id,
        "refund_amount": ret.refund_amount,
        "method": method.value,
    }))
    return outcome


def fail_refund(order: Order, ret: ReturnRequest, *, error: str, now: datetime) -> Outcome:
    require_transition(Entity.RETURN, ret.status, Command.PROCESS_REFUND)
    outcome = Outcome(order=order, ret=ret.model_copy(update={
        "refund_status": RefundStatus.FAILED,
        "refund_error": error,
        "updated_at": now,
    }))
    outcome.events.append(DomainEvent("RefundFailed", {"return_id": ret.id, "error": error}))
    return outcome


def complete_refund(
    order: Order,
    ret: ReturnRequest,
    *,
    now: datetime,
    transition_type=TransitionType.SYSTEM,
) -> Outcome:
    outcome = Outcome(order=order, ret=ret)
    _step(
        outcome,
        Command.PROCESS_REFUND,
        now=now,
        transition_type=transition_type,
        updates={
            "refund_status": RefundStatus.COMPLETED,
            "completed_at": now,
            "refund_error": None,
        },
    )
    if outcome.noop:
        return outcome

    outcome.events[-1].metadata["refund_amount"] = ret.refund_amount
    # units rejected at inspection were not accepted back
    accepted = 0 if ret.inspection_outcome == InspectionOutcome.REJECTED else ret.quantity
    outcome.order = outcome.order.model_copy(update={
        "refunded_cents": order.refunded_cents + (ret.refund_amount or 0),
        "returned_quantity": order.returned_quantity + accepted,
        "updated_at": now,
    })
    _release_active_return(outcome, now)

    if outcome.order.returned_quantity >= outcome.order.quantity:
        returned = complete_return(outcome.order, now=now)
        outcome.order = returned.order
        outcome.changes.extend(returned.changes)
        outcome.events.extend(returned.events)

    return outcome
