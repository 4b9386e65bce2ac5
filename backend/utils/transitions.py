"""
Transition table shared by the order ledger and the return workflow.

Legality is a plain lookup keyed by (entity, current state, command).
Nothing here touches storage: callers evaluate against the state they
just re-read and persist the result themselves.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Type, Union

from models.order import Order, OrderStatus
from models.return_request import ReturnRequest, ReturnStatus
from utils.errors import FulfillmentError, InvalidTransition, ValidationError


class Entity(str, Enum):
    ORDER = "order"
    RETURN = "return_request"


class Command(str, Enum):
    CONFIRM_ORDER = "ConfirmOrder"
    MARK_PROCESSING = "MarkProcessing"
    MARK_SHIPPED = "MarkShipped"
    CONFIRM_DELIVERY = "ConfirmDelivery"
    CANCEL_ORDER = "CancelOrder"
    COMPLETE_RETURN = "CompleteReturn"

    REQUEST_RETURN = "RequestReturn"
    APPROVE_RETURN = "ApproveReturn"
    REJECT_RETURN = "RejectReturn"
    MARK_RETURN_IN_TRANSIT = "MarkReturnInTransit"
    CONFIRM_RETURN_RECEIPT = "ConfirmReturnReceipt"
    RECORD_INSPECTION = "RecordInspection"
    PROCESS_REFUND = "ProcessRefund"
    CANCEL_RETURN = "CancelReturn"


class TransitionType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SYSTEM = "system"


O = OrderStatus
R = ReturnStatus

TRANSITIONS = {
    # ---------------- ORDER ----------------
    (Entity.ORDER, O.PENDING, Command.CONFIRM_ORDER): O.CONFIRMED,
    (Entity.ORDER, O.CONFIRMED, Command.MARK_PROCESSING): O.PROCESSING,
    (Entity.ORDER, O.PROCESSING, Command.MARK_SHIPPED): O.SHIPPED,
    (Entity.ORDER, O.SHIPPED, Command.CONFIRM_DELIVERY): O.DELIVERED,
    (Entity.ORDER, O.PENDING, Command.CANCEL_ORDER): O.CANCELED,
    (Entity.ORDER, O.CONFIRMED, Command.CANCEL_ORDER): O.CANCELED,
    (Entity.ORDER, O.PROCESSING, Command.CANCEL_ORDER): O.CANCELED,
    (Entity.ORDER, O.DELIVERED, Command.COMPLETE_RETURN): O.RETURNED,

    # ---------------- RETURN ----------------
    (Entity.RETURN, None, Command.REQUEST_RETURN): R.REQUESTED,
    (Entity.RETURN, R.REQUESTED, Command.APPROVE_RETURN): R.APPROVED,
    (Entity.RETURN, R.REQUESTED, Command.REJECT_RETURN): R.REJECTED,
    (Entity.RETURN, R.APPROVED, Command.MARK_RETURN_IN_TRANSIT): R.IN_TRANSIT,
    (Entity.RETURN, R.IN_TRANSIT, Command.CONFIRM_RETURN_RECEIPT): R.RECEIVED,
    (Entity.RETURN, R.RECEIVED, Command.RECORD_INSPECTION): R.INSPECTED,
    (Entity.RETURN, R.INSPECTED, Command.PROCESS_REFUND): R.COMPLETED,
    (Entity.RETURN, R.REQUESTED, Command.CANCEL_RETURN): R.CANCELED,
    (Entity.RETURN, R.APPROVED, Command.CANCEL_RETURN): R.CANCELED,
}

TERMINAL_STATES = {
    Entity.ORDER: frozenset({O.CANCELED, O.RETURNED}),
    Entity.RETURN: frozenset({R.REJECTED, R.COMPLETED, R.CANCELED}),
}

# every command lands in exactly one state
COMMAND_TARGETS = {
    (entity, command): target
    for (entity, _, command), target in TRANSITIONS.items()
}


@dataclass(frozen=True)
class Accepted:
    next_state: Enum
    noop: bool = False


@dataclass(frozen=True)
class Rejected:
    kind: Type[FulfillmentError]
    reason: str


def evaluate(entity: Entity, current: Optional[Enum], command: Command) -> Union[Accepted, Rejected]:
    target = TRANSITIONS.get((entity, current, command))
    if target is not None:
        return Accepted(target)

    if current in TERMINAL_STATES[entity]:
        return Rejected(
            InvalidTransition,
            f"{entity.value} is {current.value} (terminal); {command.value} not accepted",
        )

    # Re-issuing a command whose target is the current state is a no-op success
    if current is not None and COMMAND_TARGETS.get((entity, command)) == current:
        return Accepted(current, noop=True)

    state = current.value if current is not None else "absent"
    return Rejected(InvalidTransition, f"{command.value} not allowed when {entity.value} is {state}")


def require_transition(entity: Entity, current: Optional[Enum], command: Command) -> Accepted:
    decision = evaluate(entity, current, command)
    if isinstance(decision, Rejected):
        raise decision.kind(
            decision.reason,
            entity=entity.value,
            state=current.value if current is not None else None,
            command=command.value,
        )
    return decision


def allowed_commands(entity: Entity, current: Optional[Enum]) -> list[Command]:
    return [cmd for (ent, state, cmd) in TRANSITIONS if ent == entity and state == current]


def require_text(value: Optional[str], field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field_name} is required", field=field_name)
    return cleaned


# -----------------------------
# TRANSITION RESULTS
# -----------------------------

@dataclass
class StateChange:
    entity: Entity
    entity_id: str
    from_state: Optional[str]
    to_state: str
    command: Command
    transition_type: TransitionType = TransitionType.MANUAL
    reason: Optional[str] = None


@dataclass
class DomainEvent:
    name: str
    metadata: dict = field(default_factory=dict)


@dataclass
class Outcome:
    """Result of applying one command to an aggregate, before it is persisted."""

    order: Order
    ret: Optional[ReturnRequest] = None
    new_return: bool = False
    noop: bool = False
    changes: list[StateChange] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)

    def record(self, change: StateChange, event: Optional[str] = None, **metadata):
        self.changes.append(change)
        if event:
            self.events.append(DomainEvent(event, metadata))
