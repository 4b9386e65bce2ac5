from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    RETURNED = "returned"


class DeliveryStatus(str, Enum):
    NOT_SHIPPED = "not_shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class PayoutStatus(str, Enum):
    IN_ESCROW = "in_escrow"
    PROCESSING = "processing"
    PAID = "paid"
    REVERSED = "reversed"


class TransferKind(str, Enum):
    RELEASE = "release"
    CANCEL = "cancel"
    CLAWBACK = "clawback"


class PendingTransfer(BaseModel):
    """Money movement claimed on the order before the gateway is called."""

    kind: TransferKind
    reference: str
    amount_cents: int = Field(..., gt=0)
    reason: str = ""
    requested_at: datetime


class Order(BaseModel):
    id: str

    # immutable references
    buyer_id: str
    seller_id: str
    listing_id: str

    quantity: int = Field(1, ge=1)
    amount_cents: int = Field(..., ge=0)
    currency: str = "INR"
    funds_captured: bool = True

    order_status: OrderStatus = OrderStatus.PENDING
    delivery_status: DeliveryStatus = DeliveryStatus.NOT_SHIPPED
    payout_status: PayoutStatus = PayoutStatus.IN_ESCROW

    # logistics
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    # returns
    active_return_id: Optional[str] = None
    returned_quantity: int = 0
    refunded_cents: int = 0

    # payout bookkeeping
    released_cents: int = 0
    reversed_cents: int = 0
    settlement_required: bool = False
    pending_transfer: Optional[PendingTransfer] = None
    payout_error: Optional[str] = None
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None

    # optimistic concurrency token for the order + returns aggregate
    version: int = 0

    @property
    def payable_cents(self) -> int:
        return max(self.amount_cents - self.refunded_cents, 0)

    @property
    def seller_net_cents(self) -> int:
        """What the seller still holds after releases and clawbacks."""
        return self.released_cents - self.reversed_cents

    @property
    def overpaid_cents(self) -> int:
        return max(self.seller_net_cents - self.payable_cents, 0) if self.released_cents else 0


# -----------------------------
# COMMAND PAYLOADS
# -----------------------------

class PlaceOrderPayload(BaseModel):
    seller_id: str = Field(..., min_length=1)
    listing_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    amount_cents: int = Field(..., ge=0)
    currency: str = Field("INR", min_length=3, max_length=3)
    funds_captured: bool = True


class MarkShippedPayload(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[date] = None


class CancelOrderPayload(BaseModel):
    reason: str = ""


class AdminReversePayload(BaseModel):
    reason: str = ""
