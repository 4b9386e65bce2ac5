from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from config.constants import MAX_REASON_DESCRIPTION_LENGTH, MAX_RETURN_IMAGES
from models.return_policy import ReturnPolicy


class ReturnReason(str, Enum):
    DEFECTIVE = "defective"
    DAMAGED = "damaged"
    NOT_AS_DESCRIBED = "not_as_described"
    UNWANTED = "unwanted"
    TOO_SMALL = "too_small"
    TOO_LARGE = "too_large"
    COLOR_MISMATCH = "color_mismatch"
    WRONG_ITEM = "wrong_item"
    OTHER = "other"


class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    INSPECTED = "inspected"
    COMPLETED = "completed"
    CANCELED = "canceled"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELED = "canceled"


class RefundMethod(str, Enum):
    ORIGINAL_PAYMENT = "original_payment"
    STORE_CREDIT = "store_credit"


class InspectionOutcome(str, Enum):
    VALID = "valid"
    REJECTED = "rejected"


TERMINAL_RETURN_STATUSES = frozenset({
    ReturnStatus.REJECTED,
    ReturnStatus.COMPLETED,
    ReturnStatus.CANCELED,
})


class ReturnRequest(BaseModel):
    id: str
    order_id: str
    buyer_id: str
    seller_id: str
    rma_number: str

    reason: ReturnReason
    reason_description: str = ""
    image_urls: List[str] = Field(default_factory=list)
    quantity: int = Field(..., ge=1)

    status: ReturnStatus = ReturnStatus.REQUESTED
    refund_status: RefundStatus = RefundStatus.PENDING

    original_amount: int = Field(..., ge=0)
    refund_amount: Optional[int] = None
    refund_method: Optional[RefundMethod] = None
    refund_error: Optional[str] = None

    # policy as it stood when the buyer asked
    policy: ReturnPolicy

    return_label: Optional[str] = None
    return_tracking_number: Optional[str] = None
    shipment_tracking_number: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    inspection_notes: Optional[str] = None
    inspection_outcome: Optional[InspectionOutcome] = None

    requested_at: datetime
    seller_action_deadline: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    inspection_due_at: Optional[datetime] = None
    inspected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    updated_at: datetime

    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RETURN_STATUSES


# -----------------------------
# COMMAND PAYLOADS
# -----------------------------

class RequestReturnPayload(BaseModel):
    reason: ReturnReason
    reason_description: str = Field("", max_length=MAX_REASON_DESCRIPTION_LENGTH)
    quantity: int = Field(1, ge=1)
    image_urls: List[str] = Field(default_factory=list, max_length=MAX_RETURN_IMAGES)


class ApproveReturnPayload(BaseModel):
    return_label: Optional[str] = None
    return_tracking_number: Optional[str] = None


class RejectReturnPayload(BaseModel):
    reason: str = ""


class ReturnShipmentPayload(BaseModel):
    tracking_number: str = ""


class ReturnReceiptPayload(BaseModel):
    tracking_number: str = ""
    inspection_notes: Optional[str] = None


class InspectionPayload(BaseModel):
    notes: str = ""
    outcome: InspectionOutcome


class ProcessRefundPayload(BaseModel):
    method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT


class CancelReturnPayload(BaseModel):
    reason: str = ""
