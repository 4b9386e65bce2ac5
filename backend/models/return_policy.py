from pydantic import BaseModel, Field

from config.constants import DEFAULT_RETURN_POLICY


class ReturnPolicy(BaseModel):
    """
    Seller-scoped return configuration.
    Read-only input for the return workflow; snapshotted onto each
    ReturnRequest when it is created.
    """

    return_window_days: int = Field(DEFAULT_RETURN_POLICY["return_window_days"], ge=0)
    refund_percentage: int = Field(DEFAULT_RETURN_POLICY["refund_percentage"], ge=0, le=100)
    condition_required: str = DEFAULT_RETURN_POLICY["condition_required"]
    original_packaging_required: bool = DEFAULT_RETURN_POLICY["original_packaging_required"]
    return_shipping_paid: bool = DEFAULT_RETURN_POLICY["return_shipping_paid"]
    enable_returns: bool = DEFAULT_RETURN_POLICY["enable_returns"]
    auto_approve_returns: bool = DEFAULT_RETURN_POLICY["auto_approve_returns"]
    require_image_proof: bool = DEFAULT_RETURN_POLICY["require_image_proof"]
    require_inspection: bool = DEFAULT_RETURN_POLICY["require_inspection"]
    inspection_days: int = Field(DEFAULT_RETURN_POLICY["inspection_days"], ge=0)

    @property
    def finalizes_on_approval(self) -> bool:
        # refund can be fixed at approval only when nobody inspects the item
        return self.auto_approve_returns and not self.require_inspection
