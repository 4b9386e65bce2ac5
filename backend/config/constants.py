# backend/config/constants.py

from config.env import (
    ESCROW_HOLD_DAYS,
    RETURN_WINDOW_DAYS,
    INSPECTION_DAYS,
    SELLER_ACTION_HOURS,
)

# -----------------------------
# ESCROW
# -----------------------------

PAYOUT_HOLD_DAYS = ESCROW_HOLD_DAYS

# -----------------------------
# RETURN POLICY DEFAULTS
# (used when a seller never saved a policy)
# -----------------------------

DEFAULT_RETURN_POLICY = {
    "return_window_days": RETURN_WINDOW_DAYS,
    "refund_percentage": 100,
    "condition_required": "unused",
    "original_packaging_required": False,
    "return_shipping_paid": False,
    "enable_returns": True,
    "auto_approve_returns": False,
    "require_image_proof": False,
    "require_inspection": True,
    "inspection_days": INSPECTION_DAYS,
}

RETURN_SELLER_ACTION_HOURS = SELLER_ACTION_HOURS

# -----------------------------
# PAYLOAD LIMITS
# -----------------------------

MAX_REASON_DESCRIPTION_LENGTH = 500
MAX_RETURN_IMAGES = 10

# Rejection reason written by the return deadline worker
SELLER_DEADLINE_REJECTION_REASON = "seller_action_deadline_elapsed"
