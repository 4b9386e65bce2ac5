import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", 30))

# =====================================================
# SECRETS
# =====================================================
DELIVERY_WEBHOOK_SECRET = os.getenv("DELIVERY_WEBHOOK_SECRET")

# =====================================================
# PAYMENT GATEWAY (ESCROW)
# =====================================================
PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "escrow")
ESCROW_GATEWAY_URL = os.getenv("ESCROW_GATEWAY_URL", "https://api.escrow.local/v1")
ESCROW_GATEWAY_KEY_ID = os.getenv("ESCROW_GATEWAY_KEY_ID")
ESCROW_GATEWAY_KEY_SECRET = os.getenv("ESCROW_GATEWAY_KEY_SECRET")
ESCROW_GATEWAY_TIMEOUT_SECONDS = int(os.getenv("ESCROW_GATEWAY_TIMEOUT_SECONDS", 20))

# =====================================================
# ESCROW / RETURNS
# =====================================================
ESCROW_HOLD_DAYS = int(os.getenv("ESCROW_HOLD_DAYS", 7))
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", 7))
INSPECTION_DAYS = int(os.getenv("INSPECTION_DAYS", 3))
SELLER_ACTION_HOURS = int(os.getenv("SELLER_ACTION_HOURS", 48))

# =====================================================
# CONCURRENCY
# =====================================================
MAX_CONFLICT_RETRIES = int(os.getenv("MAX_CONFLICT_RETRIES", 3))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "DELIVERY_WEBHOOK_SECRET": DELIVERY_WEBHOOK_SECRET,
        "ESCROW_GATEWAY_KEY_ID": ESCROW_GATEWAY_KEY_ID,
        "ESCROW_GATEWAY_KEY_SECRET": ESCROW_GATEWAY_KEY_SECRET,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
