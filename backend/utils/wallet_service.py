from datetime import datetime

# ==============================
# Ledger entry types (ENUM-LIKE)
# ==============================

ENTRY_PAYOUT_RELEASE = "PAYOUT_RELEASE"
ENTRY_PAYOUT_CLAWBACK = "PAYOUT_CLAWBACK"
ENTRY_BUYER_REFUND = "BUYER_REFUND"
ENTRY_CANCEL_REVERSAL = "CANCEL_REVERSAL"

# Seller wallet vs money that never left escrow
ACCOUNT_SELLER = "seller"
ACCOUNT_ESCROW = "escrow"

ENTRY_ACCOUNTS = {
    ENTRY_PAYOUT_RELEASE: ACCOUNT_SELLER,
    ENTRY_PAYOUT_CLAWBACK: ACCOUNT_SELLER,
    ENTRY_BUYER_REFUND: ACCOUNT_ESCROW,
    ENTRY_CANCEL_REVERSAL: ACCOUNT_ESCROW,
}


# ==============================
# Core: Append-only ledger write
# ==============================

async def add_ledger_entry(
    db,
    seller_id: str,
    entry_type: str,
    credit: int = 0,
    debit: int = 0,
    order_id: str | None = None,
    reason_code: str | None = None,
    reference: str | None = None,
):
    if credit < 0 or debit < 0:
        raise ValueError("Credit/Debit cannot be negative")

    entry = {
        "seller_id": seller_id,
        "order_id": order_id,
        "account": ENTRY_ACCOUNTS.get(entry_type, ACCOUNT_SELLER),
        "entry_type": entry_type,
        "credit": credit,
        "debit": debit,
        "reason_code": reason_code,
        "reference": reference,
        "created_at": datetime.utcnow(),
    }

    await db.wallet_ledger.insert_one(entry)
    return entry


# ==============================
# Wallet balance (derived only)
# ==============================

async def get_wallet_balance(db, seller_id: str) -> int:
    pipeline = [
        {"$match": {"seller_id": seller_id, "account": ACCOUNT_SELLER}},
        {"$group": {
            "_id": None,
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    result = await db.wallet_ledger.aggregate(pipeline).to_list(1)
    if not result:
        return 0

    return result[0]["credit"] - result[0]["debit"]


async def get_order_ledger(db, order_id: str) -> list[dict]:
    return await db.wallet_ledger.find(
        {"order_id": order_id},
        {"_id": 0},
    ).sort("created_at", 1).to_list(None)
