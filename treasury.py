# treasury.py
from sqlalchemy import func

from fees import from_units
from ledger import derive_token_account
from models import LedgerTransaction, LedgerTransfer, TokenAccount


def treasury_summary(db, treasury: str, mint: str, network: str, fee_bps: int, decimals: int) -> dict:
    """Read-only view of protocol fees held by the treasury."""
    address = derive_token_account(treasury, mint)
    account = db.get(TokenAccount, address)
    balance = int(account.amount) if account else 0

    total, count = (
        db.query(func.coalesce(func.sum(LedgerTransfer.amount), 0), func.count(LedgerTransfer.id))
        .filter(LedgerTransfer.destination == address, LedgerTransfer.mint == mint)
        .one()
    )
    last_fee_at = (
        db.query(func.max(LedgerTransaction.timestamp))
        .join(LedgerTransfer, LedgerTransfer.signature == LedgerTransaction.signature)
        .filter(LedgerTransfer.destination == address)
        .scalar()
    )
    return {
        "treasuryAddress": treasury,
        "mint": mint,
        "network": network,
        "feeRateBps": fee_bps,
        "balance": float(from_units(balance, decimals)),
        "totalFeesCollected": float(from_units(int(total), decimals)),
        "feeBearingDeploys": int(count),
        "lastFeeAt": last_fee_at,
    }
