"""
Wallet API Routes

Division balances, transfers and epoch minting.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import NotFoundError
from ..services.audit import audited_action
from ..services.ledger import WalletLedger
from .scheduler import verify_internal_key


router = APIRouter(prefix="/wallets", tags=["wallets"])

ADMIN_ROLE = "admin"


class TransferRequest(BaseModel):
    """Request model for an SC transfer."""
    model_config = ConfigDict(extra="forbid")

    from_wallet_id: str
    to_wallet_id: str
    amount: float
    memo: Optional[str] = None


@router.get("/division/{division}", response_model=dict)
async def get_division_wallet(
    division: str,
    db: Session = Depends(get_db),
):
    """Balance of a division wallet."""
    ledger = WalletLedger(db)
    wallet = ledger.get_division_wallet(division)
    if not wallet:
        raise NotFoundError(f"Wallet not found for division {division}")
    return ledger.get_balance(wallet.id)


@router.post("/transfer", response_model=dict)
async def transfer(
    request: TransferRequest,
    x_sc_role: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Atomic transfer between two wallets.

    Amounts above the transfer limit need the admin role, asserted by the
    fronting gateway in the X-SC-Role header.
    """
    with audited_action(db, "wallet.transfer"):
        result = WalletLedger(db).transfer(
            request.from_wallet_id,
            request.to_wallet_id,
            request.amount,
            memo=request.memo,
            is_admin=x_sc_role == ADMIN_ROLE,
        )
    return result


@router.post("/mint-epoch", response_model=dict)
async def mint_epoch(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Mint today's emission. Idempotent per day."""
    with audited_action(db, "wallet.mint_epoch", division="system"):
        result = WalletLedger(db).mint_epoch()
    return result
