from fastapi import APIRouter, Depends

from auth import create_wallet_token, get_current_wallet
from fees import from_units, to_units
from schemas import AirdropRequest, WalletBalanceOut, WalletConnectResponse
from services import Services, get_services

router = APIRouter(
    prefix="/wallet",
    tags=["Wallet"]
)


def _balance(services: Services, address: str) -> dict:
    ledger = services.ledger
    token_address = ledger.token_account_address(address, services.settings.TOKEN_MINT)
    account = ledger.get_token_account(token_address)
    units = account.amount if account else 0
    return {
        "address": address,
        "token_account": token_address if account else None,
        "token_balance": float(from_units(units, services.settings.TOKEN_DECIMALS)),
        "token_units": units,
        "lamports": ledger.get_native_balance(address),
    }


# 🧩 Connect: creates a demo wallet and a session token for it
@router.post("/connect", response_model=WalletConnectResponse)
def connect_wallet(services: Services = Depends(get_services)):
    wallet = services.wallets.create()
    return {"address": wallet.address, "access_token": create_wallet_token(wallet.address), "token_type": "bearer"}


# 🧩 Demo faucet (wallet top-up)
@router.post("/airdrop", response_model=WalletBalanceOut)
def airdrop(data: AirdropRequest, wallet: str = Depends(get_current_wallet),
            services: Services = Depends(get_services)):
    units = to_units(data.amount, services.settings.TOKEN_DECIMALS)
    services.ledger.airdrop(wallet, services.settings.TOKEN_MINT, token_units=units, lamports=data.lamports)
    return _balance(services, wallet)


@router.get("/balance", response_model=WalletBalanceOut)
def wallet_balance(wallet: str = Depends(get_current_wallet), services: Services = Depends(get_services)):
    return _balance(services, wallet)
