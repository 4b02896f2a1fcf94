from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from auth import get_current_wallet, get_optional_wallet
from errors import ConnectionRequired, status_for
from fees import from_units
from rental import NON_CANCELLABLE
from schemas import DeployConfirmRequest, RentalOutcomeOut, RentalPhaseOut
from services import Services, get_services
from wallet import DeclinedSigner

router = APIRouter(
    prefix="/rentals",
    tags=["Rentals"]
)


def _phase_view(services: Services, node_id: str) -> dict:
    node = services.rentals.node(node_id)
    phase = services.rentals.phase(node_id)
    return RentalPhaseOut(
        node_id=node_id,
        phase=phase.value,
        cancellable=phase not in NON_CANCELLABLE,
        node=node.public_dict(),
    ).model_dump(by_alias=True)


def _outcome_response(outcome) -> JSONResponse:
    body = RentalOutcomeOut(**outcome.to_dict()).model_dump(by_alias=True)
    return JSONResponse(status_code=200 if outcome.ok else status_for(outcome.error), content=body)


# 🧩 Nodes rented by the connected wallet
@router.get("/mine", response_model=List[dict])
def my_rentals(wallet: str = Depends(get_current_wallet), services: Services = Depends(get_services)):
    return [n.public_dict() for n in services.rentals.rented_by(wallet)]


# 🧩 Current phase of a node
@router.get("/{node_id}")
def rental_phase(node_id: str, services: Services = Depends(get_services)):
    return _phase_view(services, node_id)


# 🧩 Start a deploy: returns the confirm step with the fee split
@router.post("/{node_id}/deploy")
def begin_deploy(node_id: str, wallet: Optional[str] = Depends(get_optional_wallet),
                 services: Services = Depends(get_services)):
    services.rentals.begin_deploy(node_id, wallet)
    view = _phase_view(services, node_id)
    node = services.rentals.node(node_id)
    split = services.payments.quote(node)
    decimals = services.settings.TOKEN_DECIMALS
    view["quote"] = {
        "price": float(from_units(split.total, decimals)),
        "minerShare": float(from_units(split.miner_share, decimals)),
        "treasuryShare": float(from_units(split.treasury_share, decimals)),
        "feeRateBps": services.settings.PROTOCOL_FEE_BPS,
    }
    return view


# 🧩 Confirm the deploy: pay, then assign
@router.post("/{node_id}/confirm")
def confirm_deploy(node_id: str, body: Optional[DeployConfirmRequest] = None,
                   wallet: str = Depends(get_current_wallet), services: Services = Depends(get_services)):
    signer = services.wallets.get(wallet)
    if signer is None:
        raise ConnectionRequired("This wallet session has no signer; reconnect your wallet")
    if body is not None and not body.approve_signature:
        signer = DeclinedSigner(wallet)
    return _outcome_response(services.rentals.confirm_deploy(node_id, signer))


# 🧩 Close the confirm dialog (refused once payment is under way)
@router.post("/{node_id}/cancel")
def cancel(node_id: str, wallet: str = Depends(get_current_wallet),
           services: Services = Depends(get_services)):
    services.rentals.cancel(node_id, wallet)
    return _phase_view(services, node_id)


# 🧩 Start an undeploy
@router.post("/{node_id}/undeploy")
def begin_undeploy(node_id: str, wallet: Optional[str] = Depends(get_optional_wallet),
                   services: Services = Depends(get_services)):
    services.rentals.begin_undeploy(node_id, wallet)
    return _phase_view(services, node_id)


# 🧩 Confirm the undeploy
@router.post("/{node_id}/confirm-undeploy")
def confirm_undeploy(node_id: str, wallet: str = Depends(get_current_wallet),
                     services: Services = Depends(get_services)):
    return _outcome_response(services.rentals.confirm_undeploy(node_id, wallet))
