from fastapi import APIRouter, Depends, HTTPException, Query

from fees import from_units
from registry import PENDING_VERIFICATION
from schemas import MinerNodeUpdate, MinerRegisterRequest, MinerRegisterResponse, PriceRangeOut
from services import Services, get_services
from wallet import is_valid_address

router = APIRouter(
    prefix="/api/miner",
    tags=["Miner"]
)

PENDING_MESSAGE = (
    "Node created. Connect your FRP client to complete verification. The node will appear "
    "in Node Command Center (ACTIVE) only after the backend confirms physical link and FRP handshake."
)
FRP_INSTRUCTIONS = (
    "1) Download FRP client from the link below. 2) Use the config token provided by the backend. "
    "3) Run frpc; the backend will detect the connection and mark this node as verified."
)


# 🧩 Register a miner: takes the first free node slot
@router.post("/register", response_model=MinerRegisterResponse, status_code=201)
def register_miner(body: MinerRegisterRequest, services: Services = Depends(get_services)):
    if not is_valid_address(body.wallet_address):
        raise HTTPException(status_code=400, detail="walletAddress is required")

    # slot claim + MinerRegistration row ek hi DB transaction me
    node_id = services.registry.register(
        body.wallet_address,
        body.price_per_hour,
        body.bandwidth,
        details={"gpu_model": body.gpu_model, "vram": body.vram, "gateway": body.gateway},
    )
    services.catalog.invalidate()

    return {
        "nodeId": node_id,
        "status": PENDING_VERIFICATION,
        "message": PENDING_MESSAGE,
        "frpConfigInstructions": FRP_INSTRUCTIONS,
    }


# 🧩 Price hint for the miner form
@router.get("/price-range", response_model=PriceRangeOut)
def price_range(gpus: str = Query(...), services: Services = Depends(get_services)):
    found = services.registry.price_range_for_gpu(gpus)
    if found is None:
        raise HTTPException(status_code=404, detail="No registered nodes with this GPU")
    low, high = found
    return {"gpus": gpus, "min": float(from_units(low)), "max": float(from_units(high))}


# 🧩 Nodes owned by a miner wallet
@router.get("/{wallet_address}/nodes")
def miner_nodes(wallet_address: str, services: Services = Depends(get_services)):
    registry = services.registry
    return [
        {
            "nodeId": node_id,
            "pricePerHour": registry.price(node_id),
            "bandwidth": registry.bandwidth(node_id),
            "rentedBy": registry.renter(node_id),
        }
        for node_id in registry.get_nodes_for_owner(wallet_address)
    ]


# 🧩 Owner updates price / bandwidth
@router.put("/nodes/{node_id}")
def update_miner_node(node_id: str, body: MinerNodeUpdate, services: Services = Depends(get_services)):
    registry = services.registry
    if body.price_per_hour is not None:
        registry.set_price(node_id, body.wallet_address, body.price_per_hour)
    if body.bandwidth is not None:
        registry.set_bandwidth(node_id, body.wallet_address, body.bandwidth)
    services.catalog.invalidate()
    return {
        "nodeId": node_id,
        "pricePerHour": registry.price(node_id),
        "bandwidth": registry.bandwidth(node_id),
    }
