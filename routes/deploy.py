from fastapi import APIRouter, Depends, HTTPException

from schemas import AssignRequest, AssignResponse, ReleaseRequest
from services import Services, get_services

router = APIRouter(
    prefix="/api/deploy",
    tags=["Deploy"]
)


# 🧩 Assign a paid node (called only after the split payment confirmed)
@router.post("/assign", response_model=AssignResponse)
def assign_node(body: AssignRequest, services: Services = Depends(get_services)):
    return services.assignment_service.assign(
        body.node_id, body.renter_wallet_address, body.transaction_signature
    )


# 🧩 Release a rented node
@router.post("/release")
def release_node(body: ReleaseRequest, services: Services = Depends(get_services)):
    released = services.assignment_service.release(body.node_id, body.renter_wallet_address)
    return {"released": released}


# 🧩 Active rental for a node (used to restore connection details)
@router.get("/rentals/{node_id}")
def active_rental(node_id: str, services: Services = Depends(get_services)):
    rental = services.assignment_service.active_rental(node_id)
    if rental is None:
        raise HTTPException(status_code=404, detail="No active rental for this node")
    return rental
