from fastapi import APIRouter, Depends

from schemas import NodeListResponse, TopEarnersResponse
from services import Services, get_services

router = APIRouter(
    prefix="/api/nodes",
    tags=["Nodes"]
)


# 🧩 Rentable nodes (upstream catalog, or synthesized from the registry)
@router.get("", response_model=NodeListResponse)
def list_nodes(services: Services = Depends(get_services)):
    return {"nodes": [n.public_dict() for n in services.rentals.nodes()]}


# 🧩 Top earning nodes for the guest view
@router.get("/top-earners", response_model=TopEarnersResponse)
def top_earners(services: Services = Depends(get_services)):
    return {"topEarners": services.catalog.top_earners()}
