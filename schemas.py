# --- schemas.py (Pydantic v2) ---

from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, model_validator

from fees import format_price, from_units, parse_price, to_units


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =====================================================
# ===============  NODES  ==============================
# =====================================================
class NodeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SYNCING = "SYNCING"
    PENDING = "PENDING"
    OFFLINE = "OFFLINE"


class Node(CamelModel):
    id: str
    name: str
    gpus: str
    vram: str
    status: NodeStatus = NodeStatus.ACTIVE
    utilization: int = 0
    bandwidth: str = ""
    latency_ms: int = Field(0, alias="latencyMs")
    is_genesis: bool = Field(False, alias="isGenesis")
    rented_by: Optional[str] = Field(None, alias="rentedBy")
    gateway: Optional[str] = None
    port: Optional[int] = None
    miner_wallet_address: str = Field(..., alias="minerWalletAddress")
    price_units: int = Field(..., alias="priceUnits")
    price_per_hour: str = Field(..., alias="pricePerHour")

    @model_validator(mode="before")
    @classmethod
    def _fill_price(cls, data):
        # Upstream records carry priceInUSDT and/or pricePerHour; derive the
        # integer amount once, here.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("priceUnits") is None and data.get("price_units") is None:
            if data.get("priceInUSDT") is not None:
                data["priceUnits"] = to_units(data["priceInUSDT"])
            elif data.get("pricePerHour") or data.get("price_per_hour"):
                data["priceUnits"] = parse_price(data.get("pricePerHour") or data.get("price_per_hour"))
        units = data.get("priceUnits", data.get("price_units"))
        if units is not None and not (data.get("pricePerHour") or data.get("price_per_hour")):
            data["pricePerHour"] = format_price(units)
        return data

    @property
    def price_in_usdt(self) -> float:
        return float(from_units(self.price_units))

    @property
    def has_connection(self) -> bool:
        return self.gateway is not None and self.port is not None

    def public_dict(self) -> dict:
        out = self.model_dump(by_alias=True, mode="json")
        out["priceInUSDT"] = self.price_in_usdt
        return out


class NodeListResponse(BaseModel):
    nodes: List[dict]


class TopEarnerRow(BaseModel):
    name: str
    runtime: str
    unitPrice: str
    totalRevenue: str


class TopEarnersResponse(BaseModel):
    topEarners: List[TopEarnerRow]


# =====================================================
# ===============  DEPLOY / ASSIGNMENT =================
# =====================================================
class AssignRequest(CamelModel):
    node_id: str = Field(..., alias="nodeId", min_length=1)
    renter_wallet_address: str = Field(..., alias="renterWalletAddress", min_length=1)
    transaction_signature: str = Field(..., alias="transactionSignature", min_length=1)


class AssignResponse(BaseModel):
    gateway: str
    port: int


class ReleaseRequest(CamelModel):
    node_id: str = Field(..., alias="nodeId", min_length=1)
    renter_wallet_address: str = Field(..., alias="renterWalletAddress", min_length=1)


# =====================================================
# ===============  RENTALS =============================
# =====================================================
class DeployConfirmRequest(CamelModel):
    # False models the wallet popup being dismissed
    approve_signature: bool = Field(True, alias="approveSignature")


class RentalOutcomeOut(CamelModel):
    node_id: str = Field(..., alias="nodeId")
    phase: str
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None
    transaction_reference: Optional[str] = Field(None, alias="transactionReference")
    gateway: Optional[str] = None
    port: Optional[int] = None


class RentalPhaseOut(CamelModel):
    node_id: str = Field(..., alias="nodeId")
    phase: str
    cancellable: bool
    node: dict


# =====================================================
# ===============  MINER INTAKE ========================
# =====================================================
class MinerRegisterRequest(CamelModel):
    wallet_address: str = Field(..., alias="walletAddress")
    price_per_hour: Optional[str] = Field(None, alias="pricePerHour")
    bandwidth: Optional[str] = None
    gpu_model: Optional[str] = Field(None, alias="gpuModel")
    vram: Optional[str] = None
    gateway: Optional[str] = None


class MinerRegisterResponse(BaseModel):
    nodeId: str
    status: str
    message: str
    frpConfigInstructions: str


class MinerNodeUpdate(CamelModel):
    wallet_address: str = Field(..., alias="walletAddress")
    price_per_hour: Optional[str] = Field(None, alias="pricePerHour")
    bandwidth: Optional[str] = None


class PriceRangeOut(BaseModel):
    gpus: str
    min: float
    max: float


# =====================================================
# ===============  WALLET ==============================
# =====================================================
class WalletConnectResponse(BaseModel):
    address: str
    access_token: str
    token_type: str = "bearer"


class AirdropRequest(BaseModel):
    # human token amount, e.g. 10.5 USDT
    amount: float = Field(..., gt=0)
    lamports: int = Field(10_000_000, ge=0)


class WalletBalanceOut(BaseModel):
    address: str
    token_account: Optional[str]
    token_balance: float
    token_units: int
    lamports: int


# =====================================================
# ===============  TREASURY ============================
# =====================================================
class TreasurySummary(BaseModel):
    treasuryAddress: str
    mint: str
    network: str
    feeRateBps: int
    balance: float
    totalFeesCollected: float
    feeBearingDeploys: int
    lastFeeAt: Optional[datetime] = None
