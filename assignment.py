# assignment.py
import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Tuple

import requests
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import AssignmentRejected, NotFound, RentalError, UpstreamUnavailable
from fees import split_payment, PROTOCOL_FEE_BPS
from ledger import LedgerClient, TransferRecord
from models import NodeActivityLog, Rental
from wallet import is_valid_address

logger = logging.getLogger("neurogrid.assignment")

DEFAULT_GATEWAY_DOMAIN = "ngrid.xyz"


# =====================================================
# SERVER SIDE
# =====================================================
class AssignmentService:
    def __init__(self, session_factory, ledger: LedgerClient, node_lookup: Callable, treasury: str, mint: str,
                 fee_bps: int = PROTOCOL_FEE_BPS, gateway_template: Optional[str] = None,
                 fixed_port: Optional[int] = None, port_range: Tuple[int, int] = (7000, 7999)):
        self.session_factory = session_factory
        self.ledger = ledger
        self.node_lookup = node_lookup
        self.treasury = treasury
        self.mint = mint
        self.fee_bps = fee_bps
        self.gateway_template = gateway_template
        self.fixed_port = fixed_port
        self.port_range = port_range
        self._lock = threading.Lock()

    def gateway_for(self, node_id: str) -> str:
        compact = node_id.replace("-", "")
        if self.gateway_template:
            return self.gateway_template.replace("{nodeId}", compact)
        return f"{compact}.{DEFAULT_GATEWAY_DOMAIN}"

    def assign(self, node_id: str, renter: str, signature: str) -> dict:
        if not is_valid_address(renter):
            raise AssignmentRejected("Invalid renter wallet address")
        node = self.node_lookup(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found")

        split = self._verify_payment(node, renter, signature)

        with self._lock, self.session_factory() as db:
            if db.query(Rental).filter(Rental.transaction_signature == signature).first():
                raise AssignmentRejected("Transaction has already been used for a rental")
            active = db.query(Rental).filter(Rental.node_id == node_id, Rental.is_active == True).first()
            if active is not None:
                raise AssignmentRejected(f"Node {node_id} is already rented")

            port = self._allocate_port(db)
            rental = Rental(
                node_id=node_id,
                renter=renter,
                miner=node.miner_wallet_address,
                transaction_signature=signature,
                price_units=split.total,
                miner_share=split.miner_share,
                treasury_share=split.treasury_share,
                gateway=self.gateway_for(node_id),
                port=port,
                is_active=True,
            )
            db.add(rental)
            db.add(NodeActivityLog(node_id=node_id, event_type="assigned",
                                   message=f"Rented by {renter} (tx {signature})"))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise AssignmentRejected("Transaction has already been used for a rental")
            logger.info("Node %s assigned to %s on %s:%d (tx %s)", node_id, renter, rental.gateway, port, signature)
            return {"gateway": rental.gateway, "port": port}

    def release(self, node_id: str, renter: str) -> bool:
        with self._lock, self.session_factory() as db:
            rental = (
                db.query(Rental)
                .filter(Rental.node_id == node_id, Rental.renter == renter, Rental.is_active == True)
                .first()
            )
            if rental is None:
                return False
            rental.is_active = False
            rental.ended_at = datetime.utcnow()
            db.add(NodeActivityLog(node_id=node_id, event_type="released", message=f"Released by {renter}"))
            db.commit()
            logger.info("Node %s released by %s", node_id, renter)
            return True

    def active_rental(self, node_id: str) -> Optional[dict]:
        with self.session_factory() as db:
            rental = db.query(Rental).filter(Rental.node_id == node_id, Rental.is_active == True).first()
            if rental is None:
                return None
            return {"renterWalletAddress": rental.renter, "gateway": rental.gateway, "port": rental.port}

    def _verify_payment(self, node, renter, signature):
        tx = self.ledger.get_transaction(signature)
        if tx is None or tx.status not in ("confirmed", "finalized"):
            raise AssignmentRejected("Transaction not found or not confirmed")
        if tx.fee_payer != renter:
            raise AssignmentRejected("Transaction was not paid by this renter")

        split = split_payment(node.price_units, self.fee_bps)
        payer_ata = self.ledger.token_account_address(renter, self.mint)
        expected = [TransferRecord(payer_ata, self.ledger.token_account_address(node.miner_wallet_address, self.mint),
                                   renter, self.mint, split.miner_share)]
        if split.treasury_share > 0:
            expected.append(TransferRecord(payer_ata, self.ledger.token_account_address(self.treasury, self.mint),
                                           renter, self.mint, split.treasury_share))
        if sorted(tx.transfers, key=repr) != sorted(expected, key=repr):
            raise AssignmentRejected("Transaction does not carry the expected miner/treasury split")
        return split

    def _allocate_port(self, db) -> int:
        if self.fixed_port:
            return self.fixed_port
        used = {p for (p,) in db.query(Rental.port).filter(Rental.is_active == True).all()}
        low, high = self.port_range
        for port in range(low, high + 1):
            if port not in used:
                return port
        raise AssignmentRejected("No free gateway ports")


# =====================================================
# CLIENTS
# =====================================================
class AssignmentClient:
    def assign(self, node_id: str, renter: str, signature: str) -> Tuple[str, int]:
        raise NotImplementedError

    def release(self, node_id: str, renter: str) -> None:
        raise NotImplementedError

    def lookup(self, node_id: str) -> Optional[Tuple[str, str, int]]:
        """(renter, gateway, port) of the active rental on a node, if any."""
        raise NotImplementedError


def _coordinates(data) -> Tuple[str, int]:
    gateway = data.get("gateway") if isinstance(data, dict) else None
    port = data.get("port") if isinstance(data, dict) else None
    if not isinstance(gateway, str) or not gateway:
        raise AssignmentRejected("Assignment response has no gateway")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise AssignmentRejected("Assignment response has no valid port")
    return gateway, port


class LocalAssignmentClient(AssignmentClient):
    def __init__(self, service: AssignmentService):
        self.service = service

    def assign(self, node_id, renter, signature):
        try:
            return _coordinates(self.service.assign(node_id, renter, signature))
        except AssignmentRejected:
            raise
        except RentalError as e:
            raise AssignmentRejected(e.message)
        except SQLAlchemyError as e:
            logger.exception("Assignment storage failed")
            raise UpstreamUnavailable(f"Assignment service storage error: {e.__class__.__name__}")

    def release(self, node_id, renter):
        try:
            self.service.release(node_id, renter)
        except SQLAlchemyError as e:
            logger.exception("Release storage failed")
            raise UpstreamUnavailable(f"Assignment service storage error: {e.__class__.__name__}")

    def lookup(self, node_id):
        try:
            rental = self.service.active_rental(node_id)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"Assignment service storage error: {e.__class__.__name__}")
        if rental is None:
            return None
        return rental["renterWalletAddress"], rental["gateway"], rental["port"]


class HttpAssignmentClient(AssignmentClient):
    """POSTs to ``{base_url}/assign`` and ``{base_url}/release``."""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def _post(self, path: str, payload: dict):
        try:
            res = self.http.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Assignment service unreachable: {e.__class__.__name__}")
        if res.status_code >= 500:
            raise UpstreamUnavailable(f"Assignment service error {res.status_code}")
        try:
            data = res.json()
        except ValueError:
            data = {}
        if res.status_code >= 400:
            detail = data.get("detail") or data.get("error") if isinstance(data, dict) else None
            raise AssignmentRejected(str(detail) if detail else f"Assignment refused ({res.status_code})")
        return data

    def assign(self, node_id, renter, signature):
        data = self._post("/assign", {
            "nodeId": node_id,
            "renterWalletAddress": renter,
            "transactionSignature": signature,
        })
        return _coordinates(data)

    def release(self, node_id, renter):
        self._post("/release", {"nodeId": node_id, "renterWalletAddress": renter})

    def lookup(self, node_id):
        try:
            res = self.http.get(f"{self.base_url}/rentals/{node_id}", timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Assignment service unreachable: {e.__class__.__name__}")
        if res.status_code == 404:
            return None
        if not res.ok:
            raise UpstreamUnavailable(f"Assignment service error {res.status_code}")
        try:
            data = res.json()
        except ValueError:
            raise UpstreamUnavailable("Assignment service returned invalid JSON")
        gateway, port = _coordinates(data)
        return data.get("renterWalletAddress"), gateway, port
