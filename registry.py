# registry.py
import copy
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from errors import InvalidNodeState, InvalidPrice, NoSlotAvailable, NotFound
from fees import parse_price
from models import MinerRegistration, NodeActivityLog

logger = logging.getLogger("neurogrid.registry")

# Node ids that can be registered as miners (same pool as the node cluster)
REGISTRABLE_NODE_IDS = (
    "alpha-01",
    "beta-07",
    "gamma-12",
    "delta-03",
    "epsilon-09",
    "zeta-15",
    "eta-22",
    "theta-08",
    "iota-11",
    "kappa-04",
)

NODE_GPU_MAP = {
    "alpha-01": "1x RTX4090",
    "beta-07": "1x RTX4090",
    "gamma-12": "4x A100",
    "delta-03": "2x H100",
    "epsilon-09": "1x RTX4090",
    "zeta-15": "2x A100",
    "eta-22": "4x H100",
    "theta-08": "1x RTX4090",
    "iota-11": "2x RTX4090",
    "kappa-04": "1x A100",
}

DEFAULT_PRICE = "$0.59/hr"
DEFAULT_BANDWIDTH = "1 Gbps"

PENDING_VERIFICATION = "PENDING_VERIFICATION"
VERIFIED = "VERIFIED"

_MAPS = ("node_to_miner", "node_rentals", "node_prices", "node_bandwidth")
_FIELDS = {"renter": "node_rentals", "price": "node_prices", "bandwidth": "node_bandwidth"}
_COLUMNS = {"renter": "rented_by", "price": "price_per_hour", "bandwidth": "bandwidth"}


def _empty_state() -> Dict[str, dict]:
    return {name: {} for name in _MAPS}


# =====================================================
# STORAGE BACKENDS
# =====================================================
class RegistryStore:
    def load(self) -> Dict[str, dict]:
        raise NotImplementedError

    def claim(self, node_id: str, owner: str, price: str, bandwidth: str, details: Optional[dict] = None) -> None:
        """Record ``owner`` for an unowned node; InvalidNodeState if someone got there first."""
        raise NotImplementedError

    def update(self, node_id: str, **fields) -> None:
        raise NotImplementedError


class MemoryRegistryStore(RegistryStore):
    def __init__(self, state: Optional[Dict[str, dict]] = None):
        self._state = copy.deepcopy(state) if state else _empty_state()
        self._lock = threading.Lock()

    def load(self):
        with self._lock:
            return copy.deepcopy(self._state)

    def claim(self, node_id, owner, price, bandwidth, details=None):
        with self._lock:
            if self._state["node_to_miner"].get(node_id) is not None:
                raise InvalidNodeState(f"Node {node_id} is already registered to another miner")
            self._state["node_to_miner"][node_id] = owner
            self._state["node_prices"][node_id] = price
            self._state["node_bandwidth"][node_id] = bandwidth
            self._state["node_rentals"][node_id] = None

    def update(self, node_id, **fields):
        with self._lock:
            for key, value in fields.items():
                self._state[_FIELDS[key]][node_id] = value


class SqlRegistryStore(RegistryStore):
    """Registry rows in ``miner_registrations``; the unique node_id is the ownership claim."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def load(self):
        state = _empty_state()
        with self.session_factory() as db:
            for row in db.query(MinerRegistration).all():
                state["node_to_miner"][row.node_id] = row.wallet_address
                state["node_rentals"][row.node_id] = row.rented_by
                state["node_prices"][row.node_id] = row.price_per_hour
                state["node_bandwidth"][row.node_id] = row.bandwidth
        return state

    def claim(self, node_id, owner, price, bandwidth, details=None):
        details = dict(details or {})
        with self.session_factory() as db:
            db.add(MinerRegistration(
                node_id=node_id,
                wallet_address=owner,
                price_per_hour=price,
                bandwidth=bandwidth,
                gpu_model=details.get("gpu_model"),
                vram=details.get("vram"),
                gateway=details.get("gateway"),
                status=details.get("status", PENDING_VERIFICATION),
            ))
            db.add(NodeActivityLog(node_id=node_id, event_type="registered", message=f"Miner {owner}"))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise InvalidNodeState(f"Node {node_id} is already registered to another miner")

    def update(self, node_id, **fields):
        with self.session_factory() as db:
            row = db.query(MinerRegistration).filter(MinerRegistration.node_id == node_id).first()
            if row is None:
                raise NotFound(f"Node {node_id} is not registered")
            for key, value in fields.items():
                setattr(row, _COLUMNS[key], value)
            db.commit()


# =====================================================
# REGISTRY
# =====================================================
class MinerRegistry:
    def __init__(self, store: RegistryStore, slots: Iterable[str] = REGISTRABLE_NODE_IDS,
                 gpu_map: Optional[Dict[str, str]] = None):
        self.store = store
        self.slots = tuple(slots)
        self.gpu_map = dict(NODE_GPU_MAP if gpu_map is None else gpu_map)
        self._lock = threading.RLock()
        self._state = _empty_state()

    def load(self) -> None:
        with self._lock:
            self._state = self.store.load()
            logger.info("Registry loaded: %d registered nodes", len(self._state["node_to_miner"]))

    # ---------- reads ----------
    def owner(self, node_id: str) -> Optional[str]:
        return self._state["node_to_miner"].get(node_id)

    def renter(self, node_id: str) -> Optional[str]:
        return self._state["node_rentals"].get(node_id)

    def price(self, node_id: str) -> Optional[str]:
        return self._state["node_prices"].get(node_id)

    def bandwidth(self, node_id: str) -> Optional[str]:
        return self._state["node_bandwidth"].get(node_id)

    def registered_node_ids(self) -> List[str]:
        registered = self._state["node_to_miner"]
        ordered = [nid for nid in self.slots if nid in registered]
        return ordered + sorted(nid for nid in registered if nid not in self.slots)

    def get_nodes_for_owner(self, owner: str) -> List[str]:
        return [nid for nid in self.registered_node_ids() if self.owner(nid) == owner]

    def get_free_slot(self) -> Optional[str]:
        taken = self._state["node_to_miner"]
        return next((nid for nid in self.slots if nid not in taken), None)

    def price_range_for_gpu(self, gpus: str) -> Optional[Tuple[int, int]]:
        """Min/max advertised price (smallest units) among registered nodes with this GPU."""
        prices = []
        for nid in self.registered_node_ids():
            if self.gpu_map.get(nid) != gpus:
                continue
            display = self.price(nid)
            if not display:
                continue
            try:
                prices.append(parse_price(display))
            except InvalidPrice:
                continue
        if not prices:
            return None
        return min(prices), max(prices)

    # ---------- writes ----------
    def register(self, owner: str, price_per_hour: Optional[str] = None,
                 bandwidth: Optional[str] = None, details: Optional[dict] = None) -> str:
        with self._lock:
            while True:
                node_id = self.get_free_slot()
                if node_id is None:
                    raise NoSlotAvailable()
                try:
                    return self._claim(node_id, owner, price_per_hour, bandwidth, details)
                except InvalidNodeState:
                    # claimed outside this view; pick up the real owners and try the next slot
                    logger.warning("Slot %s was already taken; reloading registry", node_id)
                    self.load()
                    if self.owner(node_id) is None:
                        raise

    def register_node(self, node_id: str, owner: str, price_per_hour: Optional[str] = None,
                      bandwidth: Optional[str] = None, details: Optional[dict] = None) -> str:
        """Register a specific node id (handed out by the intake). First registration wins."""
        with self._lock:
            current = self.owner(node_id)
            if current == owner:
                return node_id
            if current is not None:
                raise InvalidNodeState(f"Node {node_id} is already registered to another miner")
            try:
                return self._claim(node_id, owner, price_per_hour, bandwidth, details)
            except InvalidNodeState:
                self.load()
                if self.owner(node_id) == owner:
                    return node_id
                raise

    def _claim(self, node_id, owner, price_per_hour, bandwidth, details):
        price = price_per_hour or DEFAULT_PRICE
        parse_price(price)
        bandwidth = bandwidth or DEFAULT_BANDWIDTH
        self.store.claim(node_id, owner, price, bandwidth, details)
        self._state["node_to_miner"][node_id] = owner
        self._state["node_prices"][node_id] = price
        self._state["node_bandwidth"][node_id] = bandwidth
        self._state["node_rentals"][node_id] = None
        logger.info("Node %s registered to miner %s", node_id, owner)
        return node_id

    def _update(self, node_id, **fields):
        self.store.update(node_id, **fields)
        for key, value in fields.items():
            self._state[_FIELDS[key]][node_id] = value

    def set_renter(self, node_id: str, renter: Optional[str]) -> None:
        with self._lock:
            self._update(node_id, renter=renter)

    def set_price(self, node_id: str, owner: str, price_per_hour: str) -> None:
        parse_price(price_per_hour)
        with self._lock:
            self._require_owner(node_id, owner)
            self._update(node_id, price=price_per_hour)

    def set_bandwidth(self, node_id: str, owner: str, bandwidth: str) -> None:
        with self._lock:
            self._require_owner(node_id, owner)
            self._update(node_id, bandwidth=bandwidth)

    def _require_owner(self, node_id, owner):
        current = self.owner(node_id)
        if current is None:
            raise NotFound(f"Node {node_id} is not registered")
        if current != owner:
            raise InvalidNodeState(f"Node {node_id} is not owned by this wallet")

    def sync_from_catalog(self, nodes) -> None:
        """Refresh from authoritative catalog records.

        Owners are only filled in, never reassigned.
        """
        with self._lock:
            for node in nodes:
                if self.owner(node.id) is None:
                    try:
                        self._claim(node.id, node.miner_wallet_address, node.price_per_hour,
                                    node.bandwidth or None, {"status": VERIFIED})
                    except InvalidPrice:
                        logger.warning("Catalog price for %s is unusable: %r", node.id, node.price_per_hour)
                        continue
                    except InvalidNodeState:
                        self.load()
                    if self.owner(node.id) is None:
                        continue
                current = self.owner(node.id)
                if current != node.miner_wallet_address:
                    logger.warning("Catalog owner for %s (%s) differs from registry (%s); keeping registry",
                                   node.id, node.miner_wallet_address, current)
                fields = {"renter": node.rented_by, "price": node.price_per_hour}
                if node.bandwidth:
                    fields["bandwidth"] = node.bandwidth
                self._update(node.id, **fields)
