# rental.py
import logging
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional

from errors import (
    ConnectionRequired,
    InvalidNodeState,
    NotFound,
    RentalError,
    SubmissionFailed,
    UpstreamUnavailable,
)
from fees import FeeSplit
from schemas import Node, NodeStatus
from wallet import is_valid_address

logger = logging.getLogger("neurogrid.rental")


# idle -> confirming -> paying -> assigning -> active -> confirming_undeploy -> unbinding -> idle
class Phase(str, Enum):
    IDLE = "idle"
    CONFIRMING = "confirming"
    PAYING = "paying"
    ASSIGNING = "assigning"
    ACTIVE = "active"
    CONFIRMING_UNDEPLOY = "confirming_undeploy"
    UNBINDING = "unbinding"


# payment may already be on its way in these
NON_CANCELLABLE = (Phase.PAYING, Phase.ASSIGNING, Phase.UNBINDING)
AWAITING_CONFIRMATION = (Phase.CONFIRMING, Phase.CONFIRMING_UNDEPLOY)


@dataclass
class RentalAttempt:
    node_id: str
    payer: str
    kind: str
    phase: Phase
    prior_status: NodeStatus
    started_at: float = 0.0
    split: Optional[FeeSplit] = None
    transaction_reference: Optional[str] = None


@dataclass
class RentalOutcome:
    node_id: str
    phase: str
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None
    transaction_reference: Optional[str] = None
    gateway: Optional[str] = None
    port: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RentalStateMachine:
    def __init__(self, catalog, payments, assignments, registry,
                 confirm_ttl: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.catalog = catalog
        self.payments = payments
        self.assignments = assignments
        self.registry = registry
        self.confirm_ttl = confirm_ttl
        self._clock = clock
        self._nodes: Dict[str, Node] = {}
        self._attempts: Dict[str, RentalAttempt] = {}
        self._lock = threading.RLock()

    # =====================================================
    # VIEW
    # =====================================================
    def refresh(self) -> List[Node]:
        latest = self.catalog.list_nodes()
        with self._lock:
            known = dict(self._nodes)
            busy = set(self._attempts)

        # assignment lookups go over the network; never under the lock
        found = {}
        for node in latest:
            if node.id in busy or not node.rented_by or node.has_connection:
                continue
            current = known.get(node.id)
            if current is not None and current.rented_by == node.rented_by and current.has_connection:
                continue
            found[node.id] = self._lookup(node.id)

        with self._lock:
            merged = {}
            for node in latest:
                current = self._nodes.get(node.id)
                if node.id in self._attempts and current is not None:
                    merged[node.id] = current
                    continue
                if node.rented_by and not node.has_connection:
                    self._restore_connection(node, current, found.get(node.id))
                elif not node.rented_by:
                    node.gateway = None
                    node.port = None
                merged[node.id] = node
            # in-flight nodes stay visible even if upstream dropped them
            for node_id in self._attempts:
                if node_id not in merged and node_id in self._nodes:
                    merged[node_id] = self._nodes[node_id]
            self._nodes = merged
            return [n.model_copy() for n in merged.values()]

    def _lookup(self, node_id: str):
        try:
            return self.assignments.lookup(node_id)
        except RentalError as e:
            logger.warning("Could not restore connection for %s: %s", node_id, e.message)
            return None

    def _restore_connection(self, node: Node, current: Optional[Node], found):
        if current is not None and current.rented_by == node.rented_by and current.has_connection:
            node.gateway, node.port = current.gateway, current.port
            return
        if found and found[0] == node.rented_by:
            node.gateway, node.port = found[1], found[2]
        else:
            # renter known but no coordinates: not usable until they are back
            node.status = NodeStatus.SYNCING

    def nodes(self) -> List[Node]:
        return self.refresh()

    def node(self, node_id: str) -> Node:
        with self._lock:
            node = self._nodes.get(node_id)
        if node is None:
            self.refresh()
            with self._lock:
                node = self._nodes.get(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found")
        return node.model_copy()

    def phase(self, node_id: str) -> Phase:
        with self._lock:
            attempt = self._live_attempt(node_id)
            if attempt is not None:
                return attempt.phase
            node = self._nodes.get(node_id)
            if node is not None and node.rented_by and node.has_connection:
                return Phase.ACTIVE
            return Phase.IDLE

    def rented_by(self, renter: str) -> List[Node]:
        return [n for n in self.nodes() if n.rented_by == renter and n.has_connection]

    def _tracked(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found")
        return node

    # =====================================================
    # DEPLOY
    # =====================================================
    def begin_deploy(self, node_id: str, renter: Optional[str]) -> Phase:
        if not renter or not is_valid_address(renter):
            raise ConnectionRequired()
        self.node(node_id)
        with self._lock:
            node = self._tracked(node_id)
            self._require_no_attempt(node_id)
            if node.rented_by is not None:
                raise InvalidNodeState(f"Node {node_id} is already rented")
            if node.status != NodeStatus.ACTIVE:
                raise InvalidNodeState(f"Node {node_id} is {node.status.value}")
            split = self.payments.quote(node)
            self._attempts[node_id] = RentalAttempt(
                node_id=node_id, payer=renter, kind="deploy", phase=Phase.CONFIRMING,
                prior_status=node.status, started_at=self._clock(), split=split,
            )
            return Phase.CONFIRMING

    def confirm_deploy(self, node_id: str, signer) -> RentalOutcome:
        with self._lock:
            attempt = self._live_attempt(node_id)
            if attempt is None or attempt.kind != "deploy" or attempt.phase != Phase.CONFIRMING:
                raise InvalidNodeState(f"No deploy awaiting confirmation on {node_id}")
            if signer is None or signer.address != attempt.payer:
                raise ConnectionRequired("Confirm with the wallet that started this deploy")
            node = self._nodes.get(node_id)
            if node is None:
                del self._attempts[node_id]
                raise NotFound(f"Node {node_id} not found")
            attempt.phase = Phase.PAYING
            node.status = NodeStatus.PENDING
            snapshot = node.model_copy()

        succeeded = False
        try:
            receipt = self.payments.pay(snapshot, signer)
            with self._lock:
                attempt.transaction_reference = receipt.signature
                attempt.phase = Phase.ASSIGNING
                node.status = NodeStatus.SYNCING

            gateway, port = self.assignments.assign(node_id, attempt.payer, receipt.signature)

            with self._lock:
                self.registry.set_renter(node_id, attempt.payer)
                node.rented_by = attempt.payer
                node.gateway = gateway
                node.port = port
                node.status = NodeStatus.ACTIVE
                attempt.phase = Phase.ACTIVE
                succeeded = True
            self.catalog.invalidate()
            logger.info("Node %s active for %s at %s:%d", node_id, attempt.payer, gateway, port)
            return RentalOutcome(node_id, Phase.ACTIVE.value, True,
                                 transaction_reference=receipt.signature, gateway=gateway, port=port)
        except RentalError as e:
            return self._deploy_failed(attempt, e)
        except Exception as e:
            logger.exception("Unexpected failure during deploy on %s", node_id)
            wrapped = (UpstreamUnavailable if attempt.transaction_reference else SubmissionFailed)(
                f"Unexpected error: {e.__class__.__name__}"
            )
            return self._deploy_failed(attempt, wrapped)
        finally:
            with self._lock:
                if not succeeded:
                    node.rented_by = None
                    node.gateway = None
                    node.port = None
                    node.status = attempt.prior_status
                self._attempts.pop(node_id, None)

    def _deploy_failed(self, attempt: RentalAttempt, error: RentalError) -> RentalOutcome:
        ref = attempt.transaction_reference or error.context.get("signature")
        if attempt.transaction_reference:
            # funds have moved; this needs manual reconciliation
            logger.error("%s after payment: node=%s renter=%s tx=%s detail=%s",
                         error.kind, attempt.node_id, attempt.payer, ref, error.message)
            message = (f"Payment {ref} was confirmed, but the node could not be assigned: "
                       f"{error.message}. Keep this reference for support.")
        else:
            logger.warning("Deploy on %s failed (%s): %s", attempt.node_id, error.kind, error.message)
            message = error.message
        return RentalOutcome(attempt.node_id, Phase.IDLE.value, False, error=error.kind,
                             message=message, transaction_reference=ref)

    # =====================================================
    # UNDEPLOY
    # =====================================================
    def begin_undeploy(self, node_id: str, renter: Optional[str]) -> Phase:
        if not renter or not is_valid_address(renter):
            raise ConnectionRequired()
        self.node(node_id)
        with self._lock:
            node = self._tracked(node_id)
            self._require_no_attempt(node_id)
            if node.rented_by != renter or not node.has_connection:
                raise InvalidNodeState(f"Node {node_id} is not rented by this wallet")
            self._attempts[node_id] = RentalAttempt(
                node_id=node_id, payer=renter, kind="undeploy", phase=Phase.CONFIRMING_UNDEPLOY,
                prior_status=node.status, started_at=self._clock(),
            )
            return Phase.CONFIRMING_UNDEPLOY

    def confirm_undeploy(self, node_id: str, renter: Optional[str]) -> RentalOutcome:
        with self._lock:
            attempt = self._live_attempt(node_id)
            if attempt is None or attempt.kind != "undeploy" or attempt.phase != Phase.CONFIRMING_UNDEPLOY:
                raise InvalidNodeState(f"No undeploy awaiting confirmation on {node_id}")
            if renter != attempt.payer:
                raise ConnectionRequired("Confirm with the wallet that rented this node")
            node = self._nodes.get(node_id)
            if node is None:
                del self._attempts[node_id]
                raise NotFound(f"Node {node_id} not found")
            attempt.phase = Phase.UNBINDING
            node.status = NodeStatus.SYNCING

        succeeded = False
        try:
            self.assignments.release(node_id, renter)
            with self._lock:
                self.registry.set_renter(node_id, None)
                node.rented_by = None
                node.gateway = None
                node.port = None
                node.status = NodeStatus.ACTIVE
                succeeded = True
            self.catalog.invalidate()
            logger.info("Node %s unbound by %s", node_id, renter)
            return RentalOutcome(node_id, Phase.IDLE.value, True)
        except RentalError as e:
            logger.warning("Undeploy on %s failed (%s): %s", node_id, e.kind, e.message)
            return RentalOutcome(node_id, Phase.ACTIVE.value, False, error=e.kind, message=e.message,
                                 gateway=node.gateway, port=node.port)
        except Exception as e:
            logger.exception("Unexpected failure during undeploy on %s", node_id)
            return RentalOutcome(node_id, Phase.ACTIVE.value, False, error=UpstreamUnavailable.kind,
                                 message=f"Unexpected error: {e.__class__.__name__}",
                                 gateway=node.gateway, port=node.port)
        finally:
            with self._lock:
                if not succeeded:
                    node.status = attempt.prior_status
                self._attempts.pop(node_id, None)

    # =====================================================
    # CANCEL
    # =====================================================
    def cancel(self, node_id: str, renter: Optional[str]) -> Phase:
        with self._lock:
            attempt = self._live_attempt(node_id)
            if attempt is None:
                return self.phase(node_id)
            if renter != attempt.payer:
                raise ConnectionRequired("Only the wallet that started this action can cancel it")
            if attempt.phase in NON_CANCELLABLE:
                raise InvalidNodeState("This action can no longer be cancelled")
            del self._attempts[node_id]
            return self.phase(node_id)

    def _live_attempt(self, node_id: str) -> Optional[RentalAttempt]:
        # unanswered confirm dialogs expire so one wallet cannot hold nodes forever
        attempt = self._attempts.get(node_id)
        if attempt is None or attempt.phase not in AWAITING_CONFIRMATION:
            return attempt
        if self._clock() - attempt.started_at <= self.confirm_ttl:
            return attempt
        logger.info("Dropping stale %s on %s started by %s", attempt.kind, node_id, attempt.payer)
        del self._attempts[node_id]
        return None

    def _require_no_attempt(self, node_id: str):
        attempt = self._live_attempt(node_id)
        if attempt is not None:
            raise InvalidNodeState(f"Node {node_id} already has an action in progress ({attempt.phase.value})")
