# services.py
"""Wires the registry, ledger, payment engine, catalog, assignment and rental flow together."""

import logging
from dataclasses import dataclass

from fastapi import Request

from assignment import AssignmentService, HttpAssignmentClient, LocalAssignmentClient
from catalog import NodeCatalog
from config import Settings
from ledger import SimulatedLedger
from payment import PaymentEngine
from registry import MinerRegistry, RegistryStore, SqlRegistryStore
from rental import RentalStateMachine
from wallet import WalletDirectory

logger = logging.getLogger("neurogrid")


@dataclass
class Services:
    settings: Settings
    session_factory: object
    registry: MinerRegistry
    ledger: SimulatedLedger
    payments: PaymentEngine
    catalog: NodeCatalog
    assignment_service: AssignmentService
    rentals: RentalStateMachine
    wallets: WalletDirectory

    def startup(self):
        self.registry.load()
        logger.info("NeuroGrid services started (network=%s, treasury=%s)",
                    self.settings.NETWORK, self.settings.TREASURY_WALLET)

    def shutdown(self):
        logger.info("NeuroGrid services stopped")


def build_services(settings: Settings, session_factory, registry_store: RegistryStore = None,
                   ledger=None, http=None) -> Services:
    registry = MinerRegistry(registry_store or SqlRegistryStore(session_factory))
    ledger = ledger or SimulatedLedger(session_factory)

    payments = PaymentEngine(
        ledger,
        treasury=settings.TREASURY_WALLET,
        mint=settings.TOKEN_MINT,
        fee_bps=settings.PROTOCOL_FEE_BPS,
        decimals=settings.TOKEN_DECIMALS,
        confirm_timeout=settings.CONFIRM_TIMEOUT_SECONDS,
        poll_interval=settings.CONFIRM_POLL_SECONDS,
    )
    catalog = NodeCatalog(
        registry,
        api_url=settings.NODES_API_URL,
        top_earners_url=settings.TOP_EARNERS_API_URL,
        poll_seconds=settings.CATALOG_POLL_SECONDS,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        session_factory=session_factory,
        http=http,
    )
    assignment_service = AssignmentService(
        session_factory,
        ledger,
        node_lookup=catalog.get,
        treasury=settings.TREASURY_WALLET,
        mint=settings.TOKEN_MINT,
        fee_bps=settings.PROTOCOL_FEE_BPS,
        gateway_template=settings.DEPLOY_GATEWAY_TEMPLATE,
        fixed_port=settings.DEPLOY_PORT,
        port_range=settings.DEPLOY_PORT_RANGE,
    )
    if settings.ASSIGN_API_URL:
        assignments = HttpAssignmentClient(settings.ASSIGN_API_URL, timeout=settings.HTTP_TIMEOUT_SECONDS, http=http)
    else:
        assignments = LocalAssignmentClient(assignment_service)

    rentals = RentalStateMachine(catalog, payments, assignments, registry,
                                 confirm_ttl=settings.RENTAL_CONFIRM_TTL_SECONDS)
    return Services(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        payments=payments,
        catalog=catalog,
        assignment_service=assignment_service,
        rentals=rentals,
        wallets=WalletDirectory(),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
