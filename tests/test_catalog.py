from datetime import datetime, timedelta

import pytest
import requests

from catalog import NodeCatalog
from models import Rental
from registry import MemoryRegistryStore, MinerRegistry
from schemas import NodeStatus

OWNER = "a" * 64
UPSTREAM_OWNER = "c" * 64


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.ok = status_code < 400
        self._body = body
        self.text = str(body)

    def json(self):
        return self._body


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def get(self, url, timeout=None, headers=None):
        self.urls.append(url)
        if self.error:
            raise self.error
        return self.response


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def registry():
    registry = MinerRegistry(MemoryRegistryStore())
    registry.load()
    registry.register(OWNER, "$0.59/hr")
    registry.register(OWNER, "$1.10/hr", "10 Gbps")
    return registry


UPSTREAM = {
    "nodes": [
        {
            "id": "zeta-15", "name": "Zeta-15", "gpus": "2x A100", "vram": "160GB", "status": "ACTIVE",
            "utilization": 78, "bandwidth": "10 Gbps", "latencyMs": 33,
            "minerWalletAddress": UPSTREAM_OWNER, "priceInUSDT": 1.75, "rentedBy": None,
        },
        {"id": "broken"},
    ]
}


def test_synthesized_when_no_upstream(registry):
    catalog = NodeCatalog(registry)
    nodes = catalog.list_nodes()

    assert [n.id for n in nodes] == ["alpha-01", "beta-07"]
    alpha = nodes[0]
    assert alpha.price_units == 590000
    assert alpha.price_per_hour == "$0.59/hr"
    assert alpha.miner_wallet_address == OWNER
    assert alpha.status == NodeStatus.ACTIVE
    assert alpha.rented_by is None
    assert nodes[1].bandwidth == "10 Gbps"


def test_falls_back_when_upstream_is_down(registry):
    http = FakeHttp(error=requests.ConnectionError("refused"))
    catalog = NodeCatalog(registry, api_url="https://nodes.example/api/nodes", http=http)

    nodes = catalog.list_nodes()

    assert http.urls == ["https://nodes.example/api/nodes"]
    assert [n.id for n in nodes] == ["alpha-01", "beta-07"]


def test_falls_back_on_upstream_error_status(registry):
    catalog = NodeCatalog(registry, api_url="https://nodes.example", http=FakeHttp(FakeResponse(500, {})))
    assert len(catalog.list_nodes()) == 2


def test_upstream_nodes_sync_registry(registry):
    http = FakeHttp(FakeResponse(200, UPSTREAM))
    catalog = NodeCatalog(registry, api_url="https://nodes.example", http=http)

    nodes = catalog.list_nodes()

    assert [n.id for n in nodes] == ["zeta-15"]
    assert nodes[0].price_units == 1750000
    assert nodes[0].price_per_hour == "$1.75/hr"
    assert registry.owner("zeta-15") == UPSTREAM_OWNER
    assert registry.price("zeta-15") == "$1.75/hr"


def test_cache_until_poll_interval(registry):
    clock = FakeClock()
    http = FakeHttp(FakeResponse(200, UPSTREAM))
    catalog = NodeCatalog(registry, api_url="https://nodes.example", poll_seconds=15, http=http, clock=clock)

    catalog.list_nodes()
    clock.now += 5
    catalog.list_nodes()
    assert len(http.urls) == 1

    clock.now += 11
    catalog.list_nodes()
    assert len(http.urls) == 2

    catalog.invalidate()
    catalog.list_nodes()
    assert len(http.urls) == 3


def test_returned_nodes_are_copies(registry):
    catalog = NodeCatalog(registry)
    first = catalog.get("alpha-01")
    first.rented_by = "b" * 64
    assert catalog.get("alpha-01").rented_by is None


def test_local_top_earners(registry, session_factory):
    now = datetime.utcnow()
    with session_factory() as db:
        db.add(Rental(node_id="alpha-01", renter="b" * 64, miner=OWNER, transaction_signature="s1",
                      price_units=590000, miner_share=560500, treasury_share=29500,
                      gateway="alpha01.ngrid.xyz", port=7000, is_active=False,
                      started_at=now - timedelta(hours=3), ended_at=now - timedelta(hours=1)))
        db.add(Rental(node_id="beta-07", renter="b" * 64, miner=OWNER, transaction_signature="s2",
                      price_units=1100000, miner_share=1045500, treasury_share=54500,
                      gateway="beta07.ngrid.xyz", port=7001, is_active=False,
                      started_at=now - timedelta(hours=1), ended_at=now))
        db.commit()

    rows = NodeCatalog(registry, session_factory=session_factory).top_earners()

    assert [r["name"] for r in rows] == ["Beta-07", "Alpha-01"]
    assert rows[0]["unitPrice"] == "$1.10/hr"
    assert rows[0]["totalRevenue"] == "$1.05"
    assert rows[1]["runtime"] == "2.0h"


def test_upstream_top_earners(registry):
    body = {"topEarners": [{"name": "Zeta-15", "runtime": "12.0h", "unitPrice": "$1.75/hr", "totalRevenue": "$21.00"}]}
    http = FakeHttp(FakeResponse(200, body))
    catalog = NodeCatalog(registry, api_url="https://nodes.example/api/nodes", http=http)

    assert catalog.top_earners() == body["topEarners"]
    assert http.urls == ["https://nodes.example/api/nodes/top-earners"]
