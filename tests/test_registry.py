import pytest

from errors import InvalidNodeState, InvalidPrice, NoSlotAvailable, NotFound
from models import MinerRegistration, NodeActivityLog
from registry import (
    DEFAULT_BANDWIDTH,
    DEFAULT_PRICE,
    MemoryRegistryStore,
    MinerRegistry,
    SqlRegistryStore,
)
from schemas import Node

OWNER = "a" * 64
OTHER = "b" * 64


def make_registry(slots=("alpha-01", "beta-07")):
    registry = MinerRegistry(MemoryRegistryStore(), slots=slots)
    registry.load()
    return registry


def test_register_takes_first_free_slot():
    registry = make_registry()
    assert registry.register(OWNER) == "alpha-01"
    assert registry.register(OTHER, "$1.20/hr", "10 Gbps") == "beta-07"

    assert registry.owner("alpha-01") == OWNER
    assert registry.price("alpha-01") == DEFAULT_PRICE
    assert registry.bandwidth("alpha-01") == DEFAULT_BANDWIDTH
    assert registry.price("beta-07") == "$1.20/hr"
    assert registry.renter("beta-07") is None


def test_register_when_full():
    registry = make_registry(slots=("alpha-01",))
    registry.register(OWNER)
    with pytest.raises(NoSlotAvailable):
        registry.register(OTHER)


def test_register_rejects_bad_price():
    registry = make_registry()
    with pytest.raises(InvalidPrice):
        registry.register(OWNER, "free")
    assert registry.registered_node_ids() == []


def test_register_node_first_owner_wins():
    registry = make_registry()
    assert registry.register_node("beta-07", OWNER) == "beta-07"
    # same owner again is a no-op
    assert registry.register_node("beta-07", OWNER, "$9.00/hr") == "beta-07"
    assert registry.price("beta-07") == DEFAULT_PRICE
    with pytest.raises(InvalidNodeState):
        registry.register_node("beta-07", OTHER)


def test_owner_only_updates():
    registry = make_registry()
    registry.register(OWNER)
    registry.set_price("alpha-01", OWNER, "$0.75/hr")
    registry.set_bandwidth("alpha-01", OWNER, "5 Gbps")
    assert registry.price("alpha-01") == "$0.75/hr"
    assert registry.bandwidth("alpha-01") == "5 Gbps"

    with pytest.raises(InvalidNodeState):
        registry.set_price("alpha-01", OTHER, "$0.10/hr")
    with pytest.raises(NotFound):
        registry.set_bandwidth("beta-07", OWNER, "1 Gbps")


def test_nodes_for_owner_and_renter():
    registry = make_registry(slots=("alpha-01", "beta-07", "gamma-12"))
    registry.register(OWNER)
    registry.register(OTHER)
    registry.register(OWNER)
    assert registry.get_nodes_for_owner(OWNER) == ["alpha-01", "gamma-12"]

    registry.set_renter("beta-07", OWNER)
    assert registry.renter("beta-07") == OWNER
    registry.set_renter("beta-07", None)
    assert registry.renter("beta-07") is None


def test_price_range_for_gpu():
    registry = make_registry(slots=("alpha-01", "beta-07", "gamma-12"))
    registry.register(OWNER, "$0.59/hr")
    registry.register(OTHER, "$0.89/hr")
    registry.register(OTHER, "$3.10/hr")
    assert registry.price_range_for_gpu("1x RTX4090") == (590000, 890000)
    assert registry.price_range_for_gpu("4x A100") == (3100000, 3100000)
    assert registry.price_range_for_gpu("8x B200") is None


def test_sync_from_catalog_never_reassigns_owner():
    registry = make_registry()
    registry.register(OWNER)
    nodes = [
        Node(id="alpha-01", name="Alpha-01", gpus="1x RTX4090", vram="24GB",
             minerWalletAddress=OTHER, pricePerHour="$0.99/hr", rentedBy=OTHER),
        Node(id="beta-07", name="Beta-07", gpus="1x RTX4090", vram="24GB",
             minerWalletAddress=OTHER, pricePerHour="$0.49/hr"),
    ]
    registry.sync_from_catalog(nodes)

    assert registry.owner("alpha-01") == OWNER
    assert registry.renter("alpha-01") == OTHER
    assert registry.price("alpha-01") == "$0.99/hr"
    assert registry.owner("beta-07") == OTHER


# ===== SQL-backed store =====
def sql_registry(session_factory, slots=("alpha-01", "beta-07")):
    registry = MinerRegistry(SqlRegistryStore(session_factory), slots=slots)
    registry.load()
    return registry


def test_sql_store_persists_registration_row(session_factory):
    registry = sql_registry(session_factory)
    registry.register(OWNER, "$0.65/hr", details={"gpu_model": "RTX 4090", "vram": "24GB"})

    with session_factory() as db:
        row = db.query(MinerRegistration).one()
        assert (row.node_id, row.wallet_address, row.price_per_hour) == ("alpha-01", OWNER, "$0.65/hr")
        assert row.gpu_model == "RTX 4090"
        assert row.status == "PENDING_VERIFICATION"
        assert db.query(NodeActivityLog).filter_by(event_type="registered").count() == 1

    reloaded = sql_registry(session_factory)
    assert reloaded.owner("alpha-01") == OWNER
    assert reloaded.price("alpha-01") == "$0.65/hr"


def test_sql_store_updates_renter_price_bandwidth(session_factory):
    registry = sql_registry(session_factory)
    registry.register(OWNER)
    registry.set_renter("alpha-01", OTHER)
    registry.set_price("alpha-01", OWNER, "$0.80/hr")
    registry.set_bandwidth("alpha-01", OWNER, "10 Gbps")

    reloaded = sql_registry(session_factory)
    assert reloaded.renter("alpha-01") == OTHER
    assert reloaded.price("alpha-01") == "$0.80/hr"
    assert reloaded.bandwidth("alpha-01") == "10 Gbps"


def test_stale_view_cannot_take_over_an_owned_node(session_factory):
    first = sql_registry(session_factory)
    # second view loaded before the first registration, e.g. another worker
    second = sql_registry(session_factory)
    assert first.register(OWNER) == "alpha-01"

    assert second.register(OTHER) == "beta-07"
    assert second.owner("alpha-01") == OWNER

    with session_factory() as db:
        owners = dict(db.query(MinerRegistration.node_id, MinerRegistration.wallet_address).all())
    assert owners == {"alpha-01": OWNER, "beta-07": OTHER}


def test_stale_view_full_registry_raises_no_slot(session_factory):
    first = sql_registry(session_factory, slots=("alpha-01",))
    second = sql_registry(session_factory, slots=("alpha-01",))
    first.register(OWNER)

    with pytest.raises(NoSlotAvailable):
        second.register(OTHER)
    assert second.owner("alpha-01") == OWNER


def test_stale_view_register_node_keeps_first_owner(session_factory):
    first = sql_registry(session_factory)
    second = sql_registry(session_factory)
    first.register_node("beta-07", OWNER)

    with pytest.raises(InvalidNodeState):
        second.register_node("beta-07", OTHER)
    assert second.register_node("beta-07", OWNER) == "beta-07"


def test_catalog_sync_marks_rows_verified(session_factory):
    registry = sql_registry(session_factory)
    registry.sync_from_catalog([
        Node(id="beta-07", name="Beta-07", gpus="1x RTX4090", vram="24GB",
             minerWalletAddress=OTHER, pricePerHour="$0.49/hr"),
    ])
    with session_factory() as db:
        row = db.query(MinerRegistration).filter_by(node_id="beta-07").one()
        assert row.wallet_address == OTHER
        assert row.status == "VERIFIED"
