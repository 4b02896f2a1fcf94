import pytest

from auth import create_wallet_token
from models import MinerRegistration
from registry import REGISTRABLE_NODE_IDS, _empty_state


def register_miner(client, miner, **extra):
    body = {"walletAddress": miner.address, "pricePerHour": "$0.59/hr", "gpuModel": "RTX 4090"}
    body.update(extra)
    return client.post("/api/miner/register", json=body)


def fund(services, wallet, amount_units=1_000_000):
    services.ledger.airdrop(wallet.address, services.settings.TOKEN_MINT,
                            token_units=amount_units, lamports=10_000_000)


def test_health(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_wallet_connect_airdrop_balance(client):
    res = client.post("/wallet/connect")
    assert res.status_code == 200
    data = res.json()
    headers = {"Authorization": f"Bearer {data['access_token']}"}

    res = client.post("/wallet/airdrop", json={"amount": 2.5}, headers=headers)
    assert res.status_code == 200
    assert res.json()["token_units"] == 2_500_000
    assert res.json()["token_balance"] == 2.5

    balance = client.get("/wallet/balance", headers=headers).json()
    assert balance["address"] == data["address"]
    assert balance["lamports"] == 10_000_000


def test_wallet_routes_need_a_session(client):
    res = client.get("/wallet/balance")
    assert res.status_code == 401
    assert res.json()["error"] == "ConnectionRequired"

    res = client.get("/wallet/balance", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_miner_register_and_listing(client, miner, session_factory):
    res = register_miner(client, miner)
    assert res.status_code == 201
    body = res.json()
    assert body["nodeId"] == "alpha-01"
    assert body["status"] == "PENDING_VERIFICATION"

    with session_factory() as db:
        row = db.query(MinerRegistration).one()
        assert row.wallet_address == miner.address
        assert row.status == "PENDING_VERIFICATION"

    nodes = client.get("/api/nodes").json()["nodes"]
    assert [n["id"] for n in nodes] == ["alpha-01"]
    assert nodes[0]["priceInUSDT"] == 0.59
    assert nodes[0]["minerWalletAddress"] == miner.address

    mine = client.get(f"/api/miner/{miner.address}/nodes").json()
    assert mine == [{"nodeId": "alpha-01", "pricePerHour": "$0.59/hr", "bandwidth": "1 Gbps", "rentedBy": None}]

    rng = client.get("/api/miner/price-range", params={"gpus": "1x RTX4090"}).json()
    assert rng == {"gpus": "1x RTX4090", "min": 0.59, "max": 0.59}
    assert client.get("/api/miner/price-range", params={"gpus": "8x B200"}).status_code == 404


def test_miner_register_validation_and_full(client, miner, services):
    assert register_miner(client, miner, walletAddress="").status_code == 400

    for _ in REGISTRABLE_NODE_IDS:
        services.registry.register("e" * 64)
    res = register_miner(client, miner)
    assert res.status_code == 409
    assert res.json()["error"] == "NoSlotAvailable"


def test_miner_updates_own_node(client, miner):
    register_miner(client, miner)
    res = client.put("/api/miner/nodes/alpha-01", json={"walletAddress": miner.address, "pricePerHour": "$0.99/hr"})
    assert res.status_code == 200
    assert res.json()["pricePerHour"] == "$0.99/hr"
    assert client.get("/api/nodes").json()["nodes"][0]["priceInUSDT"] == 0.99

    res = client.put("/api/miner/nodes/alpha-01", json={"walletAddress": "e" * 64, "bandwidth": "9 Gbps"})
    assert res.status_code == 409


def test_full_deploy_flow(client, services, miner, renter, renter_headers):
    register_miner(client, miner)
    fund(services, renter)

    res = client.post("/rentals/alpha-01/deploy", headers=renter_headers)
    assert res.status_code == 200
    view = res.json()
    assert view["phase"] == "confirming"
    assert view["cancellable"] is True
    assert view["quote"] == {"price": 0.59, "minerShare": 0.5605, "treasuryShare": 0.0295, "feeRateBps": 500}

    res = client.post("/rentals/alpha-01/confirm", json={"approveSignature": True}, headers=renter_headers)
    assert res.status_code == 200
    outcome = res.json()
    assert outcome["ok"] is True
    assert outcome["gateway"] == "alpha01.ngrid.xyz"
    assert outcome["port"] == 7000
    assert outcome["transactionReference"]

    mine = client.get("/rentals/mine", headers=renter_headers).json()
    assert [n["id"] for n in mine] == ["alpha-01"]
    assert mine[0]["gateway"] == "alpha01.ngrid.xyz"

    treasury = client.get("/api/treasury").json()
    assert treasury["balance"] == 0.0295
    assert treasury["feeBearingDeploys"] == 1
    assert treasury["feeRateBps"] == 500

    rental = client.get("/api/deploy/rentals/alpha-01").json()
    assert rental["renterWalletAddress"] == renter.address

    top = client.get("/api/nodes/top-earners").json()["topEarners"]
    assert top[0]["name"] == "Alpha-01"

    assert client.post("/rentals/alpha-01/undeploy", headers=renter_headers).json()["phase"] == "confirming_undeploy"
    res = client.post("/rentals/alpha-01/confirm-undeploy", headers=renter_headers)
    assert res.json()["ok"] is True
    assert client.get("/rentals/alpha-01").json()["phase"] == "idle"
    assert client.get("/api/deploy/rentals/alpha-01").status_code == 404


def test_deploy_without_wallet(client, miner):
    register_miner(client, miner)
    res = client.post("/rentals/alpha-01/deploy")
    assert res.status_code == 401
    assert res.json() == {"error": "ConnectionRequired", "detail": "Please connect a wallet to proceed"}


def test_declined_signature(client, services, miner, renter, renter_headers):
    register_miner(client, miner)
    fund(services, renter)
    client.post("/rentals/alpha-01/deploy", headers=renter_headers)

    res = client.post("/rentals/alpha-01/confirm", json={"approveSignature": False}, headers=renter_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "UserRejected"
    assert client.get("/rentals/alpha-01").json()["phase"] == "idle"


def test_insufficient_funds(client, services, miner, renter, renter_headers):
    register_miner(client, miner)
    fund(services, renter, amount_units=500_000)
    client.post("/rentals/alpha-01/deploy", headers=renter_headers)

    res = client.post("/rentals/alpha-01/confirm", headers=renter_headers)
    assert res.status_code == 402
    body = res.json()
    assert body["error"] == "InsufficientFunds"
    assert body["transactionReference"] is None
    node = client.get("/rentals/alpha-01").json()["node"]
    assert node["status"] == "ACTIVE"
    assert node["rentedBy"] is None


def test_cancel_needs_the_deploying_wallet(client, miner, renter_headers):
    register_miner(client, miner)
    client.post("/rentals/alpha-01/deploy", headers=renter_headers)

    res = client.post("/rentals/alpha-01/cancel")
    assert res.status_code == 401
    assert res.json()["error"] == "ConnectionRequired"

    stranger = {"Authorization": f"Bearer {create_wallet_token('e' * 64)}"}
    res = client.post("/rentals/alpha-01/cancel", headers=stranger)
    assert res.status_code == 401
    assert client.get("/rentals/alpha-01").json()["phase"] == "confirming"

    res = client.post("/rentals/alpha-01/cancel", headers=renter_headers)
    assert res.status_code == 200
    assert res.json()["phase"] == "idle"


def test_unknown_node(client):
    res = client.get("/rentals/nope-99")
    assert res.status_code == 404
    assert res.json()["error"] == "NotFound"


def test_lost_registry_cache_does_not_reassign_node(client, services, miner, renter):
    assert register_miner(client, miner).json()["nodeId"] == "alpha-01"
    # in-process view forgets every owner; the table still has them
    services.registry._state = _empty_state()

    res = register_miner(client, renter)
    assert res.status_code == 201
    assert res.json()["nodeId"] == "beta-07"
    assert services.registry.owner("alpha-01") == miner.address
    nodes = {n["id"]: n for n in client.get("/api/nodes").json()["nodes"]}
    assert nodes["alpha-01"]["minerWalletAddress"] == miner.address


def test_assign_endpoint_rejects_unpaid(client, miner, renter):
    register_miner(client, miner)
    res = client.post("/api/deploy/assign", json={
        "nodeId": "alpha-01", "renterWalletAddress": renter.address, "transactionSignature": "f" * 128,
    })
    assert res.status_code == 409
    assert res.json()["error"] == "AssignmentRejected"


@pytest.mark.parametrize("path", ["/api/treasury", "/api/nodes/top-earners"])
def test_empty_views(client, path):
    assert client.get(path).status_code == 200
