import pytest
from httpx import ASGITransport, AsyncClient

from conftest import BUYER, SELLER
from database import get_db
from main import app
from utils.dependencies import get_service
from utils.jwt import create_access_token


def auth(subject, role):
    return {"Authorization": f"Bearer {create_access_token(subject, role)}"}


BUYER_H = auth(BUYER.id, "buyer")
SELLER_H = auth(SELLER.id, "seller")
OTHER_BUYER_H = auth("buyer-2", "buyer")
ADMIN_H = auth("admin-1", "admin")


@pytest.fixture
async def client(service, db):
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def create_order(client, **body):
    payload = {"seller_id": SELLER.id, "listing_id": "listing-1", "amount_cents": 450000}
    payload.update(body)
    resp = await client.post("/api/orders", json=payload, headers=BUYER_H)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def ship_and_deliver(client, order_id, eta):
    for step in ("confirm", "processing"):
        resp = await client.post(f"/api/orders/{order_id}/{step}", headers=SELLER_H)
        assert resp.status_code == 200, resp.text
    resp = await client.post(
        f"/api/orders/{order_id}/ship",
        json={"tracking_number": "T1", "carrier": "dhl", "estimated_delivery": eta},
        headers=SELLER_H,
    )
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"/api/orders/{order_id}/deliver", headers=BUYER_H)
    assert resp.status_code == 200, resp.text
    return resp.json()


async def test_requires_token(client):
    resp = await client.post("/api/orders", json={})
    assert resp.status_code in (401, 403)


async def test_invalid_token_rejected(client):
    resp = await client.get("/api/orders/abc", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


async def test_seller_cannot_place_orders(client):
    resp = await client.post(
        "/api/orders",
        json={"seller_id": SELLER.id, "listing_id": "l", "amount_cents": 1},
        headers=SELLER_H,
    )
    assert resp.status_code == 403


async def test_place_and_read_order(client):
    order = await create_order(client)
    assert order["order_status"] == "pending"
    assert order["payout_status"] == "in_escrow"
    assert "ConfirmOrder" in order["allowed_commands"]

    resp = await client.get(f"/api/orders/{order['id']}", headers=SELLER_H)
    assert resp.status_code == 200
    assert resp.json()["returns"] == []

    resp = await client.get(f"/api/orders/{order['id']}", headers=OTHER_BUYER_H)
    assert resp.status_code == 403


async def test_unknown_order_is_404(client):
    resp = await client.get("/api/orders/000000000000000000000000", headers=BUYER_H)
    assert resp.status_code == 404
    assert resp.json()["error"] == "NOT_FOUND"

    resp = await client.get("/api/orders/not-an-id", headers=BUYER_H)
    assert resp.status_code == 404


async def test_invalid_transition_maps_to_409(client):
    order = await create_order(client)
    resp = await client.post(f"/api/orders/{order['id']}/processing", headers=SELLER_H)

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "INVALID_TRANSITION"
    assert body["state"] == "pending"
    assert body["command"] == "MarkProcessing"


async def test_cancel_requires_reason(client):
    order = await create_order(client)
    resp = await client.post(f"/api/orders/{order['id']}/cancel", json={"reason": " "}, headers=BUYER_H)

    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


async def test_full_return_flow_over_http(client, clock):
    order = await create_order(client)
    eta = clock.now.date().isoformat()
    delivered = await ship_and_deliver(client, order["id"], eta)
    assert delivered["order"]["order_status"] == "delivered"

    resp = await client.post(
        f"/api/orders/{order['id']}/returns",
        json={"reason": "defective", "quantity": 1},
        headers=BUYER_H,
    )
    assert resp.status_code == 201, resp.text
    ret = resp.json()["return"]
    assert ret["rma_number"].startswith("RMA-")
    return_id = ret["id"]

    steps = [
        ("approve", {"return_tracking_number": "RT1"}, SELLER_H),
        ("ship", {"tracking_number": "RT1"}, BUYER_H),
        ("receive", {"tracking_number": "RT1"}, SELLER_H),
        ("inspect", {"notes": "ok", "outcome": "valid"}, SELLER_H),
        ("refund", {"method": "original_payment"}, SELLER_H),
    ]
    for step, body, headers in steps:
        resp = await client.post(f"/api/returns/{return_id}/{step}", json=body, headers=headers)
        assert resp.status_code == 200, (step, resp.text)

    final = resp.json()
    assert final["return"]["status"] == "completed"
    assert final["order"]["order_status"] == "returned"
    assert final["order"]["payout_status"] == "reversed"

    resp = await client.get(f"/api/orders/{order['id']}/timeline", headers=BUYER_H)
    events = [e["event"] for e in resp.json()["timeline"]]
    assert "RefundCompleted" in events


async def test_return_on_undelivered_order_is_422(client):
    order = await create_order(client)
    resp = await client.post(
        f"/api/orders/{order['id']}/returns",
        json={"reason": "defective"},
        headers=BUYER_H,
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "POLICY_VIOLATION"


async def test_overlong_description_is_validation_error(client):
    order = await create_order(client)
    resp = await client.post(
        f"/api/orders/{order['id']}/returns",
        json={"reason": "other", "reason_description": "x" * 501},
        headers=BUYER_H,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


async def test_seller_policy_and_returns_queue(client, clock):
    resp = await client.put(
        "/api/seller/return-policy",
        json={"refund_percentage": 50, "return_window_days": 14},
        headers=SELLER_H,
    )
    assert resp.status_code == 200
    assert resp.json()["refund_percentage"] == 50

    resp = await client.get("/api/seller/return-policy", headers=SELLER_H)
    assert resp.json()["return_window_days"] == 14

    order = await create_order(client)
    await ship_and_deliver(client, order["id"], clock.now.date().isoformat())
    await client.post(f"/api/orders/{order['id']}/returns", json={"reason": "unwanted"}, headers=BUYER_H)

    resp = await client.get("/api/seller/returns?status=requested", headers=SELLER_H)
    returns = resp.json()["returns"]
    assert len(returns) == 1
    assert returns[0]["policy"]["refund_percentage"] == 50

    resp = await client.get("/api/seller/wallet", headers=SELLER_H)
    assert resp.json()["balance_cents"] == 0


async def test_admin_endpoints_require_admin(client):
    resp = await client.get("/api/admin/settlements", headers=SELLER_H)
    assert resp.status_code == 403

    resp = await client.get("/api/admin/settlements", headers=ADMIN_H)
    assert resp.status_code == 200
    assert resp.json() == {"orders": []}


async def test_admin_reconcile_releases_after_hold(client, clock, gateway):
    order = await create_order(client)
    await ship_and_deliver(client, order["id"], clock.now.date().isoformat())
    clock.advance(days=7)

    resp = await client.post(f"/api/admin/orders/{order['id']}/reconcile", headers=ADMIN_H)
    assert resp.status_code == 200
    assert resp.json()["order"]["payout_status"] == "paid"
    assert len(gateway.releases) == 1


async def test_gateway_failure_maps_to_502(client, clock, gateway):
    order = await create_order(client)
    await ship_and_deliver(client, order["id"], clock.now.date().isoformat())
    clock.advance(days=7)
    gateway.failures_left = 1

    resp = await client.post(f"/api/admin/orders/{order['id']}/reconcile", headers=ADMIN_H)
    assert resp.status_code == 502
    assert resp.json()["error"] == "EXTERNAL_CAPABILITY_FAILURE"


async def test_admin_reads_seller_wallet(client, clock):
    order = await create_order(client)
    await ship_and_deliver(client, order["id"], clock.now.date().isoformat())
    clock.advance(days=7)
    await client.post(f"/api/admin/orders/{order['id']}/reconcile", headers=ADMIN_H)

    resp = await client.get(f"/api/admin/sellers/{SELLER.id}/wallet", headers=ADMIN_H)
    assert resp.json() == {"seller_id": SELLER.id, "balance_cents": 450000}

    resp = await client.get(f"/api/admin/orders/{order['id']}/ledger", headers=ADMIN_H)
    assert [e["entry_type"] for e in resp.json()["entries"]] == ["PAYOUT_RELEASE"]
