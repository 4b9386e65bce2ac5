import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/escrow_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DELIVERY_WEBHOOK_SECRET", "courier-test-secret")

from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from models.order import MarkShippedPayload, PlaceOrderPayload
from utils.errors import ExternalCapabilityFailure
from utils.fulfillment_service import Actor, FulfillmentService

BUYER = Actor(id="buyer-1", role="buyer")
SELLER = Actor(id="seller-1", role="seller")
ADMIN = Actor(id="admin-1", role="admin")

START = datetime(2026, 3, 2, 10, 0, 0)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """Records every money movement; can be told to fail the next N calls."""

    def __init__(self):
        self.releases = []
        self.reversals = []
        self.failures_left = 0

    def _maybe_fail(self, reference):
        if self.failures_left > 0:
            self.failures_left -= 1
            raise ExternalCapabilityFailure("gateway unavailable", reference=reference)

    async def release_funds(self, *, order_id, amount_cents, currency, reference):
        self._maybe_fail(reference)
        self.releases.append({"order_id": order_id, "amount_cents": amount_cents, "reference": reference})
        return {
            "provider": "fake",
            "reference": reference,
            "transfer_id": f"rel_{len(self.releases)}",
            "transfer_status": "processed",
        }

    async def reverse_funds(self, *, order_id, amount_cents, currency, reference, source="escrow"):
        self._maybe_fail(reference)
        self.reversals.append({
            "order_id": order_id,
            "amount_cents": amount_cents,
            "reference": reference,
            "source": source,
        })
        return {
            "provider": "fake",
            "reference": reference,
            "transfer_id": f"rev_{len(self.reversals)}",
            "transfer_status": "processed",
        }


@pytest.fixture
def db():
    return AsyncMongoMockClient()["escrow_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def service(db, gateway, clock):
    return FulfillmentService(db, gateway, clock=clock, hold=timedelta(days=7))


@pytest.fixture
def place(service):
    async def _place(amount_cents=450000, quantity=1, funds_captured=True):
        return await service.place_order(
            PlaceOrderPayload(
                seller_id=SELLER.id,
                listing_id="listing-1",
                quantity=quantity,
                amount_cents=amount_cents,
                funds_captured=funds_captured,
            ),
            BUYER,
        )

    return _place


@pytest.fixture
def ship(service, clock):
    async def _ship(order_id, tracking_number="T1"):
        await service.confirm_order(order_id, SELLER)
        await service.mark_processing(order_id, SELLER)
        return await service.mark_shipped(
            order_id,
            MarkShippedPayload(
                tracking_number=tracking_number,
                carrier="dhl",
                estimated_delivery=clock.now.date() + timedelta(days=1),
            ),
            SELLER,
        )

    return _ship


@pytest.fixture
def delivered(place, ship, service):
    async def _delivered(**kwargs):
        order = await place(**kwargs)
        await ship(order.id)
        agg = await service.confirm_delivery(order.id, BUYER)
        return agg.order

    return _delivered
