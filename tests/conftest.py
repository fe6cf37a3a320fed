from datetime import datetime, timedelta, timezone

import pytest

from negotiation_models import Crop, Quantity, QuantityUnit, DeliveryAddress, OrderFromNegotiationRequest
from negotiation_storage import InMemoryStorage
from negotiation_logic import NegotiationEngine
from chat_logic import ChatService
from order_logic import OrderDeriver


class FakeClock:
    """Callable clock tests can move forward"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def names(self):
        return [event.event for event in self.events]


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def sample_crop():
    return Crop(
        id="C1",
        farmer_id="F1",
        name="Wheat",
        category="Grains",
        season="Rabi",
        reference_price=2500,
        unit=QuantityUnit.QUINTAL,
    )


@pytest.fixture
def sample_quantity():
    return Quantity(value=100, unit=QuantityUnit.QUINTAL)


@pytest.fixture
def storage(sample_crop):
    store = InMemoryStorage()
    store.add_crop(sample_crop)
    store.add_crop(Crop(id="C2", farmer_id="F2", name="Onion", reference_price=1800))
    return store


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def engine(storage, broadcaster, clock):
    return NegotiationEngine(storage, broadcaster, clock=clock)


@pytest.fixture
def chat_service(storage, clock):
    return ChatService(storage, clock=clock)


@pytest.fixture
def order_deriver(storage, clock):
    return OrderDeriver(storage, clock=clock)


@pytest.fixture
def started_negotiation(engine, sample_quantity):
    """Scenario 1: W1 opens at 2200 for 100 quintal on C1"""
    return engine.start_negotiation(
        crop_id="C1",
        wholesaler_id="W1",
        initial_price=2200,
        quantity=sample_quantity,
    )


@pytest.fixture
def accepted_negotiation(engine, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400)
    return engine.accept_offer(started_negotiation.id, "W1")


@pytest.fixture
def order_request():
    return OrderFromNegotiationRequest(
        delivery_address=DeliveryAddress(
            name="Ravi Traders",
            phone="+91-9999999999",
            street="APMC Yard, Gate 2",
            city="Pune",
            state="Maharashtra",
            pincode="411037",
        ),
    )
