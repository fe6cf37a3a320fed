import threading
from datetime import timedelta

import pytest

from config import NEGOTIATION_EXPIRY_DAYS, DEFAULT_REJECT_MESSAGE, DEFAULT_CANCEL_MESSAGE, EXPIRED_MESSAGE
from negotiation_models import (
    Negotiation, NegotiationStatus, MessageType, Quantity, QuantityUnit, Role, ChatThread, Participants,
)
from negotiation_errors import NotFoundError, ForbiddenError, InvalidStateError, ValidationError
from negotiation_logic import NegotiationEngine, format_amount
from negotiation_storage import InMemoryStorage


def _thread(storage, negotiation):
    return storage.get_thread(negotiation.chat_id)


# Scenarios

def test_start_negotiation_opens_with_wholesaler_offer(started_negotiation, storage):
    negotiation = started_negotiation
    assert negotiation.status == NegotiationStatus.ONGOING
    assert negotiation.farmer_id == "F1"
    assert negotiation.wholesaler_id == "W1"
    assert len(negotiation.offer_history) == 1
    assert negotiation.offer_history[0].offered_by == Role.WHOLESALER
    assert negotiation.offer_history[0].amount == 2200
    assert negotiation.current_offer.amount == 2200
    assert negotiation.current_offer.offered_by == Role.WHOLESALER
    assert negotiation.agreed_quantity.value == 100

    thread = _thread(storage, negotiation)
    assert thread.negotiation_id == negotiation.id
    assert len(thread.messages) == 1
    assert thread.messages[0].message_type == MessageType.SYSTEM
    assert thread.messages[0].content == "Started negotiation with offer of 2200"


def test_counter_offer_from_farmer(engine, storage, started_negotiation):
    negotiation = engine.make_offer(started_negotiation.id, "F1", amount=2400)

    assert len(negotiation.offer_history) == 2
    assert negotiation.current_offer.amount == 2400
    assert negotiation.current_offer.offered_by == Role.FARMER
    last = _thread(storage, negotiation).messages[-1]
    assert last.message_type == MessageType.OFFER
    assert last.content == "Made an offer of 2400"
    assert last.sender_role == Role.FARMER


def test_accept_offer_fixes_terms(accepted_negotiation, storage, clock):
    negotiation = accepted_negotiation
    assert negotiation.status == NegotiationStatus.ACCEPTED
    assert negotiation.final_agreed_price == 2400
    assert negotiation.total_amount == 240000
    assert negotiation.accepted_by == Role.WHOLESALER
    assert negotiation.accepted_at == clock()
    assert _thread(storage, negotiation).messages[-1].content == "Accepted the offer of 2400"


def test_offer_after_accept_is_refused(engine, storage, accepted_negotiation):
    with pytest.raises(InvalidStateError):
        engine.make_offer(accepted_negotiation.id, "F1", amount=2600)

    unchanged = storage.get_negotiation(accepted_negotiation.id)
    assert unchanged.version == accepted_negotiation.version
    assert unchanged.final_agreed_price == 2400
    assert len(unchanged.offer_history) == 2


def test_reject_with_reason(engine, storage):
    negotiation = engine.start_negotiation("C2", "W2", Quantity(value=40, unit="quintal"), initial_price=1500)
    rejected = engine.reject_offer(negotiation.id, "F2", reason="too low")

    assert rejected.status == NegotiationStatus.REJECTED
    last = _thread(storage, rejected).messages[-1]
    assert last.message_type == MessageType.SYSTEM
    assert last.content == "too low"


def test_reject_without_reason_uses_default(engine, storage, started_negotiation):
    rejected = engine.reject_offer(started_negotiation.id, "W1", reason="   ")
    assert _thread(storage, rejected).messages[-1].content == DEFAULT_REJECT_MESSAGE


# Start

def test_start_defaults_to_reference_price(engine, sample_quantity):
    negotiation = engine.start_negotiation("C1", "W1", sample_quantity)
    assert negotiation.initial_price == 2500
    assert negotiation.current_offer.amount == 2500


def test_start_uses_opening_message(engine, storage, sample_quantity):
    negotiation = engine.start_negotiation("C1", "W1", sample_quantity, message="  Interested in your wheat ")
    assert negotiation.offer_history[0].message == "Interested in your wheat"
    assert _thread(storage, negotiation).messages[0].content == "Interested in your wheat"


def test_start_sets_expiry(started_negotiation, clock):
    assert started_negotiation.expires_at == clock() + timedelta(days=NEGOTIATION_EXPIRY_DAYS)


def test_start_unknown_crop(engine, sample_quantity):
    with pytest.raises(NotFoundError):
        engine.start_negotiation("missing", "W1", sample_quantity)


def test_farmer_cannot_negotiate_own_crop(engine, sample_quantity):
    with pytest.raises(ForbiddenError):
        engine.start_negotiation("C1", "F1", sample_quantity)


def test_start_allows_parallel_negotiations(engine, sample_quantity):
    first = engine.start_negotiation("C1", "W1", sample_quantity)
    second = engine.start_negotiation("C1", "W1", sample_quantity)
    assert first.id != second.id
    assert first.chat_id != second.chat_id


def test_start_broadcasts_opening_message(started_negotiation, broadcaster):
    assert broadcaster.names() == ["message_posted"]
    assert broadcaster.events[0].negotiation_id == started_negotiation.id


# Offers

def test_offer_validation(engine, started_negotiation):
    for amount in (0, -10, float("nan"), True, "2400"):
        with pytest.raises(ValidationError):
            engine.make_offer(started_negotiation.id, "F1", amount=amount)
    with pytest.raises(ValidationError):
        engine.make_offer(started_negotiation.id, "F1", amount=2400, message="x" * 1001)


def test_offer_by_outsider(engine, started_negotiation):
    with pytest.raises(ForbiddenError):
        engine.make_offer(started_negotiation.id, "U9", amount=2400)


def test_offer_on_missing_negotiation(engine):
    with pytest.raises(NotFoundError):
        engine.make_offer("missing", "F1", amount=2400)


def test_cannot_counter_own_offer(engine, started_negotiation):
    with pytest.raises(InvalidStateError):
        engine.make_offer(started_negotiation.id, "W1", amount=2300)


def test_turn_taking_can_be_disabled(storage, clock, started_negotiation):
    engine = NegotiationEngine(storage, clock=clock, enforce_turn_taking=False)
    negotiation = engine.make_offer(started_negotiation.id, "W1", amount=2300)
    assert len(negotiation.offer_history) == 2
    assert negotiation.current_offer.offered_by == Role.WHOLESALER


def test_counter_offer_quantity_becomes_agreed(engine, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400,
                      quantity=Quantity(value=80, unit=QuantityUnit.QUINTAL))
    accepted = engine.accept_offer(started_negotiation.id, "W1")
    assert accepted.agreed_quantity.value == 80
    assert accepted.total_amount == 2400 * 80


def test_offer_with_message_uses_it_as_chat_content(engine, storage, started_negotiation):
    negotiation = engine.make_offer(started_negotiation.id, "F1", amount=2412.5, message="Best I can do")
    last = _thread(storage, negotiation).messages[-1]
    assert last.content == "Best I can do"
    assert last.message_type == MessageType.OFFER


def test_retried_offer_is_recorded_once(engine, storage, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400, client_offer_id="offer-1")
    negotiation = engine.make_offer(started_negotiation.id, "F1", amount=2400, client_offer_id="offer-1")

    assert len(negotiation.offer_history) == 2
    assert len(_thread(storage, negotiation).messages) == 2


def test_offer_id_reused_by_other_party(engine, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400, client_offer_id="offer-1")
    with pytest.raises(ValidationError):
        engine.make_offer(started_negotiation.id, "W1", amount=2300, client_offer_id="offer-1")


def test_offer_broadcasts_update_then_message(engine, broadcaster, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400)
    assert broadcaster.names() == ["message_posted", "offer_updated", "message_posted"]
    assert broadcaster.events[1].data["current_offer"] == {"amount": 2400.0, "offered_by": "farmer"}


def test_failing_broadcaster_does_not_fail_operation(storage, clock, started_negotiation):
    class BrokenBroadcaster:
        def publish(self, event):
            raise RuntimeError("socket gone")

    engine = NegotiationEngine(storage, BrokenBroadcaster(), clock=clock)
    negotiation = engine.make_offer(started_negotiation.id, "F1", amount=2400)
    assert storage.get_negotiation(negotiation.id).current_offer.amount == 2400


def test_replayed_offer_after_accept_is_refused(engine, storage, started_negotiation):
    engine.make_offer(started_negotiation.id, "F1", amount=2400, client_offer_id="offer-1")
    accepted = engine.accept_offer(started_negotiation.id, "W1")

    with pytest.raises(InvalidStateError):
        engine.make_offer(started_negotiation.id, "F1", amount=2400, client_offer_id="offer-1")
    assert storage.get_negotiation(started_negotiation.id).version == accepted.version


# Accept

def test_cannot_accept_own_offer(engine, storage, started_negotiation):
    with pytest.raises(InvalidStateError, match="own offer"):
        engine.accept_offer(started_negotiation.id, "W1")

    stored = storage.get_negotiation(started_negotiation.id)
    assert stored.status == NegotiationStatus.ONGOING
    assert stored.accepted_by is None
    assert len(_thread(storage, stored).messages) == 1


def test_own_offer_acceptable_without_turn_taking(storage, clock, started_negotiation):
    engine = NegotiationEngine(storage, clock=clock, enforce_turn_taking=False)
    accepted = engine.accept_offer(started_negotiation.id, "W1")
    assert accepted.accepted_by == Role.WHOLESALER


def test_accept_with_overflowing_total_writes_nothing(engine, storage):
    negotiation = engine.start_negotiation("C1", "W1", Quantity(value=1e200), initial_price=1e200)

    with pytest.raises(ValidationError):
        engine.accept_offer(negotiation.id, "F1")

    stored = storage.get_negotiation(negotiation.id)
    assert stored.status == NegotiationStatus.ONGOING
    assert stored.total_amount is None
    assert stored.version == negotiation.version
    assert len(_thread(storage, stored).messages) == 1


# Reject / cancel

def test_reject_requires_ongoing(engine, accepted_negotiation):
    with pytest.raises(InvalidStateError):
        engine.reject_offer(accepted_negotiation.id, "F1")


def test_reject_by_outsider(engine, started_negotiation):
    with pytest.raises(ForbiddenError):
        engine.reject_offer(started_negotiation.id, "U9")


def test_wholesaler_can_cancel(engine, storage, started_negotiation):
    cancelled = engine.cancel_negotiation(started_negotiation.id, "W1")
    assert cancelled.status == NegotiationStatus.CANCELLED
    assert _thread(storage, cancelled).messages[-1].content == DEFAULT_CANCEL_MESSAGE


def test_farmer_cannot_cancel(engine, started_negotiation):
    with pytest.raises(ForbiddenError):
        engine.cancel_negotiation(started_negotiation.id, "F1")


# Expiry

def test_offer_on_expired_negotiation_commits_expiry(engine, storage, started_negotiation, clock):
    clock.advance(days=NEGOTIATION_EXPIRY_DAYS, seconds=1)

    with pytest.raises(InvalidStateError, match="expired"):
        engine.make_offer(started_negotiation.id, "F1", amount=2400)

    stored = storage.get_negotiation(started_negotiation.id)
    assert stored.status == NegotiationStatus.EXPIRED
    assert len(stored.offer_history) == 1
    last = _thread(storage, stored).messages[-1]
    assert last.content == EXPIRED_MESSAGE
    assert last.message_type == MessageType.SYSTEM


def test_accept_on_expired_negotiation(engine, started_negotiation, clock):
    clock.advance(days=NEGOTIATION_EXPIRY_DAYS + 1)
    with pytest.raises(InvalidStateError):
        engine.accept_offer(started_negotiation.id, "F1")


def test_expire_stale_negotiations(engine, storage, sample_quantity, clock):
    stale = engine.start_negotiation("C1", "W1", sample_quantity)
    clock.advance(days=3)
    fresh = engine.start_negotiation("C1", "W2", sample_quantity)
    clock.advance(days=NEGOTIATION_EXPIRY_DAYS - 2)

    expired = engine.expire_stale_negotiations()

    assert [n.id for n in expired] == [stale.id]
    assert storage.get_negotiation(stale.id).status == NegotiationStatus.EXPIRED
    assert storage.get_negotiation(fresh.id).status == NegotiationStatus.ONGOING
    assert engine.expire_stale_negotiations() == []


def test_expire_skips_terminal_negotiations(engine, accepted_negotiation, clock):
    clock.advance(days=NEGOTIATION_EXPIRY_DAYS + 1)
    assert engine.expire_stale_negotiations() == []


def test_expire_sweep_continues_past_broken_negotiation(engine, storage, sample_quantity, clock):
    broken = Negotiation(
        crop_id="C1", farmer_id="F1", wholesaler_id="W3", chat_id="missing-chat",
        initial_price=2000, expires_at=clock() + timedelta(days=1),
    )
    orphan = ChatThread(participants=Participants(farmer_id="F1", wholesaler_id="W3"))
    storage.create_negotiation(broken, orphan)
    stale = engine.start_negotiation("C1", "W1", sample_quantity)
    clock.advance(days=NEGOTIATION_EXPIRY_DAYS + 1)

    expired = engine.expire_stale_negotiations()

    assert [n.id for n in expired] == [stale.id]
    assert storage.get_negotiation(broken.id).status == NegotiationStatus.ONGOING


# Reads

def test_get_negotiation_membership(engine, started_negotiation):
    assert engine.get_negotiation(started_negotiation.id, "F1").id == started_negotiation.id
    with pytest.raises(ForbiddenError):
        engine.get_negotiation(started_negotiation.id, "U9")
    with pytest.raises(NotFoundError):
        engine.get_negotiation("missing", "F1")


def test_get_user_negotiations_by_role(engine, started_negotiation):
    assert [n.id for n in engine.get_user_negotiations("F1", "farmer")] == [started_negotiation.id]
    assert [n.id for n in engine.get_user_negotiations("W1", Role.WHOLESALER)] == [started_negotiation.id]
    assert engine.get_user_negotiations("W1", "farmer") == []
    assert engine.get_user_negotiations("F1", "farmer", NegotiationStatus.ACCEPTED) == []
    with pytest.raises(ValidationError):
        engine.get_user_negotiations("F1", "admin")


# Properties

@pytest.mark.parametrize("finish", ["accept", "reject", "cancel", "expire"])
def test_terminal_negotiations_are_immutable(engine, storage, started_negotiation, clock, finish):
    if finish == "accept":
        engine.accept_offer(started_negotiation.id, "F1")
    elif finish == "reject":
        engine.reject_offer(started_negotiation.id, "F1")
    elif finish == "cancel":
        engine.cancel_negotiation(started_negotiation.id, "W1")
    else:
        clock.advance(days=NEGOTIATION_EXPIRY_DAYS + 1)
        engine.expire_stale_negotiations()

    before = storage.get_negotiation(started_negotiation.id)
    assert before.status.is_terminal

    with pytest.raises(InvalidStateError):
        engine.make_offer(started_negotiation.id, "F1", amount=2600)
    with pytest.raises(InvalidStateError):
        engine.accept_offer(started_negotiation.id, "W1")

    after = storage.get_negotiation(started_negotiation.id)
    assert after == before


def test_history_grows_by_one_per_offer(engine, started_negotiation):
    parties = ["F1", "W1"] * 3
    for k, user in enumerate(parties, 1):
        negotiation = engine.make_offer(started_negotiation.id, user, amount=2200 + 25 * k)
        assert len(negotiation.offer_history) == 1 + k
        last = negotiation.offer_history[-1]
        assert negotiation.current_offer.amount == last.amount
        assert negotiation.current_offer.offered_by == last.offered_by


def test_each_operation_writes_one_matching_message(engine, storage, started_negotiation, sample_quantity):
    engine.make_offer(started_negotiation.id, "F1", amount=2400)
    engine.accept_offer(started_negotiation.id, "W1")
    other = engine.start_negotiation("C1", "W2", sample_quantity)
    engine.reject_offer(other.id, "F1")

    accepted_types = [m.message_type for m in _thread(storage, started_negotiation).messages]
    rejected_types = [m.message_type for m in _thread(storage, other).messages]
    assert accepted_types == [MessageType.SYSTEM, MessageType.OFFER, MessageType.SYSTEM]
    assert rejected_types == [MessageType.SYSTEM, MessageType.SYSTEM]


@pytest.mark.parametrize("price,quantity", [(2400, 100), (2412.5, 37.5), (0.3, 3), (19.99, 0.1)])
def test_total_amount_is_price_times_quantity(engine, price, quantity):
    negotiation = engine.start_negotiation("C1", "W1", Quantity(value=quantity), initial_price=price)
    accepted = engine.accept_offer(negotiation.id, "F1")
    assert accepted.total_amount == accepted.final_agreed_price * accepted.agreed_quantity.value


class BarrierStorage(InMemoryStorage):
    """Holds each thread's first commit until every racer has read the negotiation"""

    def __init__(self):
        super().__init__()
        self.barrier = None
        self._seen = threading.local()

    def commit_negotiation(self, negotiation, expected_version, message=None):
        if self.barrier is not None and not getattr(self._seen, "waited", False):
            self._seen.waited = True
            self.barrier.wait(timeout=5)
        return super().commit_negotiation(negotiation, expected_version, message)


def test_concurrent_accepts_have_single_winner(sample_crop, sample_quantity, clock):
    storage = BarrierStorage()
    storage.add_crop(sample_crop)
    # Either side may accept here so both racers reach the commit
    engine = NegotiationEngine(storage, clock=clock, enforce_turn_taking=False)
    negotiation = engine.start_negotiation("C1", "W1", sample_quantity, initial_price=2200)
    engine.make_offer(negotiation.id, "F1", amount=2400)
    storage.barrier = threading.Barrier(2)

    successes, failures = [], []

    def accept(user_id):
        try:
            successes.append(engine.accept_offer(negotiation.id, user_id))
        except InvalidStateError as e:
            failures.append(e)

    racers = [threading.Thread(target=accept, args=(user,)) for user in ("F1", "W1")]
    for racer in racers:
        racer.start()
    for racer in racers:
        racer.join(timeout=10)

    assert len(successes) == 1
    assert len(failures) == 1
    stored = storage.get_negotiation(negotiation.id)
    assert stored.status == NegotiationStatus.ACCEPTED
    accept_messages = [m for m in storage.get_thread(negotiation.chat_id).messages
                       if m.content.startswith("Accepted")]
    assert len(accept_messages) == 1


def test_format_amount():
    assert format_amount(2400.0) == "2400"
    assert format_amount(2412.5) == "2412.50"
