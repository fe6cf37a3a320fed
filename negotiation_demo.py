"""
Demo script for the Negotiation, Chat and Wholesale Order modules
"""
from negotiation_models import Crop, Quantity, QuantityUnit, DeliveryAddress, OrderFromNegotiationRequest
from negotiation_storage import InMemoryStorage
from negotiation_logic import NegotiationEngine
from negotiation_errors import MarketplaceError
from chat_logic import ChatService
from order_logic import OrderDeriver


def print_negotiation(negotiation):
    print(f"  Status: {negotiation.status.value}")
    print(f"  Offers: {len(negotiation.offer_history)}")
    for i, offer in enumerate(negotiation.offer_history, 1):
        print(f"    {i}. {offer.offered_by.value}: {offer.amount}")
    if negotiation.current_offer:
        print(f"  Current Offer: {negotiation.current_offer.amount} by {negotiation.current_offer.offered_by.value}")


def print_chat(chat_service, negotiation_id, user_id):
    thread = chat_service.get_thread(negotiation_id, user_id)
    print(f"  Chat messages ({len(thread.messages)}):")
    for message in thread.messages:
        print(f"    [{message.message_type.value}] {message.sender_role.value}: {message.content}")


def demo_start_negotiation(engine, chat_service):
    """Demo: Wholesaler opens a negotiation"""
    print("=" * 60)
    print("DEMO 1: Start Negotiation")
    print("=" * 60)

    negotiation = engine.start_negotiation(
        crop_id="C1",
        wholesaler_id="W1",
        initial_price=2200,
        quantity=Quantity(value=100, unit=QuantityUnit.QUINTAL),
    )
    print(f"\nWholesaler W1 opened negotiation {negotiation.id} on crop C1 (reference price 2500)")
    print_negotiation(negotiation)
    print_chat(chat_service, negotiation.id, "W1")
    return negotiation


def demo_counter_offer(engine, chat_service, negotiation):
    """Demo: Farmer counters"""
    print("\n" + "=" * 60)
    print("DEMO 2: Counter Offer")
    print("=" * 60)

    negotiation = engine.make_offer(negotiation.id, "F1", amount=2400)
    print("\nFarmer F1 countered with 2400")
    print_negotiation(negotiation)
    print_chat(chat_service, negotiation.id, "F1")
    return negotiation


def demo_accept(engine, negotiation):
    """Demo: Wholesaler accepts the farmer's price"""
    print("\n" + "=" * 60)
    print("DEMO 3: Accept Offer")
    print("=" * 60)

    negotiation = engine.accept_offer(negotiation.id, "W1")
    print("\nWholesaler W1 accepted")
    print(f"  Final Agreed Price: {negotiation.final_agreed_price}")
    print(f"  Quantity: {negotiation.agreed_quantity.value} {negotiation.agreed_quantity.unit.value}")
    print(f"  Total Amount: {negotiation.total_amount}")
    print(f"  Accepted By: {negotiation.accepted_by.value}")
    return negotiation


def demo_offer_after_accept(engine, negotiation):
    """Demo: Terminal negotiations refuse further offers"""
    print("\n" + "=" * 60)
    print("DEMO 4: Offer on an Accepted Negotiation")
    print("=" * 60)

    try:
        engine.make_offer(negotiation.id, "F1", amount=2600)
    except MarketplaceError as e:
        print(f"\nOffer refused ({type(e).__name__}): {e.message}")


def demo_reject(engine, chat_service, storage):
    """Demo: Farmer rejects a second negotiation"""
    print("\n" + "=" * 60)
    print("DEMO 5: Reject Negotiation")
    print("=" * 60)

    storage.add_crop(Crop(id="C2", farmer_id="F2", name="Onion", reference_price=1800))
    negotiation = engine.start_negotiation(
        crop_id="C2",
        wholesaler_id="W2",
        initial_price=1500,
        quantity=Quantity(value=40, unit=QuantityUnit.QUINTAL),
    )
    negotiation = engine.reject_offer(negotiation.id, "F2", reason="too low")
    print(f"\nFarmer F2 rejected negotiation {negotiation.id}")
    print_negotiation(negotiation)
    print_chat(chat_service, negotiation.id, "F2")


def demo_outsider_message(chat_service, negotiation):
    """Demo: Only participants can post in a chat"""
    print("\n" + "=" * 60)
    print("DEMO 6: Message from an Outsider")
    print("=" * 60)

    try:
        chat_service.post_message(negotiation.id, "U9", "hi")
    except MarketplaceError as e:
        print(f"\nMessage refused ({type(e).__name__}): {e.message}")


def demo_order(deriver, negotiation):
    """Demo: Wholesaler places the order for the accepted deal"""
    print("\n" + "=" * 60)
    print("DEMO 7: Order from Negotiation")
    print("=" * 60)

    order = deriver.derive_order(negotiation.id, "W1", OrderFromNegotiationRequest(
        delivery_address=DeliveryAddress(
            name="Ravi Traders",
            phone="+91-9999999999",
            street="APMC Yard, Gate 2",
            city="Pune",
            state="Maharashtra",
            pincode="411037",
        ),
    ))
    print(f"\nOrder {order.order_number} placed")
    print(f"  Price per Unit: {order.price_per_unit}")
    print(f"  Quantity: {order.quantity.value} {order.quantity.unit.value}")
    print(f"  Total Amount: {order.total_amount}")
    print(f"  Payment: {order.payment_terms} ({order.payment_method})")


if __name__ == "__main__":
    print("\n" + "=" * 60)
    print("Mandi Negotiation Module - Demo")
    print("=" * 60)

    storage = InMemoryStorage()
    storage.add_crop(Crop(id="C1", farmer_id="F1", name="Wheat", category="Grains", reference_price=2500))
    engine = NegotiationEngine(storage)
    chat_service = ChatService(storage)
    deriver = OrderDeriver(storage)

    negotiation = demo_start_negotiation(engine, chat_service)
    negotiation = demo_counter_offer(engine, chat_service, negotiation)
    negotiation = demo_accept(engine, negotiation)
    demo_offer_after_accept(engine, negotiation)
    demo_reject(engine, chat_service, storage)
    demo_outsider_message(chat_service, negotiation)
    demo_order(deriver, negotiation)

    print("\n" + "=" * 60)
    print("Demo completed!")
    print("=" * 60)
