"""
Order derivation from accepted negotiations

An order can only be built from an `accepted` negotiation, at most once per
negotiation, and always carries the negotiated price, quantity and total
verbatim. Nothing here re-prices.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable

from negotiation_models import (
    NegotiationStatus, WholesaleOrder, OrderStatusEntry, OrderFromNegotiationRequest, Role, utcnow,
)
from negotiation_errors import NotFoundError, ForbiddenError, InvalidStateError, InconsistentStateError

logger = logging.getLogger(__name__)


def generate_order_number(now: datetime) -> str:
    """WO<epoch millis><4 hex chars>"""
    return f"WO{int(now.timestamp() * 1000)}{uuid.uuid4().hex[:4].upper()}"


class OrderDeriver:
    """Turns an accepted negotiation into a wholesale order"""

    def __init__(self, storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def derive_order(self, negotiation_id: str, acting_user_id: str,
                     request: OrderFromNegotiationRequest) -> WholesaleOrder:
        negotiation = self.storage.get_negotiation(negotiation_id)
        if not negotiation:
            raise NotFoundError("Negotiation not found")
        if negotiation.role_of(acting_user_id) != Role.WHOLESALER:
            raise ForbiddenError("Not authorized")
        if negotiation.status != NegotiationStatus.ACCEPTED:
            raise InvalidStateError("Negotiation must be accepted before creating order")
        if negotiation.created_order_id:
            raise InvalidStateError("Order already exists for this negotiation")
        if (negotiation.final_agreed_price is None or negotiation.agreed_quantity is None
                or negotiation.total_amount is None):
            raise InconsistentStateError(f"Accepted negotiation {negotiation_id} has no agreed terms")

        now = self.clock()
        order = WholesaleOrder(
            order_number=generate_order_number(now),
            negotiation_id=negotiation.id,
            crop_id=negotiation.crop_id,
            farmer_id=negotiation.farmer_id,
            wholesaler_id=negotiation.wholesaler_id,
            quantity=negotiation.agreed_quantity,
            price_per_unit=negotiation.final_agreed_price,
            total_amount=negotiation.total_amount,
            delivery_address=request.delivery_address,
            delivery_terms=request.delivery_terms or "Standard Delivery",
            payment_terms=request.payment_terms or "Payment on Delivery",
            payment_method=request.payment_method or "cod",
            notes=request.notes,
            status_history=[OrderStatusEntry(status="pending", timestamp=now, note="Order placed")],
            created_at=now,
        )
        order = self.storage.create_order_for_negotiation(order)
        logger.info(
            f"Order {order.order_number} created from negotiation {negotiation_id}: "
            f"{order.quantity.value} {order.quantity.unit.value} at {order.price_per_unit}"
        )
        return order

    def get_order_for_negotiation(self, negotiation_id: str, acting_user_id: str) -> WholesaleOrder:
        negotiation = self.storage.get_negotiation(negotiation_id)
        if not negotiation:
            raise NotFoundError("Negotiation not found")
        if negotiation.role_of(acting_user_id) is None:
            raise ForbiddenError("Not authorized")
        order = self.storage.get_order_for_negotiation(negotiation_id)
        if not order:
            raise NotFoundError("Order not found")
        return order
