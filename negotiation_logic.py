"""
Negotiation Engine - offer / counter-offer state machine

Rules:
- A negotiation is between the crop's farmer and the initiating wholesaler.
- Only `ongoing` negotiations accept offers, acceptance, rejection or cancel;
  every other status is terminal.
- Every state change appends exactly one message to the bound chat thread,
  written atomically with the negotiation.
- Writes are compare-and-set on the negotiation version. On a conflict the
  operation re-reads and re-validates, so of two concurrent accepts one wins
  and the other fails with InvalidStateError.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from config import (
    NEGOTIATION_EXPIRY_DAYS, MAX_MESSAGE_LENGTH, ENFORCE_TURN_TAKING, COMMIT_RETRIES,
    DEFAULT_REJECT_MESSAGE, DEFAULT_CANCEL_MESSAGE, EXPIRED_MESSAGE,
)
from negotiation_models import (
    Negotiation, NegotiationStatus, Offer, CurrentOffer, Quantity, Role,
    ChatThread, ChatMessage, MessageType, Participants, RealtimeEvent, new_id, utcnow,
)
from negotiation_errors import (
    NotFoundError, ForbiddenError, InvalidStateError, ValidationError, ConcurrentModificationError,
    InconsistentStateError,
)
from realtime import Broadcaster, NullBroadcaster, MESSAGE_POSTED, OFFER_UPDATED

logger = logging.getLogger(__name__)

Event = Tuple[str, dict]
Transition = Callable[[Negotiation, Role, datetime], Optional[Tuple[ChatMessage, List[Event]]]]


def format_amount(value: float) -> str:
    """2400.0 -> '2400', 2412.5 -> '2412.50'"""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def validate_amount(amount) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    return float(amount)


def validate_text(text: Optional[str], field: str = "message") -> Optional[str]:
    """Strip optional free text; blank becomes None, over-long text is rejected"""
    if text is None:
        return None
    text = text.strip()
    if not text:
        return None
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"{field} must be at most {MAX_MESSAGE_LENGTH} characters")
    return text


class NegotiationEngine:
    """Owns the lifecycle of price negotiations and mirrors each step into chat"""

    def __init__(self, storage, broadcaster: Optional[Broadcaster] = None,
                 clock: Callable[[], datetime] = utcnow,
                 enforce_turn_taking: bool = ENFORCE_TURN_TAKING,
                 max_retries: int = COMMIT_RETRIES):
        self.storage = storage
        self.broadcaster = broadcaster or NullBroadcaster()
        self.clock = clock
        self.enforce_turn_taking = enforce_turn_taking
        self.max_retries = max_retries

    # Reads

    def get_negotiation(self, negotiation_id: str, acting_user_id: str) -> Negotiation:
        negotiation = self._load(negotiation_id)
        self._require_participant(negotiation, acting_user_id)
        return negotiation

    def get_user_negotiations(self, acting_user_id: str, role: Union[Role, str],
                              status: Optional[NegotiationStatus] = None) -> List[Negotiation]:
        """Negotiations where the user holds the slot matching their role, newest first"""
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}")
        if role == Role.FARMER:
            return self.storage.list_negotiations(farmer_id=acting_user_id, status=status)
        return self.storage.list_negotiations(wholesaler_id=acting_user_id, status=status)

    # Operations

    def start_negotiation(self, crop_id: str, wholesaler_id: str, quantity: Quantity,
                          initial_price: Optional[float] = None, message: Optional[str] = None,
                          sample_id: Optional[str] = None) -> Negotiation:
        """
        Open a negotiation on a crop with the wholesaler's first offer.

        The opening price is `initial_price` or the crop's reference price. The
        chat thread is created in the same storage call, seeded with one system
        message. Several negotiations per crop and wholesaler are allowed.
        """
        crop = self.storage.get_crop(crop_id)
        if not crop:
            raise NotFoundError(f"Crop {crop_id} not found")
        if crop.farmer_id == wholesaler_id:
            raise ForbiddenError("Cannot negotiate on your own crop")
        if quantity is None:
            raise ValidationError("Quantity is required")

        amount = validate_amount(initial_price if initial_price is not None else crop.reference_price)
        message = validate_text(message)
        now = self.clock()

        offer = Offer(offered_by=Role.WHOLESALER, amount=amount, quantity=quantity,
                      message=message, timestamp=now)
        chat_id = new_id()
        negotiation = Negotiation(
            crop_id=crop.id,
            sample_id=sample_id,
            farmer_id=crop.farmer_id,
            wholesaler_id=wholesaler_id,
            chat_id=chat_id,
            initial_price=amount,
            offer_history=[offer],
            current_offer=CurrentOffer(amount=amount, offered_by=Role.WHOLESALER),
            agreed_quantity=quantity,
            expires_at=now + timedelta(days=NEGOTIATION_EXPIRY_DAYS),
            created_at=now,
            updated_at=now,
        )
        opening = ChatMessage(
            sender_id=wholesaler_id,
            sender_role=Role.WHOLESALER,
            content=message or f"Started negotiation with offer of {format_amount(amount)}",
            message_type=MessageType.SYSTEM,
            timestamp=now,
        )
        thread = ChatThread(
            id=chat_id,
            negotiation_id=negotiation.id,
            sample_id=sample_id,
            crop_id=crop.id,
            participants=Participants(farmer_id=crop.farmer_id, wholesaler_id=wholesaler_id),
            created_at=now,
        )
        thread.append(opening)

        negotiation, _ = self.storage.create_negotiation(negotiation, thread)
        logger.info(
            f"Wholesaler {wholesaler_id} started negotiation {negotiation.id} on crop {crop.id} "
            f"at {format_amount(amount)} for {quantity.value} {quantity.unit.value}"
        )
        self._emit(MESSAGE_POSTED, negotiation.id, {"message": opening.model_dump(mode="json")})
        return negotiation

    def make_offer(self, negotiation_id: str, acting_user_id: str, amount: float,
                   quantity: Optional[Quantity] = None, message: Optional[str] = None,
                   client_offer_id: Optional[str] = None) -> Negotiation:
        """
        Add a counter-offer from either party.

        A retried request carrying the same `client_offer_id` returns the
        negotiation without recording the offer twice, while it is still ongoing.
        """
        amount = validate_amount(amount)
        message = validate_text(message)

        def transition(negotiation: Negotiation, role: Role, now: datetime):
            self._require_ongoing(negotiation)
            if client_offer_id:
                previous = negotiation.find_offer(client_offer_id)
                if previous is not None:
                    if previous.offered_by != role:
                        raise ValidationError("client_offer_id was already used by the other party")
                    logger.info(f"Offer {client_offer_id} on negotiation {negotiation.id} already recorded")
                    return None

            if (self.enforce_turn_taking and negotiation.current_offer
                    and negotiation.current_offer.offered_by == role):
                raise InvalidStateError("Cannot counter your own offer, waiting for the other party")

            last_timestamp = negotiation.offer_history[-1].timestamp if negotiation.offer_history else now
            offer = Offer(
                offered_by=role,
                amount=amount,
                quantity=quantity,
                message=message,
                client_offer_id=client_offer_id,
                timestamp=max(now, last_timestamp),
            )
            negotiation.offer_history.append(offer)
            negotiation.current_offer = CurrentOffer(amount=amount, offered_by=role)
            if quantity is not None:
                negotiation.agreed_quantity = quantity
            negotiation.updated_at = now

            chat_message = ChatMessage(
                sender_id=acting_user_id,
                sender_role=role,
                content=message or f"Made an offer of {format_amount(amount)}",
                message_type=MessageType.OFFER,
                timestamp=offer.timestamp,
            )
            events = [
                (OFFER_UPDATED, {
                    "offer": offer.model_dump(mode="json"),
                    "current_offer": negotiation.current_offer.model_dump(mode="json"),
                }),
                (MESSAGE_POSTED, {"message": chat_message.model_dump(mode="json")}),
            ]
            return chat_message, events

        negotiation = self._mutate(negotiation_id, acting_user_id, transition)
        logger.info(f"Offer of {format_amount(amount)} on negotiation {negotiation_id} by user {acting_user_id}")
        return negotiation

    def accept_offer(self, negotiation_id: str, acting_user_id: str) -> Negotiation:
        """
        Accept the other party's current offer. Terminal and one-way.

        final_agreed_price = current offer amount
        total_amount = final_agreed_price * agreed_quantity.value
        """

        def transition(negotiation: Negotiation, role: Role, now: datetime):
            self._require_ongoing(negotiation)
            if negotiation.current_offer is None:
                raise InvalidStateError("There is no offer to accept")
            if negotiation.agreed_quantity is None:
                raise InvalidStateError("Negotiation has no agreed quantity")
            if self.enforce_turn_taking and negotiation.current_offer.offered_by == role:
                raise InvalidStateError("Cannot accept your own offer, waiting for the other party")

            price = negotiation.current_offer.amount
            total = price * negotiation.agreed_quantity.value
            if not math.isfinite(total):
                raise ValidationError("Total amount is out of range")
            negotiation.status = NegotiationStatus.ACCEPTED
            negotiation.final_agreed_price = price
            negotiation.total_amount = total
            negotiation.accepted_by = role
            negotiation.accepted_at = now
            negotiation.updated_at = now

            chat_message = self._system_message(
                acting_user_id, role, f"Accepted the offer of {format_amount(price)}", now
            )
            return chat_message, [(MESSAGE_POSTED, {
                "message": chat_message.model_dump(mode="json"),
                "status": negotiation.status.value,
            })]

        negotiation = self._mutate(negotiation_id, acting_user_id, transition)
        logger.info(
            f"Negotiation {negotiation_id} accepted by {negotiation.accepted_by.value} at "
            f"{format_amount(negotiation.final_agreed_price)}, total {format_amount(negotiation.total_amount)}"
        )
        return negotiation

    def reject_offer(self, negotiation_id: str, acting_user_id: str, reason: Optional[str] = None) -> Negotiation:
        """End an ongoing negotiation without agreement"""
        reason = validate_text(reason, "reason")

        def transition(negotiation: Negotiation, role: Role, now: datetime):
            self._require_ongoing(negotiation)
            negotiation.status = NegotiationStatus.REJECTED
            negotiation.updated_at = now
            chat_message = self._system_message(acting_user_id, role, reason or DEFAULT_REJECT_MESSAGE, now)
            return chat_message, [(MESSAGE_POSTED, {
                "message": chat_message.model_dump(mode="json"),
                "status": negotiation.status.value,
            })]

        negotiation = self._mutate(negotiation_id, acting_user_id, transition)
        logger.info(f"Negotiation {negotiation_id} rejected by user {acting_user_id}")
        return negotiation

    def cancel_negotiation(self, negotiation_id: str, acting_user_id: str, reason: Optional[str] = None) -> Negotiation:
        """Withdraw an ongoing negotiation; only the wholesaler who opened it may"""
        reason = validate_text(reason, "reason")

        def transition(negotiation: Negotiation, role: Role, now: datetime):
            if role != Role.WHOLESALER:
                raise ForbiddenError("Only the wholesaler who started the negotiation can cancel it")
            self._require_ongoing(negotiation)
            negotiation.status = NegotiationStatus.CANCELLED
            negotiation.updated_at = now
            chat_message = self._system_message(acting_user_id, role, reason or DEFAULT_CANCEL_MESSAGE, now)
            return chat_message, [(MESSAGE_POSTED, {
                "message": chat_message.model_dump(mode="json"),
                "status": negotiation.status.value,
            })]

        negotiation = self._mutate(negotiation_id, acting_user_id, transition)
        logger.info(f"Negotiation {negotiation_id} cancelled by wholesaler {acting_user_id}")
        return negotiation

    def expire_stale_negotiations(self) -> List[Negotiation]:
        """Move every ongoing negotiation past its expiry to `expired`"""
        now = self.clock()
        expired = []
        for negotiation in self.storage.list_stale_negotiations(now):
            try:
                expired.append(self._commit_expiry(negotiation, now))
            except ConcurrentModificationError:
                # Someone acted on it meanwhile; the next sweep re-evaluates it
                logger.warning(f"Skipping expiry of negotiation {negotiation.id}, modified concurrently")
            except InconsistentStateError as e:
                logger.error(f"Skipping expiry of negotiation {negotiation.id}: {e.message}")
        if expired:
            logger.info(f"Expired {len(expired)} stale negotiations")
        return expired

    # Internals

    def _load(self, negotiation_id: str) -> Negotiation:
        negotiation = self.storage.get_negotiation(negotiation_id)
        if not negotiation:
            raise NotFoundError(f"Negotiation {negotiation_id} not found")
        return negotiation

    @staticmethod
    def _require_participant(negotiation: Negotiation, acting_user_id: str) -> Role:
        role = negotiation.role_of(acting_user_id)
        if role is None:
            raise ForbiddenError("Not authorized")
        return role

    @staticmethod
    def _require_ongoing(negotiation: Negotiation):
        if negotiation.status != NegotiationStatus.ONGOING:
            raise InvalidStateError("Negotiation is not active")

    @staticmethod
    def _system_message(sender_id: str, role: Role, content: str, now: datetime) -> ChatMessage:
        return ChatMessage(
            sender_id=sender_id,
            sender_role=role,
            content=content,
            message_type=MessageType.SYSTEM,
            timestamp=now,
        )

    def _mutate(self, negotiation_id: str, acting_user_id: str, transition: Transition) -> Negotiation:
        """
        Read-validate-write loop shared by every mutating operation.

        The transition mutates the freshly loaded negotiation and returns the
        chat message to write with it, or None when there is nothing to do.
        """
        for attempt in range(1, self.max_retries + 1):
            negotiation = self._load(negotiation_id)
            role = self._require_participant(negotiation, acting_user_id)
            expected_version = negotiation.version
            now = self.clock()
            try:
                if negotiation.is_past_expiry(now):
                    self._commit_expiry(negotiation, now, acting_user_id)
                    raise InvalidStateError("Negotiation has expired")
                outcome = transition(negotiation, role, now)
                if outcome is None:
                    return negotiation
                chat_message, events = outcome
                saved = self.storage.commit_negotiation(negotiation, expected_version, chat_message)
            except ConcurrentModificationError:
                logger.warning(
                    f"Version conflict on negotiation {negotiation_id} "
                    f"(attempt {attempt}/{self.max_retries}), retrying"
                )
                continue
            for event_name, data in events:
                self._emit(event_name, saved.id, data)
            return saved
        raise ConcurrentModificationError(
            f"Negotiation {negotiation_id} kept changing, refetch and try again"
        )

    def _commit_expiry(self, negotiation: Negotiation, now: datetime,
                       sender_id: Optional[str] = None) -> Negotiation:
        sender_id = sender_id or negotiation.wholesaler_id
        role = negotiation.role_of(sender_id)
        expected_version = negotiation.version
        negotiation.status = NegotiationStatus.EXPIRED
        negotiation.updated_at = now
        chat_message = self._system_message(sender_id, role, EXPIRED_MESSAGE, now)
        saved = self.storage.commit_negotiation(negotiation, expected_version, chat_message)
        logger.info(f"Negotiation {negotiation.id} expired (expires_at {negotiation.expires_at.isoformat()})")
        self._emit(MESSAGE_POSTED, saved.id, {
            "message": chat_message.model_dump(mode="json"),
            "status": saved.status.value,
        })
        return saved

    def _emit(self, event_name: str, negotiation_id: str, data: dict):
        """Best-effort broadcast; the chat history stays the source of truth"""
        try:
            self.broadcaster.publish(RealtimeEvent(event=event_name, negotiation_id=negotiation_id, data=data))
        except Exception as e:
            logger.warning(f"Failed to broadcast {event_name} for negotiation {negotiation_id}: {e}")
