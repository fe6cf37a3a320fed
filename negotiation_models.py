"""
Data models for the Negotiation, Chat and Wholesale Order modules
"""
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from datetime import datetime, timezone
import math
import uuid

from config import MAX_MESSAGE_LENGTH


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the core"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Role(str, Enum):
    """Side of a negotiation a user occupies"""
    FARMER = "farmer"
    WHOLESALER = "wholesaler"


class NegotiationStatus(str, Enum):
    """Negotiation status; everything except ONGOING is terminal"""
    ONGOING = "ongoing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not NegotiationStatus.ONGOING


class MessageType(str, Enum):
    """Chat message type"""
    TEXT = "text"
    OFFER = "offer"
    SYSTEM = "system"


class QuantityUnit(str, Enum):
    KG = "kg"
    QUINTAL = "quintal"
    TON = "ton"
    PIECE = "piece"


class Quantity(BaseModel):
    """Quantity under negotiation"""
    value: float = Field(..., gt=0, description="Amount of produce")
    unit: QuantityUnit = Field(QuantityUnit.KG, description="Unit of measurement")

    @field_validator('value')
    @classmethod
    def validate_finite(cls, v):
        if not math.isfinite(v):
            raise ValueError("quantity must be a finite number")
        return v


class Offer(BaseModel):
    """Single entry of a negotiation's offer history"""
    offered_by: Role = Field(..., description="Role that submitted the offer")
    amount: float = Field(..., description="Proposed price per unit")
    quantity: Optional[Quantity] = Field(None, description="Quantity proposed with this offer")
    message: Optional[str] = Field(None, description="Free-text rationale")
    client_offer_id: Optional[str] = Field(None, description="Client-supplied idempotency key")
    timestamp: datetime = Field(default_factory=utcnow, description="Creation time")


class CurrentOffer(BaseModel):
    """Cached copy of the last offer in the history"""
    amount: float
    offered_by: Role


class Negotiation(BaseModel):
    """Price negotiation between one farmer and one wholesaler over one crop"""
    id: str = Field(default_factory=new_id, description="Negotiation ID")
    crop_id: str = Field(..., description="Crop under negotiation")
    sample_id: Optional[str] = Field(None, description="Sample that led to this negotiation")
    farmer_id: str = Field(..., description="Owner of the crop")
    wholesaler_id: str = Field(..., description="Initiating wholesaler")
    chat_id: str = Field(..., description="Bound chat thread ID")
    initial_price: float = Field(..., description="Opening price per unit")
    offer_history: List[Offer] = Field(default_factory=list, description="Offers in submission order")
    current_offer: Optional[CurrentOffer] = Field(None, description="Most recent offer")
    status: NegotiationStatus = Field(NegotiationStatus.ONGOING, description="Negotiation status")
    final_agreed_price: Optional[float] = Field(None, description="Price fixed on acceptance")
    agreed_quantity: Optional[Quantity] = Field(None, description="Quantity the deal is for")
    total_amount: Optional[float] = Field(None, description="final_agreed_price x agreed_quantity.value")
    accepted_by: Optional[Role] = Field(None, description="Role that accepted")
    accepted_at: Optional[datetime] = Field(None, description="Acceptance time")
    created_order_id: Optional[str] = Field(None, description="Wholesale order derived from this negotiation")
    expires_at: datetime = Field(..., description="Time after which the negotiation is stale")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last write timestamp")
    version: int = Field(0, description="Revision checked and bumped on every write")

    def role_of(self, user_id: str) -> Optional[Role]:
        """Role the user holds on this negotiation, or None for outsiders"""
        if user_id == self.farmer_id:
            return Role.FARMER
        if user_id == self.wholesaler_id:
            return Role.WHOLESALER
        return None

    def is_past_expiry(self, now: datetime) -> bool:
        return self.status == NegotiationStatus.ONGOING and now >= self.expires_at

    def find_offer(self, client_offer_id: str) -> Optional[Offer]:
        for offer in self.offer_history:
            if offer.client_offer_id == client_offer_id:
                return offer
        return None


class ChatMessage(BaseModel):
    """Message inside a chat thread"""
    id: str = Field(default_factory=new_id, description="Message ID")
    sender_id: str = Field(..., description="Participant who sent the message")
    sender_role: Role = Field(..., description="Sender's role within the thread")
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH, description="Message text")
    message_type: MessageType = Field(MessageType.TEXT, description="text, offer or system")
    is_read: bool = Field(False, description="Whether the recipient has read it")
    timestamp: datetime = Field(default_factory=utcnow, description="Creation time")


class LastMessage(BaseModel):
    """Denormalised preview of the newest message, for list views"""
    content: str
    timestamp: datetime


class Participants(BaseModel):
    farmer_id: str
    wholesaler_id: str


class ChatThread(BaseModel):
    """Append-only conversation bound to a negotiation (or to an accepted sample)"""
    id: str = Field(default_factory=new_id, description="Thread ID")
    negotiation_id: Optional[str] = Field(None, description="Bound negotiation, None for sample threads")
    sample_id: Optional[str] = Field(None, description="Accepted sample that opened the thread")
    crop_id: Optional[str] = Field(None, description="Crop being discussed")
    participants: Participants = Field(..., description="The farmer and the wholesaler")
    messages: List[ChatMessage] = Field(default_factory=list, description="Messages in insertion order")
    last_message: Optional[LastMessage] = Field(None, description="Cache of the newest message")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")

    def role_of(self, user_id: str) -> Optional[Role]:
        if user_id == self.participants.farmer_id:
            return Role.FARMER
        if user_id == self.participants.wholesaler_id:
            return Role.WHOLESALER
        return None

    def append(self, message: ChatMessage) -> ChatMessage:
        """Append a message and keep last_message in sync"""
        self.messages.append(message)
        self.last_message = LastMessage(content=message.content, timestamp=message.timestamp)
        return message

    def find_message(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class Crop(BaseModel):
    """Catalog view of a crop listing, as consumed by the negotiation engine"""
    id: str = Field(default_factory=new_id, description="Crop ID")
    farmer_id: str = Field(..., description="Farmer who owns the listing")
    name: str = Field(..., description="Crop name")
    category: str = Field("Vegetables", description="Crop category")
    season: str = Field("Year-Round", description="Growing season")
    reference_price: float = Field(..., gt=0, description="Farmer's expected price per unit")
    unit: QuantityUnit = Field(QuantityUnit.QUINTAL, description="Unit the price refers to")
    sample_requests: int = Field(0, description="Number of sample requests received")


class DeliveryAddress(BaseModel):
    name: str
    phone: str
    street: str
    city: str
    state: str
    pincode: str
    landmark: Optional[str] = None


class OrderStatusEntry(BaseModel):
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class WholesaleOrder(BaseModel):
    """Order derived from an accepted negotiation"""
    id: str = Field(default_factory=new_id, description="Order ID")
    order_number: str = Field(..., description="Human-readable order number")
    negotiation_id: str = Field(..., description="Source negotiation")
    crop_id: str
    farmer_id: str
    wholesaler_id: str
    quantity: Quantity = Field(..., description="Agreed quantity, copied from the negotiation")
    price_per_unit: float = Field(..., description="Agreed price, copied from the negotiation")
    total_amount: float = Field(..., description="Agreed total, copied from the negotiation")
    delivery_address: DeliveryAddress
    delivery_terms: str = "Standard Delivery"
    payment_terms: str = "Payment on Delivery"
    payment_method: str = "cod"
    notes: Optional[str] = None
    status: str = "pending"
    status_history: List[OrderStatusEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# Request bodies

class StartNegotiationRequest(BaseModel):
    """Body of POST /negotiations"""
    crop_id: str = Field(..., min_length=1, description="Crop to negotiate on")
    sample_id: Optional[str] = Field(None, description="Sample this negotiation follows up")
    initial_price: Optional[float] = Field(None, gt=0, description="Opening offer; defaults to the crop price")
    quantity: Quantity = Field(..., description="Quantity under negotiation")
    message: Optional[str] = Field(None, max_length=MAX_MESSAGE_LENGTH, description="Opening message")


class OfferRequest(BaseModel):
    """Body of POST /negotiations/{id}/offer"""
    amount: float = Field(..., gt=0, description="Offered price per unit")
    quantity: Optional[Quantity] = None
    message: Optional[str] = Field(None, max_length=MAX_MESSAGE_LENGTH)
    client_offer_id: Optional[str] = Field(None, max_length=128, description="Idempotency key for retries")


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=MAX_MESSAGE_LENGTH)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=MAX_MESSAGE_LENGTH)


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)


class SampleAcceptanceRequest(BaseModel):
    """Body of POST /samples/{sample_id}/accept, sent by the sample workflow"""
    crop_id: str
    farmer_id: str
    wholesaler_id: str


class OrderFromNegotiationRequest(BaseModel):
    delivery_address: DeliveryAddress
    delivery_terms: Optional[str] = None
    payment_terms: Optional[str] = None
    payment_method: Optional[str] = Field(None, pattern="^(cod|online|bank_transfer|credit)$")
    notes: Optional[str] = None


class RealtimeEvent(BaseModel):
    """Event handed to the realtime broadcaster after a successful mutation"""
    event: str = Field(..., description="message_posted or offer_updated")
    negotiation_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)
