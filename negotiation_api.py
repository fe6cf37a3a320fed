"""
FastAPI endpoints for the Negotiation, Chat and Wholesale Order modules

Identity is supplied by the upstream auth layer as headers:
X-User-Id, X-User-Role (farmer | wholesaler | admin), X-User-Verified.
Route-level role checks happen here; negotiation membership is checked by the
engine and chat service.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from negotiation_models import (
    NegotiationStatus, Role, RealtimeEvent, StartNegotiationRequest, OfferRequest, RejectRequest,
    CancelRequest, MessageRequest, SampleAcceptanceRequest, OrderFromNegotiationRequest,
)
from negotiation_errors import MarketplaceError, NotFoundError
from negotiation_storage import get_storage
from negotiation_logic import NegotiationEngine
from chat_logic import ChatService
from order_logic import OrderDeriver
from realtime import RealtimeHub, MESSAGE_POSTED

logger = logging.getLogger(__name__)

router = APIRouter(tags=["negotiations"])

realtime_hub = RealtimeHub()


class Actor(BaseModel):
    """Authenticated caller as asserted by the auth layer"""
    user_id: str
    role: str
    verified: bool = False


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_verified: bool = Header(False),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return Actor(user_id=x_user_id, role=x_user_role.lower(), verified=x_user_verified)


def require_roles(*roles: str):
    """Dependency allowing only the given roles through"""

    def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role {actor.role} is not authorized to access this route",
            )
        return actor

    return dependency


def get_store():
    return get_storage()


def get_broadcaster():
    return realtime_hub


def get_engine(storage=Depends(get_store), broadcaster=Depends(get_broadcaster)) -> NegotiationEngine:
    return NegotiationEngine(storage, broadcaster)


def get_chat_service(storage=Depends(get_store)) -> ChatService:
    return ChatService(storage)


def get_order_deriver(storage=Depends(get_store)) -> OrderDeriver:
    return OrderDeriver(storage)


def _http_error(error: MarketplaceError) -> HTTPException:
    if error.status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message}")
    return HTTPException(status_code=error.status_code, detail=error.message)


def _server_error(context: str, error: Exception) -> HTTPException:
    logger.error(f"Error {context}: {error}", exc_info=True)
    return HTTPException(status_code=500, detail="Server error")


# Negotiations

@router.post("/negotiations", status_code=201)
async def start_negotiation(
    request: StartNegotiationRequest,
    actor: Actor = Depends(require_roles(Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    """
    Start a negotiation on a crop (verified wholesalers only).

    Example:
    {
        "crop_id": "c1",
        "initial_price": 2200,
        "quantity": {"value": 100, "unit": "quintal"},
        "message": "Interested in your wheat"
    }
    """
    if not actor.verified:
        raise HTTPException(status_code=403, detail="Account is not verified")
    try:
        negotiation = engine.start_negotiation(
            crop_id=request.crop_id,
            wholesaler_id=actor.user_id,
            quantity=request.quantity,
            initial_price=request.initial_price,
            message=request.message,
            sample_id=request.sample_id,
        )
        return {"success": True, "data": negotiation}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error("starting negotiation", e)


@router.get("/negotiations")
async def get_user_negotiations(
    status: Optional[NegotiationStatus] = Query(None),
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Caller's negotiations, newest first"""
    try:
        negotiations = engine.get_user_negotiations(actor.user_id, actor.role, status)
        return {"success": True, "count": len(negotiations), "data": negotiations}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error("listing negotiations", e)


@router.post("/negotiations/expire-stale")
async def expire_stale_negotiations(
    actor: Actor = Depends(require_roles("admin")),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Reaper: expire every ongoing negotiation past its expiry date"""
    try:
        expired = engine.expire_stale_negotiations()
        return {"success": True, "count": len(expired), "data": [n.id for n in expired]}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error("expiring negotiations", e)


@router.get("/negotiations/{negotiation_id}")
async def get_negotiation(
    negotiation_id: str,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    try:
        return {"success": True, "data": engine.get_negotiation(negotiation_id, actor.user_id)}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"getting negotiation {negotiation_id}", e)


@router.post("/negotiations/{negotiation_id}/offer")
async def make_offer(
    negotiation_id: str,
    request: OfferRequest,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Counter-offer from either party"""
    try:
        negotiation = engine.make_offer(
            negotiation_id,
            actor.user_id,
            amount=request.amount,
            quantity=request.quantity,
            message=request.message,
            client_offer_id=request.client_offer_id,
        )
        return {"success": True, "data": negotiation}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"making offer on negotiation {negotiation_id}", e)


@router.put("/negotiations/{negotiation_id}/accept")
async def accept_offer(
    negotiation_id: str,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Accept the current offer; the negotiation becomes eligible for an order"""
    try:
        negotiation = engine.accept_offer(negotiation_id, actor.user_id)
        return {"success": True, "message": "Offer accepted", "data": negotiation}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"accepting negotiation {negotiation_id}", e)


@router.put("/negotiations/{negotiation_id}/reject")
async def reject_offer(
    negotiation_id: str,
    request: Optional[RejectRequest] = None,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    try:
        reason = request.reason if request else None
        negotiation = engine.reject_offer(negotiation_id, actor.user_id, reason)
        return {"success": True, "message": "Negotiation rejected", "data": negotiation}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"rejecting negotiation {negotiation_id}", e)


@router.put("/negotiations/{negotiation_id}/cancel")
async def cancel_negotiation(
    negotiation_id: str,
    request: Optional[CancelRequest] = None,
    actor: Actor = Depends(require_roles(Role.WHOLESALER.value)),
    engine: NegotiationEngine = Depends(get_engine),
):
    try:
        reason = request.reason if request else None
        negotiation = engine.cancel_negotiation(negotiation_id, actor.user_id, reason)
        return {"success": True, "message": "Negotiation cancelled", "data": negotiation}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"cancelling negotiation {negotiation_id}", e)


# Chats

@router.get("/chats")
async def get_user_chats(
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        threads = chat_service.get_user_threads(actor.user_id, actor.role)
        return {"success": True, "count": len(threads), "data": threads}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error("listing chats", e)


@router.put("/chats/messages/{message_id}/read")
async def mark_message_read(
    message_id: str,
    actor: Actor = Depends(get_actor),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        chat_service.mark_message_read(message_id, actor.user_id)
        return {"success": True, "message": "Message marked as read"}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"marking message {message_id} read", e)


@router.get("/chats/threads/{thread_id}")
async def get_thread_by_id(
    thread_id: str,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        return {"success": True, "data": chat_service.get_thread_by_id(thread_id, actor.user_id)}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"getting chat {thread_id}", e)


@router.post("/chats/threads/{thread_id}/message", status_code=201)
async def send_thread_message(
    thread_id: str,
    request: MessageRequest,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    chat_service: ChatService = Depends(get_chat_service),
    broadcaster=Depends(get_broadcaster),
):
    try:
        message = chat_service.post_thread_message(thread_id, actor.user_id, request.content)
        thread = chat_service.get_thread_by_id(thread_id, actor.user_id)
        _broadcast_message(broadcaster, thread.negotiation_id or thread.id, message)
        return {"success": True, "data": message}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"sending message to chat {thread_id}", e)


@router.get("/chats/{negotiation_id}")
async def get_chat_messages(
    negotiation_id: str,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Full message history of a negotiation's chat"""
    try:
        return {"success": True, "data": chat_service.get_thread(negotiation_id, actor.user_id)}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"getting chat for negotiation {negotiation_id}", e)


@router.post("/chats/{negotiation_id}/message", status_code=201)
async def send_message(
    negotiation_id: str,
    request: MessageRequest,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    chat_service: ChatService = Depends(get_chat_service),
    broadcaster=Depends(get_broadcaster),
):
    try:
        message = chat_service.post_message(negotiation_id, actor.user_id, request.content)
        _broadcast_message(broadcaster, negotiation_id, message)
        return {"success": True, "data": message}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"sending message for negotiation {negotiation_id}", e)


def _broadcast_message(broadcaster, room_id: str, message):
    try:
        broadcaster.publish(RealtimeEvent(
            event=MESSAGE_POSTED,
            negotiation_id=room_id,
            data={"message": message.model_dump(mode="json")},
        ))
    except Exception as e:
        logger.warning(f"Failed to broadcast message {message.id}: {e}")


# Samples and crops (catalog hooks used by the sample workflow)

@router.post("/samples/{sample_id}/accept")
async def accept_sample(
    sample_id: str,
    request: SampleAcceptanceRequest,
    actor: Actor = Depends(require_roles(Role.FARMER.value)),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Farmer accepted a sample: open (or reuse) the chat with the wholesaler"""
    try:
        thread, created = chat_service.open_sample_thread(
            sample_id=sample_id,
            crop_id=request.crop_id,
            farmer_id=request.farmer_id,
            wholesaler_id=request.wholesaler_id,
            acting_user_id=actor.user_id,
        )
        return {"success": True, "created": created, "data": thread}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"accepting sample {sample_id}", e)


@router.post("/crops/{crop_id}/sample-requests")
async def record_sample_request(
    crop_id: str,
    actor: Actor = Depends(require_roles(Role.WHOLESALER.value)),
    storage=Depends(get_store),
):
    try:
        crop = storage.increment_sample_requests(crop_id)
        if not crop:
            raise NotFoundError(f"Crop {crop_id} not found")
        return {"success": True, "data": {"crop_id": crop.id, "sample_requests": crop.sample_requests}}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"recording sample request for crop {crop_id}", e)


# Wholesale orders

@router.post("/wholesale-orders/from-negotiation/{negotiation_id}", status_code=201)
async def create_order_from_negotiation(
    negotiation_id: str,
    request: OrderFromNegotiationRequest,
    actor: Actor = Depends(require_roles(Role.WHOLESALER.value)),
    deriver: OrderDeriver = Depends(get_order_deriver),
):
    """Create the wholesale order for an accepted negotiation"""
    try:
        return {"success": True, "data": deriver.derive_order(negotiation_id, actor.user_id, request)}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"creating order from negotiation {negotiation_id}", e)


@router.get("/wholesale-orders/negotiation/{negotiation_id}")
async def get_order_for_negotiation(
    negotiation_id: str,
    actor: Actor = Depends(require_roles(Role.FARMER.value, Role.WHOLESALER.value)),
    deriver: OrderDeriver = Depends(get_order_deriver),
):
    try:
        return {"success": True, "data": deriver.get_order_for_negotiation(negotiation_id, actor.user_id)}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        raise _server_error(f"getting order for negotiation {negotiation_id}", e)


# Realtime

async def stop_forwarding(sender: asyncio.Task, user_id: str):
    """Cancel an event forwarding task and surface any send failure it hit"""
    sender.cancel()
    try:
        await sender
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning(f"Event stream to user {user_id} failed: {e}")


@router.websocket("/ws/negotiations/{negotiation_id}")
async def negotiation_events(
    websocket: WebSocket,
    negotiation_id: str,
    user_id: str,
    engine: NegotiationEngine = Depends(get_engine),
    hub: RealtimeHub = Depends(get_broadcaster),
):
    """
    Join the negotiation room and receive `message_posted` / `offer_updated`
    events as JSON. Clients should re-fetch the chat after reconnecting.
    """
    try:
        engine.get_negotiation(negotiation_id, user_id)
    except MarketplaceError as e:
        logger.info(f"Refusing realtime subscription to {negotiation_id} for user {user_id}: {e.message}")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    queue = hub.join(negotiation_id)

    async def forward_events():
        while True:
            await websocket.send_json(await queue.get())

    sender = asyncio.create_task(forward_events())
    try:
        while True:
            # Inbound frames are only keep-alives; this returns on disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected from negotiation {negotiation_id}")
    finally:
        await stop_forwarding(sender, user_id)
        hub.leave(negotiation_id, queue)
