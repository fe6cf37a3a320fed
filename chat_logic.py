"""
Chat Thread - append-only conversation between a farmer and a wholesaler

Threads are created by the negotiation engine (one per negotiation) or by the
sample workflow once a farmer accepts a wholesaler's sample. Only the two
participants can read or write a thread. Broadcasting posted messages is left
to the caller.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from config import SAMPLE_ACCEPTED_MESSAGE
from negotiation_models import (
    ChatThread, ChatMessage, MessageType, Participants, Role, utcnow,
)
from negotiation_errors import NotFoundError, ForbiddenError, ValidationError
from negotiation_logic import validate_text

logger = logging.getLogger(__name__)


class ChatService:
    """Membership-checked access to chat threads"""

    def __init__(self, storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def get_thread(self, negotiation_id: str, acting_user_id: str) -> ChatThread:
        """Full history of the thread bound to a negotiation, in insertion order"""
        thread = self._thread_for_negotiation(negotiation_id)
        self._require_participant(thread, acting_user_id)
        return thread

    def get_thread_by_id(self, thread_id: str, acting_user_id: str) -> ChatThread:
        thread = self._load(thread_id)
        self._require_participant(thread, acting_user_id)
        return thread

    def get_user_threads(self, acting_user_id: str, role: Union[Role, str]) -> List[ChatThread]:
        """User's threads, most recently active first"""
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}")
        if role == Role.FARMER:
            return self.storage.list_threads(farmer_id=acting_user_id)
        return self.storage.list_threads(wholesaler_id=acting_user_id)

    def post_message(self, negotiation_id: str, acting_user_id: str, content: str) -> ChatMessage:
        """Append a text message to the negotiation's thread and return it"""
        thread = self._thread_for_negotiation(negotiation_id)
        return self._post(thread, acting_user_id, content)

    def post_thread_message(self, thread_id: str, acting_user_id: str, content: str) -> ChatMessage:
        return self._post(self._load(thread_id), acting_user_id, content)

    def mark_message_read(self, message_id: str, acting_user_id: Optional[str] = None) -> ChatMessage:
        """Flag a single message as read"""
        if acting_user_id is not None:
            thread = self.storage.find_thread_by_message(message_id)
            if thread is None:
                raise NotFoundError("Message not found")
            self._require_participant(thread, acting_user_id)
        message = self.storage.mark_message_read(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def open_sample_thread(self, sample_id: str, crop_id: str, farmer_id: str, wholesaler_id: str,
                           acting_user_id: str) -> Tuple[ChatThread, bool]:
        """
        Open a chat once a farmer accepts a wholesaler's sample.

        Returns (thread, created). An existing sample thread between the same
        farmer and wholesaler is reused.
        """
        if acting_user_id != farmer_id:
            raise ForbiddenError("Only the farmer can accept a sample")
        if farmer_id == wholesaler_id:
            raise ValidationError("Farmer and wholesaler must be different users")

        existing = self.storage.find_thread_for_pair(farmer_id, wholesaler_id)
        if existing:
            return existing, False

        now = self.clock()
        thread = ChatThread(
            sample_id=sample_id,
            crop_id=crop_id,
            participants=Participants(farmer_id=farmer_id, wholesaler_id=wholesaler_id),
            created_at=now,
        )
        thread.append(ChatMessage(
            sender_id=farmer_id,
            sender_role=Role.FARMER,
            content=SAMPLE_ACCEPTED_MESSAGE,
            message_type=MessageType.SYSTEM,
            timestamp=now,
        ))
        thread = self.storage.create_thread(thread)
        logger.info(f"Chat {thread.id} created between farmer {farmer_id} and wholesaler {wholesaler_id}")
        return thread, True

    def _thread_for_negotiation(self, negotiation_id: str) -> ChatThread:
        thread = self.storage.get_thread_for_negotiation(negotiation_id)
        if not thread:
            raise NotFoundError("Chat not found")
        return thread

    def _load(self, thread_id: str) -> ChatThread:
        thread = self.storage.get_thread(thread_id)
        if not thread:
            raise NotFoundError("Chat not found")
        return thread

    @staticmethod
    def _require_participant(thread: ChatThread, acting_user_id: str) -> Role:
        role = thread.role_of(acting_user_id)
        if role is None:
            raise ForbiddenError("Not authorized")
        return role

    def _post(self, thread: ChatThread, acting_user_id: str, content: str) -> ChatMessage:
        role = self._require_participant(thread, acting_user_id)
        content = validate_text(content, "content")
        if content is None:
            raise ValidationError("Message content is required")
        message = ChatMessage(
            sender_id=acting_user_id,
            sender_role=role,
            content=content,
            message_type=MessageType.TEXT,
            timestamp=self.clock(),
        )
        self.storage.append_message(thread.id, message)
        logger.info(f"User {acting_user_id} posted message {message.id} in chat {thread.id}")
        return message
