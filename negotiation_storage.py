"""
Storage for the Negotiation, Chat and Wholesale Order modules

Two backends share one interface:
- FirestoreStorage: Firebase Firestore, dual-writes run in a transaction
- InMemoryStorage: process-local, used for tests, demos and as a fallback

Every negotiation write is a compare-and-set on `version`; the bound chat
message (if any) is written in the same atomic step.
"""
from typing import List, Dict, Optional, Tuple
from functools import lru_cache
from datetime import datetime
import logging
import os
import json
import threading

import firebase_admin
from firebase_admin import credentials, firestore

from config import (
    STORAGE_BACKEND, FIREBASE_CREDENTIALS_PATH, FIREBASE_CREDENTIALS_JSON,
    NEGOTIATIONS_COLLECTION, CHATS_COLLECTION, CROPS_COLLECTION, ORDERS_COLLECTION,
)
from negotiation_models import (
    Negotiation, NegotiationStatus, ChatThread, ChatMessage, Crop, WholesaleOrder, utcnow
)
from negotiation_errors import (
    NotFoundError, InvalidStateError, ConcurrentModificationError, InconsistentStateError
)

logger = logging.getLogger(__name__)


def _initialize_firebase():
    """Initialize Firebase Admin SDK"""
    # Check if Firebase is already initialized
    try:
        firebase_admin.get_app()
        logger.info("Firebase already initialized")
        return firestore.client()
    except ValueError:
        # Firebase not initialized yet
        pass

    # Option 1: Use service account JSON file
    if FIREBASE_CREDENTIALS_PATH and os.path.exists(FIREBASE_CREDENTIALS_PATH):
        cred = credentials.Certificate(FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)
        logger.info(f"Firebase initialized with credentials from {FIREBASE_CREDENTIALS_PATH}")
    # Option 2: Use environment variable with JSON string
    elif FIREBASE_CREDENTIALS_JSON:
        cred = credentials.Certificate(json.loads(FIREBASE_CREDENTIALS_JSON))
        firebase_admin.initialize_app(cred)
        logger.info("Firebase initialized with credentials from environment variable")
    else:
        # Option 3: Use default credentials (for Google Cloud environments)
        try:
            firebase_admin.initialize_app()
            logger.info("Firebase initialized with default credentials")
        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            raise RuntimeError(
                "Firebase initialization failed. Please set FIREBASE_CREDENTIALS_PATH "
                "or FIREBASE_CREDENTIALS_JSON environment variable, or use default credentials."
            ) from e

    return firestore.client()


def _message_fields(message: ChatMessage) -> Dict:
    """Firestore update that appends one message and refreshes last_message"""
    message_dict = message.model_dump(mode="json")
    return {
        'messages': firestore.ArrayUnion([message_dict]),
        'message_ids': firestore.ArrayUnion([message.id]),
        'last_message': {
            'content': message_dict['content'],
            'timestamp': message_dict['timestamp'],
        },
    }


def _thread_to_dict(thread: ChatThread) -> Dict:
    thread_dict = thread.model_dump(mode="json")
    # Flat index so a message can be located without scanning every thread
    thread_dict['message_ids'] = [m.id for m in thread.messages]
    return thread_dict


def _dict_to_thread(data: Dict) -> ChatThread:
    data = dict(data)
    data.pop('message_ids', None)
    return ChatThread.model_validate(data)


def _newest_first(negotiations: List[Negotiation]) -> List[Negotiation]:
    return sorted(negotiations, key=lambda n: n.created_at, reverse=True)


def _by_last_activity(threads: List[ChatThread]) -> List[ChatThread]:
    return sorted(
        threads,
        key=lambda t: t.last_message.timestamp if t.last_message else t.created_at,
        reverse=True,
    )


class FirestoreStorage:
    """Firebase Firestore storage for negotiations, chats and wholesale orders"""

    def __init__(self):
        try:
            self.db = _initialize_firebase()
            self.negotiations_collection = self.db.collection(NEGOTIATIONS_COLLECTION)
            self.chats_collection = self.db.collection(CHATS_COLLECTION)
            self.crops_collection = self.db.collection(CROPS_COLLECTION)
            self.orders_collection = self.db.collection(ORDERS_COLLECTION)
            logger.info("FirestoreStorage initialized with Firebase Firestore")
        except Exception as e:
            logger.error(f"Failed to initialize Firebase storage: {e}")
            raise

    # Crop catalog
    def add_crop(self, crop: Crop) -> Crop:
        self.crops_collection.document(crop.id).set(crop.model_dump(mode="json"))
        logger.info(f"Added crop {crop.id} ({crop.name}) to Firebase")
        return crop

    def get_crop(self, crop_id: str) -> Optional[Crop]:
        try:
            doc = self.crops_collection.document(str(crop_id)).get()
            if doc.exists:
                return Crop.model_validate(doc.to_dict())
            return None
        except Exception as e:
            logger.error(f"Error getting crop {crop_id}: {e}")
            raise

    def increment_sample_requests(self, crop_id: str) -> Optional[Crop]:
        doc_ref = self.crops_collection.document(str(crop_id))
        if not doc_ref.get().exists:
            return None
        doc_ref.update({'sample_requests': firestore.Increment(1)})
        return self.get_crop(crop_id)

    # Negotiations
    def create_negotiation(self, negotiation: Negotiation, thread: ChatThread) -> Tuple[Negotiation, ChatThread]:
        """Write a negotiation and its chat thread in one batch"""
        try:
            batch = self.db.batch()
            batch.set(self.negotiations_collection.document(negotiation.id), negotiation.model_dump(mode="json"))
            batch.set(self.chats_collection.document(thread.id), _thread_to_dict(thread))
            batch.commit()
            logger.info(f"Created negotiation {negotiation.id} with chat {thread.id} in Firebase")
            return negotiation, thread
        except Exception as e:
            logger.error(f"Error creating negotiation: {e}")
            raise

    def get_negotiation(self, negotiation_id: str) -> Optional[Negotiation]:
        try:
            doc = self.negotiations_collection.document(str(negotiation_id)).get()
            if doc.exists:
                return Negotiation.model_validate(doc.to_dict())
            return None
        except Exception as e:
            logger.error(f"Error getting negotiation {negotiation_id}: {e}")
            raise

    def list_negotiations(self, farmer_id: Optional[str] = None, wholesaler_id: Optional[str] = None,
                          status: Optional[NegotiationStatus] = None) -> List[Negotiation]:
        """Negotiations filtered by participant and status, newest first"""
        try:
            query = self.negotiations_collection
            if farmer_id is not None:
                query = query.where('farmer_id', '==', farmer_id)
            if wholesaler_id is not None:
                query = query.where('wholesaler_id', '==', wholesaler_id)
            if status is not None:
                query = query.where('status', '==', status.value)
            return _newest_first([Negotiation.model_validate(doc.to_dict()) for doc in query.stream()])
        except Exception as e:
            logger.error(f"Error listing negotiations: {e}")
            raise

    def list_stale_negotiations(self, now: datetime) -> List[Negotiation]:
        query = self.negotiations_collection.where('status', '==', NegotiationStatus.ONGOING.value)
        negotiations = [Negotiation.model_validate(doc.to_dict()) for doc in query.stream()]
        return [n for n in negotiations if n.is_past_expiry(now)]

    def commit_negotiation(self, negotiation: Negotiation, expected_version: int,
                           message: Optional[ChatMessage] = None) -> Negotiation:
        """
        Persist a negotiation if its stored version still equals expected_version,
        appending `message` to the bound chat thread inside the same transaction.
        """
        neg_ref = self.negotiations_collection.document(negotiation.id)
        chat_ref = self.chats_collection.document(negotiation.chat_id)

        @firestore.transactional
        def _commit(transaction):
            snapshot = neg_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"Negotiation {negotiation.id} not found")
            if snapshot.get('version') != expected_version:
                raise ConcurrentModificationError(f"Negotiation {negotiation.id} was modified concurrently")
            if message is not None and not chat_ref.get(transaction=transaction).exists:
                raise InconsistentStateError(f"Chat {negotiation.chat_id} for negotiation {negotiation.id} is missing")
            data = negotiation.model_dump(mode="json")
            data['version'] = expected_version + 1
            transaction.set(neg_ref, data)
            if message is not None:
                transaction.update(chat_ref, _message_fields(message))
            return data

        data = _commit(self.db.transaction())
        logger.info(f"Committed negotiation {negotiation.id} at version {data['version']} in Firebase")
        return Negotiation.model_validate(data)

    # Chat threads
    def create_thread(self, thread: ChatThread) -> ChatThread:
        self.chats_collection.document(thread.id).set(_thread_to_dict(thread))
        logger.info(f"Created chat {thread.id} in Firebase")
        return thread

    def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        try:
            doc = self.chats_collection.document(str(thread_id)).get()
            if doc.exists:
                return _dict_to_thread(doc.to_dict())
            return None
        except Exception as e:
            logger.error(f"Error getting chat {thread_id}: {e}")
            raise

    def get_thread_for_negotiation(self, negotiation_id: str) -> Optional[ChatThread]:
        docs = self.chats_collection.where('negotiation_id', '==', str(negotiation_id)).limit(1).stream()
        for doc in docs:
            return _dict_to_thread(doc.to_dict())
        return None

    def find_thread_for_pair(self, farmer_id: str, wholesaler_id: str) -> Optional[ChatThread]:
        """Sample thread (not bound to a negotiation) between a farmer and a wholesaler"""
        query = (
            self.chats_collection
            .where('participants.farmer_id', '==', farmer_id)
            .where('participants.wholesaler_id', '==', wholesaler_id)
        )
        for doc in query.stream():
            thread = _dict_to_thread(doc.to_dict())
            if thread.negotiation_id is None:
                return thread
        return None

    def append_message(self, thread_id: str, message: ChatMessage) -> ChatMessage:
        doc_ref = self.chats_collection.document(str(thread_id))
        if not doc_ref.get().exists:
            raise NotFoundError(f"Chat {thread_id} not found")
        doc_ref.update(_message_fields(message))
        return message

    def find_thread_by_message(self, message_id: str) -> Optional[ChatThread]:
        docs = self.chats_collection.where('message_ids', 'array_contains', message_id).limit(1).stream()
        for doc in docs:
            return _dict_to_thread(doc.to_dict())
        return None

    def mark_message_read(self, message_id: str) -> Optional[ChatMessage]:
        thread = self.find_thread_by_message(message_id)
        if thread is None:
            return None
        chat_ref = self.chats_collection.document(thread.id)

        @firestore.transactional
        def _mark(transaction):
            current = _dict_to_thread(chat_ref.get(transaction=transaction).to_dict())
            message = current.find_message(message_id)
            message.is_read = True
            transaction.update(chat_ref, {'messages': [m.model_dump(mode="json") for m in current.messages]})
            return message

        return _mark(self.db.transaction())

    def list_threads(self, farmer_id: Optional[str] = None, wholesaler_id: Optional[str] = None) -> List[ChatThread]:
        query = self.chats_collection
        if farmer_id is not None:
            query = query.where('participants.farmer_id', '==', farmer_id)
        if wholesaler_id is not None:
            query = query.where('participants.wholesaler_id', '==', wholesaler_id)
        return _by_last_activity([_dict_to_thread(doc.to_dict()) for doc in query.stream()])

    # Wholesale orders
    def create_order_for_negotiation(self, order: WholesaleOrder) -> WholesaleOrder:
        """Store an order and link it to its negotiation; at most one order per negotiation"""
        neg_ref = self.negotiations_collection.document(order.negotiation_id)
        order_ref = self.orders_collection.document(order.id)

        @firestore.transactional
        def _create(transaction):
            snapshot = neg_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"Negotiation {order.negotiation_id} not found")
            data = snapshot.to_dict()
            if data.get('created_order_id'):
                raise InvalidStateError("Order already exists for this negotiation")
            transaction.set(order_ref, order.model_dump(mode="json"))
            transaction.update(neg_ref, {
                'created_order_id': order.id,
                'version': data.get('version', 0) + 1,
                'updated_at': utcnow().isoformat(),
            })

        _create(self.db.transaction())
        logger.info(f"Created order {order.order_number} for negotiation {order.negotiation_id} in Firebase")
        return order

    def get_order(self, order_id: str) -> Optional[WholesaleOrder]:
        doc = self.orders_collection.document(str(order_id)).get()
        if doc.exists:
            return WholesaleOrder.model_validate(doc.to_dict())
        return None

    def get_order_for_negotiation(self, negotiation_id: str) -> Optional[WholesaleOrder]:
        docs = self.orders_collection.where('negotiation_id', '==', str(negotiation_id)).limit(1).stream()
        for doc in docs:
            return WholesaleOrder.model_validate(doc.to_dict())
        return None


class InMemoryStorage:
    """
    Process-local storage with the same contract as FirestoreStorage.

    Records are kept as JSON-mode dumps and re-validated on read, so callers
    always work on private copies. One re-entrant lock serialises all writes.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._crops: Dict[str, Dict] = {}
        self._negotiations: Dict[str, Dict] = {}
        self._threads: Dict[str, Dict] = {}
        self._orders: Dict[str, Dict] = {}
        self._thread_by_negotiation: Dict[str, str] = {}
        self._thread_by_message: Dict[str, str] = {}

    # Crop catalog
    def add_crop(self, crop: Crop) -> Crop:
        with self._lock:
            self._crops[crop.id] = crop.model_dump(mode="json")
        return crop

    def get_crop(self, crop_id: str) -> Optional[Crop]:
        data = self._crops.get(str(crop_id))
        return Crop.model_validate(data) if data else None

    def increment_sample_requests(self, crop_id: str) -> Optional[Crop]:
        with self._lock:
            data = self._crops.get(str(crop_id))
            if data is None:
                return None
            data['sample_requests'] += 1
            return Crop.model_validate(data)

    # Negotiations
    def create_negotiation(self, negotiation: Negotiation, thread: ChatThread) -> Tuple[Negotiation, ChatThread]:
        with self._lock:
            self._negotiations[negotiation.id] = negotiation.model_dump(mode="json")
            self._save_thread(thread)
        logger.info(f"Created negotiation {negotiation.id} with chat {thread.id}")
        return self.get_negotiation(negotiation.id), self.get_thread(thread.id)

    def get_negotiation(self, negotiation_id: str) -> Optional[Negotiation]:
        with self._lock:
            data = self._negotiations.get(str(negotiation_id))
            return Negotiation.model_validate(data) if data else None

    def list_negotiations(self, farmer_id: Optional[str] = None, wholesaler_id: Optional[str] = None,
                          status: Optional[NegotiationStatus] = None) -> List[Negotiation]:
        with self._lock:
            negotiations = [Negotiation.model_validate(data) for data in self._negotiations.values()]
        return _newest_first([
            n for n in negotiations
            if (farmer_id is None or n.farmer_id == farmer_id)
            and (wholesaler_id is None or n.wholesaler_id == wholesaler_id)
            and (status is None or n.status == status)
        ])

    def list_stale_negotiations(self, now: datetime) -> List[Negotiation]:
        return [n for n in self.list_negotiations(status=NegotiationStatus.ONGOING) if n.is_past_expiry(now)]

    def commit_negotiation(self, negotiation: Negotiation, expected_version: int,
                           message: Optional[ChatMessage] = None) -> Negotiation:
        with self._lock:
            stored = self._negotiations.get(negotiation.id)
            if stored is None:
                raise NotFoundError(f"Negotiation {negotiation.id} not found")
            if stored['version'] != expected_version:
                raise ConcurrentModificationError(f"Negotiation {negotiation.id} was modified concurrently")
            thread = None
            if message is not None:
                thread = self.get_thread(negotiation.chat_id)
                if thread is None:
                    raise InconsistentStateError(
                        f"Chat {negotiation.chat_id} for negotiation {negotiation.id} is missing"
                    )
                thread.append(message)
            data = negotiation.model_dump(mode="json")
            data['version'] = expected_version + 1
            self._negotiations[negotiation.id] = data
            if thread is not None:
                self._save_thread(thread)
            return Negotiation.model_validate(data)

    # Chat threads
    def _save_thread(self, thread: ChatThread):
        self._threads[thread.id] = thread.model_dump(mode="json")
        if thread.negotiation_id:
            self._thread_by_negotiation[thread.negotiation_id] = thread.id
        for message in thread.messages:
            self._thread_by_message[message.id] = thread.id

    def create_thread(self, thread: ChatThread) -> ChatThread:
        with self._lock:
            self._save_thread(thread)
        return self.get_thread(thread.id)

    def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        with self._lock:
            data = self._threads.get(str(thread_id))
            return ChatThread.model_validate(data) if data else None

    def get_thread_for_negotiation(self, negotiation_id: str) -> Optional[ChatThread]:
        thread_id = self._thread_by_negotiation.get(str(negotiation_id))
        return self.get_thread(thread_id) if thread_id else None

    def find_thread_for_pair(self, farmer_id: str, wholesaler_id: str) -> Optional[ChatThread]:
        with self._lock:
            for data in self._threads.values():
                participants = data['participants']
                if (data.get('negotiation_id') is None
                        and participants['farmer_id'] == farmer_id
                        and participants['wholesaler_id'] == wholesaler_id):
                    return ChatThread.model_validate(data)
        return None

    def append_message(self, thread_id: str, message: ChatMessage) -> ChatMessage:
        with self._lock:
            thread = self.get_thread(thread_id)
            if thread is None:
                raise NotFoundError(f"Chat {thread_id} not found")
            thread.append(message)
            self._save_thread(thread)
        return message

    def find_thread_by_message(self, message_id: str) -> Optional[ChatThread]:
        thread_id = self._thread_by_message.get(str(message_id))
        return self.get_thread(thread_id) if thread_id else None

    def mark_message_read(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            thread = self.find_thread_by_message(message_id)
            if thread is None:
                return None
            message = thread.find_message(message_id)
            message.is_read = True
            self._save_thread(thread)
            return message

    def list_threads(self, farmer_id: Optional[str] = None, wholesaler_id: Optional[str] = None) -> List[ChatThread]:
        with self._lock:
            threads = [ChatThread.model_validate(data) for data in self._threads.values()]
        return _by_last_activity([
            t for t in threads
            if (farmer_id is None or t.participants.farmer_id == farmer_id)
            and (wholesaler_id is None or t.participants.wholesaler_id == wholesaler_id)
        ])

    # Wholesale orders
    def create_order_for_negotiation(self, order: WholesaleOrder) -> WholesaleOrder:
        with self._lock:
            stored = self._negotiations.get(order.negotiation_id)
            if stored is None:
                raise NotFoundError(f"Negotiation {order.negotiation_id} not found")
            if stored.get('created_order_id'):
                raise InvalidStateError("Order already exists for this negotiation")
            self._orders[order.id] = order.model_dump(mode="json")
            stored['created_order_id'] = order.id
            stored['version'] += 1
            stored['updated_at'] = utcnow().isoformat()
        logger.info(f"Created order {order.order_number} for negotiation {order.negotiation_id}")
        return order

    def get_order(self, order_id: str) -> Optional[WholesaleOrder]:
        data = self._orders.get(str(order_id))
        return WholesaleOrder.model_validate(data) if data else None

    def get_order_for_negotiation(self, negotiation_id: str) -> Optional[WholesaleOrder]:
        with self._lock:
            for data in self._orders.values():
                if data['negotiation_id'] == str(negotiation_id):
                    return WholesaleOrder.model_validate(data)
        return None


@lru_cache(maxsize=1)
def get_storage():
    """Storage selected by STORAGE_BACKEND, falling back to memory if Firestore is unavailable"""
    if STORAGE_BACKEND == "memory":
        logger.info("Using in-memory storage")
        return InMemoryStorage()
    try:
        return FirestoreStorage()
    except Exception as e:
        logger.error(f"Failed to initialize Firebase storage: {e}")
        logger.warning("Falling back to in-memory storage. Data will not persist.")
        return InMemoryStorage()
