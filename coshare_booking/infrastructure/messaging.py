# File: coshare_booking/infrastructure/messaging.py
"""
Messaging Infrastructure for the Booking Core

This module carries booking domain events out of the core:
1. Event Bus - For intra-process event publishing/subscription
2. Message Queue - Topic queue abstraction with an in-process implementation
3. Event Store - MongoDB audit log of published events
4. Message Bus - Routes events to the bus, the store and a broker (outbox + retry)
5. Notification Sinks - Adapters implementing the NotificationSink port

Key Patterns:
- Publish/Subscribe
- Outbox Pattern for reliable messaging
- Retry with exponential backoff

Topics:
- booking.reservations  reservation lifecycle events
- booking.recurrence    recurrence rule events
- booking.billing       late-return fee events (billing hand-off)
- booking.maintenance   maintenance window events
- booking.notifications member-facing notifications (reminders, fees)
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable, Tuple
from datetime import datetime
import logging
import json
import time
import threading
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4

import pymongo
from pymongo.errors import PyMongoError

from ..domain import models
from ..domain.models import ensure_utc, utcnow


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"
    NOTIFICATION = "notification"


class EventType(str, Enum):
    """Booking event types, matching the event_type of the domain events"""
    # Reservation events
    RESERVATION_CREATED = "reservation.created"
    RESERVATION_PENDING_APPROVAL = "reservation.pending_approval"
    RESERVATION_APPROVED = "reservation.approved"
    RESERVATION_CANCELLED = "reservation.cancelled"
    TRIP_STARTED = "reservation.trip_started"
    TRIP_COMPLETED = "reservation.trip_completed"
    REMINDER_DUE = "reservation.reminder_due"
    EMERGENCY_OVERRIDE = "reservation.emergency_override"
    EMERGENCY_DEMOTED = "reservation.emergency_demoted"

    # Billing events
    LATE_FEE_CREATED = "late_fee.created"
    LATE_FEE_STATUS_CHANGED = "late_fee.status_changed"

    # Recurrence events
    RECURRENCE_CREATED = "recurrence.created"
    RECURRENCE_STATUS_CHANGED = "recurrence.status_changed"
    RECURRENCE_OCCURRENCE_SKIPPED = "recurrence.occurrence_skipped"
    RECURRENCE_GENERATED = "recurrence.generated"

    # Maintenance events
    MAINTENANCE_SCHEDULED = "maintenance.scheduled"
    MAINTENANCE_CANCELLED = "maintenance.cancelled"

    @property
    def topic(self) -> str:
        prefix = self.value.split(".", 1)[0]
        return EVENT_TOPICS[prefix]


EVENT_TOPICS = {
    "reservation": "booking.reservations",
    "recurrence": "booking.recurrence",
    "late_fee": "booking.billing",
    "maintenance": "booking.maintenance",
}

NOTIFICATION_TOPIC = "booking.notifications"


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[UUID] = None
    source: Optional[str] = "coshare-booking"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['message_id'] = str(self.message_id)
        data['message_type'] = self.message_type.value
        data['timestamp'] = self.timestamp.isoformat()
        data['correlation_id'] = str(self.correlation_id) if self.correlation_id else None
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        """Create message from dictionary"""
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        data['message_id'] = UUID(data['message_id'])
        data['message_type'] = MessageType(data['message_type'])
        if data.get('correlation_id'):
            data['correlation_id'] = UUID(data['correlation_id'])
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'Message':
        """Create message from JSON string"""
        return message_from_dict(json.loads(json_str))


@dataclass
class DomainEvent(Message):
    """Envelope for a booking domain event"""
    event_type: EventType = EventType.RESERVATION_CREATED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    version: str = "1.0"

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT

    @property
    def topic(self) -> str:
        return self.event_type.topic

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['event_type'] = self.event_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DomainEvent':
        data = dict(data)
        data['event_type'] = EventType(data['event_type'])
        return super().from_dict(data)

    @classmethod
    def from_domain(cls, event: models.DomainEvent,
                    correlation_id: Optional[UUID] = None) -> 'DomainEvent':
        """Wrap an event raised by an aggregate"""
        return cls(
            message_id=UUID(event.event_id),
            timestamp=event.timestamp,
            correlation_id=correlation_id,
            event_type=EventType(event.event_type),
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            data=event.payload(),
            version=event.version
        )


@dataclass
class Notification(Message):
    """Member-facing notification"""
    notification_type: str = ""
    recipient: Optional[str] = None
    title: str = ""
    body: str = ""
    priority: str = "normal"  # low, normal, high, urgent

    def __post_init__(self):
        self.message_type = MessageType.NOTIFICATION


_MESSAGE_CLASSES = {
    MessageType.DOMAIN_EVENT.value: DomainEvent,
    MessageType.NOTIFICATION.value: Notification,
}


def message_from_dict(data: Dict[str, Any]) -> Message:
    """Rebuild a message of the right class from its dictionary form"""
    message_class = _MESSAGE_CLASSES.get(data.get('message_type'), Message)
    return message_class.from_dict(data)


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handler failures are logged and never reach the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []

        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type.value}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.debug(f"Publishing event: {event.event_type.value} (ID: {event.message_id})")

        for handler in list(self._subscribers.get(event.event_type, [])):
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type.value} with "
                    f"{handler.__class__.__name__}: {e}", exc_info=True
                )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        self._subscribers.clear()


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract message queue interface"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to a topic; returns a subscription id"""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    @abstractmethod
    def create_topic(self, topic: str, **kwargs) -> bool:
        pass

    @abstractmethod
    def delete_topic(self, topic: str) -> bool:
        pass

    def close(self) -> None:
        """Release broker connections"""
        pass


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for tests and single-process deployments"""

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}
        self._callbacks: Dict[str, Tuple[str, Callable[[Message], None]]] = {}  # subscription_id -> (topic, callback)
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        """Publish message to in-memory topic"""
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
            callbacks = [cb for t, cb in self._callbacks.values() if t == topic]

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")

        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._messages.setdefault(topic, [])
            self._callbacks[subscription_id] = (topic, callback)

        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._callbacks.pop(subscription_id, None) is not None

    def create_topic(self, topic: str, **kwargs) -> bool:
        with self._lock:
            if topic in self._messages:
                return False
            self._messages[topic] = []
            return True

    def delete_topic(self, topic: str) -> bool:
        with self._lock:
            if topic not in self._messages:
                return False
            del self._messages[topic]
            for sid in [sid for sid, (t, _) in self._callbacks.items() if t == topic]:
                del self._callbacks[sid]
            return True

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages for a topic (for testing)"""
        with self._lock:
            return list(self._messages.get(topic, []))

    def clear(self):
        """Clear all messages and subscriptions (for testing)"""
        with self._lock:
            self._messages.clear()
            self._callbacks.clear()


# ============================================================================
# EVENT STORE
# ============================================================================

class EventStore:
    """
    MongoDB audit log of booking events

    One document per published event, keyed by the event id so that
    re-publishing the same event is a no-op.
    """

    def __init__(self, mongo_url: str = "mongodb://localhost:27017",
                 database: str = "booking_events", client: Optional[pymongo.MongoClient] = None,
                 **kwargs):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = client or pymongo.MongoClient(mongo_url, **kwargs)
        self.db = self.client[database]
        self.events_collection = self.db['events']

        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])
        self.events_collection.create_index([('timestamp', 1)])

    def save(self, event: DomainEvent) -> bool:
        """Save a domain event to the store"""
        try:
            result = self.events_collection.replace_one(
                {'_id': str(event.message_id)},
                self._event_to_document(event),
                upsert=True
            )
            self._logger.debug(f"Saved event {event.event_type.value} for aggregate {event.aggregate_id}")
            return result.acknowledged
        except PyMongoError as e:
            self._logger.error(f"Error saving event to store: {e}", exc_info=True)
            return False

    def get_events_for_aggregate(self, aggregate_id: str) -> List[DomainEvent]:
        """All events of one aggregate in time order"""
        try:
            cursor = self.events_collection.find({'aggregate_id': aggregate_id}).sort('timestamp', 1)
            return [self._document_to_event(doc) for doc in cursor]
        except PyMongoError as e:
            self._logger.error(f"Error getting events for aggregate {aggregate_id}: {e}", exc_info=True)
            return []

    def get_events_by_type(self, event_type: EventType, limit: int = 100) -> List[DomainEvent]:
        """Most recent events of a type"""
        try:
            cursor = self.events_collection.find(
                {'event_type': event_type.value}
            ).sort('timestamp', -1).limit(limit)
            return [self._document_to_event(doc) for doc in cursor]
        except PyMongoError as e:
            self._logger.error(f"Error getting events by type: {e}", exc_info=True)
            return []

    def _event_to_document(self, event: DomainEvent) -> Dict[str, Any]:
        """Envelope fields plus a native timestamp so queries can sort on it"""
        document = event.to_dict()
        document['_id'] = document['message_id']
        document['timestamp'] = event.timestamp
        return document

    def _document_to_event(self, doc: Dict[str, Any]) -> DomainEvent:
        """MongoDB hands datetimes back naive; they are stored as UTC"""
        data = {key: value for key, value in doc.items() if key != '_id'}
        data['timestamp'] = ensure_utc(doc['timestamp']).isoformat()
        return DomainEvent.from_dict(data)

    def close(self):
        """Close MongoDB connection"""
        self.client.close()
        self._logger.info("Event store closed")


# ============================================================================
# MESSAGE BUS (Orchestrator)
# ============================================================================

class MessageBus:
    """
    Routes events between the event bus, the event store and a broker

    Broker delivery goes through an outbox drained with retry. With
    background_delivery the outbox drains on a daemon thread; otherwise
    each publish drains it before returning.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[EventStore] = None,
        background_delivery: bool = False,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self.background_delivery = background_delivery
        self._logger = logging.getLogger(self.__class__.__name__)

        self._outbox: List[Tuple[str, Message]] = []
        self._dead_letters: List[Tuple[str, Message]] = []
        self._outbox_lock = threading.Lock()
        self._draining = False

        self.max_retries = max_retries
        self.retry_delay = retry_delay  # seconds

    def publish_event(self, event: DomainEvent, store: bool = True) -> None:
        """Publish a domain event through all channels"""
        self._logger.info(f"Publishing event {event.event_type.value} for {event.aggregate_id}")

        if store and self.event_store:
            self.event_store.save(event)

        self.event_bus.publish(event)

        if self.message_queue:
            self._add_to_outbox(event.topic, event)

    def publish_notification(self, notification: Notification) -> None:
        """Publish a notification"""
        self._logger.info(f"Publishing notification {notification.notification_type} to {notification.recipient}")

        if self.message_queue:
            self._add_to_outbox(NOTIFICATION_TOPIC, notification)

    @property
    def pending(self) -> int:
        with self._outbox_lock:
            return len(self._outbox)

    @property
    def dead_letters(self) -> List[Tuple[str, Message]]:
        with self._outbox_lock:
            return list(self._dead_letters)

    def _add_to_outbox(self, topic: str, message: Message) -> None:
        """Add message to outbox for reliable delivery"""
        with self._outbox_lock:
            self._outbox.append((topic, message))
            if self._draining:
                return
            self._draining = True

        if self.background_delivery:
            threading.Thread(target=self._process_outbox, daemon=True).start()
        else:
            self._process_outbox()

    def _process_outbox(self) -> None:
        """Drain the outbox in order; undeliverable messages go to dead letters"""
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    self._draining = False
                    return
                topic, message = self._outbox.pop(0)

            if not self._publish_with_retry(topic, message):
                self._logger.error(f"Failed to publish message {message.message_id} to {topic} after retries")
                with self._outbox_lock:
                    self._dead_letters.append((topic, message))

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        """Publish message with retry logic"""
        for attempt in range(self.max_retries):
            try:
                if self.message_queue.publish(topic, message):
                    return True
                self._logger.warning(f"Attempt {attempt + 1} not acknowledged for message {message.message_id}")
            except Exception as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}: {e}")
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff

        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events on the event bus"""
        self.event_bus.subscribe(event_type, handler)

    def subscribe_to_queue(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to messages from a queue"""
        if self.message_queue:
            return self.message_queue.subscribe(topic, callback)
        raise RuntimeError("Message queue not configured")

    def close(self):
        """Close all messaging components"""
        if self.message_queue:
            self.message_queue.close()

        if self.event_store:
            self.event_store.close()

        self._logger.info("Message bus closed")


# ============================================================================
# NOTIFICATION SINKS
# ============================================================================

def _reminder_notification(event: DomainEvent) -> Notification:
    data = event.data
    return Notification(
        correlation_id=event.message_id,
        notification_type="booking_reminder",
        recipient=data.get("requester_id"),
        title="Upcoming booking",
        body=f"Your booking of vehicle {data.get('vehicle_id')} starts at {data.get('start_time')}",
        priority="normal" if data.get("reminder") == "pre_checkout" else "high"
    )


def _late_fee_notification(event: DomainEvent) -> Notification:
    data = event.data
    return Notification(
        correlation_id=event.message_id,
        notification_type="late_return_fee",
        recipient=data.get("requester_id"),
        title="Late return fee",
        body=(f"Vehicle {data.get('vehicle_id')} was returned {data.get('late_minutes')} minutes late; "
              f"a fee of {data.get('amount')} {data.get('currency')} applies"),
    )


def _superseded_notification(event: DomainEvent) -> Optional[Notification]:
    data = event.data
    if not data.get("superseded_by"):
        return None
    return Notification(
        correlation_id=event.message_id,
        notification_type="booking_superseded",
        recipient=data.get("requester_id"),
        title="Booking cancelled by an emergency",
        body=f"Your booking {event.aggregate_id} was superseded by emergency booking {data.get('superseded_by')}",
        priority="urgent"
    )


NOTIFICATION_BUILDERS: Dict[EventType, Callable[[DomainEvent], Optional[Notification]]] = {
    EventType.REMINDER_DUE: _reminder_notification,
    EventType.LATE_FEE_CREATED: _late_fee_notification,
    EventType.RESERVATION_CANCELLED: _superseded_notification,
}


class MessageBusNotificationSink:
    """NotificationSink that forwards domain events to a MessageBus"""

    def __init__(self, message_bus: MessageBus):
        self.message_bus = message_bus
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, event: models.DomainEvent) -> None:
        envelope = DomainEvent.from_domain(event)
        self.message_bus.publish_event(envelope)

        builder = NOTIFICATION_BUILDERS.get(envelope.event_type)
        notification = builder(envelope) if builder else None
        if notification is not None:
            self.message_bus.publish_notification(notification)


class InMemoryNotificationSink:
    """NotificationSink that records events (for testing)"""

    def __init__(self):
        self.events: List[models.DomainEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: models.DomainEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[models.DomainEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    @property
    def event_types(self) -> List[str]:
        with self._lock:
            return [e.event_type for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
