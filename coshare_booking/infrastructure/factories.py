# File: coshare_booking/infrastructure/factories.py
"""
Wiring of the booking core

ServiceFactory turns BookingSettings into a ready BookingApplication:
- Unit of Work factory (SQLAlchemy or in-memory store)
- Per-rule lock provider (in-process or Redis)
- Message bus (in-process queue, MongoDB event store when configured)
  and the notification sink on top of it
- BookingService and RecurrenceService sharing the above
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging

from ..config import BookingSettings
from ..application.ports import GroupContextProvider, NotificationSink
from ..application.booking_service import BookingService
from ..application.recurrence_service import RecurrenceService
from .repositories import InMemoryDatabase, InMemoryUnitOfWork, SQLAlchemyUnitOfWork, RepositoryFactory, UnitOfWork
from .locks import RuleLockProvider, InProcessRuleLockProvider, RedisRuleLockProvider
from .messaging import (
    EventBus, EventStore, InMemoryMessageQueue, MessageBus, MessageBusNotificationSink
)
from .providers import (
    StaticGroupContextProvider, RepositoryUsageHistoryProvider, RepositoryEmergencyCountProvider
)


@dataclass
class BookingApplication:
    """Fully wired booking core"""
    settings: BookingSettings
    booking_service: BookingService
    recurrence_service: RecurrenceService
    notifications: NotificationSink
    message_bus: Optional[MessageBus] = None

    def run_sweeps(self) -> None:
        """One pass of the periodic jobs"""
        self.recurrence_service.run_generation_sweep()
        self.booking_service.run_reminder_sweep()

    def close(self) -> None:
        if self.message_bus is not None:
            self.message_bus.close()


class ServiceFactory:
    """Factory for creating application services from settings"""

    def __init__(
        self,
        settings: Optional[BookingSettings] = None,
        group_context: Optional[GroupContextProvider] = None,
        uow_factory: Optional[Callable[[], UnitOfWork]] = None,
        lock_provider: Optional[RuleLockProvider] = None,
        notifications: Optional[NotificationSink] = None
    ):
        self.settings = settings or BookingSettings()
        self.group_context = group_context or StaticGroupContextProvider()
        self.uow_factory = uow_factory or self.create_uow_factory()
        self.lock_provider = lock_provider or self.create_lock_provider()
        self.message_bus: Optional[MessageBus] = None
        self.notifications = notifications or self.create_notification_sink()
        self.logger = logging.getLogger(self.__class__.__name__)

    def create_uow_factory(self) -> Callable[[], UnitOfWork]:
        """Fresh Unit of Work per use case over one shared store"""
        if self.settings.uses_in_memory_storage:
            database = InMemoryDatabase()
            return lambda: InMemoryUnitOfWork(database)

        session_factory = RepositoryFactory.create_session_factory(self.settings.database_url)
        return lambda: SQLAlchemyUnitOfWork(session_factory)

    def create_lock_provider(self) -> RuleLockProvider:
        if self.settings.lock_backend == "redis":
            return RedisRuleLockProvider.from_url(self.settings.redis_url)
        return InProcessRuleLockProvider()

    def create_message_bus(self) -> MessageBus:
        """In-process delivery, audited to MongoDB when a mongo_url is set"""
        event_store = None
        if self.settings.mongo_url:
            event_store = EventStore(self.settings.mongo_url)

        return MessageBus(
            event_bus=EventBus(),
            message_queue=InMemoryMessageQueue(),
            event_store=event_store
        )

    def create_notification_sink(self) -> NotificationSink:
        self.message_bus = self.create_message_bus()
        return MessageBusNotificationSink(self.message_bus)

    def create_booking_service(self) -> BookingService:
        """Create BookingService with dependencies"""
        return BookingService(
            uow_factory=self.uow_factory,
            group_context=self.group_context,
            usage_history=RepositoryUsageHistoryProvider(self.uow_factory),
            emergency_counts=RepositoryEmergencyCountProvider(self.uow_factory),
            notifications=self.notifications,
            settings=self.settings
        )

    def create_recurrence_service(self, booking_service: BookingService) -> RecurrenceService:
        """Create RecurrenceService generating through the given booking service"""
        return RecurrenceService(
            uow_factory=self.uow_factory,
            booking_service=booking_service,
            lock_provider=self.lock_provider,
            notifications=self.notifications,
            settings=self.settings
        )

    def build(self) -> BookingApplication:
        booking_service = self.create_booking_service()
        recurrence_service = self.create_recurrence_service(booking_service)
        self.logger.info(f"Booking core wired: {self.settings.to_dict()}")

        return BookingApplication(
            settings=self.settings,
            booking_service=booking_service,
            recurrence_service=recurrence_service,
            notifications=self.notifications,
            message_bus=self.message_bus
        )
