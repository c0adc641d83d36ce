"""
Integration Tests Package for the Booking Core

This package contains integration tests that drive the application services
end to end over real repositories (in-memory store or SQLite).

Integration tests focus on:
1. Reservation creation, arbitration and emergency override
2. Trip lifecycle, late-return fees and reminders
3. Recurring reservations and the generation sweep
4. Persistence through SQLAlchemy
5. Wiring from settings
"""

import sys
import unittest
from datetime import datetime, timedelta, timezone, time, date
from decimal import Decimal
from pathlib import Path
from typing import Optional

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from coshare_booking.config import BookingSettings
from coshare_booking.domain.models import GroupMember
from coshare_booking.application.booking_service import BookingService
from coshare_booking.application.recurrence_service import RecurrenceService
from coshare_booking.application.dtos import ReservationRequestDTO, RecurrenceRuleRequestDTO
from coshare_booking.infrastructure.repositories import InMemoryDatabase, InMemoryUnitOfWork
from coshare_booking.infrastructure.locks import InProcessRuleLockProvider
from coshare_booking.infrastructure.messaging import InMemoryNotificationSink
from coshare_booking.infrastructure.providers import (
    StaticGroupContextProvider, RepositoryUsageHistoryProvider, RepositoryEmergencyCountProvider
)

__version__ = "1.0.0"
__description__ = "Integration tests for the co-owned vehicle booking core"

# Monday 2 March 2026, 00:00 UTC
MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


class IntegrationTestConfig:
    """Configuration for integration tests"""

    GROUP_ID = "group-1"
    VEHICLE_ID = "vehicle-1"
    OTHER_VEHICLE_ID = "vehicle-2"

    ADMIN = "alice"      # 60 % share, group admin
    MEMBER = "bob"       # 40 % share
    OUTSIDER = "mallory"

    @classmethod
    def members(cls):
        return [
            GroupMember(cls.ADMIN, Decimal("0.6"), "admin"),
            GroupMember(cls.MEMBER, Decimal("0.4")),
        ]


class FixedClock:
    """Controllable clock handed to the services"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class BookingDataGenerator:
    """Builds request DTOs for the scenarios"""

    @staticmethod
    def at(days: float = 0, hours: float = 0, minutes: float = 0) -> datetime:
        """A moment relative to MONDAY"""
        return MONDAY + timedelta(days=days, hours=hours, minutes=minutes)

    @staticmethod
    def reservation_request(requester_id: str, start_time: datetime, end_time: datetime,
                            vehicle_id: str = IntegrationTestConfig.VEHICLE_ID,
                            **overrides) -> ReservationRequestDTO:
        return ReservationRequestDTO(
            vehicle_id=vehicle_id,
            group_id=overrides.pop("group_id", IntegrationTestConfig.GROUP_ID),
            requester_id=requester_id,
            start_time=start_time,
            end_time=end_time,
            **overrides
        )

    @staticmethod
    def weekly_rule_request(requester_id: str, weekdays=(1, 3),
                            start_date: date = date(2026, 3, 2),
                            **overrides) -> RecurrenceRuleRequestDTO:
        """Tuesdays and Thursdays 08:00-09:00 UTC unless overridden"""
        values = dict(
            vehicle_id=IntegrationTestConfig.VEHICLE_ID,
            group_id=IntegrationTestConfig.GROUP_ID,
            requester_id=requester_id,
            pattern="weekly",
            weekdays=list(weekdays),
            start_time_of_day=time(8, 0),
            end_time_of_day=time(9, 0),
            start_date=start_date,
        )
        values.update(overrides)
        return RecurrenceRuleRequestDTO(**values)


class BookingIntegrationBase(unittest.TestCase):
    """
    Base class wiring both services over one in-memory database
    The clock starts on Sunday 1 March 2026, 12:00 UTC
    """

    def build_settings(self) -> BookingSettings:
        return BookingSettings(database_url="memory")

    def build_uow_factory(self):
        database = InMemoryDatabase()
        return lambda: InMemoryUnitOfWork(database)

    def setUp(self):
        self.clock = FixedClock(MONDAY - timedelta(hours=12))
        self.settings = self.build_settings()
        self.uow_factory = self.build_uow_factory()
        self.notifications = InMemoryNotificationSink()
        self.groups = StaticGroupContextProvider({
            IntegrationTestConfig.GROUP_ID: IntegrationTestConfig.members()
        })

        self.booking_service = BookingService(
            uow_factory=self.uow_factory,
            group_context=self.groups,
            usage_history=RepositoryUsageHistoryProvider(self.uow_factory),
            emergency_counts=RepositoryEmergencyCountProvider(self.uow_factory),
            notifications=self.notifications,
            settings=self.settings,
            clock=self.clock
        )
        self.lock_provider = InProcessRuleLockProvider()
        self.recurrence_service = RecurrenceService(
            uow_factory=self.uow_factory,
            booking_service=self.booking_service,
            lock_provider=self.lock_provider,
            clock=self.clock
        )

    def make_admin(self, user_id: str) -> None:
        """Give a member the admin role; only admins declare emergencies by default"""
        self.groups.set_members(IntegrationTestConfig.GROUP_ID, [
            GroupMember(m.user_id, m.ownership_share, "admin" if m.user_id == user_id else m.role)
            for m in IntegrationTestConfig.members()
        ])

    at = staticmethod(BookingDataGenerator.at)

    def reserve(self, requester_id: str, start_time: datetime, end_time: datetime, **overrides):
        """Create a reservation through the service"""
        request = BookingDataGenerator.reservation_request(
            requester_id, start_time, end_time, **overrides
        )
        return self.booking_service.create_reservation(request)

    def rule_reservations(self, rule_id: str, statuses: Optional[list] = None):
        with self.uow_factory() as uow:
            return uow.reservations.find_by_recurrence(rule_id, statuses=statuses)
