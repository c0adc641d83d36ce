#!/usr/bin/env python3
"""
Unit Tests for Port Adapters

Group membership, usage history and emergency count providers with a
mocked Unit of Work.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

sys.path.append(str(Path(__file__).parent.parent.parent))

from coshare_booking.domain.models import GroupMember, TimeRange
from coshare_booking.infrastructure.providers import (
    StaticGroupContextProvider, RepositoryUsageHistoryProvider, RepositoryEmergencyCountProvider
)

AS_OF = datetime(2026, 3, 17, 12, 0, tzinfo=timezone.utc)


def mock_uow_factory():
    """Factory returning a context-managed Unit of Work mock"""
    uow = MagicMock()
    uow.__enter__.return_value = uow
    uow.__exit__.return_value = False
    return MagicMock(return_value=uow), uow


class TestStaticGroupContextProvider(unittest.TestCase):

    def test_members_by_group(self):
        provider = StaticGroupContextProvider({
            "group-1": [GroupMember("alice", Decimal("0.6"), "admin"),
                        GroupMember("bob", Decimal("0.4"))]
        })

        self.assertEqual([m.user_id for m in provider.get_members("group-1")], ["alice", "bob"])
        self.assertEqual(provider.get_members("unknown"), [])

    def test_members_replaced(self):
        """Test that set_members replaces a group's membership"""
        provider = StaticGroupContextProvider()
        provider.set_members("group-1", [GroupMember("alice", Decimal("1"))])
        provider.set_members("group-1", [GroupMember("carol", Decimal("1"))])

        self.assertEqual([m.user_id for m in provider.get_members("group-1")], ["carol"])

    def test_duplicate_members_rejected(self):
        provider = StaticGroupContextProvider()
        with self.assertRaises(ValueError):
            provider.set_members("group-1", [GroupMember("alice", Decimal("0.5")),
                                             GroupMember("alice", Decimal("0.5"))])

    def test_returned_list_is_a_copy(self):
        provider = StaticGroupContextProvider({"group-1": [GroupMember("alice", Decimal("1"))]})
        provider.get_members("group-1").clear()
        self.assertEqual(len(provider.get_members("group-1")), 1)


class TestRepositoryUsageHistoryProvider(unittest.TestCase):

    def setUp(self):
        self.factory, self.uow = mock_uow_factory()
        self.provider = RepositoryUsageHistoryProvider(self.factory)

    def test_whole_days_since_last_end(self):
        """Test that partial days are truncated"""
        self.uow.reservations.last_reservation_end.return_value = AS_OF - timedelta(days=4, hours=20)

        days = self.provider.days_since_last_reservation("bob", "vehicle-1", AS_OF)

        self.assertEqual(days, 4)
        self.uow.reservations.last_reservation_end.assert_called_once_with("bob", "vehicle-1", AS_OF)

    def test_never_reserved(self):
        self.uow.reservations.last_reservation_end.return_value = None
        self.assertIsNone(self.provider.days_since_last_reservation("bob", "vehicle-1", AS_OF))

    def test_end_after_as_of_counts_as_zero(self):
        """Test that a trip still running yields zero days"""
        self.uow.reservations.last_reservation_end.return_value = AS_OF + timedelta(hours=2)
        self.assertEqual(self.provider.days_since_last_reservation("bob", "vehicle-1", AS_OF), 0)


class TestRepositoryEmergencyCountProvider(unittest.TestCase):

    def test_counts_calendar_month(self):
        """Test that the count covers the UTC month of as_of"""
        factory, uow = mock_uow_factory()
        uow.reservations.count_emergency_for_user.return_value = 2
        provider = RepositoryEmergencyCountProvider(factory)

        self.assertEqual(provider.emergency_count_this_month("bob", AS_OF), 2)

        user_id, period = uow.reservations.count_emergency_for_user.call_args[0]
        self.assertEqual(user_id, "bob")
        self.assertEqual(period, TimeRange(datetime(2026, 3, 1, tzinfo=timezone.utc),
                                           datetime(2026, 4, 1, tzinfo=timezone.utc)))
        uow.__exit__.assert_called_once()


if __name__ == '__main__':
    unittest.main(verbosity=2)
