# File: coshare_booking/application/ports.py
"""
Ports to the collaborators around the booking core

The core never joins into foreign tables; group membership, usage history,
emergency counts and outbound notifications are reached through these
protocols. Adapters live in the infrastructure layer.
"""

from typing import List, Optional, Protocol, runtime_checkable
from datetime import datetime

from ..domain.models import GroupMember, DomainEvent


@runtime_checkable
class GroupContextProvider(Protocol):
    """Read-only view of co-ownership groups"""

    def get_members(self, group_id: str) -> List[GroupMember]:
        """Members of the group with their ownership shares"""
        ...


@runtime_checkable
class UsageHistoryProvider(Protocol):
    """Read-only usage history used for fairness"""

    def days_since_last_reservation(self, user_id: str, vehicle_id: str,
                                    as_of: datetime) -> Optional[int]:
        """Whole days since the member's last reservation ended; None if never"""
        ...


@runtime_checkable
class EmergencyCountProvider(Protocol):
    """Read-only count of emergency reservations"""

    def emergency_count_this_month(self, user_id: str, as_of: datetime) -> int:
        """Emergency reservations of the member in the calendar month of as_of"""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Outbound notifications and billing hand-off"""

    def publish(self, event: DomainEvent) -> None:
        ...
