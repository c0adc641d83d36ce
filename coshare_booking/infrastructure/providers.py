# File: coshare_booking/infrastructure/providers.py
"""
Adapters for the booking core's read-only ports

- StaticGroupContextProvider: group membership held in memory
- RepositoryUsageHistoryProvider: days since a member's last reservation
- RepositoryEmergencyCountProvider: emergency reservations in a calendar month

The repository-backed providers open their own Unit of Work per call.
"""

from typing import Callable, Dict, Iterable, List, Optional
from datetime import datetime
import logging
import threading

from ..domain.models import GroupMember, ensure_utc, month_bounds
from .repositories import UnitOfWork


class StaticGroupContextProvider:
    """Group memberships supplied up front, replaceable at runtime"""

    def __init__(self, groups: Optional[Dict[str, Iterable[GroupMember]]] = None):
        self._groups: Dict[str, List[GroupMember]] = {}
        self._lock = threading.Lock()
        for group_id, members in (groups or {}).items():
            self.set_members(group_id, members)

    def set_members(self, group_id: str, members: Iterable[GroupMember]) -> None:
        members = list(members)
        user_ids = [member.user_id for member in members]
        if len(set(user_ids)) != len(user_ids):
            raise ValueError(f"Duplicate members in group {group_id}")

        with self._lock:
            self._groups[group_id] = members

    def get_members(self, group_id: str) -> List[GroupMember]:
        with self._lock:
            return list(self._groups.get(group_id, []))


class RepositoryUsageHistoryProvider:
    """Usage history derived from finished and upcoming reservations"""

    def __init__(self, uow_factory: Callable[[], UnitOfWork]):
        self.uow_factory = uow_factory
        self.logger = logging.getLogger(self.__class__.__name__)

    def days_since_last_reservation(self, user_id: str, vehicle_id: str,
                                    as_of: datetime) -> Optional[int]:
        as_of = ensure_utc(as_of)
        with self.uow_factory() as uow:
            last_end = uow.reservations.last_reservation_end(user_id, vehicle_id, as_of)

        if last_end is None:
            return None
        return max(0, (as_of - last_end).days)


class RepositoryEmergencyCountProvider:
    """Emergency reservations created by a member in the UTC month of as_of"""

    def __init__(self, uow_factory: Callable[[], UnitOfWork]):
        self.uow_factory = uow_factory
        self.logger = logging.getLogger(self.__class__.__name__)

    def emergency_count_this_month(self, user_id: str, as_of: datetime) -> int:
        period = month_bounds(ensure_utc(as_of))
        with self.uow_factory() as uow:
            count = uow.reservations.count_emergency_for_user(user_id, period)

        self.logger.debug(f"User {user_id} has {count} emergency reservations in {period}")
        return count
