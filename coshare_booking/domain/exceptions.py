# File: coshare_booking/domain/exceptions.py
"""
Error kinds of the booking core

Hierarchy:
    BookingError
    ├── SchedulingConflict          - candidate interval overlaps blocking windows
    ├── InvalidTransition           - lifecycle move not allowed from current state
    ├── EmergencyCapExceeded        - emergency flag demoted (never reaches callers)
    ├── RecurrenceGenerationSkipped - one occurrence could not be materialized
    ├── ConcurrentModification      - check-then-insert or version check lost a race
    └── NotFoundError               - referenced aggregate does not exist
        ├── ReservationNotFound
        ├── RecurrenceRuleNotFound
        ├── LateFeeNotFound
        └── MaintenanceBlockNotFound
"""

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .strategies import ConflictResult
    from .models import TimeRange


class BookingError(Exception):
    """Base exception for booking core errors"""
    pass


class SchedulingConflict(BookingError):
    """Raised when a transition into an exclusive status meets conflicts"""

    def __init__(self, result: 'ConflictResult', message: Optional[str] = None):
        self.result = result
        super().__init__(
            message or f"Scheduling conflict with {len(result.conflicts)} blocking window(s)"
        )


class InvalidTransition(BookingError, ValueError):
    """Raised when a lifecycle transition is not permitted"""

    def __init__(self, entity: str, current_state: str, action: str):
        self.entity = entity
        self.current_state = current_state
        self.action = action
        super().__init__(f"Cannot {action} {entity} with status {current_state}")


class EmergencyCapExceeded(BookingError):
    """Emergency quota for the month is used up; the request is demoted"""

    def __init__(self, user_id: str, count: int, cap: int):
        self.user_id = user_id
        self.count = count
        self.cap = cap
        super().__init__(
            f"User {user_id} used {count} of {cap} emergency reservations this month"
        )


class RecurrenceGenerationSkipped(BookingError):
    """A single recurring occurrence was not materialized"""

    def __init__(self, rule_id: str, occurrence: 'TimeRange', reason: str,
                 conflicting_ids: Optional[List[str]] = None):
        self.rule_id = rule_id
        self.occurrence = occurrence
        self.reason = reason
        self.conflicting_ids = list(conflicting_ids or [])
        super().__init__(f"Skipped occurrence {occurrence} of rule {rule_id}: {reason}")


class ConcurrentModification(BookingError):
    """Another writer changed the same data first; re-check and retry"""
    pass


class NotFoundError(BookingError, LookupError):
    """Referenced aggregate does not exist"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ReservationNotFound(NotFoundError):
    def __init__(self, reservation_id: str):
        super().__init__("Reservation", reservation_id)


class RecurrenceRuleNotFound(NotFoundError):
    def __init__(self, rule_id: str):
        super().__init__("Recurrence rule", rule_id)


class LateFeeNotFound(NotFoundError):
    def __init__(self, fee_id: str):
        super().__init__("Late return fee", fee_id)


class MaintenanceBlockNotFound(NotFoundError):
    def __init__(self, block_id: str):
        super().__init__("Maintenance block", block_id)
