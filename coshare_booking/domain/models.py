# File: coshare_booking/domain/models.py
"""
Domain Models for the Vehicle Booking Core
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Value Objects: Money, TimeRange, GroupMember, BlockingWindow
2. Enums: Reservation, recurrence, fee, maintenance and reminder states
3. Entities: Entity base class and MaintenanceBlock
4. Domain Events: Events raised by the aggregates

All timestamps are timezone-aware UTC datetimes. Naive datetimes handed to
the domain are interpreted as UTC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, FrozenSet
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import math
import uuid


# ============================================================================
# TIME HELPERS
# ============================================================================

def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ceil_minutes(duration: timedelta) -> int:
    """Whole minutes of a duration, rounded up; zero for non-positive durations"""
    seconds = duration.total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def month_bounds(moment: datetime) -> 'TimeRange':
    """Calendar month (UTC) containing the given moment"""
    moment = ensure_utc(moment)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return TimeRange(start, end)


# ============================================================================
# DOMAIN PRIMITIVES / VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Money:
    """
    Value Object: Monetary amount with currency
    Provides arithmetic operations with validation
    """
    amount: Decimal
    currency: str = "USD"

    def __post_init__(self):
        """Validate money amount"""
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        if self.amount < Decimal('0'):
            raise ValueError("Money amount cannot be negative")

        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

    @classmethod
    def zero(cls, currency: str = "USD") -> 'Money':
        return cls(Decimal('0.00'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        """Add two money amounts (same currency only)"""
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency} to {other.currency}")
        return Money(self.amount + other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        """Multiply money by a decimal"""
        if multiplier < Decimal('0'):
            raise ValueError("Multiplier cannot be negative")
        return Money(self.amount * Decimal(str(multiplier)), self.currency)

    def capped(self, cap: Optional[Decimal]) -> 'Money':
        """Limit the amount to a maximum"""
        if cap is None or self.amount <= cap:
            return self
        return Money(Decimal(cap), self.currency)

    def quantize(self) -> 'Money':
        """Round half-up to cents"""
        return Money(self.amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP), self.currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def format(self) -> str:
        """Format money for display"""
        return f"${self.amount:.2f} {self.currency}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "amount": str(self.amount),
            "currency": self.currency
        }


@dataclass(frozen=True)
class TimeRange:
    """
    Value Object: Half-open time interval [start_time, end_time)
    Provides duration calculation and the overlap rule used for conflicts
    """
    start_time: datetime
    end_time: datetime

    def __post_init__(self):
        """Validate time range and normalize to UTC"""
        object.__setattr__(self, 'start_time', ensure_utc(self.start_time))
        object.__setattr__(self, 'end_time', ensure_utc(self.end_time))

        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")

    @property
    def duration(self) -> timedelta:
        """Calculate duration of time range"""
        return self.end_time - self.start_time

    @property
    def duration_minutes(self) -> float:
        """Get duration in minutes"""
        return self.duration.total_seconds() / 60

    def contains(self, moment: datetime) -> bool:
        """Check if a moment lies inside the half-open interval"""
        moment = ensure_utc(moment)
        return self.start_time <= moment < self.end_time

    def overlaps(self, other: 'TimeRange') -> bool:
        """
        Check if another range overlaps this one
        The other range starts during this one, ends during it, or
        contains it entirely; touching end/start boundaries never overlap
        """
        starts_during = other.start_time <= self.start_time and other.end_time > self.start_time
        ends_during = other.start_time < self.end_time and other.end_time >= self.end_time
        contained = other.start_time >= self.start_time and other.end_time <= self.end_time
        return starts_during or ends_during or contained

    def shifted_to(self, start_time: datetime) -> 'TimeRange':
        """Same duration starting at another moment"""
        return TimeRange(start_time, ensure_utc(start_time) + self.duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat()
        }

    def __str__(self) -> str:
        start_str = self.start_time.strftime("%Y-%m-%d %H:%M")
        end_str = self.end_time.strftime("%Y-%m-%d %H:%M")
        return f"{start_str} to {end_str} UTC"


@dataclass(frozen=True)
class GroupMember:
    """
    Value Object: Member of a co-ownership group
    Supplied read-only by the group context provider
    """
    user_id: str
    ownership_share: Decimal
    role: str = "member"

    def __post_init__(self):
        if not isinstance(self.ownership_share, Decimal):
            object.__setattr__(self, 'ownership_share', Decimal(str(self.ownership_share)))

        if not (Decimal('0') < self.ownership_share <= Decimal('1')):
            raise ValueError(f"Ownership share must be in (0, 1]: {self.ownership_share}")

    @property
    def is_admin(self) -> bool:
        return self.role.lower() == "admin"


# ============================================================================
# ENUMS
# ============================================================================

class ReservationStatus(Enum):
    """Lifecycle states of a reservation"""
    PENDING_APPROVAL = "pending_approval"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ReservationStatus.COMPLETED, ReservationStatus.CANCELLED)

    def __str__(self) -> str:
        return self.value


# Statuses that block a candidate interval unless a caller narrows the set
DEFAULT_BLOCKING_STATUSES: FrozenSet[ReservationStatus] = frozenset({
    ReservationStatus.PENDING_APPROVAL,
    ReservationStatus.CONFIRMED,
    ReservationStatus.IN_PROGRESS,
})

# Statuses that must never overlap on the same vehicle
EXCLUSIVE_STATUSES: FrozenSet[ReservationStatus] = frozenset({
    ReservationStatus.CONFIRMED,
    ReservationStatus.IN_PROGRESS,
})


class PriorityTier(Enum):
    """Priority tier recorded on a reservation"""
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"

    def __str__(self) -> str:
        return self.value


class RecurrencePattern(Enum):
    """Repeat patterns for recurrence rules"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def __str__(self) -> str:
        return self.value


class RecurrenceStatus(Enum):
    """Recurrence rule states"""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class LateFeeStatus(Enum):
    """Late-return fee states"""
    PENDING = "pending"
    CHARGED = "charged"
    WAIVED = "waived"

    def __str__(self) -> str:
        return self.value


class MaintenanceStatus(Enum):
    """Maintenance block states"""
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class ReminderKind(Enum):
    """Checkout reminder windows"""
    PRE_CHECKOUT = "pre_checkout"
    FINAL_CHECKOUT = "final_checkout"
    MISSED_CHECKOUT = "missed_checkout"

    def __str__(self) -> str:
        return self.value


class BlockingSource(Enum):
    """Kind of object behind a blocking window"""
    RESERVATION = "reservation"
    MAINTENANCE = "maintenance"


# ============================================================================
# BLOCKING WINDOW
# ============================================================================

@dataclass(frozen=True)
class BlockingWindow:
    """
    Value Object: Uniform view of anything occupying a vehicle
    Reservations and maintenance blocks are both fed to the conflict
    detector through this shape
    """
    source_id: str
    source: BlockingSource
    vehicle_id: str
    interval: TimeRange
    status: Optional[ReservationStatus] = None
    requester_id: Optional[str] = None
    recurrence_rule_id: Optional[str] = None
    is_emergency: bool = False
    priority_tier: PriorityTier = PriorityTier.NORMAL
    created_at: Optional[datetime] = None

    @property
    def is_maintenance(self) -> bool:
        return self.source == BlockingSource.MAINTENANCE

    @property
    def start_time(self) -> datetime:
        return self.interval.start_time

    @property
    def end_time(self) -> datetime:
        return self.interval.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source": self.source.value,
            "vehicle_id": self.vehicle_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status.value if self.status else None,
            "requester_id": self.requester_id,
            "recurrence_rule_id": self.recurrence_rule_id,
            "is_emergency": self.is_emergency,
            "priority_tier": self.priority_tier.value
        }


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        """Hash based on ID and type"""
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        """Representation for debugging"""
        return f"{type(self).__name__}(id={self.id})"


class MaintenanceBlock(Entity):
    """
    Entity: Scheduled maintenance window on a vehicle
    Always blocks reservations and can never be overridden
    """

    def __init__(
        self,
        maintenance_schedule_id: str,
        vehicle_id: str,
        group_id: str,
        service_type: str,
        interval: TimeRange,
        notes: Optional[str] = None,
        status: MaintenanceStatus = MaintenanceStatus.SCHEDULED,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        if not maintenance_schedule_id:
            raise ValueError("Maintenance schedule id is required")

        self.maintenance_schedule_id = maintenance_schedule_id
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.service_type = service_type
        self.interval = interval
        self.notes = notes
        self.status = status
        self.created_at = ensure_utc(created_at) or utcnow()
        self.updated_at = self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == MaintenanceStatus.SCHEDULED

    def reschedule(self, interval: TimeRange, now: Optional[datetime] = None) -> None:
        """Move the maintenance window"""
        if not self.is_active:
            raise ValueError("Cannot reschedule a cancelled maintenance block")
        self.interval = interval
        self.updated_at = ensure_utc(now) or utcnow()

    def cancel(self, now: Optional[datetime] = None) -> None:
        """Release the vehicle window"""
        self.status = MaintenanceStatus.CANCELLED
        self.updated_at = ensure_utc(now) or utcnow()

    def as_blocking_window(self) -> BlockingWindow:
        """Expose the block as a synthetic always-blocking reservation"""
        return BlockingWindow(
            source_id=self.id,
            source=BlockingSource.MAINTENANCE,
            vehicle_id=self.vehicle_id,
            interval=self.interval,
            created_at=self.created_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "maintenance_schedule_id": self.maintenance_schedule_id,
            "vehicle_id": self.vehicle_id,
            "group_id": self.group_id,
            "service_type": self.service_type,
            "start_time": self.interval.start_time.isoformat(),
            "end_time": self.interval.end_time.isoformat(),
            "status": self.status.value
        }

    def __str__(self) -> str:
        return f"Maintenance {self.service_type} on {self.vehicle_id}: {self.interval}"


# ============================================================================
# DOMAIN EVENTS (for event-driven architecture)
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """
    event_type: str = "domain.event"
    aggregate_type: str = "Aggregate"

    def __init__(self, aggregate_id: str, timestamp: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.aggregate_id = aggregate_id
        self.timestamp = ensure_utc(timestamp) or utcnow()
        self.version = "1.0"

    @abstractmethod
    def payload(self) -> Dict[str, Any]:
        """Event-specific data"""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization"""
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": self.payload()
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ReservationCreatedEvent(DomainEvent):
    """Event raised when a reservation is created"""
    aggregate_type = "Reservation"

    def __init__(
        self,
        reservation_id: str,
        vehicle_id: str,
        group_id: str,
        requester_id: str,
        interval: TimeRange,
        status: ReservationStatus,
        is_emergency: bool = False,
        recurrence_rule_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.requester_id = requester_id
        self.interval = interval
        self.status = status
        self.is_emergency = is_emergency
        self.recurrence_rule_id = recurrence_rule_id

    @property
    def event_type(self) -> str:
        if self.status == ReservationStatus.PENDING_APPROVAL:
            return "reservation.pending_approval"
        return "reservation.created"

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "group_id": self.group_id,
            "requester_id": self.requester_id,
            "start_time": self.interval.start_time.isoformat(),
            "end_time": self.interval.end_time.isoformat(),
            "status": self.status.value,
            "is_emergency": self.is_emergency,
            "recurrence_rule_id": self.recurrence_rule_id
        }


class ReservationApprovedEvent(DomainEvent):
    """Event raised when a pending reservation is approved"""
    event_type = "reservation.approved"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 approver_id: str, timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.approver_id = approver_id

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "approver_id": self.approver_id
        }


class ReservationCancelledEvent(DomainEvent):
    """Event raised when a reservation is cancelled"""
    event_type = "reservation.cancelled"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 actor_id: str, reason: str, recurrence_rule_id: Optional[str] = None,
                 superseded_by: Optional[str] = None, timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.actor_id = actor_id
        self.reason = reason
        self.recurrence_rule_id = recurrence_rule_id
        self.superseded_by = superseded_by

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "recurrence_rule_id": self.recurrence_rule_id,
            "superseded_by": self.superseded_by
        }


class TripStartedEvent(DomainEvent):
    """Event raised when the vehicle is checked out"""
    event_type = "reservation.trip_started"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 odometer: int, timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.odometer = odometer

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "odometer": self.odometer,
            "started_at": self.timestamp.isoformat()
        }


class TripCompletedEvent(DomainEvent):
    """Event raised when the vehicle is returned"""
    event_type = "reservation.trip_completed"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 distance_km: int, late_minutes: int, requires_damage_review: bool,
                 trip_fee: Money, timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.distance_km = distance_km
        self.late_minutes = late_minutes
        self.requires_damage_review = requires_damage_review
        self.trip_fee = trip_fee

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "distance_km": self.distance_km,
            "is_late_return": self.late_minutes > 0,
            "late_minutes": self.late_minutes,
            "requires_damage_review": self.requires_damage_review,
            "trip_fee": self.trip_fee.to_dict(),
            "completed_at": self.timestamp.isoformat()
        }


class ReminderDueEvent(DomainEvent):
    """Event raised when a checkout reminder window opens"""
    event_type = "reservation.reminder_due"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 kind: ReminderKind, start_time: datetime, timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.kind = kind
        self.start_time = start_time

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "reminder": self.kind.value,
            "start_time": self.start_time.isoformat()
        }


class EmergencyOverrideEvent(DomainEvent):
    """Event raised when an emergency reservation supersedes others"""
    event_type = "reservation.emergency_override"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, vehicle_id: str, requester_id: str,
                 superseded_ids: List[str], reason: Optional[str],
                 timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.superseded_ids = list(superseded_ids)
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "superseded_reservation_ids": self.superseded_ids,
            "emergency_reason": self.reason
        }


class EmergencyDemotedEvent(DomainEvent):
    """Event raised when an emergency request exceeded the monthly cap"""
    event_type = "reservation.emergency_demoted"
    aggregate_type = "Reservation"

    def __init__(self, reservation_id: str, requester_id: str, count: int, cap: int,
                 timestamp: Optional[datetime] = None):
        super().__init__(reservation_id, timestamp)
        self.requester_id = requester_id
        self.count = count
        self.cap = cap

    def payload(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.aggregate_id,
            "requester_id": self.requester_id,
            "emergency_count": self.count,
            "monthly_cap": self.cap
        }


class LateReturnFeeCreatedEvent(DomainEvent):
    """Event raised when a late-return fee is recorded"""
    event_type = "late_fee.created"
    aggregate_type = "LateReturnFee"

    def __init__(self, fee_id: str, reservation_id: str, requester_id: str, vehicle_id: str,
                 group_id: str, late_minutes: int, amount: Money, calculation_method: str,
                 timestamp: Optional[datetime] = None):
        super().__init__(fee_id, timestamp)
        self.reservation_id = reservation_id
        self.requester_id = requester_id
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.late_minutes = late_minutes
        self.amount = amount
        self.calculation_method = calculation_method

    def payload(self) -> Dict[str, Any]:
        return {
            "fee_id": self.aggregate_id,
            "reservation_id": self.reservation_id,
            "requester_id": self.requester_id,
            "vehicle_id": self.vehicle_id,
            "group_id": self.group_id,
            "late_minutes": self.late_minutes,
            "amount": str(self.amount.amount),
            "currency": self.amount.currency,
            "calculation_method": self.calculation_method
        }


class LateReturnFeeStatusChangedEvent(DomainEvent):
    """Event raised when a late-return fee is waived or charged"""
    event_type = "late_fee.status_changed"
    aggregate_type = "LateReturnFee"

    def __init__(self, fee_id: str, reservation_id: str, old_status: LateFeeStatus,
                 new_status: LateFeeStatus, amount: Money, actor_id: Optional[str] = None,
                 reason: Optional[str] = None, timestamp: Optional[datetime] = None):
        super().__init__(fee_id, timestamp)
        self.reservation_id = reservation_id
        self.old_status = old_status
        self.new_status = new_status
        self.amount = amount
        self.actor_id = actor_id
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "fee_id": self.aggregate_id,
            "reservation_id": self.reservation_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "amount": str(self.amount.amount),
            "currency": self.amount.currency,
            "actor_id": self.actor_id,
            "reason": self.reason
        }


class RecurrenceRuleCreatedEvent(DomainEvent):
    """Event raised when a recurrence rule is created"""
    event_type = "recurrence.created"
    aggregate_type = "RecurrenceRule"

    def __init__(self, rule_id: str, vehicle_id: str, requester_id: str,
                 pattern: RecurrencePattern, timestamp: Optional[datetime] = None):
        super().__init__(rule_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.pattern = pattern

    def payload(self) -> Dict[str, Any]:
        return {
            "rule_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "pattern": self.pattern.value
        }


class RecurrenceRuleStatusChangedEvent(DomainEvent):
    """Event raised when a recurrence rule is paused, resumed or cancelled"""
    event_type = "recurrence.status_changed"
    aggregate_type = "RecurrenceRule"

    def __init__(self, rule_id: str, old_status: RecurrenceStatus, new_status: RecurrenceStatus,
                 reason: Optional[str] = None, paused_until: Optional[datetime] = None,
                 timestamp: Optional[datetime] = None):
        super().__init__(rule_id, timestamp)
        self.old_status = old_status
        self.new_status = new_status
        self.reason = reason
        self.paused_until = paused_until

    def payload(self) -> Dict[str, Any]:
        return {
            "rule_id": self.aggregate_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "reason": self.reason,
            "paused_until": _iso(self.paused_until)
        }


class RecurrenceOccurrenceSkippedEvent(DomainEvent):
    """Event raised when a recurring occurrence could not be booked"""
    event_type = "recurrence.occurrence_skipped"
    aggregate_type = "RecurrenceRule"

    def __init__(self, rule_id: str, vehicle_id: str, requester_id: str, occurrence: TimeRange,
                 reason: str, conflicting_ids: Optional[List[str]] = None,
                 timestamp: Optional[datetime] = None):
        super().__init__(rule_id, timestamp)
        self.vehicle_id = vehicle_id
        self.requester_id = requester_id
        self.occurrence = occurrence
        self.reason = reason
        self.conflicting_ids = list(conflicting_ids or [])

    def payload(self) -> Dict[str, Any]:
        return {
            "rule_id": self.aggregate_id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "start_time": self.occurrence.start_time.isoformat(),
            "end_time": self.occurrence.end_time.isoformat(),
            "reason": self.reason,
            "conflicting_ids": self.conflicting_ids
        }


class RecurrenceGeneratedEvent(DomainEvent):
    """Event raised after a generation run of one rule"""
    event_type = "recurrence.generated"
    aggregate_type = "RecurrenceRule"

    def __init__(self, rule_id: str, created_count: int, skipped_count: int,
                 generated_until: datetime, timestamp: Optional[datetime] = None):
        super().__init__(rule_id, timestamp)
        self.created_count = created_count
        self.skipped_count = skipped_count
        self.generated_until = generated_until

    def payload(self) -> Dict[str, Any]:
        return {
            "rule_id": self.aggregate_id,
            "created": self.created_count,
            "skipped": self.skipped_count,
            "generated_until": self.generated_until.isoformat()
        }


class MaintenanceWindowEvent(DomainEvent):
    """Event raised when a maintenance block is scheduled or cancelled"""
    aggregate_type = "MaintenanceBlock"

    def __init__(self, block: MaintenanceBlock, timestamp: Optional[datetime] = None):
        super().__init__(block.id, timestamp)
        self.block = block

    @property
    def event_type(self) -> str:
        if self.block.is_active:
            return "maintenance.scheduled"
        return "maintenance.cancelled"

    def payload(self) -> Dict[str, Any]:
        return self.block.to_dict()
