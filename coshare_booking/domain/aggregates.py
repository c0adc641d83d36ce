# File: coshare_booking/domain/aggregates.py
"""
Aggregate Roots for the Vehicle Booking Core
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. Reservation - Root aggregate for the booking lifecycle of one vehicle window
2. RecurrenceRule - Root aggregate for a repeating reservation series
3. LateReturnFee - Root aggregate for the fee charged on a late return

Key Concepts:
- Aggregate Roots enforce business invariants
- Lifecycle moves go through aggregate root methods and raise
  InvalidTransition when the current state does not allow them
- Domain events are raised for important state changes and published by
  the application layer after the unit of work commits
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, date, time, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from .models import (
    Entity, Money, TimeRange, BlockingWindow, BlockingSource,
    ReservationStatus, PriorityTier, RecurrencePattern, RecurrenceStatus,
    LateFeeStatus, ReminderKind, DomainEvent,
    ReservationCreatedEvent, ReservationApprovedEvent, ReservationCancelledEvent,
    TripStartedEvent, TripCompletedEvent, ReminderDueEvent,
    EmergencyOverrideEvent, EmergencyDemotedEvent,
    LateReturnFeeCreatedEvent, LateReturnFeeStatusChangedEvent,
    RecurrenceRuleCreatedEvent, RecurrenceRuleStatusChangedEvent,
    ensure_utc, utcnow, ceil_minutes
)
from .exceptions import InvalidTransition
from ..config import ReminderSchedule


SUPERSEDED_BY_EMERGENCY = "superseded by emergency"
CANCELLED_WITH_SERIES = "Cancelled with recurring series"


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._version: int = 1
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        """Get current aggregate version"""
        return self._version

    def _increment_version(self) -> None:
        """Increment version after state change"""
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        """Add a domain event to the list of changes"""
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        """Check if aggregate has pending domain events"""
        return len(self._changes) > 0

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# RESERVATION AGGREGATE
# ============================================================================

class Reservation(AggregateRoot):
    """
    Aggregate Root: Reservation
    An exclusive claim by one member on a vehicle for a half-open window.
    Reservations are never deleted; cancellation is a state.
    """

    def __init__(
        self,
        vehicle_id: str,
        group_id: str,
        requester_id: str,
        interval: TimeRange,
        status: ReservationStatus = ReservationStatus.CONFIRMED,
        priority_tier: PriorityTier = PriorityTier.NORMAL,
        priority_score: Decimal = Decimal('0'),
        is_emergency: bool = False,
        emergency_reason: Optional[str] = None,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
        recurrence_rule_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.requester_id = requester_id
        self.interval = interval
        self.status = status
        self.priority_tier = priority_tier
        self.priority_score = Decimal(str(priority_score))
        self.is_emergency = is_emergency
        self.emergency_reason = emergency_reason
        self.emergency_demoted = False
        self.purpose = purpose
        self.notes = notes
        self.recurrence_rule_id = recurrence_rule_id

        # Lifecycle stamps
        self.created_at: datetime = ensure_utc(created_at) or utcnow()
        self.updated_at: datetime = self.created_at
        self.approved_at: Optional[datetime] = None
        self.approved_by: Optional[str] = None
        self.trip_started_at: Optional[datetime] = None
        self.trip_started_by: Optional[str] = None
        self.completed_at: Optional[datetime] = None
        self.cancelled_at: Optional[datetime] = None
        self.cancelled_by: Optional[str] = None
        self.cancellation_reason: Optional[str] = None
        self.superseded_by: Optional[str] = None

        # Trip record
        self.odometer_start: Optional[int] = None
        self.odometer_end: Optional[int] = None
        self.distance_km: Optional[int] = None
        self.trip_fee: Optional[Money] = None
        self.requires_damage_review: bool = False

        # Reminder bookkeeping
        self.pre_checkout_sent_at: Optional[datetime] = None
        self.final_checkout_sent_at: Optional[datetime] = None
        self.missed_checkout_sent_at: Optional[datetime] = None

        self._validate_invariants()

    @classmethod
    def create(
        cls,
        vehicle_id: str,
        group_id: str,
        requester_id: str,
        interval: TimeRange,
        status: ReservationStatus,
        now: datetime,
        **kwargs
    ) -> 'Reservation':
        """Create a new reservation and record the creation event"""
        if status not in (ReservationStatus.PENDING_APPROVAL, ReservationStatus.CONFIRMED):
            raise InvalidTransition("reservation", status.value, "create")

        reservation = cls(
            vehicle_id=vehicle_id,
            group_id=group_id,
            requester_id=requester_id,
            interval=interval,
            status=status,
            created_at=now,
            **kwargs
        )
        reservation._add_domain_event(ReservationCreatedEvent(
            reservation_id=reservation.id,
            vehicle_id=vehicle_id,
            group_id=group_id,
            requester_id=requester_id,
            interval=interval,
            status=status,
            is_emergency=reservation.is_emergency,
            recurrence_rule_id=reservation.recurrence_rule_id,
            timestamp=now
        ))
        reservation._logger.info(
            f"Created reservation {reservation.id} for {requester_id} on {vehicle_id}: "
            f"{interval} ({status.value})"
        )
        return reservation

    def _validate_invariants(self) -> None:
        """Validate reservation invariants"""
        # Invariant 1: Emergency reservations carry the emergency tier
        if self.is_emergency and self.priority_tier != PriorityTier.EMERGENCY:
            raise ValueError("Emergency reservation must have the emergency tier")

        # Invariant 2: Odometer never runs backwards within a trip
        if (self.odometer_start is not None and self.odometer_end is not None
                and self.odometer_end < self.odometer_start):
            raise ValueError("End odometer cannot be lower than start odometer")

        # Invariant 3: Completed trips have a completion time
        if self.status == ReservationStatus.COMPLETED and not self.completed_at:
            raise ValueError("Completed reservation must have a completion time")

    # ========================================================================
    # LIFECYCLE OPERATIONS
    # ========================================================================

    def _require(self, allowed: ReservationStatus, action: str) -> None:
        if self.status != allowed:
            raise InvalidTransition("reservation", self.status.value, action)

    def _touch(self, now: datetime) -> None:
        self.updated_at = now
        self._increment_version()

    def approve(self, approver_id: str, now: Optional[datetime] = None) -> None:
        """
        Approve a pending reservation
        The caller re-runs the conflict check before calling this
        """
        self._require(ReservationStatus.PENDING_APPROVAL, "approve")
        now = ensure_utc(now) or utcnow()

        self.status = ReservationStatus.CONFIRMED
        self.approved_at = now
        self.approved_by = approver_id
        self._touch(now)

        self._add_domain_event(ReservationApprovedEvent(
            self.id, self.vehicle_id, self.requester_id, approver_id, timestamp=now
        ))
        self._logger.info(f"Approved reservation {self.id} by {approver_id}")

    def begin_trip(self, actor_id: str, odometer: int, now: Optional[datetime] = None) -> None:
        """Check out the vehicle and record the start odometer"""
        self._require(ReservationStatus.CONFIRMED, "begin trip for")
        if odometer is None or odometer < 0:
            raise ValueError("Odometer reading cannot be negative")

        now = ensure_utc(now) or utcnow()
        self.status = ReservationStatus.IN_PROGRESS
        self.odometer_start = odometer
        self.trip_started_at = now
        self.trip_started_by = actor_id
        self._touch(now)

        self._add_domain_event(TripStartedEvent(
            self.id, self.vehicle_id, self.requester_id, odometer, timestamp=now
        ))
        self._logger.info(f"Trip started for reservation {self.id} at odometer {odometer}")

    def complete(
        self,
        returned_at: datetime,
        odometer: int,
        max_distance_km: int,
        rate_per_km: Decimal = Decimal('0'),
        requires_damage_review: bool = False,
        notes: Optional[str] = None,
        currency: str = "USD"
    ) -> int:
        """
        Return the vehicle
        Returns the minutes by which the return overran the reservation end
        """
        self._require(ReservationStatus.IN_PROGRESS, "complete")
        returned_at = ensure_utc(returned_at)

        if odometer < self.odometer_start:
            raise ValueError(
                f"End odometer {odometer} is lower than start odometer {self.odometer_start}"
            )

        distance = odometer - self.odometer_start
        if distance > max_distance_km:
            raise ValueError(
                f"Trip distance {distance} km exceeds maximum of {max_distance_km} km"
            )

        if self.trip_started_at and returned_at < self.trip_started_at:
            raise ValueError("Return time cannot be before trip start")

        self.status = ReservationStatus.COMPLETED
        self.completed_at = returned_at
        self.odometer_end = odometer
        self.distance_km = distance
        self.trip_fee = (Money(Decimal(distance), currency) * Decimal(str(rate_per_km))).quantize()
        self.requires_damage_review = requires_damage_review
        if notes:
            self.notes = notes
        self._touch(returned_at)

        late_minutes = self.late_minutes(returned_at)
        self._add_domain_event(TripCompletedEvent(
            self.id, self.vehicle_id, self.requester_id, distance, late_minutes,
            requires_damage_review, self.trip_fee, timestamp=returned_at
        ))

        if late_minutes > 0:
            self._logger.warning(f"Reservation {self.id} returned {late_minutes} minutes late")
        else:
            self._logger.info(f"Reservation {self.id} completed, {distance} km driven")
        return late_minutes

    def cancel(
        self,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
        superseded_by: Optional[str] = None
    ) -> None:
        """Cancel a non-terminal reservation"""
        if self.status.is_terminal:
            raise InvalidTransition("reservation", self.status.value, "cancel")

        now = ensure_utc(now) or utcnow()
        self.status = ReservationStatus.CANCELLED
        self.cancelled_at = now
        self.cancelled_by = actor_id
        self.cancellation_reason = reason
        self.superseded_by = superseded_by
        self._touch(now)

        self._add_domain_event(ReservationCancelledEvent(
            self.id, self.vehicle_id, self.requester_id, actor_id, reason,
            recurrence_rule_id=self.recurrence_rule_id, superseded_by=superseded_by,
            timestamp=now
        ))
        self._logger.info(f"Cancelled reservation {self.id}: {reason}")

    # ========================================================================
    # EMERGENCY HANDLING
    # ========================================================================

    def demote_emergency(self, count: int, cap: int, now: Optional[datetime] = None) -> None:
        """Drop the emergency flag after the monthly cap was reached"""
        now = ensure_utc(now) or utcnow()
        self.is_emergency = False
        self.emergency_demoted = True
        self.priority_tier = PriorityTier.NORMAL
        self.updated_at = now

        self._add_domain_event(EmergencyDemotedEvent(
            self.id, self.requester_id, count, cap, timestamp=now
        ))
        self._logger.warning(
            f"Emergency flag of reservation {self.id} demoted ({count}/{cap} used this month)"
        )

    def record_emergency_override(self, superseded_ids: List[str],
                                  now: Optional[datetime] = None) -> None:
        """Note that this emergency reservation superseded others"""
        if not self.is_emergency:
            raise ValueError("Only emergency reservations can override others")

        self._add_domain_event(EmergencyOverrideEvent(
            self.id, self.vehicle_id, self.requester_id, superseded_ids,
            self.emergency_reason, timestamp=ensure_utc(now) or utcnow()
        ))

    # ========================================================================
    # REMINDERS
    # ========================================================================

    def due_reminders(self, now: datetime, schedule: ReminderSchedule) -> List[ReminderKind]:
        """Reminder windows that are open and not yet sent"""
        if self.status != ReservationStatus.CONFIRMED:
            return []

        now = ensure_utc(now)
        start = self.interval.start_time
        due = []

        pre_open = start - schedule.pre_checkout_lead
        final_open = start - schedule.final_checkout_lead
        missed_open = start + schedule.missed_checkout_after

        if pre_open <= now < final_open and self.pre_checkout_sent_at is None:
            due.append(ReminderKind.PRE_CHECKOUT)

        if final_open <= now < start and self.final_checkout_sent_at is None:
            due.append(ReminderKind.FINAL_CHECKOUT)

        if missed_open <= now < self.interval.end_time and self.missed_checkout_sent_at is None:
            due.append(ReminderKind.MISSED_CHECKOUT)

        return due

    def mark_reminder_sent(self, kind: ReminderKind, now: Optional[datetime] = None) -> None:
        """Record a reminder as sent so it fires at most once"""
        now = ensure_utc(now) or utcnow()
        attribute = f"{kind.value}_sent_at"
        if getattr(self, attribute) is not None:
            return

        setattr(self, attribute, now)
        self._touch(now)
        self._add_domain_event(ReminderDueEvent(
            self.id, self.vehicle_id, self.requester_id, kind,
            self.interval.start_time, timestamp=now
        ))

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    @property
    def start_time(self) -> datetime:
        return self.interval.start_time

    @property
    def end_time(self) -> datetime:
        return self.interval.end_time

    @property
    def is_active(self) -> bool:
        """Check if the reservation still occupies its window"""
        return not self.status.is_terminal

    @property
    def is_cancellable_by_override(self) -> bool:
        """Not-yet-started, non-emergency reservations can be superseded"""
        return (
            self.status in (ReservationStatus.PENDING_APPROVAL, ReservationStatus.CONFIRMED)
            and not self.is_emergency
        )

    def late_minutes(self, returned_at: datetime) -> int:
        """Whole minutes past the reservation end, rounded up"""
        return ceil_minutes(ensure_utc(returned_at) - self.interval.end_time)

    def as_blocking_window(self) -> BlockingWindow:
        """Expose the reservation to the conflict detector"""
        return BlockingWindow(
            source_id=self.id,
            source=BlockingSource.RESERVATION,
            vehicle_id=self.vehicle_id,
            interval=self.interval,
            status=self.status,
            requester_id=self.requester_id,
            recurrence_rule_id=self.recurrence_rule_id,
            is_emergency=self.is_emergency,
            priority_tier=self.priority_tier,
            created_at=self.created_at
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "group_id": self.group_id,
            "requester_id": self.requester_id,
            "start_time": self.interval.start_time.isoformat(),
            "end_time": self.interval.end_time.isoformat(),
            "status": self.status.value,
            "priority_tier": self.priority_tier.value,
            "priority_score": str(self.priority_score),
            "is_emergency": self.is_emergency,
            "emergency_demoted": self.emergency_demoted,
            "recurrence_rule_id": self.recurrence_rule_id,
            "distance_km": self.distance_km,
            "version": self.version
        }

    def __str__(self) -> str:
        return f"Reservation {self.id} [{self.status.value}] {self.vehicle_id} {self.interval}"


# ============================================================================
# RECURRENCE RULE AGGREGATE
# ============================================================================

def local_to_utc(day: date, time_of_day: time, zone: ZoneInfo) -> datetime:
    """Combine a local date and time in a zone and convert to UTC"""
    return ensure_utc(datetime.combine(day, time_of_day, tzinfo=zone))


class RecurrenceRule(AggregateRoot):
    """
    Aggregate Root: Recurrence Rule
    Describes a repeating reservation series. Concrete reservations are
    materialized by the generation sweep up to a rolling horizon;
    last_generated_until is the watermark and never moves backwards.
    """

    def __init__(
        self,
        vehicle_id: str,
        group_id: str,
        requester_id: str,
        pattern: RecurrencePattern,
        start_time_of_day: time,
        end_time_of_day: time,
        start_date: date,
        end_date: Optional[date] = None,
        interval: int = 1,
        weekdays: Optional[List[int]] = None,
        time_zone: str = "UTC",
        status: RecurrenceStatus = RecurrenceStatus.ACTIVE,
        paused_until: Optional[datetime] = None,
        last_generated_until: Optional[datetime] = None,
        last_generation_run_at: Optional[datetime] = None,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.requester_id = requester_id
        self.pattern = pattern
        self.interval = interval
        self.weekdays: List[int] = sorted(set(weekdays or []))  # 0 = Monday
        self.start_time_of_day = start_time_of_day
        self.end_time_of_day = end_time_of_day
        self.start_date = start_date
        self.end_date = end_date
        self.time_zone = time_zone
        self.status = status
        self.paused_until = ensure_utc(paused_until)
        self.last_generated_until = ensure_utc(last_generated_until)
        self.last_generation_run_at = ensure_utc(last_generation_run_at)
        self.purpose = purpose
        self.notes = notes
        self.cancelled_at: Optional[datetime] = None
        self.cancellation_reason: Optional[str] = None

        self.created_at: datetime = ensure_utc(created_at) or utcnow()
        self.updated_at: datetime = self.created_at

        self._validate_invariants()

    @classmethod
    def create(cls, now: Optional[datetime] = None, **kwargs) -> 'RecurrenceRule':
        """Create a new active rule and record the creation event"""
        now = ensure_utc(now) or utcnow()
        rule = cls(created_at=now, **kwargs)
        rule._add_domain_event(RecurrenceRuleCreatedEvent(
            rule.id, rule.vehicle_id, rule.requester_id, rule.pattern, timestamp=now
        ))
        rule._logger.info(
            f"Created {rule.pattern.value} recurrence rule {rule.id} for {rule.requester_id}"
        )
        return rule

    def _validate_invariants(self) -> None:
        """Validate recurrence rule invariants"""
        if self.interval < 1:
            raise ValueError("Recurrence interval must be at least 1")

        if self.pattern == RecurrencePattern.WEEKLY and not self.weekdays:
            raise ValueError("Weekly recurrence requires at least one weekday")

        if any(day < 0 or day > 6 for day in self.weekdays):
            raise ValueError("Weekdays must be between 0 (Monday) and 6 (Sunday)")

        if self.end_time_of_day <= self.start_time_of_day:
            raise ValueError("Daily end time must be after start time")

        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("Recurrence end date cannot be before start date")

        try:
            ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {self.time_zone}") from e

    # ========================================================================
    # RULE OPERATIONS
    # ========================================================================

    def _change_status(self, new_status: RecurrenceStatus, now: datetime,
                       reason: Optional[str] = None) -> None:
        old_status = self.status
        self.status = new_status
        self.updated_at = now
        self._increment_version()
        self._add_domain_event(RecurrenceRuleStatusChangedEvent(
            self.id, old_status, new_status, reason=reason,
            paused_until=self.paused_until, timestamp=now
        ))

    def pause(self, until: Optional[datetime] = None, reason: Optional[str] = None,
              now: Optional[datetime] = None) -> None:
        """
        Pause generation
        until=None pauses indefinitely; pausing a paused rule moves the end
        """
        if self.status == RecurrenceStatus.CANCELLED:
            raise InvalidTransition("recurrence rule", self.status.value, "pause")

        now = ensure_utc(now) or utcnow()
        until = ensure_utc(until)
        if until is not None and until <= now:
            raise ValueError("Pause end must be in the future")

        self.paused_until = until
        self._change_status(RecurrenceStatus.PAUSED, now, reason)
        self._logger.info(f"Paused recurrence rule {self.id} until {until or 'further notice'}")

    def resume(self, now: Optional[datetime] = None) -> None:
        """
        Resume generation
        The watermark jumps to now: paused occurrences are never caught up
        """
        if self.status != RecurrenceStatus.PAUSED:
            raise InvalidTransition("recurrence rule", self.status.value, "resume")

        now = ensure_utc(now) or utcnow()
        self._raise_watermark(now)
        self.paused_until = None
        self._change_status(RecurrenceStatus.ACTIVE, now, "resumed")
        self._logger.info(f"Resumed recurrence rule {self.id}")

    def auto_resume_if_elapsed(self, now: datetime) -> bool:
        """Resume a rule whose pause end has passed; watermark moves to the pause end"""
        now = ensure_utc(now)
        if self.status != RecurrenceStatus.PAUSED or self.paused_until is None:
            return False
        if self.paused_until > now:
            return False

        resumed_at = self.paused_until
        self._raise_watermark(resumed_at)
        self.paused_until = None
        self._change_status(RecurrenceStatus.ACTIVE, now, "pause elapsed")
        self._logger.info(f"Recurrence rule {self.id} auto-resumed after pause ended {resumed_at}")
        return True

    def cancel(self, reason: str, now: Optional[datetime] = None) -> None:
        """Stop the series permanently"""
        if self.status == RecurrenceStatus.CANCELLED:
            raise InvalidTransition("recurrence rule", self.status.value, "cancel")

        now = ensure_utc(now) or utcnow()
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.paused_until = None
        self._change_status(RecurrenceStatus.CANCELLED, now, reason)
        self._logger.info(f"Cancelled recurrence rule {self.id}: {reason}")

    def advance_watermark(self, until: datetime, run_at: datetime) -> None:
        """Record a generation run up to an exclusive boundary"""
        self._raise_watermark(ensure_utc(until))
        self.last_generation_run_at = ensure_utc(run_at)
        self.updated_at = self.last_generation_run_at
        self._increment_version()

    def _raise_watermark(self, value: datetime) -> None:
        if self.last_generated_until is None or value > self.last_generated_until:
            self.last_generated_until = value

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def occurrence_duration(self) -> timedelta:
        return (datetime.combine(self.start_date, self.end_time_of_day)
                - datetime.combine(self.start_date, self.start_time_of_day))

    @property
    def series_start(self) -> datetime:
        """First possible occurrence start, in UTC"""
        return local_to_utc(self.start_date, self.start_time_of_day, self.zone)

    @property
    def series_end(self) -> Optional[datetime]:
        """Exclusive end of the series (local midnight after end_date), in UTC"""
        if self.end_date is None:
            return None
        return local_to_utc(self.end_date + timedelta(days=1), time(0, 0), self.zone)

    def is_due_for_generation(self, now: datetime) -> bool:
        """Active rules, or paused rules whose pause has elapsed"""
        if self.status == RecurrenceStatus.ACTIVE:
            return True
        return (
            self.status == RecurrenceStatus.PAUSED
            and self.paused_until is not None
            and self.paused_until <= ensure_utc(now)
        )

    def generation_window(self, now: datetime, horizon: timedelta) -> Optional[TimeRange]:
        """
        Window of occurrence starts to materialize in this run
        Returns None when there is nothing left to generate
        """
        now = ensure_utc(now)
        lower = max(
            value for value in (self.last_generated_until, self.series_start, now)
            if value is not None
        )
        upper = now + horizon
        if self.series_end is not None:
            upper = min(upper, self.series_end)

        if upper <= lower:
            return None
        return TimeRange(lower, upper)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "requester_id": self.requester_id,
            "pattern": self.pattern.value,
            "interval": self.interval,
            "weekdays": self.weekdays,
            "start_time_of_day": self.start_time_of_day.isoformat(),
            "end_time_of_day": self.end_time_of_day.isoformat(),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "time_zone": self.time_zone,
            "status": self.status.value,
            "last_generated_until": (
                self.last_generated_until.isoformat() if self.last_generated_until else None
            )
        }

    def __str__(self) -> str:
        return f"RecurrenceRule {self.id} [{self.status.value}] {self.pattern.value}/{self.interval}"


# ============================================================================
# LATE RETURN FEE AGGREGATE
# ============================================================================

class LateReturnFee(AggregateRoot):
    """
    Aggregate Root: Late Return Fee
    Created once per return event when the vehicle came back after the
    reservation end; handed to billing or waived by an admin.
    """

    def __init__(
        self,
        reservation_id: str,
        return_event_id: str,
        requester_id: str,
        vehicle_id: str,
        group_id: str,
        late_minutes: int,
        chargeable_minutes: int,
        amount: Money,
        calculation_method: str,
        status: LateFeeStatus = LateFeeStatus.PENDING,
        original_amount: Optional[Money] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.reservation_id = reservation_id
        self.return_event_id = return_event_id
        self.requester_id = requester_id
        self.vehicle_id = vehicle_id
        self.group_id = group_id
        self.late_minutes = late_minutes
        self.chargeable_minutes = chargeable_minutes
        self.amount = amount
        self.original_amount = original_amount or amount
        self.calculation_method = calculation_method
        self.status = status

        self.waived_by: Optional[str] = None
        self.waiver_reason: Optional[str] = None
        self.waived_at: Optional[datetime] = None
        self.invoice_id: Optional[str] = None
        self.expense_id: Optional[str] = None
        self.charged_at: Optional[datetime] = None

        self.created_at: datetime = ensure_utc(created_at) or utcnow()
        self.updated_at: datetime = self.created_at

        self._validate_invariants()

    @classmethod
    def create(cls, now: Optional[datetime] = None, **kwargs) -> 'LateReturnFee':
        """Record a new pending fee and its creation event"""
        now = ensure_utc(now) or utcnow()
        fee = cls(created_at=now, **kwargs)
        fee._add_domain_event(LateReturnFeeCreatedEvent(
            fee.id, fee.reservation_id, fee.requester_id, fee.vehicle_id, fee.group_id,
            fee.late_minutes, fee.amount, fee.calculation_method, timestamp=now
        ))
        fee._logger.info(
            f"Late return fee {fee.amount.format()} for reservation {fee.reservation_id} "
            f"({fee.late_minutes} minutes late)"
        )
        return fee

    def _validate_invariants(self) -> None:
        """Validate fee invariants"""
        if self.late_minutes < 0 or self.chargeable_minutes < 0:
            raise ValueError("Late minutes cannot be negative")

        if self.status == LateFeeStatus.WAIVED and not self.amount.is_zero:
            raise ValueError("Waived fee must have a zero amount")

        if self.status == LateFeeStatus.PENDING and self.amount != self.original_amount:
            raise ValueError("Pending fee amount must equal the original amount")

    def waive(self, actor_id: str, reason: str, now: Optional[datetime] = None) -> bool:
        """
        Waive the fee; idempotent when already waived
        Returns True if the fee changed
        """
        if self.status == LateFeeStatus.WAIVED:
            return False
        if self.status != LateFeeStatus.PENDING:
            raise InvalidTransition("late return fee", self.status.value, "waive")

        now = ensure_utc(now) or utcnow()
        old_status = self.status
        self.status = LateFeeStatus.WAIVED
        self.amount = Money.zero(self.original_amount.currency)
        self.waived_by = actor_id
        self.waiver_reason = reason
        self.waived_at = now
        self.updated_at = now
        self._increment_version()

        self._add_domain_event(LateReturnFeeStatusChangedEvent(
            self.id, self.reservation_id, old_status, self.status, self.original_amount,
            actor_id=actor_id, reason=reason, timestamp=now
        ))
        self._logger.info(
            f"Waived late fee {self.id} ({self.original_amount.format()}) by {actor_id}"
        )
        return True

    def mark_charged(self, invoice_id: Optional[str] = None, expense_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> None:
        """Record the billing hand-off"""
        if self.status != LateFeeStatus.PENDING:
            raise InvalidTransition("late return fee", self.status.value, "charge")

        if not invoice_id and not expense_id:
            raise ValueError("A billing reference (invoice or expense id) is required")

        now = ensure_utc(now) or utcnow()
        old_status = self.status
        self.status = LateFeeStatus.CHARGED
        self.invoice_id = invoice_id
        self.expense_id = expense_id
        self.charged_at = now
        self.updated_at = now
        self._increment_version()

        self._add_domain_event(LateReturnFeeStatusChangedEvent(
            self.id, self.reservation_id, old_status, self.status, self.amount, timestamp=now
        ))
        self._logger.info(f"Late fee {self.id} charged (invoice={invoice_id}, expense={expense_id})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "return_event_id": self.return_event_id,
            "late_minutes": self.late_minutes,
            "amount": self.amount.to_dict(),
            "original_amount": self.original_amount.to_dict(),
            "calculation_method": self.calculation_method,
            "status": self.status.value
        }

    def __str__(self) -> str:
        return f"LateReturnFee {self.id} [{self.status.value}] {self.amount.format()}"
