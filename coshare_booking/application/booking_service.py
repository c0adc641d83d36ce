# File: coshare_booking/application/booking_service.py
"""
Booking Application Service

This module implements the application service layer of the booking core.
It orchestrates the domain logic and handles the use cases of the system.

Responsibilities:
1. Run every use case inside one Unit of Work
2. Serialize check-then-insert per vehicle through the schedule lock
3. Apply priority arbitration and the emergency override rules
4. Publish domain events after a successful commit

Key Principles:
- Dependency Injection for testability (ports, clock, unit of work factory)
- Explicit actor and time parameters instead of ambient context
- A plain conflict is a result, not an exception
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, List, Optional, Union
from datetime import datetime
import logging
import uuid

from ..config import BookingSettings
from ..domain.models import (
    TimeRange, BlockingWindow, MaintenanceBlock, ReservationStatus, GroupMember,
    DomainEvent, EmergencyDemotedEvent, MaintenanceWindowEvent,
    DEFAULT_BLOCKING_STATUSES, EXCLUSIVE_STATUSES, ensure_utc, month_bounds, utcnow
)
from ..domain.aggregates import Reservation, LateReturnFee, SUPERSEDED_BY_EMERGENCY
from ..domain.strategies import (
    ConflictDetector, ConflictResult, PriorityResolver, PriorityCandidate,
    RankedRequest, WeightedPriorityStrategy, LateFeePolicy
)
from ..domain.exceptions import (
    SchedulingConflict, EmergencyCapExceeded, InvalidTransition, ReservationNotFound,
    LateFeeNotFound, MaintenanceBlockNotFound
)
from ..infrastructure.repositories import UnitOfWork
from .ports import (
    GroupContextProvider, UsageHistoryProvider, EmergencyCountProvider, NotificationSink
)
from .dtos import (
    ReservationRequestDTO, BeginTripDTO, CompleteTripDTO, MaintenanceRequestDTO,
    ReservationDTO, ConflictResultDTO, RankedRequestDTO, LateReturnFeeDTO,
    CompleteTripResultDTO, MaintenanceBlockDTO, CreateReservationResult
)


@dataclass
class PlacementOutcome:
    """Result of placing one reservation inside an open unit of work"""
    reservation: Optional[Reservation] = None
    conflict: Optional[ConflictResult] = None
    superseded: List[Reservation] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.reservation is not None


class BookingService:
    """
    Main application service for vehicle bookings

    This service orchestrates the use cases of the booking core:
    1. Conflict checks and reservation creation
    2. Approval, trip start, trip completion and cancellation
    3. Late-return fees (creation, waiver, billing hand-off)
    4. Checkout reminders
    5. Maintenance blocks
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        group_context: GroupContextProvider,
        usage_history: UsageHistoryProvider,
        emergency_counts: EmergencyCountProvider,
        notifications: NotificationSink,
        settings: Optional[BookingSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        detector: Optional[ConflictDetector] = None,
        resolver: Optional[PriorityResolver] = None,
        late_fee_policy: Optional[LateFeePolicy] = None
    ):
        """
        Initialize the booking service

        Args:
            uow_factory: Callable returning a fresh Unit of Work per use case
            group_context: Membership and ownership shares
            usage_history: Days since a member last used a vehicle
            emergency_counts: Monthly emergency usage per member
            notifications: Sink receiving domain events after commit
            settings: Tunables; defaults apply when omitted
            clock: Source of "now" for requests that carry no timestamp
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.uow_factory = uow_factory
        self.group_context = group_context
        self.usage_history = usage_history
        self.emergency_counts = emergency_counts
        self.notifications = notifications
        self.settings = settings or BookingSettings()
        self.clock = clock

        self.detector = detector or ConflictDetector()
        self.resolver = resolver or PriorityResolver(WeightedPriorityStrategy(self.settings.priority))
        self.late_fee_policy = late_fee_policy or self.settings.late_fees.build_policy()

        self.logger.info("BookingService initialized")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def check_conflicts(self, vehicle_id: str, start_time: datetime, end_time: datetime,
                        exclude_reservation_id: Optional[str] = None) -> ConflictResultDTO:
        """Conflicts of a window plus the earliest free window of the same length"""
        candidate = TimeRange(start_time, end_time)
        with self.uow_factory() as uow:
            result = self._conflict_result(
                uow, vehicle_id, candidate, DEFAULT_BLOCKING_STATUSES,
                exclude_reservation_id=exclude_reservation_id
            )
        return ConflictResultDTO.from_domain(result)

    def get_reservation(self, reservation_id: str) -> ReservationDTO:
        with self.uow_factory() as uow:
            reservation = self._get_reservation(uow, reservation_id)
        return ReservationDTO.from_domain(reservation)

    def rank_competing_requests(self, vehicle_id: str, start_time: datetime,
                                end_time: datetime,
                                now: Optional[datetime] = None) -> List[RankedRequestDTO]:
        """Rank the pending requests that overlap a window, best first"""
        now = ensure_utc(now) or self.clock()
        with self.uow_factory() as uow:
            pending = uow.reservations.find_overlapping(
                vehicle_id, ensure_utc(start_time), ensure_utc(end_time),
                statuses=[ReservationStatus.PENDING_APPROVAL]
            )

        ranking = self.resolver.rank(
            self._candidate_for(r.id, r.requester_id, r.group_id, r.vehicle_id,
                                r.is_emergency, r.created_at, now)
            for r in pending
        )
        return [RankedRequestDTO.from_domain(ranked) for ranked in ranking]

    # ========================================================================
    # RESERVATION CREATION
    # ========================================================================

    def create_reservation(self, request: ReservationRequestDTO) -> CreateReservationResult:
        """
        Create a reservation

        Use Case: Reserve a vehicle
        1. Validate the requester and the emergency request
        2. Pre-check the monthly emergency cap
        3. Recount the cap under the member lock (demote instead of failing)
        4. Score the request
        5. Lock the vehicle schedule, check conflicts, override or insert
        6. Publish events after commit

        Returns: ReservationDTO, or ConflictResultDTO when the window is taken
        """
        now = self.clock()
        interval = request.interval
        self.logger.info(
            f"Processing reservation request of {request.requester_id} for "
            f"{request.vehicle_id}: {interval}"
        )

        # Step 1: Validate requester and emergency request
        self.require_member(request.group_id, request.requester_id)
        is_emergency = request.is_emergency
        if is_emergency:
            if self.settings.emergency.admins_only:
                self.require_admin(request.group_id, request.requester_id)
            if self.settings.emergency.require_reason and not (request.emergency_reason or "").strip():
                raise ValueError("Emergency reservations require a reason")

        # Step 2: Cheap pre-check through the port, outside any lock
        demotion: Optional[EmergencyCapExceeded] = None
        if is_emergency:
            demotion = self._check_emergency_cap(
                request.requester_id,
                self.emergency_counts.emergency_count_this_month(request.requester_id, now)
            )
            is_emergency = demotion is None

        request_id = str(uuid.uuid4())
        candidate = self._candidate_for(
            request_id, request.requester_id, request.group_id, request.vehicle_id,
            is_emergency, now, now
        )

        with self.uow_factory() as uow:
            # Step 3: Authoritative count; the member row serializes concurrent emergencies
            if is_emergency:
                uow.lock_member(request.requester_id)
                demotion = self._check_emergency_cap(
                    request.requester_id,
                    uow.reservations.count_emergency_for_user(request.requester_id, month_bounds(now))
                )
                if demotion is not None:
                    is_emergency = False
                    candidate = replace(candidate, is_emergency=False)

            # Step 4: Priority
            priority = self.resolver.evaluate(candidate)
            if is_emergency or not self.settings.requires_approval(request.group_id):
                status = ReservationStatus.CONFIRMED
            else:
                status = ReservationStatus.PENDING_APPROVAL

            # Step 5: Place the reservation
            outcome = self.place_reservation(
                uow,
                vehicle_id=request.vehicle_id,
                group_id=request.group_id,
                requester_id=request.requester_id,
                interval=interval,
                status=status,
                now=now,
                priority=priority,
                is_emergency=is_emergency,
                emergency_reason=request.emergency_reason,
                purpose=request.purpose,
                notes=request.notes,
                reservation_id=request_id,
                demotion=demotion,
                auto_cancel_conflicts=request.emergency_auto_cancel_conflicts
            )
            if outcome.succeeded and is_emergency:
                uow.touch_member(request.requester_id)

        # Step 6: Publish
        if not outcome.succeeded:
            events = []
            if demotion is not None:
                events.append(EmergencyDemotedEvent(
                    request_id, request.requester_id, demotion.count, demotion.cap, timestamp=now
                ))
            self._publish(events)
            self.logger.warning(
                f"Reservation request of {request.requester_id} conflicts with "
                f"{outcome.conflict.conflicting_ids}"
            )
            return ConflictResultDTO.from_domain(outcome.conflict)

        self._publish(self._collect(outcome.superseded + [outcome.reservation]))
        return ReservationDTO.from_domain(outcome.reservation)

    def place_reservation(
        self,
        uow: UnitOfWork,
        vehicle_id: str,
        group_id: str,
        requester_id: str,
        interval: TimeRange,
        status: ReservationStatus,
        now: datetime,
        priority: RankedRequest,
        is_emergency: bool = False,
        emergency_reason: Optional[str] = None,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
        recurrence_rule_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
        demotion: Optional[EmergencyCapExceeded] = None,
        auto_cancel_conflicts: bool = False
    ) -> PlacementOutcome:
        """
        Check-then-insert on an open unit of work
        An emergency cancels the reservations in its way only with auto_cancel_conflicts,
        otherwise it gets the conflict result with itself ranked first.
        The caller commits and publishes the events of the returned aggregates
        """
        uow.lock_vehicle(vehicle_id)

        # Pending requests compete with each other and are arbitrated on approval
        statuses = (EXCLUSIVE_STATUSES if status == ReservationStatus.PENDING_APPROVAL
                    else DEFAULT_BLOCKING_STATUSES)
        windows = self._load_windows(uow, vehicle_id, interval.start_time, interval.end_time)
        conflicts = self.detector.find_conflicts(
            vehicle_id, interval, windows, statuses,
            exclude_recurrence_rule_id=recurrence_rule_id
        )

        superseded: List[Reservation] = []
        if conflicts and is_emergency and auto_cancel_conflicts:
            superseded = self._try_emergency_override(uow, conflicts, priority, group_id, now)
            if superseded is None:
                self.logger.warning(
                    f"Emergency request {priority.request_id} cannot override "
                    f"{[w.source_id for w in conflicts]}; using normal arbitration"
                )
                superseded = []
            else:
                conflicts = []

        if conflicts:
            result = self._conflict_result(
                uow, vehicle_id, interval, statuses,
                exclude_recurrence_rule_id=recurrence_rule_id,
                conflicts=conflicts
            )
            result.ranking = self.resolver.rank(
                [priority.candidate] + self._conflict_candidates(conflicts, group_id, now)
            )
            return PlacementOutcome(conflict=result)

        reservation = Reservation.create(
            vehicle_id=vehicle_id,
            group_id=group_id,
            requester_id=requester_id,
            interval=interval,
            status=status,
            now=now,
            priority_tier=priority.tier,
            priority_score=priority.score,
            is_emergency=is_emergency,
            emergency_reason=emergency_reason,
            purpose=purpose,
            notes=notes,
            recurrence_rule_id=recurrence_rule_id,
            id=reservation_id or priority.request_id
        )
        if demotion is not None:
            reservation.demote_emergency(demotion.count, demotion.cap, now)
        if superseded:
            reservation.record_emergency_override([r.id for r in superseded], now)

        for cancelled in superseded:
            uow.reservations.update(cancelled)
        uow.reservations.add(reservation)
        uow.touch_vehicle(vehicle_id)

        return PlacementOutcome(reservation=reservation, superseded=superseded)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def approve_reservation(self, reservation_id: str, approver_id: str,
                            now: Optional[datetime] = None) -> ReservationDTO:
        """
        Approve a pending reservation

        Use Case: Group admin approval
        1. Verify the approver is a group admin and the reservation is pending
        2. Lock the vehicle and re-run the conflict check against
           confirmed and in-progress reservations
        3. Confirm

        Raises: InvalidTransition unless pending, SchedulingConflict if another
                reservation took the window
        """
        now = ensure_utc(now) or self.clock()
        self.logger.info(f"Approving reservation {reservation_id} by {approver_id}")

        with self.uow_factory() as uow:
            reservation = self._get_reservation(uow, reservation_id)
            self.require_admin(reservation.group_id, approver_id)
            if reservation.status != ReservationStatus.PENDING_APPROVAL:
                raise InvalidTransition("reservation", reservation.status.value, "approve")

            uow.lock_vehicle(reservation.vehicle_id)
            windows = self._load_windows(
                uow, reservation.vehicle_id, reservation.start_time, reservation.end_time
            )
            conflicts = self.detector.find_conflicts(
                reservation.vehicle_id, reservation.interval, windows,
                EXCLUSIVE_STATUSES, exclude_reservation_id=reservation.id
            )
            if conflicts:
                result = self._conflict_result(
                    uow, reservation.vehicle_id, reservation.interval, EXCLUSIVE_STATUSES,
                    exclude_reservation_id=reservation.id, conflicts=conflicts
                )
                self.logger.warning(
                    f"Cannot approve {reservation_id}: window taken by {result.conflicting_ids}"
                )
                raise SchedulingConflict(result)

            reservation.approve(approver_id, now)
            uow.reservations.update(reservation)
            uow.touch_vehicle(reservation.vehicle_id)

        self._publish(self._collect([reservation]))
        return ReservationDTO.from_domain(reservation)

    def begin_trip(self, request: BeginTripDTO) -> ReservationDTO:
        """Check out the vehicle of a confirmed reservation"""
        now = request.occurred_at or self.clock()

        with self.uow_factory() as uow:
            reservation = self._get_reservation(uow, request.reservation_id)
            reservation.begin_trip(request.actor_id, request.odometer, now)
            uow.reservations.update(reservation)

        self._publish(self._collect([reservation]))
        return ReservationDTO.from_domain(reservation)

    def complete_trip(self, request: CompleteTripDTO) -> CompleteTripResultDTO:
        """
        Return the vehicle

        Use Case: Vehicle return
        1. Replay check on the return event id
        2. Complete the trip (distance, trip fee, damage review flag)
        3. Charge a late-return fee when the return overran the reservation
        """
        self.logger.info(f"Processing return of reservation {request.reservation_id}")

        with self.uow_factory() as uow:
            # Step 1: At most one fee per return event
            existing_fee = uow.late_fees.find_by_return_event(request.return_event_id)
            if existing_fee is not None:
                reservation = self._get_reservation(uow, existing_fee.reservation_id)
                self.logger.info(f"Return event {request.return_event_id} already processed")
                return CompleteTripResultDTO(
                    reservation=ReservationDTO.from_domain(reservation),
                    late_fee=LateReturnFeeDTO.from_domain(existing_fee)
                )

            # Step 2: Complete the trip
            reservation = self._get_reservation(uow, request.reservation_id)
            late_minutes = reservation.complete(
                returned_at=request.returned_at,
                odometer=request.odometer,
                max_distance_km=self.settings.trips.max_trip_distance_km,
                rate_per_km=self.settings.trips.rate_per_km,
                requires_damage_review=request.requires_damage_review,
                notes=request.notes,
                currency=self.settings.late_fees.currency
            )
            uow.reservations.update(reservation)

            # Step 3: Late fee
            fee = None
            quote = self.late_fee_policy.calculate(late_minutes)
            if quote.is_chargeable:
                fee = LateReturnFee.create(
                    now=request.returned_at,
                    reservation_id=reservation.id,
                    return_event_id=request.return_event_id,
                    requester_id=reservation.requester_id,
                    vehicle_id=reservation.vehicle_id,
                    group_id=reservation.group_id,
                    late_minutes=quote.late_minutes,
                    chargeable_minutes=quote.chargeable_minutes,
                    amount=quote.amount,
                    calculation_method=quote.method
                )
                uow.late_fees.add(fee)
            elif late_minutes > 0:
                self.logger.info(
                    f"Reservation {reservation.id} returned {late_minutes} minutes late "
                    f"within grace; no fee"
                )

        self._publish(self._collect([reservation] + ([fee] if fee else [])))
        return CompleteTripResultDTO(
            reservation=ReservationDTO.from_domain(reservation),
            late_fee=LateReturnFeeDTO.from_domain(fee) if fee else None
        )

    def cancel_reservation(self, reservation_id: str, actor_id: str, reason: str,
                           now: Optional[datetime] = None) -> ReservationDTO:
        """Cancel a reservation that has not completed; others' reservations need an admin"""
        now = ensure_utc(now) or self.clock()

        with self.uow_factory() as uow:
            reservation = self._get_reservation(uow, reservation_id)
            if actor_id != reservation.requester_id:
                self.require_admin(reservation.group_id, actor_id)
            reservation.cancel(actor_id, reason, now)
            uow.reservations.update(reservation)

        self._publish(self._collect([reservation]))
        return ReservationDTO.from_domain(reservation)

    # ========================================================================
    # REMINDERS
    # ========================================================================

    def run_reminder_sweep(self, now: Optional[datetime] = None) -> int:
        """
        Mark and publish every due checkout reminder
        Returns: Number of reminders sent
        """
        now = ensure_utc(now) or self.clock()
        schedule = self.settings.reminders
        touched: List[Reservation] = []
        sent = 0

        with self.uow_factory() as uow:
            for reservation in uow.reservations.find_reminder_candidates(
                    now, schedule.pre_checkout_lead):
                due = reservation.due_reminders(now, schedule)
                if not due:
                    continue
                for kind in due:
                    reservation.mark_reminder_sent(kind, now)
                    sent += 1
                uow.reservations.update(reservation)
                touched.append(reservation)

        self._publish(self._collect(touched))
        if sent:
            self.logger.info(f"Reminder sweep sent {sent} reminder(s)")
        return sent

    # ========================================================================
    # LATE FEES
    # ========================================================================

    def waive_late_fee(self, fee_id: str, actor_id: str, reason: str,
                       now: Optional[datetime] = None) -> LateReturnFeeDTO:
        """Waive a pending fee (group admins only); waiving twice is a no-op"""
        now = ensure_utc(now) or self.clock()

        with self.uow_factory() as uow:
            fee = uow.late_fees.get(fee_id)
            if fee is None:
                raise LateFeeNotFound(fee_id)
            self.require_admin(fee.group_id, actor_id)

            if fee.waive(actor_id, reason, now):
                uow.late_fees.update(fee)

        self._publish(self._collect([fee]))
        return LateReturnFeeDTO.from_domain(fee)

    def record_fee_charged(self, fee_id: str, invoice_id: Optional[str] = None,
                           expense_id: Optional[str] = None,
                           now: Optional[datetime] = None) -> LateReturnFeeDTO:
        """Record the billing hand-off of a pending fee"""
        now = ensure_utc(now) or self.clock()

        with self.uow_factory() as uow:
            fee = uow.late_fees.get(fee_id)
            if fee is None:
                raise LateFeeNotFound(fee_id)
            fee.mark_charged(invoice_id=invoice_id, expense_id=expense_id, now=now)
            uow.late_fees.update(fee)

        self._publish(self._collect([fee]))
        return LateReturnFeeDTO.from_domain(fee)

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    def schedule_maintenance(self, request: MaintenanceRequestDTO) -> MaintenanceBlockDTO:
        """
        Block a vehicle for maintenance
        Idempotent per maintenance schedule id; a changed window reschedules.
        Existing reservations are left in place and reported back.
        """
        now = self.clock()
        interval = TimeRange(request.start_time, request.end_time)

        with self.uow_factory() as uow:
            uow.lock_vehicle(request.vehicle_id)
            block = uow.maintenance_blocks.find_by_schedule_id(request.maintenance_schedule_id)
            changed = True

            if block is None:
                block = MaintenanceBlock(
                    maintenance_schedule_id=request.maintenance_schedule_id,
                    vehicle_id=request.vehicle_id,
                    group_id=request.group_id,
                    service_type=request.service_type,
                    interval=interval,
                    notes=request.notes,
                    created_at=now
                )
                uow.maintenance_blocks.add(block)
            elif block.is_active and block.interval != interval:
                block.reschedule(interval, now)
                uow.maintenance_blocks.update(block)
            else:
                changed = False

            affected = [
                r.id for r in uow.reservations.find_overlapping(
                    block.vehicle_id, block.interval.start_time, block.interval.end_time
                )
            ]
            if changed:
                uow.touch_vehicle(block.vehicle_id)

        if changed:
            self.logger.info(f"Scheduled {block}")
            self._publish([MaintenanceWindowEvent(block, timestamp=now)])
        if affected:
            self.logger.warning(
                f"Maintenance {block.maintenance_schedule_id} overlaps reservations {affected}"
            )
        return MaintenanceBlockDTO.from_domain(block, affected)

    def cancel_maintenance(self, maintenance_schedule_id: str,
                           now: Optional[datetime] = None) -> MaintenanceBlockDTO:
        """Release a maintenance window"""
        now = ensure_utc(now) or self.clock()

        with self.uow_factory() as uow:
            block = uow.maintenance_blocks.find_by_schedule_id(maintenance_schedule_id)
            if block is None:
                raise MaintenanceBlockNotFound(maintenance_schedule_id)
            if not block.is_active:
                return MaintenanceBlockDTO.from_domain(block)

            uow.lock_vehicle(block.vehicle_id)
            block.cancel(now)
            uow.maintenance_blocks.update(block)
            uow.touch_vehicle(block.vehicle_id)

        self.logger.info(f"Cancelled maintenance {maintenance_schedule_id}")
        self._publish([MaintenanceWindowEvent(block, timestamp=now)])
        return MaintenanceBlockDTO.from_domain(block)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _get_reservation(self, uow: UnitOfWork, reservation_id: str) -> Reservation:
        reservation = uow.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    def require_member(self, group_id: str, user_id: str) -> GroupMember:
        for member in self.group_context.get_members(group_id):
            if member.user_id == user_id:
                return member
        raise PermissionError(f"User {user_id} is not a member of group {group_id}")

    def require_admin(self, group_id: str, user_id: str) -> GroupMember:
        member = self.require_member(group_id, user_id)
        if not member.is_admin:
            raise PermissionError(f"User {user_id} is not an admin of group {group_id}")
        return member

    def _check_emergency_cap(self, user_id: str, count: int) -> Optional[EmergencyCapExceeded]:
        """The demotion to record once the monthly cap is used up, None while under it"""
        cap = self.settings.emergency.monthly_cap
        if count < cap:
            return None
        self.logger.warning(
            f"Emergency cap of {user_id} reached ({count}/{cap}); request continues as normal"
        )
        return EmergencyCapExceeded(user_id, count, cap)

    def _candidate_for(self, request_id: str, requester_id: str, group_id: str,
                       vehicle_id: str, is_emergency: bool, created_at: datetime,
                       as_of: datetime) -> PriorityCandidate:
        share = self.require_member(group_id, requester_id).ownership_share
        return PriorityCandidate(
            request_id=request_id,
            requester_id=requester_id,
            ownership_share=share,
            days_since_last_reservation=self.usage_history.days_since_last_reservation(
                requester_id, vehicle_id, as_of
            ),
            is_emergency=is_emergency,
            created_at=created_at
        )

    def candidate_for_requester(self, requester_id: str, group_id: str, vehicle_id: str,
                                now: datetime, request_id: Optional[str] = None) -> RankedRequest:
        """Score a non-emergency request of a member"""
        return self.resolver.evaluate(self._candidate_for(
            request_id or str(uuid.uuid4()), requester_id, group_id, vehicle_id,
            False, now, now
        ))

    def _conflict_candidates(self, conflicts: Iterable[BlockingWindow], group_id: str,
                             now: datetime) -> List[PriorityCandidate]:
        candidates = []
        for window in conflicts:
            if window.is_maintenance:
                continue
            try:
                candidates.append(self._candidate_for(
                    window.source_id, window.requester_id, group_id, window.vehicle_id,
                    window.is_emergency, window.created_at or now, now
                ))
            except PermissionError:
                # Former members keep their reservations but carry no share
                self.logger.warning(f"Requester {window.requester_id} left group {group_id}")
        return candidates

    def _try_emergency_override(self, uow: UnitOfWork, conflicts: List[BlockingWindow],
                                priority: RankedRequest, group_id: str,
                                now: datetime) -> Optional[List[Reservation]]:
        """
        Cancel the conflicting reservations for an authorized emergency
        Returns None when any conflict cannot be superseded
        """
        if any(window.is_maintenance for window in conflicts):
            return None

        victims = [uow.reservations.get(window.source_id) for window in conflicts]
        if any(victim is None or not victim.is_cancellable_by_override for victim in victims):
            return None

        ranking = self.resolver.rank(
            [priority.candidate] + self._conflict_candidates(conflicts, group_id, now)
        )
        if ranking[0].request_id != priority.request_id:
            return None

        for victim in victims:
            victim.cancel(priority.candidate.requester_id, SUPERSEDED_BY_EMERGENCY, now,
                          superseded_by=priority.request_id)

        self.logger.warning(
            f"Emergency request {priority.request_id} supersedes {[v.id for v in victims]}"
        )
        return victims

    def _load_windows(self, uow: UnitOfWork, vehicle_id: str, start: datetime,
                      end: datetime) -> List[BlockingWindow]:
        """Blocking windows of a vehicle intersecting [start, end)"""
        windows = [
            r.as_blocking_window()
            for r in uow.reservations.find_overlapping(
                vehicle_id, start, end, statuses=DEFAULT_BLOCKING_STATUSES
            )
        ]
        windows.extend(
            block.as_blocking_window()
            for block in uow.maintenance_blocks.find_overlapping(vehicle_id, start, end)
        )
        return windows

    def _conflict_result(self, uow: UnitOfWork, vehicle_id: str, candidate: TimeRange,
                         statuses, exclude_reservation_id: Optional[str] = None,
                         exclude_recurrence_rule_id: Optional[str] = None,
                         conflicts: Optional[List[BlockingWindow]] = None) -> ConflictResult:
        search_until = candidate.end_time + self.settings.recommendation_search_window
        windows = self._load_windows(uow, vehicle_id, candidate.start_time, search_until)

        if conflicts is None:
            conflicts = self.detector.find_conflicts(
                vehicle_id, candidate, windows, statuses,
                exclude_reservation_id=exclude_reservation_id,
                exclude_recurrence_rule_id=exclude_recurrence_rule_id
            )

        recommended = None
        if conflicts:
            recommended = self.detector.recommend_window(
                vehicle_id, candidate, windows, search_until, statuses,
                exclude_reservation_id=exclude_reservation_id,
                exclude_recurrence_rule_id=exclude_recurrence_rule_id
            )
        return ConflictResult(conflicts=conflicts, recommended_window=recommended)

    @staticmethod
    def _collect(aggregates: Iterable[Union[Reservation, LateReturnFee]]) -> List[DomainEvent]:
        events: List[DomainEvent] = []
        for aggregate in aggregates:
            events.extend(aggregate.clear_events())
        return events

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        """Hand committed events to the sink; a failing sink never undoes the commit"""
        for event in events:
            try:
                self.notifications.publish(event)
            except Exception as e:
                self.logger.error(f"Failed to publish {event.event_type}: {e}", exc_info=True)
