# File: coshare_booking/application/recurrence_service.py
"""
Recurring Reservation Application Service

Maintains recurrence rules and materializes their occurrences into concrete
reservations up to a rolling horizon.

Generation run of one rule:
1. Take the per-rule lock (the sweep skips rules locked elsewhere)
2. Auto-resume a rule whose pause has elapsed
3. Expand the occurrences of the generation window
4. Create each missing occurrence through the booking create path;
   conflicting occurrences are skipped, never retried
5. Advance the watermark in the same Unit of Work as the inserts
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
import logging
import uuid

from ..config import BookingSettings
from ..domain.models import (
    TimeRange, DomainEvent, ReservationStatus, RecurrencePattern,
    RecurrenceOccurrenceSkippedEvent, RecurrenceGeneratedEvent, ensure_utc, utcnow
)
from ..domain.aggregates import Reservation, RecurrenceRule, CANCELLED_WITH_SERIES
from ..domain.strategies import RecurrenceExpander, RankedRequest
from ..domain.exceptions import RecurrenceGenerationSkipped, RecurrenceRuleNotFound
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.locks import RuleLockProvider, InProcessRuleLockProvider
from .booking_service import BookingService
from .ports import NotificationSink
from .dtos import RecurrenceRuleRequestDTO, RecurrenceRuleDTO


# ============================================================================
# SWEEP REPORT
# ============================================================================

@dataclass
class RuleGenerationOutcome:
    """Result of one rule within a generation sweep"""
    rule_id: str
    created: int = 0
    skipped: int = 0
    status: str = "generated"  # generated, up_to_date, failed
    generated_until: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class GenerationReport:
    """Result of a whole generation sweep"""
    run_at: datetime
    rules: List[RuleGenerationOutcome] = field(default_factory=list)
    locked_rule_ids: List[str] = field(default_factory=list)

    @property
    def total_created(self) -> int:
        return sum(outcome.created for outcome in self.rules)

    @property
    def total_skipped(self) -> int:
        return sum(outcome.skipped for outcome in self.rules)

    @property
    def failed_rule_ids(self) -> List[str]:
        return [outcome.rule_id for outcome in self.rules if outcome.status == "failed"]


# ============================================================================
# RECURRENCE SERVICE
# ============================================================================

class RecurrenceService:
    """
    Application service for recurring reservations

    Use cases:
    1. Create, pause, resume and cancel recurrence rules
    2. Periodic generation sweep
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        booking_service: BookingService,
        lock_provider: Optional[RuleLockProvider] = None,
        notifications: Optional[NotificationSink] = None,
        settings: Optional[BookingSettings] = None,
        expander: Optional[RecurrenceExpander] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.uow_factory = uow_factory
        self.booking_service = booking_service
        self.lock_provider = lock_provider or InProcessRuleLockProvider()
        self.notifications = notifications or booking_service.notifications
        self.settings = settings or booking_service.settings
        self.expander = expander or RecurrenceExpander()
        self.clock = clock

        self.logger.info(
            f"RecurrenceService initialized (horizon {self.settings.recurrence.horizon_days} days)"
        )

    @property
    def _lock_timeout(self) -> float:
        return self.settings.recurrence.lock_timeout_seconds

    # ========================================================================
    # RULE MAINTENANCE
    # ========================================================================

    def create_recurrence_rule(self, request: RecurrenceRuleRequestDTO,
                               now: Optional[datetime] = None,
                               generate: bool = True) -> RecurrenceRuleDTO:
        """
        Create a recurrence rule

        Use Case: Recurring reservation
        1. Validate the requester
        2. Persist the rule
        3. Optionally materialize the first horizon right away
        """
        now = ensure_utc(now) or self.clock()
        self.logger.info(
            f"Creating {request.pattern} recurrence for {request.requester_id} on {request.vehicle_id}"
        )

        # Step 1: Requester must belong to the group
        self.booking_service.require_member(request.group_id, request.requester_id)

        # Step 2: Persist
        rule = RecurrenceRule.create(
            now=now,
            vehicle_id=request.vehicle_id,
            group_id=request.group_id,
            requester_id=request.requester_id,
            pattern=RecurrencePattern(request.pattern),
            interval=request.interval,
            weekdays=request.weekdays,
            start_time_of_day=request.start_time_of_day,
            end_time_of_day=request.end_time_of_day,
            start_date=request.start_date,
            end_date=request.end_date,
            time_zone=request.time_zone,
            purpose=request.purpose,
            notes=request.notes
        )

        with self.lock_provider.holding(rule.id, self._lock_timeout):
            with self.uow_factory() as uow:
                uow.recurrence_rules.add(rule)
            self._publish(rule.clear_events())

            # Step 3: First horizon
            if generate:
                outcome = self._generate_rule(rule.id, now)
                self.logger.info(
                    f"Rule {rule.id}: {outcome.created} reservation(s) created, "
                    f"{outcome.skipped} skipped"
                )

        return self.get_recurrence_rule(rule.id)

    def get_recurrence_rule(self, rule_id: str) -> RecurrenceRuleDTO:
        with self.uow_factory() as uow:
            rule = self._get_rule(uow, rule_id)
        return RecurrenceRuleDTO.from_domain(rule)

    def pause_recurrence_rule(self, rule_id: str, actor_id: str,
                              until: Optional[datetime] = None, reason: Optional[str] = None,
                              now: Optional[datetime] = None) -> RecurrenceRuleDTO:
        """Pause generation; until=None pauses indefinitely"""
        now = ensure_utc(now) or self.clock()

        with self.lock_provider.holding(rule_id, self._lock_timeout):
            with self.uow_factory() as uow:
                rule = self._get_rule(uow, rule_id)
                self._require_owner_or_admin(rule, actor_id)
                rule.pause(until=until, reason=reason, now=now)
                uow.recurrence_rules.update(rule)

        self._publish(rule.clear_events())
        return RecurrenceRuleDTO.from_domain(rule)

    def resume_recurrence_rule(self, rule_id: str, actor_id: str,
                               now: Optional[datetime] = None) -> RecurrenceRuleDTO:
        """Resume generation from now on; the paused period is never back-filled"""
        now = ensure_utc(now) or self.clock()

        with self.lock_provider.holding(rule_id, self._lock_timeout):
            with self.uow_factory() as uow:
                rule = self._get_rule(uow, rule_id)
                self._require_owner_or_admin(rule, actor_id)
                rule.resume(now)
                uow.recurrence_rules.update(rule)

        self._publish(rule.clear_events())
        return RecurrenceRuleDTO.from_domain(rule)

    def cancel_recurrence_rule(self, rule_id: str, actor_id: str, reason: str,
                               now: Optional[datetime] = None) -> RecurrenceRuleDTO:
        """
        Cancel the series
        Generated reservations that have not started yet are cancelled with it
        """
        now = ensure_utc(now) or self.clock()

        with self.lock_provider.holding(rule_id, self._lock_timeout):
            with self.uow_factory() as uow:
                rule = self._get_rule(uow, rule_id)
                self._require_owner_or_admin(rule, actor_id)
                rule.cancel(reason, now)
                uow.recurrence_rules.update(rule)

                upcoming = uow.reservations.find_by_recurrence(
                    rule.id,
                    statuses=[ReservationStatus.PENDING_APPROVAL, ReservationStatus.CONFIRMED],
                    starting_from=now
                )
                for reservation in upcoming:
                    reservation.cancel(actor_id, CANCELLED_WITH_SERIES, now)
                    uow.reservations.update(reservation)

        self.logger.info(
            f"Cancelled rule {rule_id} and {len(upcoming)} upcoming reservation(s)"
        )
        events = rule.clear_events()
        for reservation in upcoming:
            events.extend(reservation.clear_events())
        self._publish(events)
        return RecurrenceRuleDTO.from_domain(rule)

    # ========================================================================
    # GENERATION SWEEP
    # ========================================================================

    def run_generation_sweep(self, now: Optional[datetime] = None) -> GenerationReport:
        """
        Materialize due rules up to now + horizon
        A failing rule is reported and never stops the sweep
        """
        now = ensure_utc(now) or self.clock()
        report = GenerationReport(run_at=now)

        with self.uow_factory() as uow:
            rule_ids = [rule.id for rule in uow.recurrence_rules.find_due(now)]

        self.logger.info(f"Generation sweep at {now.isoformat()}: {len(rule_ids)} due rule(s)")

        for rule_id in rule_ids:
            handle = self.lock_provider.try_acquire(rule_id)
            if handle is None:
                self.logger.info(f"Rule {rule_id} is locked elsewhere; skipping this run")
                report.locked_rule_ids.append(rule_id)
                continue

            try:
                report.rules.append(self._generate_rule(rule_id, now))
            except Exception as e:
                self.logger.error(f"Generation failed for rule {rule_id}: {e}", exc_info=True)
                report.rules.append(RuleGenerationOutcome(rule_id=rule_id, status="failed",
                                                          error=str(e)))
            finally:
                self.lock_provider.release(handle)

        self.logger.info(
            f"Generation sweep done: {report.total_created} created, "
            f"{report.total_skipped} skipped, {len(report.locked_rule_ids)} locked"
        )
        return report

    def _generate_rule(self, rule_id: str, now: datetime) -> RuleGenerationOutcome:
        """Generation run of one rule; the caller holds the rule lock"""
        horizon = self.settings.recurrence.horizon

        with self.uow_factory() as uow:
            rule = self._get_rule(uow, rule_id)
        if not rule.is_due_for_generation(now):
            return RuleGenerationOutcome(rule_id=rule_id, status="up_to_date",
                                         generated_until=rule.last_generated_until)

        priority = self.booking_service.candidate_for_requester(
            rule.requester_id, rule.group_id, rule.vehicle_id, now
        )

        created: List[Reservation] = []
        skipped_events: List[DomainEvent] = []

        with self.uow_factory() as uow:
            rule = self._get_rule(uow, rule_id)
            rule.auto_resume_if_elapsed(now)

            window = rule.generation_window(now, horizon)
            if window is None:
                rule.advance_watermark(rule.last_generated_until or now, now)
                uow.recurrence_rules.update(rule)
                occurrences = []
            else:
                occurrences = self.expander.occurrences(rule, window)

            for occurrence in occurrences:
                if uow.reservations.find_by_rule_and_start(rule.id, occurrence.start_time):
                    continue

                try:
                    created.append(self._materialize(uow, rule, occurrence, priority, now))
                except RecurrenceGenerationSkipped as e:
                    self.logger.warning(str(e))
                    skipped_events.append(RecurrenceOccurrenceSkippedEvent(
                        rule.id, rule.vehicle_id, rule.requester_id, e.occurrence, e.reason,
                        conflicting_ids=e.conflicting_ids, timestamp=now
                    ))

            if window is not None:
                rule.advance_watermark(window.end_time, now)
                uow.recurrence_rules.update(rule)

        events = rule.clear_events()
        for reservation in created:
            events.extend(reservation.clear_events())
        events.extend(skipped_events)
        if window is not None:
            events.append(RecurrenceGeneratedEvent(
                rule.id, len(created), len(skipped_events), rule.last_generated_until,
                timestamp=now
            ))
        self._publish(events)

        return RuleGenerationOutcome(
            rule_id=rule.id,
            created=len(created),
            skipped=len(skipped_events),
            status="generated" if window is not None else "up_to_date",
            generated_until=rule.last_generated_until
        )

    def _materialize(self, uow: UnitOfWork, rule: RecurrenceRule, occurrence: TimeRange,
                     priority: RankedRequest, now: datetime) -> Reservation:
        """Create one occurrence or raise RecurrenceGenerationSkipped"""
        outcome = self.booking_service.place_reservation(
            uow,
            vehicle_id=rule.vehicle_id,
            group_id=rule.group_id,
            requester_id=rule.requester_id,
            interval=occurrence,
            status=ReservationStatus.CONFIRMED,
            now=now,
            priority=priority,
            purpose=rule.purpose,
            notes=rule.notes,
            recurrence_rule_id=rule.id,
            reservation_id=str(uuid.uuid4())
        )
        if not outcome.succeeded:
            conflicting_ids = outcome.conflict.conflicting_ids
            raise RecurrenceGenerationSkipped(
                rule.id, occurrence, f"conflicts with {', '.join(conflicting_ids)}",
                conflicting_ids=conflicting_ids
            )
        return outcome.reservation

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _get_rule(self, uow: UnitOfWork, rule_id: str) -> RecurrenceRule:
        rule = uow.recurrence_rules.get(rule_id)
        if rule is None:
            raise RecurrenceRuleNotFound(rule_id)
        return rule

    def _require_owner_or_admin(self, rule: RecurrenceRule, actor_id: str) -> None:
        if actor_id == rule.requester_id:
            return
        self.booking_service.require_admin(rule.group_id, actor_id)

    def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            try:
                self.notifications.publish(event)
            except Exception as e:
                self.logger.error(f"Failed to publish {event.event_type}: {e}", exc_info=True)
