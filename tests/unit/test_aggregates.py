#!/usr/bin/env python3
"""
Unit Tests for Aggregate Roots

Reservation lifecycle, reminders, RecurrenceRule pause/resume and
watermark handling, and LateReturnFee waive/charge transitions.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, date, time, timedelta, timezone
from decimal import Decimal

sys.path.append(str(Path(__file__).parent.parent.parent))

from coshare_booking.config import ReminderSchedule
from coshare_booking.domain.models import (
    Money, TimeRange, ReservationStatus, PriorityTier, RecurrencePattern,
    RecurrenceStatus, LateFeeStatus, ReminderKind, BlockingSource,
    ReservationCreatedEvent, ReservationCancelledEvent, TripCompletedEvent,
    ReminderDueEvent, EmergencyDemotedEvent, EmergencyOverrideEvent,
    RecurrenceRuleStatusChangedEvent, LateReturnFeeStatusChangedEvent
)
from coshare_booking.domain.aggregates import Reservation, RecurrenceRule, LateReturnFee
from coshare_booking.domain.exceptions import InvalidTransition

MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)
START = MONDAY + timedelta(hours=9)
END = MONDAY + timedelta(hours=11)


def new_reservation(status=ReservationStatus.CONFIRMED, **overrides):
    params = dict(
        vehicle_id="vehicle-1",
        group_id="group-1",
        requester_id="bob",
        interval=TimeRange(START, END),
        status=status,
        now=MONDAY - timedelta(days=3)
    )
    params.update(overrides)
    return Reservation.create(**params)


def new_rule(**overrides):
    params = dict(
        vehicle_id="vehicle-1",
        group_id="group-1",
        requester_id="bob",
        pattern=RecurrencePattern.WEEKLY,
        weekdays=[1, 3],
        start_time_of_day=time(8, 0),
        end_time_of_day=time(9, 0),
        start_date=date(2026, 3, 2),
        now=MONDAY
    )
    params.update(overrides)
    return RecurrenceRule.create(**params)


def new_fee(**overrides):
    params = dict(
        reservation_id="reservation-1",
        return_event_id="return-1",
        requester_id="bob",
        vehicle_id="vehicle-1",
        group_id="group-1",
        late_minutes=47,
        chargeable_minutes=47,
        amount=Money(Decimal("20.00")),
        calculation_method="incremental",
        now=END
    )
    params.update(overrides)
    return LateReturnFee.create(**params)


# ============================================================================
# RESERVATION
# ============================================================================

class TestReservationCreation(unittest.TestCase):

    def test_create_records_event(self):
        """Test that creation raises a created event and starts at version 1"""
        reservation = new_reservation()

        self.assertEqual(reservation.version, 1)
        events = reservation.clear_events()
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], ReservationCreatedEvent)
        self.assertFalse(reservation.has_changes)

    def test_create_only_in_initial_states(self):
        """Test that a reservation cannot be created as in progress or terminal"""
        for status in (ReservationStatus.IN_PROGRESS, ReservationStatus.COMPLETED,
                       ReservationStatus.CANCELLED):
            with self.assertRaises(InvalidTransition):
                new_reservation(status=status)

    def test_emergency_requires_emergency_tier(self):
        """Test that an emergency flag without the emergency tier is rejected"""
        with self.assertRaises(ValueError):
            new_reservation(is_emergency=True, priority_tier=PriorityTier.NORMAL)

    def test_blocking_window_view(self):
        reservation = new_reservation(recurrence_rule_id="rule-1")
        view = reservation.as_blocking_window()

        self.assertEqual(view.source, BlockingSource.RESERVATION)
        self.assertEqual(view.status, ReservationStatus.CONFIRMED)
        self.assertEqual(view.recurrence_rule_id, "rule-1")
        self.assertEqual(view.interval, reservation.interval)


class TestReservationLifecycle(unittest.TestCase):

    def test_approve_pending(self):
        """Test that approval confirms a pending reservation"""
        reservation = new_reservation(status=ReservationStatus.PENDING_APPROVAL)
        reservation.approve("alice", MONDAY)

        self.assertEqual(reservation.status, ReservationStatus.CONFIRMED)
        self.assertEqual(reservation.approved_by, "alice")
        self.assertEqual(reservation.version, 2)

    def test_approve_confirmed_is_invalid(self):
        with self.assertRaises(InvalidTransition):
            new_reservation().approve("alice", MONDAY)

    def test_trip_round_trip(self):
        """Test begin and complete with distance and trip fee"""
        reservation = new_reservation()
        reservation.begin_trip("bob", 1000, START)
        late = reservation.complete(END - timedelta(minutes=5), 1120, 2000,
                                    rate_per_km=Decimal("0.25"))

        self.assertEqual(late, 0)
        self.assertEqual(reservation.status, ReservationStatus.COMPLETED)
        self.assertEqual(reservation.distance_km, 120)
        self.assertEqual(reservation.trip_fee.amount, Decimal("30.00"))
        self.assertEqual(reservation.version, 3)

    def test_complete_reports_late_minutes(self):
        """Test that late minutes are rounded up"""
        reservation = new_reservation()
        reservation.begin_trip("bob", 1000, START)
        late = reservation.complete(END + timedelta(minutes=46, seconds=10), 1010, 2000)

        self.assertEqual(late, 47)
        completed = [e for e in reservation.clear_events() if isinstance(e, TripCompletedEvent)]
        self.assertEqual(len(completed), 1)

    def test_complete_rejects_bad_odometer(self):
        """Test odometer regression and the distance ceiling"""
        reservation = new_reservation()
        reservation.begin_trip("bob", 1000, START)

        with self.assertRaises(ValueError):
            reservation.complete(END, 999, 2000)
        with self.assertRaises(ValueError):
            reservation.complete(END, 3001, 2000)
        self.assertEqual(reservation.status, ReservationStatus.IN_PROGRESS)

    def test_begin_trip_requires_confirmed(self):
        """Test that a pending reservation cannot start a trip"""
        reservation = new_reservation(status=ReservationStatus.PENDING_APPROVAL)
        with self.assertRaises(InvalidTransition):
            reservation.begin_trip("bob", 1000, START)

    def test_begin_trip_rejects_negative_odometer(self):
        with self.assertRaises(ValueError):
            new_reservation().begin_trip("bob", -1, START)

    def test_cancel(self):
        """Test that cancellation records who, why and what superseded it"""
        reservation = new_reservation()
        reservation.cancel("alice", "superseded", MONDAY, superseded_by="reservation-9")

        self.assertEqual(reservation.status, ReservationStatus.CANCELLED)
        self.assertEqual(reservation.cancelled_by, "alice")
        self.assertEqual(reservation.superseded_by, "reservation-9")
        self.assertFalse(reservation.is_active)
        cancelled = [e for e in reservation.clear_events()
                     if isinstance(e, ReservationCancelledEvent)]
        self.assertEqual(len(cancelled), 1)

    def test_cancel_terminal_is_invalid(self):
        reservation = new_reservation()
        reservation.cancel("bob", "plans changed", MONDAY)
        with self.assertRaises(InvalidTransition):
            reservation.cancel("bob", "again", MONDAY)


class TestReservationEmergency(unittest.TestCase):

    def test_override_eligibility(self):
        """Test which reservations an emergency may supersede"""
        self.assertTrue(new_reservation().is_cancellable_by_override)
        self.assertTrue(
            new_reservation(status=ReservationStatus.PENDING_APPROVAL).is_cancellable_by_override
        )

        emergency = new_reservation(is_emergency=True, priority_tier=PriorityTier.EMERGENCY)
        self.assertFalse(emergency.is_cancellable_by_override)

        started = new_reservation()
        started.begin_trip("bob", 10, START)
        self.assertFalse(started.is_cancellable_by_override)

    def test_demote(self):
        """Test that demotion clears the flag and drops the tier"""
        reservation = new_reservation(is_emergency=True, priority_tier=PriorityTier.EMERGENCY,
                                      emergency_reason="flat tyre at home")
        reservation.clear_events()
        reservation.demote_emergency(2, 2, MONDAY)

        self.assertFalse(reservation.is_emergency)
        self.assertTrue(reservation.emergency_demoted)
        self.assertEqual(reservation.priority_tier, PriorityTier.NORMAL)
        self.assertIsInstance(reservation.clear_events()[0], EmergencyDemotedEvent)

    def test_override_requires_emergency(self):
        """Test that only emergency reservations record overrides"""
        with self.assertRaises(ValueError):
            new_reservation().record_emergency_override(["reservation-1"], MONDAY)

        emergency = new_reservation(is_emergency=True, priority_tier=PriorityTier.EMERGENCY)
        emergency.clear_events()
        emergency.record_emergency_override(["reservation-1"], MONDAY)
        self.assertIsInstance(emergency.clear_events()[0], EmergencyOverrideEvent)


class TestReservationReminders(unittest.TestCase):
    """Reminder windows relative to the start at 09:00"""

    def setUp(self):
        self.schedule = ReminderSchedule()
        self.reservation = new_reservation()

    def test_pre_checkout_window(self):
        due = self.reservation.due_reminders(START - timedelta(hours=12), self.schedule)
        self.assertEqual(due, [ReminderKind.PRE_CHECKOUT])

    def test_final_checkout_window(self):
        due = self.reservation.due_reminders(START - timedelta(minutes=30), self.schedule)
        self.assertEqual(due, [ReminderKind.FINAL_CHECKOUT])

    def test_missed_checkout_window(self):
        due = self.reservation.due_reminders(START + timedelta(minutes=45), self.schedule)
        self.assertEqual(due, [ReminderKind.MISSED_CHECKOUT])

    def test_nothing_due_outside_windows(self):
        """Test the gaps before 24h, between start and +30m, and after the end"""
        for moment in (START - timedelta(hours=30), START + timedelta(minutes=10),
                       END + timedelta(minutes=5)):
            self.assertEqual(self.reservation.due_reminders(moment, self.schedule), [])

    def test_mark_sent_once(self):
        """Test that a reminder fires at most once"""
        self.reservation.clear_events()
        now = START - timedelta(hours=12)

        self.reservation.mark_reminder_sent(ReminderKind.PRE_CHECKOUT, now)
        self.reservation.mark_reminder_sent(ReminderKind.PRE_CHECKOUT, now)

        self.assertEqual(self.reservation.due_reminders(now, self.schedule), [])
        events = self.reservation.clear_events()
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], ReminderDueEvent)

    def test_no_reminders_unless_confirmed(self):
        pending = new_reservation(status=ReservationStatus.PENDING_APPROVAL)
        self.assertEqual(pending.due_reminders(START - timedelta(hours=12), self.schedule), [])


# ============================================================================
# RECURRENCE RULE
# ============================================================================

class TestRecurrenceRuleValidation(unittest.TestCase):

    def test_invalid_definitions(self):
        """Test the rule invariants"""
        invalid = [
            dict(interval=0),
            dict(weekdays=[]),
            dict(weekdays=[7]),
            dict(end_time_of_day=time(8, 0)),
            dict(end_date=date(2026, 3, 1)),
            dict(time_zone="Mars/Olympus_Mons"),
        ]
        for overrides in invalid:
            with self.assertRaises(ValueError, msg=str(overrides)):
                new_rule(**overrides)

    def test_weekdays_normalized(self):
        rule = new_rule(weekdays=[3, 1, 3])
        self.assertEqual(rule.weekdays, [1, 3])

    def test_series_bounds_in_local_zone(self):
        """Test that series start and end follow the rule's time zone"""
        rule = new_rule(time_zone="Europe/Berlin", end_date=date(2026, 3, 31))

        self.assertEqual(rule.series_start, datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc))
        # Local midnight after Mar 31 is already summer time (UTC+2)
        self.assertEqual(rule.series_end, datetime(2026, 3, 31, 22, 0, tzinfo=timezone.utc))
        self.assertEqual(rule.occurrence_duration, timedelta(hours=1))


class TestRecurrenceRuleLifecycle(unittest.TestCase):

    def setUp(self):
        self.rule = new_rule()
        self.rule.clear_events()

    def test_pause_and_resume_moves_watermark(self):
        """Test that resume never back-fills the paused period"""
        self.rule.advance_watermark(MONDAY + timedelta(days=14), MONDAY)
        self.rule.pause(None, "holiday", MONDAY)
        resumed_at = MONDAY + timedelta(days=20)
        self.rule.resume(resumed_at)

        self.assertEqual(self.rule.status, RecurrenceStatus.ACTIVE)
        self.assertEqual(self.rule.last_generated_until, resumed_at)
        events = self.rule.clear_events()
        self.assertEqual([e.__class__ for e in events], [RecurrenceRuleStatusChangedEvent] * 2)

    def test_pause_end_must_be_future(self):
        with self.assertRaises(ValueError):
            self.rule.pause(MONDAY - timedelta(hours=1), None, MONDAY)

    def test_resume_requires_paused(self):
        with self.assertRaises(InvalidTransition):
            self.rule.resume(MONDAY)

    def test_auto_resume(self):
        """Test that an elapsed timed pause resumes with the watermark at the pause end"""
        pause_end = MONDAY + timedelta(days=7)
        self.rule.pause(pause_end, None, MONDAY)

        self.assertFalse(self.rule.auto_resume_if_elapsed(MONDAY + timedelta(days=3)))
        self.assertFalse(self.rule.is_due_for_generation(MONDAY + timedelta(days=3)))
        self.assertTrue(self.rule.is_due_for_generation(pause_end))

        self.assertTrue(self.rule.auto_resume_if_elapsed(MONDAY + timedelta(days=9)))
        self.assertEqual(self.rule.status, RecurrenceStatus.ACTIVE)
        self.assertEqual(self.rule.last_generated_until, pause_end)

    def test_indefinite_pause_never_due(self):
        self.rule.pause(None, None, MONDAY)
        self.assertFalse(self.rule.is_due_for_generation(MONDAY + timedelta(days=365)))
        self.assertFalse(self.rule.auto_resume_if_elapsed(MONDAY + timedelta(days=365)))

    def test_cancel_is_final(self):
        self.rule.cancel("sold the car", MONDAY)
        self.assertEqual(self.rule.status, RecurrenceStatus.CANCELLED)
        for action in (lambda: self.rule.cancel("again", MONDAY),
                       lambda: self.rule.pause(None, None, MONDAY)):
            with self.assertRaises(InvalidTransition):
                action()

    def test_watermark_never_moves_backwards(self):
        self.rule.advance_watermark(MONDAY + timedelta(days=14), MONDAY)
        self.rule.advance_watermark(MONDAY + timedelta(days=7), MONDAY + timedelta(days=1))
        self.assertEqual(self.rule.last_generated_until, MONDAY + timedelta(days=14))
        self.assertEqual(self.rule.last_generation_run_at, MONDAY + timedelta(days=1))


class TestGenerationWindow(unittest.TestCase):

    def test_first_window(self):
        """Test that the first run covers now up to the horizon"""
        rule = new_rule()
        window = rule.generation_window(MONDAY + timedelta(hours=12), timedelta(days=14))

        self.assertEqual(window.start_time, MONDAY + timedelta(hours=12))
        self.assertEqual(window.end_time, MONDAY + timedelta(days=14, hours=12))

    def test_window_starts_at_watermark(self):
        rule = new_rule()
        rule.advance_watermark(MONDAY + timedelta(days=14), MONDAY)
        window = rule.generation_window(MONDAY + timedelta(days=7), timedelta(days=14))

        self.assertEqual(window.start_time, MONDAY + timedelta(days=14))
        self.assertEqual(window.end_time, MONDAY + timedelta(days=21))

    def test_window_bounded_by_series_end(self):
        """Test that the end date clips the window and an exhausted series yields None"""
        rule = new_rule(end_date=date(2026, 3, 5))
        window = rule.generation_window(MONDAY, timedelta(days=14))
        self.assertEqual(window.end_time, datetime(2026, 3, 6, tzinfo=timezone.utc))

        self.assertIsNone(rule.generation_window(MONDAY + timedelta(days=10), timedelta(days=14)))

    def test_window_starts_at_series_start(self):
        rule = new_rule(start_date=date(2026, 4, 1))
        window = rule.generation_window(MONDAY, timedelta(days=60))
        self.assertEqual(window.start_time, datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc))


# ============================================================================
# LATE RETURN FEE
# ============================================================================

class TestLateReturnFee(unittest.TestCase):

    def setUp(self):
        self.fee = new_fee()
        self.fee.clear_events()

    def test_waive(self):
        """Test that waiving zeroes the amount and keeps the original"""
        self.assertTrue(self.fee.waive("alice", "first offence", END))

        self.assertEqual(self.fee.status, LateFeeStatus.WAIVED)
        self.assertTrue(self.fee.amount.is_zero)
        self.assertEqual(self.fee.original_amount.amount, Decimal("20.00"))
        self.assertIsInstance(self.fee.clear_events()[0], LateReturnFeeStatusChangedEvent)

    def test_waive_is_idempotent(self):
        self.fee.waive("alice", "first offence", END)
        self.fee.clear_events()

        self.assertFalse(self.fee.waive("alice", "again", END))
        self.assertFalse(self.fee.has_changes)
        self.assertEqual(self.fee.waiver_reason, "first offence")

    def test_mark_charged(self):
        """Test the billing hand-off"""
        self.fee.mark_charged(invoice_id="inv-1", now=END)
        self.assertEqual(self.fee.status, LateFeeStatus.CHARGED)
        self.assertEqual(self.fee.invoice_id, "inv-1")

        with self.assertRaises(InvalidTransition):
            self.fee.waive("alice", "too late", END)

    def test_charge_requires_reference(self):
        with self.assertRaises(ValueError):
            self.fee.mark_charged(now=END)
        self.assertEqual(self.fee.status, LateFeeStatus.PENDING)

    def test_waived_fee_cannot_be_charged(self):
        self.fee.waive("alice", "goodwill", END)
        with self.assertRaises(InvalidTransition):
            self.fee.mark_charged(expense_id="exp-1", now=END)

    def test_invalid_minutes(self):
        with self.assertRaises(ValueError):
            new_fee(late_minutes=-1)


if __name__ == '__main__':
    unittest.main(verbosity=2)
