#!/usr/bin/env python3
"""
Integration Tests for Recurring Reservations

Covers rule creation with the first horizon, the rolling generation sweep,
pause/resume without back-fill, series cancellation, skipped occurrences
and the per-rule lock.
"""

import unittest
from datetime import datetime, timedelta, timezone

from . import BookingIntegrationBase, BookingDataGenerator, IntegrationTestConfig, MONDAY
from coshare_booking.domain.models import ReservationStatus
from coshare_booking.domain.exceptions import InvalidTransition, RecurrenceRuleNotFound

ALICE = IntegrationTestConfig.ADMIN
BOB = IntegrationTestConfig.MEMBER


def utc(month, day, hour=0):
    return datetime(2026, month, day, hour, tzinfo=timezone.utc)


class RecurrenceIntegrationBase(BookingIntegrationBase):

    def create_rule(self, requester_id=BOB, now=MONDAY, generate=True, **overrides):
        request = BookingDataGenerator.weekly_rule_request(requester_id, **overrides)
        return self.recurrence_service.create_recurrence_rule(request, now=now, generate=generate)

    def starts(self, rule_id, statuses=None):
        return [r.start_time for r in self.rule_reservations(rule_id, statuses)]


# ============================================================================
# CREATION & SWEEP
# ============================================================================

class TestRuleGeneration(RecurrenceIntegrationBase):
    """Rolling horizon generation"""

    def test_creation_materializes_first_horizon(self):
        """Test that a new weekly rule books two weeks of Tuesdays and Thursdays"""
        rule = self.create_rule()

        self.assertEqual(self.starts(rule.id), [
            utc(3, 3, 8), utc(3, 5, 8), utc(3, 10, 8), utc(3, 12, 8)
        ])
        self.assertEqual(rule.last_generated_until, utc(3, 16))
        self.assertEqual(rule.status, "active")

        reservations = self.rule_reservations(rule.id)
        self.assertTrue(all(r.status == ReservationStatus.CONFIRMED for r in reservations))
        self.assertTrue(all(r.end_time - r.start_time == timedelta(hours=1) for r in reservations))

    def test_creation_events(self):
        """Test that creation publishes the rule, its reservations and a summary"""
        rule = self.create_rule()

        self.assertEqual(len(self.notifications.of_type("recurrence.created")), 1)
        self.assertEqual(len(self.notifications.of_type("reservation.created")), 4)
        generated = self.notifications.of_type("recurrence.generated")
        self.assertEqual(len(generated), 1)
        self.assertEqual(generated[0].aggregate_id, rule.id)
        self.assertEqual(generated[0].created_count, 4)

    def test_sweep_is_idempotent_within_horizon(self):
        """Test that a second run in the same horizon creates nothing"""
        rule = self.create_rule()

        report = self.recurrence_service.run_generation_sweep(MONDAY)

        self.assertEqual(report.total_created, 0)
        self.assertEqual([o.status for o in report.rules], ["up_to_date"])
        self.assertEqual(len(self.rule_reservations(rule.id)), 4)

    def test_sweep_extends_the_horizon(self):
        """Test that a week later the next week is added"""
        rule = self.create_rule()

        report = self.recurrence_service.run_generation_sweep(MONDAY + timedelta(days=7))

        self.assertEqual(report.total_created, 2)
        self.assertEqual(report.rules[0].generated_until, utc(3, 23))
        self.assertEqual(self.starts(rule.id)[-2:], [utc(3, 17, 8), utc(3, 19, 8)])

    def test_series_end_date_bounds_generation(self):
        """Test that no occurrence is created after the end date"""
        from datetime import date
        rule = self.create_rule(end_date=date(2026, 3, 5))

        self.assertEqual(self.starts(rule.id), [utc(3, 3, 8), utc(3, 5, 8)])

        report = self.recurrence_service.run_generation_sweep(MONDAY + timedelta(days=7))
        self.assertEqual(report.total_created, 0)

    def test_non_member_cannot_create_rule(self):
        """Test that rules require group membership"""
        with self.assertRaises(PermissionError):
            self.create_rule(requester_id=IntegrationTestConfig.OUTSIDER)

    def test_unknown_rule(self):
        """Test that unknown rule ids raise RecurrenceRuleNotFound"""
        with self.assertRaises(RecurrenceRuleNotFound):
            self.recurrence_service.get_recurrence_rule("missing")


# ============================================================================
# SKIPPED OCCURRENCES
# ============================================================================

class TestSkippedOccurrences(RecurrenceIntegrationBase):

    def test_conflicting_occurrence_is_skipped(self):
        """Test that a taken slot is skipped and reported with the blocker"""
        blocker = self.reserve(ALICE, utc(3, 3, 8) + timedelta(minutes=30),
                               utc(3, 3, 9) + timedelta(minutes=30))

        rule = self.create_rule()

        self.assertEqual(self.starts(rule.id), [utc(3, 5, 8), utc(3, 10, 8), utc(3, 12, 8)])
        skipped = self.notifications.of_type("recurrence.occurrence_skipped")
        self.assertEqual(len(skipped), 1)
        self.assertEqual(skipped[0].conflicting_ids, [blocker.id])
        self.assertEqual(skipped[0].occurrence.start_time, utc(3, 3, 8))

    def test_skipped_occurrence_is_not_retried(self):
        """Test that freeing the slot later does not back-fill it"""
        blocker = self.reserve(ALICE, utc(3, 3, 8), utc(3, 3, 9))
        rule = self.create_rule()

        self.booking_service.cancel_reservation(blocker.id, ALICE, "freed")
        report = self.recurrence_service.run_generation_sweep(MONDAY)

        self.assertEqual(report.total_created, 0)
        self.assertNotIn(utc(3, 3, 8), self.starts(rule.id))

    def test_maintenance_skips_occurrence(self):
        """Test that maintenance windows block generated occurrences too"""
        from coshare_booking.application.dtos import MaintenanceRequestDTO
        self.booking_service.schedule_maintenance(MaintenanceRequestDTO(
            maintenance_schedule_id="ms-1", vehicle_id=IntegrationTestConfig.VEHICLE_ID,
            group_id=IntegrationTestConfig.GROUP_ID, start_time=utc(3, 5), end_time=utc(3, 6)
        ))

        rule = self.create_rule()

        self.assertNotIn(utc(3, 5, 8), self.starts(rule.id))
        self.assertEqual(len(self.starts(rule.id)), 3)


# ============================================================================
# PAUSE / RESUME / CANCEL
# ============================================================================

class TestRuleLifecycle(RecurrenceIntegrationBase):

    def test_pause_with_end_auto_resumes(self):
        """Test that a timed pause resumes on the sweep after it ends"""
        rule = self.create_rule(generate=False)
        paused = self.recurrence_service.pause_recurrence_rule(
            rule.id, BOB, until=utc(3, 12), reason="vacation", now=MONDAY
        )
        self.assertEqual(paused.status, "paused")

        report = self.recurrence_service.run_generation_sweep(utc(3, 12))

        self.assertEqual(report.total_created, 4)
        self.assertEqual(self.starts(rule.id), [
            utc(3, 12, 8), utc(3, 17, 8), utc(3, 19, 8), utc(3, 24, 8)
        ])
        self.assertEqual(self.recurrence_service.get_recurrence_rule(rule.id).status, "active")

    def test_paused_rule_is_not_swept(self):
        """Test that a rule paused indefinitely generates nothing"""
        rule = self.create_rule(generate=False)
        self.recurrence_service.pause_recurrence_rule(rule.id, BOB, now=MONDAY)

        report = self.recurrence_service.run_generation_sweep(utc(3, 20))

        self.assertEqual(report.rules, [])
        self.assertEqual(self.starts(rule.id), [])

    def test_resume_does_not_back_fill(self):
        """Test that resuming generates from the resume time on"""
        rule = self.create_rule(generate=False)
        self.recurrence_service.pause_recurrence_rule(rule.id, BOB, now=MONDAY)

        resumed = self.recurrence_service.resume_recurrence_rule(rule.id, BOB, now=utc(3, 26))
        self.assertEqual(resumed.last_generated_until, utc(3, 26))

        report = self.recurrence_service.run_generation_sweep(utc(3, 26))

        self.assertEqual(report.total_created, 4)
        self.assertTrue(all(start >= utc(3, 26) for start in self.starts(rule.id)))

    def test_resume_active_rule_is_invalid(self):
        """Test that only paused rules can resume"""
        rule = self.create_rule(generate=False)
        with self.assertRaises(InvalidTransition):
            self.recurrence_service.resume_recurrence_rule(rule.id, BOB, now=MONDAY)

    def test_pause_end_must_be_in_future(self):
        """Test that a pause ending in the past is rejected"""
        rule = self.create_rule(generate=False)
        with self.assertRaises(ValueError):
            self.recurrence_service.pause_recurrence_rule(
                rule.id, BOB, until=MONDAY - timedelta(hours=1), now=MONDAY
            )

    def test_cancel_series_cancels_upcoming_reservations(self):
        """Test that cancelling a series keeps the past and drops the future"""
        rule = self.create_rule()

        cancelled = self.recurrence_service.cancel_recurrence_rule(
            rule.id, BOB, "sold my share", now=utc(3, 4)
        )

        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(self.starts(rule.id, [ReservationStatus.CONFIRMED]), [utc(3, 3, 8)])
        self.assertEqual(self.starts(rule.id, [ReservationStatus.CANCELLED]),
                         [utc(3, 5, 8), utc(3, 10, 8), utc(3, 12, 8)])
        self.assertEqual(len(self.notifications.of_type("reservation.cancelled")), 3)

        report = self.recurrence_service.run_generation_sweep(utc(3, 20))
        self.assertEqual(report.rules, [])

    def test_admin_may_manage_foreign_rule(self):
        """Test that a group admin can pause a member's rule"""
        rule = self.create_rule(generate=False)
        paused = self.recurrence_service.pause_recurrence_rule(rule.id, ALICE, now=MONDAY)
        self.assertEqual(paused.status, "paused")

    def test_member_may_not_manage_foreign_rule(self):
        """Test that a plain member cannot touch someone else's rule"""
        rule = self.create_rule(requester_id=ALICE, generate=False)
        with self.assertRaises(PermissionError):
            self.recurrence_service.cancel_recurrence_rule(rule.id, BOB, "mine now", now=MONDAY)
        with self.assertRaises(PermissionError):
            self.recurrence_service.pause_recurrence_rule(
                rule.id, IntegrationTestConfig.OUTSIDER, now=MONDAY
            )


# ============================================================================
# RULE LOCKS
# ============================================================================

class TestRuleLocking(RecurrenceIntegrationBase):

    def test_sweep_skips_locked_rule(self):
        """Test that a rule locked elsewhere is reported and left alone"""
        rule = self.create_rule(generate=False)
        handle = self.lock_provider.try_acquire(rule.id)
        try:
            report = self.recurrence_service.run_generation_sweep(MONDAY)
        finally:
            self.lock_provider.release(handle)

        self.assertEqual(report.locked_rule_ids, [rule.id])
        self.assertEqual(report.rules, [])
        self.assertEqual(self.starts(rule.id), [])

        report = self.recurrence_service.run_generation_sweep(MONDAY)
        self.assertEqual(report.total_created, 4)

    def test_failed_rule_does_not_stop_sweep(self):
        """Test that one failing rule is reported and the others still run"""
        broken = self.create_rule(generate=False)
        healthy = self.create_rule(requester_id=ALICE, generate=False,
                                   weekdays=(0,), vehicle_id=IntegrationTestConfig.OTHER_VEHICLE_ID)

        original = self.recurrence_service._materialize

        def failing(uow, rule, occurrence, priority, now):
            if rule.id == broken.id:
                raise RuntimeError("storage unavailable")
            return original(uow, rule, occurrence, priority, now)

        self.recurrence_service._materialize = failing
        report = self.recurrence_service.run_generation_sweep(MONDAY)

        self.assertEqual(report.failed_rule_ids, [broken.id])
        self.assertEqual(self.starts(broken.id), [])
        self.assertEqual(len(self.starts(healthy.id)), 2)
        self.assertIsNone(self.recurrence_service.get_recurrence_rule(broken.id).last_generated_until)


if __name__ == '__main__':
    unittest.main(verbosity=2)
