#!/usr/bin/env python3
"""
Unit Tests for Strategy Pattern Implementation

Conflict detection and recommendation, priority scoring and ranking,
late-fee policies and recurrence expansion.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, date, time, timedelta, timezone
from decimal import Decimal

sys.path.append(str(Path(__file__).parent.parent.parent))

from coshare_booking.config import PriorityWeights, LateFeeBand
from coshare_booking.domain.models import (
    TimeRange, BlockingWindow, BlockingSource, ReservationStatus, PriorityTier,
    RecurrencePattern
)
from coshare_booking.domain.aggregates import RecurrenceRule
from coshare_booking.domain.strategies import (
    ConflictDetector, PriorityCandidate, WeightedPriorityStrategy, PriorityResolver,
    IncrementalLateFeePolicy, BandedLateFeePolicy, RecurrenceExpander
)

BASE = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
VEHICLE = "vehicle-1"


def hours(value):
    return BASE + timedelta(hours=value)


def reservation_window(source_id, start, end, status=ReservationStatus.CONFIRMED,
                       vehicle_id=VEHICLE, recurrence_rule_id=None):
    return BlockingWindow(
        source_id=source_id,
        source=BlockingSource.RESERVATION,
        vehicle_id=vehicle_id,
        interval=TimeRange(hours(start), hours(end)),
        status=status,
        recurrence_rule_id=recurrence_rule_id
    )


def maintenance_window(source_id, start, end):
    return BlockingWindow(
        source_id=source_id,
        source=BlockingSource.MAINTENANCE,
        vehicle_id=VEHICLE,
        interval=TimeRange(hours(start), hours(end))
    )


# ============================================================================
# CONFLICT DETECTION
# ============================================================================

class TestConflictDetector(unittest.TestCase):

    def setUp(self):
        self.detector = ConflictDetector()
        self.candidate = TimeRange(hours(1), hours(3))

    def test_overlapping_windows_reported_in_order(self):
        """Test that conflicts are ordered by start time then id"""
        windows = [
            reservation_window("r-late", 2, 4),
            reservation_window("r-b", 0, 2),
            reservation_window("r-a", 0, 2),
        ]
        conflicts = self.detector.find_conflicts(VEHICLE, self.candidate, windows)
        self.assertEqual([w.source_id for w in conflicts], ["r-a", "r-b", "r-late"])

    def test_back_to_back_is_free(self):
        windows = [reservation_window("before", 0, 1), reservation_window("after", 3, 5)]
        self.assertEqual(self.detector.find_conflicts(VEHICLE, self.candidate, windows), [])

    def test_terminal_and_other_vehicle_windows_ignored(self):
        """Test that cancelled, completed and foreign windows never block"""
        windows = [
            reservation_window("cancelled", 1, 3, ReservationStatus.CANCELLED),
            reservation_window("completed", 1, 3, ReservationStatus.COMPLETED),
            reservation_window("other", 1, 3, vehicle_id="vehicle-2"),
        ]
        self.assertEqual(self.detector.find_conflicts(VEHICLE, self.candidate, windows), [])

    def test_status_set_narrowing(self):
        """Test that a narrowed status set ignores pending reservations"""
        windows = [reservation_window("pending", 1, 3, ReservationStatus.PENDING_APPROVAL)]

        self.assertEqual(len(self.detector.find_conflicts(VEHICLE, self.candidate, windows)), 1)
        narrowed = self.detector.find_conflicts(
            VEHICLE, self.candidate, windows,
            blocking_statuses={ReservationStatus.CONFIRMED, ReservationStatus.IN_PROGRESS}
        )
        self.assertEqual(narrowed, [])

    def test_maintenance_always_blocks(self):
        """Test that maintenance blocks regardless of the requested statuses"""
        windows = [maintenance_window("m-1", 2, 6)]
        conflicts = self.detector.find_conflicts(
            VEHICLE, self.candidate, windows, blocking_statuses=set()
        )
        self.assertEqual([w.source_id for w in conflicts], ["m-1"])

    def test_exclusions(self):
        """Test excluding the reservation itself and its own series"""
        windows = [
            reservation_window("self", 1, 3),
            reservation_window("sibling", 2, 3, recurrence_rule_id="rule-1"),
        ]
        conflicts = self.detector.find_conflicts(
            VEHICLE, self.candidate, windows,
            exclude_reservation_id="self", exclude_recurrence_rule_id="rule-1"
        )
        self.assertEqual(conflicts, [])

    def test_recommendation_skips_chained_blockers(self):
        """Test that the recommendation jumps past consecutive blockers"""
        windows = [
            reservation_window("r-1", 0, 2),
            reservation_window("r-2", 2, 4),
            maintenance_window("m-1", 4.5, 5),
        ]
        recommended = self.detector.recommend_window(
            VEHICLE, self.candidate, windows, search_until=hours(24)
        )
        self.assertEqual(recommended, TimeRange(hours(5), hours(7)))

    def test_recommendation_returns_candidate_when_free(self):
        recommended = self.detector.recommend_window(VEHICLE, self.candidate, [], hours(24))
        self.assertEqual(recommended, self.candidate)

    def test_recommendation_respects_search_limit(self):
        """Test that no window is proposed past the search limit"""
        windows = [reservation_window("r-1", 0, 10)]
        self.assertIsNone(
            self.detector.recommend_window(VEHICLE, self.candidate, windows, hours(11))
        )
        self.assertEqual(
            self.detector.recommend_window(VEHICLE, self.candidate, windows, hours(12)),
            TimeRange(hours(10), hours(12))
        )


# ============================================================================
# PRIORITY STRATEGIES
# ============================================================================

def candidate(request_id, share, days, is_emergency=False, created_offset=0, requester=None):
    return PriorityCandidate(
        request_id=request_id,
        requester_id=requester or request_id,
        ownership_share=Decimal(share),
        days_since_last_reservation=days,
        is_emergency=is_emergency,
        created_at=BASE + timedelta(minutes=created_offset)
    )


class TestWeightedPriorityStrategy(unittest.TestCase):

    def setUp(self):
        self.strategy = WeightedPriorityStrategy()

    def test_waiting_factor_saturates(self):
        """Test the linear waiting factor with saturation and never-reserved members"""
        self.assertEqual(self.strategy.waiting_factor(0), Decimal("0"))
        self.assertEqual(self.strategy.waiting_factor(15), Decimal("0.5"))
        self.assertEqual(self.strategy.waiting_factor(45), Decimal("1"))
        self.assertEqual(self.strategy.waiting_factor(None), Decimal("1"))
        self.assertEqual(self.strategy.waiting_factor(-3), Decimal("0"))

    def test_score(self):
        """Test the weighted sum"""
        self.assertEqual(self.strategy.score(candidate("a", "0.6", 15)), Decimal("75.0000"))
        self.assertEqual(self.strategy.score(candidate("b", "0.4", None, True)),
                         Decimal("1070.0000"))

    def test_tiers(self):
        self.assertEqual(self.strategy.tier_for(Decimal("70"), False), PriorityTier.HIGH)
        self.assertEqual(self.strategy.tier_for(Decimal("69.99"), False), PriorityTier.NORMAL)
        self.assertEqual(self.strategy.tier_for(Decimal("10"), True), PriorityTier.EMERGENCY)

    def test_custom_weights(self):
        strategy = WeightedPriorityStrategy(PriorityWeights(
            ownership_weight=Decimal("10"), waiting_weight=Decimal("0"),
            emergency_boost=Decimal("5"), waiting_saturation_days=10
        ))
        self.assertEqual(strategy.score(candidate("a", "0.5", 3, True)), Decimal("10.0000"))

    def test_strategy_name(self):
        self.assertEqual(self.strategy.get_strategy_name(), "WeightedPriority")


class TestPriorityResolver(unittest.TestCase):

    def setUp(self):
        self.resolver = PriorityResolver()

    def test_rank_orders_by_score(self):
        """Test that the emergency wins and ranks are 1-based"""
        ranking = self.resolver.rank([
            candidate("alice", "0.6", None),
            candidate("bob", "0.4", None),
            candidate("carol", "0.1", 0, is_emergency=True),
        ])

        self.assertEqual([r.request_id for r in ranking], ["carol", "alice", "bob"])
        self.assertEqual([r.rank for r in ranking], [1, 2, 3])
        self.assertEqual(ranking[0].tier, PriorityTier.EMERGENCY)
        self.assertEqual(ranking[1].tier, PriorityTier.HIGH)

    def test_ties_broken_by_creation_then_id(self):
        """Test the tie-breakers for equal scores"""
        ranking = self.resolver.rank([
            candidate("z-late", "0.5", 10, created_offset=5),
            candidate("y-early", "0.5", 10, created_offset=0),
            candidate("x-early", "0.5", 10, created_offset=0),
        ])
        self.assertEqual([r.request_id for r in ranking], ["x-early", "y-early", "z-late"])

    def test_evaluate_single(self):
        ranked = self.resolver.evaluate(candidate("bob", "0.4", 30))
        self.assertEqual(ranked.score, Decimal("70.0000"))
        self.assertEqual(ranked.to_dict()["tier"], "high")


# ============================================================================
# LATE FEE POLICIES
# ============================================================================

class TestIncrementalLateFeePolicy(unittest.TestCase):

    def setUp(self):
        self.policy = IncrementalLateFeePolicy(max_fee=Decimal("200"))

    def test_started_increments_are_charged(self):
        """Test 5.00 per started 15 minutes"""
        self.assertEqual(self.policy.rate(1).amount, Decimal("5.00"))
        self.assertEqual(self.policy.rate(15).amount, Decimal("5.00"))
        self.assertEqual(self.policy.rate(16).amount, Decimal("10.00"))
        self.assertEqual(self.policy.rate(47).amount, Decimal("20.00"))

    def test_on_time_is_free(self):
        """Test that zero and negative lateness cost nothing"""
        for minutes in (0, -10):
            quote = self.policy.calculate(minutes)
            self.assertTrue(quote.amount.is_zero)
            self.assertFalse(quote.is_chargeable)

    def test_cap(self):
        self.assertEqual(self.policy.rate(24 * 60).amount, Decimal("200.00"))

    def test_grace_period(self):
        policy = IncrementalLateFeePolicy(grace_minutes=10)
        quote = policy.calculate(25)

        self.assertEqual(quote.late_minutes, 25)
        self.assertEqual(quote.chargeable_minutes, 15)
        self.assertEqual(quote.amount.amount, Decimal("5.00"))
        self.assertTrue(policy.calculate(10).amount.is_zero)

    def test_method_label(self):
        self.assertEqual(self.policy.calculate(20).method, "Incremental(5.00/15min)")

    def test_invalid_parameters(self):
        with self.assertRaises(ValueError):
            IncrementalLateFeePolicy(increment_minutes=0)
        with self.assertRaises(ValueError):
            IncrementalLateFeePolicy(grace_minutes=-1)


class TestBandedLateFeePolicy(unittest.TestCase):
    """Bands: 0-60 at 10/h, 60-180 at 15/h plus 5 flat; 15 minutes grace"""

    BANDS = [
        LateFeeBand(0, 60, Decimal("10")),
        LateFeeBand(60, 180, Decimal("15"), Decimal("5")),
    ]

    def setUp(self):
        self.policy = BandedLateFeePolicy(self.BANDS, default_hourly_rate=Decimal("20"))

    def test_first_band(self):
        quote = self.policy.calculate(45)
        self.assertEqual(quote.chargeable_minutes, 30)
        self.assertEqual(quote.amount.amount, Decimal("5.00"))
        self.assertEqual(quote.method, "Band(0-60)")

    def test_second_band(self):
        quote = self.policy.calculate(135)
        self.assertEqual(quote.amount.amount, Decimal("35.00"))
        self.assertEqual(quote.method, "Band(60-180)")

    def test_default_rate_past_last_band(self):
        """Test the default hourly rate beyond the last closed band"""
        quote = self.policy.calculate(315)
        self.assertEqual(quote.amount.amount, Decimal("100.00"))
        self.assertEqual(quote.method, "DefaultHourlyRate")

    def test_default_rate_floored_at_last_band(self):
        """Test that the fee never drops below the end of the last band"""
        policy = BandedLateFeePolicy(self.BANDS)
        self.assertEqual(policy.calculate(315).amount.amount, Decimal("50.00"))

    def test_fee_is_monotonic(self):
        """Test that a later return never costs less"""
        previous = Decimal("0")
        for minutes in range(0, 600, 7):
            amount = self.policy.rate(minutes).amount
            self.assertGreaterEqual(amount, previous, f"at {minutes} minutes")
            previous = amount

    def test_grace_period_is_free(self):
        self.assertTrue(self.policy.calculate(15).amount.is_zero)

    def test_cap(self):
        self.assertEqual(self.policy.rate(20 * 60).amount, Decimal("200.00"))

    def test_band_validation(self):
        """Test the band layout rules"""
        invalid_layouts = [
            [LateFeeBand(10, 60, Decimal("10"))],
            [LateFeeBand(0, None, Decimal("10")), LateFeeBand(60, 120, Decimal("15"))],
            [LateFeeBand(0, 60, Decimal("10")), LateFeeBand(90, 120, Decimal("15"))],
            [LateFeeBand(0, 60, Decimal("10")), LateFeeBand(60, 120, Decimal("5"))],
        ]
        for bands in invalid_layouts:
            with self.assertRaises(ValueError):
                BandedLateFeePolicy(bands)


# ============================================================================
# RECURRENCE EXPANSION
# ============================================================================

def rule(pattern, start_date, weekdays=None, interval=1, end_date=None, time_zone="UTC"):
    return RecurrenceRule(
        vehicle_id=VEHICLE, group_id="group-1", requester_id="bob",
        pattern=pattern, start_time_of_day=time(8, 0), end_time_of_day=time(9, 0),
        start_date=start_date, end_date=end_date, interval=interval,
        weekdays=weekdays, time_zone=time_zone
    )


def utc_window(start, end):
    return TimeRange(datetime.combine(start, time(0, 0), tzinfo=timezone.utc),
                     datetime.combine(end, time(0, 0), tzinfo=timezone.utc))


class TestRecurrenceExpander(unittest.TestCase):

    def setUp(self):
        self.expander = RecurrenceExpander()

    def starts(self, recurrence_rule, window):
        return [o.start_time for o in self.expander.occurrences(recurrence_rule, window)]

    def test_daily_with_interval(self):
        daily = rule(RecurrencePattern.DAILY, date(2026, 3, 2), interval=3)
        self.assertEqual(
            [d.day for d in self.starts(daily, utc_window(date(2026, 3, 1), date(2026, 3, 12)))],
            [2, 5, 8, 11]
        )

    def test_weekly_interval_counts_from_start_week(self):
        """Test fortnightly occurrences anchored on the Monday of the start week"""
        weekly = rule(RecurrencePattern.WEEKLY, date(2026, 3, 4), weekdays=[0, 2], interval=2)
        starts = self.starts(weekly, utc_window(date(2026, 3, 1), date(2026, 3, 20)))

        # Monday 2 March precedes the start date
        self.assertEqual([d.day for d in starts], [4, 16, 18])

    def test_monthly_clamps_short_months(self):
        """Test that day 31 falls back to the last day of shorter months"""
        monthly = rule(RecurrencePattern.MONTHLY, date(2026, 1, 31))
        starts = self.starts(monthly, utc_window(date(2026, 2, 1), date(2026, 5, 1)))
        self.assertEqual([(d.month, d.day) for d in starts], [(2, 28), (3, 31), (4, 30)])

    def test_end_date_inclusive(self):
        daily = rule(RecurrencePattern.DAILY, date(2026, 3, 2), end_date=date(2026, 3, 4))
        starts = self.starts(daily, utc_window(date(2026, 3, 1), date(2026, 3, 31)))
        self.assertEqual([d.day for d in starts], [2, 3, 4])

    def test_window_is_half_open(self):
        """Test that an occurrence starting at the window end is excluded"""
        daily = rule(RecurrencePattern.DAILY, date(2026, 3, 2))
        window = TimeRange(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
                           datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc))
        self.assertEqual([d.day for d in self.starts(daily, window)], [2, 3])

    def test_local_time_across_daylight_saving(self):
        """Test that wall-clock times stay fixed in the rule's zone"""
        daily = rule(RecurrencePattern.DAILY, date(2026, 3, 28), time_zone="Europe/Berlin")
        starts = self.starts(daily, utc_window(date(2026, 3, 28), date(2026, 3, 31)))

        self.assertEqual(starts, [
            datetime(2026, 3, 28, 7, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 29, 6, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 30, 6, 0, tzinfo=timezone.utc),
        ])

    def test_monthly_thirtieth_clamps_only_in_february(self):
        """Test that the 30th keeps its day in long months and clamps in February"""
        monthly = rule(RecurrencePattern.MONTHLY, date(2026, 1, 30), interval=1)
        starts = self.starts(monthly, utc_window(date(2026, 1, 1), date(2026, 4, 1)))
        self.assertEqual([(d.month, d.day) for d in starts], [(1, 30), (2, 28), (3, 30)])

    def test_start_in_daylight_saving_gap_keeps_length(self):
        """Test that a 02:00-03:00 slot on the spring-forward day is moved, not dropped"""
        daily = RecurrenceRule(
            vehicle_id=VEHICLE, group_id="group-1", requester_id="bob",
            pattern=RecurrencePattern.DAILY, start_time_of_day=time(2, 0),
            end_time_of_day=time(3, 0), start_date=date(2026, 3, 28),
            time_zone="Europe/Berlin"
        )
        occurrences = self.expander.occurrences(
            daily, utc_window(date(2026, 3, 28), date(2026, 3, 31))
        )

        self.assertEqual([(o.start_time, o.end_time) for o in occurrences], [
            (datetime(2026, 3, 28, 1, 0, tzinfo=timezone.utc),
             datetime(2026, 3, 28, 2, 0, tzinfo=timezone.utc)),
            (datetime(2026, 3, 29, 1, 0, tzinfo=timezone.utc),
             datetime(2026, 3, 29, 2, 0, tzinfo=timezone.utc)),
            (datetime(2026, 3, 30, 0, 0, tzinfo=timezone.utc),
             datetime(2026, 3, 30, 1, 0, tzinfo=timezone.utc)),
        ])

    def test_unsupported_pattern(self):
        daily = rule(RecurrencePattern.DAILY, date(2026, 3, 2))
        daily.pattern = "yearly"
        with self.assertRaises(ValueError):
            self.expander.build_rrule(daily)


if __name__ == '__main__':
    unittest.main(verbosity=2)
