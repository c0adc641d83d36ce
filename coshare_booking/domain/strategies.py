# File: coshare_booking/domain/strategies.py
"""
Strategy Pattern Implementation for the Vehicle Booking Core

This module encapsulates the pure algorithms of the booking core so they can
be selected and configured at runtime and tested without storage:

1. Conflict Detection - Overlap check of a candidate window against the
   blocking windows of a vehicle, plus a next-free-window recommendation
2. Priority Strategies - Scoring and ranking of competing requests
3. Late Fee Policies - Incremental and banded late-return fee formulas
4. Recurrence Expansion - Enumeration of the occurrences of a rule

All strategies are stateless after construction and safe to share between
threads.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable, FrozenSet
from datetime import datetime, date, timedelta
from decimal import Decimal
import math
import logging

from dateutil.rrule import rrule, DAILY, WEEKLY, MONTHLY, MO

from .models import (
    Money, TimeRange, BlockingWindow, ReservationStatus, PriorityTier,
    RecurrencePattern, DEFAULT_BLOCKING_STATUSES
)
from .aggregates import RecurrenceRule, local_to_utc
from ..config import PriorityWeights, LateFeeBand


# ============================================================================
# CONFLICT DETECTION
# ============================================================================

@dataclass
class ConflictResult:
    """
    Outcome of a conflict check
    Carries the blocking windows, the earliest free window of the same
    length (if any) and, when relevant, the ranking of competing requests
    """
    conflicts: List[BlockingWindow] = field(default_factory=list)
    recommended_window: Optional[TimeRange] = None
    ranking: List['RankedRequest'] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    @property
    def conflicting_ids(self) -> List[str]:
        return [window.source_id for window in self.conflicts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflicts": [window.to_dict() for window in self.conflicts],
            "recommended_window": (
                self.recommended_window.to_dict() if self.recommended_window else None
            ),
            "ranking": [ranked.to_dict() for ranked in self.ranking]
        }


class ConflictDetector:
    """
    Interval conflict detector
    Two windows overlap when the existing one starts during the candidate,
    ends during it, or contains it entirely. Back-to-back windows do not
    conflict. Maintenance windows block whatever statuses are requested.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def _is_blocking(
        self,
        window: BlockingWindow,
        vehicle_id: str,
        blocking_statuses: FrozenSet[ReservationStatus],
        exclude_reservation_id: Optional[str],
        exclude_recurrence_rule_id: Optional[str]
    ) -> bool:
        if window.vehicle_id != vehicle_id:
            return False

        if window.is_maintenance:
            return True

        if window.status not in blocking_statuses:
            return False

        if exclude_reservation_id and window.source_id == exclude_reservation_id:
            return False

        if exclude_recurrence_rule_id and window.recurrence_rule_id == exclude_recurrence_rule_id:
            return False

        return True

    def find_conflicts(
        self,
        vehicle_id: str,
        candidate: TimeRange,
        windows: Iterable[BlockingWindow],
        blocking_statuses: Optional[Iterable[ReservationStatus]] = None,
        exclude_reservation_id: Optional[str] = None,
        exclude_recurrence_rule_id: Optional[str] = None
    ) -> List[BlockingWindow]:
        """
        Find the windows that block the candidate interval
        Returns: Conflicts ordered by start time, ties broken by id
        """
        statuses = frozenset(blocking_statuses) if blocking_statuses is not None \
            else DEFAULT_BLOCKING_STATUSES

        conflicts = [
            window for window in windows
            if self._is_blocking(window, vehicle_id, statuses,
                                 exclude_reservation_id, exclude_recurrence_rule_id)
            and candidate.overlaps(window.interval)
        ]
        conflicts.sort(key=lambda window: (window.start_time, window.source_id))

        if conflicts:
            self.logger.debug(
                f"{len(conflicts)} conflict(s) for {vehicle_id} in {candidate}"
            )
        return conflicts

    def recommend_window(
        self,
        vehicle_id: str,
        candidate: TimeRange,
        windows: Iterable[BlockingWindow],
        search_until: datetime,
        blocking_statuses: Optional[Iterable[ReservationStatus]] = None,
        exclude_reservation_id: Optional[str] = None,
        exclude_recurrence_rule_id: Optional[str] = None
    ) -> Optional[TimeRange]:
        """
        Earliest free window of the candidate's length starting at or after
        the candidate start and ending no later than search_until
        """
        statuses = frozenset(blocking_statuses) if blocking_statuses is not None \
            else DEFAULT_BLOCKING_STATUSES

        relevant = [
            window for window in windows
            if self._is_blocking(window, vehicle_id, statuses,
                                 exclude_reservation_id, exclude_recurrence_rule_id)
        ]

        proposal = candidate
        while proposal.end_time <= search_until:
            blocking = [w for w in relevant if proposal.overlaps(w.interval)]
            if not blocking:
                return proposal
            # Jump past the blocker that frees up last
            proposal = proposal.shifted_to(max(w.end_time for w in blocking))

        return None


# ============================================================================
# PRIORITY STRATEGIES
# ============================================================================

@dataclass(frozen=True)
class PriorityCandidate:
    """Value Object: One request taking part in priority arbitration"""
    request_id: str
    requester_id: str
    ownership_share: Decimal
    days_since_last_reservation: Optional[int]
    is_emergency: bool
    created_at: datetime


@dataclass(frozen=True)
class RankedRequest:
    """Value Object: A candidate with its score, tier and position"""
    candidate: PriorityCandidate
    score: Decimal
    tier: PriorityTier
    rank: int = 1

    @property
    def request_id(self) -> str:
        return self.candidate.request_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.candidate.request_id,
            "requester_id": self.candidate.requester_id,
            "score": str(self.score),
            "tier": self.tier.value,
            "rank": self.rank
        }


class PriorityScoringStrategy(ABC):
    """
    Abstract base class for priority scoring
    Defines the interface for turning a request into a comparable score
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def score(self, candidate: PriorityCandidate) -> Decimal:
        """
        Score a request; higher wins
        Returns: Priority score
        """
        pass

    @abstractmethod
    def tier_for(self, score: Decimal, is_emergency: bool) -> PriorityTier:
        """Map a score to the tier recorded on the reservation"""
        pass

    def get_strategy_name(self) -> str:
        """Get human-readable strategy name"""
        return self.__class__.__name__.replace("Strategy", "")


class WeightedPriorityStrategy(PriorityScoringStrategy):
    """
    Weighted sum of ownership share, waiting time and emergency boost

    score = w_share * share + w_wait * f(days) + boost * emergency
    f saturates linearly: min(days, saturation) / saturation, and a member
    who never reserved the vehicle counts as fully saturated.
    """

    def __init__(self, weights: Optional[PriorityWeights] = None):
        super().__init__()
        self.weights = weights or PriorityWeights()

    def waiting_factor(self, days: Optional[int]) -> Decimal:
        saturation = self.weights.waiting_saturation_days
        if days is None:
            return Decimal('1')
        days = min(max(days, 0), saturation)
        return Decimal(days) / Decimal(saturation)

    def score(self, candidate: PriorityCandidate) -> Decimal:
        score = (
            self.weights.ownership_weight * candidate.ownership_share
            + self.weights.waiting_weight * self.waiting_factor(candidate.days_since_last_reservation)
        )
        if candidate.is_emergency:
            score += self.weights.emergency_boost
        return score.quantize(Decimal('0.0001'))

    def tier_for(self, score: Decimal, is_emergency: bool) -> PriorityTier:
        if is_emergency:
            return PriorityTier.EMERGENCY
        if score >= self.weights.high_tier_threshold:
            return PriorityTier.HIGH
        return PriorityTier.NORMAL


class PriorityResolver:
    """
    Orders competing requests
    Descending score, then earliest request creation, then request id
    """

    def __init__(self, strategy: Optional[PriorityScoringStrategy] = None):
        self.strategy = strategy or WeightedPriorityStrategy()
        self.logger = logging.getLogger(self.__class__.__name__)

    def evaluate(self, candidate: PriorityCandidate) -> RankedRequest:
        """Score a single request"""
        score = self.strategy.score(candidate)
        return RankedRequest(
            candidate=candidate,
            score=score,
            tier=self.strategy.tier_for(score, candidate.is_emergency)
        )

    def rank(self, candidates: Iterable[PriorityCandidate]) -> List[RankedRequest]:
        """Rank requests, best first"""
        evaluated = [self.evaluate(candidate) for candidate in candidates]
        evaluated.sort(key=lambda r: (-r.score, r.candidate.created_at, r.candidate.request_id))

        ranking = [
            RankedRequest(candidate=r.candidate, score=r.score, tier=r.tier, rank=position)
            for position, r in enumerate(evaluated, start=1)
        ]
        if ranking:
            self.logger.debug(
                f"Ranked {len(ranking)} request(s); winner {ranking[0].request_id} "
                f"with score {ranking[0].score}"
            )
        return ranking


# ============================================================================
# LATE FEE POLICIES
# ============================================================================

@dataclass(frozen=True)
class LateFeeQuote:
    """Value Object: Result of a late-fee calculation"""
    late_minutes: int
    chargeable_minutes: int
    amount: Money
    method: str

    @property
    def is_chargeable(self) -> bool:
        return self.late_minutes > 0 and not self.amount.is_zero


class LateFeePolicy(ABC):
    """
    Abstract base class for late-return fee formulas
    Every policy returns zero for non-positive lateness and never decreases
    as lateness grows.
    """

    def __init__(self, grace_minutes: int = 0, max_fee: Optional[Decimal] = None,
                 currency: str = "USD"):
        if grace_minutes < 0:
            raise ValueError("Grace period cannot be negative")
        self.grace_minutes = grace_minutes
        self.max_fee = Decimal(str(max_fee)) if max_fee is not None else None
        self.currency = currency
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def _raw_fee(self, chargeable_minutes: int) -> Money:
        """Uncapped fee for a positive chargeable duration"""
        pass

    @abstractmethod
    def describe(self, chargeable_minutes: int) -> str:
        """Calculation-method label stored with the fee"""
        pass

    def calculate(self, late_minutes: int) -> LateFeeQuote:
        """Compute the fee for a return that was late_minutes late"""
        late_minutes = max(int(late_minutes), 0)
        chargeable = max(late_minutes - self.grace_minutes, 0)

        if chargeable <= 0:
            amount = Money.zero(self.currency)
        else:
            amount = self._raw_fee(chargeable).capped(self.max_fee).quantize()

        return LateFeeQuote(
            late_minutes=late_minutes,
            chargeable_minutes=chargeable,
            amount=amount,
            method=self.describe(chargeable)
        )

    def rate(self, late_minutes: int) -> Money:
        """Fee amount only"""
        return self.calculate(late_minutes).amount


class IncrementalLateFeePolicy(LateFeePolicy):
    """
    Flat amount for every started increment
    fee = ceil(chargeable / increment) * amount_per_increment, capped
    """

    def __init__(self, increment_minutes: int = 15, amount_per_increment: Decimal = Decimal('5.00'),
                 grace_minutes: int = 0, max_fee: Optional[Decimal] = None, currency: str = "USD"):
        super().__init__(grace_minutes, max_fee, currency)
        if increment_minutes <= 0:
            raise ValueError("Increment minutes must be positive")
        self.increment_minutes = increment_minutes
        self.amount_per_increment = Decimal(str(amount_per_increment))

    def _raw_fee(self, chargeable_minutes: int) -> Money:
        increments = math.ceil(chargeable_minutes / self.increment_minutes)
        return Money(self.amount_per_increment * increments, self.currency)

    def describe(self, chargeable_minutes: int) -> str:
        return f"Incremental({self.amount_per_increment}/{self.increment_minutes}min)"


class BandedLateFeePolicy(LateFeePolicy):
    """
    Hourly rate bands with an optional flat fee per band
    fee = hours * band.rate_per_hour + band.flat_fee, capped and rounded
    half-up to cents. Past the last closed band the default hourly rate
    applies, floored at the fee reached at the end of that band.
    """

    def __init__(self, bands: Optional[List[LateFeeBand]] = None, grace_minutes: int = 15,
                 max_fee: Optional[Decimal] = Decimal('200'),
                 default_hourly_rate: Decimal = Decimal('0'), currency: str = "USD"):
        super().__init__(grace_minutes, max_fee, currency)
        self.bands = sorted(bands or [], key=lambda band: band.from_minutes)
        self.default_hourly_rate = Decimal(str(default_hourly_rate))
        self._validate_bands()

    def _validate_bands(self) -> None:
        """Bands must start at 0, be contiguous and never get cheaper"""
        if not self.bands:
            return

        if self.bands[0].from_minutes != 0:
            raise ValueError("First late fee band must start at 0 minutes")

        for previous, current in zip(self.bands, self.bands[1:]):
            if previous.to_minutes is None:
                raise ValueError("Only the last late fee band may be open-ended")
            if current.from_minutes != previous.to_minutes:
                raise ValueError(
                    f"Late fee bands must be contiguous: {previous.display_label} "
                    f"and {current.display_label}"
                )
            if current.rate_per_hour < previous.rate_per_hour or current.flat_fee < previous.flat_fee:
                raise ValueError("Late fee bands must be non-decreasing in rate and flat fee")

    def _band_for(self, minutes: int) -> Optional[LateFeeBand]:
        for band in self.bands:
            if band.contains(minutes):
                return band
        return None

    @staticmethod
    def _band_fee(band: LateFeeBand, minutes: int) -> Decimal:
        hours = Decimal(minutes) / Decimal(60)
        return hours * band.rate_per_hour + band.flat_fee

    def _raw_fee(self, chargeable_minutes: int) -> Money:
        band = self._band_for(chargeable_minutes)
        if band is not None:
            return Money(self._band_fee(band, chargeable_minutes), self.currency)

        hours = Decimal(chargeable_minutes) / Decimal(60)
        amount = hours * self.default_hourly_rate
        if self.bands:
            last = self.bands[-1]
            amount = max(amount, self._band_fee(last, last.to_minutes))
        return Money(amount, self.currency)

    def describe(self, chargeable_minutes: int) -> str:
        band = self._band_for(chargeable_minutes)
        if band is not None:
            return band.display_label
        return "DefaultHourlyRate"


# ============================================================================
# RECURRENCE EXPANSION
# ============================================================================

class RecurrenceExpander:
    """
    Enumerates the occurrences of a recurrence rule inside a UTC window
    Dates come from a dateutil rrule on the rule's local calendar and are
    converted to UTC. Weeks start on Monday; monthly occurrences keep the
    start day-of-month, clamped to the last day of shorter months.
    """

    FREQUENCIES = {
        RecurrencePattern.DAILY: DAILY,
        RecurrencePattern.WEEKLY: WEEKLY,
        RecurrencePattern.MONTHLY: MONTHLY,
    }

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def build_rrule(self, rule: RecurrenceRule) -> rrule:
        """Local wall-clock recurrence of the rule's start times"""
        if rule.pattern not in self.FREQUENCIES:
            raise ValueError(f"Unsupported recurrence pattern: {rule.pattern}")

        options: Dict[str, Any] = dict(
            dtstart=datetime.combine(rule.start_date, rule.start_time_of_day),
            interval=rule.interval,
            wkst=MO,
        )
        if rule.end_date is not None:
            options['until'] = datetime.combine(rule.end_date, rule.start_time_of_day)

        if rule.pattern == RecurrencePattern.WEEKLY:
            options['byweekday'] = rule.weekdays
        elif rule.pattern == RecurrencePattern.MONTHLY:
            # Day 31 becomes the 30th, 29th or 28th where the month is shorter
            options['bymonthday'] = (rule.start_date.day, -1)
            options['bysetpos'] = 1

        return rrule(self.FREQUENCIES[rule.pattern], **options)

    def to_interval(self, rule: RecurrenceRule, day: date) -> TimeRange:
        """
        UTC interval of the occurrence on a local date
        A start inside a daylight saving gap is pushed forward by the gap;
        the occurrence then keeps its nominal length.
        """
        zone = rule.zone
        start = local_to_utc(day, rule.start_time_of_day, zone)
        end = local_to_utc(day, rule.end_time_of_day, zone)
        if end <= start:
            end = start + (datetime.combine(day, rule.end_time_of_day)
                           - datetime.combine(day, rule.start_time_of_day))
            self.logger.info(
                f"Rule {rule.id}: occurrence on {day} starts in a daylight saving gap, "
                f"moved to {start}"
            )
        return TimeRange(start, end)

    def occurrences(self, rule: RecurrenceRule, window: TimeRange) -> List[TimeRange]:
        """
        Occurrences whose start lies in [window.start_time, window.end_time)
        Returns: Occurrence intervals in UTC, ordered by start
        """
        zone = rule.zone
        # One day of slack on each side covers any UTC offset
        after = window.start_time.astimezone(zone).replace(tzinfo=None) - timedelta(days=1)
        before = window.end_time.astimezone(zone).replace(tzinfo=None) + timedelta(days=1)

        result = []
        for local_start in self.build_rrule(rule).between(after, before, inc=True):
            occurrence = self.to_interval(rule, local_start.date())
            if window.start_time <= occurrence.start_time < window.end_time:
                result.append(occurrence)

        self.logger.debug(f"Rule {rule.id}: {len(result)} occurrence(s) in {window}")
        return result
