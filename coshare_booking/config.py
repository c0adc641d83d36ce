# File: coshare_booking/config.py
"""
Configuration for the Vehicle Booking Core

All tunable business constants live here instead of being hard-coded in the
domain layer:
1. PriorityWeights - Scoring weights used by the priority resolver
2. EmergencyPolicy - Monthly emergency cap, reason requirement and who may declare one
3. ReminderSchedule - Offsets of the three checkout reminder windows
4. RecurrenceSettings - Generation horizon and per-rule lock timeout
5. LateFeeSettings - Late-return fee policy selection and parameters
6. TripSettings - Odometer sanity limit and per-km trip rate
7. BookingSettings - Root settings object, loadable from the environment

Every settings object validates itself in __post_init__ and raises
ValueError on inconsistent values.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, FrozenSet, Mapping
import os


# ============================================================================
# PRIORITY & EMERGENCY POLICIES
# ============================================================================

@dataclass(frozen=True)
class PriorityWeights:
    """Value Object: Weights of the priority scoring formula"""
    ownership_weight: Decimal = Decimal('100')
    waiting_weight: Decimal = Decimal('30')
    emergency_boost: Decimal = Decimal('1000')
    waiting_saturation_days: int = 30
    high_tier_threshold: Decimal = Decimal('70')

    def __post_init__(self):
        """Validate weights"""
        if self.ownership_weight < 0 or self.waiting_weight < 0 or self.emergency_boost < 0:
            raise ValueError("Priority weights cannot be negative")

        if self.waiting_saturation_days <= 0:
            raise ValueError("Waiting saturation days must be positive")


@dataclass(frozen=True)
class EmergencyPolicy:
    """Value Object: Emergency override policy"""
    monthly_cap: int = 2
    require_reason: bool = True
    admins_only: bool = True

    def __post_init__(self):
        if self.monthly_cap < 0:
            raise ValueError("Emergency monthly cap cannot be negative")


# ============================================================================
# REMINDERS & RECURRENCE
# ============================================================================

@dataclass(frozen=True)
class ReminderSchedule:
    """
    Value Object: Reminder windows relative to a reservation start
    pre-checkout and final-checkout fire before the start,
    missed-checkout fires after the start when no trip has begun
    """
    pre_checkout_lead: timedelta = timedelta(hours=24)
    final_checkout_lead: timedelta = timedelta(hours=1)
    missed_checkout_after: timedelta = timedelta(minutes=30)

    def __post_init__(self):
        """Validate reminder offsets"""
        if self.final_checkout_lead <= timedelta(0):
            raise ValueError("Final checkout lead must be positive")

        if self.pre_checkout_lead <= self.final_checkout_lead:
            raise ValueError("Pre-checkout lead must be longer than final checkout lead")

        if self.missed_checkout_after <= timedelta(0):
            raise ValueError("Missed checkout offset must be positive")


@dataclass(frozen=True)
class RecurrenceSettings:
    """Value Object: Recurring generation settings"""
    horizon_days: int = 14
    lock_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 3 * 3600

    def __post_init__(self):
        if self.horizon_days <= 0:
            raise ValueError("Generation horizon must be positive")

        if self.lock_timeout_seconds <= 0:
            raise ValueError("Lock timeout must be positive")

    @property
    def horizon(self) -> timedelta:
        """Generation horizon as a timedelta"""
        return timedelta(days=self.horizon_days)


# ============================================================================
# LATE FEES & TRIPS
# ============================================================================

@dataclass(frozen=True)
class LateFeeBand:
    """Value Object: One band of the banded late-fee policy"""
    from_minutes: int
    to_minutes: Optional[int] = None  # exclusive, None means open-ended
    rate_per_hour: Decimal = Decimal('0')
    flat_fee: Decimal = Decimal('0')
    label: Optional[str] = None

    def __post_init__(self):
        """Validate band bounds"""
        if self.from_minutes < 0:
            raise ValueError("Band lower bound cannot be negative")

        if self.to_minutes is not None and self.to_minutes <= self.from_minutes:
            raise ValueError(
                f"Band upper bound {self.to_minutes} must exceed lower bound {self.from_minutes}"
            )

        if self.rate_per_hour < 0 or self.flat_fee < 0:
            raise ValueError("Band rate and flat fee cannot be negative")

    def contains(self, minutes: float) -> bool:
        """Check whether a chargeable duration falls in this band"""
        if minutes < self.from_minutes:
            return False
        return self.to_minutes is None or minutes < self.to_minutes

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        upper = self.to_minutes if self.to_minutes is not None else "open-ended"
        return f"Band({self.from_minutes}-{upper})"


@dataclass(frozen=True)
class LateFeeSettings:
    """
    Value Object: Late-return fee configuration
    policy is either "incremental" (flat amount per started increment)
    or "banded" (hourly rate bands with optional flat fee)
    """
    policy: str = "incremental"
    increment_minutes: int = 15
    amount_per_increment: Decimal = Decimal('5.00')
    grace_minutes: int = 0
    max_fee: Optional[Decimal] = Decimal('200.00')
    default_hourly_rate: Decimal = Decimal('0')
    bands: tuple = ()
    currency: str = "USD"

    def __post_init__(self):
        """Validate late-fee settings"""
        if self.policy not in ("incremental", "banded"):
            raise ValueError(f"Unknown late fee policy: {self.policy}")

        if self.increment_minutes <= 0:
            raise ValueError("Increment minutes must be positive")

        if self.amount_per_increment < 0:
            raise ValueError("Amount per increment cannot be negative")

        if self.grace_minutes < 0:
            raise ValueError("Grace period cannot be negative")

        if self.max_fee is not None and self.max_fee < 0:
            raise ValueError("Maximum fee cannot be negative")

    def build_policy(self) -> 'LateFeePolicy':
        """Create the configured late-fee policy"""
        from .domain.strategies import IncrementalLateFeePolicy, BandedLateFeePolicy

        if self.policy == "banded":
            return BandedLateFeePolicy(
                bands=list(self.bands),
                grace_minutes=self.grace_minutes,
                max_fee=self.max_fee,
                default_hourly_rate=self.default_hourly_rate,
                currency=self.currency
            )

        return IncrementalLateFeePolicy(
            increment_minutes=self.increment_minutes,
            amount_per_increment=self.amount_per_increment,
            grace_minutes=self.grace_minutes,
            max_fee=self.max_fee,
            currency=self.currency
        )


@dataclass(frozen=True)
class TripSettings:
    """Value Object: Trip recording limits"""
    max_trip_distance_km: int = 2000
    rate_per_km: Decimal = Decimal('0')

    def __post_init__(self):
        if self.max_trip_distance_km <= 0:
            raise ValueError("Maximum trip distance must be positive")

        if self.rate_per_km < 0:
            raise ValueError("Trip rate per km cannot be negative")


# ============================================================================
# ROOT SETTINGS
# ============================================================================

@dataclass(frozen=True)
class BookingSettings:
    """Root configuration object for the booking core"""
    priority: PriorityWeights = field(default_factory=PriorityWeights)
    emergency: EmergencyPolicy = field(default_factory=EmergencyPolicy)
    reminders: ReminderSchedule = field(default_factory=ReminderSchedule)
    recurrence: RecurrenceSettings = field(default_factory=RecurrenceSettings)
    late_fees: LateFeeSettings = field(default_factory=LateFeeSettings)
    trips: TripSettings = field(default_factory=TripSettings)

    # Groups whose new reservations wait for an explicit approval
    approval_required_group_ids: FrozenSet[str] = frozenset()
    recommendation_search_days: int = 7

    # Infrastructure; database_url "memory" selects the in-memory store
    database_url: str = "sqlite:///./bookings.db"
    lock_backend: str = "memory"  # memory, redis
    redis_url: str = "redis://localhost:6379"
    mongo_url: Optional[str] = None

    def __post_init__(self):
        if self.recommendation_search_days <= 0:
            raise ValueError("Recommendation search window must be positive")

        if self.lock_backend not in ("memory", "redis"):
            raise ValueError(f"Unknown lock backend: {self.lock_backend}")

    @property
    def recommendation_search_window(self) -> timedelta:
        return timedelta(days=self.recommendation_search_days)

    @property
    def uses_in_memory_storage(self) -> bool:
        return self.database_url == "memory"

    def requires_approval(self, group_id: str) -> bool:
        """Check whether the group has an approval gate configured"""
        return group_id in self.approval_required_group_ids

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'BookingSettings':
        """
        Build settings from environment variables
        Unset variables keep their defaults
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(name: str, default: Any) -> Any:
            value = env.get(name)
            return default if value in (None, "") else value

        priority = PriorityWeights(
            ownership_weight=Decimal(_get("BOOKING_OWNERSHIP_WEIGHT", defaults.priority.ownership_weight)),
            waiting_weight=Decimal(_get("BOOKING_WAITING_WEIGHT", defaults.priority.waiting_weight)),
            emergency_boost=Decimal(_get("BOOKING_EMERGENCY_BOOST", defaults.priority.emergency_boost)),
            waiting_saturation_days=int(_get("BOOKING_WAITING_SATURATION_DAYS",
                                             defaults.priority.waiting_saturation_days)),
            high_tier_threshold=Decimal(_get("BOOKING_HIGH_TIER_THRESHOLD",
                                             defaults.priority.high_tier_threshold))
        )

        emergency = EmergencyPolicy(
            monthly_cap=int(_get("BOOKING_EMERGENCY_MONTHLY_CAP", defaults.emergency.monthly_cap)),
            admins_only=str(_get("BOOKING_EMERGENCY_ADMINS_ONLY", defaults.emergency.admins_only)).lower()
            in ("1", "true", "yes")
        )

        reminders = ReminderSchedule(
            pre_checkout_lead=timedelta(minutes=int(_get(
                "BOOKING_PRE_CHECKOUT_LEAD_MINUTES", 24 * 60))),
            final_checkout_lead=timedelta(minutes=int(_get(
                "BOOKING_FINAL_CHECKOUT_LEAD_MINUTES", 60))),
            missed_checkout_after=timedelta(minutes=int(_get(
                "BOOKING_MISSED_CHECKOUT_AFTER_MINUTES", 30)))
        )

        recurrence = RecurrenceSettings(
            horizon_days=int(_get("BOOKING_RECURRENCE_HORIZON_DAYS", defaults.recurrence.horizon_days)),
            lock_timeout_seconds=float(_get("BOOKING_RECURRENCE_LOCK_TIMEOUT",
                                            defaults.recurrence.lock_timeout_seconds)),
            sweep_interval_seconds=float(_get("BOOKING_SWEEP_INTERVAL_SECONDS",
                                              defaults.recurrence.sweep_interval_seconds))
        )

        max_fee = _get("BOOKING_LATE_FEE_MAX", defaults.late_fees.max_fee)
        late_fees = LateFeeSettings(
            policy=_get("BOOKING_LATE_FEE_POLICY", defaults.late_fees.policy),
            increment_minutes=int(_get("BOOKING_LATE_FEE_INCREMENT_MINUTES",
                                       defaults.late_fees.increment_minutes)),
            amount_per_increment=Decimal(_get("BOOKING_LATE_FEE_AMOUNT_PER_INCREMENT",
                                              defaults.late_fees.amount_per_increment)),
            grace_minutes=int(_get("BOOKING_LATE_FEE_GRACE_MINUTES", defaults.late_fees.grace_minutes)),
            max_fee=Decimal(max_fee) if max_fee is not None else None,
            default_hourly_rate=Decimal(_get("BOOKING_LATE_FEE_DEFAULT_HOURLY_RATE",
                                             defaults.late_fees.default_hourly_rate)),
            currency=_get("BOOKING_CURRENCY", defaults.late_fees.currency)
        )

        trips = TripSettings(
            max_trip_distance_km=int(_get("BOOKING_MAX_TRIP_DISTANCE_KM",
                                          defaults.trips.max_trip_distance_km)),
            rate_per_km=Decimal(_get("BOOKING_TRIP_RATE_PER_KM", defaults.trips.rate_per_km))
        )

        approval_groups = frozenset(
            group.strip()
            for group in _get("BOOKING_APPROVAL_REQUIRED_GROUPS", "").split(",")
            if group.strip()
        )

        return cls(
            priority=priority,
            emergency=emergency,
            reminders=reminders,
            recurrence=recurrence,
            late_fees=late_fees,
            trips=trips,
            approval_required_group_ids=approval_groups,
            recommendation_search_days=int(_get("BOOKING_RECOMMENDATION_SEARCH_DAYS",
                                                defaults.recommendation_search_days)),
            database_url=_get("DATABASE_URL", defaults.database_url),
            lock_backend=_get("BOOKING_LOCK_BACKEND", defaults.lock_backend),
            redis_url=_get("REDIS_URL", defaults.redis_url),
            mongo_url=_get("MONGO_URL", defaults.mongo_url)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Summarize settings for logging (no credentials)"""
        return {
            "horizon_days": self.recurrence.horizon_days,
            "emergency_monthly_cap": self.emergency.monthly_cap,
            "late_fee_policy": self.late_fees.policy,
            "emergency_admins_only": self.emergency.admins_only,
            "event_store": self.mongo_url is not None,
            "lock_backend": self.lock_backend,
            "in_memory_storage": self.uses_in_memory_storage,
            "approval_groups": sorted(self.approval_required_group_ids)
        }
