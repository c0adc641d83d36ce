# File: coshare_booking/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Vehicle Booking Core

This module defines DTOs for data transfer between layers:
1. Input DTOs - Requests entering the application services
2. Output DTOs - Read models built from domain objects

DTO Principles:
- Validation at creation (pydantic)
- All datetimes normalized to aware UTC
- No business logic, only data
- Serialization/deserialization support
"""

from typing import Dict, List, Optional, Any, Union, Annotated
from datetime import datetime, date, time
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import json
import uuid

from pydantic import BaseModel, Field, ConfigDict, AfterValidator, field_validator, model_validator

from ..domain.models import (
    TimeRange, BlockingWindow, MaintenanceBlock, RecurrencePattern, ensure_utc
)
from ..domain.aggregates import Reservation, RecurrenceRule, LateReturnFee
from ..domain.strategies import ConflictResult, RankedRequest


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        use_enum_values=True
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(**kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls(**json.loads(json_str))


# ============================================================================
# INPUT DTOs
# ============================================================================

# Incoming datetimes are normalized to aware UTC; naive values are taken as UTC
UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class ReservationRequestDTO(BaseDTO):
    """Request to reserve a vehicle"""
    vehicle_id: str = Field(..., min_length=1)
    group_id: str = Field(..., min_length=1)
    requester_id: str = Field(..., min_length=1)
    start_time: UTCDateTime
    end_time: UTCDateTime
    is_emergency: bool = False
    emergency_reason: Optional[str] = None
    # Cancel lower-priority reservations in the way instead of returning the conflict
    emergency_auto_cancel_conflicts: bool = False
    purpose: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode='after')
    def validate_interval(self) -> 'ReservationRequestDTO':
        """Validate that end time is after start time"""
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self

    @property
    def interval(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)


class BeginTripDTO(BaseDTO):
    """Vehicle checkout"""
    reservation_id: str
    actor_id: str
    odometer: int = Field(..., ge=0)
    occurred_at: Optional[UTCDateTime] = None


class CompleteTripDTO(BaseDTO):
    """Vehicle return event"""
    reservation_id: str
    actor_id: str
    odometer: int = Field(..., ge=0)
    returned_at: UTCDateTime
    return_event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    requires_damage_review: bool = False
    notes: Optional[str] = None


class RecurrenceRuleRequestDTO(BaseDTO):
    """Request to create a recurring reservation series"""
    vehicle_id: str = Field(..., min_length=1)
    group_id: str = Field(..., min_length=1)
    requester_id: str = Field(..., min_length=1)
    pattern: RecurrencePattern
    interval: int = Field(default=1, ge=1)
    weekdays: List[int] = Field(default_factory=list, description="0 = Monday ... 6 = Sunday")
    start_time_of_day: time
    end_time_of_day: time
    start_date: date
    end_date: Optional[date] = None
    time_zone: str = "UTC"
    purpose: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('weekdays')
    @classmethod
    def validate_weekdays(cls, v: List[int]) -> List[int]:
        invalid = [day for day in v if day < 0 or day > 6]
        if invalid:
            raise ValueError(f"Invalid weekdays: {invalid}")
        return sorted(set(v))

    @field_validator('time_zone')
    @classmethod
    def validate_time_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @model_validator(mode='after')
    def validate_rule(self) -> 'RecurrenceRuleRequestDTO':
        if self.end_time_of_day <= self.start_time_of_day:
            raise ValueError("Daily end time must be after start time")

        if RecurrencePattern(self.pattern) == RecurrencePattern.WEEKLY and not self.weekdays:
            raise ValueError("Weekly recurrence requires at least one weekday")

        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class MaintenanceRequestDTO(BaseDTO):
    """Maintenance window announced by the maintenance service"""
    maintenance_schedule_id: str = Field(..., min_length=1)
    vehicle_id: str = Field(..., min_length=1)
    group_id: str
    service_type: str = "general"
    start_time: UTCDateTime
    end_time: UTCDateTime
    notes: Optional[str] = None

    @model_validator(mode='after')
    def validate_interval(self) -> 'MaintenanceRequestDTO':
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


# ============================================================================
# OUTPUT DTOs
# ============================================================================

class IntervalDTO(BaseDTO):
    start_time: datetime
    end_time: datetime

    @classmethod
    def from_domain(cls, interval: TimeRange) -> 'IntervalDTO':
        return cls(start_time=interval.start_time, end_time=interval.end_time)


class BlockingWindowDTO(BaseDTO):
    source_id: str
    source: str
    start_time: datetime
    end_time: datetime
    status: Optional[str] = None
    requester_id: Optional[str] = None
    is_emergency: bool = False

    @classmethod
    def from_domain(cls, window: BlockingWindow) -> 'BlockingWindowDTO':
        return cls(
            source_id=window.source_id,
            source=window.source.value,
            start_time=window.start_time,
            end_time=window.end_time,
            status=window.status.value if window.status else None,
            requester_id=window.requester_id,
            is_emergency=window.is_emergency
        )


class RankedRequestDTO(BaseDTO):
    request_id: str
    requester_id: str
    score: Decimal
    tier: str
    rank: int

    @classmethod
    def from_domain(cls, ranked: RankedRequest) -> 'RankedRequestDTO':
        return cls(
            request_id=ranked.candidate.request_id,
            requester_id=ranked.candidate.requester_id,
            score=ranked.score,
            tier=ranked.tier.value,
            rank=ranked.rank
        )


class ConflictResultDTO(BaseDTO):
    """Returned instead of a reservation when the window is taken"""
    conflicts: List[BlockingWindowDTO]
    recommended_window: Optional[IntervalDTO] = None
    ranking: List[RankedRequestDTO] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, result: ConflictResult) -> 'ConflictResultDTO':
        return cls(
            conflicts=[BlockingWindowDTO.from_domain(w) for w in result.conflicts],
            recommended_window=(
                IntervalDTO.from_domain(result.recommended_window)
                if result.recommended_window else None
            ),
            ranking=[RankedRequestDTO.from_domain(r) for r in result.ranking]
        )


class ReservationDTO(BaseDTO):
    id: str
    vehicle_id: str
    group_id: str
    requester_id: str
    start_time: datetime
    end_time: datetime
    status: str
    priority_tier: str
    priority_score: Decimal
    is_emergency: bool
    emergency_demoted: bool = False
    recurrence_rule_id: Optional[str] = None
    distance_km: Optional[int] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    version: int

    @classmethod
    def from_domain(cls, reservation: Reservation) -> 'ReservationDTO':
        return cls(
            id=reservation.id,
            vehicle_id=reservation.vehicle_id,
            group_id=reservation.group_id,
            requester_id=reservation.requester_id,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            status=reservation.status.value,
            priority_tier=reservation.priority_tier.value,
            priority_score=reservation.priority_score,
            is_emergency=reservation.is_emergency,
            emergency_demoted=reservation.emergency_demoted,
            recurrence_rule_id=reservation.recurrence_rule_id,
            distance_km=reservation.distance_km,
            cancellation_reason=reservation.cancellation_reason,
            created_at=reservation.created_at,
            version=reservation.version
        )


class LateReturnFeeDTO(BaseDTO):
    id: str
    reservation_id: str
    return_event_id: str
    late_minutes: int
    chargeable_minutes: int
    amount: Decimal
    original_amount: Decimal
    currency: str
    calculation_method: str
    status: str

    @classmethod
    def from_domain(cls, fee: LateReturnFee) -> 'LateReturnFeeDTO':
        return cls(
            id=fee.id,
            reservation_id=fee.reservation_id,
            return_event_id=fee.return_event_id,
            late_minutes=fee.late_minutes,
            chargeable_minutes=fee.chargeable_minutes,
            amount=fee.amount.amount,
            original_amount=fee.original_amount.amount,
            currency=fee.amount.currency,
            calculation_method=fee.calculation_method,
            status=fee.status.value
        )


class CompleteTripResultDTO(BaseDTO):
    reservation: ReservationDTO
    late_fee: Optional[LateReturnFeeDTO] = None


class MaintenanceBlockDTO(BaseDTO):
    id: str
    maintenance_schedule_id: str
    vehicle_id: str
    service_type: str
    start_time: datetime
    end_time: datetime
    status: str
    overlapping_reservation_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, block: MaintenanceBlock,
                    overlapping_reservation_ids: Optional[List[str]] = None) -> 'MaintenanceBlockDTO':
        return cls(
            id=block.id,
            maintenance_schedule_id=block.maintenance_schedule_id,
            vehicle_id=block.vehicle_id,
            service_type=block.service_type,
            start_time=block.interval.start_time,
            end_time=block.interval.end_time,
            status=block.status.value,
            overlapping_reservation_ids=list(overlapping_reservation_ids or [])
        )


class RecurrenceRuleDTO(BaseDTO):
    id: str
    vehicle_id: str
    requester_id: str
    pattern: str
    interval: int
    weekdays: List[int]
    start_time_of_day: time
    end_time_of_day: time
    start_date: date
    end_date: Optional[date] = None
    time_zone: str
    status: str
    paused_until: Optional[datetime] = None
    last_generated_until: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule: RecurrenceRule) -> 'RecurrenceRuleDTO':
        return cls(
            id=rule.id,
            vehicle_id=rule.vehicle_id,
            requester_id=rule.requester_id,
            pattern=rule.pattern.value,
            interval=rule.interval,
            weekdays=list(rule.weekdays),
            start_time_of_day=rule.start_time_of_day,
            end_time_of_day=rule.end_time_of_day,
            start_date=rule.start_date,
            end_date=rule.end_date,
            time_zone=rule.time_zone,
            status=rule.status.value,
            paused_until=rule.paused_until,
            last_generated_until=rule.last_generated_until
        )


class RuleGenerationDTO(BaseDTO):
    rule_id: str
    created: int
    skipped: int
    status: str
    generated_until: Optional[datetime] = None


class GenerationReportDTO(BaseDTO):
    run_at: datetime
    rules_processed: int
    rules_locked: int
    created: int
    skipped: int
    rules: List[RuleGenerationDTO] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, report: Any) -> 'GenerationReportDTO':
        return cls(
            run_at=report.run_at,
            rules_processed=len(report.rules),
            rules_locked=len(report.locked_rule_ids),
            created=report.total_created,
            skipped=report.total_skipped,
            rules=[
                RuleGenerationDTO(
                    rule_id=outcome.rule_id,
                    created=outcome.created,
                    skipped=outcome.skipped,
                    status=outcome.status,
                    generated_until=outcome.generated_until
                )
                for outcome in report.rules
            ]
        )


CreateReservationResult = Union[ReservationDTO, ConflictResultDTO]
