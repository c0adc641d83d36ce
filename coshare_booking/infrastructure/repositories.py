# File: coshare_booking/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Vehicle Booking Core

This module implements the data access layer with:
1. Repository interfaces (abstract base classes) per aggregate
2. In-memory implementations for tests and local runs
3. SQLAlchemy ORM models and repositories
4. Unit of Work pattern for transaction management
5. Repository factory

Concurrency model:
- Every check-then-insert on a vehicle happens inside one Unit of Work that
  first locks the vehicle schedule row (SELECT ... FOR UPDATE) and finally
  bumps its version with a compare-and-set.
- Aggregate updates carry an optimistic version check.
- Unique-constraint violations and lost compare-and-sets surface as
  ConcurrentModification so callers re-check and retry.
"""

from abc import ABC, abstractmethod
from typing import (
    Dict, List, Optional, Any, Type, TypeVar, Generic, Callable, Iterable, Tuple
)
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import copy
import logging
import threading

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, DateTime, Date, Time,
    Text, JSON, DECIMAL, UniqueConstraint, Index, update
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..domain.models import (
    Money, TimeRange, MaintenanceBlock, ReservationStatus, PriorityTier,
    RecurrencePattern, RecurrenceStatus, LateFeeStatus, MaintenanceStatus,
    DEFAULT_BLOCKING_STATUSES, ensure_utc, utcnow
)
from ..domain.aggregates import Reservation, RecurrenceRule, LateReturnFee
from ..domain.exceptions import ConcurrentModification

# Type variables for generic repositories
T = TypeVar('T')
ID = TypeVar('ID')


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Generic repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add a new entity"""
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        """Get entity by ID"""
        pass

    @abstractmethod
    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        """Get all entities with pagination"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Update an existing entity"""
        pass

    @abstractmethod
    def exists(self, id: ID) -> bool:
        """Check if entity exists"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count total entities"""
        pass


class ReservationRepository(Repository[Reservation, str], ABC):
    """Reservations are never deleted; cancellation is a status"""

    @abstractmethod
    def find_overlapping(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[ReservationStatus]] = None
    ) -> List[Reservation]:
        """Reservations of a vehicle in the given statuses that intersect [start, end)"""
        pass

    @abstractmethod
    def find_by_recurrence(
        self,
        rule_id: str,
        statuses: Optional[Iterable[ReservationStatus]] = None,
        starting_from: Optional[datetime] = None
    ) -> List[Reservation]:
        pass

    @abstractmethod
    def find_by_rule_and_start(self, rule_id: str, start: datetime) -> Optional[Reservation]:
        """Look up a generated occurrence by its idempotency key"""
        pass

    @abstractmethod
    def find_reminder_candidates(self, now: datetime, lookahead: timedelta) -> List[Reservation]:
        """Confirmed reservations starting before now + lookahead that have not ended"""
        pass

    @abstractmethod
    def count_emergency_for_user(self, user_id: str, period: TimeRange) -> int:
        """Emergency-flagged reservations created by the user within the period"""
        pass

    @abstractmethod
    def last_reservation_end(self, user_id: str, vehicle_id: str,
                             before: datetime) -> Optional[datetime]:
        """End of the user's latest non-cancelled reservation that began before a moment"""
        pass


class RecurrenceRuleRepository(Repository[RecurrenceRule, str], ABC):

    @abstractmethod
    def find_due(self, now: datetime) -> List[RecurrenceRule]:
        """Active rules and paused rules whose pause has elapsed"""
        pass


class LateReturnFeeRepository(Repository[LateReturnFee, str], ABC):

    @abstractmethod
    def find_by_return_event(self, return_event_id: str) -> Optional[LateReturnFee]:
        pass

    @abstractmethod
    def find_by_reservation(self, reservation_id: str) -> List[LateReturnFee]:
        pass


class MaintenanceBlockRepository(Repository[MaintenanceBlock, str], ABC):

    @abstractmethod
    def find_by_schedule_id(self, maintenance_schedule_id: str) -> Optional[MaintenanceBlock]:
        pass

    @abstractmethod
    def find_overlapping(self, vehicle_id: str, start: datetime,
                         end: datetime) -> List[MaintenanceBlock]:
        """Scheduled maintenance blocks of a vehicle intersecting [start, end)"""
        pass


class ScheduleLockRepository(ABC):
    """
    Versioned rows serializing a read-then-insert
    One row per vehicle guards its schedule; one row per member guards the
    monthly emergency quota.
    """

    @abstractmethod
    def lock(self, key: str) -> int:
        """Lock the row for this transaction and return its version"""
        pass

    @abstractmethod
    def touch(self, key: str) -> int:
        """Bump the row version (compare-and-set); returns the new version"""
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @property
    @abstractmethod
    def reservations(self) -> ReservationRepository:
        pass

    @property
    @abstractmethod
    def recurrence_rules(self) -> RecurrenceRuleRepository:
        pass

    @property
    @abstractmethod
    def late_fees(self) -> LateReturnFeeRepository:
        pass

    @property
    @abstractmethod
    def maintenance_blocks(self) -> MaintenanceBlockRepository:
        pass

    @property
    @abstractmethod
    def vehicle_schedules(self) -> ScheduleLockRepository:
        pass

    @property
    @abstractmethod
    def member_quotas(self) -> ScheduleLockRepository:
        pass

    def lock_vehicle(self, vehicle_id: str) -> int:
        """Serialize schedule changes of one vehicle for the rest of this transaction"""
        return self.vehicle_schedules.lock(vehicle_id)

    def touch_vehicle(self, vehicle_id: str) -> int:
        return self.vehicle_schedules.touch(vehicle_id)

    def lock_member(self, user_id: str) -> int:
        """Serialize emergency quota use of one member for the rest of this transaction"""
        return self.member_quotas.lock(user_id)

    def touch_member(self, user_id: str) -> int:
        return self.member_quotas.touch(user_id)


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryDatabase:
    """
    Shared in-memory tables
    One re-entrant lock serializes all units of work on the database
    """

    TABLES = ("reservations", "recurrence_rules", "late_fees",
              "maintenance_blocks", "vehicle_schedules", "member_quotas")

    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, Dict[str, Any]] = {name: {} for name in self.TABLES}

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        # Stored rows are replaced, never mutated, so shallow copies suffice
        return {name: dict(rows) for name, rows in self.tables.items()}

    def restore(self, snapshot: Dict[str, Dict[str, Any]]) -> None:
        for name, rows in snapshot.items():
            self.tables[name].clear()
            self.tables[name].update(rows)

    def clear(self) -> None:
        """Clear all data (for testing)"""
        with self.lock:
            for rows in self.tables.values():
                rows.clear()


class InMemoryRepository(Repository[T, str]):
    """In-memory repository storing detached copies of aggregates"""

    def __init__(self, storage: Dict[str, T]):
        self._storage = storage
        self._seen_versions: Dict[str, int] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def _detach(entity: T) -> T:
        stored = copy.deepcopy(entity)
        if hasattr(stored, "_changes"):
            stored._changes = []
        return stored

    def _unique_keys(self, entity: T) -> List[Tuple[str, Any]]:
        """Unique constraints besides the id - overridden by subclasses"""
        return []

    def _check_unique(self, entity: T) -> None:
        keys = [key for key in self._unique_keys(entity) if key[1] is not None]
        if not keys:
            return
        for other in self._storage.values():
            if other.id == entity.id:
                continue
            for name, value in keys:
                if self._unique_value(other, name) == value:
                    raise ConcurrentModification(
                        f"Unique constraint {name} violated by {entity.id}"
                    )

    def _unique_value(self, entity: T, name: str) -> Any:
        return dict(self._unique_keys(entity)).get(name)

    def add(self, entity: T) -> T:
        if entity.id in self._storage:
            raise ConcurrentModification(f"Entity {entity.id} already exists")
        self._check_unique(entity)

        self._storage[entity.id] = self._detach(entity)
        self._seen_versions[entity.id] = getattr(entity, "version", 0)
        self._logger.debug(f"Added entity {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        stored = self._storage.get(id)
        if stored is None:
            return None
        self._seen_versions[id] = getattr(stored, "version", 0)
        return copy.deepcopy(stored)

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        items = list(self._storage.values())[skip:skip + limit]
        return [copy.deepcopy(item) for item in items]

    def update(self, entity: T) -> T:
        stored = self._storage.get(entity.id)
        if stored is None:
            raise KeyError(f"Entity {entity.id} not found")

        expected = self._seen_versions.get(entity.id)
        if expected is not None and getattr(stored, "version", 0) != expected:
            raise ConcurrentModification(
                f"{type(entity).__name__} {entity.id} was modified concurrently"
            )
        self._check_unique(entity)

        self._storage[entity.id] = self._detach(entity)
        self._seen_versions[entity.id] = getattr(entity, "version", 0)
        self._logger.debug(f"Updated entity {entity.id}")
        return entity

    def exists(self, id: str) -> bool:
        return id in self._storage

    def count(self) -> int:
        return len(self._storage)

    def _select(self, predicate: Callable[[T], bool]) -> List[T]:
        matches = [copy.deepcopy(item) for item in self._storage.values() if predicate(item)]
        for item in matches:
            self._seen_versions[item.id] = getattr(item, "version", 0)
        return matches


class InMemoryReservationRepository(InMemoryRepository[Reservation], ReservationRepository):
    """In-memory repository for reservations"""

    def _unique_keys(self, entity: Reservation) -> List[Tuple[str, Any]]:
        if entity.recurrence_rule_id is None:
            return []
        return [("rule_occurrence", (entity.recurrence_rule_id, entity.start_time))]

    def find_overlapping(self, vehicle_id, start, end, statuses=None):
        statuses = frozenset(statuses) if statuses is not None else DEFAULT_BLOCKING_STATUSES
        start, end = ensure_utc(start), ensure_utc(end)
        found = self._select(lambda r: (
            r.vehicle_id == vehicle_id
            and r.status in statuses
            and r.start_time < end
            and r.end_time > start
        ))
        return sorted(found, key=lambda r: (r.start_time, r.id))

    def find_by_recurrence(self, rule_id, statuses=None, starting_from=None):
        statuses = frozenset(statuses) if statuses is not None else None
        starting_from = ensure_utc(starting_from)
        found = self._select(lambda r: (
            r.recurrence_rule_id == rule_id
            and (statuses is None or r.status in statuses)
            and (starting_from is None or r.start_time >= starting_from)
        ))
        return sorted(found, key=lambda r: r.start_time)

    def find_by_rule_and_start(self, rule_id, start):
        start = ensure_utc(start)
        found = self._select(
            lambda r: r.recurrence_rule_id == rule_id and r.start_time == start
        )
        return found[0] if found else None

    def find_reminder_candidates(self, now, lookahead):
        now = ensure_utc(now)
        found = self._select(lambda r: (
            r.status == ReservationStatus.CONFIRMED
            and r.start_time <= now + lookahead
            and r.end_time > now
        ))
        return sorted(found, key=lambda r: (r.start_time, r.id))

    def count_emergency_for_user(self, user_id, period):
        return sum(
            1 for r in self._storage.values()
            if r.requester_id == user_id and r.is_emergency and period.contains(r.created_at)
        )

    def last_reservation_end(self, user_id, vehicle_id, before):
        before = ensure_utc(before)
        ends = [
            r.end_time for r in self._storage.values()
            if r.requester_id == user_id
            and r.vehicle_id == vehicle_id
            and r.status != ReservationStatus.CANCELLED
            and r.start_time < before
        ]
        return max(ends) if ends else None


class InMemoryRecurrenceRuleRepository(InMemoryRepository[RecurrenceRule], RecurrenceRuleRepository):
    """In-memory repository for recurrence rules"""

    def find_due(self, now):
        found = self._select(lambda rule: rule.is_due_for_generation(now))
        return sorted(found, key=lambda rule: (rule.created_at, rule.id))


class InMemoryLateReturnFeeRepository(InMemoryRepository[LateReturnFee], LateReturnFeeRepository):
    """In-memory repository for late return fees"""

    def _unique_keys(self, entity: LateReturnFee) -> List[Tuple[str, Any]]:
        return [("return_event_id", entity.return_event_id)]

    def find_by_return_event(self, return_event_id):
        found = self._select(lambda fee: fee.return_event_id == return_event_id)
        return found[0] if found else None

    def find_by_reservation(self, reservation_id):
        return self._select(lambda fee: fee.reservation_id == reservation_id)


class InMemoryMaintenanceBlockRepository(InMemoryRepository[MaintenanceBlock], MaintenanceBlockRepository):
    """In-memory repository for maintenance blocks"""

    def _unique_keys(self, entity: MaintenanceBlock) -> List[Tuple[str, Any]]:
        return [("maintenance_schedule_id", entity.maintenance_schedule_id)]

    def find_by_schedule_id(self, maintenance_schedule_id):
        found = self._select(lambda b: b.maintenance_schedule_id == maintenance_schedule_id)
        return found[0] if found else None

    def find_overlapping(self, vehicle_id, start, end):
        start, end = ensure_utc(start), ensure_utc(end)
        return self._select(lambda b: (
            b.vehicle_id == vehicle_id
            and b.is_active
            and b.interval.start_time < end
            and b.interval.end_time > start
        ))


class InMemoryScheduleLockRepository(ScheduleLockRepository):
    """Row versions; the database lock already serializes access"""

    def __init__(self, storage: Dict[str, int], label: str):
        self._storage = storage
        self._label = label
        self._locked: Dict[str, int] = {}

    def lock(self, key: str) -> int:
        version = self._storage.setdefault(key, 0)
        self._locked[key] = version
        return version

    def touch(self, key: str) -> int:
        expected = self._locked.get(key, self._storage.get(key, 0))
        if self._storage.get(key, 0) != expected:
            raise ConcurrentModification(f"{self._label} {key} changed concurrently")
        self._storage[key] = expected + 1
        self._locked[key] = expected + 1
        return expected + 1


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over an InMemoryDatabase
    Holds the database lock for the whole block and restores the snapshot
    taken at the last commit point on rollback
    """

    def __init__(self, database: Optional[InMemoryDatabase] = None):
        self.database = database or InMemoryDatabase()
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.database.lock.acquire()
        self._snapshot = self.database.snapshot()

        tables = self.database.tables
        self._reservations = InMemoryReservationRepository(tables["reservations"])
        self._recurrence_rules = InMemoryRecurrenceRuleRepository(tables["recurrence_rules"])
        self._late_fees = InMemoryLateReturnFeeRepository(tables["late_fees"])
        self._maintenance_blocks = InMemoryMaintenanceBlockRepository(tables["maintenance_blocks"])
        self._vehicle_schedules = InMemoryScheduleLockRepository(
            tables["vehicle_schedules"], "Schedule of vehicle"
        )
        self._member_quotas = InMemoryScheduleLockRepository(
            tables["member_quotas"], "Emergency quota of member"
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.error(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.database.lock.release()

    def commit(self):
        self._snapshot = self.database.snapshot()
        self._logger.debug("Transaction committed")

    def rollback(self):
        self.database.restore(self._snapshot)
        self._logger.debug("Transaction rolled back")

    @property
    def reservations(self) -> InMemoryReservationRepository:
        return self._reservations

    @property
    def recurrence_rules(self) -> InMemoryRecurrenceRuleRepository:
        return self._recurrence_rules

    @property
    def late_fees(self) -> InMemoryLateReturnFeeRepository:
        return self._late_fees

    @property
    def maintenance_blocks(self) -> InMemoryMaintenanceBlockRepository:
        return self._maintenance_blocks

    @property
    def vehicle_schedules(self) -> InMemoryScheduleLockRepository:
        return self._vehicle_schedules

    @property
    def member_quotas(self) -> InMemoryScheduleLockRepository:
        return self._member_quotas


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class ReservationModel(Base):
    """SQLAlchemy model for Reservation"""
    __tablename__ = 'reservations'

    id = Column(String(36), primary_key=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    group_id = Column(String(36), nullable=False)
    requester_id = Column(String(36), nullable=False, index=True)

    # Half-open interval, naive UTC
    start_at = Column(DateTime, nullable=False, index=True)
    end_at = Column(DateTime, nullable=False, index=True)

    status = Column(String(20), nullable=False, default='confirmed')
    priority_tier = Column(String(20), nullable=False, default='normal')
    priority_score = Column(DECIMAL(12, 4), default=0)
    is_emergency = Column(Boolean, default=False)
    emergency_reason = Column(Text)
    emergency_demoted = Column(Boolean, default=False)
    purpose = Column(String(200))
    notes = Column(Text)
    requires_damage_review = Column(Boolean, default=False)
    recurrence_rule_id = Column(String(36), index=True)

    # Lifecycle
    approved_at = Column(DateTime)
    approved_by = Column(String(36))
    trip_started_at = Column(DateTime)
    trip_started_by = Column(String(36))
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String(36))
    cancellation_reason = Column(Text)
    superseded_by = Column(String(36))

    # Trip
    odometer_start = Column(Integer)
    odometer_end = Column(Integer)
    distance_km = Column(Integer)
    trip_fee_amount = Column(DECIMAL(10, 2))
    trip_fee_currency = Column(String(3), default='USD')

    # Reminders
    pre_checkout_sent_at = Column(DateTime)
    final_checkout_sent_at = Column(DateTime)
    missed_checkout_sent_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint('recurrence_rule_id', 'start_at', name='uq_reservation_rule_occurrence'),
        Index('ix_reservation_vehicle_window', 'vehicle_id', 'start_at', 'end_at'),
    )


class RecurrenceRuleModel(Base):
    """SQLAlchemy model for RecurrenceRule"""
    __tablename__ = 'recurrence_rules'

    id = Column(String(36), primary_key=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    group_id = Column(String(36), nullable=False)
    requester_id = Column(String(36), nullable=False, index=True)

    pattern = Column(String(20), nullable=False)
    interval = Column(Integer, nullable=False, default=1)
    weekdays = Column(JSON, default=list)
    start_time_of_day = Column(Time, nullable=False)
    end_time_of_day = Column(Time, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    time_zone = Column(String(64), nullable=False, default='UTC')

    status = Column(String(20), nullable=False, default='active', index=True)
    paused_until = Column(DateTime)
    last_generated_until = Column(DateTime)
    last_generation_run_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancellation_reason = Column(Text)

    purpose = Column(String(200))
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)


class LateReturnFeeModel(Base):
    """SQLAlchemy model for LateReturnFee"""
    __tablename__ = 'late_return_fees'

    id = Column(String(36), primary_key=True)
    reservation_id = Column(String(36), nullable=False, index=True)
    return_event_id = Column(String(64), nullable=False)
    requester_id = Column(String(36), nullable=False)
    vehicle_id = Column(String(36), nullable=False)
    group_id = Column(String(36), nullable=False)

    late_minutes = Column(Integer, nullable=False)
    chargeable_minutes = Column(Integer, nullable=False)
    amount = Column(DECIMAL(10, 2), nullable=False)
    original_amount = Column(DECIMAL(10, 2), nullable=False)
    currency = Column(String(3), default='USD')
    calculation_method = Column(String(100))
    status = Column(String(20), nullable=False, default='pending')

    waived_by = Column(String(36))
    waiver_reason = Column(Text)
    waived_at = Column(DateTime)
    invoice_id = Column(String(64))
    expense_id = Column(String(64))
    charged_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint('return_event_id', name='uq_late_fee_return_event'),
    )


class MaintenanceBlockModel(Base):
    """SQLAlchemy model for MaintenanceBlock"""
    __tablename__ = 'maintenance_blocks'

    id = Column(String(36), primary_key=True)
    maintenance_schedule_id = Column(String(64), nullable=False)
    vehicle_id = Column(String(36), nullable=False, index=True)
    group_id = Column(String(36), nullable=False)
    service_type = Column(String(50))
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default='scheduled')
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('maintenance_schedule_id', name='uq_maintenance_schedule'),
    )


class VehicleScheduleModel(Base):
    """One row per vehicle; locked and versioned around schedule changes"""
    __tablename__ = 'vehicle_schedules'
    key_column = 'vehicle_id'

    vehicle_id = Column(String(36), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime)


class MemberQuotaModel(Base):
    """One row per member; locked and versioned around emergency reservations"""
    __tablename__ = 'member_quotas'
    key_column = 'user_id'

    user_id = Column(String(36), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

def _naive(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC -> naive UTC for storage"""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Stored naive UTC -> aware UTC"""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def reservation_to_orm(reservation: Reservation) -> ReservationModel:
        """Map Reservation aggregate to ORM model"""
        return ReservationModel(
            id=reservation.id,
            vehicle_id=reservation.vehicle_id,
            group_id=reservation.group_id,
            requester_id=reservation.requester_id,
            start_at=_naive(reservation.start_time),
            end_at=_naive(reservation.end_time),
            status=reservation.status.value,
            priority_tier=reservation.priority_tier.value,
            priority_score=reservation.priority_score,
            is_emergency=reservation.is_emergency,
            emergency_reason=reservation.emergency_reason,
            emergency_demoted=reservation.emergency_demoted,
            purpose=reservation.purpose,
            notes=reservation.notes,
            requires_damage_review=reservation.requires_damage_review,
            recurrence_rule_id=reservation.recurrence_rule_id,
            approved_at=_naive(reservation.approved_at),
            approved_by=reservation.approved_by,
            trip_started_at=_naive(reservation.trip_started_at),
            trip_started_by=reservation.trip_started_by,
            completed_at=_naive(reservation.completed_at),
            cancelled_at=_naive(reservation.cancelled_at),
            cancelled_by=reservation.cancelled_by,
            cancellation_reason=reservation.cancellation_reason,
            superseded_by=reservation.superseded_by,
            odometer_start=reservation.odometer_start,
            odometer_end=reservation.odometer_end,
            distance_km=reservation.distance_km,
            trip_fee_amount=reservation.trip_fee.amount if reservation.trip_fee else None,
            trip_fee_currency=reservation.trip_fee.currency if reservation.trip_fee else 'USD',
            pre_checkout_sent_at=_naive(reservation.pre_checkout_sent_at),
            final_checkout_sent_at=_naive(reservation.final_checkout_sent_at),
            missed_checkout_sent_at=_naive(reservation.missed_checkout_sent_at),
            created_at=_naive(reservation.created_at),
            updated_at=_naive(reservation.updated_at),
            version=reservation.version
        )

    @staticmethod
    def reservation_to_domain(model: ReservationModel) -> Reservation:
        """Map ORM model to Reservation aggregate"""
        reservation = Reservation(
            vehicle_id=model.vehicle_id,
            group_id=model.group_id,
            requester_id=model.requester_id,
            interval=TimeRange(_aware(model.start_at), _aware(model.end_at)),
            status=ReservationStatus(model.status),
            priority_tier=PriorityTier(model.priority_tier),
            priority_score=Decimal(str(model.priority_score or 0)),
            is_emergency=bool(model.is_emergency),
            emergency_reason=model.emergency_reason,
            purpose=model.purpose,
            notes=model.notes,
            recurrence_rule_id=model.recurrence_rule_id,
            created_at=_aware(model.created_at),
            id=model.id
        )
        reservation.emergency_demoted = bool(model.emergency_demoted)
        reservation.requires_damage_review = bool(model.requires_damage_review)
        reservation.approved_at = _aware(model.approved_at)
        reservation.approved_by = model.approved_by
        reservation.trip_started_at = _aware(model.trip_started_at)
        reservation.trip_started_by = model.trip_started_by
        reservation.completed_at = _aware(model.completed_at)
        reservation.cancelled_at = _aware(model.cancelled_at)
        reservation.cancelled_by = model.cancelled_by
        reservation.cancellation_reason = model.cancellation_reason
        reservation.superseded_by = model.superseded_by
        reservation.odometer_start = model.odometer_start
        reservation.odometer_end = model.odometer_end
        reservation.distance_km = model.distance_km
        if model.trip_fee_amount is not None:
            reservation.trip_fee = Money(Decimal(str(model.trip_fee_amount)), model.trip_fee_currency)
        reservation.pre_checkout_sent_at = _aware(model.pre_checkout_sent_at)
        reservation.final_checkout_sent_at = _aware(model.final_checkout_sent_at)
        reservation.missed_checkout_sent_at = _aware(model.missed_checkout_sent_at)
        reservation.updated_at = _aware(model.updated_at)
        reservation._version = model.version
        return reservation

    @staticmethod
    def recurrence_rule_to_orm(rule: RecurrenceRule) -> RecurrenceRuleModel:
        return RecurrenceRuleModel(
            id=rule.id,
            vehicle_id=rule.vehicle_id,
            group_id=rule.group_id,
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
            paused_until=_naive(rule.paused_until),
            last_generated_until=_naive(rule.last_generated_until),
            last_generation_run_at=_naive(rule.last_generation_run_at),
            cancelled_at=_naive(rule.cancelled_at),
            cancellation_reason=rule.cancellation_reason,
            purpose=rule.purpose,
            notes=rule.notes,
            created_at=_naive(rule.created_at),
            updated_at=_naive(rule.updated_at),
            version=rule.version
        )

    @staticmethod
    def recurrence_rule_to_domain(model: RecurrenceRuleModel) -> RecurrenceRule:
        rule = RecurrenceRule(
            vehicle_id=model.vehicle_id,
            group_id=model.group_id,
            requester_id=model.requester_id,
            pattern=RecurrencePattern(model.pattern),
            start_time_of_day=model.start_time_of_day,
            end_time_of_day=model.end_time_of_day,
            start_date=model.start_date,
            end_date=model.end_date,
            interval=model.interval,
            weekdays=list(model.weekdays or []),
            time_zone=model.time_zone,
            status=RecurrenceStatus(model.status),
            paused_until=_aware(model.paused_until),
            last_generated_until=_aware(model.last_generated_until),
            last_generation_run_at=_aware(model.last_generation_run_at),
            purpose=model.purpose,
            notes=model.notes,
            created_at=_aware(model.created_at),
            id=model.id
        )
        rule.cancelled_at = _aware(model.cancelled_at)
        rule.cancellation_reason = model.cancellation_reason
        rule.updated_at = _aware(model.updated_at)
        rule._version = model.version
        return rule

    @staticmethod
    def late_fee_to_orm(fee: LateReturnFee) -> LateReturnFeeModel:
        return LateReturnFeeModel(
            id=fee.id,
            reservation_id=fee.reservation_id,
            return_event_id=fee.return_event_id,
            requester_id=fee.requester_id,
            vehicle_id=fee.vehicle_id,
            group_id=fee.group_id,
            late_minutes=fee.late_minutes,
            chargeable_minutes=fee.chargeable_minutes,
            amount=fee.amount.amount,
            original_amount=fee.original_amount.amount,
            currency=fee.original_amount.currency,
            calculation_method=fee.calculation_method,
            status=fee.status.value,
            waived_by=fee.waived_by,
            waiver_reason=fee.waiver_reason,
            waived_at=_naive(fee.waived_at),
            invoice_id=fee.invoice_id,
            expense_id=fee.expense_id,
            charged_at=_naive(fee.charged_at),
            created_at=_naive(fee.created_at),
            updated_at=_naive(fee.updated_at),
            version=fee.version
        )

    @staticmethod
    def late_fee_to_domain(model: LateReturnFeeModel) -> LateReturnFee:
        fee = LateReturnFee(
            reservation_id=model.reservation_id,
            return_event_id=model.return_event_id,
            requester_id=model.requester_id,
            vehicle_id=model.vehicle_id,
            group_id=model.group_id,
            late_minutes=model.late_minutes,
            chargeable_minutes=model.chargeable_minutes,
            amount=Money(Decimal(str(model.amount)), model.currency),
            calculation_method=model.calculation_method,
            status=LateFeeStatus(model.status),
            original_amount=Money(Decimal(str(model.original_amount)), model.currency),
            created_at=_aware(model.created_at),
            id=model.id
        )
        fee.waived_by = model.waived_by
        fee.waiver_reason = model.waiver_reason
        fee.waived_at = _aware(model.waived_at)
        fee.invoice_id = model.invoice_id
        fee.expense_id = model.expense_id
        fee.charged_at = _aware(model.charged_at)
        fee.updated_at = _aware(model.updated_at)
        fee._version = model.version
        return fee

    @staticmethod
    def maintenance_to_orm(block: MaintenanceBlock) -> MaintenanceBlockModel:
        return MaintenanceBlockModel(
            id=block.id,
            maintenance_schedule_id=block.maintenance_schedule_id,
            vehicle_id=block.vehicle_id,
            group_id=block.group_id,
            service_type=block.service_type,
            start_at=_naive(block.interval.start_time),
            end_at=_naive(block.interval.end_time),
            status=block.status.value,
            notes=block.notes,
            created_at=_naive(block.created_at),
            updated_at=_naive(block.updated_at)
        )

    @staticmethod
    def maintenance_to_domain(model: MaintenanceBlockModel) -> MaintenanceBlock:
        block = MaintenanceBlock(
            maintenance_schedule_id=model.maintenance_schedule_id,
            vehicle_id=model.vehicle_id,
            group_id=model.group_id,
            service_type=model.service_type,
            interval=TimeRange(_aware(model.start_at), _aware(model.end_at)),
            notes=model.notes,
            status=MaintenanceStatus(model.status),
            created_at=_aware(model.created_at),
            id=model.id
        )
        block.updated_at = _aware(model.updated_at)
        return block


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T, str], ABC):
    """
    Base SQLAlchemy repository
    Versioned aggregates are updated with an optimistic version check
    """

    versioned = True

    def __init__(self, session: Session):
        self.session = session
        self._seen_versions: Dict[str, int] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        """Convert ORM model to domain model"""
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        """Convert domain model to ORM model"""
        pass

    def _track(self, model: Base) -> T:
        entity = self.to_domain(model)
        if self.versioned:
            self._seen_versions[model.id] = model.version
        return entity

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            if self.versioned:
                self._seen_versions[model.id] = model.version
            self._logger.debug(f"Added entity: {model.id}")
            return entity
        except IntegrityError as e:
            self._logger.warning(f"Integrity error adding entity {entity.id}: {e.orig}")
            raise ConcurrentModification(
                f"{type(entity).__name__} {entity.id} conflicts with a concurrent insert"
            ) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding entity: {e}", exc_info=True)
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, str(id))
            if model:
                return self._track(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}", exc_info=True)
            raise

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        try:
            models = self.session.query(self.model_class).offset(skip).limit(limit).all()
            return [self._track(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting all entities: {e}", exc_info=True)
            raise

    def update(self, entity: T) -> T:
        try:
            values = {
                column.name: getattr(self.to_orm(entity), column.name)
                for column in self.model_class.__table__.columns
                if column.name != 'id'
            }
            statement = update(self.model_class).where(self.model_class.id == entity.id)

            if self.versioned:
                expected = self._seen_versions.get(entity.id)
                if expected is not None:
                    statement = statement.where(self.model_class.version == expected)

            result = self.session.execute(statement.values(**values))
            if result.rowcount != 1:
                raise ConcurrentModification(
                    f"{type(entity).__name__} {entity.id} was modified concurrently or does not exist"
                )

            if self.versioned:
                self._seen_versions[entity.id] = entity.version
            self._logger.debug(f"Updated entity: {entity.id}")
            return entity
        except IntegrityError as e:
            self._logger.warning(f"Integrity error updating entity {entity.id}: {e.orig}")
            raise ConcurrentModification(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating entity: {e}", exc_info=True)
            raise

    def exists(self, id: str) -> bool:
        try:
            return self.session.query(self.model_class).filter(
                self.model_class.id == str(id)
            ).count() > 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error checking existence of {id}: {e}", exc_info=True)
            raise

    def count(self) -> int:
        try:
            return self.session.query(self.model_class).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting entities: {e}", exc_info=True)
            raise

    def _query(self, *criteria, order_by=None) -> List[T]:
        try:
            query = self.session.query(self.model_class).filter(*criteria)
            if order_by is not None:
                query = query.order_by(*order_by)
            # Reload rows touched by bulk updates in this session
            query = query.populate_existing()
            return [self._track(model) for model in query.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error querying {self.model_class.__name__}: {e}",
                               exc_info=True)
            raise


class SQLAlchemyReservationRepository(SQLAlchemyRepository[Reservation], ReservationRepository):
    """Repository for reservation persistence"""

    @property
    def model_class(self) -> Type[Base]:
        return ReservationModel

    def to_domain(self, model: ReservationModel) -> Reservation:
        return Mapper.reservation_to_domain(model)

    def to_orm(self, entity: Reservation) -> ReservationModel:
        return Mapper.reservation_to_orm(entity)

    def find_overlapping(self, vehicle_id, start, end, statuses=None):
        statuses = frozenset(statuses) if statuses is not None else DEFAULT_BLOCKING_STATUSES
        return self._query(
            ReservationModel.vehicle_id == vehicle_id,
            ReservationModel.status.in_([status.value for status in statuses]),
            ReservationModel.start_at < _naive(end),
            ReservationModel.end_at > _naive(start),
            order_by=(ReservationModel.start_at, ReservationModel.id)
        )

    def find_by_recurrence(self, rule_id, statuses=None, starting_from=None):
        criteria = [ReservationModel.recurrence_rule_id == rule_id]
        if statuses is not None:
            criteria.append(ReservationModel.status.in_([status.value for status in statuses]))
        if starting_from is not None:
            criteria.append(ReservationModel.start_at >= _naive(starting_from))
        return self._query(*criteria, order_by=(ReservationModel.start_at,))

    def find_by_rule_and_start(self, rule_id, start):
        found = self._query(
            ReservationModel.recurrence_rule_id == rule_id,
            ReservationModel.start_at == _naive(start)
        )
        return found[0] if found else None

    def find_reminder_candidates(self, now, lookahead):
        return self._query(
            ReservationModel.status == ReservationStatus.CONFIRMED.value,
            ReservationModel.start_at <= _naive(ensure_utc(now) + lookahead),
            ReservationModel.end_at > _naive(now),
            order_by=(ReservationModel.start_at, ReservationModel.id)
        )

    def count_emergency_for_user(self, user_id, period):
        try:
            return self.session.query(ReservationModel).filter(
                ReservationModel.requester_id == user_id,
                ReservationModel.is_emergency.is_(True),
                ReservationModel.created_at >= _naive(period.start_time),
                ReservationModel.created_at < _naive(period.end_time)
            ).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting emergencies for {user_id}: {e}",
                               exc_info=True)
            raise

    def last_reservation_end(self, user_id, vehicle_id, before):
        try:
            model = self.session.query(ReservationModel).filter(
                ReservationModel.requester_id == user_id,
                ReservationModel.vehicle_id == vehicle_id,
                ReservationModel.status != ReservationStatus.CANCELLED.value,
                ReservationModel.start_at < _naive(before)
            ).order_by(ReservationModel.end_at.desc()).first()
            return _aware(model.end_at) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error reading usage of {user_id}: {e}", exc_info=True)
            raise


class SQLAlchemyRecurrenceRuleRepository(SQLAlchemyRepository[RecurrenceRule], RecurrenceRuleRepository):
    """Repository for recurrence rule persistence"""

    @property
    def model_class(self) -> Type[Base]:
        return RecurrenceRuleModel

    def to_domain(self, model: RecurrenceRuleModel) -> RecurrenceRule:
        return Mapper.recurrence_rule_to_domain(model)

    def to_orm(self, entity: RecurrenceRule) -> RecurrenceRuleModel:
        return Mapper.recurrence_rule_to_orm(entity)

    def find_due(self, now):
        candidates = self._query(
            RecurrenceRuleModel.status.in_([
                RecurrenceStatus.ACTIVE.value, RecurrenceStatus.PAUSED.value
            ]),
            order_by=(RecurrenceRuleModel.created_at, RecurrenceRuleModel.id)
        )
        return [rule for rule in candidates if rule.is_due_for_generation(now)]


class SQLAlchemyLateReturnFeeRepository(SQLAlchemyRepository[LateReturnFee], LateReturnFeeRepository):
    """Repository for late return fee persistence"""

    @property
    def model_class(self) -> Type[Base]:
        return LateReturnFeeModel

    def to_domain(self, model: LateReturnFeeModel) -> LateReturnFee:
        return Mapper.late_fee_to_domain(model)

    def to_orm(self, entity: LateReturnFee) -> LateReturnFeeModel:
        return Mapper.late_fee_to_orm(entity)

    def find_by_return_event(self, return_event_id):
        found = self._query(LateReturnFeeModel.return_event_id == return_event_id)
        return found[0] if found else None

    def find_by_reservation(self, reservation_id):
        return self._query(LateReturnFeeModel.reservation_id == reservation_id,
                           order_by=(LateReturnFeeModel.created_at,))


class SQLAlchemyMaintenanceBlockRepository(SQLAlchemyRepository[MaintenanceBlock],
                                           MaintenanceBlockRepository):
    """Repository for maintenance block persistence"""

    versioned = False

    @property
    def model_class(self) -> Type[Base]:
        return MaintenanceBlockModel

    def to_domain(self, model: MaintenanceBlockModel) -> MaintenanceBlock:
        return Mapper.maintenance_to_domain(model)

    def to_orm(self, entity: MaintenanceBlock) -> MaintenanceBlockModel:
        return Mapper.maintenance_to_orm(entity)

    def find_by_schedule_id(self, maintenance_schedule_id):
        found = self._query(MaintenanceBlockModel.maintenance_schedule_id == maintenance_schedule_id)
        return found[0] if found else None

    def find_overlapping(self, vehicle_id, start, end):
        return self._query(
            MaintenanceBlockModel.vehicle_id == vehicle_id,
            MaintenanceBlockModel.status == MaintenanceStatus.SCHEDULED.value,
            MaintenanceBlockModel.start_at < _naive(end),
            MaintenanceBlockModel.end_at > _naive(start),
            order_by=(MaintenanceBlockModel.start_at,)
        )


class SQLAlchemyScheduleLockRepository(ScheduleLockRepository):
    """Row lock plus compare-and-set on a versioned row"""

    def __init__(self, session: Session, model: Type[Base], label: str):
        self.session = session
        self.model = model
        self.label = label
        self._key = getattr(model, model.key_column)
        self._locked: Dict[str, int] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def lock(self, key: str) -> int:
        try:
            row = self.session.query(self.model).filter(
                self._key == key
            ).with_for_update().one_or_none()

            if row is None:
                row = self.model(version=0, updated_at=_naive(utcnow()),
                                 **{self.model.key_column: key})
                self.session.add(row)
                self.session.flush()

            self._locked[key] = row.version
            return row.version
        except IntegrityError as e:
            raise ConcurrentModification(f"{self.label} {key} was created concurrently") from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error locking {self.label} {key}: {e}", exc_info=True)
            raise

    def touch(self, key: str) -> int:
        if key not in self._locked:
            self.lock(key)
        expected = self._locked[key]

        try:
            result = self.session.execute(
                update(self.model)
                .where(self._key == key, self.model.version == expected)
                .values(version=expected + 1, updated_at=_naive(utcnow()))
            )
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating {self.label} {key}: {e}", exc_info=True)
            raise

        if result.rowcount != 1:
            raise ConcurrentModification(f"{self.label} {key} changed concurrently")

        self._locked[key] = expected + 1
        return expected + 1


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        # Initialize repositories
        self._reservations = SQLAlchemyReservationRepository(self.session)
        self._recurrence_rules = SQLAlchemyRecurrenceRuleRepository(self.session)
        self._late_fees = SQLAlchemyLateReturnFeeRepository(self.session)
        self._maintenance_blocks = SQLAlchemyMaintenanceBlockRepository(self.session)
        self._vehicle_schedules = SQLAlchemyScheduleLockRepository(
            self.session, VehicleScheduleModel, "Schedule of vehicle"
        )
        self._member_quotas = SQLAlchemyScheduleLockRepository(
            self.session, MemberQuotaModel, "Emergency quota of member"
        )

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.error(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except IntegrityError as e:
            self.session.rollback()
            self._logger.warning(f"Integrity error on commit: {e.orig}")
            raise ConcurrentModification(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}", exc_info=True)
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def reservations(self) -> SQLAlchemyReservationRepository:
        return self._reservations

    @property
    def recurrence_rules(self) -> SQLAlchemyRecurrenceRuleRepository:
        return self._recurrence_rules

    @property
    def late_fees(self) -> SQLAlchemyLateReturnFeeRepository:
        return self._late_fees

    @property
    def maintenance_blocks(self) -> SQLAlchemyMaintenanceBlockRepository:
        return self._maintenance_blocks

    @property
    def vehicle_schedules(self) -> SQLAlchemyScheduleLockRepository:
        return self._vehicle_schedules

    @property
    def member_quotas(self) -> SQLAlchemyScheduleLockRepository:
        return self._member_quotas


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_session_factory(database_url: str) -> Callable[[], Session]:
        """Create the engine, the tables and a session factory for a database"""
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        engine = create_engine(database_url, echo=False, connect_args=connect_args)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine,
                                    expire_on_commit=False)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=engine)

        return SessionLocal

    @staticmethod
    def create_sqlalchemy_uow(database_url: str) -> SQLAlchemyUnitOfWork:
        """Create SQLAlchemy Unit of Work"""
        return SQLAlchemyUnitOfWork(RepositoryFactory.create_session_factory(database_url))

    @staticmethod
    def create_in_memory_uow(database: Optional[InMemoryDatabase] = None) -> InMemoryUnitOfWork:
        """Create in-memory Unit of Work for tests and local runs"""
        return InMemoryUnitOfWork(database)
