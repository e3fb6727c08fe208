"""
Counters for the status poller and the allocation engine.

Each service receives its metrics object from the worker supervisor, so
several service instances (tests, workers) never share hidden global state.
"""

import threading
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Dict, Optional

from utils.datetime_helpers import get_naive_utc_now, to_iso


@dataclass
class MonitoringMetrics:
    """Status poller counters"""
    total_monitored: int = 0
    successful_updates: int = 0
    failed_updates: int = 0
    skipped_payments: int = 0
    regressions_ignored: int = 0
    credits_allocated: int = 0
    allocation_failures: int = 0
    cycles_completed: int = 0
    cycle_errors: int = 0
    active_monitoring: int = 0
    last_cycle_at: Optional[str] = None
    last_cycle_duration_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, by: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + by)

    def record_cycle(self, duration_ms: float, active: int) -> None:
        with self._lock:
            self.cycles_completed += 1
            self.last_cycle_duration_ms = round(duration_ms, 2)
            self.active_monitoring = active
            self.last_cycle_at = to_iso(get_naive_utc_now())

    def set_active(self, active: int) -> None:
        with self._lock:
            self.active_monitoring = active

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = _public_values(self)
        return data

    def reset(self) -> None:
        with self._lock:
            for name, default in _defaults(MonitoringMetrics).items():
                setattr(self, name, default)


@dataclass
class AllocationMetrics:
    """Allocation engine counters"""
    total_allocations: int = 0
    total_credits_allocated: Decimal = Decimal("0")
    duplicates_prevented: int = 0
    failed_allocations: int = 0
    manual_allocations: int = 0
    average_processing_time_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, credit_amount: Decimal, processing_ms: float, manual: bool = False) -> None:
        with self._lock:
            count = self.total_allocations
            self.total_allocations += 1
            self.total_credits_allocated += credit_amount
            if manual:
                self.manual_allocations += 1
            # Running mean over successful allocations
            self.average_processing_time_ms = round(
                (self.average_processing_time_ms * count + processing_ms) / (count + 1), 2
            )

    def record_duplicate(self) -> None:
        with self._lock:
            self.duplicates_prevented += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failed_allocations += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = _public_values(self)
        data["total_credits_allocated"] = float(data["total_credits_allocated"])
        return data

    def reset(self) -> None:
        with self._lock:
            for name, default in _defaults(AllocationMetrics).items():
                setattr(self, name, default)


def _public_values(obj) -> Dict[str, Any]:
    return {f.name: getattr(obj, f.name) for f in fields(obj) if not f.name.startswith("_")}


def _defaults(cls) -> Dict[str, Any]:
    return {
        name: f.default
        for name, f in cls.__dataclass_fields__.items()
        if not name.startswith("_")
    }
