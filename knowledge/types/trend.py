"""Per-metric value history models."""

from __future__ import annotations

import bisect
import math
import statistics
from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from knowledge.timeutil import Timestamp, coerce_timestamp, utc_now

CRITICAL_FLAGS = ("critical", "HH", "LL")


def to_number(value: object) -> float | None:
    """Parse a numeric chart value, returning None for anything else."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def format_number(value: float) -> str:
    return f"{value:g}"


class TrendEntry(BaseModel):
    """Single timestamped observation of a metric."""

    timestamp: Timestamp
    value: float
    unit: str = ""
    flag: str | None = None
    context: str | None = None


class TrendSeries(BaseModel):
    """Ordered history of one metric, ascending by timestamp."""

    name: str
    reference_range: str | None = None
    values: list[TrendEntry] = Field(default_factory=list)
    trend: str = "insufficient data"
    baseline: float | None = None
    critical_events: list[TrendEntry] = Field(default_factory=list)

    @property
    def latest_value(self) -> TrendEntry | None:
        return self.values[-1] if self.values else None

    def has_entry(self, timestamp: datetime, value: float) -> bool:
        return any(e.timestamp == timestamp and e.value == value for e in self.values)

    def add_value(
        self,
        timestamp: object,
        value: object,
        unit: str | None = "",
        flag: str | None = None,
        context: str | None = None,
        critical_flags: Iterable[str] = CRITICAL_FLAGS,
    ) -> bool:
        """Insert keeping timestamp order; False for non-numeric or duplicate values."""
        number = to_number(value)
        when = coerce_timestamp(timestamp)
        if number is None or when is None:
            return False
        if self.has_entry(when, number):
            return False
        entry = TrendEntry(timestamp=when, value=number, unit=unit or "", flag=flag, context=context)
        keys = [e.timestamp for e in self.values]
        self.values.insert(bisect.bisect_right(keys, when), entry)
        if flag in tuple(critical_flags):
            self.critical_events.append(entry)
        self.compute_trend()
        return True

    def compute_trend(self) -> str:
        if len(self.values) < 2:
            self.trend = "insufficient data"
            return self.trend

        recent = [e.value for e in self.values[-5:]]
        first, last = recent[0], recent[-1]
        if first == 0:
            self.trend = "stable"
            return self.trend

        if len(recent) >= 3:
            mean = statistics.fmean(recent)
            if mean != 0:
                cv = statistics.pstdev(recent) / abs(mean) * 100
                if cv > 20:
                    self.trend = "fluctuating"
                    return self.trend

        change = (last - first) / abs(first) * 100
        if abs(change) < 5:
            self.trend = "stable"
        elif change > 20:
            self.trend = "rising significantly"
        elif change > 5:
            self.trend = "rising"
        elif change < -20:
            self.trend = "falling significantly"
        else:
            self.trend = "falling"
        return self.trend

    def compute_baseline(self, now: datetime | None = None) -> float | None:
        """Median of values older than 30 days."""
        cutoff = (now or utc_now()) - timedelta(days=30)
        older = [e.value for e in self.values if e.timestamp < cutoff]
        self.baseline = statistics.median(older) if older else None
        return self.baseline

    def values_between(self, start: datetime, end: datetime) -> list[TrendEntry]:
        return [e for e in self.values if start <= e.timestamp <= end]

    def summary(self) -> str:
        latest = self.latest_value
        if latest is None:
            return f"{self.name}: No data"
        flag = f" ({latest.flag})" if latest.flag else ""
        if self.trend.startswith("rising"):
            arrow = "↑"
        elif self.trend.startswith("falling"):
            arrow = "↓"
        elif self.trend == "fluctuating":
            arrow = "↕"
        else:
            arrow = "→"
        return f"{self.name}: {format_number(latest.value)}{latest.unit}{flag} {arrow}"
