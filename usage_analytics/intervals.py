from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterator, Mapping, Tuple

from usage_analytics.errors import CompilationError, ValidationError

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

UNITS = ("minute", "hour", "day", "month")

_FIXED_WIDTH_MS = {"minute": MINUTE_MS, "hour": HOUR_MS, "day": DAY_MS}

@dataclass(frozen=True)
class Interval:
    unit: str
    multiple: int

    def __post_init__(self) -> None:
        if self.unit not in UNITS:
            raise CompilationError(f"unknown interval unit {self.unit!r}")
        if self.multiple < 1:
            raise CompilationError(f"interval multiple must be >= 1, got {self.multiple}")

    @property
    def width_ms(self) -> int:
        """Fixed bucket width; months have none."""
        if self.unit == "month":
            raise ValueError("month buckets have no fixed width")
        return _FIXED_WIDTH_MS[self.unit] * self.multiple

    @property
    def sql(self) -> str:
        return f"INTERVAL '{self.multiple} {self.unit}'"

GRANULARITIES: Mapping[str, Interval] = MappingProxyType({
    "minute": Interval("minute", 1),
    "fiveMinutes": Interval("minute", 5),
    "fifteenMinutes": Interval("minute", 15),
    "thirtyMinutes": Interval("minute", 30),
    "hour": Interval("hour", 1),
    "twoHours": Interval("hour", 2),
    "fourHours": Interval("hour", 4),
    "sixHours": Interval("hour", 6),
    "twelveHours": Interval("hour", 12),
    "day": Interval("day", 1),
    "threeDays": Interval("day", 3),
    "week": Interval("day", 7),
    "twoWeeks": Interval("day", 14),
    "month": Interval("month", 1),
    "quarter": Interval("month", 3),
})

def _month_index(ms: int) -> int:
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return (dt.year - 1970) * 12 + (dt.month - 1)

def _month_start_ms(index: int) -> int:
    year, month0 = divmod(index, 12)
    dt = datetime(1970 + year, month0 + 1, 1, tzinfo=timezone.utc)
    return int(dt.timestamp()) * 1000

def bucket_start(ms: int, interval: Interval) -> int:
    """Floor `ms` to the epoch-aligned start of its bucket (months count from 1970-01)."""
    if interval.unit == "month":
        idx = _month_index(ms)
        return _month_start_ms((idx // interval.multiple) * interval.multiple)
    width = interval.width_ms
    return (ms // width) * width

def next_bucket(start_ms: int, interval: Interval) -> int:
    if interval.unit == "month":
        return _month_start_ms(_month_index(start_ms) + interval.multiple)
    return start_ms + interval.width_ms

def iter_buckets(start_ms: int, end_ms: int, interval: Interval) -> Iterator[int]:
    """Every bucket start b with bucket_start(start) <= b < end."""
    if start_ms >= end_ms:
        return
    b = bucket_start(start_ms, interval)
    while b < end_ms:
        yield b
        b = next_bucket(b, interval)

def count_buckets(start_ms: int, end_ms: int, interval: Interval, limit: int | None = None) -> int:
    """Number of buckets in [start, end); stops counting once `limit` is exceeded."""
    if start_ms >= end_ms:
        return 0
    if interval.unit != "month":
        b = bucket_start(start_ms, interval)
        if end_ms <= b:
            return 0
        return -(-(end_ms - b) // interval.width_ms)
    n = 0
    for _ in iter_buckets(start_ms, end_ms, interval):
        n += 1
        if limit is not None and n > limit:
            break
    return n

@dataclass(frozen=True)
class IntervalEntry:
    granularity: str
    table: str
    interval: Interval

class IntervalCatalog:
    """Granularity name -> rollup table + bucket interval, for one dataset."""

    def __init__(self, rollups: Mapping[str, str]):
        missing = [u for u in UNITS if u not in rollups]
        if missing:
            raise CompilationError(f"no rollup table for unit(s) {missing}")
        self._entries: Mapping[str, IntervalEntry] = MappingProxyType({
            name: IntervalEntry(granularity=name, table=rollups[iv.unit], interval=iv)
            for name, iv in GRANULARITIES.items()
        })

    @classmethod
    def for_dataset(cls, rollups: Mapping[str, str]) -> "IntervalCatalog":
        return cls(rollups)

    def __contains__(self, granularity: object) -> bool:
        return granularity in self._entries

    def __iter__(self):
        return iter(self._entries)

    def lookup(self, granularity: str) -> IntervalEntry:
        entry = self._entries.get(granularity)
        if entry is None:
            raise ValidationError(
                f"unknown granularity {granularity!r} (expected one of {sorted(self._entries)})",
                fields=["granularity"],
            )
        return entry

    def items(self) -> Tuple[Tuple[str, IntervalEntry], ...]:
        return tuple(self._entries.items())
