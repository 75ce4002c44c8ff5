"""
Additive on-time counters and the statistics derived from them.

Aggregates are merged by summing counts and concatenating delay lists.
Percentages and delay statistics are derived only after merging, so a
multi-day result weights every trip equally instead of every day.
"""

import math
from dataclasses import dataclass, field


@dataclass
class Aggregate:
    total_scheduled: int = 0
    evaluated_trips: int = 0
    on_time_trips: int = 0
    canceled_trips: int = 0
    delays: list[float] = field(default_factory=list)  # absolute minutes

    def update(self, on_time: bool | None, canceled: bool, delay_minutes: float | None) -> None:
        """Count one scheduled trip.

        on_time is None when the trip is excluded from evaluation (no
        observation, or canceled and canceled trips are not evaluated).
        """
        self.total_scheduled += 1
        if canceled:
            self.canceled_trips += 1
        if on_time is not None:
            self.evaluated_trips += 1
            if on_time:
                self.on_time_trips += 1
        if delay_minutes is not None:
            self.delays.append(abs(delay_minutes))

    def merge(self, other: "Aggregate") -> "Aggregate":
        self.total_scheduled += other.total_scheduled
        self.evaluated_trips += other.evaluated_trips
        self.on_time_trips += other.on_time_trips
        self.canceled_trips += other.canceled_trips
        self.delays.extend(other.delays)
        return self

    @property
    def on_time_pct(self) -> float | None:
        if self.evaluated_trips == 0:
            return None
        return self.on_time_trips / self.evaluated_trips * 100

    def with_stats(self) -> dict:
        """Counts plus on-time percentage and absolute-delay distribution."""
        result = {
            "total_scheduled": self.total_scheduled,
            "evaluated_trips": self.evaluated_trips,
            "on_time_trips": self.on_time_trips,
            "canceled_trips": self.canceled_trips,
            "on_time_pct": self.on_time_pct,
            "avg_delay_min": None,
            "median_delay_min": None,
            "p90_delay_min": None,
            "max_delay_min": None,
        }
        if not self.delays:
            return result

        values = sorted(self.delays)
        n = len(values)
        mid = n // 2
        median = (values[mid - 1] + values[mid]) / 2 if n % 2 == 0 else values[mid]
        p90_index = max(0, math.ceil(n * 0.9) - 1)
        result.update(
            avg_delay_min=sum(values) / n,
            median_delay_min=median,
            p90_delay_min=values[p90_index],
            max_delay_min=values[-1],
        )
        return result

    def to_dict(self) -> dict:
        return {
            "total_scheduled": self.total_scheduled,
            "evaluated_trips": self.evaluated_trips,
            "on_time_trips": self.on_time_trips,
            "canceled_trips": self.canceled_trips,
            "delays": list(self.delays),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Aggregate":
        return cls(
            total_scheduled=data.get("total_scheduled", 0),
            evaluated_trips=data.get("evaluated_trips", 0),
            on_time_trips=data.get("on_time_trips", 0),
            canceled_trips=data.get("canceled_trips", 0),
            delays=[float(d) for d in data.get("delays", [])],
        )


def merge_maps(target: dict[str, Aggregate], source: dict[str, Aggregate]) -> None:
    for key, agg in source.items():
        target.setdefault(key, Aggregate()).merge(agg)


@dataclass
class DayAggregates:
    """Unfiltered aggregates for one service day; the cached payload."""
    overall: Aggregate = field(default_factory=Aggregate)
    routes: dict[str, Aggregate] = field(default_factory=dict)   # "route:direction"
    buckets: dict[str, Aggregate] = field(default_factory=dict)  # time-of-day label

    def merge(self, other: "DayAggregates") -> "DayAggregates":
        self.overall.merge(other.overall)
        merge_maps(self.routes, other.routes)
        merge_maps(self.buckets, other.buckets)
        return self

    def to_payload(self) -> dict:
        return {
            "overall": self.overall.to_dict(),
            "routes": {k: v.to_dict() for k, v in self.routes.items()},
            "buckets": {k: v.to_dict() for k, v in self.buckets.items()},
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "DayAggregates":
        return cls(
            overall=Aggregate.from_dict(payload.get("overall", {})),
            routes={k: Aggregate.from_dict(v) for k, v in payload.get("routes", {}).items()},
            buckets={k: Aggregate.from_dict(v) for k, v in payload.get("buckets", {}).items()},
        )


def route_key(route_id: str, direction_id: int | None) -> str:
    return f"{route_id}:{direction_id if direction_id is not None else ''}"


def split_route_key(key: str) -> tuple[str, int | None]:
    route_id, _, direction = key.rpartition(":")
    return route_id, int(direction) if direction else None


def route_sort_key(route_id: str) -> tuple:
    """Numeric route ids in numeric order, then the rest alphabetically."""
    try:
        return (0, int(route_id), "")
    except ValueError:
        return (1, 0, route_id)
