"""Collectors for time based scaling metrics from (Cluster)ScalingSchedules."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from kmadapter.model import (
    OBJECT_METRIC_SOURCE,
    CollectedMetric,
    Collector,
    CollectorError,
    CollectorPlugin,
    CustomMetricValue,
    HorizontalPodAutoscaler,
    MetricConfig,
    MetricIdentifier,
    ObjectReference,
)

ONE_TIME_SCHEDULE = "OneTime"
REPEATING_SCHEDULE = "Repeating"

Now = Callable[[], datetime]
# Resolves a schedule into its (start, end) moments relative to ``now``.
Resolver = Callable[[datetime, "Schedule", str], "tuple[datetime, datetime]"]


class ScalingScheduleNotFoundError(CollectorError):
    """The ScalingSchedule referenced by the HPA is not in the store."""

    def __init__(self) -> None:
        super().__init__("referenced ScalingSchedule not found")


class NotScalingScheduleError(CollectorError):
    """The store returned something that is not a ScalingSchedule."""

    def __init__(self) -> None:
        super().__init__("error converting returned object to ScalingSchedule")


class ClusterScalingScheduleNotFoundError(CollectorError):
    """The ClusterScalingSchedule referenced by the HPA is not in the store."""

    def __init__(self) -> None:
        super().__init__("referenced ClusterScalingSchedule not found")


class NotClusterScalingScheduleError(CollectorError):
    """The store returned something that is not a (Cluster)ScalingSchedule."""

    def __init__(self) -> None:
        super().__init__("error converting returned object to ClusterScalingSchedule")


@dataclass
class Schedule:
    """One entry of a scaling schedule."""

    type: str
    value: int
    duration_minutes: int = 0
    date: Optional[str] = None
    end_date: Optional[str] = None
    period: Optional[Any] = None


@dataclass
class ScalingScheduleSpec:
    """The schedules and the ramp window of a scaling schedule."""

    schedules: list[Schedule] = field(default_factory=list)
    scaling_window_duration_minutes: Optional[int] = None


@dataclass
class ScalingSchedule:
    """A namespaced scaling schedule."""

    name: str
    namespace: str = ""
    spec: ScalingScheduleSpec = field(default_factory=ScalingScheduleSpec)


@dataclass
class ClusterScalingSchedule:
    """A cluster wide scaling schedule."""

    name: str
    namespace: str = ""
    spec: ScalingScheduleSpec = field(default_factory=ScalingScheduleSpec)


def _between(timestamp: datetime, start: datetime, end: datetime) -> bool:
    return start <= timestamp < end


def scaled_value(
    timestamp: datetime,
    start_time: datetime,
    scaling_window: timedelta,
    ramp_steps: int,
    value: int,
) -> int:
    """Return ``value`` scaled by the elapsed share of the window, in ramp steps.

    The HPA ignores changes under 10% by default, so the share is floored to
    one of ``ramp_steps`` buckets.
    """
    if scaling_window == timedelta(0):
        return 0
    steps = float(ramp_steps)
    share = abs(timestamp - start_time) / scaling_window
    return int(math.floor(share * steps) * (value / steps))


def value_for_entry(
    timestamp: datetime,
    start_time: datetime,
    end_time: datetime,
    scaling_window: timedelta,
    ramp_steps: int,
    value: int,
) -> int:
    """Return the metric value of one schedule at ``timestamp``."""
    scale_up_start = start_time - scaling_window
    scale_down_end = end_time + scaling_window

    if _between(timestamp, start_time, end_time):
        return value
    if _between(timestamp, scale_up_start, start_time):
        return scaled_value(timestamp, scale_up_start, scaling_window, ramp_steps, value)
    if _between(timestamp, end_time, scale_down_end):
        return scaled_value(scale_down_end, timestamp, scaling_window, ramp_steps, value)
    return 0


def calculate_metrics(
    spec: ScalingScheduleSpec,
    default_scaling_window: timedelta,
    default_time_zone: str,
    ramp_steps: int,
    now: datetime,
    object_reference: ObjectReference,
    metric: MetricIdentifier,
    resolver: Resolver,
) -> list[CollectedMetric]:
    """Return the highest value over all schedules of ``spec`` at ``now``."""
    window = default_scaling_window
    if spec.scaling_window_duration_minutes is not None:
        window = timedelta(minutes=spec.scaling_window_duration_minutes)
    if window < timedelta(0):
        raise CollectorError("scaling window duration cannot be negative")

    value = 0
    for schedule in spec.schedules:
        start, end = resolver(now, schedule, default_time_zone)
        value = max(
            value, value_for_entry(now, start, end, window, ramp_steps, schedule.value)
        )

    return [
        CollectedMetric(
            type=OBJECT_METRIC_SOURCE,
            namespace=object_reference.namespace,
            custom=CustomMetricValue(
                described_object=object_reference,
                metric=MetricIdentifier(metric.name, metric.selector),
                timestamp=now,
                milli_value=value * 1000,
            ),
        )
    ]


@dataclass
class _ScheduleCollectorBase(Collector):
    store: Any
    now: Now
    metric: MetricIdentifier
    object_reference: ObjectReference
    hpa: HorizontalPodAutoscaler
    interval: timedelta
    config: MetricConfig
    default_scaling_window: timedelta
    default_time_zone: str
    ramp_steps: int
    resolver: Resolver

    def _lookup(self, key: str, kind: str) -> tuple[Any, bool]:
        try:
            return self.store.get_by_key(key)
        except Exception as exc:
            raise CollectorError(
                f"unexpected error retrieving the {kind}: {exc}"
            ) from exc

    def _calculate(self, spec: ScalingScheduleSpec) -> list[CollectedMetric]:
        return calculate_metrics(
            spec,
            self.default_scaling_window,
            self.default_time_zone,
            self.ramp_steps,
            self.now(),
            self.object_reference,
            self.metric,
            self.resolver,
        )


class ScalingScheduleCollector(_ScheduleCollectorBase):
    """Collects the metric of a namespaced ScalingSchedule."""

    def get_metrics(self) -> list[CollectedMetric]:
        ref = self.object_reference
        item, exists = self._lookup(f"{ref.namespace}/{ref.name}", "ScalingSchedule")
        if not exists:
            raise ScalingScheduleNotFoundError()
        if not isinstance(item, ScalingSchedule):
            raise NotScalingScheduleError()
        return self._calculate(item.spec)


class ClusterScalingScheduleCollector(_ScheduleCollectorBase):
    """Collects the metric of a ClusterScalingSchedule."""

    def get_metrics(self) -> list[CollectedMetric]:
        item, exists = self._lookup(self.object_reference.name, "ClusterScalingSchedule")
        if not exists:
            raise ClusterScalingScheduleNotFoundError()
        # A freshly listed store may hand cluster schedules out as namespaced ones.
        if not isinstance(item, (ScalingSchedule, ClusterScalingSchedule)):
            raise NotClusterScalingScheduleError()
        return self._calculate(item.spec)


@dataclass
class _SchedulePluginBase(CollectorPlugin):
    store: Any
    now: Now
    default_scaling_window: timedelta
    default_time_zone: str
    ramp_steps: int
    resolver: Resolver

    def _options(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> dict[str, Any]:
        return {
            "store": self.store,
            "now": self.now,
            "metric": config.metric,
            "object_reference": config.object_reference,
            "hpa": hpa,
            "interval": interval,
            "config": config,
            "default_scaling_window": self.default_scaling_window,
            "default_time_zone": self.default_time_zone,
            "ramp_steps": self.ramp_steps,
            "resolver": self.resolver,
        }


class ScalingScheduleCollectorPlugin(_SchedulePluginBase):
    """Creates collectors for ScalingSchedule metrics.

    ``store`` provides ``get_by_key(key)`` returning ``(item, exists)``.
    """

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> ScalingScheduleCollector:
        return ScalingScheduleCollector(**self._options(hpa, config, interval))


class ClusterScalingScheduleCollectorPlugin(_SchedulePluginBase):
    """Creates collectors for ClusterScalingSchedule metrics.

    ``store`` provides ``get_by_key(key)`` returning ``(item, exists)``.
    """

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> ClusterScalingScheduleCollector:
        return ClusterScalingScheduleCollector(**self._options(hpa, config, interval))