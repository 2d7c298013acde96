"""Core data types shared by the metric collectors."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

OBJECT_METRIC_SOURCE = "Object"
PODS_METRIC_SOURCE = "Pods"
RESOURCE_METRIC_SOURCE = "Resource"
EXTERNAL_METRIC_SOURCE = "External"


class CollectorError(Exception):
    """Raised when a collector cannot be configured or cannot collect."""


def _milli_to_units(milli: int) -> int:
    """Convert a milli value to whole units, rounding away from zero."""
    whole, rest = divmod(abs(milli), 1000)
    units = whole + (1 if rest else 0)
    return units if milli >= 0 else -units


@dataclass
class MetricIdentifier:
    """Name of a metric and the labels selecting it (``None`` for no selector)."""

    name: str = ""
    selector: Optional[dict[str, str]] = None


@dataclass
class ObjectReference:
    """Reference to the Kubernetes object a custom metric describes."""

    kind: str = ""
    name: str = ""
    namespace: str = ""
    api_version: str = ""


@dataclass
class ScaleTargetRef:
    """The workload an HPA scales."""

    kind: str = ""
    name: str = ""
    api_version: str = ""


@dataclass
class HorizontalPodAutoscaler:
    """The parts of a HorizontalPodAutoscaler the collectors work with."""

    name: str = ""
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    scale_target_ref: ScaleTargetRef = field(default_factory=ScaleTargetRef)


@dataclass
class MetricConfig:
    """Configuration of one metric of an HPA.

    ``target_average_value`` is the averageValue target of an Object metric;
    ``None`` means only a plain value target is set.
    """

    metric: MetricIdentifier = field(default_factory=MetricIdentifier)
    type: str = ""
    collector_type: str = ""
    config: dict[str, str] = field(default_factory=dict)
    object_reference: ObjectReference = field(default_factory=ObjectReference)
    per_replica: bool = False
    min_pod_ready_age: timedelta = timedelta(0)
    target_average_value: Optional[float] = None


@dataclass
class CustomMetricValue:
    """A custom metric value attached to a described object."""

    described_object: ObjectReference
    metric: MetricIdentifier
    timestamp: datetime
    milli_value: int

    @property
    def value(self) -> int:
        """The value in whole units, rounded away from zero."""
        return _milli_to_units(self.milli_value)


@dataclass
class ExternalMetricValue:
    """An external metric value identified by name and labels."""

    metric_name: str
    metric_labels: dict[str, str]
    timestamp: datetime
    milli_value: int

    @property
    def value(self) -> int:
        """The value in whole units, rounded away from zero."""
        return _milli_to_units(self.milli_value)


@dataclass
class CollectedMetric:
    """One metric value produced by a collector."""

    type: str = ""
    namespace: str = ""
    custom: Optional[CustomMetricValue] = None
    external: Optional[ExternalMetricValue] = None


class Collector(abc.ABC):
    """Something that collects metrics every ``interval``."""

    interval: timedelta

    @abc.abstractmethod
    def get_metrics(self) -> list[CollectedMetric]:
        """Collect the current metric values."""


class CollectorPlugin(abc.ABC):
    """Factory that creates collectors for an HPA metric."""

    @abc.abstractmethod
    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> Collector:
        """Create a collector for ``config`` of ``hpa``."""


def target_ref_replicas(client: Any, hpa: HorizontalPodAutoscaler) -> int:
    """Return the current replica count of the workload targeted by ``hpa``.

    ``client`` provides ``get_deployment(namespace, name)`` and
    ``get_stateful_set(namespace, name)`` returning manifest dictionaries.
    Unknown target kinds yield zero.
    """
    ref = hpa.scale_target_ref
    if ref.kind == "Deployment":
        workload = client.get_deployment(hpa.namespace, ref.name)
    elif ref.kind == "StatefulSet":
        workload = client.get_stateful_set(hpa.namespace, ref.name)
    else:
        return 0
    status = workload.get("status") or {}
    return int(status.get("replicas", 0) or 0)