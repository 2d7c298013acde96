"""Collector that reads metrics directly from the pods of a workload."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from kmadapter.model import (
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

logger = logging.getLogger(__name__)

_MAX_WORKERS = 32


@dataclass
class PodCondition:
    """A condition in a pod's status."""

    type: str
    status: str
    last_transition_time: datetime


@dataclass
class Pod:
    """The parts of a pod the collector needs."""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    pod_ip: str = ""
    conditions: Optional[list[PodCondition]] = None
    deletion_timestamp: Optional[datetime] = None


def get_pod_ready_age(pod: Pod, now: Optional[datetime] = None) -> tuple[bool, timedelta]:
    """Return whether ``pod`` is ready and for how long it has been ready."""
    if now is None:
        now = datetime.now(timezone.utc)
    for condition in pod.conditions or ():
        if condition.type == "Ready" and condition.status == "True":
            return True, now - condition.last_transition_time
    return False, timedelta(0)


def get_pod_label_selector(
    client: Any, rollouts_client: Any, hpa: HorizontalPodAutoscaler
) -> dict[str, str]:
    """Return the match labels selecting the pods of the HPA's scale target.

    Deployments and StatefulSets are read through ``client``, Argo Rollouts
    through ``rollouts_client.get_rollout(namespace, name)``.
    """
    ref = hpa.scale_target_ref
    if ref.kind == "Deployment":
        workload = client.get_deployment(hpa.namespace, ref.name)
    elif ref.kind == "StatefulSet":
        workload = client.get_stateful_set(hpa.namespace, ref.name)
    elif ref.kind == "Rollout":
        workload = rollouts_client.get_rollout(hpa.namespace, ref.name)
    else:
        raise CollectorError(
            f"unable to get pod label selector for scale target ref '{ref.kind}'"
        )
    selector = (workload.get("spec") or {}).get("selector") or {}
    return dict(selector.get("matchLabels") or {})


GetterFactory = Callable[[dict[str, str]], Any]


@dataclass
class PodCollectorPlugin(CollectorPlugin):
    """Creates pod collectors.

    ``getter_factories`` maps a collector type such as ``json-path`` to a
    callable that takes the metric options and returns an object with a
    ``get_metric(pod)`` method.
    """

    client: Any
    rollouts_client: Any
    getter_factories: Mapping[str, GetterFactory] = field(default_factory=dict)

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> PodCollector:
        return PodCollector(
            self.client, self.rollouts_client, hpa, config, interval, self.getter_factories
        )


class PodCollector(Collector):
    """Collects a metric from each ready pod of the HPA's scale target."""

    def __init__(
        self,
        client: Any,
        rollouts_client: Any,
        hpa: HorizontalPodAutoscaler,
        config: MetricConfig,
        interval: timedelta,
        getter_factories: Mapping[str, GetterFactory],
    ) -> None:
        try:
            selector = get_pod_label_selector(client, rollouts_client, hpa)
        except Exception as exc:
            raise CollectorError(f"failed to get pod label selector: {exc}") from exc

        self.client = client
        self.namespace = hpa.namespace
        self.metric = config.metric
        self.metric_type = config.type
        self.min_pod_ready_age = config.min_pod_ready_age
        self.interval = interval
        self.pod_label_selector = selector

        factory = getter_factories.get(config.collector_type)
        if factory is None:
            raise CollectorError(f"format '{config.collector_type}' not supported")
        self.getter = factory(config.config)

    def _eligible(self, pod: Pod, now: datetime) -> bool:
        ready, age = get_pod_ready_age(pod, now)
        if not ready:
            logger.debug(
                "Skipping metrics collection for pod %s/%s because it's status is not Ready.",
                pod.namespace,
                pod.name,
            )
            return False
        if pod.deletion_timestamp is not None:
            logger.debug(
                "Skipping metrics collection for pod %s/%s because it is being "
                "terminated (DeletionTimestamp: %s)",
                pod.namespace,
                pod.name,
                pod.deletion_timestamp,
            )
            return False
        if age < self.min_pod_ready_age:
            logger.warning(
                "Skipping metrics collection for pod %s/%s because it's ready age "
                "is %s and min-pod-ready-age is set to %s",
                pod.namespace,
                pod.name,
                age,
                self.min_pod_ready_age,
            )
            return False
        return True

    def get_metrics(self) -> list[CollectedMetric]:
        pods = self.client.list_pods(self.namespace, self.pod_label_selector)
        now = datetime.now(timezone.utc)
        eligible = [pod for pod in pods if self._eligible(pod, now)]
        if not eligible:
            return []

        with ThreadPoolExecutor(max_workers=min(_MAX_WORKERS, len(eligible))) as pool:
            results = list(pool.map(self._pod_metric, eligible))
        return [metric for metric in results if metric is not None]

    def _pod_metric(self, pod: Pod) -> Optional[CollectedMetric]:
        try:
            value = self.getter.get_metric(pod)
        except Exception as exc:
            logger.error(
                "Failed to get metrics from pod '%s/%s': %s", pod.namespace, pod.name, exc
            )
            return None
        return CollectedMetric(
            type=self.metric_type,
            namespace=self.namespace,
            custom=CustomMetricValue(
                described_object=ObjectReference(
                    kind="Pod", name=pod.name, namespace=pod.namespace, api_version="v1"
                ),
                metric=MetricIdentifier(
                    name=self.metric.name, selector=self.pod_label_selector
                ),
                timestamp=datetime.now(timezone.utc),
                milli_value=int(value * 1000),
            ),
        )