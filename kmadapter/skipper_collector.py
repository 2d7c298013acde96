"""Collector for requests-per-second of Skipper ingresses and route groups."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Mapping, Optional, Sequence

from kmadapter.model import (
    CollectedMetric,
    Collector,
    CollectorError,
    CollectorPlugin,
    HorizontalPodAutoscaler,
    MetricConfig,
    target_ref_replicas,
)

RPS_QUERY = (
    'scalar(sum(rate(skipper_serve_host_duration_seconds_count{host=~"%s"}[1m])) * %.4f)'
)
RPS_METRIC_NAME = "requests-per-second"
RPS_METRIC_BACKEND_SEPARATOR = ","

_REGEX_SPECIAL = frozenset("\\.+*?()|[]{}^$")


class BackendNameMissingError(CollectorError):
    """Raised when traffic switching is used but no backend name is given."""

    def __init__(self) -> None:
        super().__init__(
            "backend name must be specified for requests-per-second "
            "when traffic switching is used"
        )


@dataclass
class RouteGroupBackend:
    """A default backend of a route group and its traffic weight in percent."""

    backend_name: str
    weight: float = 0


def _quote_meta(text: str) -> str:
    """Escape the regular expression metacharacters in ``text``."""
    return "".join("\\" + char if char in _REGEX_SPECIAL else char for char in text)


def _escape_host(host: str) -> str:
    return _quote_meta(host.replace(".", "_"))


def get_annotation_weight(backend_weights: str, backend: str) -> float:
    """Return the weight of ``backend`` in a JSON weights annotation, as a fraction.

    Raises :class:`CollectorError` if the annotation is not a JSON object of numbers.
    """
    try:
        weights = json.loads(backend_weights)
    except ValueError as exc:
        raise CollectorError(f"invalid backend weights annotation: {exc}") from exc
    if not isinstance(weights, dict):
        raise CollectorError("invalid backend weights annotation: not an object")
    for name, weight in weights.items():
        if weight is not None and (
            isinstance(weight, bool) or not isinstance(weight, (int, float))
        ):
            raise CollectorError(
                f"invalid backend weights annotation: weight of {name!r} is not a number"
            )
    weight = weights.get(backend)
    if backend in weights:
        return float(weight or 0) / 100
    return 0.0


def get_ingress_weight(
    ingress_annotations: Mapping[str, str],
    backend_annotations: Sequence[str],
    backend: str,
) -> float:
    """Return the highest weight of ``backend`` over the given annotations.

    Ingresses without any of the annotations get all of the traffic.
    """
    max_weight = 0.0
    annotations_present = False
    for annotation in backend_annotations:
        if annotation in ingress_annotations:
            annotations_present = True
            weight = get_annotation_weight(ingress_annotations[annotation], backend)
            max_weight = max(max_weight, weight)

    if not annotations_present:
        return 1.0
    if backend:
        return max_weight
    raise BackendNameMissingError()


def get_route_group_weight(
    backends: Sequence[RouteGroupBackend], backend_name: str
) -> float:
    """Return the share of traffic the route group sends to ``backend_name``."""
    if len(backends) <= 1:
        return 1.0
    if not backend_name:
        raise BackendNameMissingError()
    for backend in backends:
        if backend.backend_name == backend_name:
            return float(backend.weight) / 100.0
    return 0.0


class SkipperCollectorPlugin(CollectorPlugin):
    """Creates collectors for Skipper requests-per-second metrics.

    ``client`` provides ``get_ingress(namespace, name)``, ``rg_client``
    provides ``get_route_group(namespace, name)``; both return manifest
    dictionaries. ``plugin`` creates the Prometheus collectors used to run
    the queries.
    """

    def __init__(
        self,
        client: Any,
        rg_client: Any,
        prometheus_plugin: CollectorPlugin,
        backend_annotations: Sequence[str],
    ) -> None:
        self.client = client
        self.rg_client = rg_client
        self.plugin = prometheus_plugin
        self.backend_annotations = list(backend_annotations)

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> SkipperCollector:
        name = config.metric.name
        if not name.startswith(RPS_METRIC_NAME):
            raise CollectorError(f"metric '{name}' not supported")

        backend = config.config.get("backend")
        if backend is None:
            backend = ""
            # Deprecated: the backend given as suffix of the metric name.
            if len(name) > len(RPS_METRIC_NAME):
                parts = name.split(RPS_METRIC_BACKEND_SEPARATOR)
                if len(parts) == 2:
                    backend = parts[1]
        return SkipperCollector(
            self.client,
            self.rg_client,
            self.plugin,
            hpa,
            config,
            interval,
            self.backend_annotations,
            backend,
        )


class SkipperCollector(Collector):
    """Collects requests per second of a Skipper ingress or route group."""

    def __init__(
        self,
        client: Any,
        rg_client: Any,
        plugin: CollectorPlugin,
        hpa: HorizontalPodAutoscaler,
        config: MetricConfig,
        interval: timedelta,
        backend_annotations: Sequence[str],
        backend: str,
    ) -> None:
        self.client = client
        self.rg_client = rg_client
        self.plugin = plugin
        self.hpa = hpa
        self.config = config
        self.metric = config.metric
        self.object_reference = config.object_reference
        self.interval = interval
        self.backend_annotations = list(backend_annotations)
        self.backend = backend

    def _hosts_and_weight(self) -> tuple[list[str], float]:
        ref = self.object_reference
        if ref.kind == "Ingress":
            ingress = self.client.get_ingress(ref.namespace, ref.name)
            annotations = (ingress.get("metadata") or {}).get("annotations") or {}
            weight = get_ingress_weight(annotations, self.backend_annotations, self.backend)
            rules = (ingress.get("spec") or {}).get("rules") or []
            hosts = [_escape_host(rule.get("host") or "") for rule in rules]
        elif ref.kind == "RouteGroup":
            route_group = self.rg_client.get_route_group(ref.namespace, ref.name)
            spec = route_group.get("spec") or {}
            backends = [
                RouteGroupBackend(
                    backend_name=item.get("backendName", ""), weight=item.get("weight", 0) or 0
                )
                for item in spec.get("defaultBackends") or []
            ]
            weight = get_route_group_weight(backends, self.backend)
            hosts = [_escape_host(host) for host in spec.get("hosts") or []]
        else:
            raise CollectorError(
                f"unknown skipper resource kind {ref.kind} for resource "
                f"{ref.namespace}/{ref.name}"
            )
        return hosts, weight

    def _collector(self) -> Collector:
        hosts, weight = self._hosts_and_weight()
        ref = self.object_reference
        if not hosts:
            raise CollectorError(
                f"no hosts defined on {ref.kind} {ref.namespace}/{ref.name}, "
                "unable to create collector"
            )
        config = replace(
            self.config,
            config={"query": RPS_QUERY % ("|".join(hosts), weight)},
            # Averaging per replica happens here, not in the query collector.
            per_replica=False,
        )
        return self.plugin.new_collector(self.hpa, config, self.interval)

    def get_metrics(self) -> list[CollectedMetric]:
        values = self._collector().get_metrics()
        if len(values) != 1:
            raise CollectorError(
                f"expected to only get one metric value, got {len(values)}"
            )
        value = values[0]

        if self.config.target_average_value is None:
            replicas = target_ref_replicas(self.client, self.hpa)
            if replicas < 1:
                raise CollectorError(
                    f"unable to get average value for {replicas} replicas"
                )
            custom = value.custom
            if custom is None:
                raise CollectorError("expected a custom metric value")
            average: Optional[float] = custom.milli_value / replicas
            value = replace(
                value, custom=replace(custom, milli_value=int(average))
            )
        return [value]