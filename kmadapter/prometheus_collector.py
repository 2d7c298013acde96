"""Collector for metrics computed by Prometheus queries."""

from __future__ import annotations

import json
import math
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from kmadapter.model import (
    EXTERNAL_METRIC_SOURCE,
    OBJECT_METRIC_SOURCE,
    CollectedMetric,
    Collector,
    CollectorError,
    CollectorPlugin,
    CustomMetricValue,
    ExternalMetricValue,
    HorizontalPodAutoscaler,
    MetricConfig,
    MetricIdentifier,
    ObjectReference,
    target_ref_replicas,
)

PROMETHEUS_METRIC_TYPE = "prometheus"
PROMETHEUS_METRIC_NAME_LEGACY = "prometheus-query"
PROMETHEUS_QUERY_NAME_LABEL_KEY = "query-name"
PROMETHEUS_SERVER_ANNOTATION_KEY = "prometheus-server"


class NoResultError(CollectorError):
    """Raised when a query returns no usable value."""

    def __init__(self, query: str) -> None:
        super().__init__(f"query '{query}' did not result a valid response")
        self.query = query


def _format_time(timestamp: datetime) -> str:
    return repr(timestamp.timestamp())


class PrometheusAPI:
    """Minimal client for the Prometheus instant query endpoint."""

    def __init__(self, address: str, timeout: float = 30.0) -> None:
        self.address = address
        self.timeout = timeout

    @property
    def _query_url(self) -> str:
        return self.address.rstrip("/") + "/api/v1/query"

    def query(self, query: str, timestamp: datetime) -> dict[str, Any]:
        """Run an instant query and return the ``data`` part of the response.

        The result is a dictionary with ``resultType`` and ``result`` keys.
        Raises :class:`CollectorError` when the request or the query fails.
        """
        body = urlencode({"query": query, "time": _format_time(timestamp)}).encode()
        request = urllib.request.Request(
            self._query_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            payload = exc.read()
            try:
                document = json.loads(payload)
            except ValueError:
                raise CollectorError(
                    f"prometheus query failed with HTTP status {exc.code}"
                ) from exc
            raise CollectorError(_error_message(document, exc.code)) from exc
        except urllib.error.URLError as exc:
            raise CollectorError(f"prometheus request failed: {exc.reason}") from exc

        try:
            document = json.loads(payload)
        except ValueError as exc:
            raise CollectorError("invalid response from prometheus") from exc
        if document.get("status") != "success":
            raise CollectorError(_error_message(document, None))
        return document.get("data") or {}


def _error_message(document: Any, status: int | None) -> str:
    if isinstance(document, dict) and "error" in document:
        kind = document.get("errorType", "error")
        return f"{kind}: {document['error']}"
    return f"prometheus query failed with HTTP status {status}"


def _sample_value(data: dict[str, Any], query: str) -> float:
    result_type = data.get("resultType")
    result = data.get("result")
    if result_type == "vector":
        if not result:
            raise NoResultError(query)
        return float(result[0]["value"][1])
    if result_type == "scalar":
        return float(result[1])
    return 0.0


class PrometheusCollectorPlugin(CollectorPlugin):
    """Creates collectors that query a Prometheus server."""

    def __init__(self, client: Any, prometheus_server: str) -> None:
        self.client = client
        self.prom_api = PrometheusAPI(prometheus_server)

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> PrometheusCollector:
        return PrometheusCollector(self.client, self.prom_api, hpa, config, interval)


class PrometheusCollector(Collector):
    """Collects the value of one Prometheus query."""

    def __init__(
        self,
        client: Any,
        prom_api: Any,
        hpa: HorizontalPodAutoscaler,
        config: MetricConfig,
        interval: timedelta,
    ) -> None:
        self.client = client
        self.prom_api = prom_api
        self.interval = interval
        self.hpa = hpa
        self.metric = config.metric
        self.metric_type = config.type
        self.object_reference = ObjectReference()
        self.per_replica = False
        self.query = ""

        if config.type == OBJECT_METRIC_SOURCE:
            self.object_reference = config.object_reference
            self.per_replica = config.per_replica
            if "query" not in config.config:
                raise CollectorError("no prometheus query defined")
            self.query = config.config["query"]
        elif config.type == EXTERNAL_METRIC_SOURCE:
            if config.metric.selector is None:
                raise CollectorError("selector for prometheus query is not specified")
            self.query = self._external_query(config.config)
            server = config.config.get(PROMETHEUS_SERVER_ANNOTATION_KEY)
            if server is not None:
                self.prom_api = PrometheusAPI(server)

    @staticmethod
    def _external_query(options: dict[str, str]) -> str:
        if "query" in options:
            return options["query"]
        # Legacy configuration maps a query name to the query.
        try:
            query_name = options[PROMETHEUS_QUERY_NAME_LABEL_KEY]
        except KeyError:
            raise CollectorError("query or query name not specified on metric") from None
        try:
            return options[query_name]
        except KeyError:
            raise CollectorError("no prometheus query defined for metric") from None

    def get_metrics(self) -> list[CollectedMetric]:
        data = self.prom_api.query(self.query, datetime.now(timezone.utc))
        sample = _sample_value(data, self.query)
        if math.isnan(sample):
            raise NoResultError(self.query)

        if self.per_replica:
            replicas = target_ref_replicas(self.client, self.hpa)
            if replicas == 0:
                raise CollectorError("unable to get average value for 0 replicas")
            sample = sample / replicas

        now = datetime.now(timezone.utc)
        milli = int(sample * 1000)
        if self.metric_type == OBJECT_METRIC_SOURCE:
            metric = CollectedMetric(
                type=self.metric_type,
                namespace=self.hpa.namespace,
                custom=CustomMetricValue(
                    described_object=self.object_reference,
                    metric=MetricIdentifier(self.metric.name, self.metric.selector),
                    timestamp=now,
                    milli_value=milli,
                ),
            )
        elif self.metric_type == EXTERNAL_METRIC_SOURCE:
            metric = CollectedMetric(
                type=self.metric_type,
                namespace=self.hpa.namespace,
                external=ExternalMetricValue(
                    metric_name=self.metric.name,
                    metric_labels=dict(self.metric.selector or {}),
                    timestamp=now,
                    milli_value=milli,
                ),
            )
        else:
            metric = CollectedMetric()
        return [metric]