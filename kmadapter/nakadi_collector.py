"""Collector for Nakadi subscription metrics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from kmadapter.model import (
    CollectedMetric,
    Collector,
    CollectorError,
    CollectorPlugin,
    ExternalMetricValue,
    HorizontalPodAutoscaler,
    MetricConfig,
)

NAKADI_METRIC_TYPE = "nakadi"
_SUBSCRIPTION_ID_KEY = "subscription-id"
_METRIC_TYPE_KEY = "metric-type"
_CONSUMER_LAG_SECONDS = "consumer-lag-seconds"
_UNCONSUMED_EVENTS = "unconsumed-events"


@dataclass
class NakadiCollectorPlugin(CollectorPlugin):
    """Creates collectors reading unconsumed events or consumer lag from Nakadi.

    ``nakadi`` provides ``consumer_lag_seconds(subscription_id)`` and
    ``unconsumed_events(subscription_id)``.
    """

    nakadi: Any

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> NakadiCollector:
        return NakadiCollector(self.nakadi, hpa, config, interval)


class NakadiCollector(Collector):
    """Collects one metric of a Nakadi subscription."""

    def __init__(
        self,
        nakadi: Any,
        hpa: HorizontalPodAutoscaler,
        config: MetricConfig,
        interval: timedelta,
    ) -> None:
        if config.metric.selector is None:
            raise CollectorError("selector for nakadi is not specified")

        try:
            subscription_id = config.config[_SUBSCRIPTION_ID_KEY]
        except KeyError:
            raise CollectorError("subscription-id not specified on metric") from None

        try:
            metric_type = config.config[_METRIC_TYPE_KEY]
        except KeyError:
            raise CollectorError("metric-type not specified on metric") from None

        if metric_type not in (_CONSUMER_LAG_SECONDS, _UNCONSUMED_EVENTS):
            raise CollectorError(
                f"metric-type must be either '{_CONSUMER_LAG_SECONDS}' or "
                f"'{_UNCONSUMED_EVENTS}', was '{metric_type}'"
            )

        self.nakadi = nakadi
        self.interval = interval
        self.subscription_id = subscription_id
        self.nakadi_metric_type = metric_type
        self.metric = config.metric
        self.metric_type = config.type
        self.namespace = hpa.namespace

    def get_metrics(self) -> list[CollectedMetric]:
        if self.nakadi_metric_type == _CONSUMER_LAG_SECONDS:
            value = self.nakadi.consumer_lag_seconds(self.subscription_id)
        else:
            value = self.nakadi.unconsumed_events(self.subscription_id)

        return [
            CollectedMetric(
                type=self.metric_type,
                namespace=self.namespace,
                external=ExternalMetricValue(
                    metric_name=self.metric.name,
                    metric_labels=dict(self.metric.selector or {}),
                    timestamp=datetime.now(timezone.utc),
                    milli_value=int(value) * 1000,
                ),
            )
        ]