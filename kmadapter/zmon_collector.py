"""Collector for metrics of ZMON checks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
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

ZMON_METRIC_TYPE = "zmon"
ZMON_CHECK_METRIC_LEGACY = "zmon-check"
_CHECK_ID_KEY = "check-id"
_KEY_KEY = "key"
_DURATION_KEY = "duration"
_AGGREGATORS_KEY = "aggregators"
_TAG_PREFIX = "tag-"
DEFAULT_QUERY_DURATION = timedelta(minutes=10)

_UNIT_MICROSECONDS = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "\u00b5s": Decimal(1),
    "\u03bcs": Decimal(1),
    "ms": Decimal(1000),
    "s": Decimal(1_000_000),
    "m": Decimal(60_000_000),
    "h": Decimal(3_600_000_000),
}
_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")
_INTEGER = re.compile(r"[+-]?\d+")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``5m``, ``1h30m`` or ``-1.5h``.

    Raises ``ValueError`` for malformed input.
    """
    rest = text
    sign = 1
    if rest[:1] in ("+", "-"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        number, unit = match.groups()
        total += Decimal(number) * _UNIT_MICROSECONDS[unit]
        pos = match.end()
    return timedelta(microseconds=sign * int(total))


@dataclass
class DataPoint:
    """A single value of a ZMON check at a point in time."""

    time: datetime
    value: float


@dataclass
class ZMONCollectorPlugin(CollectorPlugin):
    """Creates collectors for ZMON checks.

    ``zmon`` provides ``query(check_id, key, tags, aggregators, duration)``
    returning a list of :class:`DataPoint`.
    """

    zmon: Any

    def new_collector(
        self, hpa: HorizontalPodAutoscaler, config: MetricConfig, interval: timedelta
    ) -> ZMONCollector:
        return ZMONCollector(self.zmon, hpa, config, interval)


class ZMONCollector(Collector):
    """Collects the latest value of a ZMON check."""

    def __init__(
        self,
        zmon: Any,
        hpa: HorizontalPodAutoscaler,
        config: MetricConfig,
        interval: timedelta,
    ) -> None:
        if config.metric.selector is None:
            raise CollectorError("selector for zmon-check is not specified")

        try:
            check_id_text = config.config[_CHECK_ID_KEY]
        except KeyError:
            raise CollectorError("ZMON check ID not specified on metric") from None
        if not _INTEGER.fullmatch(check_id_text):
            raise CollectorError(f"invalid ZMON check ID {check_id_text!r}")

        duration = DEFAULT_QUERY_DURATION
        if _DURATION_KEY in config.config:
            try:
                duration = parse_duration(config.config[_DURATION_KEY])
            except ValueError as exc:
                raise CollectorError(str(exc)) from exc

        aggregators = ["last"]
        if _AGGREGATORS_KEY in config.config:
            aggregators = config.config[_AGGREGATORS_KEY].split(",")

        self.zmon = zmon
        self.interval = interval
        self.check_id = int(check_id_text)
        self.key = config.config.get(_KEY_KEY, "")
        self.tags = {
            name[len(_TAG_PREFIX):]: value
            for name, value in config.config.items()
            if name.startswith(_TAG_PREFIX)
        }
        self.duration = duration
        self.aggregators = aggregators
        self.metric = config.metric
        self.metric_type = config.type
        self.namespace = hpa.namespace

    def get_metrics(self) -> list[CollectedMetric]:
        data_points = self.zmon.query(
            self.check_id, self.key, self.tags, self.aggregators, self.duration
        )
        if not data_points:
            return []

        point = data_points[-1]
        return [
            CollectedMetric(
                type=self.metric_type,
                namespace=self.namespace,
                external=ExternalMetricValue(
                    metric_name=self.metric.name,
                    metric_labels=dict(self.metric.selector or {}),
                    timestamp=point.time,
                    milli_value=int(point.value * 1000),
                ),
            )
        ]