# kmadapter

Metric collectors that feed horizontal pod autoscaling decisions. You create
a collector from an autoscaler definition (`HorizontalPodAutoscaler`) and a
metric configuration (`MetricConfig`). When asked, it returns a list of
`CollectedMetric` values.

A `CollectedMetric` carries either a `CustomMetricValue`, which describes a
Kubernetes object, or an `ExternalMetricValue`, which is identified by name
and labels. Both hold the value in thousandths (`milli_value`). Their
`value` property gives whole units, rounded away from zero.

## Modules

- `kmadapter.model` holds the shared data classes, the abstract `Collector`
  and `CollectorPlugin`, and `CollectorError`. It also has
  `target_ref_replicas(client, hpa)`, which reads the replica count of a
  Deployment or StatefulSet target and returns 0 for other kinds.

- `kmadapter.prometheus_collector`
  - `PrometheusAPI` sends instant queries to `<address>/api/v1/query`, using
    only the standard library.
  - `PrometheusCollector` runs one query and reports its first vector sample
    or its scalar value. It reports it as an object metric or as an external
    metric.
  - With `per_replica` set, the value is divided by the replica count of the
    scale target.
  - External metrics need a selector. They take their query from the
    `query` option, or, in the legacy form, from the option named by
    `query-name`.
  - A `prometheus-server` option points the collector at another server.
  - An empty result or a NaN value raises `NoResultError`. A failed request
    raises `CollectorError`.

- `kmadapter.skipper_collector`
  - `SkipperCollector` builds a requests-per-second query for the hosts of
    an Ingress or a RouteGroup and hands it to a Prometheus plugin.
  - The query is weighted by the backend's share of the traffic, taken from
    `get_ingress_weight` / `get_annotation_weight` or from
    `get_route_group_weight`.
  - When the metric config has no `target_average_value`, the result is
    divided by the replica count of the target.
  - `SkipperCollectorPlugin` takes the backend from the `backend` option or
    from a `requests-per-second,<backend>` metric name.
  - If traffic switching is in use and no backend is named,
    `BackendNameMissingError` is raised.

- `kmadapter.pod_collector`
  - `PodCollector` collects one value from every ready pod of a Deployment,
    StatefulSet or Rollout.
  - It skips pods that are terminating or that have been ready for less
    than `min_pod_ready_age` (`get_pod_ready_age`).
  - Pods are queried in parallel. Pods that fail are logged and left out.
  - `get_pod_label_selector` returns the scale target's match labels.

- `kmadapter.zmon_collector`
  - `ZMONCollector` queries a ZMON check and reports the last `DataPoint`.
  - Its options are `check-id`, `key`, `duration`, `aggregators` (default
    `last`) and `tag-*`.
  - `parse_duration` reads durations such as `5m` or `1h30m`. The default
    duration is `DEFAULT_QUERY_DURATION`, 10 minutes.

- `kmadapter.nakadi_collector`
  - `NakadiCollector` reports `consumer-lag-seconds` or `unconsumed-events`
    for a subscription.

- `kmadapter.scaling_schedule_collector`
  - `ScalingScheduleCollector` and `ClusterScalingScheduleCollector` look up
    a `ScalingSchedule` or `ClusterScalingSchedule` in a store. They report
    the highest value over its schedules (`calculate_metrics`).
  - The value ramps up in `ramp_steps` steps during the scaling window
    before a schedule starts, and ramps down after it ends
    (`value_for_entry`, `scaled_value`).
  - A missing object raises `ScalingScheduleNotFoundError` or
    `ClusterScalingScheduleNotFoundError`. An object of the wrong type
    raises `NotScalingScheduleError` or `NotClusterScalingScheduleError`.

## Clients supplied by the caller

The collectors never reach Kubernetes, ZMON or Nakadi themselves. The caller
passes in objects that offer the methods the collectors call. In-memory fakes
work as well.

| Used by | Methods expected |
| --- | --- |
| `target_ref_replicas`, `get_pod_label_selector` | `get_deployment(namespace, name)` and `get_stateful_set(namespace, name)`, returning manifest dictionaries |
| `PodCollector` | `list_pods(namespace, labels)`, returning `Pod` objects; `get_rollout(namespace, name)` on the rollouts client |
| `SkipperCollector` | `get_ingress(namespace, name)` on the client; `get_route_group(namespace, name)` on the route group client |
| `ZMONCollector` | `query(check_id, key, tags, aggregators, duration)`, returning `DataPoint`s |
| `NakadiCollector` | `consumer_lag_seconds(subscription_id)` and `unconsumed_events(subscription_id)` |
| schedule collectors | a store with `get_by_key(key)`, returning `(item, exists)` |

## Usage

```python
from datetime import datetime, timedelta, timezone

from kmadapter.model import HorizontalPodAutoscaler, MetricConfig, MetricIdentifier
from kmadapter.zmon_collector import DataPoint, ZMONCollectorPlugin


class FakeZMON:
    def query(self, check_id, key, tags, aggregators, duration):
        return [DataPoint(time=datetime.now(timezone.utc), value=2.5)]


hpa = HorizontalPodAutoscaler(name="app", namespace="default")
config = MetricConfig(
    metric=MetricIdentifier(name="my-check", selector={"type": "zmon"}),
    type="External",
    config={"check-id": "1234", "duration": "5m"},
)
collector = ZMONCollectorPlugin(FakeZMON()).new_collector(hpa, config, timedelta(minutes=1))
for metric in collector.get_metrics():
    print(metric.namespace, metric.external.milli_value)  # default 2500
```

Invalid configuration raises `CollectorError` or one of its subclasses.

## What the package does not do

- It does not read metric configurations from autoscaler annotations.
- It has no registry that picks a plugin per metric.
- It does not serve metrics to the Kubernetes API and has no command to
  run.
- `PodCollector` ships no way to fetch values from pods. Pass
  `getter_factories`, which map a collector type such as `json-path` to a
  callable. That callable takes the metric options and returns an object
  with `get_metric(pod)`.
- The schedule collectors do not interpret schedule dates, periods or time
  zones. Pass a `resolver(now, schedule, default_time_zone)` that returns
  the schedule's `(start, end)` datetimes.

## Tests

```
pip install -e .[test]
pytest
```