from datetime import datetime, timedelta, timezone

import pytest

from kmadapter.model import (
    CollectedMetric,
    Collector,
    CustomMetricValue,
    ExternalMetricValue,
    HorizontalPodAutoscaler,
    MetricConfig,
    MetricIdentifier,
    ObjectReference,
    ScaleTargetRef,
    target_ref_replicas,
)


class FakeKube:
    def __init__(self, deployments=None, stateful_sets=None):
        self.deployments = deployments or {}
        self.stateful_sets = stateful_sets or {}

    def get_deployment(self, namespace, name):
        return self.deployments[(namespace, name)]

    def get_stateful_set(self, namespace, name):
        return self.stateful_sets[(namespace, name)]


def _hpa(kind, name="some-app", namespace="default"):
    return HorizontalPodAutoscaler(
        name=namespace,
        namespace=namespace,
        scale_target_ref=ScaleTargetRef(kind=kind, name=name),
    )


def test_target_ref_replicas_deployment():
    client = FakeKube(
        deployments={("default", "some-app"): {"status": {"readyReplicas": 2, "replicas": 1}}}
    )
    assert target_ref_replicas(client, _hpa("Deployment")) == 1


def test_target_ref_replicas_stateful_set():
    client = FakeKube(
        stateful_sets={("default", "some-app"): {"status": {"readyReplicas": 1, "replicas": 2}}}
    )
    assert target_ref_replicas(client, _hpa("StatefulSet")) == 2


def test_target_ref_replicas_unknown_kind_is_zero():
    assert target_ref_replicas(FakeKube(), _hpa("Rollout")) == 0


def test_target_ref_replicas_without_status_is_zero():
    client = FakeKube(deployments={("default", "some-app"): {}})
    assert target_ref_replicas(client, _hpa("Deployment")) == 0


def test_target_ref_replicas_propagates_client_errors():
    with pytest.raises(KeyError):
        target_ref_replicas(FakeKube(), _hpa("Deployment"))


@pytest.mark.parametrize("milli", [0, 1000, 200000, -3000])
def test_custom_value_exact_multiples(milli):
    value = CustomMetricValue(
        described_object=ObjectReference(kind="Pod", name="p"),
        metric=MetricIdentifier(name="m"),
        timestamp=datetime.now(timezone.utc),
        milli_value=milli,
    )
    assert value.value * 1000 == milli


def test_custom_value_rounds_up():
    value = CustomMetricValue(ObjectReference(), MetricIdentifier(), datetime.now(timezone.utc), 1500)
    assert value.value == 2


@pytest.mark.parametrize("milli", [1, 999, 1001, 123456])
def test_external_value_rounding_bounds(milli):
    value = ExternalMetricValue("m", {}, datetime.now(timezone.utc), milli)
    assert value.value * 1000 >= milli
    assert (value.value - 1) * 1000 < milli


def test_metric_config_defaults_are_independent():
    first = MetricConfig()
    second = MetricConfig()
    first.config["query"] = "up"
    assert second.config == {}
    assert second.min_pod_ready_age == timedelta(0)
    assert second.target_average_value is None


def test_collector_is_abstract():
    with pytest.raises(TypeError):
        Collector()


def test_collector_subclass_returns_metrics():
    class Simple(Collector):
        def __init__(self):
            self.interval = timedelta(minutes=1)

        def get_metrics(self):
            return [CollectedMetric(namespace="ns")]

    collector = Simple()
    assert collector.get_metrics() == [CollectedMetric(namespace="ns")]
    assert collector.interval == timedelta(minutes=1)