import json
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs

import pytest

from kmadapter.model import (
    CollectorError,
    HorizontalPodAutoscaler,
    MetricConfig,
    MetricIdentifier,
    ObjectReference,
    ScaleTargetRef,
)
from kmadapter.prometheus_collector import (
    NoResultError,
    PrometheusAPI,
    PrometheusCollector,
    PrometheusCollectorPlugin,
)

QUERY = "sum(rate(rps[1m]))"


class FakeAPI:
    def __init__(self, data):
        self.data = data
        self.queries = []

    def query(self, query, timestamp):
        self.queries.append(query)
        return self.data


class FakeClient:
    def __init__(self, replicas):
        self.replicas = replicas

    def get_deployment(self, namespace, name):
        return {"status": {"replicas": self.replicas}}

    def get_stateful_set(self, namespace, name):
        return {"status": {"replicas": self.replicas}}


def external_config(name, selector, options):
    return MetricConfig(
        metric=MetricIdentifier(name=name, selector=selector),
        type="External",
        config=dict(options),
    )


@pytest.mark.parametrize(
    "config, expected",
    [
        (
            external_config("rps", {"type": "prometheus"}, {"query": QUERY, "type": "prometheus"}),
            QUERY,
        ),
        (
            external_config(
                "rps", {"type": "prometheus"}, {"not-query": QUERY, "type": "prometheus"}
            ),
            None,
        ),
        (
            external_config(
                "prometheus-query",
                {"query-name": "rps"},
                {"rps": QUERY, "query-name": "rps"},
            ),
            QUERY,
        ),
        (
            external_config(
                "prometheus-query",
                {"query-name": "not-rps"},
                {"rps": QUERY, "query-name": "not-rps"},
            ),
            None,
        ),
        (external_config("prometheus-query", None, {"rps": QUERY}), None),
        (
            external_config(
                "prometheus-query",
                {"not-query-name": "not-rps"},
                {"rps": QUERY, "not-query-name": "not-rps"},
            ),
            None,
        ),
    ],
)
def test_new_prometheus_collector(config, expected):
    plugin = PrometheusCollectorPlugin(None, "http://prometheus")
    hpa = HorizontalPodAutoscaler()
    if expected is None:
        with pytest.raises(CollectorError):
            plugin.new_collector(hpa, config, timedelta(0))
    else:
        collector = plugin.new_collector(hpa, config, timedelta(0))
        assert isinstance(collector, PrometheusCollector)
        assert collector.query == expected


def test_object_metric_requires_query():
    config = MetricConfig(type="Object", config={})
    with pytest.raises(CollectorError, match="no prometheus query defined"):
        PrometheusCollector(None, FakeAPI({}), HorizontalPodAutoscaler(), config, timedelta(0))


def test_custom_server_annotation_replaces_api():
    config = external_config(
        "rps", {"a": "b"}, {"query": QUERY, "prometheus-server": "http://other:9090"}
    )
    default_api = FakeAPI({})
    collector = PrometheusCollector(None, default_api, HorizontalPodAutoscaler(), config, timedelta(0))
    assert isinstance(collector.prom_api, PrometheusAPI)
    assert collector.prom_api.address == "http://other:9090"


def test_external_vector_value():
    api = FakeAPI({"resultType": "vector", "result": [{"metric": {}, "value": [1, "2.5"]}]})
    config = external_config("rps", {"type": "prometheus"}, {"query": QUERY})
    hpa = HorizontalPodAutoscaler(namespace="default")
    collector = PrometheusCollector(None, api, hpa, config, timedelta(seconds=5))
    metrics = collector.get_metrics()
    assert len(metrics) == 1
    assert metrics[0].namespace == "default"
    assert metrics[0].type == "External"
    assert metrics[0].external.metric_name == "rps"
    assert metrics[0].external.metric_labels == {"type": "prometheus"}
    assert metrics[0].external.milli_value == 2500
    assert api.queries == [QUERY]
    assert collector.interval == timedelta(seconds=5)


def test_object_scalar_per_replica():
    api = FakeAPI({"resultType": "scalar", "result": [1, "10"]})
    config = MetricConfig(
        metric=MetricIdentifier(name="requests"),
        type="Object",
        config={"query": QUERY},
        object_reference=ObjectReference(kind="Ingress", name="ing", namespace="default"),
        per_replica=True,
    )
    hpa = HorizontalPodAutoscaler(
        namespace="default", scale_target_ref=ScaleTargetRef(kind="Deployment", name="app")
    )
    collector = PrometheusCollector(FakeClient(4), api, hpa, config, timedelta(0))
    metrics = collector.get_metrics()
    assert metrics[0].custom.milli_value == 2500
    assert metrics[0].custom.described_object.name == "ing"
    assert metrics[0].custom.metric.name == "requests"


def test_empty_vector_raises_no_result():
    api = FakeAPI({"resultType": "vector", "result": []})
    config = external_config("rps", {}, {"query": QUERY})
    collector = PrometheusCollector(None, api, HorizontalPodAutoscaler(), config, timedelta(0))
    with pytest.raises(NoResultError) as info:
        collector.get_metrics()
    assert info.value.query == QUERY
    assert str(info.value) == f"query '{QUERY}' did not result a valid response"


def test_nan_raises_no_result():
    api = FakeAPI({"resultType": "scalar", "result": [1, "NaN"]})
    config = external_config("rps", {}, {"query": QUERY})
    collector = PrometheusCollector(None, api, HorizontalPodAutoscaler(), config, timedelta(0))
    with pytest.raises(NoResultError):
        collector.get_metrics()


class _Handler(BaseHTTPRequestHandler):
    requests = []
    reply = (200, {})

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        form = parse_qs(self.rfile.read(length).decode())
        type(self).requests.append((self.path, form))
        status, body = type(self).reply
        data = json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def server():
    _Handler.requests = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def test_api_query_over_http(server):
    _Handler.reply = (
        200,
        {"status": "success", "data": {"resultType": "scalar", "result": [1, "3"]}},
    )
    api = PrometheusAPI(f"http://127.0.0.1:{server.server_address[1]}/")
    data = api.query(QUERY, datetime(2020, 1, 1, tzinfo=timezone.utc))
    assert data == {"resultType": "scalar", "result": [1, "3"]}
    path, form = _Handler.requests[0]
    assert path == "/api/v1/query"
    assert form["query"] == [QUERY]
    assert float(form["time"][0]) == 1577836800.0


def test_api_query_error(server):
    _Handler.reply = (400, {"status": "error", "errorType": "bad_data", "error": "parse error"})
    api = PrometheusAPI(f"http://127.0.0.1:{server.server_address[1]}")
    with pytest.raises(CollectorError, match="bad_data: parse error"):
        api.query("(", datetime.now(timezone.utc))