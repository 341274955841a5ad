"""
Tests for metrics collection and Prometheus export.
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shipment_service.core.monitoring import (
    MetricsCollector,
    RequestMetricsMiddleware,
    get_prometheus_metrics,
)


class TestMetricsCollector:
    def test_counters_are_keyed_by_labels(self):
        collector = MetricsCollector()
        collector.increment("shipments_created_total", labels={"carrier": "shiprocket", "region": "IN"})
        collector.increment("shipments_created_total", labels={"region": "IN", "carrier": "shiprocket"})
        collector.increment("shipments_created_total", labels={"carrier": "gcc_logistics", "region": "QA"})

        assert collector.get_counter(
            "shipments_created_total", labels={"carrier": "shiprocket", "region": "IN"}
        ) == 2
        assert collector.get_counter("shipments_created_total", labels={"carrier": "dhl"}) == 0

    def test_gauge_overwrites(self):
        collector = MetricsCollector()
        collector.gauge("adapters_open", 2)
        collector.gauge("adapters_open", 3)
        assert collector.get_gauge("adapters_open") == 3

    def test_histogram_stats(self):
        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.3, 0.4):
            collector.observe("shipment_create_duration_seconds", value)

        stats = collector.get_histogram_stats("shipment_create_duration_seconds")
        assert stats["count"] == 4
        assert stats["min"] == 0.1
        assert stats["max"] == 0.4
        assert stats["avg"] == pytest.approx(0.25)

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment("x")
        collector.reset()
        assert collector.get_counter("x") == 0


def test_prometheus_export():
    collector = MetricsCollector()
    collector.increment("shipping_webhooks_total", labels={"carrier": "shiprocket", "outcome": "processed"})
    collector.observe("shipment_create_duration_seconds", 0.5, labels={"carrier": "shiprocket"})

    text = get_prometheus_metrics(collector)

    assert "# TYPE shipping_webhooks_total counter" in text
    assert 'shipping_webhooks_total{carrier="shiprocket",outcome="processed"} 1' in text
    assert 'shipment_create_duration_seconds_count{carrier="shiprocket"} 1' in text
    assert "app_uptime_seconds" in text


def test_request_metrics_middleware_normalizes_ids():
    collector = MetricsCollector()
    app = FastAPI()
    app.add_middleware(RequestMetricsMiddleware, collector=collector)

    @app.get("/api/v1/shipments/{shipment_id}")
    async def read(shipment_id: str):
        return {"id": shipment_id}

    client = TestClient(app)
    client.get("/api/v1/shipments/shp_0123456789abcdef01234567")
    client.get("/api/v1/shipments/shp_abcdefabcdefabcdefabcdef")
    client.get("/missing")

    labels = {"method": "GET", "path": "/api/v1/shipments/:shipment_id", "status": "200"}
    assert collector.get_counter("http_requests_total", labels=labels) == 2
    assert collector.get_counter("http_errors_total", labels={"status": "404"}) == 1
