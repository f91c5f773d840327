"""Tests for guard metrics."""

import threading

import pytest

from apiguard.app.core.metrics import GuardMetrics, get_metrics, reset_metrics
from apiguard.app.ratelimit.engine import RateLimitEngine
from apiguard.app.ratelimit.models import RateLimitPolicy


class TestGuardMetrics:
    """Tests for GuardMetrics."""

    def test_record_decision(self):
        metrics = GuardMetrics()
        metrics.record_decision("rate_limit", "allowed")
        metrics.record_decision("rate_limit", "allowed")
        metrics.record_decision("rate_limit", "denied")

        assert metrics.decision_count("rate_limit", "allowed") == 2
        assert metrics.decision_count("rate_limit", "denied") == 1
        assert metrics.decision_count("idempotency", "replay") == 0
        assert metrics.get_summary()["gates"] == {"rate_limit": {"allowed": 2, "denied": 1}}

    def test_store_latency(self):
        metrics = GuardMetrics()
        metrics.record_store_call(0.002)
        metrics.record_store_call(0.004)

        summary = metrics.get_summary()
        assert summary["store_calls"] == 2
        assert summary["average_store_latency_ms"] == 3.0

    def test_concurrent_updates(self):
        metrics = GuardMetrics()

        def worker():
            for _ in range(1000):
                metrics.record_decision("duplicate_submit", "acquired")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.decision_count("duplicate_submit", "acquired") == 4000

    def test_prometheus_format(self):
        metrics = GuardMetrics()
        metrics.record_decision("rate_limit", "denied")
        metrics.record_backend_failure("sliding_window")
        metrics.record_fallback()

        output = metrics.get_prometheus_metrics()

        assert "# TYPE apiguard_decisions_total counter" in output
        assert 'apiguard_decisions_total{gate="rate_limit",decision="denied"} 1' in output
        assert 'apiguard_backend_failures_total{operation="sliding_window"} 1' in output
        assert "apiguard_fallbacks_total 1" in output
        assert "apiguard_uptime_seconds" in output

    def test_every_metric_declares_its_type(self):
        """Test that each emitted sample has HELP and TYPE lines for its family."""
        metrics = GuardMetrics()
        metrics.record_decision("rate_limit", "allowed")
        metrics.record_backend_failure("get")
        metrics.record_store_call(0.001)

        lines = metrics.get_prometheus_metrics().splitlines()
        typed = {line.split()[2] for line in lines if line.startswith("# TYPE")}
        helped = {line.split()[2] for line in lines if line.startswith("# HELP")}
        samples = {line.split("{")[0].split()[0] for line in lines if line and not line.startswith("#")}

        assert "apiguard_store_calls_total" in samples
        assert samples <= typed
        assert samples <= helped

    def test_global_instance(self):
        first = get_metrics()
        assert get_metrics() is first
        reset_metrics()
        assert get_metrics() is not first


class TestEngineMetrics:
    """Tests for decisions recorded by the rate limit engine."""

    @pytest.mark.asyncio
    async def test_status_is_not_counted(self, local_store, clock):
        metrics = GuardMetrics()
        engine = RateLimitEngine(store=local_store, clock=clock, metrics=metrics)
        policy = RateLimitPolicy(permits=1, window_seconds=60)

        await engine.status("k", policy)
        await engine.check("k", policy)
        await engine.check("k", policy)

        assert metrics.get_summary()["gates"] == {"rate_limit": {"allowed": 1, "denied": 1}}
