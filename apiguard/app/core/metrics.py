"""In-process counters for gate decisions and backend health.

Rendered in Prometheus text format by the ``/metrics`` endpoint.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass
class GuardMetrics:
    """Collects guard metrics.

    This class is thread-safe and collects:
    - Decisions per gate (allowed, denied, created, replay, ...)
    - Backend failures per store operation
    - Fallbacks to the local store
    - Store latency totals
    """

    _decisions: Dict[Tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    _backend_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _fallbacks: int = 0
    _store_calls: int = 0
    _store_duration: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _start_time: float = field(default_factory=time.time)

    def record_decision(self, gate: str, decision: str) -> None:
        with self._lock:
            self._decisions[(gate, decision)] += 1

    def record_backend_failure(self, operation: str) -> None:
        with self._lock:
            self._backend_failures[operation] += 1

    def record_fallback(self) -> None:
        with self._lock:
            self._fallbacks += 1

    def record_store_call(self, duration: float) -> None:
        """Record one store round-trip.

        Args:
            duration: Call duration in seconds
        """
        with self._lock:
            self._store_calls += 1
            self._store_duration += duration

    def decision_count(self, gate: str, decision: str) -> int:
        with self._lock:
            return self._decisions.get((gate, decision), 0)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            gates: Dict[str, Dict[str, int]] = defaultdict(dict)
            for (gate, decision), count in self._decisions.items():
                gates[gate][decision] = count
            avg = self._store_duration / self._store_calls if self._store_calls else 0
            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "gates": dict(gates),
                "backend_failures": dict(self._backend_failures),
                "fallbacks": self._fallbacks,
                "store_calls": self._store_calls,
                "average_store_latency_ms": round(avg * 1000, 2),
            }

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        with self._lock:
            lines = []

            lines.append("# HELP apiguard_decisions_total Gate decisions")
            lines.append("# TYPE apiguard_decisions_total counter")
            for (gate, decision), count in sorted(self._decisions.items()):
                lines.append(
                    f'apiguard_decisions_total{{gate="{gate}",decision="{decision}"}} {count}'
                )

            lines.append("\n# HELP apiguard_backend_failures_total Store operations that failed")
            lines.append("# TYPE apiguard_backend_failures_total counter")
            for operation, count in sorted(self._backend_failures.items()):
                lines.append(
                    f'apiguard_backend_failures_total{{operation="{operation}"}} {count}'
                )

            lines.append("\n# HELP apiguard_fallbacks_total Calls served by the local fallback store")
            lines.append("# TYPE apiguard_fallbacks_total counter")
            lines.append(f"apiguard_fallbacks_total {self._fallbacks}")

            lines.append("\n# HELP apiguard_store_duration_seconds Total store call duration")
            lines.append("# TYPE apiguard_store_duration_seconds counter")
            lines.append(f"apiguard_store_duration_seconds {self._store_duration}")

            lines.append("\n# HELP apiguard_store_calls_total Store calls made")
            lines.append("# TYPE apiguard_store_calls_total counter")
            lines.append(f"apiguard_store_calls_total {self._store_calls}")

            lines.append("\n# HELP apiguard_uptime_seconds Uptime in seconds")
            lines.append("# TYPE apiguard_uptime_seconds gauge")
            lines.append(f"apiguard_uptime_seconds {round(time.time() - self._start_time, 2)}")

            return "\n".join(lines) + "\n"


# Global metrics instance
_metrics: Optional[GuardMetrics] = None


def get_metrics() -> GuardMetrics:
    global _metrics
    if _metrics is None:
        _metrics = GuardMetrics()
    return _metrics


def reset_metrics() -> None:
    """Reset the global metrics (useful for testing)."""
    global _metrics
    _metrics = None
