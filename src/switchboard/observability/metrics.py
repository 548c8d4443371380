"""Prometheus metrics collection for monitoring.

This module provides Prometheus metrics for tracking routed requests, agent
invocations, delegation hops and agent selection latency.
"""

from typing import Optional

from prometheus_client import Counter, Histogram, generate_latest

# Request metrics
orchestrator_requests_total = Counter(
    "switchboard_requests_total",
    "Total number of requests routed by the orchestrator",
    labelnames=["outcome"],
)

# Agent invocation metrics
agent_invocations_total = Counter(
    "switchboard_agent_invocations_total",
    "Total number of agent invocations",
    labelnames=["agent", "status"],
)

agent_invocation_duration_seconds = Histogram(
    "switchboard_agent_invocation_duration_seconds",
    "Agent invocation duration in seconds",
    labelnames=["agent"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Delegation metrics
delegations_total = Counter(
    "switchboard_delegations_total",
    "Total number of delegation hops",
    labelnames=["from_agent", "to_agent", "outcome"],
)

# Selection metrics
agent_selection_duration_seconds = Histogram(
    "switchboard_agent_selection_duration_seconds",
    "Time spent scoring and selecting candidate agents",
    labelnames=["path"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics.

    Provides methods for recording routed requests, agent invocations,
    delegation hops and selection latency.
    """

    def record_request(self, outcome: str) -> None:
        """Record the outcome of one routed request.

        Args:
            outcome: Final envelope status (success, error, ...)

        Example:
            >>> collector = get_metrics_collector()
            >>> collector.record_request("success")
        """
        orchestrator_requests_total.labels(outcome=outcome).inc()

    def record_agent_invocation(
        self,
        agent: Optional[str],
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a single agent invocation.

        Args:
            agent: Agent name (``unknown`` when not available)
            status: Status reported by the agent, or ``timeout``/``exception``
            duration_seconds: Wall time spent waiting on the agent
        """
        name = agent or "unknown"
        agent_invocations_total.labels(agent=name, status=status).inc()
        agent_invocation_duration_seconds.labels(agent=name).observe(duration_seconds)

    def record_delegation(self, from_agent: str, to_agent: str, outcome: str) -> None:
        """Record a delegation hop.

        Args:
            from_agent: Agent that asked to delegate
            to_agent: Agent the request was handed to
            outcome: ``success``, or the error code that stopped the hop
        """
        delegations_total.labels(
            from_agent=from_agent,
            to_agent=to_agent,
            outcome=outcome,
        ).inc()

    def record_selection(self, path: str, duration_seconds: float) -> None:
        """Record how long candidate selection took.

        Args:
            path: ``fast_path`` for pattern cache hits, ``full`` otherwise
            duration_seconds: Selection time in seconds
        """
        agent_selection_duration_seconds.labels(path=path).observe(duration_seconds)

    def generate_metrics(self) -> bytes:
        """Generate Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus exposition format
        """
        return generate_latest()


# Singleton instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global MetricsCollector instance.

    Returns:
        Singleton MetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
