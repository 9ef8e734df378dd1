"""
Prometheus metrics emission for Croupier.

Provides observability through standardized metrics collection.
All metrics use the 'croupier_' prefix.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from croupier import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_execution("payout", "completed")
        emitter.update_retry_queue_depth("payout", 3)
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a fresh one if not provided)
        """
        self._registry = registry or CollectorRegistry()

        # Application info
        self._info = Info(
            "croupier",
            "Croupier settlement pipeline information",
            registry=self._registry,
        )
        self._info.info({
            "version": __version__,
            "component": "croupier",
        })

        self._uptime = Gauge(
            "croupier_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Pipeline outcomes
        self._watcher_events = Counter(
            "croupier_watcher_events_total",
            "BetResolved events handled by the watcher",
            ["pipeline", "result"],
            registry=self._registry,
        )

        self._submissions = Counter(
            "croupier_submissions_total",
            "Request submissions by outcome",
            ["pipeline", "outcome"],
            registry=self._registry,
        )

        self._executions = Counter(
            "croupier_executions_total",
            "Execution attempts by outcome",
            ["pipeline", "outcome"],
            registry=self._registry,
        )

        self._disbursed = Counter(
            "croupier_disbursed_amount_total",
            "Amount disbursed in smallest units",
            ["pipeline"],
            registry=self._registry,
        )

        self._settlement_latency = Histogram(
            "croupier_settlement_latency_seconds",
            "Time from bet settlement to disbursement",
            ["pipeline"],
            buckets=[60, 90, 120, 300, 600, 1800, 3600, 21600, 86400],
            registry=self._registry,
        )

        # Retry scheduler
        self._retry_queue_depth = Gauge(
            "croupier_retry_queue_depth",
            "Tasks waiting in the retry scheduler",
            ["pipeline"],
            registry=self._registry,
        )

        self._retry_attempts = Counter(
            "croupier_retry_attempts_total",
            "Tasks re-driven by the retry scheduler",
            ["pipeline", "task"],
            registry=self._registry,
        )

        self._retry_exhausted = Counter(
            "croupier_retry_exhausted_total",
            "Tasks dropped after exhausting their attempts",
            ["pipeline", "task"],
            registry=self._registry,
        )

        self._in_flight = Gauge(
            "croupier_in_flight_operations",
            "Request handlers currently running",
            ["pipeline"],
            registry=self._registry,
        )

        # Ledger
        self._ledger_call_latency = Histogram(
            "croupier_ledger_call_seconds",
            "Ledger call latency in seconds",
            ["operation", "status"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0],
            registry=self._registry,
        )

        self._cursor_block = Gauge(
            "croupier_watcher_cursor_block",
            "Last block fully processed by the watcher",
            ["pipeline"],
            registry=self._registry,
        )

        self._head_block = Gauge(
            "croupier_ledger_head_block",
            "Latest block seen on the ledger",
            registry=self._registry,
        )

        self._pool_balance = Gauge(
            "croupier_pool_balance",
            "Disbursement pool balance in smallest units",
            ["pipeline", "asset"],
            registry=self._registry,
        )

        self._operator_balance = Gauge(
            "croupier_operator_balance",
            "Operator native balance in smallest units",
            registry=self._registry,
        )

        self._event_bus_messages = Counter(
            "croupier_event_bus_messages_total",
            "Events published to the event bus",
            ["channel"],
            registry=self._registry,
        )

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def record_watcher_event(self, pipeline: str, result: str) -> None:
        """Record a watcher decision for one event.

        Args:
            pipeline: "payout" or "mining"
            result: e.g. "submitted", "skipped", "rejected", "recovered", "error"
        """
        self._watcher_events.labels(pipeline=pipeline, result=result).inc()

    def record_submission(self, pipeline: str, outcome: str) -> None:
        self._submissions.labels(pipeline=pipeline, outcome=outcome).inc()

    def record_execution(
        self,
        pipeline: str,
        outcome: str,
        amount: int = 0,
        latency_seconds: Optional[float] = None,
    ) -> None:
        """Record an execution outcome.

        Args:
            pipeline: "payout" or "mining"
            outcome: ExecuteOutcome value
            amount: Amount disbursed (completed outcomes only)
            latency_seconds: Bet settlement to disbursement, if known
        """
        self._executions.labels(pipeline=pipeline, outcome=outcome).inc()
        if amount > 0:
            self._disbursed.labels(pipeline=pipeline).inc(amount)
        if latency_seconds is not None:
            self._settlement_latency.labels(pipeline=pipeline).observe(latency_seconds)

    def update_retry_queue_depth(self, pipeline: str, depth: int) -> None:
        self._retry_queue_depth.labels(pipeline=pipeline).set(depth)

    def record_retry(self, pipeline: str, task: str) -> None:
        self._retry_attempts.labels(pipeline=pipeline, task=task).inc()

    def record_retry_exhausted(self, pipeline: str, task: str) -> None:
        self._retry_exhausted.labels(pipeline=pipeline, task=task).inc()

    def update_in_flight(self, pipeline: str, count: int) -> None:
        self._in_flight.labels(pipeline=pipeline).set(count)

    def record_ledger_call(self, operation: str, status: str, latency_seconds: float) -> None:
        """Record one ledger call.

        Args:
            operation: Adapter operation name (e.g. "payout_execute")
            status: "ok" or "error"
            latency_seconds: Wall time of the call
        """
        self._ledger_call_latency.labels(operation=operation, status=status).observe(
            latency_seconds
        )

    def update_cursor(self, pipeline: str, block: int) -> None:
        self._cursor_block.labels(pipeline=pipeline).set(block)

    def update_head_block(self, block: int) -> None:
        self._head_block.set(block)

    def update_pool_balance(self, pipeline: str, asset: str, balance: int) -> None:
        self._pool_balance.labels(pipeline=pipeline, asset=asset).set(balance)

    def update_operator_balance(self, balance: int) -> None:
        self._operator_balance.set(balance)

    def record_event_bus_message(self, channel: str) -> None:
        self._event_bus_messages.labels(channel=channel).inc()

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry over HTTP on ``port``."""
        start_http_server(port, addr=addr, registry=self._registry)

    def get_metrics(self) -> str:
        """Get Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        """Get the metrics registry."""
        return self._registry
