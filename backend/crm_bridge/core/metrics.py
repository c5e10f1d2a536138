"""
Prometheus Metrics for the CRM Bridge
Counters for ack/requeue decisions and heartbeats, histograms for CRM latency
"""
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger("crm_bridge.metrics")


# ============================================================================
# METRIC DEFINITIONS
# ============================================================================

MESSAGES_PROCESSED = Counter(
    "crm_bridge_messages_total",
    "Deliveries handled by entity, operation and broker decision",
    ["entity", "operation", "decision"]  # decision = ack | requeue | reject
)

MESSAGE_FAILURES = Counter(
    "crm_bridge_message_failures_total",
    "Per-message failures by error type",
    ["entity", "operation", "error"]
)

CRM_CALLS = Counter(
    "crm_bridge_crm_calls_total",
    "CRM API calls by entity, operation and result",
    ["entity", "operation", "status"]  # status = success | failure | circuit_open
)

CRM_LATENCY = Histogram(
    "crm_bridge_crm_call_latency_seconds",
    "CRM API call latency",
    ["entity", "operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

HEARTBEATS = Counter(
    "crm_bridge_heartbeats_total",
    "Heartbeat publish attempts",
    ["status"]  # status = published | failed
)

CIRCUIT_STATE = Gauge(
    "crm_bridge_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["circuit_name"]
)


# ============================================================================
# METRIC HELPERS
# ============================================================================

def record_delivery(entity: str, operation: str, decision: str, error: Optional[str] = None):
    """Record the broker decision taken for one delivery"""
    MESSAGES_PROCESSED.labels(entity=entity, operation=operation, decision=decision).inc()
    if error:
        MESSAGE_FAILURES.labels(entity=entity, operation=operation, error=error).inc()


def record_crm_call(entity: str, operation: str, status: str, latency_seconds: float = 0.0):
    """Record one CRM call"""
    CRM_CALLS.labels(entity=entity, operation=operation, status=status).inc()
    if latency_seconds > 0:
        CRM_LATENCY.labels(entity=entity, operation=operation).observe(latency_seconds)


def record_heartbeat(status: str):
    HEARTBEATS.labels(status=status).inc()


def update_circuit_state(circuit_name: str, state: str):
    """
    Update circuit breaker state gauge

    Args:
        state: "closed", "half_open", or "open"
    """
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    CIRCUIT_STATE.labels(circuit_name=circuit_name).set(state_map.get(state, 0))


def start_metrics_server(port: int):
    """Expose /metrics on the given port"""
    start_http_server(port)
    logger.info(f"Prometheus metrics served on :{port}")
