"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when OTLP_ENABLED=true.
Otherwise in-memory providers are installed and nothing leaves the process.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from ralph.config import RuntimeSettings

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
iterations_counter: metrics.Counter
invocations_counter: metrics.Counter
rate_limits_counter: metrics.Counter
rotations_counter: metrics.Counter
iteration_duration: metrics.Histogram


def setup_telemetry(settings: RuntimeSettings) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with OTLP export.

    If OTLP_ENABLED is not "true", uses providers without exporters.

    Args:
        settings: Runtime settings with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and settings.otlp_endpoint:
        # Import OTLP exporters only when needed (optional extra)
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(settings.service_name)
    meter = metrics.get_meter(settings.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for loop tracking.

    Counters: iterations (by outcome), agent invocations (by agent, model and
    outcome), rate limits (by agent), rotations (by reason).
    Histogram: iteration duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global iterations_counter, invocations_counter, rate_limits_counter
    global rotations_counter, iteration_duration

    iterations_counter = meter.create_counter(
        "ralph_iterations_total",
        description="Total loop iterations",
    )

    invocations_counter = meter.create_counter(
        "ralph_agent_invocations_total",
        description="Total agent invocations",
    )

    rate_limits_counter = meter.create_counter(
        "ralph_rate_limits_total",
        description="Total rate-limit responses from agents",
    )

    rotations_counter = meter.create_counter(
        "ralph_rotations_total",
        description="Total agent/model rotations",
    )

    iteration_duration = meter.create_histogram(
        "ralph_iteration_duration_seconds",
        description="Iteration duration",
        unit="s",
    )


def record_iteration(outcome: str, duration_seconds: float) -> None:
    """Record an iteration if metrics are initialized."""
    try:
        iterations_counter.add(1, {"outcome": outcome})
        iteration_duration.record(duration_seconds)
    except NameError:
        # Metrics not created - telemetry disabled
        pass


def record_invocation(agent: str, model: str, outcome: str) -> None:
    try:
        invocations_counter.add(1, {"agent": agent, "model": model, "outcome": outcome})
    except NameError:
        pass


def record_rate_limit(agent: str) -> None:
    try:
        rate_limits_counter.add(1, {"agent": agent})
    except NameError:
        pass


def record_rotation(reason: str) -> None:
    try:
        rotations_counter.add(1, {"reason": reason})
    except NameError:
        pass
