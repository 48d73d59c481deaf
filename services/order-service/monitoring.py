"""Monitoring and observability setup.

Traces and metrics go through OpenTelemetry. When OTEL_EXPORTER_OTLP_ENDPOINT
is empty the providers are still installed, so spans and instruments work
everywhere (tests included), but nothing is exported.

Exemplars are attached automatically to histograms recorded inside an active
span, so a spike in `storefront.stock.lock_wait` links straight to the
placement traces that waited on a contended product row.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import OTEL_EXPORTER_OTLP_ENDPOINT, PYROSCOPE_SERVER, SERVICE_NAME

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    tracer_provider = TracerProvider(resource=resource)
    if OTEL_EXPORTER_OTLP_ENDPOINT:
        otlp_span_exporter = OTLPSpanExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
        logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")
    trace.set_tracer_provider(tracer_provider)

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    metric_readers = []
    if OTEL_EXPORTER_OTLP_ENDPOINT:
        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        metric_readers.append(PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000
        ))
        logger.info("Metrics initialized with OTLP exporter")

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=metric_readers
    )
    metrics.set_meter_provider(meter_provider)

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling when a server is configured."""
    if not PYROSCOPE_SERVER:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": "demo"}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
tracer = init_tracing()
meter = init_metrics()

# Order placement metrics
orders_placed_counter = meter.create_counter(
    "storefront.orders.placed",
    description="Total number of orders placed successfully",
    unit="1"
)

order_placement_failures_counter = meter.create_counter(
    "storefront.orders.placement_failures",
    description="Order placements rolled back, by failure reason",
    unit="1"
)

order_amount_histogram = meter.create_histogram(
    "storefront.orders.amount",
    description="Grand total of placed orders",
    unit="VND"
)

order_status_transitions_counter = meter.create_counter(
    "storefront.orders.status_transitions",
    description="Order status changes applied by admins",
    unit="1"
)

# Inventory contention
stock_lock_wait_histogram = meter.create_histogram(
    "storefront.stock.lock_wait",
    description="Time spent acquiring a product stock row for reservation",
    unit="s"
)
# Exemplars: links slow reservations to the placement traces that waited

stock_restocked_counter = meter.create_counter(
    "storefront.stock.restocked",
    description="Units returned to stock by order cancellation",
    unit="1"
)

cart_additions_counter = meter.create_counter(
    "storefront.cart.additions",
    description="Total number of items added to cart",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "storefront.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "storefront.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)
