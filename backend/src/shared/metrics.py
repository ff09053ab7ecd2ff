from opentelemetry import metrics
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest


def setup_metrics(app_name: str, console_export: bool = False) -> None:
    """Configure OpenTelemetry metrics.

    The Prometheus reader registers with the default prometheus_client
    registry, which ``render_prometheus`` serialises for the /metrics route.
    """
    resource = Resource.create({"service.name": app_name})

    readers = [PrometheusMetricReader()]
    if console_export:
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)


def render_prometheus() -> tuple[bytes, str]:
    """Return the exposition body and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
