"""OTel provider configuration for rxjunglebus components.

Provides :func:`configure_telemetry` (logger provider),
:func:`configure_metrics` (meter provider), :func:`get_default_providers`
(lazy singleton with console output) and :func:`component_logger`, which
every component uses to build its :class:`OTelLogger`.
"""

from opentelemetry._logs import SeverityNumber
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    LogRecordExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource

from .exporters import ConsoleLogRecordExporter
from .logger import LogContext, OTelLogger


def configure_telemetry(
    service_name: str = "rxjunglebus",
    service_version: str = "",
    log_exporter: LogRecordExporter | None = None,
    batch_logs: bool = True,
) -> LoggerProvider:
    """
    Configure an OTel LoggerProvider for rxjunglebus components.

    Returns the provider for explicit injection into components -- does NOT
    set the global provider.

    Args:
        service_name: Service identifier for resource attributes.
        service_version: Service version for resource attributes.
        log_exporter: Optional log exporter (e.g. OTLPLogExporter,
            ConsoleLogRecordExporter).
        batch_logs: If True, use BatchLogRecordProcessor (better for network
            exporters). If False, use SimpleLogRecordProcessor (immediate,
            better for console).

    Example:
        >>> logger_provider = configure_telemetry(
        ...     service_name="indexer",
        ...     log_exporter=ConsoleLogRecordExporter(),
        ...     batch_logs=False,
        ... )
        >>> client = JungleBusClient(url, transport, logger_provider=logger_provider)
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
        }
    )

    logger_provider = LoggerProvider(resource=resource)
    if log_exporter:
        if batch_logs:
            logger_provider.add_log_record_processor(
                BatchLogRecordProcessor(log_exporter)
            )
        else:
            logger_provider.add_log_record_processor(
                SimpleLogRecordProcessor(log_exporter)
            )

    return logger_provider


_default_logger_provider: LoggerProvider | None = None


def get_default_providers(service_name: str = "rxjunglebus") -> LoggerProvider:
    """Get or create the default logger provider with console output.

    Lazily initialized on first call; later calls return the same provider.
    Components fall back to it when no provider is injected.
    """
    global _default_logger_provider

    if _default_logger_provider is None:
        _default_logger_provider = configure_telemetry(
            service_name=service_name,
            log_exporter=ConsoleLogRecordExporter(),
            batch_logs=False,  # Immediate output for CLI
        )

    return _default_logger_provider


def component_logger(
    logger_provider: LoggerProvider | None,
    name: str,
    source: str,
    context: LogContext | None = None,
    debug: bool = False,
) -> OTelLogger:
    """Build the OTelLogger a component logs through.

    With an injected provider every severity is emitted and filtering is left
    to the provider's processors. With the default console provider DEBUG
    records are dropped unless ``debug`` is set.
    """
    min_severity = None
    if logger_provider is None:
        logger_provider = get_default_providers()
        if not debug:
            min_severity = SeverityNumber.INFO
    return OTelLogger(
        logger_provider.get_logger(name),
        source=source,
        context=context,
        min_severity=min_severity,
    )


def configure_metrics(
    service_name: str = "rxjunglebus",
    service_version: str = "",
    metric_exporter: MetricExporter | None = None,
    export_interval_ms: int = 10_000,
) -> MeterProvider:
    """Configure and return an OTel MeterProvider.

    Args:
        service_name: Service identifier added to all metrics.
        service_version: Service version resource attribute.
        metric_exporter: Optional metric exporter. If ``None``, metrics are
            exported to ``ConsoleMetricExporter``.
        export_interval_ms: Polling interval for
            ``PeriodicExportingMetricReader`` (milliseconds).
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
        }
    )

    exporter = (
        metric_exporter if metric_exporter is not None else ConsoleMetricExporter()
    )
    reader = PeriodicExportingMetricReader(
        exporter, export_interval_millis=export_interval_ms
    )
    return MeterProvider(resource=resource, metric_readers=[reader])
