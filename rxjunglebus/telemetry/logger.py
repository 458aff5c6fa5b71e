"""OTel logger wrapper and log context for structured observability.

Provides :class:`OTelLogger`, a thin wrapper around the OTel Logger API
with convenience ``info``/``debug``/``warning``/``error`` methods, and
:class:`LogContext`, an immutable bundle of dimensional log attributes
(service, subscription, channel, stream kind).

Also contains :func:`format_log_record` and :func:`format_log_record_json`
used by the console exporter.
"""

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from opentelemetry._logs import LogRecord, SeverityNumber


@dataclass(frozen=True)
class LogContext:
    """Immutable bundle of dimensional log attributes.

    Automatically attached to every log record emitted by an
    OTelLogger carrying this context.
    """

    service: str = ""
    component: str = ""
    subscription_id: str = ""
    channel: str = ""
    stream: str = ""

    def as_attributes(self) -> dict[str, str]:
        """Convert to OTel log record attributes dict. Omits empty values."""
        attrs: dict[str, str] = {}
        if self.service:
            attrs["service.name"] = self.service
        if self.component:
            attrs["component.name"] = self.component
        if self.subscription_id:
            attrs["junglebus.subscription_id"] = self.subscription_id
        if self.channel:
            attrs["junglebus.channel"] = self.channel
        if self.stream:
            attrs["junglebus.stream"] = self.stream
        return attrs

    def child(self, **overrides: str) -> "LogContext":
        """Derive a child context, inheriting parent values for unspecified fields."""
        return LogContext(**{**asdict(self), **overrides})


def format_log_record(record: LogRecord) -> str:
    """
    Format a LogRecord as a human-readable line.

    Format: YYYY-MM-DDTHH:MM:SSZ [LEVEL] [subscription/channel] source\\t: body\\n
    """
    timestamp_ns = record.timestamp or 0
    timestamp_str = datetime.fromtimestamp(timestamp_ns / 1e9, tz=UTC).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )
    attrs = record.attributes or {}
    source = attrs.get("log.source", "Unknown")
    subscription_id = attrs.get("junglebus.subscription_id", "")
    channel = attrs.get("junglebus.channel", "")

    parts = [p for p in (subscription_id, channel) if p]
    dim_prefix = "[" + "/".join(str(v) for v in parts) + "] " if parts else ""

    return (
        f"{timestamp_str} [{record.severity_text}] "
        f"{dim_prefix}{source}\t: {record.body}\n"
    )


def format_log_record_json(record: LogRecord) -> str:
    """Format a LogRecord as a single JSON line."""
    timestamp_ns = record.timestamp or 0

    data = {
        "timestamp": datetime.fromtimestamp(timestamp_ns / 1e9, tz=UTC).isoformat(),
        "timestamp_ns": timestamp_ns,
        "severity_text": record.severity_text,
        "severity_number": record.severity_number.value
        if record.severity_number
        else None,
        "body": record.body,
        "attributes": dict(record.attributes) if record.attributes else {},
    }

    return json.dumps(data, default=str) + "\n"


class OTelLogger:
    """Thin wrapper for OTel Logger with convenient emit methods.

    Example:
        >>> logger = OTelLogger(provider.get_logger("rxjunglebus"), source="Sub")
        >>> logger.info("Subscribed", channel="query:abc:control")
        >>> child = logger.with_context(subscription_id="abc")
    """

    def __init__(
        self,
        logger,
        source: str,
        context: LogContext | None = None,
        min_severity: SeverityNumber | None = None,
    ):
        """Initialize OTel logger wrapper.

        Args:
            logger: OTel Logger instance from LoggerProvider.get_logger()
            source: Source identifier for log.source attribute
            context: Optional LogContext with dimensional attributes.
            min_severity: Optional minimum severity -- records below this
                level are silently dropped.
        """
        self._logger = logger
        self._source = source
        self._context = context or LogContext()
        self._min_severity = min_severity

    @property
    def context(self) -> LogContext:
        return self._context

    def info(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.INFO, "INFO", message, attrs)

    def debug(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.DEBUG, "DEBUG", message, attrs)

    def warning(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.WARN, "WARN", message, attrs)

    def error(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.ERROR, "ERROR", message, attrs)

    def with_context(self, **overrides) -> "OTelLogger":
        """Derive a child logger inheriting this logger's context with overrides.

        A ``source`` key is popped and used as the child's source string.
        """
        new_source = overrides.pop("source", self._source)
        return OTelLogger(
            self._logger,
            source=new_source,
            context=self._context.child(**overrides),
            min_severity=self._min_severity,
        )

    def _emit(
        self,
        severity_number: SeverityNumber,
        severity_text: str,
        message: str,
        attrs: dict,
    ) -> None:
        if self._min_severity and severity_number.value < self._min_severity.value:
            return
        merged = {
            "log.source": self._source,
            **self._context.as_attributes(),
            **attrs,
        }
        record = LogRecord(
            timestamp=time.time_ns(),
            body=message,
            severity_text=severity_text,
            severity_number=severity_number,
            attributes=merged,
        )
        self._logger.emit(record)
