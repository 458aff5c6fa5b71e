"""OTel log-record exporter for console output."""

import sys
from collections.abc import Sequence
from typing import Any, Literal, TextIO

from opentelemetry.sdk._logs.export import (
    LogRecordExporter,
    LogRecordExportResult,
)

from .logger import format_log_record, format_log_record_json

LOG_FORMAT = Literal["text", "json"]


class ConsoleLogRecordExporter(LogRecordExporter):
    """OTel LogRecordExporter that writes CLI-friendly lines to a stream.

    Unlike OTel's ConsoleLogExporter which outputs verbose JSON, the default
    ``"text"`` format is one short line per record:

        2026-02-03T10:30:00Z [INFO] [abc/query:abc:control] JungleBusSubscription: Subscribed

    Args:
        format: ``"text"`` (default) or ``"json"`` (one JSON object per line).
        stream: Target stream. Defaults to ``sys.stderr`` resolved at export
            time so redirection in tests is honoured.
    """

    def __init__(self, format: LOG_FORMAT = "text", stream: TextIO | None = None):
        self._formatter = (
            format_log_record_json if format == "json" else format_log_record
        )
        self._stream = stream

    def _target(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def export(self, batch: Sequence[Any]) -> LogRecordExportResult:
        """Export log records; each batch item exposes ``.log_record``."""
        try:
            target = self._target()
            for readable_record in batch:
                target.write(self._formatter(readable_record.log_record))
            target.flush()
            return LogRecordExportResult.SUCCESS
        except Exception:
            return LogRecordExportResult.FAILURE

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        self._target().flush()
        return True
