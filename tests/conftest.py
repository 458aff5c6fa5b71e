"""Shared test fixtures for rxjunglebus tests."""

import base64
from unittest.mock import MagicMock

import pytest
from opentelemetry.sdk._logs.export import InMemoryLogExporter
from reactivex.testing import TestScheduler

from rxjunglebus import JungleBusSubscription, LocalTransport
from rxjunglebus.telemetry import OTelLogger, configure_telemetry


def tx_payload(tx_id: str, body: bytes = b"", proof: bytes = b"", block: int = 0) -> dict:
    """JSON publication for a transaction, binary fields base64 encoded."""
    payload = {
        "id": tx_id,
        "block_hash": "00" * 32 if block else "",
        "block_height": block,
        "block_index": 0,
        "block_time": 1700000000 if block else 0,
    }
    if body:
        payload["transaction"] = base64.b64encode(body).decode()
    if proof:
        payload["merkle_proof"] = base64.b64encode(proof).decode()
    return payload


def control_payload(status_code: int, status: str = "", block: int = 0, message: str = "") -> dict:
    return {
        "statusCode": status_code,
        "status": status,
        "message": message,
        "block": block,
        "transactions": 0,
    }


@pytest.fixture
def log_exporter():
    return InMemoryLogExporter()


@pytest.fixture
def logger_provider(log_exporter):
    return configure_telemetry(
        service_name="rxjunglebus-tests", log_exporter=log_exporter, batch_logs=False
    )


@pytest.fixture
def otel_logger():
    """OTelLogger over a mock; records are inspectable via ``emit`` calls."""
    return OTelLogger(MagicMock(), source="Test")


@pytest.fixture
def scheduler():
    return TestScheduler()


@pytest.fixture
def transport(logger_provider):
    t = LocalTransport(logger_provider=logger_provider)
    t.connect()
    return t


@pytest.fixture
def make_subscription(transport, scheduler, logger_provider):
    """Factory for subscriptions wired to the local transport and virtual time."""

    def _make(subscription_id: str = "abc", from_block: int = 100, **kwargs):
        kwargs.setdefault("scheduler", scheduler)
        kwargs.setdefault("logger_provider", logger_provider)
        return JungleBusSubscription(transport, subscription_id, from_block, **kwargs)

    return _make
