"""OTel metrics helper for subscription components.

Provides :class:`MetricsHelper`, a convenience wrapper around an OTel
``Meter`` for creating counters and histograms.
"""

from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider


class MetricsHelper:
    """Convenience wrapper around an OTel ``Meter``.

    Args:
        meter_provider: The :class:`MeterProvider` to obtain a meter from.
        instrumentation_name: Identifies the instrumentation library (usually
            the module or class name, e.g. ``"rxjunglebus.subscription"``).

    Example::

        helper = MetricsHelper(meter_provider, "rxjunglebus.subscription")
        inbound = helper.counter(
            "junglebus.publications.inbound",
            description="Publications received per stream",
        )
        inbound.add(1, {"stream": "data"})
    """

    def __init__(self, meter_provider: MeterProvider, instrumentation_name: str):
        self._meter: Meter = meter_provider.get_meter(instrumentation_name)

    def counter(
        self,
        name: str,
        description: str = "",
        unit: str = "1",
    ) -> Counter:
        """Create (or retrieve) a monotonic counter instrument."""
        return self._meter.create_counter(name, description=description, unit=unit)

    def histogram(
        self,
        name: str,
        description: str = "",
        unit: str = "ms",
    ) -> Histogram:
        """Create (or retrieve) a histogram instrument."""
        return self._meter.create_histogram(name, description=description, unit=unit)
