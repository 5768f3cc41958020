"""Fatal error kinds for chainmon. None of them is retried."""


class ChainMonitorError(Exception):
    """Base class; ``kind`` is the label used in the exit diagnostic."""

    kind = "error"


class UsageError(ChainMonitorError):
    kind = "usage error"


class SetupError(ChainMonitorError):
    """The node endpoint could not be dialed or subscribed to."""

    kind = "setup error"


class StreamFault(ChainMonitorError):
    """An established header subscription terminated abnormally."""

    kind = "stream fault"


class RenderInitError(ChainMonitorError):
    kind = "render init error"


class AggregatorFaulted(ChainMonitorError):
    """Mutation attempted on an aggregator that already saw a stream fault."""

    kind = "aggregator faulted"
