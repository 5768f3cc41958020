"""
Sliding-window aggregation of block headers for the chain dashboard.

The ingestion path calls ``apply`` once per header in arrival order; the
render path reads ``snapshot()``. Both go through one lock, so a snapshot
never sees a header half-applied.
"""

import collections
import logging
import threading
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Gauge

from monitor.config import DashboardConfig
from monitor.errors import AggregatorFaulted, StreamFault

log = logging.getLogger("aggregator")

# ── Constants ────────────────────────────────────────────────────────────────

# Fixed scaling, kept for comparability with earlier dashboards.
GAS_LIMIT_DIVISOR = 1_000_000
GAS_USED_DIVISOR = 100


# ── Bounded buffers ──────────────────────────────────────────────────────────

class BoundedSeries:
    """FIFO window of integer samples, oldest first."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._samples = collections.deque(maxlen=capacity)

    def append(self, sample: int):
        # deque(maxlen) drops from the left when full
        self._samples.append(int(sample))

    def values(self) -> tuple:
        return tuple(self._samples)

    def __len__(self):
        return len(self._samples)


class LogBuffer:
    """Console lines sized from the panel height.

    The oldest line is dropped once the buffer holds more than
    ``height - margin`` lines, so at most ``height - margin + 1`` are kept.
    """

    def __init__(self, height: int, margin: int):
        self.height = height
        self.margin = margin
        self._lines = collections.deque()

    @property
    def max_lines(self) -> int:
        return self.height - self.margin + 1

    def append(self, line: str):
        if len(self._lines) > self.height - self.margin:
            self._lines.popleft()
        self._lines.append(line)

    def lines(self) -> tuple:
        return tuple(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)

    def __len__(self):
        return len(self._lines)


# ── Prometheus Metrics ───────────────────────────────────────────────────────

class AggregatorMetrics:
    """Latest-value mirror of the aggregator, for scraping."""

    def __init__(self, registry: CollectorRegistry):
        self.block_height = Gauge(
            "chainmon_block_height", "Number of the latest block seen", registry=registry,
        )
        self.gas_limit = Gauge(
            "chainmon_gas_limit_millions",
            "Gas limit of the latest block, in millions of gas",
            registry=registry,
        )
        self.gas_used = Gauge(
            "chainmon_gas_used_hundreds",
            "Gas used by the latest block, divided by 100",
            registry=registry,
        )
        self.block_time = Gauge(
            "chainmon_block_time_seconds",
            "Seconds between the latest block and its predecessor",
            registry=registry,
        )
        self.blocks_total = Counter(
            "chainmon_blocks_total", "Total block headers processed", registry=registry,
        )


# ── Aggregator ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Snapshot:
    gas_limit: tuple
    gas_used: tuple
    block_time: tuple
    log_lines: tuple
    blocks_seen: int
    last_number: int | None
    faulted: bool

    @property
    def log_text(self) -> str:
        return "\n".join(self.log_lines)


class MetricsAggregator:
    """Owns the dashboard state derived from the header stream."""

    def __init__(self, config: DashboardConfig | None = None,
                 registry: CollectorRegistry | None = None):
        self.config = config or DashboardConfig()
        self.registry = registry if registry is not None else CollectorRegistry()
        self.metrics = AggregatorMetrics(self.registry)

        self._lock = threading.Lock()
        self._gas_limit = BoundedSeries(self.config.series_capacity)
        self._gas_used = BoundedSeries(self.config.series_capacity)
        self._block_time = BoundedSeries(self.config.series_capacity)
        self._log = LogBuffer(self.config.log_height, self.config.log_margin)

        self._last_header = None
        self._blocks_seen = 0
        self._error = None

    @property
    def faulted(self) -> bool:
        return self._error is not None

    @property
    def error(self):
        return self._error

    async def start(self, feed):
        """Consume ``feed`` until it faults. Always ends by raising StreamFault."""
        if self.faulted:
            raise AggregatorFaulted("aggregator already faulted") from self._error
        try:
            async for header in feed.headers():
                self.apply(header)
        except StreamFault as e:
            self._mark_faulted(e)
            raise
        fault = StreamFault("header subscription closed")
        self._mark_faulted(fault)
        raise fault

    def _mark_faulted(self, error: StreamFault):
        with self._lock:
            self._error = error
        log.error("Header stream fault after %d blocks: %s", self._blocks_seen, error)

    def apply(self, header):
        """Fold one header into the series and the console log."""
        with self._lock:
            if self._error is not None:
                raise AggregatorFaulted(
                    f"refusing block {header.number}: stream already faulted"
                )

            gas_limit = header.gas_limit // GAS_LIMIT_DIVISOR
            gas_used = header.gas_used // GAS_USED_DIVISOR
            self._gas_limit.append(gas_limit)
            self._gas_used.append(gas_used)

            block_time = None
            if self._last_header is not None:
                block_time = header.timestamp - self._last_header.timestamp
                self._block_time.append(block_time)

            self._log.append(f"Added block: {header.number} {header.hash_prefix}")
            self._last_header = header
            self._blocks_seen += 1

        self.metrics.block_height.set(header.number)
        self.metrics.gas_limit.set(gas_limit)
        self.metrics.gas_used.set(gas_used)
        if block_time is not None:
            self.metrics.block_time.set(block_time)
        self.metrics.blocks_total.inc()
        log.debug(
            "block=%d gas_limit=%dM gas_used=%d block_time=%s",
            header.number, gas_limit, gas_used, block_time,
        )

    def writeln(self, *parts):
        """Append a console line. Dropped once the stream has faulted."""
        with self._lock:
            if self._error is None:
                self._log.append("".join(str(p) for p in parts))

    def writef(self, fmt: str, *args):
        with self._lock:
            if self._error is None:
                self._log.append(fmt % args)

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                gas_limit=self._gas_limit.values(),
                gas_used=self._gas_used.values(),
                block_time=self._block_time.values(),
                log_lines=self._log.lines(),
                blocks_seen=self._blocks_seen,
                last_number=self._last_header.number if self._last_header else None,
                faulted=self._error is not None,
            )
