"""Tests for the CLI entry point and the ingest/render task wiring."""

import asyncio
import logging

import pytest

from clients.header_feed import BlockHeader, HeaderFeed
from monitor import chain_monitor
from monitor.aggregator import MetricsAggregator
from monitor.errors import SetupError, StreamFault


def make_header(number):
    return BlockHeader(number, bytes(32), 8_000_000, 100_000, 100 + number)


class ScriptedFeed:
    def __init__(self, headers, fault=None, hang=False):
        self._headers = headers
        self._fault = fault
        self._hang = hang
        self.closed = False

    async def headers(self):
        for h in self._headers:
            yield h
        if self._hang:
            await asyncio.Event().wait()
        raise self._fault

    def close(self):
        self.closed = True


class StubDashboard:
    def __init__(self, quit_after=None):
        self.quit_after = quit_after
        self.cancelled = False

    async def run(self):
        try:
            if self.quit_after is None:
                await asyncio.Event().wait()
            await asyncio.sleep(self.quit_after)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class TestUsage:
    def test_missing_endpoint_prints_usage_and_exits_1(self, monkeypatch, capsys):
        async def no_dial(*args, **kwargs):
            raise AssertionError("feed must not be dialed")

        monkeypatch.setattr(HeaderFeed, "connect", no_dial)
        monkeypatch.setattr("sys.argv", ["chainmon"])

        with pytest.raises(SystemExit) as excinfo:
            chain_monitor.main([])

        assert excinfo.value.code == 1
        out = capsys.readouterr().out
        assert out.strip() == "usage: chainmon /path/to/socket"

    def test_parse_args_flags(self):
        args = chain_monitor.parse_args(["/tmp/geth.ipc", "--metrics-port", "9100"])
        assert args.endpoint == "/tmp/geth.ipc"
        assert args.metrics_port == 9100
        assert args.log_level == "INFO"
        assert args.log_file is None


class TestFatalErrors:
    def test_setup_error_exits_nonzero(self, monkeypatch, caplog):
        async def refuse(endpoint, timeout=10.0):
            raise SetupError(f"{endpoint}: connection refused")

        monkeypatch.setattr(HeaderFeed, "connect", refuse)

        with caplog.at_level(logging.ERROR, logger="chain_monitor"):
            with pytest.raises(SystemExit) as excinfo:
                chain_monitor.main(["/tmp/missing.ipc"])

        assert excinfo.value.code == 1
        assert "setup error: /tmp/missing.ipc: connection refused" in caplog.text


class TestRunDashboard:
    def test_stream_fault_stops_renderer(self):
        agg = MetricsAggregator()
        feed = ScriptedFeed([make_header(1), make_header(2), make_header(3)],
                            fault=StreamFault("reset by peer"))
        dash = StubDashboard()

        with pytest.raises(StreamFault, match="reset by peer"):
            asyncio.run(chain_monitor.run_dashboard(agg, feed, dash))

        assert dash.cancelled
        assert agg.snapshot().blocks_seen == 3

    def test_quit_cancels_ingestion(self):
        agg = MetricsAggregator()
        feed = ScriptedFeed([make_header(1)], hang=True)
        dash = StubDashboard(quit_after=0.05)

        asyncio.run(chain_monitor.run_dashboard(agg, feed, dash))

        assert not agg.faulted
        assert agg.snapshot().blocks_seen == 1
