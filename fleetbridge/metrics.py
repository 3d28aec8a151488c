"""Prometheus exposition of BridgeState counters.

The exporter is a minimal asyncio HTTP responder so it runs under the
daemon's task supervisor next to the MQTT link instead of in a thread.
Numeric leaves of the state snapshot become gauges; everything else is
folded into a single ``fleetbridge_info`` family keyed by snapshot path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Iterator
from http import HTTPStatus
from typing import Any

import msgspec
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

from .state.context import BridgeState

logger = logging.getLogger("fleetbridge.metrics")

METRIC_PREFIX = "fleetbridge"
INFO_METRIC = "fleetbridge_info"
SCRAPE_PATHS = frozenset({"/", "/metrics"})

_INVALID_METRIC_CHARS = re.compile(r"[^a-z0-9_]")
_PLAIN_TEXT = "text/plain; charset=utf-8"
_REQUEST_HEAD_TIMEOUT = 5.0


def flatten_snapshot(prefix: str, value: Any) -> Iterator[tuple[str, float | str]]:
    """Yield ``(path, leaf)`` pairs; bools and numbers come out as floats."""
    if isinstance(value, msgspec.Struct):
        value = msgspec.structs.asdict(value)
    if isinstance(value, dict):
        for key, child in value.items():
            yield from flatten_snapshot(f"{prefix}_{key}" if prefix else str(key), child)
    elif isinstance(value, (bool, int, float)):
        yield prefix, float(value)
    elif value is None:
        yield prefix, "null"
    else:
        yield prefix, str(value)


def metric_name(path: str) -> str:
    name = _INVALID_METRIC_CHARS.sub("_", path.lower()).strip("_")
    if not name:
        return "fleetbridge_metric"
    return f"_{name}" if name[0].isdigit() else name


class BridgeStateCollector(Collector):
    """Projects a fresh BridgeState snapshot on every scrape."""

    def __init__(self, state: BridgeState) -> None:
        self._state = state

    def collect(self) -> Iterator[Any]:
        info = InfoMetricFamily(INFO_METRIC, "Non-numeric Fleet Bridge state", labels=("key",))
        has_info = False
        for path, leaf in flatten_snapshot(METRIC_PREFIX, self._state.build_metrics_snapshot()):
            if isinstance(leaf, float):
                yield GaugeMetricFamily(metric_name(path), "Fleet Bridge runtime counter", value=leaf)
            else:
                info.add_metric((path,), {"value": leaf})
                has_info = True
        if has_info:
            yield info


class PrometheusExporter:
    """Serves ``GET /metrics`` from a private collector registry."""

    def __init__(self, state: BridgeState, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None
        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(BridgeStateCollector(state))

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._serve_client, host=self._host, port=self._port)
        logger.info("Prometheus exporter listening on %s:%d", self._host, self.port)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("Prometheus exporter stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    def render(self) -> bytes:
        return generate_latest(self.registry)

    def respond(self, request_head: bytes) -> tuple[HTTPStatus, bytes, str]:
        """Map a raw request head onto ``(status, body, content type)``."""
        request_line = request_head.split(b"\r\n", 1)[0].decode("latin-1")
        parts = request_line.split()
        if len(parts) < 2:
            return HTTPStatus.BAD_REQUEST, b"", _PLAIN_TEXT
        method, path = parts[0], parts[1].split("?", 1)[0]
        if method != "GET":
            return HTTPStatus.METHOD_NOT_ALLOWED, b"", _PLAIN_TEXT
        if path not in SCRAPE_PATHS:
            return HTTPStatus.NOT_FOUND, b"", _PLAIN_TEXT
        return HTTPStatus.OK, self.render(), CONTENT_TYPE_LATEST

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=_REQUEST_HEAD_TIMEOUT)
            status, body, content_type = self.respond(head)
            writer.write(
                (
                    f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                    f"Content-Type: {content_type}\r\n"
                    f"Content-Length: {len(body)}\r\n"
                    "Connection: close\r\n\r\n"
                ).encode("latin-1")
                + body
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, asyncio.TimeoutError) as exc:
            logger.debug("Dropping incomplete metrics request: %s", exc)
        except OSError as exc:
            logger.warning("Metrics client connection failed: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()


__all__ = ["BridgeStateCollector", "PrometheusExporter", "flatten_snapshot", "metric_name"]
