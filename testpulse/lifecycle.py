"""Process-wide ownership of the metrics server and its event loop."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable

from testpulse.metrics import TestMetrics, build_registry
from testpulse.registry import MetricRegistry
from testpulse.reporter import MetricsRecorder, RunEvent
from testpulse.server import MetricsServer
from testpulse.settings import MetricsSettings

__all__ = ["MetricsHost", "ServerDirectory", "ServerHandle"]

LOGGER = logging.getLogger(__name__)

ServerFactory = Callable[[int, Callable[[MetricsServer], None]], MetricsServer]


class ServerDirectory:
    """At most one live :class:`MetricsServer` per process.

    Owned by the composition root. Servers leave the directory when they
    close, so the next ``start()`` through any handle builds a fresh one.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        settings: MetricsSettings,
        *,
        factory: ServerFactory | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self._factory = factory or self._default_factory
        self._servers: dict[int, MetricsServer] = {}
        self._lock = threading.Lock()

    def get_instance(self, preferred_port: int | None = None) -> "ServerHandle":
        return ServerHandle(self, preferred_port)

    def current(self) -> MetricsServer | None:
        with self._lock:
            return self._servers.get(os.getpid())

    def ensure(self, preferred_port: int | None = None) -> MetricsServer:
        pid = os.getpid()
        with self._lock:
            server = self._servers.get(pid)
            if server is None or server.closed:
                port = self.settings.port if preferred_port is None else preferred_port
                server = self._factory(port, self._release)
                self._servers[pid] = server
            return server

    def _release(self, server: MetricsServer) -> None:
        with self._lock:
            pid = os.getpid()
            if self._servers.get(pid) is server:
                del self._servers[pid]

    def _default_factory(self, port: int, on_closed: Callable[[MetricsServer], None]) -> MetricsServer:
        return MetricsServer(
            self.registry,
            host=self.settings.host,
            port=port,
            max_port_attempts=self.settings.max_port_attempts,
            idle_timeout=self.settings.idle_timeout_seconds,
            drain_timeout=self.settings.drain_timeout_seconds,
            on_closed=on_closed,
        )


class ServerHandle:
    """Delegates to whichever server the directory currently holds."""

    def __init__(self, directory: ServerDirectory, preferred_port: int | None = None) -> None:
        self._directory = directory
        self._preferred_port = preferred_port

    @property
    def server(self) -> MetricsServer | None:
        return self._directory.current()

    @property
    def port(self) -> int | None:
        server = self.server
        return server.port if server is not None and server.is_running else None

    @property
    def is_running(self) -> bool:
        server = self.server
        return server is not None and server.is_running

    async def start(self) -> int:
        return await self._directory.ensure(self._preferred_port).start()

    async def close(self, reason: str = "requested") -> None:
        server = self.server
        if server is not None:
            await server.close(reason)


class MetricsHost:
    """Runs the metrics server and the event consumer on a background loop.

    Test runners call hooks synchronously; :meth:`emit` hands each event to
    the loop thread, where the recorder applies it.
    """

    def __init__(
        self,
        settings: MetricsSettings,
        *,
        port: int | None = None,
        registry: MetricRegistry | None = None,
        metrics: TestMetrics | None = None,
        startup_timeout: float = 10.0,
    ) -> None:
        if registry is None or metrics is None:
            registry, metrics = build_registry(include_process_metrics=settings.include_process_metrics)
        self.settings = settings
        self.registry = registry
        self.metrics = metrics
        self.directory = ServerDirectory(registry, settings)
        self.recorder = MetricsRecorder(metrics)
        self.handle = self.directory.get_instance(port)
        self._startup_timeout = startup_timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._queue: asyncio.Queue[RunEvent | None] | None = None
        self._consumer: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self) -> int:
        """Start the loop thread, the consumer and the server; return the port."""

        if self.running:
            raise RuntimeError("Metrics host already started")
        loop = asyncio.new_event_loop()
        self._loop = loop
        self._thread = threading.Thread(target=self._run_loop, name="testpulse-metrics", daemon=True)
        self._thread.start()
        future = asyncio.run_coroutine_threadsafe(self._startup(), loop)
        try:
            port = future.result(timeout=self._startup_timeout)
        except BaseException:
            self._stop_loop()
            raise
        return port

    def emit(self, event: RunEvent) -> None:
        if self._loop is None or self._queue is None or self._loop.is_closed():
            LOGGER.debug("Metrics host not running; dropping %s", type(event).__name__)
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def stop(self, grace: float = 0.0, timeout: float = 30.0) -> None:
        """Drain pending events, hold for ``grace`` seconds, then close."""

        if self._loop is None:
            return
        future = asyncio.run_coroutine_threadsafe(self._shutdown(grace), self._loop)
        try:
            future.result(timeout=grace + timeout)
        except FutureTimeoutError:
            LOGGER.warning("Metrics host did not shut down within %.1fs", grace + timeout)
        finally:
            self._stop_loop()

    def _run_loop(self) -> None:
        loop = self._loop
        if loop is None:
            raise RuntimeError("Metrics host loop was not created")
        asyncio.set_event_loop(loop)
        loop.run_forever()

    async def _startup(self) -> int:
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self.recorder.consume(self._queue))
        try:
            return await self.handle.start()
        except BaseException:
            self._consumer.cancel()
            raise

    async def _shutdown(self, grace: float) -> None:
        if self._queue is not None and self._consumer is not None:
            await self._queue.join()
            if grace > 0:
                LOGGER.info("Holding metrics server for %.1fs for a final scrape", grace)
                await asyncio.sleep(grace)
            await self._queue.put(None)
            await self._consumer
        await self.handle.close("run finished")

    def _stop_loop(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is None:
            return
        if loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5.0)
        if not loop.is_running():
            loop.close()
        self._loop = None
        self._thread = None
        self._queue = None
        self._consumer = None
