"""Embedded FastAPI/uvicorn endpoint exposing the test metrics."""

from __future__ import annotations

import asyncio
import errno
import logging
import signal
import socket
import time
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

import psutil
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from testpulse.registry import CONTENT_TYPE, MetricRegistry

__all__ = ["MetricsServer", "NoAvailablePortError", "bind_with_fallback", "create_app"]

LOGGER = logging.getLogger(__name__)

_STARTUP_POLL_SECONDS = 0.01


class NoAvailablePortError(OSError):
    """Every port in the fallback range was already taken."""


def bind_with_fallback(host: str, preferred_port: int, max_attempts: int = 10) -> socket.socket:
    """Bind a listening socket on ``preferred_port`` or the next free port after it."""

    if preferred_port == 0:
        max_attempts = 1
    last_port = preferred_port
    for offset in range(max_attempts):
        port = preferred_port + offset
        if port > 65535:
            break
        last_port = port
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(128)
        except OSError as exc:
            sock.close()
            if exc.errno != errno.EADDRINUSE:
                raise
            LOGGER.warning("Port %s is in use, trying port %s", port, port + 1)
            continue
        sock.setblocking(False)
        return sock
    raise NoAvailablePortError(
        errno.EADDRINUSE,
        f"No available port in range {preferred_port}-{last_port} after {max_attempts} attempts",
    )


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to its owner."""

    def install_signal_handlers(self) -> None:
        return None

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class MetricsServer:
    """One metrics endpoint: port binding, idle shutdown and graceful close."""

    def __init__(
        self,
        registry: MetricRegistry,
        *,
        host: str = "0.0.0.0",
        port: int = 9323,
        max_port_attempts: int = 10,
        idle_timeout: float = 300.0,
        drain_timeout: float = 5.0,
        on_closed: Callable[["MetricsServer"], None] | None = None,
    ) -> None:
        self.registry = registry
        self.host = host
        self.preferred_port = port
        self.max_port_attempts = max_port_attempts
        self.idle_timeout = idle_timeout
        self.drain_timeout = drain_timeout
        self._on_closed = on_closed
        self.app = create_app(self)

        self._port: int | None = None
        self._socket: socket.socket | None = None
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._idle_deadline: float | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = asyncio.Event()
        self._started_at: float | None = None

    @property
    def port(self) -> int:
        return self._port if self._port is not None else self.preferred_port

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._closing

    @property
    def closed(self) -> bool:
        return self._closing or self._closed.is_set()

    @property
    def keep_alive_remaining(self) -> float | None:
        if self._idle_deadline is None:
            return None
        return max(0.0, self._idle_deadline - time.monotonic())

    async def start(self) -> int:
        """Bind, serve in the background and return the bound port."""

        if self.is_running:
            return self.port
        if self.closed:
            raise RuntimeError("Metrics server has been closed; request a new instance")

        self._loop = asyncio.get_running_loop()
        self._socket = bind_with_fallback(self.host, self.preferred_port, self.max_port_attempts)
        self._port = self._socket.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]), name=f"metrics-server-{self._port}"
        )
        while not self._server.started:
            if self._serve_task.done():
                self._socket.close()
                self._serve_task.result()
                raise RuntimeError("Metrics server exited during startup")
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        self._started_at = time.monotonic()
        self._arm_idle_timer()
        LOGGER.info("Metrics server listening on %s:%s", self.host, self._port)
        return self._port

    def touch(self) -> None:
        """Push the idle deadline out after a successful scrape."""

        if self.is_running:
            self._arm_idle_timer()

    async def close(self, reason: str = "requested") -> None:
        """Shut down once; concurrent callers wait for the first close."""

        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        LOGGER.info("Closing metrics server on port %s (%s)", self.port, reason)
        self._cancel_idle_timer()
        try:
            await self._stop_serving()
        finally:
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            self.registry.reset()
            self._closed.set()
            LOGGER.info("Metrics server on port %s closed", self.port)
            if self._on_closed is not None:
                self._on_closed(self)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Close gracefully on SIGINT/SIGTERM; returns False where unsupported."""

        loop = loop or asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            LOGGER.debug("Signal handlers unavailable: %s", exc)
            return False
        return True

    def addresses(self) -> list[str]:
        if self.host not in {"0.0.0.0", ""}:
            return [f"http://{self.host}:{self.port}"]
        found = [f"http://localhost:{self.port}"]
        try:
            interfaces = psutil.net_if_addrs()
        except (psutil.Error, OSError) as exc:
            LOGGER.debug("Interface lookup failed: %s", exc)
            return found
        for entries in interfaces.values():
            for entry in entries:
                if entry.family == socket.AF_INET and not entry.address.startswith("127."):
                    found.append(f"http://{entry.address}:{self.port}")
        return found

    def info(self) -> dict[str, Any]:
        uptime = None if self._started_at is None else time.monotonic() - self._started_at
        return {
            "port": self.port,
            "addresses": self.addresses(),
            "keepAliveRemaining": self.keep_alive_remaining,
            "uptimeSeconds": uptime,
        }

    async def _stop_serving(self) -> None:
        if self._server is None or self._serve_task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(self._serve_task), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Metrics server did not drain within %.1fs; forcing exit", self.drain_timeout)
            self._server.force_exit = True
            with suppress(asyncio.CancelledError):
                await self._serve_task
        except Exception as exc:
            LOGGER.warning("Metrics server stopped with error: %s", exc)

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.idle_timeout <= 0 or self._loop is None:
            return
        self._idle_deadline = time.monotonic() + self.idle_timeout
        self._idle_handle = self._loop.call_later(self.idle_timeout, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        self._idle_deadline = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        LOGGER.info("No scrape for %.0fs; shutting down metrics server", self.idle_timeout)
        self._schedule_close("idle timeout")

    def _on_signal(self, sig: signal.Signals) -> None:
        LOGGER.info("Received %s", signal.Signals(sig).name)
        self._schedule_close(signal.Signals(sig).name)

    def _schedule_close(self, reason: str) -> None:
        if self._close_task is None and not self._closing and self._loop is not None:
            self._close_task = self._loop.create_task(self.close(reason))


def create_app(server: MetricsServer) -> FastAPI:
    app = FastAPI(title="testpulse metrics", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):  # type: ignore[no-untyped-def]
        LOGGER.debug("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.get("/metrics")
    async def metrics() -> Response:
        try:
            payload = server.registry.snapshot()
        except Exception as exc:
            LOGGER.exception("Failed to collect metrics")
            return JSONResponse(
                {"error": "Failed to collect metrics", "detail": str(exc)},
                status_code=500,
            )
        server.touch()
        return Response(content=payload, media_type=CONTENT_TYPE)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "port": server.port,
            "addresses": server.addresses(),
            "metricsEnabled": True,
            "keepAlive": server.idle_timeout,
        }

    @app.get("/debug")
    async def debug(request: Request) -> dict[str, Any]:
        families = server.registry.describe()
        return {
            "requestInfo": {
                "method": request.method,
                "url": str(request.url),
                "headers": dict(request.headers),
                "client": request.client.host if request.client else None,
            },
            "serverInfo": server.info(),
            "metricsCount": len(families),
            "metrics": families,
        }

    @app.post("/reset-metrics")
    async def reset_metrics() -> dict[str, str]:
        server.registry.reset()
        return {"message": "Metrics reset successfully"}

    return app
