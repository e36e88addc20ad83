"""
Health check HTTP server for transcoding workers.

Provides Kubernetes-compatible endpoints:
- /health (liveness): Process is running
- /ready (readiness): Broker and database reachable, ffmpeg installed
- /metrics: Prometheus text format

Runs on port 8080 by default (configurable via VSP_WORKER_HEALTH_PORT).
"""

import asyncio
import json
import logging
import shutil
from http import HTTPStatus
from typing import Awaitable, Callable, Dict, Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST

from config import FFMPEG_PATH, WORKER_HEALTH_PORT
from pipeline.metrics import get_metrics

logger = logging.getLogger(__name__)

ReadinessCheck = Callable[[], Awaitable[bool]]


class HealthServer:
    """Simple async HTTP server for liveness/readiness probes and metrics."""

    def __init__(
        self,
        port: int = WORKER_HEALTH_PORT,
        checks: Optional[Dict[str, ReadinessCheck]] = None,
        host: str = "0.0.0.0",
    ):
        """
        Args:
            port: Port to listen on
            checks: Named async callbacks that return True when healthy;
                an ffmpeg availability check is always included
            host: Interface to bind
        """
        self.port = port
        self.host = host
        self.checks: Dict[str, ReadinessCheck] = {"ffmpeg": self._check_ffmpeg}
        self.checks.update(checks or {})
        self._server: Optional[asyncio.Server] = None
        self._accepting_jobs = True

    def set_accepting_jobs(self, accepting: bool):
        """Mark the worker as draining (not ready) during shutdown."""
        self._accepting_jobs = accepting

    async def _check_ffmpeg(self) -> bool:
        return shutil.which(FFMPEG_PATH) is not None

    async def readiness(self) -> Tuple[bool, Dict[str, bool]]:
        results: Dict[str, bool] = {"accepting_jobs": self._accepting_jobs}
        for name, check in self.checks.items():
            try:
                results[name] = bool(await check())
            except Exception as e:
                logger.debug(f"Readiness check {name} raised: {e}")
                results[name] = False
        return all(results.values()), results

    async def route(self, path: str) -> Tuple[HTTPStatus, str, bytes]:
        """Status, content type and body for a request path."""
        if path == "/health":
            return HTTPStatus.OK, "application/json", b'{"status": "alive"}'
        if path == "/ready":
            ok, results = await self.readiness()
            body = json.dumps({"status": "ready" if ok else "not_ready", "checks": results})
            status = HTTPStatus.OK if ok else HTTPStatus.SERVICE_UNAVAILABLE
            return status, "application/json", body.encode()
        if path == "/metrics":
            return HTTPStatus.OK, CONTENT_TYPE_LATEST, get_metrics()
        if path == "/":
            return HTTPStatus.OK, "application/json", b'{"service": "vsp-transcoder"}'
        return HTTPStatus.NOT_FOUND, "application/json", b'{"error": "not found"}'

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            status, content_type, body = await self.route(path.split("?", 1)[0])
            head = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(head.encode() + body)
            await writer.drain()

        except asyncio.TimeoutError:
            pass
        except Exception as e:
            logger.warning(f"Health server error: {e}")
            body = b'{"error": "server error"}'
            writer.write(
                b"HTTP/1.1 500 Internal Server Error\r\n"
                b"Content-Type: application/json\r\n"
                + f"Content-Length: {len(body)}\r\n".encode()
                + b"Connection: close\r\n\r\n"
                + body
            )
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def start(self):
        self._server = await asyncio.start_server(self._handle_request, self.host, self.port)
        logger.info(f"Health server listening on port {self.port}")

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
