"""Minimal async HTTP endpoint for container healthchecks.

Serves /health (DB probe plus counters) and /metrics (counters only)
on raw asyncio.start_server.
"""

import asyncio
import json
import logging

import psycopg

from .metrics import get_metrics

logger = logging.getLogger(__name__)

_HTTP_200 = "HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
_HTTP_503 = "HTTP/1.1 503 Service Unavailable\r\nContent-Type: application/json\r\n"
_HTTP_404 = "HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\n"


async def _check_db(db_url: str) -> str:
    """SELECT 1 within 2s. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except (OSError, TimeoutError, psycopg.Error):
        logger.warning("Health DB probe failed", exc_info=True)
        return "error"


def _response(status_line: str, payload: dict) -> bytes:
    body = json.dumps(payload)
    return f"{status_line}Content-Length: {len(body)}\r\n\r\n{body}".encode()


async def render_path(path: str, db_url: str) -> bytes:
    if path == "/health":
        db_status = await _check_db(db_url)
        metrics = get_metrics()
        status = "ok" if db_status == "ok" else "degraded"
        return _response(
            _HTTP_200 if status == "ok" else _HTTP_503,
            {
                "status": status,
                "uptime_seconds": metrics["uptime_seconds"],
                "db": db_status,
                "metrics": metrics,
            },
        )
    if path == "/metrics":
        return _response(_HTTP_200, get_metrics())
    return _response(_HTTP_404, {"error": "not_found"})


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        writer.write(await render_path(path, db_url))
        await writer.drain()
    except (OSError, TimeoutError):
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
