"""
Same-origin WebDAV relay.

Hosts that cannot talk to a WebDAV server directly (browser pages bound by
CORS) send their requests here instead:

    <METHOD> /api/webdav?url=<encoded target>

The relay forwards a whitelist of headers and the raw body, then mirrors
the upstream status and content type back. Some hosting platforms reject
``PROPFIND``; clients send it as ``POST`` with an ``X-Dav-Method`` header,
which the relay turns back into the real method before forwarding.

Usage:
    cloudmark relay --port 8765
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from cloudmark.constants import RELAY_FORWARD_HEADERS, RELAY_METHOD_HEADER, RELAY_PATH

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET,PUT,DELETE,PROPFIND,OPTIONS',
    'Access-Control-Allow-Headers': (
        'Authorization, Content-Type, Depth, Destination, Overwrite, '
        'If-Modified-Since, If-None-Match, If-Match, Range, x-dav-method'
    ),
}

RELAY_METHODS = ["GET", "HEAD", "PUT", "DELETE", "POST", "PROPFIND", "OPTIONS"]

# (method, url, headers, body) -> (status, content_type, body)
Forwarder = Callable[[str, str, Dict[str, str], Optional[bytes]], Awaitable[Tuple[int, str, bytes]]]


async def aiohttp_forward(method: str, url: str, headers: Dict[str, str],
                          body: Optional[bytes]) -> Tuple[int, str, bytes]:
    """Send the request upstream with aiohttp."""
    async with aiohttp.ClientSession() as session:
        async with session.request(method, url, headers=headers, data=body) as response:
            content_type = response.headers.get('Content-Type', 'application/octet-stream')
            return response.status, content_type, await response.read()


def create_relay_app(forward: Optional[Forwarder] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        forward: Upstream transport, injectable for tests

    Returns:
        FastAPI app serving the relay endpoint
    """
    forward = forward or aiohttp_forward
    app = FastAPI(
        title="cloudmark relay",
        description="Same-origin relay for WebDAV requests",
        version="1.0.0"
    )

    @app.api_route(RELAY_PATH, methods=RELAY_METHODS)
    async def relay(request: Request, url: Optional[str] = None):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)

        if not url:
            return JSONResponse({'ok': False, 'error': 'Missing url'}, status_code=400,
                                headers=CORS_HEADERS)

        body = None
        if request.method not in ("GET", "HEAD"):
            body = await request.body() or None

        forward_headers = {
            name: request.headers[name]
            for name in RELAY_FORWARD_HEADERS
            if name in request.headers
        }

        override = request.headers.get(RELAY_METHOD_HEADER, "").strip().upper()
        method = override or request.method

        try:
            status, content_type, payload = await forward(method, url, forward_headers, body)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Relay {method} {url} failed: {e}")
            return JSONResponse({'ok': False, 'error': str(e)}, status_code=502,
                                headers=CORS_HEADERS)

        logger.info(f"Relay {method} {url} -> {status}")
        return Response(content=payload, status_code=status, media_type=content_type,
                        headers=CORS_HEADERS)

    return app


def run_relay(host: str = "127.0.0.1", port: int = 8765, log_level: str = "info"):
    """Serve the relay with uvicorn (blocking)."""
    import uvicorn

    uvicorn.run(create_relay_app(), host=host, port=port, log_level=log_level.lower())
