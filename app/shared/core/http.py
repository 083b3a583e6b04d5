"""
Process-wide httpx.AsyncClient.

Gateway adapters and notification delivery share one connection pool. The
FastAPI lifespan opens it; workers that skip the lifespan get it lazily.
"""

from typing import Optional

import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

USER_AGENT = "rcommerce-dunning/0.1"

_client: Optional[httpx.AsyncClient] = None


def _build_client() -> httpx.AsyncClient:
    # Per-request timeouts (gateway charge, notification POST) override this.
    read_timeout = get_settings().DUNNING_GATEWAY_TIMEOUT_SECONDS
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(read_timeout, connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        headers={"User-Agent": USER_AGENT},
    )


def get_http_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        logger.warning("http_client_lazy_initialized")
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        return
    _client = _build_client()
    logger.info("http_client_initialized")


async def close_http_client() -> None:
    global _client
    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("http_client_closed")
