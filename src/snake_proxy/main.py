# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from loguru import logger
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

import snake_proxy
from snake_proxy.config import ProxyConfig, load_config
from snake_proxy.exceptions import ConfigurationError, ProxyError
from snake_proxy.proxy import ProxyService
from snake_proxy.rotation import RotationState
from snake_proxy.telemetry import configure_telemetry

CONNECTIVITY_CHECK_URL = "https://gateway.ai.cloudflare.com"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def upstream_timeout() -> float:
    return _env_float("SNAKE_UPSTREAM_TIMEOUT", 120.0)


def stream_pacing() -> float:
    return _env_float("SNAKE_STREAM_PACING_MS", 30.0) / 1000.0


def create_app(
    config: Optional[ProxyConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    pacing: Optional[float] = None,
) -> FastAPI:
    """
    Builds the proxy application.

    Args:
        config: Validated configuration. Loaded from SNAKE_CONFIG on startup when omitted.
        transport: Optional HTTPX transport for the shared upstream client.
        pacing: Seconds between synthesized word frames. Defaults to SNAKE_STREAM_PACING_MS.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Builds the rotation state and a shared HTTP client on startup,
        closes the client on shutdown.
        """
        proxy_config = config or load_config()
        rotation = RotationState.from_config(proxy_config)

        app.state.config = proxy_config
        app.state.rotation = rotation
        app.state.proxy_service = ProxyService(
            rotation,
            compat_path=proxy_config.compat_path,
            stream_pacing=stream_pacing() if pacing is None else pacing,
        )
        app.state.http_client = httpx.AsyncClient(timeout=upstream_timeout(), transport=transport)
        logger.info(f"Snake proxy v{snake_proxy.__version__} ready ({len(rotation.gateways)} gateway(s))")
        yield
        await app.state.http_client.aclose()

    app = FastAPI(title="Snake Cloudflare AI Gateway Proxy", lifespan=lifespan)

    @app.exception_handler(ProxyError)  # type: ignore[misc]
    async def proxy_error_handler(request: Request, exc: ProxyError) -> PlainTextResponse:
        status_code = exc.status_code or 500
        if status_code >= 500:
            logger.error(f"Bad Gateway: {exc.message}")
        else:
            logger.error(f"Bad Request: {exc.message}")
        return PlainTextResponse(exc.message, status_code=status_code)

    async def proxy_handler(request: Request) -> Response:
        """Catch-all endpoint. Every method and path is forwarded to the next gateway."""
        service: ProxyService = request.app.state.proxy_service
        client: httpx.AsyncClient = request.app.state.http_client
        return await service.forward_request(request, client)

    # A plain route with no method list matches TRACE and extension methods too
    app.add_route("/{path:path}", proxy_handler, include_in_schema=False)

    FastAPIInstrumentor.instrument_app(app)
    return app


app = create_app()


def check_connectivity(url: str = CONNECTIVITY_CHECK_URL, timeout: float = 10.0) -> None:
    """
    Verifies the gateway host is reachable before the server starts.

    Raises:
        ConfigurationError: If the host cannot be reached or answers with an error status.
    """
    logger.info(f"Testing network connectivity to {url}...")
    try:
        response = httpx.head(url, timeout=timeout)
    except httpx.HTTPError as e:
        raise ConfigurationError(f"Cannot reach Cloudflare AI Gateway at {url}: {e}") from e

    if not (response.is_success or 300 <= response.status_code < 400):
        raise ConfigurationError(f"Cannot reach Cloudflare AI Gateway at {url}: HTTP {response.status_code}")
    logger.info(f"Network connectivity test passed (status: {response.status_code})")


@logger.catch(reraise=True)  # type: ignore[misc]
def run_server() -> None:
    """Entry point for the snake-proxy command. Configured via config.toml and ENV."""
    configure_telemetry()
    logger.info(f"Starting Cloudflare AI Gateway Proxy v{snake_proxy.__version__}")

    config = load_config()
    if os.environ.get("SNAKE_CONNECTIVITY_CHECK", "true").lower() not in ("0", "false", "no"):
        check_connectivity()

    host = os.environ.get("SNAKE_HOST", "0.0.0.0")
    port = config.listen_port
    logger.info(f"Local endpoint: {'https' if config.https_server else 'http'}://{host}:{port}/v1/chat/completions")

    ssl_options = {}
    if config.https_server:
        ssl_options = {"ssl_certfile": config.tls_cert_path, "ssl_keyfile": config.tls_key_path}

    uvicorn.run(create_app(config), host=host, port=port, log_config=None, **ssl_options)


if __name__ == "__main__":
    run_server()  # pragma: no cover
