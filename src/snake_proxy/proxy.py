# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, TypeVar, Union

import httpx
from fastapi import Request
from fastapi.responses import Response
from loguru import logger
from starlette.requests import ClientDisconnect

from snake_proxy.exceptions import BadGatewayError, BadRequestError
from snake_proxy.logging_utils import redact_headers
from snake_proxy.rotation import GatewaySelection, RotationState
from snake_proxy.stream import synthesize_event_stream

# Headers meaningful only for one transport leg
HOP_BY_HOP_HEADERS: FrozenSet[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Set by httpx from the target URL and the body it sends
REQUEST_MANAGED_HEADERS: FrozenSet[str] = frozenset({"host", "content-length"})

# httpx has already decoded and buffered the body
RESPONSE_MANAGED_HEADERS: FrozenSet[str] = frozenset({"content-length", "content-encoding"})

GATEWAY_AUTH_HEADER = "cf-aig-authorization"
PROVIDER_AUTH_HEADER = "authorization"
VERSION_PREFIX = "/v1"

# Header names and values as decoded strings or as raw wire bytes
HeaderItem = Tuple[Union[str, bytes], Union[str, bytes]]
H = TypeVar("H", Tuple[str, str], Tuple[bytes, bytes])


class BodyKind(enum.Enum):
    STREAM_REQUESTED = "stream_requested"
    NOT_STREAMING = "not_streaming"
    NOT_JSON = "not_json"


@dataclass(frozen=True)
class BodyInspection:
    """Outcome of the best-effort JSON look at an inbound body."""

    kind: BodyKind
    body: bytes
    document: Optional[Dict[str, Any]] = None

    @property
    def wants_stream(self) -> bool:
        return self.kind is BodyKind.STREAM_REQUESTED

    @property
    def model(self) -> Optional[str]:
        if self.document is None:
            return None
        model = self.document.get("model")
        return model if isinstance(model, str) else None


@dataclass
class UpstreamResponse:
    status_code: int
    headers: List[Tuple[bytes, bytes]] = field(default_factory=list)
    content: bytes = b""


def inspect_body(body: bytes) -> BodyInspection:
    """
    Looks for `"stream": true` in a JSON object body and rewrites it to false.
    Anything that is not a JSON object passes through untouched.
    """
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return BodyInspection(BodyKind.NOT_JSON, body)

    if not isinstance(document, dict):
        return BodyInspection(BodyKind.NOT_JSON, body)

    if document.get("stream") is True:
        document["stream"] = False
        return BodyInspection(BodyKind.STREAM_REQUESTED, json.dumps(document).encode("utf-8"), document)

    return BodyInspection(BodyKind.NOT_STREAMING, body, document)


def _header_text(value: Union[str, bytes]) -> str:
    return value.decode("latin-1") if isinstance(value, bytes) else value


def _connection_tokens(headers: Iterable[HeaderItem]) -> FrozenSet[str]:
    tokens = set()
    for key, value in headers:
        if _header_text(key).lower() == "connection":
            tokens.update(t.strip().lower() for t in _header_text(value).split(",") if t.strip())
    return frozenset(tokens)


def filter_headers(headers: Iterable[H], drop: FrozenSet[str] = frozenset()) -> List[H]:
    """
    Removes hop-by-hop headers, any header named in Connection, and `drop`.
    Keeps repeated headers and their order. Raw byte pairs stay bytes.
    """
    items = list(headers)
    excluded = HOP_BY_HOP_HEADERS | drop | _connection_tokens(items)
    return [(k, v) for k, v in items if _header_text(k).lower() not in excluded]


def strip_version_prefix(path: str) -> str:
    """`/v1/chat/completions` -> `/chat/completions`. Other paths are unchanged."""
    if path == VERSION_PREFIX:
        return ""
    if path.startswith(VERSION_PREFIX + "/"):
        return path[len(VERSION_PREFIX) :]
    return path


def build_upstream_url(selection: GatewaySelection, compat_path: str, path: str, query: str = "") -> str:
    url = f"{selection.base_url}{compat_path}{strip_version_prefix(path)}"
    if query:
        url = f"{url}?{query}"
    return url


def provider_from_model(model: Optional[str]) -> Optional[str]:
    """Provider prefix of a unified-API model name, e.g. `openai/gpt-4o-mini` -> `openai`."""
    if not model or "/" not in model:
        return None
    provider = model.split("/", 1)[0].strip()
    return provider or None


class ProxyService:
    """
    Forwards one inbound request to the next Cloudflare AI Gateway and relays the reply.
    """

    def __init__(
        self,
        rotation: RotationState,
        compat_path: str = "/compat",
        stream_pacing: Optional[float] = None,
    ):
        self.rotation = rotation
        self.compat_path = compat_path
        self.stream_pacing = stream_pacing

    def build_headers(
        self,
        headers: Iterable[H],
        selection: GatewaySelection,
        provider: Optional[str] = None,
    ) -> Dict[str, Union[str, bytes]]:
        """
        Outbound headers: filtered client headers, the gateway token from
        `selection`, and a rotated provider key when one is configured.
        Raw client values are passed on as bytes.
        """
        proxy_headers: Dict[str, Union[str, bytes]] = {
            _header_text(k).lower(): v for k, v in filter_headers(headers, REQUEST_MANAGED_HEADERS)
        }

        proxy_headers[GATEWAY_AUTH_HEADER] = f"Bearer {selection.token}"

        if provider is not None:
            api_key = self.rotation.next_api_key(provider)
            if api_key is not None:
                logger.info(f"Using rotated API key for provider '{provider}'")
                proxy_headers[PROVIDER_AUTH_HEADER] = f"Bearer {api_key}"

        return proxy_headers

    async def _read_body(self, request: Request) -> bytes:
        try:
            return await request.body()
        except ClientDisconnect as e:
            raise BadRequestError(f"Failed to read request body: {str(e) or 'client disconnected'}") from e

    async def _send(self, client: httpx.AsyncClient, req: httpx.Request) -> UpstreamResponse:
        try:
            r = await client.send(req)
        except httpx.RequestError as e:
            logger.error(f"Failed to forward request to gateway: {e!r}")
            raise BadGatewayError(f"Failed to forward request to target: {e}") from e

        logger.info(f"Received response from gateway, status: {r.status_code}, {len(r.content)} bytes")
        return UpstreamResponse(status_code=r.status_code, headers=list(r.headers.raw), content=r.content)

    def build_response(self, upstream: UpstreamResponse) -> Response:
        response = Response(content=upstream.content, status_code=upstream.status_code)
        # Response already set content-length for the buffered body
        for key, value in filter_headers(upstream.headers, RESPONSE_MANAGED_HEADERS):
            response.raw_headers.append((key.lower(), value))
        return response

    async def forward_request(self, request: Request, client: httpx.AsyncClient) -> Response:
        """
        Forwards a request to the next gateway in the rotation.

        Args:
            request: The incoming FastAPI Request.
            client: The shared HTTPX client.

        Returns:
            Response: The buffered upstream reply, or a synthesized event stream
            when the caller asked for `"stream": true`.

        Raises:
            BadRequestError: If the inbound body cannot be read.
            BadGatewayError: If the gateway cannot be reached.
        """
        body = await self._read_body(request)
        inspection = inspect_body(body)

        selection = self.rotation.next_selection()
        target_url = build_upstream_url(selection, self.compat_path, request.url.path, request.url.query)
        logger.info(f"Forwarding request to: {request.method} {target_url} (gateway #{selection.index + 1})")
        logger.debug(f"Inbound headers: {redact_headers(request.headers.items())}")

        if inspection.wants_stream:
            logger.info(
                f"Detected stream request, converting to non-stream for gateway ({len(inspection.body)} bytes)"
            )

        headers = self.build_headers(request.headers.raw, selection, provider_from_model(inspection.model))

        req = client.build_request(
            method=request.method,
            url=target_url,
            content=inspection.body,
            headers=headers,
        )
        upstream = await self._send(client, req)

        if inspection.wants_stream:
            logger.info("Converting response to SSE stream format")
            return synthesize_event_stream(upstream.status_code, upstream.content, self.stream_pacing)

        return self.build_response(upstream)
