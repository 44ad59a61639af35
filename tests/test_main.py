# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import json
import os
from typing import Any, Dict, Generator, List
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from snake_proxy.config import ProxyConfig
from snake_proxy.exceptions import ConfigurationError
from snake_proxy.main import check_connectivity, create_app, run_server, stream_pacing, upstream_timeout


def _frames(text: str) -> List[str]:
    return [frame + "\n\n" for frame in text.split("\n\n") if frame]


@pytest.fixture
def upstream(upstream_factory: Any, chat_completion: Dict[str, Any]) -> Any:
    return upstream_factory(lambda req: httpx.Response(200, json=chat_completion, headers={"x-upstream": "yes"}))


@pytest.fixture  # type: ignore[misc]
def client(proxy_config: ProxyConfig, upstream: Any) -> Generator[TestClient, None, None]:
    """
    TestClient context manager so lifespan events run.
    Upstream traffic goes to the recording MockTransport.
    """
    app = create_app(proxy_config, transport=httpx.MockTransport(upstream), pacing=0.0)
    with TestClient(app) as c:
        yield c


def test_stream_request_is_converted(client: TestClient, upstream: Any) -> None:
    payload = {"model": "openai/gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}], "stream": True}

    response = client.post("/v1/chat/completions", json=payload, headers={"Authorization": "Bearer client-key"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    frames = _frames(response.text)
    assert len(frames) == 4
    assert json.loads(frames[0][6:])["choices"][0]["delta"] == {"content": "Hello "}
    assert json.loads(frames[1][6:])["choices"][0]["delta"] == {"content": "world"}
    assert json.loads(frames[2][6:])["choices"][0]["finish_reason"] == "stop"
    assert frames[3] == "data: [DONE]\n\n"
    assert response.text.count("data: [DONE]\n\n") == 1

    sent = upstream.last
    assert upstream.last_json()["stream"] is False
    assert sent.headers["cf-aig-authorization"] == "Bearer token-a"
    assert sent.headers["authorization"] == "Bearer sk-one"
    assert sent.url.path == "/v1/acct-a/gw-a/compat/chat/completions"


def test_non_stream_request_returned_verbatim(
    client: TestClient, upstream: Any, chat_completion: Dict[str, Any]
) -> None:
    response = client.post("/v1/chat/completions", json={"model": "gpt-4o-mini", "stream": False})

    assert response.status_code == 200
    assert response.json() == chat_completion
    assert response.headers["x-upstream"] == "yes"
    assert "data: " not in response.text
    assert upstream.last_json() == {"model": "gpt-4o-mini", "stream": False}


def test_client_provider_key_passes_through_without_pool(client: TestClient, upstream: Any) -> None:
    client.post(
        "/v1/chat/completions",
        json={"model": "anthropic/claude-3-haiku"},
        headers={"Authorization": "Bearer client-key", "cf-aig-authorization": "Bearer spoofed"},
    )
    assert upstream.last.headers["authorization"] == "Bearer client-key"
    assert upstream.last.headers["cf-aig-authorization"] == "Bearer token-a"


def test_gateways_rotate_across_requests(client: TestClient, upstream: Any) -> None:
    for _ in range(4):
        client.post("/v1/chat/completions", json={"model": "m"})

    accounts = [r.url.path.split("/")[2] for r in upstream.requests]
    assert accounts == ["acct-a", "acct-b", "acct-c", "acct-a"]


@pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH", "OPTIONS", "TRACE", "PROPFIND"])
def test_catch_all_accepts_any_method_and_path(client: TestClient, upstream: Any, method: str) -> None:
    response = client.request(method, "/v1/models/some-model?verbose=true")
    assert response.status_code == 200
    assert upstream.last.method == method
    assert upstream.last.url.path == "/v1/acct-a/gw-a/compat/models/some-model"
    assert upstream.last.url.query == b"verbose=true"


def test_non_json_body_forwarded_unchanged(client: TestClient, upstream: Any) -> None:
    response = client.post("/v1/chat/completions", content=b"not json at all", headers={"Content-Type": "text/plain"})
    assert response.status_code == 200
    assert upstream.last.content == b"not json at all"


def test_hop_by_hop_headers_not_forwarded(client: TestClient, upstream: Any) -> None:
    client.post(
        "/v1/chat/completions",
        json={"model": "m"},
        headers={"Keep-Alive": "timeout=5", "TE": "trailers", "Upgrade": "websocket", "X-Keep": "1"},
    )
    sent = upstream.last.headers
    for name in ("keep-alive", "te", "upgrade"):
        assert name not in sent
    assert sent["x-keep"] == "1"


def test_upstream_error_status_passes_through(proxy_config: ProxyConfig, upstream_factory: Any) -> None:
    upstream = upstream_factory(lambda req: httpx.Response(500, json={"error": "Internal Server Error"}))
    app = create_app(proxy_config, transport=httpx.MockTransport(upstream), pacing=0.0)
    with TestClient(app) as c:
        response = c.post("/v1/chat/completions", json={"model": "test"})
    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}


def test_upstream_error_body_streamed_when_requested(proxy_config: ProxyConfig, upstream_factory: Any) -> None:
    upstream = upstream_factory(lambda req: httpx.Response(401, json={"error": "bad key"}))
    app = create_app(proxy_config, transport=httpx.MockTransport(upstream), pacing=0.0)
    with TestClient(app) as c:
        response = c.post("/v1/chat/completions", json={"model": "test", "stream": True})
    assert response.status_code == 401
    assert _frames(response.text) == ['data: {"error":"bad key"}\n\n', "data: [DONE]\n\n"]


def test_plain_text_upstream_streamed_when_requested(proxy_config: ProxyConfig, upstream_factory: Any) -> None:
    upstream = upstream_factory(lambda req: httpx.Response(200, text="plain text"))
    app = create_app(proxy_config, transport=httpx.MockTransport(upstream), pacing=0.0)
    with TestClient(app) as c:
        response = c.post("/v1/chat/completions", json={"model": "test", "stream": True})
    assert response.text == "data: plain text\n\ndata: [DONE]\n\n"


@pytest.mark.asyncio
async def test_non_ascii_header_bytes_pass_through(proxy_config: ProxyConfig, upstream_factory: Any) -> None:
    """UTF-8 header values survive both legs byte for byte."""
    note = "café — ok".encode()
    upstream = upstream_factory(lambda req: httpx.Response(200, headers=[(b"x-note", note)], json={"ok": True}))
    app = create_app(proxy_config, transport=httpx.MockTransport(upstream), pacing=0.0)

    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://snake") as c:
            response = await c.post("/v1/chat/completions", json={"model": "test"}, headers=[(b"x-client-note", note)])

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert (b"x-note", note) in response.headers.raw
    assert (b"x-client-note", note) in upstream.last.headers.raw


def test_upstream_timeout_is_bad_gateway(proxy_config: ProxyConfig) -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("Timeout", request=request)

    app = create_app(proxy_config, transport=httpx.MockTransport(timeout), pacing=0.0)
    with TestClient(app) as c:
        response = c.post("/v1/chat/completions", json={"model": "test"})

    assert response.status_code == 502
    assert "Failed to forward request to target: Timeout" in response.text
    assert "Traceback" not in response.text


def test_lifespan_manages_shared_client(proxy_config: ProxyConfig) -> None:
    app = create_app(proxy_config)
    with TestClient(app):
        http_client = app.state.http_client
        assert isinstance(http_client, httpx.AsyncClient)
        assert not http_client.is_closed
        assert len(app.state.rotation.gateways) == 3
    assert http_client.is_closed


def test_lifespan_loads_config_when_not_injected(proxy_config: ProxyConfig) -> None:
    app = create_app()
    with patch("snake_proxy.main.load_config", return_value=proxy_config) as mock_load:
        with TestClient(app):
            assert app.state.config is proxy_config
    mock_load.assert_called_once_with()


def test_env_settings() -> None:
    with patch.dict(os.environ, {"SNAKE_UPSTREAM_TIMEOUT": "15", "SNAKE_STREAM_PACING_MS": "0"}):
        assert upstream_timeout() == 15.0
        assert stream_pacing() == 0.0
    with patch.dict(os.environ, {"SNAKE_UPSTREAM_TIMEOUT": "soon"}):
        with pytest.raises(ConfigurationError, match="SNAKE_UPSTREAM_TIMEOUT"):
            upstream_timeout()


def test_check_connectivity_ok() -> None:
    with patch("snake_proxy.main.httpx.head", return_value=httpx.Response(301)) as mock_head:
        check_connectivity()
    mock_head.assert_called_once_with("https://gateway.ai.cloudflare.com", timeout=10.0)


def test_check_connectivity_error_status() -> None:
    with patch("snake_proxy.main.httpx.head", return_value=httpx.Response(503)):
        with pytest.raises(ConfigurationError, match="HTTP 503"):
            check_connectivity()


def test_check_connectivity_transport_failure() -> None:
    with patch("snake_proxy.main.httpx.head", side_effect=httpx.ConnectError("dns failure")):
        with pytest.raises(ConfigurationError, match="dns failure"):
            check_connectivity()


def test_run_server_configuration(proxy_config: ProxyConfig) -> None:
    """run_server loads config, checks connectivity and starts uvicorn on the listen port."""
    with (
        patch("snake_proxy.main.configure_telemetry") as mock_telemetry,
        patch("snake_proxy.main.load_config", return_value=proxy_config),
        patch("snake_proxy.main.check_connectivity") as mock_check,
        patch("uvicorn.run") as mock_run,
        patch.dict(os.environ, {"SNAKE_HOST": "127.0.0.1"}),
    ):
        run_server()

    mock_telemetry.assert_called_once()
    mock_check.assert_called_once()
    kwargs = mock_run.call_args.kwargs
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 3000
    assert "ssl_certfile" not in kwargs


def test_run_server_https(proxy_config: ProxyConfig) -> None:
    https_config = proxy_config.model_copy(update={"https_server": True, "https_port": 8443})
    with (
        patch("snake_proxy.main.configure_telemetry"),
        patch("snake_proxy.main.load_config", return_value=https_config),
        patch("uvicorn.run") as mock_run,
        patch.dict(os.environ, {"SNAKE_CONNECTIVITY_CHECK": "false"}),
    ):
        with patch("snake_proxy.main.check_connectivity") as mock_check:
            run_server()
        mock_check.assert_not_called()

    kwargs = mock_run.call_args.kwargs
    assert kwargs["port"] == 8443
    assert kwargs["ssl_certfile"] == "cert.pem"
    assert kwargs["ssl_keyfile"] == "key.pem"


def test_run_server_fails_on_bad_config() -> None:
    with (
        patch("snake_proxy.main.configure_telemetry"),
        patch("snake_proxy.main.load_config", side_effect=ConfigurationError("no gateways")),
        patch("uvicorn.run") as mock_run,
    ):
        with pytest.raises(ConfigurationError):
            run_server()
    mock_run.assert_not_called()


def test_proxy_error_handler_logs(proxy_config: ProxyConfig) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    app = create_app(proxy_config, transport=httpx.MockTransport(refuse), pacing=0.0)
    with patch("snake_proxy.main.logger") as mock_logger:
        with TestClient(app) as c:
            response = c.get("/v1/models")
    assert response.status_code == 502
    assert any("Bad Gateway" in str(call) for call in mock_logger.error.call_args_list)
