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
from typing import Any, Callable, Dict, Generator, List

import httpx
import pytest
from unittest.mock import patch

from snake_proxy.config import GatewayConfig, ProviderConfig, ProxyConfig
from snake_proxy.rotation import RotationState


@pytest.fixture(autouse=True)  # type: ignore[misc]
def set_test_mode() -> Generator[None, None, None]:
    """
    Keep telemetry on console exporters and file logging off during tests.
    """
    with patch.dict("os.environ", {"SNAKE_TEST_MODE": "true", "SNAKE_LOG_FILE": ""}):
        yield


@pytest.fixture
def gateways() -> List[GatewayConfig]:
    return [
        GatewayConfig(account_id="acct-a", gateway_id="gw-a", token="token-a"),
        GatewayConfig(account_id="acct-b", gateway_id="gw-b", token="token-b"),
        GatewayConfig(account_id="acct-c", gateway_id="gw-c", token="token-c"),
    ]


@pytest.fixture
def proxy_config(gateways: List[GatewayConfig]) -> ProxyConfig:
    return ProxyConfig(
        gateways=gateways,
        providers={
            "openai": ProviderConfig(api_keys=["sk-one", "sk-two"], test_model="gpt-4o-mini"),
            "groq": ProviderConfig(api_keys=[]),
        },
    )


@pytest.fixture
def rotation(proxy_config: ProxyConfig) -> RotationState:
    return RotationState.from_config(proxy_config)


@pytest.fixture
def chat_completion() -> Dict[str, Any]:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "Hello world"},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


class RecordingUpstream:
    """Fake gateway for httpx.MockTransport that records every request it receives."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Any:
        return json.loads(self.last.content)


@pytest.fixture
def upstream_factory() -> Callable[[Callable[[httpx.Request], httpx.Response]], RecordingUpstream]:
    return RecordingUpstream
