# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import asyncio
import json
from dataclasses import dataclass
from typing import List, Optional

import httpx
from loguru import logger

from snake_proxy.config import ProxyConfig, load_config
from snake_proxy.exceptions import ConfigurationError
from snake_proxy.logging_utils import configure_logging, mask_secret
from snake_proxy.main import create_app

TEST_PROMPT = "Say 'Hello from provider!' in one short sentence."


@dataclass(frozen=True)
class SelfTestResult:
    provider: str
    model: str
    streaming: bool
    ok: bool
    detail: str


def _test_model(provider: str, test_model: str) -> str:
    return test_model if "/" in test_model else f"{provider}/{test_model}"


def _summarize(response: httpx.Response, streaming: bool) -> str:
    if streaming:
        frames = [line for line in response.text.split("\n\n") if line.startswith("data: ")]
        return f"{len(frames)} frame(s)"
    try:
        return str(response.json()["choices"][0]["message"]["content"])
    except (ValueError, KeyError, IndexError, TypeError):
        return response.text[:200]


async def run_self_test(
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[SelfTestResult]:
    """
    Sends one plain and one streaming chat completion per provider that has
    both API keys and a test model, through an in-process proxy instance.

    Args:
        config: The configuration under test.
        transport: Optional upstream transport for the proxy's shared client.

    Raises:
        ConfigurationError: If no provider is set up for testing.
    """
    providers = [(name, p) for name, p in config.providers.items() if p.api_keys and p.test_model]
    if not providers:
        raise ConfigurationError("No providers configured for testing: set api_keys and test_model")

    for name, provider in providers:
        keys = ", ".join(mask_secret(key) for key in provider.api_keys)
        logger.info(f"Provider '{name}': test_model={provider.test_model}, keys=[{keys}]")

    app = create_app(config, transport=transport, pacing=0.0)
    results: List[SelfTestResult] = []

    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://snake") as client:
            for name, provider in providers:
                model = _test_model(name, provider.test_model)
                for streaming in (False, True):
                    payload = {
                        "model": model,
                        "messages": [{"role": "user", "content": TEST_PROMPT}],
                        "stream": streaming,
                    }
                    response = await client.post(
                        "/v1/chat/completions",
                        content=json.dumps(payload),
                        headers={"Content-Type": "application/json"},
                    )
                    ok = response.is_success and (not streaming or response.text.endswith("data: [DONE]\n\n"))
                    detail = _summarize(response, streaming) if ok else f"HTTP {response.status_code}: {response.text[:200]}"
                    results.append(SelfTestResult(name, model, streaming, ok, detail))
                    mode = "stream" if streaming else "plain"
                    if ok:
                        logger.info(f"PASS {name} ({model}, {mode}): {detail}")
                    else:
                        logger.error(f"FAIL {name} ({model}, {mode}): {detail}")

    return results


def main() -> None:
    """Entry point for the snake-proxy-selftest command."""
    configure_logging()
    results = asyncio.run(run_self_test(load_config()))
    failed = [r for r in results if not r.ok]
    logger.info(f"Self-test summary: {len(results)} run, {len(results) - len(failed)} passed, {len(failed)} failed")
    if failed:
        raise SystemExit(1)
