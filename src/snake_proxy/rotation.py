# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import itertools
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from loguru import logger

from snake_proxy.config import GatewayConfig, ProviderConfig, ProxyConfig
from snake_proxy.exceptions import ConfigurationError


@dataclass(frozen=True)
class GatewaySelection:
    """A gateway picked for one request, with its URL and token resolved together."""

    gateway: GatewayConfig
    index: int

    @property
    def base_url(self) -> str:
        return self.gateway.base_url

    @property
    def token(self) -> str:
        return self.gateway.token


class _Counter:
    """
    Monotonic fetch-and-increment counter.

    next() on itertools.count is a single C call, so concurrent callers never
    receive the same value. `value` is a peek and may be stale under contention.
    """

    def __init__(self, start: int = 0):
        self._count = itertools.count(start)
        self._issued = start

    def fetch_add(self) -> int:
        n = next(self._count)
        self._issued = n + 1
        return n

    @property
    def value(self) -> int:
        return self._issued


class RotationState:
    """
    Round-robin selection over the configured gateways and, independently,
    over each provider's API keys. Counters start at zero on every process start.
    """

    def __init__(
        self,
        gateways: Sequence[GatewayConfig],
        providers: Optional[Mapping[str, ProviderConfig]] = None,
        gateway_start: int = 0,
        provider_starts: Optional[Mapping[str, int]] = None,
    ):
        if not gateways:
            raise ConfigurationError("At least one gateway configuration is required")

        self.gateways: List[GatewayConfig] = list(gateways)
        self.providers: Dict[str, List[str]] = {}
        self._gateway_counter = _Counter(gateway_start)
        self._provider_counters: Dict[str, _Counter] = {}

        starts = provider_starts or {}
        for name, provider in (providers or {}).items():
            if provider.api_keys:
                self.providers[name] = list(provider.api_keys)
                self._provider_counters[name] = _Counter(starts.get(name, 0))

    @classmethod
    def from_config(cls, config: ProxyConfig) -> "RotationState":
        state = cls(config.gateways, config.providers)
        logger.info(
            f"Rotation ready: {len(state.gateways)} gateway(s), "
            f"{len(state.providers)} provider key pool(s)"
        )
        return state

    def next_selection(self) -> GatewaySelection:
        """
        Advances the gateway counter once and returns the chosen gateway
        together with its token. This is the only selection the forwarder uses.
        """
        index = self._gateway_counter.fetch_add() % len(self.gateways)
        return GatewaySelection(gateway=self.gateways[index], index=index)

    def next_gateway(self) -> GatewayConfig:
        return self.next_selection().gateway

    def current_gateway_token(self) -> str:
        """
        Token of the gateway picked by the most recent next_gateway() call.

        Only consistent when no other caller advanced the counter in between;
        use next_selection() when the token must match the gateway.
        """
        index = (self._gateway_counter.value - 1) % len(self.gateways)
        return self.gateways[index].token

    def next_api_key(self, provider: str) -> Optional[str]:
        """Next API key for `provider`, or None if it has no configured keys."""
        keys = self.providers.get(provider)
        if not keys:
            return None
        index = self._provider_counters[provider].fetch_add() % len(keys)
        return keys[index]

    def has_provider(self, provider: str) -> bool:
        return provider in self.providers
