# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

"""
Round-robin reverse proxy for the Cloudflare AI Gateway.
"""

__version__ = "0.3.0"

from snake_proxy.config import GatewayConfig, ProviderConfig, ProxyConfig, load_config
from snake_proxy.exceptions import (
    BadGatewayError,
    BadRequestError,
    ConfigurationError,
    ProxyError,
    SnakeError,
)
from snake_proxy.proxy import ProxyService
from snake_proxy.rotation import GatewaySelection, RotationState
from snake_proxy.stream import synthesize_event_stream

__all__ = [
    "BadGatewayError",
    "BadRequestError",
    "ConfigurationError",
    "GatewayConfig",
    "GatewaySelection",
    "ProviderConfig",
    "ProxyConfig",
    "ProxyError",
    "ProxyService",
    "RotationState",
    "SnakeError",
    "load_config",
    "synthesize_event_stream",
]
