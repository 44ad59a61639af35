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
import tomllib
from pathlib import Path
from typing import Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from snake_proxy.exceptions import ConfigurationError

GATEWAY_URL_TEMPLATE = "https://gateway.ai.cloudflare.com/v1/{account_id}/{gateway_id}"
DEFAULT_CONFIG_PATH = "config.toml"


class GatewayConfig(BaseModel):
    """
    One Cloudflare AI Gateway credential set.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., description="Cloudflare account identifier")
    gateway_id: str = Field(..., description="AI Gateway identifier")
    token: str = Field(..., description="Gateway token sent as cf-aig-authorization")

    @field_validator("account_id", "gateway_id", "token")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @property
    def base_url(self) -> str:
        """The gateway URL for this account/gateway pair."""
        return GATEWAY_URL_TEMPLATE.format(account_id=self.account_id, gateway_id=self.gateway_id)


class ProviderConfig(BaseModel):
    api_keys: List[str] = Field(default_factory=list)
    test_model: str = ""

    @field_validator("api_keys")
    @classmethod
    def drop_blank_keys(cls, v: List[str]) -> List[str]:
        return [key.strip() for key in v if key.strip()]


class ProxyConfig(BaseModel):
    """
    Complete configuration loaded from config.toml.
    """

    host_port: int = Field(3000, ge=1, le=65535)
    https_port: int = Field(443, ge=1, le=65535)
    https_server: bool = False
    tls_cert_path: str = "cert.pem"
    tls_key_path: str = "key.pem"
    compat_path: str = "/compat"
    gateways: List[GatewayConfig]
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)

    @field_validator("gateways")
    @classmethod
    def require_gateway(cls, v: List[GatewayConfig]) -> List[GatewayConfig]:
        if not v:
            raise ValueError("At least one gateway configuration is required")
        return v

    @field_validator("compat_path")
    @classmethod
    def normalize_compat_path(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
        return v

    @property
    def listen_port(self) -> int:
        """https_port when HTTPS is enabled, otherwise host_port."""
        return self.https_port if self.https_server else self.host_port


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"])
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


def parse_config(data: Dict[str, object]) -> ProxyConfig:
    """
    Validates a raw configuration mapping.

    Raises:
        ConfigurationError: If the mapping does not describe a usable configuration.
    """
    try:
        return ProxyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {_format_validation_error(e)}") from e


def load_config(path: Optional[Union[str, Path]] = None) -> ProxyConfig:
    """
    Loads and validates the TOML configuration file.

    Args:
        path: Path to the TOML file. Defaults to SNAKE_CONFIG or config.toml.

    Returns:
        ProxyConfig: The validated configuration.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated.
    """
    config_path = Path(path or os.environ.get("SNAKE_CONFIG", DEFAULT_CONFIG_PATH))
    logger.info(f"Loading configuration from: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file {config_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Failed to parse TOML config: {e}") from e

    config = parse_config(data)

    logger.info(f"Loaded {len(config.gateways)} gateway(s) from config")
    for idx, gateway in enumerate(config.gateways, start=1):
        logger.info(f"  Gateway {idx}: account_id={gateway.account_id}, gateway_id={gateway.gateway_id}")
    for name, provider in config.providers.items():
        if provider.api_keys:
            logger.info(f"Provider '{name}': {len(provider.api_keys)} API key(s)")

    return config
