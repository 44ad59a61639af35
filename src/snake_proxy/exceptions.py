# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

from typing import Optional


class SnakeError(Exception):
    """Base exception for all Snake proxy errors."""

    status_code: Optional[int] = None

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(SnakeError):
    """Raised when the proxy configuration is missing or invalid. Fatal at startup."""

    pass


class ProxyError(SnakeError):
    """Raised while forwarding a single request. Converted into an HTTP response."""

    status_code: Optional[int] = 500


class BadRequestError(ProxyError):
    """Raised when the inbound request body cannot be read."""

    status_code: Optional[int] = 400


class BadGatewayError(ProxyError):
    """Raised when the upstream gateway cannot be reached or its body cannot be read."""

    status_code: Optional[int] = 502
