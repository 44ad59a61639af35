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
import platform

from opentelemetry import _logs, trace
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    ConsoleLogRecordExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from snake_proxy.logging_utils import configure_logging


def telemetry_enabled() -> bool:
    """Exporting is on when an OTLP endpoint is configured or in test mode."""
    return bool(os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or os.environ.get("SNAKE_TEST_MODE"))


def configure_telemetry(service_name: str = "snake-proxy") -> None:
    """
    Configures global OpenTelemetry providers (Tracer and Logger) and Loguru.
    Without an OTLP endpoint only Loguru is configured.
    """
    if not telemetry_enabled():
        configure_logging()
        return

    resource = Resource.create(
        {
            "service.name": os.environ.get("OTEL_SERVICE_NAME", service_name),
            "deployment.environment": os.environ.get("DEPLOYMENT_ENV", "local"),
            "host.name": platform.node(),
        }
    )

    tp = TracerProvider(resource=resource)
    if os.environ.get("SNAKE_TEST_MODE"):
        # Synchronous console export in test mode
        tp.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    else:
        tp.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(tp)

    lp = LoggerProvider(resource=resource)
    _logs.set_logger_provider(lp)
    if os.environ.get("SNAKE_TEST_MODE"):
        lp.add_log_record_processor(SimpleLogRecordProcessor(ConsoleLogRecordExporter()))
    else:
        lp.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter()))

    configure_logging(lp)
