"""
OpenTelemetry setup for the podsentry reconciler.

- Configures an OTLP exporter (gRPC) when an endpoint is set.
- Instruments FastAPI + logging + outgoing HTTP calls (httpx).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("podsentry").setLevel(level)


def setup_otel(app: FastAPI, otlp_endpoint: Optional[str], log_level: str = "INFO") -> None:
    """
    Configure OpenTelemetry for the reconciler service.

    Spans are always created (so trace ids show up in log lines); they are
    only exported when OTEL_EXPORTER_OTLP_ENDPOINT is set.
    """

    service_name = os.getenv("OTEL_SERVICE_NAME", "podsentry-reconciler")
    environment = os.getenv("PODSENTRY_ENV", "dev")
    namespace = os.getenv("PODSENTRY_NAMESPACE", "podsentry")

    # 1) TracerProvider with resource
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": namespace,
            "deployment.environment": environment,
            "service.version": "0.1.0",
            "podsentry.component": "reconciler",
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # 2) OTLP gRPC exporter
    if otlp_endpoint:
        span_exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(span_exporter))

    # 3) Instrument FastAPI, logging, and outgoing HTTP
    FastAPIInstrumentor().instrument_app(app)

    LoggingInstrumentor().instrument(
        set_logging_format=True,
    )

    HTTPXClientInstrumentor().instrument()

    # 4) Configure Python logging root level
    setup_logging(log_level)
