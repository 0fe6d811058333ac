import logging
import uuid

import structlog
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

# OpenTelemetry
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from shared.config.settings import LOG_LEVEL, OTLP_ENDPOINT, TRACING_ENABLED

REQUEST_ID_HEADER = "X-Request-ID"


def add_otel_ids(logger, log_method, event_dict):
    """Puts the active trace/span ids on every log line."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def configure_logging(service_name: str):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_otel_ids,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(LOG_LEVEL)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)


def configure_request_context(app: FastAPI):
    """Binds a request id and the path to every log line of a request."""

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        with structlog.contextvars.bound_contextvars(request_id=request_id, path=request.url.path):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def configure_tracing(app: FastAPI, service_name: str):
    resource = Resource.create({SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # OTLP gRPC, defaults to localhost:4317
    exporter = OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    FastAPIInstrumentor.instrument_app(app)
    # Child spans for provider, notification and email calls
    HTTPXClientInstrumentor().instrument()


def configure_metrics(app: FastAPI):
    # HTTP latency and status codes plus the business counters, at /metrics
    Instrumentator(excluded_handlers=["/metrics", "/health"]).instrument(app).expose(app)


def setup_observability(app: FastAPI, service_name: str):
    """
    Bootstraps logging, tracing and metrics for the cluster. Call it once
    on the root app; mounted sub-apps share the configuration.
    """
    configure_logging(service_name)
    configure_request_context(app)
    if TRACING_ENABLED:
        configure_tracing(app, service_name)
    configure_metrics(app)
