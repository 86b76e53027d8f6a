"""
Langfuse tracing for research workers.

Exports OpenTelemetry spans to Langfuse through logfire. Tracing is optional:
install the ``tracing`` extra and set ``LANGFUSE_PUBLIC_KEY`` /
``LANGFUSE_SECRET_KEY`` (and optionally ``LANGFUSE_HOST``).
"""
import os
import base64
import logging
import contextlib

logger = logging.getLogger(__name__)

_langfuse_initialized = False


def setup_langfuse(public_key=None, secret_key=None, host=None):
    """
    Set up Langfuse for OpenAI Agents SDK tracing.

    Args:
        public_key: Langfuse public key (defaults to LANGFUSE_PUBLIC_KEY env var)
        secret_key: Langfuse secret key (defaults to LANGFUSE_SECRET_KEY env var)
        host: Langfuse host URL (defaults to LANGFUSE_HOST env var or https://cloud.langfuse.com)

    Returns:
        bool: True if setup was successful, False otherwise
    """
    global _langfuse_initialized

    if _langfuse_initialized:
        return True

    public_key = public_key or os.environ.get("LANGFUSE_PUBLIC_KEY")
    secret_key = secret_key or os.environ.get("LANGFUSE_SECRET_KEY")
    host = host or os.environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")

    if not public_key or not secret_key:
        logger.warning("Langfuse keys not provided. Tracing will not be enabled.")
        return False

    langfuse_auth = base64.b64encode(f"{public_key}:{secret_key}".encode()).decode()
    os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = f"{host}/api/public/otel"
    os.environ["OTEL_EXPORTER_OTLP_HEADERS"] = f"Authorization=Basic {langfuse_auth}"

    try:
        import logfire
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import SimpleSpanProcessor
    except ImportError as e:
        logger.error(f"Failed to import tracing packages: {e}")
        logger.error("Install them with: pip install 'deep-report[tracing]'")
        return False

    logfire.configure(service_name="deep_report", send_to_logfire=False)
    logfire.instrument_openai_agents()

    trace_provider = TracerProvider()
    trace_provider.add_span_processor(SimpleSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(trace_provider)

    _langfuse_initialized = True
    logger.info("Successfully set up Langfuse tracing")
    return True


@contextlib.contextmanager
def create_trace(name="Deep-Report-Trace", user_id=None, session_id=None, tags=None, environment=None):
    """
    Open a span carrying Langfuse attributes.

    Yields:
        The span, or None if tracing has not been set up.
    """
    if not _langfuse_initialized:
        yield None
        return

    from opentelemetry import trace

    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as span:
        if user_id:
            span.set_attribute("langfuse.user.id", user_id)
        if session_id:
            span.set_attribute("langfuse.session.id", session_id)
        if tags:
            span.set_attribute("langfuse.tags", tags)
        span.set_attribute("langfuse.environment", environment or os.environ.get("ENVIRONMENT", "development"))
        yield span
