from __future__ import annotations
import os
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased, ALWAYS_ON
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.instrumentation.botocore import BotocoreInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from loghound import __version__
from loghound.config import OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_SERVICE_NAME, OTEL_SAMPLE_RATE

def setup_tracing() -> None:
    """Initialize OpenTelemetry tracing.

    Spans go to the OTLP/HTTP endpoint when one is configured and to the
    console otherwise. boto3 calls to CloudWatch Logs are traced through
    the botocore instrumentation.
    """

    set_global_textmap(B3MultiFormat())

    resource = Resource.create({
        "service.name": OTEL_SERVICE_NAME,
        "service.version": __version__,
        "deployment.environment": os.getenv("ENVIRONMENT", "development")
    })

    sampler = ALWAYS_ON if OTEL_SAMPLE_RATE >= 1.0 else TraceIdRatioBased(OTEL_SAMPLE_RATE)

    tracer_provider = TracerProvider(
        resource=resource,
        sampler=sampler
    )

    span_processor = None
    if OTEL_EXPORTER_OTLP_ENDPOINT:
        try:
            otlp_exporter = OTLPSpanExporter(
                endpoint=f"{OTEL_EXPORTER_OTLP_ENDPOINT}/v1/traces",
                timeout=10
            )
            span_processor = BatchSpanProcessor(
                otlp_exporter,
                max_queue_size=512,
                max_export_batch_size=256,
                export_timeout_millis=30000
            )
            print(f"🔍 OTLP exporter configured: {OTEL_EXPORTER_OTLP_ENDPOINT}")
        except Exception as e:
            print(f"⚠️  OTLP exporter failed, using console: {e}")
    else:
        print("⚠️  No OTLP endpoint configured, using console exporter")

    if span_processor is None:
        span_processor = BatchSpanProcessor(ConsoleSpanExporter())
    tracer_provider.add_span_processor(span_processor)

    trace.set_tracer_provider(tracer_provider)
    try:
        BotocoreInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)
        print("📊 Auto-instrumentation enabled")
    except Exception as e:
        print(f"⚠️  Auto-instrumentation warning: {e}")

    print(f"🔍 OpenTelemetry configured for service: {OTEL_SERVICE_NAME}")

def get_tracer(name: str = "loghound") -> trace.Tracer:
    """Get OpenTelemetry tracer instance."""
    return trace.get_tracer(name)
