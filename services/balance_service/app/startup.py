import sys

from fastapi import FastAPI
from loguru import logger
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .alembic_helper import run_alembic_migrations
from .settings import balance_settings


def setup_logging() -> None:
    """Configure Loguru for consistent, structured service logs."""
    logger.remove()
    logger.add(
        sink=sys.stdout,
        level=balance_settings().log_level.upper(),
        backtrace=False,
        diagnose=False,
        colorize=False,
        serialize=False,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
               "<level>{message}</level> | {extra}",
    )
    logger.info("Logging configured.")


def setup_instrumentation(app: FastAPI) -> None:
    """Attach OpenTelemetry tracing to the FastAPI app. This function is idempotent."""
    settings = balance_settings()
    if not settings.tracing_enabled:
        logger.info("Tracing disabled by configuration.")
        return
    if getattr(app.state, "tracer_provider", None) is not None:
        return

    provider = trace.get_tracer_provider()
    if not isinstance(provider, TracerProvider):
        provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: settings.service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=str(settings.otel_endpoint))))
        trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    app.state.tracer_provider = provider
    logger.info("OpenTelemetry instrumentation configured.")


async def init_service_startup(app: FastAPI) -> None:
    """Log the configuration summary and bring the schema up to date."""
    app.state.is_ready = False
    settings = balance_settings()
    tracer = trace.get_tracer(__name__)
    logger.info("Initializing {} ({})...", settings.service_name, settings.environment)
    for key, value in settings.safe_dict().items():
        logger.info("    {}: {}", key, value)

    with tracer.start_as_current_span("db.run_migrations"):
        try:
            await run_alembic_migrations(settings.sync_db_url)
        except Exception as exc:
            # Keep the service up even if migrations fail locally
            logger.warning("Alembic migrations skipped: {}", exc)

    app.state.is_ready = True
    logger.info("{} startup completed.", settings.service_name)


async def shutdown_instrumentation(app: FastAPI) -> None:
    """Flush and stop the span processors attached at startup."""
    tracer_provider = getattr(app.state, "tracer_provider", None)
    if tracer_provider is not None:
        tracer_provider.shutdown()
        logger.info("OpenTelemetry instrumentation shut down.")
