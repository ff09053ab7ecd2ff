from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from authority.api import auth as auth_api
from authority.api import certificates as certificates_api
from authority.api.errors import register_error_handlers
from authority.ca import AuthorityConfig, CertificateAuthority
from fastapi import FastAPI
from fastapi.responses import Response
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from shared.config import settings
from shared.database import create_schema, engine
from shared.logging import logger, setup_logging
from shared.metrics import render_prometheus, setup_metrics


def setup_tracing() -> None:
    resource = Resource.create({"service.name": settings.APP_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    setup_logging()
    setup_tracing()
    setup_metrics(settings.APP_NAME)

    LoggingInstrumentor().instrument(set_logging_format=True)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    # ConfigurationError here aborts startup
    authority = CertificateAuthority(AuthorityConfig.from_settings(settings))
    authority.initialize_authority()
    authority.provision_server_certificate()
    auth_api.set_authority(authority)

    await create_schema()

    logger.info(
        "service_started",
        extra={"ca_fingerprint": authority.certificate.fingerprint, "env": settings.APP_ENV},
    )
    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

FastAPIInstrumentor.instrument_app(app)

register_error_handlers(app)
app.include_router(certificates_api.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok", "service": settings.APP_NAME}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    body, content_type = render_prometheus()
    return Response(content=body, media_type=content_type)
