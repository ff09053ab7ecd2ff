import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter

from .config import settings

_HANDLER_MARKER = "_mtls_identity_handler"


def setup_logging(level: str | None = None) -> None:
    """Route stdlib logging through an OpenTelemetry LoggerProvider plus stdout.

    Safe to call more than once (tests re-enter the app lifespan); handlers
    installed by a previous call are replaced rather than duplicated.
    """
    level = (level or settings.LOG_LEVEL).upper()
    root = logging.getLogger()

    for existing in list(root.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            root.removeHandler(existing)

    logger_provider = LoggerProvider()
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(ConsoleLogRecordExporter()))
    set_logger_provider(logger_provider)

    otel_handler = LoggingHandler(level=getattr(logging, level), logger_provider=logger_provider)
    setattr(otel_handler, _HANDLER_MARKER, True)
    root.addHandler(otel_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    setattr(stream_handler, _HANDLER_MARKER, True)
    root.addHandler(stream_handler)

    root.setLevel(level)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("mtls_identity")
