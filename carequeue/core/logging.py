import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

_configured = False


def setup_logging(level: str = "INFO", json_logs: bool = False):
    """Structured logging setup shared by the API, the hub and the services."""
    global _configured
    if _configured:
        return structlog.get_logger()

    if json_logs:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        )
        renderer = structlog.stdlib.render_to_log_kwargs
    else:
        formatter = logging.Formatter("%(levelname)-8s %(name)s: %(message)s")
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # structlog.testing.capture_logs cannot see loggers cached on first use
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    _configured = True
    return structlog.get_logger()
