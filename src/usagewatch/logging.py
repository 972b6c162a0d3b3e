import logging

import structlog


def setup_logging(level: "str", fmt: "str" = "console") -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with timestamping and either a console or a JSON
    renderer.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )
    # httpx logs every request at info, including the url with the org id
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    processors: "list[structlog.types.Processor]" = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
