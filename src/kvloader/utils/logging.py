import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(*, level: int = logging.DEBUG, json_output: bool = False) -> None:
    """
    Configure structlog for kvloader records.

    Parameters
    ----------
    level : int, optional
        Level applied to the ``kvloader`` stdlib logger.
    json_output : bool, optional
        Render records as JSON lines instead of the console format.
    """
    logging.getLogger(name="kvloader").setLevel(level=level)
    renderer: structlog.typing.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context) -> Iterator[None]:
    current = structlog.contextvars.get_contextvars()
    to_bind = {key: value for key, value in required_context.items() if key not in current}
    if not to_bind:
        yield
        return
    with structlog.contextvars.bound_contextvars(**to_bind):
        yield
