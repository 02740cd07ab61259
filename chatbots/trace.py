import logging
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def trace_span(name: str, **metadata):
    """Log start, end and failures of a block together with its wall-clock duration."""
    start = time.monotonic()
    logger.info("TRACE START %s | %s", name, metadata)
    try:
        yield
    except Exception as e:
        duration = time.monotonic() - start
        logger.error("TRACE ERROR %s | duration=%.2fs | %s | error=%s", name, duration, metadata, e)
        raise
    duration = time.monotonic() - start
    logger.info("TRACE END %s | duration=%.2fs | %s", name, duration, metadata)
