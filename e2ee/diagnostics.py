"""
Local debug sink for detailed failure causes.

The sink is the ``e2ee.debug`` logger. It does not propagate to the root
logger until explicitly enabled, so nothing reaches application logs by
default.
"""

import logging

from .errors import E2EEError

debug_logger = logging.getLogger("e2ee.debug")
debug_logger.addHandler(logging.NullHandler())
debug_logger.propagate = False


def configure_debug_sink(enabled: bool, level: int = logging.DEBUG):
    """Turn the debug sink on or off"""
    debug_logger.propagate = enabled
    debug_logger.setLevel(level if enabled else logging.CRITICAL + 1)


def record_failure(error: E2EEError, operation: str):
    """
    Record a failure surfaced to a caller.

    Only the error kind, correlation id and the internal cause are written.
    Callers must never put key bytes or plaintext into ``error.detail``.
    """
    debug_logger.debug(
        "%s failed with %s [%s]: %s",
        operation,
        error.code,
        error.correlation_id,
        error.detail or "-",
    )


configure_debug_sink(False)
