"""
Non-critical Side Effects
=========================

Best-effort writes (audit records, notifications) must never fail the
operation that triggered them. Route them through ``run_non_critical``
instead of scattering empty ``except`` blocks.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


async def run_non_critical(
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    log: Optional[logging.Logger] = None,
    context: Optional[dict] = None,
    **kwargs: Any,
) -> bool:
    """
    Await ``func(*args, **kwargs)``; log and swallow any exception.

    Args:
        operation: Name used in the log line
        func: Coroutine function performing the side effect
        log: Logger to report failures on (defaults to this module's)
        context: Extra structured fields for the log record

    Returns:
        True if the side effect completed, False if it raised
    """
    try:
        await func(*args, **kwargs)
        return True
    except Exception as e:
        (log or logger).warning(
            f"Non-critical side effect failed: {operation}",
            extra={
                "operation": operation,
                "error_type": type(e).__name__,
                "error": str(e),
                **(context or {}),
            },
            exc_info=True,
        )
        return False
