"""Deadline wrapper: race an awaitable against a timeout.

Every provider-facing and backend-facing call in the engine goes through
``with_deadline`` so that no single slow source can hang a sync.  On expiry
the caller-supplied fallback is returned instead of raising.

Usage::

    steps = await with_deadline(adapter.fetch_steps(window), 8.0, 0, label="steps")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger("healthsync.deadline")

T = TypeVar("T")


async def with_deadline(
    awaitable: Awaitable[T],
    timeout_s: float,
    fallback: T,
    *,
    label: str = "call",
    recover_errors: bool = False,
) -> T:
    """Await ``awaitable`` for at most ``timeout_s`` seconds.

    Args:
        awaitable:      Coroutine or future to run.
        timeout_s:      Deadline in seconds.
        fallback:       Value returned when the deadline expires.
        label:          Name used in log messages.
        recover_errors: When True, any exception raised by the awaitable also
                        resolves to ``fallback``.  When False, exceptions
                        propagate and only the timeout is absorbed.

    Returns:
        The awaitable's result, or ``fallback``.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning(
            "%s exceeded %.1fs deadline, using fallback %r", label, timeout_s, fallback
        )
        return fallback
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        if not recover_errors:
            raise
        logger.warning("%s failed (%s), using fallback %r", label, exc, fallback)
        return fallback
