"""Rate-limit aware request wrapper.

Every outbound Discord call goes through ``make_request``. A rate-limited
call sleeps for the advertised retry-after plus a small margin and is tried
again, with no upper bound on attempts: a sustained rate limit stalls the
caller rather than dropping the request. Any other failure propagates.

Usage:
    message = await make_request(lambda: channel.send("hello"))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import discord

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Added on top of the platform's retry-after so the retry lands after the window.
RATE_LIMIT_MARGIN_SECONDS = 0.005

# Used when a 429 carries no usable retry-after.
DEFAULT_RETRY_AFTER_SECONDS = 1.0

Classifier = Callable[[BaseException], float | None]


def rate_limit_delay(exc: BaseException) -> float | None:
    """Return the retry-after in seconds if ``exc`` is a rate limit, else None."""
    if isinstance(exc, discord.RateLimited):
        return float(exc.retry_after)
    if isinstance(exc, discord.HTTPException) and exc.status == 429:
        return _retry_after_from_response(exc)
    return None


def _retry_after_from_response(exc: discord.HTTPException) -> float:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    raw = headers.get("Retry-After")
    if raw is not None:
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("rate_limit_bad_retry_after value=%r", raw)
    return DEFAULT_RETRY_AFTER_SECONDS


async def make_request(
    action: Callable[[], Awaitable[T]],
    *,
    classify: Classifier = rate_limit_delay,
    margin: float = RATE_LIMIT_MARGIN_SECONDS,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``action()``, retrying for as long as ``classify`` says it is rate limited.

    ``classify`` maps an exception to a delay in seconds, or None for
    failures that must propagate. ``action`` is called again on every
    attempt, so it must build a fresh awaitable each time.
    """
    while True:
        try:
            return await action()
        except Exception as exc:
            delay = classify(exc)
            if delay is None:
                raise
            logger.info("rate_limited retry_in=%.3fs", delay)
            await sleep(delay + margin)
