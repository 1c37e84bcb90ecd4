"""Rate limit handling for the Evernote gateway."""

import asyncio
import logging
from typing import Callable, Any
from functools import wraps

from shared.errors import RateLimitError

logger = logging.getLogger(__name__)


def handle_rate_limit(max_retries: int = 3, max_wait: float = 60.0):
    """
    Decorator to retry throttled note source calls.

    Evernote reports throttling with error code 19 and a rateLimitDuration
    in seconds. Short waits are slept through and retried; anything longer
    than ``max_wait`` fails fast so a sync pass does not hang for minutes.

    Args:
        max_retries: Maximum number of retry attempts
        max_wait: Longest wait in seconds we are willing to sleep through

    Returns:
        Decorated coroutine function that handles rate limits
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retries = 0

            while True:
                try:
                    return await func(*args, **kwargs)

                except RateLimitError as e:
                    retry_after = e.retry_after if e.retry_after is not None else 1.0

                    if retry_after > max_wait:
                        logger.error(
                            f"Rate limit wait of {retry_after}s exceeds {max_wait}s, "
                            f"failing {func.__name__} immediately"
                        )
                        raise

                    retries += 1
                    if retries > max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded for rate limit")
                        raise

                    logger.warning(
                        f"Rate limit hit. Waiting {retry_after} seconds before retry "
                        f"(attempt {retries}/{max_retries})"
                    )

                    await asyncio.sleep(retry_after)

        return wrapper
    return decorator


def extract_retry_after(response, default_wait: float = 60.0) -> float:
    """
    Extract the wait duration from a throttled gateway response.

    Args:
        response: httpx.Response with status 429 or an Evernote error body

    Returns:
        Number of seconds to wait before retrying
    """
    retry_after = response.headers.get('Retry-After')
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass

    try:
        body = response.json()
    except ValueError:
        return default_wait

    if isinstance(body, dict):
        for key in ('rateLimitDuration', 'retry_after'):
            if body.get(key) is not None:
                try:
                    return float(body[key])
                except (TypeError, ValueError):
                    break

    return default_wait
