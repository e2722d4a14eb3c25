"""
Retry decorator and the HTTP helper used for off-chain services
(the Morpho API and the bridge relay).
"""

import functools
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type

import requests

from app.rebalancer.logging_config import LOGGER_NAME

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class RetryableHTTPError(requests.HTTPError):
    """A response status worth retrying (rate limit or server side)."""


def retry_request(
    logger: logging.Logger,
    max_retries: int = 3,
    delay: float = 10,
    backoff: float = 2,
    retry_on: Tuple[Type[BaseException], ...] = (requests.ConnectionError, requests.Timeout, RetryableHTTPError),
) -> Callable:
    """
    Decorator to retry a request on transient failures.

    Args:
        logger: Logger instance for retry logging.
        max_retries: Maximum number of attempts.
        delay: Delay before the first retry in seconds.
        backoff: Multiplier applied to the delay after each failed attempt.
        retry_on: Exception types that trigger a retry.

    Returns:
        Decorated function. It returns None once every attempt failed, or
        right away on a non-retryable RequestException (e.g. HTTP 400).
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            wait = delay
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        logger.error("%s failed after %s attempts: %s", func.__name__, max_retries, e)
                        return None
                    logger.warning(
                        "%s failed (attempt %s/%s), retrying in %ss: %s", func.__name__, attempt, max_retries, wait, e
                    )
                    time.sleep(wait)
                    wait *= backoff
                except requests.RequestException as e:
                    logger.error("%s failed, not retrying: %s", func.__name__, e)
                    return None
            return None

        return wrapper

    return decorator


@retry_request(logging.getLogger(LOGGER_NAME), delay=2)
def make_api_post(
    url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float = 10
) -> Optional[Dict[str, Any]]:
    """
    POST a JSON payload and return the decoded JSON response, None on failure.
    """
    response = requests.post(url, headers=headers, json=payload, timeout=timeout)
    if response.status_code in RETRYABLE_STATUS_CODES:
        raise RetryableHTTPError(f"{response.status_code} from {url}", response=response)
    response.raise_for_status()
    return response.json()
