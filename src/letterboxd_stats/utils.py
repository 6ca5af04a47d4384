"""Utility functions shared by the Letterboxd scraper and the TMDB client."""

import asyncio
import logging
from typing import Sequence, TypeVar

import httpx

from .config import DEFAULT_RETRY_AFTER, MAX_429_RETRY_SECONDS, MAX_HTTP_RETRIES
from .errors import FetchError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split ``items`` into consecutive slices of at most ``size`` elements."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


def _retry_after_seconds(resp: httpx.Response) -> int:
    """Retry-After in whole seconds, never below one."""
    try:
        retry_after = int(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except ValueError:
        retry_after = DEFAULT_RETRY_AFTER
    return max(1, retry_after)


async def async_get_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict | None = None,
    max_retries: int = MAX_HTTP_RETRIES,
) -> httpx.Response | None:
    """
    Issue one GET with bounded transport-level retries.

    Returns the response on success and None on 404. Rate limiting (429) is
    honoured through Retry-After; timeouts back off exponentially. Both
    count against ``max_retries``, and 429 waits are further capped at
    MAX_429_RETRY_SECONDS in total. Anything else raises FetchError
    straight away.
    """
    total_429_wait = 0

    for attempt in range(max_retries):
        is_last = attempt == max_retries - 1
        try:
            resp = await client.get(url, params=params)

            if resp.status_code == 404:
                return None

            if resp.status_code == 429:
                retry_after = _retry_after_seconds(resp)
                if is_last:
                    raise FetchError(url, f"Rate limited, gave up after {max_retries} attempts", 429)
                if total_429_wait + retry_after > MAX_429_RETRY_SECONDS:
                    raise FetchError(url, f"Rate limited, 429 budget exhausted after {total_429_wait}s", 429)
                logger.warning(
                    f"Rate limited (429) on {url}, waiting {retry_after}s (attempt {attempt + 1}/{max_retries})"
                )
                await asyncio.sleep(retry_after)
                total_429_wait += retry_after
                continue

            resp.raise_for_status()
            return resp

        except httpx.TimeoutException as exc:
            if is_last:
                raise FetchError(url, f"Max retries exceeded: {exc}") from exc
            wait_time = 2 ** attempt
            logger.warning(
                f"Timeout on {url}, retrying in {wait_time}s (attempt {attempt + 1}/{max_retries})"
            )
            await asyncio.sleep(wait_time)

        except httpx.HTTPStatusError as exc:
            raise FetchError(url, f"HTTP {exc.response.status_code}", exc.response.status_code) from exc

        except httpx.HTTPError as exc:
            raise FetchError(url, f"Request error: {type(exc).__name__}: {exc}") from exc

    raise FetchError(url, "Max retries exceeded")
