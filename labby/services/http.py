"""Shared HTTP plumbing for service implementations."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from labby.config import settings
from labby.errors import ServiceError, categorize_httpx_error

logger = logging.getLogger(__name__)


async def with_retry(
    func: Callable[..., Any],
    *args,
    max_retries: int | None = None,
    service: str | None = None,
    lab_id: str | None = None,
    **kwargs,
) -> Any:
    """Execute an async function with exponential backoff retry logic.

    Only connection errors and timeouts are retried. HTTP status errors
    are application-level and raised immediately as ServiceError.
    """
    if max_retries is None:
        max_retries = settings.service_max_retries

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout) as e:
            if attempt < max_retries:
                delay = min(
                    settings.service_retry_backoff_base * (2 ** attempt),
                    settings.service_retry_backoff_max,
                )
                logger.warning(
                    f"{service or 'Service'} request failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"{service or 'Service'} request failed after {max_retries + 1} attempts: {e}")
                structured = categorize_httpx_error(e, service=service, lab_id=lab_id)
                raise ServiceError(structured.to_error_message(), service, lab_id, structured) from e
        except httpx.HTTPStatusError as e:
            structured = categorize_httpx_error(e, service=service, lab_id=lab_id)
            raise ServiceError(structured.to_error_message(), service, lab_id, structured) from e
        except httpx.HTTPError as e:
            structured = categorize_httpx_error(e, service=service, lab_id=lab_id)
            raise ServiceError(structured.to_error_message(), service, lab_id, structured) from e

    raise ServiceError(f"{service or 'Service'} request failed for unknown reason", service, lab_id)


async def request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    lab_id: str | None = None,
    allow_missing: bool = False,
    **kwargs,
) -> httpx.Response | None:
    """Send a request, raising ServiceError on failure.

    With ``allow_missing`` a 404 response returns None instead of raising,
    which is how deletes of already-removed objects are treated.
    """
    async def send() -> httpx.Response | None:
        response = await client.request(method, url, **kwargs)
        if allow_missing and response.status_code == 404:
            return None
        response.raise_for_status()
        return response

    return await with_retry(send, service=service, lab_id=lab_id)


def new_client(
    base_url: str,
    *,
    timeout: float | None = None,
    verify: bool = True,
    headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        timeout=timeout or settings.service_http_timeout,
        verify=verify,
        headers=headers,
        transport=transport,
    )
