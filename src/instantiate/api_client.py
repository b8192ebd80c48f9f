"""
JSON over HTTP for the GitHub and GitLab REST APIs.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class ApiError(Exception):
    """Provider API request failed or answered with an error status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


async def request_json(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    json_data: Optional[Dict[str, Any]] = None,
    verify_ssl: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """
    Perform one API call and decode its JSON body.

    Returns:
        Decoded response body, None for empty bodies (204 No Content)

    Raises:
        ApiError: On transport errors, HTTP status >= 400 or invalid JSON
    """
    logger.debug(f"Making {method} request to {url}")

    try:
        connector = aiohttp.TCPConnector(ssl=verify_ssl)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                response_text = await response.text()
                logger.debug(f"Response status: {response.status}")

                if response.status >= 400:
                    raise ApiError(
                        f"{method} {url} failed with HTTP {response.status}",
                        status=response.status,
                    )

                if not response_text.strip():
                    return None
                try:
                    return json.loads(response_text)
                except json.JSONDecodeError as e:
                    raise ApiError(f"Invalid JSON response from {url}: {e}", status=response.status) from e

    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"HTTP client error: {e}")
        raise ApiError(f"{method} {url} failed: {e}") from e
