# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

"""
HTTP helpers for talking to the Identity Provider with bounded response sizes.
"""

import json
from collections.abc import Mapping
from typing import Any

import httpx

from coreason_oauth_client.exceptions import MalformedResponseError, NetworkError, OversizedResponseError
from coreason_oauth_client.utils.logger import logger

DEFAULT_MAX_BYTES = 1_000_000


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    data: Mapping[str, str] | None = None,
    headers: Mapping[str, str] | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> dict[str, Any]:
    """
    Issues a request and returns the JSON object of the response body.

    The body is read in chunks and aborted once it exceeds ``max_bytes``. Non-2xx responses
    raise a NetworkError carrying the OAuth2 ``error``/``error_description`` when the body has them.

    Args:
        client: The async HTTP client.
        url: The target URL.
        method: HTTP method. POST bodies are form-encoded.
        data: Form fields for POST requests.
        headers: Extra request headers.
        max_bytes: Maximum accepted body size.

    Returns:
        dict[str, Any]: The decoded JSON object.

    Raises:
        OversizedResponseError: If the body is larger than ``max_bytes``.
        MalformedResponseError: If a successful response body is not a JSON object.
        NetworkError: On transport failures or non-2xx statuses.
    """
    request_headers = {"Accept": "application/json"}
    if headers:
        request_headers.update(headers)

    try:
        async with client.stream(method, url, data=data, headers=request_headers, follow_redirects=True) as response:
            content_length = response.headers.get("Content-Length")
            if content_length:
                try:
                    if int(content_length) > max_bytes:
                        raise OversizedResponseError(f"Response from {url} too large", response.status_code)
                except ValueError:
                    pass

            content = bytearray()
            async for chunk in response.aiter_bytes():
                content.extend(chunk)
                if len(content) > max_bytes:
                    raise OversizedResponseError(f"Response from {url} too large", response.status_code)
            status_code = response.status_code
    except httpx.HTTPError as e:
        logger.error(f"Request to {url} failed: {e}")
        raise NetworkError(f"Request to {url} failed: {e}") from e

    try:
        body = json.loads(content) if content else None
    except ValueError:
        # Not JSON, or not decodable text
        body = None

    if status_code >= 400:
        error = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description") if isinstance(body, dict) else None
        logger.warning(f"Request to {url} returned {status_code} ({error})")
        raise NetworkError(
            f"Request to {url} returned status {status_code}",
            status_code=status_code,
            error=error,
            error_description=description,
        )

    if not isinstance(body, dict):
        raise MalformedResponseError(f"Response from {url} is not a JSON object", status_code=status_code)

    return body
