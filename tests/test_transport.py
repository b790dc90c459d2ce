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
Tests for fetch_json.
"""

from collections.abc import Callable

import httpx
import pytest

from coreason_oauth_client.exceptions import MalformedResponseError, NetworkError, OversizedResponseError
from coreason_oauth_client.transport import fetch_json


def client_for(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_json_success() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"issuer": "https://idp.example.com"})

    async with client_for(handler) as client:
        body = await fetch_json(client, "https://idp.example.com/x", headers={"X-Test": "1"})

    assert body == {"issuer": "https://idp.example.com"}
    assert seen[0].headers["Accept"] == "application/json"
    assert seen[0].headers["X-Test"] == "1"


@pytest.mark.asyncio
async def test_fetch_json_posts_form() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "at"})

    async with client_for(handler) as client:
        await fetch_json(client, "https://idp.example.com/token", method="POST", data={"grant_type": "password"})

    assert seen[0].method == "POST"
    assert seen[0].content == b"grant_type=password"


@pytest.mark.asyncio
async def test_oversized_by_content_length() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"{}", headers={"Content-Length": "5000"})

    async with client_for(handler) as client:
        with pytest.raises(OversizedResponseError):
            await fetch_json(client, "https://idp.example.com/x", max_bytes=100)


@pytest.mark.asyncio
async def test_oversized_by_streamed_body() -> None:
    class ChunkedStream(httpx.AsyncByteStream):
        async def __aiter__(self):  # type: ignore[no-untyped-def]
            for _ in range(10):
                yield b"x" * 50

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=ChunkedStream())

    async with client_for(handler) as client:
        with pytest.raises(OversizedResponseError, match="too large"):
            await fetch_json(client, "https://idp.example.com/x", max_bytes=100)


@pytest.mark.asyncio
async def test_error_status_carries_oauth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad credentials"})

    async with client_for(handler) as client:
        with pytest.raises(NetworkError) as exc_info:
            await fetch_json(client, "https://idp.example.com/token", method="POST", data={})

    assert exc_info.value.status_code == 400
    assert exc_info.value.error == "invalid_grant"
    assert exc_info.value.error_description == "Bad credentials"


@pytest.mark.asyncio
async def test_error_status_without_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="Service Unavailable")

    async with client_for(handler) as client:
        with pytest.raises(NetworkError) as exc_info:
            await fetch_json(client, "https://idp.example.com/x")

    assert exc_info.value.status_code == 503
    assert exc_info.value.error is None


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [b"not json", b"[1, 2]", b"", b"\x80\x81{}"])
async def test_non_object_body_rejected(content: bytes) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=content)

    async with client_for(handler) as client:
        with pytest.raises(MalformedResponseError, match="not a JSON object") as exc_info:
            await fetch_json(client, "https://idp.example.com/x")

    assert isinstance(exc_info.value, NetworkError)
    assert exc_info.value.status_code == 200


@pytest.mark.asyncio
async def test_transport_failure_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with client_for(handler) as client:
        with pytest.raises(NetworkError, match="failed") as exc_info:
            await fetch_json(client, "https://idp.example.com/x")

    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert exc_info.value.status_code is None
