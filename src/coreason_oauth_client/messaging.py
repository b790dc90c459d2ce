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
Cross-context message channel used to talk to hidden authentication contexts.
"""

from collections.abc import Awaitable, Callable
from typing import Protocol

import anyio
from pydantic import BaseModel, ConfigDict

from coreason_oauth_client.utils.logger import logger

MessageListener = Callable[["ChannelMessage"], None]


class ChannelMessage(BaseModel):
    """
    One message on the channel.

    Attributes:
        correlation_id (str): Identifies the attempt a response belongs to.
        target (str): URL of the hidden context (login URL or check-session endpoint) for requests.
        data (str): The payload (a login URL, a response fragment, a session status, ...).
    """

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    target: str = ""
    data: str = ""


class MessageChannel(Protocol):
    """Protocol for a request/response channel to a hidden authentication context."""

    async def post(self, message: ChannelMessage) -> None:
        """Sends a request to the hidden context named by ``message.target``."""
        ...

    def add_listener(self, listener: MessageListener) -> None: ...

    def remove_listener(self, listener: MessageListener) -> None: ...


Responder = Callable[[ChannelMessage], Awaitable[ChannelMessage | None]]


class MemoryMessageChannel:
    """
    In-process MessageChannel. Posted requests are handed to a responder coroutine standing in
    for the hidden context; its answer (if any) is dispatched to the listeners.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder
        self.sent: list[ChannelMessage] = []
        self._listeners: list[MessageListener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def post(self, message: ChannelMessage) -> None:
        self.sent.append(message)
        if self.responder is None:
            return
        reply = await self.responder(message)
        if reply is not None:
            self.dispatch(reply)

    def dispatch(self, message: ChannelMessage) -> None:
        """Delivers an inbound message to every listener."""
        for listener in list(self._listeners):
            listener(message)


async def request_response(channel: MessageChannel, request: ChannelMessage, timeout: float) -> ChannelMessage:
    """
    Posts a request and waits for the single response carrying the same correlation id.

    A one-shot listener is registered before posting and removed on every outcome. Messages with
    another correlation id, and any message after the first match, are ignored.

    Raises:
        TimeoutError: If no correlated response arrived within ``timeout`` seconds.
    """
    received: list[ChannelMessage] = []
    arrived = anyio.Event()

    def listener(message: ChannelMessage) -> None:
        if message.correlation_id != request.correlation_id:
            logger.debug("Ignoring message for another attempt")
            return
        if arrived.is_set():
            logger.debug("Ignoring duplicate response")
            return
        received.append(message)
        arrived.set()

    channel.add_listener(listener)
    try:
        with anyio.fail_after(timeout):
            await channel.post(request)
            await arrived.wait()
    finally:
        channel.remove_listener(listener)
    return received[0]
