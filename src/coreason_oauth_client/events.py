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
Lifecycle events and the multicast EventBus carrying them.
"""

import math
from collections.abc import Iterable
from enum import StrEnum
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ConfigDict

from coreason_oauth_client.utils.logger import logger


class EventType(StrEnum):
    DISCOVERY_DOCUMENT_LOADED = "discovery_document_loaded"
    DISCOVERY_DOCUMENT_LOAD_ERROR = "discovery_document_load_error"
    DISCOVERY_DOCUMENT_VALIDATION_ERROR = "discovery_document_validation_error"
    JWKS_LOAD_ERROR = "jwks_load_error"
    INVALID_NONCE_IN_STATE = "invalid_nonce_in_state"
    USER_PROFILE_LOADED = "user_profile_loaded"
    USER_PROFILE_LOAD_ERROR = "user_profile_load_error"
    TOKEN_RECEIVED = "token_received"
    TOKEN_ERROR = "token_error"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_ERROR = "token_refresh_error"
    TOKEN_VALIDATION_ERROR = "token_validation_error"
    TOKEN_EXPIRES = "token_expires"
    TOKEN_EXPIRED = "token_expired"
    SILENTLY_REFRESHED = "silently_refreshed"
    SILENT_REFRESH_ERROR = "silent_refresh_error"
    SILENT_REFRESH_TIMEOUT = "silent_refresh_timeout"
    SESSION_CHANGED = "session_changed"
    SESSION_UNCHANGED = "session_unchanged"
    SESSION_ERROR = "session_error"
    SESSION_TERMINATED = "session_terminated"
    LOGOUT = "logout"


ERROR_EVENTS = frozenset(
    {
        EventType.DISCOVERY_DOCUMENT_LOAD_ERROR,
        EventType.DISCOVERY_DOCUMENT_VALIDATION_ERROR,
        EventType.JWKS_LOAD_ERROR,
        EventType.INVALID_NONCE_IN_STATE,
        EventType.USER_PROFILE_LOAD_ERROR,
        EventType.TOKEN_ERROR,
        EventType.TOKEN_REFRESH_ERROR,
        EventType.TOKEN_VALIDATION_ERROR,
        EventType.SILENT_REFRESH_ERROR,
        EventType.SILENT_REFRESH_TIMEOUT,
        EventType.SESSION_ERROR,
    }
)


class OAuthEvent(BaseModel):
    """
    A lifecycle notification.

    Attributes:
        type (EventType): What happened.
        info (Any): Event specific payload (e.g. the token kind for ``token_expires``).
        reason (Any): The exception or error payload for error events.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: EventType
    info: Any = None
    reason: Any = None

    @property
    def is_error(self) -> bool:
        return self.type in ERROR_EVENTS


class EventBus:
    """
    Ordered multicast of OAuthEvents.

    Every subscriber gets its own unbounded memory stream. Subscribers only see events
    published after they subscribed. Closing the receive stream unsubscribes.
    """

    def __init__(self) -> None:
        self._subscribers: list[MemoryObjectSendStream[OAuthEvent]] = []

    def subscribe(self) -> MemoryObjectReceiveStream[OAuthEvent]:
        """
        Returns a receive stream of future events. Use it as a context manager to unsubscribe.
        """
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)
        self._subscribers.append(send_stream)
        return receive_stream

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: OAuthEvent) -> None:
        """
        Delivers the event to every live subscriber, dropping those that closed their stream.
        """
        if event.is_error:
            logger.warning(f"OAuth event: {event.type} ({event.reason})")
        else:
            logger.debug(f"OAuth event: {event.type}")

        for send_stream in list(self._subscribers):
            try:
                send_stream.send_nowait(event)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._subscribers.remove(send_stream)
                send_stream.close()

    def emit(self, type: EventType, info: Any = None, reason: Any = None) -> OAuthEvent:
        """Builds and publishes an event. Returns the published event."""
        event = OAuthEvent(type=type, info=info, reason=reason)
        self.publish(event)
        return event

    def close(self) -> None:
        """Ends every subscriber's stream."""
        for send_stream in self._subscribers:
            send_stream.close()
        self._subscribers.clear()


async def wait_for_event(
    events: MemoryObjectReceiveStream[OAuthEvent],
    types: Iterable[EventType],
    timeout: float,
) -> OAuthEvent | None:
    """
    Waits on an existing subscription for the first event of one of the given types.

    Args:
        events: A stream obtained from ``EventBus.subscribe`` before the awaited action started.
        types: The event types to wait for.
        timeout: Seconds to wait.

    Returns:
        OAuthEvent | None: The matching event, or None if the timeout elapsed or the bus closed.
    """
    wanted = frozenset(types)
    with anyio.move_on_after(timeout):
        async for event in events:
            if event.type in wanted:
                return event
    return None
