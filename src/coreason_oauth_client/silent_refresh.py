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
SilentRefreshCoordinator component re-running the implicit flow in a hidden context.
"""

import secrets
from collections.abc import Mapping

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oauth_client.async_context import CancellableHandle, HandleSlot
from coreason_oauth_client.config import OAuthClientConfig
from coreason_oauth_client.events import EventBus, EventType, OAuthEvent
from coreason_oauth_client.exceptions import (
    CoreasonOAuthError,
    SilentRefreshError,
    SilentRefreshTimeoutError,
)
from coreason_oauth_client.flows import FlowExecutor
from coreason_oauth_client.messaging import ChannelMessage, MessageChannel, request_response
from coreason_oauth_client.utils.logger import logger

tracer = trace.get_tracer(__name__)


class SilentRefreshCoordinator:
    """
    Obtains fresh tokens without user interaction.

    Each attempt posts a ``prompt=none`` login URL to the hidden authentication context through the
    message channel and feeds the single correlated answer through the regular implicit flow
    pipeline. A new attempt supersedes (cancels) the one still in flight.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        flows: FlowExecutor,
        channel: MessageChannel,
        events: EventBus,
    ) -> None:
        self.config = config
        self.flows = flows
        self.channel = channel
        self.events = events
        self._attempt = HandleSlot()

    @property
    def in_flight(self) -> bool:
        current = self._attempt.current
        return current is not None and current.active

    def cancel(self) -> None:
        """Cancels the attempt in flight, if any."""
        self._attempt.clear()

    def _login_url(self, params: Mapping[str, str] | None) -> str:
        extra = dict(params or {})
        id_token = self.flows.token_store.id_token
        if self.config.use_id_token_hint_for_silent_refresh and id_token:
            extra["id_token_hint"] = id_token
        return self.flows.build_login_url(
            redirect_override=self.config.silent_refresh_redirect_uri or None,
            suppress_prompt=True,
            extra_params=extra,
        )

    async def run(self, params: Mapping[str, str] | None = None) -> OAuthEvent:
        """
        Performs one silent refresh.

        Emits an OpenTelemetry span `silent_refresh`.

        Args:
            params: Extra query parameters for the login URL.

        Returns:
            OAuthEvent: The published `silently_refreshed` event.

        Raises:
            SilentRefreshTimeoutError: If no correlated answer arrived within ``silent_refresh_timeout``.
            SilentRefreshError: If the attempt was superseded or the answer was rejected.
        """
        attempt_id = secrets.token_urlsafe(16)
        handle = self._attempt.replace(CancellableHandle(f"silent_refresh:{attempt_id}"))

        with tracer.start_as_current_span("silent_refresh") as span:
            try:
                reply = await self._exchange(handle, attempt_id, params)
                await self.flows.parse_implicit_response(reply.data)
            except CoreasonOAuthError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                if not isinstance(e, SilentRefreshTimeoutError):
                    self.events.emit(EventType.SILENT_REFRESH_ERROR, reason=e)
                if isinstance(e, SilentRefreshError):
                    raise
                raise SilentRefreshError(f"Silent refresh failed: {e}") from e
            except Exception as e:
                logger.exception("Silent refresh answer could not be processed")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                error = SilentRefreshError(f"Silent refresh failed: {e}")
                self.events.emit(EventType.SILENT_REFRESH_ERROR, reason=error)
                raise error from e
            finally:
                handle.done = True
                self._attempt.release(handle)

            span.set_status(Status(StatusCode.OK))
            logger.info("Tokens silently refreshed")
            return self.events.emit(EventType.SILENTLY_REFRESHED)

    async def _exchange(
        self, handle: CancellableHandle, attempt_id: str, params: Mapping[str, str] | None
    ) -> ChannelMessage:
        login_url = self._login_url(params)
        request = ChannelMessage(correlation_id=attempt_id, target=login_url, data=login_url)

        reply: ChannelMessage | None = None
        with handle.scope:
            try:
                reply = await request_response(self.channel, request, self.config.silent_refresh_timeout)
            except TimeoutError as e:
                logger.warning(f"Silent refresh timed out after {self.config.silent_refresh_timeout}s")
                error = SilentRefreshTimeoutError("No silent refresh response received in time")
                self.events.emit(EventType.SILENT_REFRESH_TIMEOUT, reason=error)
                raise error from e

        if reply is None:
            raise SilentRefreshError("Silent refresh was superseded by a newer attempt")
        return reply
