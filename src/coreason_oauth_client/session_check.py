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
SessionCheckCoordinator component polling the provider's session state.
"""

import secrets
from collections.abc import Callable
from enum import StrEnum

import anyio
from opentelemetry import trace

from coreason_oauth_client.async_context import HandleSlot, TaskRunner
from coreason_oauth_client.config import OAuthClientConfig
from coreason_oauth_client.discovery import DiscoveryClient
from coreason_oauth_client.events import EventBus, EventType, wait_for_event
from coreason_oauth_client.exceptions import CoreasonOAuthError, SessionCheckError
from coreason_oauth_client.messaging import ChannelMessage, MessageChannel, request_response
from coreason_oauth_client.silent_refresh import SilentRefreshCoordinator
from coreason_oauth_client.token_store import TokenStore
from coreason_oauth_client.utils.logger import logger

tracer = trace.get_tracer(__name__)

REFRESH_OUTCOMES = (
    EventType.SILENTLY_REFRESHED,
    EventType.SILENT_REFRESH_ERROR,
    EventType.SILENT_REFRESH_TIMEOUT,
)


class SessionStatus(StrEnum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    ERROR = "error"


def classify_response(data: str) -> SessionStatus:
    """Maps the hidden context's answer to a SessionStatus. Anything unknown counts as an error."""
    try:
        return SessionStatus(data.strip().lower())
    except ValueError:
        return SessionStatus.ERROR


class SessionCheckCoordinator:
    """
    Periodically asks the provider's check-session endpoint whether the browser session changed.

    ``unchanged`` needs no action. ``changed`` and ``error`` (fail closed) stop polling and wait a
    bounded time for a silent refresh to settle; without a successful refresh the session is
    logged out.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        token_store: TokenStore,
        discovery: DiscoveryClient,
        channel: MessageChannel,
        events: EventBus,
        runner: TaskRunner,
        silent_refresh: SilentRefreshCoordinator,
        log_out: Callable[[], object],
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.discovery = discovery
        self.channel = channel
        self.events = events
        self.runner = runner
        self.silent_refresh = silent_refresh
        self.log_out = log_out
        self._timer = HandleSlot()
        self._reaction = HandleSlot()

    @property
    def running(self) -> bool:
        current = self._timer.current
        return current is not None and current.active

    def can_perform(self) -> bool:
        """True if session checks are enabled and supported and a valid id token with session state exists."""
        return (
            self.config.session_checks_enabled
            and self.discovery.session_checks_supported
            and self.token_store.has_valid_id_token()
            and bool(self.token_store.session_state)
        )

    def start(self) -> bool:
        """
        Starts polling every ``session_check_interval`` seconds. Restarts if already running.

        Returns:
            bool: False if session checks cannot be performed right now.
        """
        if not self.can_perform():
            logger.debug("Session checks not possible, not starting")
            return False
        self._timer.replace(self.runner.spawn(self._poll, name="session_check"))
        return True

    def stop(self) -> None:
        """Stops polling and any pending reaction to a change. Idempotent."""
        self._timer.clear()
        self._reaction.clear()

    async def _poll(self) -> None:
        while True:
            await anyio.sleep(self.config.session_check_interval)
            if not self.can_perform():
                logger.debug("Stopping session checks: no valid session")
                return
            status = await self.check_session()
            if status is not SessionStatus.UNCHANGED:
                self._reaction.replace(self.runner.spawn(self._handle_change, status, name="session_change"))
                return

    async def check_session(self) -> SessionStatus:
        """
        Sends one session check and classifies the answer. Publishes `session_unchanged`,
        `session_changed` or `session_error`.
        """
        with tracer.start_as_current_span("session_check") as span:
            status = await self._ask()
            span.set_attribute("oauth.session_status", str(status))

        if status is SessionStatus.UNCHANGED:
            self.events.emit(EventType.SESSION_UNCHANGED)
        elif status is SessionStatus.CHANGED:
            self.events.emit(EventType.SESSION_CHANGED)
        else:
            self.events.emit(EventType.SESSION_ERROR)
        return status

    async def _ask(self) -> SessionStatus:
        document = self.discovery.document
        if document is None or not document.check_session_iframe:
            logger.error("No check_session_iframe to send the session check to")
            return SessionStatus.ERROR

        request = ChannelMessage(
            correlation_id=secrets.token_urlsafe(16),
            target=document.check_session_iframe,
            data=f"{self.config.client_id} {self.token_store.session_state}",
        )
        try:
            reply = await request_response(self.channel, request, self.config.session_check_timeout)
        except TimeoutError:
            logger.warning("Session check timed out")
            return SessionStatus.ERROR
        except CoreasonOAuthError as e:
            logger.warning(f"Session check failed: {e}")
            return SessionStatus.ERROR
        return classify_response(reply.data)

    async def _handle_change(self, status: SessionStatus) -> None:
        if status is SessionStatus.ERROR:
            logger.warning("Session check error, treating the session as changed")
        else:
            logger.info("Session changed at the identity provider")

        with self.events.subscribe() as outcomes:
            if not self.silent_refresh.in_flight:
                self.runner.start_soon(self._refresh_in_background, name="session_change_refresh")
            event = await wait_for_event(outcomes, REFRESH_OUTCOMES, self.config.silent_refresh_timeout)

        if event is not None and event.type is EventType.SILENTLY_REFRESHED:
            logger.info("Session re-established by silent refresh")
            self.start()
            return

        logger.warning("No silent refresh after the session change, logging out")
        self.events.emit(EventType.SESSION_TERMINATED, reason=SessionCheckError(f"Session {status}"))
        self.log_out()

    async def _refresh_in_background(self) -> None:
        try:
            await self.silent_refresh.run()
        except CoreasonOAuthError as e:
            # Already published as an event
            logger.debug(f"Silent refresh after session change failed: {e}")
