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
OAuthService: the public surface orchestrating discovery, flows, timers, silent refresh and session checks.
"""

from collections.abc import Mapping
from types import TracebackType
from typing import Any

import httpx
from anyio.streams.memory import MemoryObjectReceiveStream
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_oauth_client.async_context import HandleSlot, TaskRunner
from coreason_oauth_client.config import OAuthClientConfig
from coreason_oauth_client.discovery import DiscoveryClient
from coreason_oauth_client.events import EventBus, EventType, OAuthEvent
from coreason_oauth_client.exceptions import CoreasonOAuthError
from coreason_oauth_client.flows import FlowExecutor, parse_fragment
from coreason_oauth_client.messaging import MemoryMessageChannel, MessageChannel
from coreason_oauth_client.models import DiscoveryDocument, LoginOptions, TokenKind, TokenResponse
from coreason_oauth_client.scheduler import ExpirationScheduler
from coreason_oauth_client.session_check import SessionCheckCoordinator
from coreason_oauth_client.silent_refresh import SilentRefreshCoordinator
from coreason_oauth_client.storage import MemoryStorage, OAuthStorage
from coreason_oauth_client.token_store import TokenStore
from coreason_oauth_client.utils.logger import logger
from coreason_oauth_client.validation_handler import JwksValidationHandler, ValidationHandler

LOGIN_RESPONSE_PARAMS = frozenset({"access_token", "id_token", "error"})


class OAuthService:
    """
    OAuth2 / OpenID Connect client for the implicit and password flows.

    Handles resources via async context manager: timers, session checks and automatic silent
    refresh only run inside ``async with``.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        storage: OAuthStorage | None = None,
        client: httpx.AsyncClient | None = None,
        validation_handler: ValidationHandler | None = None,
        channel: MessageChannel | None = None,
    ) -> None:
        """
        Initialize the OAuthService.

        Args:
            config: The configuration object.
            storage: Key-value store for tokens. Defaults to an in-memory store.
            client: External async client (optional). If not provided, one is created and closed on exit.
            validation_handler: Signature checker. Defaults to ``JwksValidationHandler``.
            channel: Message channel to the hidden authentication contexts used by silent refresh and
                session checks. Defaults to an in-process channel without responder.
        """
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        self.events = EventBus()
        self.token_store = TokenStore(storage or MemoryStorage())
        self.validation_handler = validation_handler or JwksValidationHandler(config.allowed_algorithms)
        self.channel: MessageChannel = channel or MemoryMessageChannel()
        self.runner = TaskRunner()
        self._auto_refresh = HandleSlot()
        self._build(config)

    def _build(self, config: OAuthClientConfig) -> None:
        self.config = config
        self.discovery = DiscoveryClient(config, self._client, self.events)
        self.scheduler = ExpirationScheduler(config, self.token_store, self.events, self.runner)
        self.flows = FlowExecutor(
            config,
            self._client,
            self.token_store,
            self.discovery,
            self.events,
            self.validation_handler,
            scheduler=self.scheduler,
        )
        self.silent_refresh_coordinator = SilentRefreshCoordinator(config, self.flows, self.channel, self.events)
        self.session_check = SessionCheckCoordinator(
            config,
            self.token_store,
            self.discovery,
            self.channel,
            self.events,
            self.runner,
            self.silent_refresh_coordinator,
            log_out=self.log_out,
        )

    async def __aenter__(self) -> "OAuthService":
        await self.runner.__aenter__()
        self.scheduler.setup_expiration_timers()
        if self.config.automatic_silent_refresh:
            self.setup_automatic_silent_refresh()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._stop_background_work()
        try:
            await self.runner.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.events.close()
            if self._internal_client:
                await self._client.aclose()

    def _stop_background_work(self) -> None:
        self.scheduler.clear()
        self.session_check.stop()
        self.silent_refresh_coordinator.cancel()
        self._auto_refresh.clear()

    def configure(self, config: OAuthClientConfig) -> None:
        """
        Replaces the configuration. Cancels every timer, session check and silent refresh in flight
        and forgets the discovery document and JWKS. Stored tokens are kept.
        """
        logger.info("Reconfiguring OAuth client")
        self._stop_background_work()
        self._build(config)
        if self.runner.running:
            self.scheduler.setup_expiration_timers()
            if config.automatic_silent_refresh:
                self.setup_automatic_silent_refresh()
            self.restart_session_checks_if_still_logged_in()

    def subscribe(self) -> MemoryObjectReceiveStream[OAuthEvent]:
        """Returns a stream of future lifecycle events. Close it (or use ``with``) to unsubscribe."""
        return self.events.subscribe()

    @property
    def state(self) -> str | None:
        """The caller supplied state of the last implicit flow login."""
        return self.flows.state

    @property
    def discovery_document(self) -> DiscoveryDocument | None:
        return self.discovery.document

    # Discovery and login

    async def load_discovery_document(self, url: str | None = None) -> DiscoveryDocument:
        """Loads and validates the discovery document and JWKS. See ``DiscoveryClient.load``."""
        return await self.discovery.load(url)

    async def load_discovery_document_and_try_login(
        self, fragment: str | None = None, options: LoginOptions | None = None
    ) -> bool:
        await self.load_discovery_document()
        return await self.try_login(fragment, options)

    def create_login_url(
        self,
        state: str | None = None,
        login_hint: str | None = None,
        redirect_uri: str | None = None,
        no_prompt: bool = False,
        params: Mapping[str, str] | None = None,
    ) -> str:
        return self.flows.build_login_url(state, login_hint, redirect_uri, no_prompt, params)

    def init_implicit_flow(self, additional_state: str | None = None, params: Mapping[str, str] | None = None) -> str:
        """
        Starts the implicit flow.

        Returns:
            str: The URL the user agent has to be sent to.
        """
        extra = dict(params or {})
        login_hint = extra.pop("login_hint", None)
        return self.flows.build_login_url(additional_state, login_hint, extra_params=extra)

    async def try_login(self, fragment: str | None = None, options: LoginOptions | None = None) -> bool:
        """
        Processes the implicit flow response found in ``fragment``.

        Returns:
            bool: False if the fragment carries no login response, True once tokens were stored.

        Raises:
            LoginResponseError: If the response is malformed, forged or reports an error.
            IdTokenValidationError: If the id_token is rejected.
        """
        if not fragment or not LOGIN_RESPONSE_PARAMS & parse_fragment(fragment).keys():
            return False
        await self.flows.parse_implicit_response(fragment, options)
        self.restart_session_checks_if_still_logged_in()
        return True

    # Token endpoint flows

    async def fetch_token_using_password_flow(
        self, username: str, password: str, headers: Mapping[str, str] | None = None
    ) -> TokenResponse:
        return await self.flows.exchange_password(username, password, headers)

    async def fetch_token_using_password_flow_and_load_user_profile(
        self, username: str, password: str, headers: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        await self.flows.exchange_password(username, password, headers)
        return await self.flows.load_user_profile()

    async def fetch_token_using_grant(
        self,
        token: str,
        grant_type_url: str,
        headers: Mapping[str, str] | None = None,
        token_param: str = "assertion",
    ) -> TokenResponse:
        return await self.flows.exchange_custom_grant(token, grant_type_url, headers, token_param)

    async def refresh_token(self) -> TokenResponse:
        return await self.flows.exchange_refresh_token()

    async def load_user_profile(self) -> dict[str, Any]:
        return await self.flows.load_user_profile()

    # Silent refresh and session checks

    async def silent_refresh(self, params: Mapping[str, str] | None = None) -> OAuthEvent:
        event = await self.silent_refresh_coordinator.run(params)
        self.restart_session_checks_if_still_logged_in()
        return event

    def setup_automatic_silent_refresh(self, params: Mapping[str, str] | None = None) -> None:
        """
        Runs a silent refresh whenever the access token (or, without one, the id token) is about
        to expire. Failures are published as events only.
        """
        events = self.events.subscribe()
        self._auto_refresh.replace(self.runner.spawn(self._auto_refresh_loop, events, params, name="auto_refresh"))

    async def _auto_refresh_loop(
        self, events: MemoryObjectReceiveStream[OAuthEvent], params: Mapping[str, str] | None
    ) -> None:
        with events:
            async for event in events:
                if event.type is not EventType.TOKEN_EXPIRES:
                    continue
                if event.info == TokenKind.ID_TOKEN and self.token_store.access_token:
                    continue
                self.runner.start_soon(self._silent_refresh_in_background, params, name="auto_silent_refresh")

    async def _silent_refresh_in_background(self, params: Mapping[str, str] | None) -> None:
        try:
            await self.silent_refresh(params)
        except CoreasonOAuthError as e:
            # Already published as an event
            logger.warning(f"Automatic silent refresh failed: {e}")

    def restart_session_checks_if_still_logged_in(self) -> bool:
        if not self.runner.running or not self.session_check.can_perform():
            return False
        return self.session_check.start()

    # Token accessors

    def get_access_token(self) -> str | None:
        return self.token_store.access_token

    def get_id_token(self) -> str | None:
        return self.token_store.id_token

    def get_refresh_token(self) -> str | None:
        return self.token_store.refresh_token

    def get_identity_claims(self) -> dict[str, Any] | None:
        """The claims of the stored id_token, or the loaded user profile if there is none."""
        return self.token_store.id_token_claims() or self.token_store.user_profile

    def get_access_token_expiration(self) -> float | None:
        return self.token_store.access_token_expiration

    def get_id_token_expiration(self) -> float | None:
        return self.token_store.id_token_expiration

    def has_valid_access_token(self) -> bool:
        return self.token_store.has_valid_access_token()

    def has_valid_id_token(self) -> bool:
        return self.token_store.has_valid_id_token()

    def authorization_header(self) -> str:
        """Returns the value of the Authorization header transmitting the access token."""
        return f"Bearer {self.token_store.access_token or ''}"

    def log_out(self, no_redirect: bool = False) -> str | None:
        """
        Removes all tokens and stops timers, session checks and silent refreshes.

        Args:
            no_redirect: Do not build an end-session URL.

        Returns:
            str | None: The end-session URL to send the user agent to, if any.
        """
        logout_url = None if no_redirect else self.flows.build_logout_url()
        self.scheduler.clear()
        self.session_check.stop()
        self.silent_refresh_coordinator.cancel()
        self.token_store.clear()
        self.flows.state = None
        logger.info("Logged out")
        self.events.emit(EventType.LOGOUT)
        return logout_url
