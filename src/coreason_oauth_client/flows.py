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
FlowExecutor component for the implicit, password, refresh-token and custom grant flows.
"""

import secrets
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_oauth_client.claims_validator import ValidationContext, validate_id_token
from coreason_oauth_client.config import OAuthClientConfig, url_satisfies_https
from coreason_oauth_client.discovery import DiscoveryClient
from coreason_oauth_client.events import EventBus, EventType
from coreason_oauth_client.exceptions import (
    ConfigurationError,
    CoreasonOAuthError,
    IdTokenValidationError,
    IdTokenValidationReason,
    LoginResponseError,
    NetworkError,
    NoRefreshTokenError,
)
from coreason_oauth_client.models import LoginOptions, ParsedIdToken, ReceivedTokens, TokenResponse
from coreason_oauth_client.token_store import TokenStore
from coreason_oauth_client.transport import fetch_json
from coreason_oauth_client.utils.logger import logger
from coreason_oauth_client.validation_handler import ValidationHandler

if TYPE_CHECKING:
    from coreason_oauth_client.scheduler import ExpirationScheduler

tracer = trace.get_tracer(__name__)

PASSWORD_GRANT = "password"
REFRESH_TOKEN_GRANT = "refresh_token"
STATE_SEPARATOR = ";"


def parse_fragment(fragment: str) -> dict[str, str]:
    """
    Parses the parameters of an implicit flow response.

    Accepts a bare fragment (``a=1&b=2``), one with a leading ``#`` or ``?``, or a full redirect URL.
    """
    fragment = fragment.strip()
    if "://" in fragment:
        parts = urlsplit(fragment)
        fragment = parts.fragment or parts.query
    fragment = fragment.lstrip("#?")
    return dict(parse_qsl(fragment, keep_blank_values=True))


def split_state(state: str) -> tuple[str, str | None]:
    """Splits a wire state into the local state key and the caller supplied part."""
    state_key, separator, user_state = state.partition(STATE_SEPARATOR)
    return state_key, (user_state if separator else None)


class FlowExecutor:
    """
    Runs the OAuth2/OIDC flows and commits their tokens through the TokenStore.

    Attributes:
        state (str | None): The caller supplied state of the last successful implicit flow login.
        scheduler (ExpirationScheduler | None): Re-armed after every token commit.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        client: httpx.AsyncClient,
        token_store: TokenStore,
        discovery: DiscoveryClient,
        events: EventBus,
        validation_handler: ValidationHandler,
        scheduler: "ExpirationScheduler | None" = None,
    ) -> None:
        self.config = config
        self.client = client
        self.token_store = token_store
        self.discovery = discovery
        self.events = events
        self.validation_handler = validation_handler
        self.scheduler = scheduler
        self.state: str | None = None

    # Endpoints

    def resolve_endpoint(self, name: str) -> str:
        """
        Returns an endpoint URL, preferring the discovery document over manual configuration.

        Args:
            name: One of ``authorization_endpoint``, ``token_endpoint``, ``userinfo_endpoint``,
                ``end_session_endpoint``.

        Raises:
            ConfigurationError: If the endpoint is neither discovered nor configured.
        """
        manual = {
            "authorization_endpoint": self.config.login_url,
            "token_endpoint": self.config.token_endpoint,
            "userinfo_endpoint": self.config.userinfo_endpoint,
            "end_session_endpoint": self.config.logout_url,
        }
        document = self.discovery.document
        url = getattr(document, name, None) if document is not None else None
        url = url or manual.get(name)
        if not url:
            raise ConfigurationError(f"No {name} available. Load the discovery document or configure it.")
        if not url_satisfies_https(url, self.config.require_https):
            raise ConfigurationError(f"{name} must use https: {url}")
        return url

    @property
    def issuer(self) -> str:
        if self.discovery.document is not None:
            return self.discovery.document.issuer
        return self.config.issuer

    def validation_context(
        self,
        expected_nonce: str | None = None,
        check_nonce: bool = True,
        check_at_hash: bool = True,
    ) -> ValidationContext:
        expected_subject = None
        if not self.config.skip_subject_check:
            claims = self.token_store.id_token_claims()
            expected_subject = claims.get("sub") if claims else None

        return ValidationContext(
            issuer=self.issuer,
            client_id=self.config.client_id,
            jwks=self.discovery.jwks or {"keys": []},
            handler=self.validation_handler,
            expected_nonce=expected_nonce,
            check_nonce=check_nonce,
            check_at_hash=check_at_hash and not self.config.disable_at_hash_check,
            skip_issuer_check=self.config.skip_issuer_check,
            expected_subject=expected_subject,
            clock_skew_leeway=self.config.clock_skew_leeway,
            pii_salt=self.config.pii_salt,
            reload_jwks=self.discovery.load_jwks if self.discovery.loaded else None,
        )

    def _rearm_timers(self) -> None:
        if self.scheduler is not None:
            self.scheduler.setup_expiration_timers()

    # Implicit flow

    def build_login_url(
        self,
        state: str | None = None,
        login_hint: str | None = None,
        redirect_override: str | None = None,
        suppress_prompt: bool = False,
        extra_params: Mapping[str, str] | None = None,
    ) -> str:
        """
        Builds the authorization endpoint URL for the implicit flow.

        A fresh nonce is stored under a fresh state key before the URL is returned, so the response
        can be matched back to this request.

        Args:
            state: Opaque caller data carried through the round-trip.
            login_hint: Passed as ``login_hint``.
            redirect_override: Replaces the configured ``redirect_uri``.
            suppress_prompt: Adds ``prompt=none`` (silent refresh).
            extra_params: Further query parameters.

        Returns:
            str: The login URL.

        Raises:
            ConfigurationError: If no authorization endpoint or redirect URI is available.
        """
        login_url = self.resolve_endpoint("authorization_endpoint")
        redirect_uri = redirect_override or self.config.redirect_uri
        if not redirect_uri:
            raise ConfigurationError("A redirect_uri is required for the implicit flow.")

        nonce = secrets.token_urlsafe(32)
        state_key = secrets.token_urlsafe(16)
        wire_state = f"{state_key}{STATE_SEPARATOR}{state}" if state else state_key
        self.token_store.save_nonce(state_key, nonce)

        params: dict[str, str] = {
            "response_type": self.config.effective_response_type,
            "client_id": self.config.client_id,
            "state": wire_state,
            "redirect_uri": redirect_uri,
            "scope": self.config.scope,
        }
        if self.config.oidc:
            params["nonce"] = nonce
        if login_hint:
            params["login_hint"] = login_hint
        if suppress_prompt:
            params["prompt"] = "none"
        params.update(self.config.custom_query_params)
        if extra_params:
            params.update(extra_params)

        separator = "&" if "?" in login_url else "?"
        return f"{login_url}{separator}{urlencode(params)}"

    def _expires_in(self, raw: str | int | None) -> int | None:
        if raw is None or raw == "":
            return self.config.fallback_access_token_expiration
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise LoginResponseError(f"Invalid expires_in: {raw!r}") from e

    async def parse_implicit_response(
        self, fragment: str, options: LoginOptions | None = None
    ) -> ParsedIdToken | None:
        """
        Processes an implicit flow callback: checks the state, validates the id_token, commits the
        tokens, emits `token_received` and re-arms the expiration timers.

        Args:
            fragment: The URL fragment (or full redirect URL) returned by the Identity Provider.
            options: Callbacks and state check options.

        Returns:
            ParsedIdToken | None: The accepted id_token, or None in pure OAuth2 mode.

        Raises:
            LoginResponseError: If parameters are missing, the provider reported an error or the
                state matches no stored nonce.
            IdTokenValidationError: If the id_token is rejected.
        """
        options = options or LoginOptions()
        params = parse_fragment(fragment)

        if "error" in params:
            error = params["error"]
            self.events.emit(EventType.TOKEN_ERROR, info=params, reason=error)
            if options.on_login_error is not None:
                options.on_login_error(params)
            raise LoginResponseError(
                f"Login failed: {error} {params.get('error_description', '')}".rstrip(), error=error
            )

        access_token = params.get("access_token")
        id_token = params.get("id_token")
        state = params.get("state")
        session_state = params.get("session_state")

        if self.config.oidc and not id_token:
            raise LoginResponseError("Login response has no id_token")
        wants_access_token = self.config.request_access_token and "token" in self.config.effective_response_type.split()
        if wants_access_token and not access_token:
            raise LoginResponseError("Login response has no access_token")
        if not state:
            raise LoginResponseError("Login response has no state")

        expires_in = self._expires_in(params.get("expires_in"))

        state_key, user_state = split_state(state)
        nonce = self.token_store.pop_nonce(state_key)
        if nonce is None and (self.config.oidc or not options.disable_oauth2_state_check):
            self.events.emit(EventType.INVALID_NONCE_IN_STATE, reason=state_key)
            raise LoginResponseError("Login response state has no matching stored nonce")

        parsed: ParsedIdToken | None = None
        if self.config.oidc and id_token:
            context = self.validation_context(expected_nonce=nonce)
            try:
                parsed = await validate_id_token(id_token, access_token, context)
            except IdTokenValidationError as e:
                self.events.emit(EventType.TOKEN_VALIDATION_ERROR, reason=e)
                raise

        if access_token:
            self.token_store.store_access_token_response(access_token, None, expires_in)
        if parsed is not None:
            self.token_store.store_id_token(parsed)
        self.token_store.store_session_state(session_state)
        self.state = user_state

        self.events.emit(EventType.TOKEN_RECEIVED, info={"state": user_state})
        self._rearm_timers()

        if options.on_token_received is not None:
            options.on_token_received(
                ReceivedTokens(
                    id_claims=parsed.claims if parsed else None,
                    id_token=id_token,
                    access_token=access_token,
                    state=user_state,
                )
            )
        return parsed

    # Token endpoint flows

    async def _token_request(
        self,
        grant_type: str,
        fields: Mapping[str, str],
        extra_headers: Mapping[str, str] | None,
    ) -> TokenResponse:
        url = self.resolve_endpoint("token_endpoint")
        data = {
            "grant_type": grant_type,
            "client_id": self.config.client_id,
            "scope": self.config.scope,
            **fields,
        }
        if self.config.dummy_client_secret is not None:
            data["client_secret"] = self.config.dummy_client_secret.get_secret_value()

        with tracer.start_as_current_span("token_exchange") as span:
            span.set_attribute("oauth.grant_type", grant_type)
            try:
                body = await fetch_json(
                    self.client,
                    url,
                    method="POST",
                    data=data,
                    headers=extra_headers,
                    max_bytes=self.config.max_response_bytes,
                )
                try:
                    token = TokenResponse(**body)
                except ValidationError as e:
                    raise NetworkError(f"Invalid response from token endpoint: {e}") from e
            except NetworkError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            span.set_status(Status(StatusCode.OK))
            return token

    async def _commit_token_response(self, token: TokenResponse, check_at_hash: bool) -> ParsedIdToken | None:
        parsed: ParsedIdToken | None = None
        if self.config.oidc and token.id_token:
            context = self.validation_context(check_nonce=False, check_at_hash=check_at_hash)
            try:
                parsed = await validate_id_token(token.id_token, token.access_token, context)
            except IdTokenValidationError as e:
                self.events.emit(EventType.TOKEN_VALIDATION_ERROR, reason=e)
                raise

        expires_in = token.expires_in
        if expires_in is None:
            expires_in = self.config.fallback_access_token_expiration
        self.token_store.store_access_token_response(token.access_token, token.refresh_token, expires_in)
        if parsed is not None:
            self.token_store.store_id_token(parsed)
        return parsed

    async def exchange_password(
        self, username: str, password: str, extra_headers: Mapping[str, str] | None = None
    ) -> TokenResponse:
        """
        Exchanges user credentials for tokens (resource owner password credentials grant).

        Raises:
            ConfigurationError: If ``oidc`` is enabled; password responses carry no verifiable id_token.
            NetworkError: If the token endpoint call fails.
        """
        if self.config.oidc:
            raise ConfigurationError("The password flow requires 'oidc=False'.")

        try:
            token = await self._token_request(
                PASSWORD_GRANT, {"username": username, "password": password}, extra_headers
            )
            await self._commit_token_response(token, check_at_hash=False)
        except CoreasonOAuthError as e:
            self.events.emit(EventType.TOKEN_ERROR, reason=e)
            raise

        logger.info("Tokens received using the password flow")
        self.events.emit(EventType.TOKEN_RECEIVED, info={"grant_type": PASSWORD_GRANT})
        self._rearm_timers()
        return token

    async def exchange_refresh_token(self, extra_headers: Mapping[str, str] | None = None) -> TokenResponse:
        """
        Replaces the stored tokens using the stored refresh_token.

        Raises:
            NoRefreshTokenError: Immediately, without a network call, if no refresh_token is stored.
            NetworkError: If the token endpoint call fails.
            IdTokenValidationError: If a returned id_token is rejected.
        """
        refresh_token = self.token_store.refresh_token
        if not refresh_token:
            raise NoRefreshTokenError("No refresh_token stored")

        try:
            token = await self._token_request(REFRESH_TOKEN_GRANT, {"refresh_token": refresh_token}, extra_headers)
            await self._commit_token_response(token, check_at_hash=self.config.at_hash_on_refresh)
        except CoreasonOAuthError as e:
            self.events.emit(EventType.TOKEN_REFRESH_ERROR, reason=e)
            raise

        logger.info("Tokens refreshed using the refresh_token")
        self.events.emit(EventType.TOKEN_RECEIVED, info={"grant_type": REFRESH_TOKEN_GRANT})
        self.events.emit(EventType.TOKEN_REFRESHED)
        self._rearm_timers()
        return token

    async def exchange_custom_grant(
        self,
        token: str,
        grant_type_url: str,
        extra_headers: Mapping[str, str] | None = None,
        token_param: str = "assertion",
    ) -> TokenResponse:
        """
        Exchanges a foreign token (e.g. a social provider's access token) with a non-standard grant.

        Args:
            token: The token to exchange.
            grant_type_url: The grant type identifier, usually a URN or URL.
            extra_headers: Extra request headers.
            token_param: The form field carrying ``token``.
        """
        try:
            response = await self._token_request(grant_type_url, {token_param: token}, extra_headers)
            await self._commit_token_response(response, check_at_hash=False)
        except CoreasonOAuthError as e:
            self.events.emit(EventType.TOKEN_ERROR, reason=e)
            raise

        logger.info(f"Tokens received using grant '{grant_type_url}'")
        self.events.emit(EventType.TOKEN_RECEIVED, info={"grant_type": grant_type_url})
        self._rearm_timers()
        return response

    # User info and logout

    async def load_user_profile(self) -> dict[str, Any]:
        """
        Loads the user profile from the userinfo endpoint with the stored access token.

        Raises:
            ConfigurationError: If there is no valid access token or no userinfo endpoint.
            NetworkError: If the request fails.
            IdTokenValidationError: If the profile belongs to another subject than the id_token.
        """
        if not self.token_store.has_valid_access_token():
            raise ConfigurationError("Cannot load the user profile without a valid access_token")
        url = self.resolve_endpoint("userinfo_endpoint")

        try:
            profile = await fetch_json(
                self.client,
                url,
                headers={"Authorization": f"Bearer {self.token_store.access_token}"},
                max_bytes=self.config.max_response_bytes,
            )
            claims = self.token_store.id_token_claims()
            if claims and not self.config.skip_subject_check and profile.get("sub") != claims.get("sub"):
                raise IdTokenValidationError(
                    IdTokenValidationReason.WRONG_SUBJECT, "User profile belongs to another subject"
                )
        except CoreasonOAuthError as e:
            self.events.emit(EventType.USER_PROFILE_LOAD_ERROR, reason=e)
            raise

        self.token_store.store_user_profile(profile)
        self.events.emit(EventType.USER_PROFILE_LOADED, info=profile)
        return profile

    def build_logout_url(self) -> str | None:
        """Returns the end-session URL for the current id_token, or None if there is no such endpoint."""
        try:
            url = self.resolve_endpoint("end_session_endpoint")
        except ConfigurationError:
            return None

        params: dict[str, str] = {}
        id_token = self.token_store.id_token
        if id_token:
            params["id_token_hint"] = id_token
        if self.config.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.config.post_logout_redirect_uri
        if not params:
            return url
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{urlencode(params)}"
