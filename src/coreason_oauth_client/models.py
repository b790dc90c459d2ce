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
Data models for the coreason-oauth-client package.
"""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TokenKind(StrEnum):
    ACCESS_TOKEN = "access_token"
    ID_TOKEN = "id_token"


class DiscoveryDocument(BaseModel):
    """
    OIDC Configuration from .well-known/openid-configuration.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    authorization_endpoint: str = Field(..., description="The authorization endpoint URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")
    token_endpoint: str | None = Field(default=None, description="The token endpoint URL.")
    userinfo_endpoint: str | None = Field(default=None, description="The user info endpoint URL.")
    end_session_endpoint: str | None = Field(default=None, description="The end session (logout) endpoint URL.")
    check_session_iframe: str | None = Field(default=None, description="The check session endpoint URL.")
    grant_types_supported: list[str] = Field(default_factory=list)

    def endpoint_urls(self) -> dict[str, str]:
        """Returns every URL of the document that points at the Identity Provider, keyed by field name."""
        fields = (
            "authorization_endpoint",
            "jwks_uri",
            "token_endpoint",
            "userinfo_endpoint",
            "end_session_endpoint",
            "check_session_iframe",
        )
        return {name: getattr(self, name) for name in fields if getattr(self, name)}


class TokenResponse(BaseModel):
    """
    Response of the token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The ID token, if issued.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None


class ParsedIdToken(BaseModel):
    """
    An id_token that passed validation, with its decoded header and claims.

    Only the raw form is persisted; claims are decoded again from it when read back.
    """

    model_config = ConfigDict(frozen=True)

    id_token: str
    header: dict[str, Any]
    claims: dict[str, Any]

    @property
    def issuer(self) -> str | None:
        return self.claims.get("iss")

    @property
    def audience(self) -> list[str]:
        aud = self.claims.get("aud")
        if aud is None:
            return []
        if isinstance(aud, str):
            return [aud]
        return [str(a) for a in aud]

    @property
    def subject(self) -> str | None:
        return self.claims.get("sub")

    @property
    def nonce(self) -> str | None:
        return self.claims.get("nonce")

    @property
    def at_hash(self) -> str | None:
        return self.claims.get("at_hash")

    @property
    def expires_at(self) -> float:
        """The ``exp`` claim as seconds since the epoch."""
        return float(self.claims["exp"])

    @property
    def issued_at(self) -> float | None:
        iat = self.claims.get("iat")
        return float(iat) if iat is not None else None


class ValidationParams(BaseModel):
    """
    Everything a signature validation handler needs to check an id_token.
    """

    model_config = ConfigDict(frozen=True)

    id_token: str
    id_token_header: dict[str, Any]
    id_token_claims: dict[str, Any]
    jwks: dict[str, Any]
    access_token: str | None = None


class ReceivedTokens(BaseModel):
    """Tokens handed to ``LoginOptions.on_token_received``."""

    model_config = ConfigDict(frozen=True)

    id_claims: dict[str, Any] | None = None
    id_token: str | None = None
    access_token: str | None = None
    state: str | None = None


class LoginOptions(BaseModel):
    """
    Options for processing a login response.

    Attributes:
        on_token_received: Called with a ``ReceivedTokens`` after the tokens were stored.
        on_login_error: Called with the parsed response parameters when the response reports an error.
        disable_oauth2_state_check: Accept access tokens whose state has no stored nonce (OAuth2 only).
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    on_token_received: Callable[[ReceivedTokens], Any] | None = None
    on_login_error: Callable[[dict[str, str]], Any] | None = None
    disable_oauth2_state_check: bool = False
