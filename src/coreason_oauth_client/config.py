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
Configuration for the coreason-oauth-client package.
"""

import ipaddress
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})


def is_local_host(hostname: str | None) -> bool:
    """
    Returns True if the hostname designates the local machine (localhost or a loopback IP).
    """
    if not hostname:
        return False
    hostname = hostname.lower()
    if hostname in LOCAL_HOSTNAMES:
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False


def url_satisfies_https(url: str, require_https: bool | Literal["remote_only"]) -> bool:
    """
    Checks a URL against the ``require_https`` policy.

    Args:
        url: The URL to check.
        require_https: True (always https), False (anything goes) or "remote_only"
            (plain http is tolerated for localhost only).

    Returns:
        bool: Whether the URL is acceptable.
    """
    if require_https is False:
        return True
    parsed = urlparse(url)
    if parsed.scheme.lower() == "https":
        return True
    if require_https == "remote_only":
        return is_local_host(parsed.hostname)
    return False


class OAuthClientConfig(BaseSettings):
    """
    Configuration settings for coreason-oauth-client.

    The model is frozen: replace the whole value (``OAuthService.configure``) to change it.

    Attributes:
        issuer (str): The expected issuer URL of the Identity Provider.
        client_id (str): The OAuth2 client id registered at the Identity Provider.
        redirect_uri (str): Where the Identity Provider sends the implicit flow response.
        scope (str): Space separated scopes to request.
        response_type (str): The implicit flow response type. Derived from ``oidc`` when empty.
        oidc (bool): Whether OpenID Connect id_token handling and validation applies.
        require_https (bool | "remote_only"): The https policy for the issuer and discovered endpoints.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OAUTH_",
        case_sensitive=False,
        frozen=True,
    )

    issuer: str = ""
    client_id: str
    redirect_uri: str = ""
    post_logout_redirect_uri: str = ""
    silent_refresh_redirect_uri: str = ""
    scope: str = "openid profile"
    response_type: str = ""
    discovery_document_url: str | None = None

    login_url: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    logout_url: str | None = None

    oidc: bool = True
    request_access_token: bool = True
    require_https: bool | Literal["remote_only"] = "remote_only"
    strict_discovery_document_validation: bool = True
    skip_issuer_check: bool = False
    skip_subject_check: bool = False
    disable_at_hash_check: bool = False
    at_hash_on_refresh: bool = False
    session_checks_enabled: bool = False
    use_id_token_hint_for_silent_refresh: bool = False
    automatic_silent_refresh: bool = False

    session_check_interval: float = Field(default=3.0, description="Seconds between two session checks.")
    session_check_timeout: float = Field(default=5.0, description="Seconds to wait for a session check answer.")
    silent_refresh_timeout: float = Field(default=20.0, description="Seconds to wait for a silent refresh answer.")
    timeout_factor: float = Field(default=1.0, description="Fraction of a token's lifetime before token_expires.")
    expiration_grace_period: float = Field(default=5.0, description="Seconds between expiry and token_expired.")
    clock_skew_leeway: int = Field(default=600, description="Acceptable clock skew in seconds.")
    fallback_access_token_expiration: int | None = None
    http_timeout: float = Field(default=10.0, description="Timeout in seconds for all IdP network operations.")
    max_response_bytes: int = 1_000_000

    custom_query_params: dict[str, str] = Field(default_factory=dict)
    dummy_client_secret: SecretStr | None = None
    additional_trusted_origins: list[str] = Field(default_factory=list)
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256", "RS384", "RS512", "ES256", "PS256"])
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")

    @field_validator("issuer", mode="after")
    @classmethod
    def normalize_issuer(cls, v: str) -> str:
        return v.strip()

    @field_validator("session_check_interval", "silent_refresh_timeout", "session_check_timeout", "http_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive.")
        return v

    @field_validator("timeout_factor")
    @classmethod
    def validate_timeout_factor(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("timeout_factor must be in (0, 1].")
        return v

    @model_validator(mode="after")
    def validate_issuer_https(self) -> "OAuthClientConfig":
        """
        Ensures that the issuer uses HTTPS, unless the https policy allows otherwise.
        """
        if self.issuer and not url_satisfies_https(self.issuer, self.require_https):
            raise ValueError(
                "HTTPS is required for the issuer. Set 'require_https=False' only for local testing."
            )
        return self

    @property
    def effective_response_type(self) -> str:
        """The response type sent to the authorization endpoint."""
        if self.response_type:
            return self.response_type
        if self.oidc and self.request_access_token:
            return "id_token token"
        if self.oidc:
            return "id_token"
        return "token"

    @property
    def default_discovery_document_url(self) -> str:
        """The discovery document URL derived from the issuer (OpenID Connect Discovery 1.0)."""
        if self.discovery_document_url:
            return self.discovery_document_url
        return self.issuer.rstrip("/") + "/.well-known/openid-configuration"
