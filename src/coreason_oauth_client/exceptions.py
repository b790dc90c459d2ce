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
Custom exceptions for the coreason-oauth-client package.
"""

from enum import StrEnum


class CoreasonOAuthError(Exception):
    """Base exception for all coreason-oauth-client errors."""


class ConfigurationError(CoreasonOAuthError):
    """Raised when an operation is not possible with the current configuration or discovery state."""


class NetworkError(CoreasonOAuthError):
    """
    Raised when a request to the Identity Provider fails.

    Attributes:
        status_code (int | None): The HTTP status code, if a response was received.
        error (str | None): The OAuth2 ``error`` code from the response body, if any.
        error_description (str | None): The OAuth2 ``error_description``, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class OversizedResponseError(NetworkError):
    """Raised when an HTTP response is too large."""


class MalformedResponseError(NetworkError):
    """Raised when a successful HTTP response body is not a JSON object."""


class DiscoveryValidationError(CoreasonOAuthError):
    """Raised when the discovery document does not match the configuration (issuer, https, origin)."""


class DiscoveryFormatError(CoreasonOAuthError):
    """Raised when the discovery document or JWKS is malformed or misses required fields."""


class IdTokenValidationReason(StrEnum):
    EXPIRED = "expired"
    ISSUED_IN_FUTURE = "issued_in_future"
    WRONG_AUDIENCE = "wrong_audience"
    WRONG_ISSUER = "wrong_issuer"
    WRONG_SUBJECT = "wrong_subject"
    NONCE_MISMATCH = "nonce_mismatch"
    AT_HASH_MISMATCH = "at_hash_mismatch"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"


class IdTokenValidationError(CoreasonOAuthError):
    """
    Raised when an id_token is rejected. The token is never stored.

    Attributes:
        reason (IdTokenValidationReason): Which check rejected the token.
    """

    def __init__(self, reason: IdTokenValidationReason, message: str) -> None:
        super().__init__(f"{message} ({reason})")
        self.reason = reason


class LoginResponseError(CoreasonOAuthError):
    """
    Raised when a login callback is malformed, reports an error or cannot be matched to a request.

    Attributes:
        error (str | None): The ``error`` parameter sent by the Identity Provider, if any.
    """

    def __init__(self, message: str, error: str | None = None) -> None:
        super().__init__(message)
        self.error = error


class NoRefreshTokenError(CoreasonOAuthError):
    """Raised when a refresh is requested but no refresh_token is stored."""


class SilentRefreshError(CoreasonOAuthError):
    """Raised when a silent refresh attempt fails or is superseded."""


class SilentRefreshTimeoutError(SilentRefreshError):
    """Raised when no correlated silent refresh response arrives in time."""


class SessionCheckError(CoreasonOAuthError):
    """Raised when a session check cannot be performed."""
