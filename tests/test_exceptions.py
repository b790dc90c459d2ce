# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

from coreason_oauth_client.exceptions import (
    ConfigurationError,
    CoreasonOAuthError,
    DiscoveryFormatError,
    DiscoveryValidationError,
    IdTokenValidationError,
    IdTokenValidationReason,
    LoginResponseError,
    NetworkError,
    NoRefreshTokenError,
    OversizedResponseError,
    SessionCheckError,
    SilentRefreshError,
    SilentRefreshTimeoutError,
)


def test_exception_hierarchy() -> None:
    """Test that all custom exceptions inherit from CoreasonOAuthError."""
    for exc in (
        ConfigurationError,
        NetworkError,
        DiscoveryValidationError,
        DiscoveryFormatError,
        IdTokenValidationError,
        LoginResponseError,
        NoRefreshTokenError,
        SilentRefreshError,
        SessionCheckError,
    ):
        assert issubclass(exc, CoreasonOAuthError)
    assert issubclass(OversizedResponseError, NetworkError)
    assert issubclass(SilentRefreshTimeoutError, SilentRefreshError)


def test_network_error_attributes() -> None:
    err = NetworkError("failed", status_code=400, error="invalid_grant", error_description="bad password")
    assert str(err) == "failed"
    assert err.status_code == 400
    assert err.error == "invalid_grant"
    assert err.error_description == "bad password"


def test_network_error_defaults() -> None:
    err = NetworkError("unreachable")
    assert err.status_code is None
    assert err.error is None


def test_id_token_validation_error_carries_reason() -> None:
    err = IdTokenValidationError(IdTokenValidationReason.NONCE_MISMATCH, "Unexpected nonce")
    assert err.reason is IdTokenValidationReason.NONCE_MISMATCH
    assert "nonce_mismatch" in str(err)


def test_login_response_error() -> None:
    err = LoginResponseError("Login failed", error="access_denied")
    assert err.error == "access_denied"
    assert LoginResponseError("no state").error is None


def test_reason_values() -> None:
    assert {r.value for r in IdTokenValidationReason} == {
        "expired",
        "issued_in_future",
        "wrong_audience",
        "wrong_issuer",
        "wrong_subject",
        "nonce_mismatch",
        "at_hash_mismatch",
        "bad_signature",
        "malformed",
    }
