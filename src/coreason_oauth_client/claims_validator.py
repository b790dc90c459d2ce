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
ClaimsValidator: structural, temporal, binding and signature checks for id_tokens.
"""

import binascii
import hashlib
import hmac
import inspect
import json
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from authlib.common.encoding import to_bytes, to_native, urlsafe_b64decode
from authlib.oidc.core.util import create_half_hash
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ConfigDict, SecretStr

from coreason_oauth_client.exceptions import IdTokenValidationError, IdTokenValidationReason
from coreason_oauth_client.models import ParsedIdToken, ValidationParams
from coreason_oauth_client.utils.logger import logger
from coreason_oauth_client.validation_handler import ValidationHandler

tracer = trace.get_tracer(__name__)


class ValidationContext(BaseModel):
    """
    What an id_token is checked against.

    Attributes:
        issuer: The issuer resolved from the discovery document.
        client_id: Must be contained in the ``aud`` claim.
        jwks: The key set handed to the validation handler.
        handler: The pluggable signature validation capability.
        expected_nonce: The nonce stored for the in-flight state.
        check_nonce: False for exchanges without a nonce (refresh, password, custom grants).
        check_at_hash: Whether an accompanying access token must match ``at_hash``.
        expected_subject: The ``sub`` of the currently stored id token, if it must stay the same.
        reload_jwks: Fetches a fresh key set when the handler rejects the signature.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    issuer: str
    client_id: str
    jwks: dict[str, Any]
    handler: ValidationHandler
    expected_nonce: str | None = None
    check_nonce: bool = True
    check_at_hash: bool = True
    skip_issuer_check: bool = False
    expected_subject: str | None = None
    clock_skew_leeway: int = 600
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    reload_jwks: Callable[[], Awaitable[dict[str, Any]]] | None = None


def anonymize(value: str, salt: SecretStr) -> str:
    """
    Anonymizes a value using HMAC-SHA256 with the configured salt.
    """
    return hmac.new(
        salt.get_secret_value().encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def pad_base64(segment: str) -> str:
    """Restores the ``=`` padding that base64url segments of a compact JWT omit."""
    return segment + "=" * (-len(segment) % 4)


def _decode_segment(segment: str) -> dict[str, Any]:
    try:
        decoded = json.loads(urlsafe_b64decode(to_bytes(pad_base64(segment))))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, f"Undecodable token segment: {e}") from e
    if not isinstance(decoded, dict):
        raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, "Token segment is not a JSON object")
    return decoded


def decode_id_token(id_token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Decodes the header and claims of a compact serialized token without verifying anything.

    Returns:
        tuple[dict, dict]: The header and the claims.

    Raises:
        IdTokenValidationError: With reason ``malformed`` if the token is not three base64url JSON parts.
    """
    parts = id_token.strip().split(".")
    if len(parts) != 3 or not all(parts[:2]):
        raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, "Token must have three parts")
    return _decode_segment(parts[0]), _decode_segment(parts[1])


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def check_structure(id_token: str) -> ParsedIdToken:
    """
    Decodes the token and checks that the claims the later checks rely on have usable types.

    Raises:
        IdTokenValidationError: With reason ``malformed``.
    """
    header, claims = decode_id_token(id_token)
    for claim in ("iss", "sub", "aud", "exp"):
        if claim not in claims:
            raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, f"Missing claim '{claim}'")
    for claim in ("iss", "sub", "nonce", "at_hash"):
        if claim in claims and not isinstance(claims[claim], str):
            raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, f"Claim '{claim}' must be a string")
    aud = claims["aud"]
    if not isinstance(aud, str) and not (isinstance(aud, list) and all(isinstance(a, str) for a in aud)):
        raise IdTokenValidationError(
            IdTokenValidationReason.MALFORMED, "Claim 'aud' must be a string or a list of strings"
        )
    if not _is_timestamp(claims["exp"]):
        raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, "Claim 'exp' must be a finite number")
    if "iat" in claims and not _is_timestamp(claims["iat"]):
        raise IdTokenValidationError(IdTokenValidationReason.MALFORMED, "Claim 'iat' must be a finite number")
    return ParsedIdToken(id_token=id_token.strip(), header=header, claims=claims)


def check_expiry(parsed: ParsedIdToken, leeway: int, now: float) -> None:
    if parsed.expires_at + leeway < now:
        raise IdTokenValidationError(IdTokenValidationReason.EXPIRED, "Token has expired")
    issued_at = parsed.issued_at
    if issued_at is not None and issued_at - leeway > now:
        raise IdTokenValidationError(IdTokenValidationReason.ISSUED_IN_FUTURE, "Token has been issued in the future")


def check_issuer(parsed: ParsedIdToken, issuer: str) -> None:
    if parsed.issuer != issuer:
        raise IdTokenValidationError(
            IdTokenValidationReason.WRONG_ISSUER, f"Wrong issuer: {parsed.issuer}, expected {issuer}"
        )


def check_audience(parsed: ParsedIdToken, client_id: str) -> None:
    if client_id not in parsed.audience:
        raise IdTokenValidationError(
            IdTokenValidationReason.WRONG_AUDIENCE, "Token audience does not contain client id"
        )


def check_subject(parsed: ParsedIdToken, expected_subject: str | None) -> None:
    if expected_subject is not None and parsed.subject != expected_subject:
        raise IdTokenValidationError(
            IdTokenValidationReason.WRONG_SUBJECT, "Received an id_token for another subject than the stored one"
        )


def check_nonce(parsed: ParsedIdToken, expected_nonce: str | None) -> None:
    nonce = parsed.nonce
    if expected_nonce is None or nonce is None:
        raise IdTokenValidationError(IdTokenValidationReason.NONCE_MISMATCH, "Unexpected nonce")
    if not hmac.compare_digest(nonce.encode("utf-8"), expected_nonce.encode("utf-8")):
        raise IdTokenValidationError(IdTokenValidationReason.NONCE_MISMATCH, "Unexpected nonce")


def compute_at_hash(access_token: str, alg: str) -> str | None:
    """
    Left-most half of the access token hash, base64url encoded, for the hash of the signing alg.
    Returns None when the algorithm has no matching hash function.
    """
    half_hash = create_half_hash(access_token, alg)
    if half_hash is None:
        return None
    return to_native(half_hash)


def check_at_hash(parsed: ParsedIdToken, access_token: str) -> None:
    claimed = parsed.at_hash
    if claimed is None:
        raise IdTokenValidationError(IdTokenValidationReason.AT_HASH_MISMATCH, "Missing at_hash claim")
    expected = compute_at_hash(access_token, str(parsed.header.get("alg", "")))
    if expected is None or not hmac.compare_digest(expected.encode("utf-8"), claimed.encode("utf-8")):
        raise IdTokenValidationError(IdTokenValidationReason.AT_HASH_MISMATCH, "Wrong at_hash")


async def _ask_handler(handler: ValidationHandler, params: ValidationParams) -> bool:
    try:
        result = handler.validate_signature(params)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        logger.error("Validation handler failed", exc_info=True)
        raise IdTokenValidationError(IdTokenValidationReason.BAD_SIGNATURE, f"Signature check failed: {e}") from e
    return result is True


async def check_signature(parsed: ParsedIdToken, access_token: str | None, context: ValidationContext) -> None:
    params = ValidationParams(
        id_token=parsed.id_token,
        id_token_header=parsed.header,
        id_token_claims=parsed.claims,
        jwks=context.jwks,
        access_token=access_token,
    )
    if await _ask_handler(context.handler, params):
        return

    if context.reload_jwks is not None:
        # Possible key rotation: retry once with a fresh key set
        logger.info("Signature rejected with cached keys, reloading JWKS and retrying...")
        jwks = await context.reload_jwks()
        if await _ask_handler(context.handler, params.model_copy(update={"jwks": jwks})):
            return

    raise IdTokenValidationError(IdTokenValidationReason.BAD_SIGNATURE, "Signature not valid")


async def validate_id_token(
    id_token: str,
    access_token: str | None,
    context: ValidationContext,
    now: float | None = None,
) -> ParsedIdToken:
    """
    Validates an id_token. Checks run in order and stop at the first failure:
    structure, expiry, issuer, audience, subject, nonce, at_hash and finally the signature.

    Emits an OpenTelemetry span `validate_id_token`.

    Args:
        id_token: The compact serialized id_token.
        access_token: The access token received in the same response, if any.
        context: What the token is checked against.
        now: Current time in seconds since the epoch (defaults to ``time.time()``).

    Returns:
        ParsedIdToken: The decoded, accepted token.

    Raises:
        IdTokenValidationError: Carrying the reason of the first failed check.
    """
    now = time.time() if now is None else now
    with tracer.start_as_current_span("validate_id_token") as span:
        try:
            parsed = check_structure(id_token)
            check_expiry(parsed, context.clock_skew_leeway, now)
            if not context.skip_issuer_check:
                check_issuer(parsed, context.issuer)
            check_audience(parsed, context.client_id)
            check_subject(parsed, context.expected_subject)
            if context.check_nonce:
                check_nonce(parsed, context.expected_nonce)
            if context.check_at_hash and access_token:
                check_at_hash(parsed, access_token)
            await check_signature(parsed, access_token, context)
        except IdTokenValidationError as e:
            logger.warning(f"id_token rejected: {e.reason}")
            span.record_exception(e)
            span.set_attribute("oauth.rejection_reason", str(e.reason))
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        subject_hash = anonymize(str(parsed.subject), context.pii_salt)
        logger.info(f"id_token validated for subject {subject_hash}")
        span.set_attribute("enduser.id", subject_hash)
        span.set_status(Status(StatusCode.OK))
        return parsed
