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
Pluggable id_token signature validation handlers.
"""

from collections.abc import Awaitable, Sequence
from typing import Any, Protocol, cast, runtime_checkable

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError

from coreason_oauth_client.models import ValidationParams
from coreason_oauth_client.utils.logger import logger


@runtime_checkable
class ValidationHandler(Protocol):
    """Protocol for the signature check of an id_token against the provider's JWKS."""

    def validate_signature(self, params: ValidationParams) -> bool | Awaitable[bool]:
        """
        Returns (or resolves to) True only if the signature is valid.
        """
        ...


class JwksValidationHandler:
    """
    Verifies the id_token signature with authlib against the JWKS.

    Attributes:
        allowed_algorithms (list[str]): Signing algorithms accepted. Anything else is rejected.
    """

    def __init__(self, allowed_algorithms: Sequence[str]) -> None:
        self.allowed_algorithms = list(allowed_algorithms)
        # Use a specific JsonWebToken instance to enforce allowed algorithms and reject others
        self.jwt = JsonWebToken(self.allowed_algorithms)

    def validate_signature(self, params: ValidationParams) -> bool:
        alg = params.id_token_header.get("alg")
        if alg not in self.allowed_algorithms:
            logger.warning(f"Rejecting id_token signed with disallowed algorithm '{alg}'")
            return False
        if not params.jwks.get("keys"):
            logger.warning("No keys available to verify the id_token signature")
            return False

        try:
            jwt_any = cast("Any", self.jwt)
            jwt_any.decode(params.id_token, params.jwks)
        except (JoseError, ValueError, KeyError) as e:
            # Authlib raises ValueError when no key in the set matches the token's kid
            logger.warning(f"Signature verification failed: {e}")
            return False
        return True


class NullValidationHandler:
    """
    Accepts every signature. Only for providers whose tokens are verified by another layer.
    """

    def validate_signature(self, params: ValidationParams) -> bool:
        logger.debug("Skipping id_token signature verification")
        return True
