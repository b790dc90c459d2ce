# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

from typing import Any

import pytest
from authlib.jose import jwt
from fake_idp import FakeIdentityProvider

from coreason_oauth_client.claims_validator import decode_id_token
from coreason_oauth_client.models import ValidationParams
from coreason_oauth_client.validation_handler import (
    JwksValidationHandler,
    NullValidationHandler,
    ValidationHandler,
)


def params_for(token: str, jwks: dict[str, Any]) -> ValidationParams:
    header, claims = decode_id_token(token)
    return ValidationParams(id_token=token, id_token_header=header, id_token_claims=claims, jwks=jwks)


@pytest.fixture
def handler() -> JwksValidationHandler:
    return JwksValidationHandler(["RS256"])


def test_valid_signature(handler: JwksValidationHandler, idp: FakeIdentityProvider) -> None:
    assert handler.validate_signature(params_for(idp.id_token(), idp.jwks)) is True


def test_unknown_key(handler: JwksValidationHandler, idp: FakeIdentityProvider, other_key: Any) -> None:
    token = idp.id_token(key=other_key)
    assert handler.validate_signature(params_for(token, idp.jwks)) is False


def test_tampered_payload(handler: JwksValidationHandler, idp: FakeIdentityProvider) -> None:
    header, _, signature = idp.id_token().split(".")
    _, forged_payload, _ = idp.id_token(sub="admin").split(".")
    forged = f"{header}.{forged_payload}.{signature}"
    assert handler.validate_signature(params_for(forged, idp.jwks)) is False


def test_disallowed_algorithm(idp: FakeIdentityProvider) -> None:
    handler = JwksValidationHandler(["ES256"])
    assert handler.validate_signature(params_for(idp.id_token(), idp.jwks)) is False


def test_symmetric_algorithm_rejected(handler: JwksValidationHandler, idp: FakeIdentityProvider) -> None:
    token = jwt.encode({"alg": "HS256"}, {"sub": "x"}, "shared-secret").decode("utf-8")
    assert handler.validate_signature(params_for(token, idp.jwks)) is False


def test_empty_key_set(handler: JwksValidationHandler, idp: FakeIdentityProvider) -> None:
    assert handler.validate_signature(params_for(idp.id_token(), {"keys": []})) is False


def test_null_handler_accepts_everything(idp: FakeIdentityProvider, other_key: Any) -> None:
    token = idp.id_token(key=other_key)
    assert NullValidationHandler().validate_signature(params_for(token, {"keys": []})) is True


def test_handlers_satisfy_protocol() -> None:
    assert isinstance(JwksValidationHandler(["RS256"]), ValidationHandler)
    assert isinstance(NullValidationHandler(), ValidationHandler)
