# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

import os
from collections.abc import Callable
from typing import Any

import pytest
from fake_idp import CLIENT_ID, ISSUER, REDIRECT_URI, FakeIdentityProvider, generate_key

from coreason_oauth_client.config import OAuthClientConfig


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Removes COREASON_OAUTH_* variables of the surrounding shell so that settings
    only come from what each test passes explicitly.
    """
    for name in list(os.environ):
        if name.startswith("COREASON_OAUTH_"):
            monkeypatch.delenv(name)


@pytest.fixture(scope="session")
def signing_key() -> Any:
    return generate_key()


@pytest.fixture(scope="session")
def other_key() -> Any:
    """A key the Identity Provider does not publish."""
    return generate_key()


@pytest.fixture
def idp(signing_key: Any) -> FakeIdentityProvider:
    return FakeIdentityProvider(signing_key)


@pytest.fixture
def make_config() -> Callable[..., OAuthClientConfig]:
    def _make(**overrides: Any) -> OAuthClientConfig:
        values: dict[str, Any] = {
            "issuer": ISSUER,
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "scope": "openid profile email",
        }
        values.update(overrides)
        return OAuthClientConfig(**values)

    return _make
