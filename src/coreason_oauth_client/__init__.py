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
OAuth2 / OpenID Connect client runtime: implicit and password flows, id_token validation,
expiration timers, silent refresh and session checks.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import OAuthClientConfig
from .events import EventBus, EventType, OAuthEvent
from .exceptions import (
    ConfigurationError,
    CoreasonOAuthError,
    DiscoveryFormatError,
    DiscoveryValidationError,
    IdTokenValidationError,
    IdTokenValidationReason,
    LoginResponseError,
    NetworkError,
    NoRefreshTokenError,
    SilentRefreshError,
    SilentRefreshTimeoutError,
)
from .messaging import ChannelMessage, MemoryMessageChannel, MessageChannel
from .models import DiscoveryDocument, LoginOptions, ParsedIdToken, TokenResponse, ValidationParams
from .service import OAuthService
from .storage import MemoryStorage, OAuthStorage
from .validation_handler import JwksValidationHandler, NullValidationHandler, ValidationHandler

__all__ = [
    "ChannelMessage",
    "ConfigurationError",
    "CoreasonOAuthError",
    "DiscoveryDocument",
    "DiscoveryFormatError",
    "DiscoveryValidationError",
    "EventBus",
    "EventType",
    "IdTokenValidationError",
    "IdTokenValidationReason",
    "JwksValidationHandler",
    "LoginOptions",
    "LoginResponseError",
    "MemoryMessageChannel",
    "MemoryStorage",
    "MessageChannel",
    "NetworkError",
    "NoRefreshTokenError",
    "NullValidationHandler",
    "OAuthClientConfig",
    "OAuthEvent",
    "OAuthService",
    "OAuthStorage",
    "ParsedIdToken",
    "SilentRefreshError",
    "SilentRefreshTimeoutError",
    "TokenResponse",
    "ValidationHandler",
]
