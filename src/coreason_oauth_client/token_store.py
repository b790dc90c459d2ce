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
TokenStore component owning every persisted token field.
"""

import json
import time
from typing import Any

from coreason_oauth_client.claims_validator import decode_id_token
from coreason_oauth_client.exceptions import CoreasonOAuthError
from coreason_oauth_client.models import ParsedIdToken
from coreason_oauth_client.storage import OAuthStorage
from coreason_oauth_client.utils.logger import logger

ACCESS_TOKEN = "access_token"
ACCESS_TOKEN_STORED_AT = "access_token_stored_at"
ACCESS_TOKEN_EXPIRES_AT = "expires_at"
REFRESH_TOKEN = "refresh_token"
ID_TOKEN = "id_token"
ID_TOKEN_STORED_AT = "id_token_stored_at"
ID_TOKEN_EXPIRES_AT = "id_token_expires_at"
SESSION_STATE = "session_state"
USER_PROFILE = "user_profile"
NONCE_PREFIX = "nonce:"
PENDING_NONCE_STATES = "pending_nonce_states"

TOKEN_KEYS = (
    ACCESS_TOKEN,
    ACCESS_TOKEN_STORED_AT,
    ACCESS_TOKEN_EXPIRES_AT,
    REFRESH_TOKEN,
    ID_TOKEN,
    ID_TOKEN_STORED_AT,
    ID_TOKEN_EXPIRES_AT,
    SESSION_STATE,
    USER_PROFILE,
)


class TokenStore:
    """
    Serializes tokens, their timestamps, nonces and the session state into an OAuthStorage.

    Timestamps are seconds since the epoch. Every other component reads token state through
    this class instead of keeping copies.
    """

    def __init__(self, storage: OAuthStorage) -> None:
        self.storage = storage

    def _get_float(self, key: str) -> float | None:
        raw = self.storage.get(key)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable timestamp stored under '{key}'")
            return None

    # Access / refresh tokens

    def store_access_token_response(
        self,
        access_token: str,
        refresh_token: str | None,
        expires_in: int | None,
        now: float | None = None,
    ) -> None:
        """
        Stores the access token with its issuance timestamp and expiration.
        A refresh token is only replaced when the response carried a new one.
        """
        now = time.time() if now is None else now
        self.storage.set(ACCESS_TOKEN, access_token)
        self.storage.set(ACCESS_TOKEN_STORED_AT, repr(now))
        if expires_in is not None:
            self.storage.set(ACCESS_TOKEN_EXPIRES_AT, repr(now + expires_in))
        else:
            self.storage.remove(ACCESS_TOKEN_EXPIRES_AT)
        if refresh_token:
            self.storage.set(REFRESH_TOKEN, refresh_token)

    @property
    def access_token(self) -> str | None:
        return self.storage.get(ACCESS_TOKEN)

    @property
    def refresh_token(self) -> str | None:
        return self.storage.get(REFRESH_TOKEN)

    @property
    def access_token_stored_at(self) -> float | None:
        return self._get_float(ACCESS_TOKEN_STORED_AT)

    @property
    def access_token_expiration(self) -> float | None:
        """Expiration of the access token in seconds since the epoch."""
        return self._get_float(ACCESS_TOKEN_EXPIRES_AT)

    def has_valid_access_token(self, now: float | None = None) -> bool:
        """
        True if an access token is stored, has a stored-at timestamp and has not expired.
        A token without expiration is valid until replaced.
        """
        if not self.access_token or self.access_token_stored_at is None:
            return False
        expires_at = self.access_token_expiration
        now = time.time() if now is None else now
        return expires_at is None or expires_at > now

    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    # Id token

    def store_id_token(self, parsed: ParsedIdToken, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.storage.set(ID_TOKEN, parsed.id_token)
        self.storage.set(ID_TOKEN_STORED_AT, repr(now))
        self.storage.set(ID_TOKEN_EXPIRES_AT, repr(parsed.expires_at))

    @property
    def id_token(self) -> str | None:
        return self.storage.get(ID_TOKEN)

    @property
    def id_token_stored_at(self) -> float | None:
        return self._get_float(ID_TOKEN_STORED_AT)

    @property
    def id_token_expiration(self) -> float | None:
        """Expiration of the id token (its ``exp`` claim) in seconds since the epoch."""
        return self._get_float(ID_TOKEN_EXPIRES_AT)

    def id_token_claims(self) -> dict[str, Any] | None:
        """
        Decodes the claims of the stored id token. Claims are never persisted in decoded form.
        """
        raw = self.id_token
        if not raw:
            return None
        try:
            _, claims = decode_id_token(raw)
        except CoreasonOAuthError:
            logger.warning("Stored id_token cannot be decoded")
            return None
        return claims

    def has_valid_id_token(self, now: float | None = None) -> bool:
        if not self.id_token or self.id_token_stored_at is None:
            return False
        expires_at = self.id_token_expiration
        now = time.time() if now is None else now
        return expires_at is not None and expires_at > now

    # Session state and profile

    def store_session_state(self, session_state: str | None) -> None:
        if session_state:
            self.storage.set(SESSION_STATE, session_state)
        else:
            self.storage.remove(SESSION_STATE)

    @property
    def session_state(self) -> str | None:
        return self.storage.get(SESSION_STATE)

    def store_user_profile(self, profile: dict[str, Any]) -> None:
        self.storage.set(USER_PROFILE, json.dumps(profile))

    @property
    def user_profile(self) -> dict[str, Any] | None:
        raw = self.storage.get(USER_PROFILE)
        if raw is None:
            return None
        try:
            profile = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored user profile is not valid JSON")
            return None
        return profile if isinstance(profile, dict) else None

    # Nonces

    def _pending_states(self) -> list[str]:
        raw = self.storage.get(PENDING_NONCE_STATES)
        if raw is None:
            return []
        try:
            states = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored list of pending nonce states is not valid JSON")
            return []
        if not isinstance(states, list):
            return []
        return [s for s in states if isinstance(s, str)]

    def _set_pending_states(self, states: list[str]) -> None:
        if states:
            self.storage.set(PENDING_NONCE_STATES, json.dumps(states))
        else:
            self.storage.remove(PENDING_NONCE_STATES)

    def save_nonce(self, state_key: str, nonce: str) -> None:
        """Binds a nonce to a state key and records the key in the stored index of pending states."""
        self.storage.set(NONCE_PREFIX + state_key, nonce)
        states = self._pending_states()
        if state_key not in states:
            self._set_pending_states([*states, state_key])

    def pop_nonce(self, state_key: str) -> str | None:
        """Returns the nonce bound to the state key and removes it. Nonces are single use."""
        key = NONCE_PREFIX + state_key
        nonce = self.storage.get(key)
        self.storage.remove(key)
        states = self._pending_states()
        if state_key in states:
            states.remove(state_key)
            self._set_pending_states(states)
        return nonce

    def clear(self) -> None:
        """
        Removes every token, the session state, the profile and all pending nonces.

        Pending nonces are found through an index kept in the storage itself, so a store opened
        over the same storage later (another process, a restarted service) clears them too.
        """
        for key in TOKEN_KEYS:
            self.storage.remove(key)
        for state_key in self._pending_states():
            self.storage.remove(NONCE_PREFIX + state_key)
        self.storage.remove(PENDING_NONCE_STATES)
