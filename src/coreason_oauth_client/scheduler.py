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
ExpirationScheduler component arming one expiration timer per token kind.
"""

import time

import anyio

from coreason_oauth_client.async_context import CancellableHandle, HandleSlot, TaskRunner
from coreason_oauth_client.config import OAuthClientConfig
from coreason_oauth_client.events import EventBus, EventType
from coreason_oauth_client.models import TokenKind
from coreason_oauth_client.token_store import TokenStore
from coreason_oauth_client.utils.logger import logger


def calc_timeout(stored_at: float, expires_at: float, timeout_factor: float = 1.0, now: float | None = None) -> float:
    """
    Seconds from now until ``timeout_factor`` of the token's lifetime has elapsed, never negative.

    Args:
        stored_at: When the token was stored (seconds since the epoch).
        expires_at: When the token expires (seconds since the epoch).
        timeout_factor: Fraction of the lifetime after which the timer fires.
        now: Current time (defaults to ``time.time()``).
    """
    now = time.time() if now is None else now
    lifetime = expires_at - stored_at
    return max(0.0, stored_at + lifetime * timeout_factor - now)


class ExpirationScheduler:
    """
    Keeps one timer per token kind. Arming a kind cancels its previous timer first, so at most
    one firing happens per kind, at the instant implied by the latest commit.

    On firing, `token_expires` is published; `token_expired` follows once the token is past its
    expiration plus the configured grace period. A commit in between re-arms the slot and
    thereby cancels the pending `token_expired`.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        token_store: TokenStore,
        events: EventBus,
        runner: TaskRunner,
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.events = events
        self.runner = runner
        self._slots: dict[TokenKind, HandleSlot] = {kind: HandleSlot() for kind in TokenKind}

    def timer(self, kind: TokenKind) -> CancellableHandle | None:
        """The currently armed timer for a token kind, if any."""
        handle = self._slots[kind].current
        return handle if handle is not None and handle.active else None

    def _token_times(self, kind: TokenKind) -> tuple[float | None, float | None]:
        if kind is TokenKind.ACCESS_TOKEN:
            if not self.token_store.access_token:
                return None, None
            return self.token_store.access_token_stored_at, self.token_store.access_token_expiration
        if not self.token_store.id_token:
            return None, None
        return self.token_store.id_token_stored_at, self.token_store.id_token_expiration

    def arm(self, kind: TokenKind) -> CancellableHandle | None:
        """
        (Re-)arms the timer of one token kind from the stored timestamps.

        Returns:
            CancellableHandle | None: The new timer, or None if the token has no expiration
            or no task runner is active.
        """
        stored_at, expires_at = self._token_times(kind)
        if expires_at is None:
            self._slots[kind].clear()
            return None
        if stored_at is None:
            # Without a stored-at the token counts as already expired
            stored_at = expires_at = min(expires_at, time.time())

        if not self.runner.running:
            logger.warning(f"Cannot arm the {kind} timer outside of a running service")
            return None

        delay = calc_timeout(stored_at, expires_at, self.config.timeout_factor)
        handle = self.runner.call_later(delay, self._fire, kind, expires_at, name=f"{kind}_timer")
        self._slots[kind].replace(handle)
        logger.debug(f"{kind} timer armed: fires in {delay:.1f}s")
        return handle

    def setup_expiration_timers(self) -> None:
        """Arms the timers for every stored token kind."""
        for kind in TokenKind:
            self.arm(kind)

    async def _fire(self, kind: TokenKind, expires_at: float) -> None:
        logger.info(f"{kind} expires")
        self.events.emit(EventType.TOKEN_EXPIRES, info=kind)

        remaining = expires_at + self.config.expiration_grace_period - time.time()
        if remaining > 0:
            await anyio.sleep(remaining)
        logger.info(f"{kind} expired")
        self.events.emit(EventType.TOKEN_EXPIRED, info=kind)

    def clear(self, kind: TokenKind | None = None) -> None:
        """Cancels the timer of one kind, or of every kind."""
        kinds = [kind] if kind is not None else list(TokenKind)
        for k in kinds:
            self._slots[k].clear()
