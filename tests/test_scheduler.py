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
Tests for the ExpirationScheduler component.
"""

import time
from collections.abc import Callable
from typing import Any

import anyio
import pytest
from fake_idp import FakeIdentityProvider, drain

from coreason_oauth_client.async_context import TaskRunner
from coreason_oauth_client.claims_validator import check_structure
from coreason_oauth_client.config import OAuthClientConfig
from coreason_oauth_client.events import EventBus, EventType, wait_for_event
from coreason_oauth_client.models import TokenKind
from coreason_oauth_client.scheduler import ExpirationScheduler, calc_timeout
from coreason_oauth_client.storage import MemoryStorage
from coreason_oauth_client.token_store import ACCESS_TOKEN_STORED_AT, TokenStore


def make_scheduler(config: OAuthClientConfig, runner: TaskRunner) -> ExpirationScheduler:
    return ExpirationScheduler(config, TokenStore(MemoryStorage()), EventBus(), runner)


def store_expiring_access_token(scheduler: ExpirationScheduler, seconds_left: float, lifetime: int = 60) -> None:
    """Stores an access token of the given lifetime that expires ``seconds_left`` from now."""
    stored_at = time.time() - lifetime + seconds_left
    scheduler.token_store.store_access_token_response("at", None, lifetime, now=stored_at)


def expiry_events(events: list[Any], kind: TokenKind = TokenKind.ACCESS_TOKEN) -> list[EventType]:
    return [e.type for e in events if e.info == kind]


class TestCalcTimeout:
    def test_full_lifetime(self) -> None:
        assert calc_timeout(1000.0, 4600.0, now=1000.0) == 3600.0

    def test_timeout_factor(self) -> None:
        assert calc_timeout(1000.0, 4600.0, 0.75, now=1000.0) == 2700.0

    def test_elapsed_time_subtracted(self) -> None:
        assert calc_timeout(1000.0, 4600.0, now=1600.0) == 3000.0

    def test_never_negative(self) -> None:
        assert calc_timeout(1000.0, 4600.0, now=9999.0) == 0.0


@pytest.mark.asyncio
async def test_timer_delay_matches_lifetime(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(), runner)
        scheduler.token_store.store_access_token_response("at", None, 3600)
        handle = scheduler.arm(TokenKind.ACCESS_TOKEN)

        assert handle is not None
        assert handle.delay == pytest.approx(3600, abs=2)
        assert scheduler.timer(TokenKind.ACCESS_TOKEN) is handle


@pytest.mark.asyncio
async def test_arming_twice_fires_once(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(expiration_grace_period=60), runner)
        stream = scheduler.events.subscribe()

        store_expiring_access_token(scheduler, 0.1)
        first = scheduler.arm(TokenKind.ACCESS_TOKEN)
        store_expiring_access_token(scheduler, 0.2)
        second = scheduler.arm(TokenKind.ACCESS_TOKEN)
        await anyio.sleep(0.5)

        assert first is not None and first.cancelled
        assert second is not None and second.delay == pytest.approx(0.2, abs=0.05)
        assert expiry_events(drain(stream)) == [EventType.TOKEN_EXPIRES]


@pytest.mark.asyncio
async def test_expired_follows_after_grace_period(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(expiration_grace_period=0.05), runner)
        stream = scheduler.events.subscribe()

        store_expiring_access_token(scheduler, 0.05)
        scheduler.arm(TokenKind.ACCESS_TOKEN)
        await anyio.sleep(0.4)

    assert expiry_events(drain(stream)) == [EventType.TOKEN_EXPIRES, EventType.TOKEN_EXPIRED]


@pytest.mark.asyncio
async def test_timeout_factor_fires_early(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(timeout_factor=0.5, expiration_grace_period=60), runner)
        scheduler.token_store.store_access_token_response("at", None, 3600)
        handle = scheduler.arm(TokenKind.ACCESS_TOKEN)

        assert handle is not None
        assert handle.delay == pytest.approx(1800, abs=2)


@pytest.mark.asyncio
async def test_rearm_cancels_pending_expired(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(expiration_grace_period=0.2), runner)
        stream = scheduler.events.subscribe()

        store_expiring_access_token(scheduler, 0.02)
        scheduler.arm(TokenKind.ACCESS_TOKEN)
        with scheduler.events.subscribe() as waiter:
            assert await wait_for_event(waiter, [EventType.TOKEN_EXPIRES], 1.0) is not None

        scheduler.token_store.store_access_token_response("fresh", None, 3600)
        scheduler.arm(TokenKind.ACCESS_TOKEN)
        await anyio.sleep(0.4)

    assert expiry_events(drain(stream)) == [EventType.TOKEN_EXPIRES]


@pytest.mark.asyncio
async def test_missing_stored_at_counts_as_expired(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(expiration_grace_period=60), runner)
        stream = scheduler.events.subscribe()
        scheduler.token_store.store_access_token_response("at", None, 3600)
        scheduler.token_store.storage.remove(ACCESS_TOKEN_STORED_AT)

        handle = scheduler.arm(TokenKind.ACCESS_TOKEN)
        await anyio.sleep(0.1)

    assert handle is not None and handle.delay == 0.0
    assert expiry_events(drain(stream))[0] is EventType.TOKEN_EXPIRES


@pytest.mark.asyncio
async def test_token_kinds_are_independent(
    make_config: Callable[..., OAuthClientConfig], idp: FakeIdentityProvider
) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(), runner)
        scheduler.token_store.store_access_token_response("at", None, 300)
        scheduler.token_store.store_id_token(check_structure(idp.id_token(exp=int(time.time()) + 7200)))

        scheduler.setup_expiration_timers()
        access = scheduler.timer(TokenKind.ACCESS_TOKEN)
        id_timer = scheduler.timer(TokenKind.ID_TOKEN)

        assert access is not None and access.delay == pytest.approx(300, abs=2)
        assert id_timer is not None and id_timer.delay == pytest.approx(7200, abs=2)

        scheduler.clear(TokenKind.ACCESS_TOKEN)
        assert scheduler.timer(TokenKind.ACCESS_TOKEN) is None
        assert scheduler.timer(TokenKind.ID_TOKEN) is id_timer

        scheduler.clear()
        assert id_timer.cancelled


@pytest.mark.asyncio
async def test_no_timer_without_expiration(make_config: Callable[..., OAuthClientConfig]) -> None:
    async with TaskRunner() as runner:
        scheduler = make_scheduler(make_config(), runner)
        scheduler.token_store.store_access_token_response("at", None, None)

        assert scheduler.arm(TokenKind.ACCESS_TOKEN) is None
        assert scheduler.arm(TokenKind.ID_TOKEN) is None


def test_no_timer_outside_running_service(make_config: Callable[..., OAuthClientConfig]) -> None:
    scheduler = make_scheduler(make_config(), TaskRunner())
    scheduler.token_store.store_access_token_response("at", None, 3600)

    assert scheduler.arm(TokenKind.ACCESS_TOKEN) is None
