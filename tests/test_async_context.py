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
Tests for TaskRunner, CancellableHandle and HandleSlot.
"""

import anyio
import pytest

from coreason_oauth_client.async_context import CancellableHandle, HandleSlot, TaskRunner
from coreason_oauth_client.exceptions import ConfigurationError


@pytest.mark.asyncio
async def test_call_later_runs_after_delay() -> None:
    calls: list[str] = []

    async def work(label: str) -> None:
        calls.append(label)

    async with TaskRunner() as runner:
        handle = runner.call_later(0.02, work, "fired", name="t")
        assert calls == []
        await anyio.sleep(0.1)

    assert calls == ["fired"]
    assert handle.done
    assert not handle.active


@pytest.mark.asyncio
async def test_cancelled_handle_never_runs() -> None:
    calls: list[int] = []

    async def work() -> None:
        calls.append(1)

    async with TaskRunner() as runner:
        handle = runner.call_later(0.05, work)
        handle.cancel()
        await anyio.sleep(0.1)

    assert calls == []
    assert handle.cancelled


@pytest.mark.asyncio
async def test_exit_cancels_pending_work() -> None:
    calls: list[int] = []

    async def work() -> None:
        calls.append(1)

    runner = TaskRunner()
    async with runner:
        runner.call_later(10, work)
        assert runner.running

    assert not runner.running
    assert calls == []


@pytest.mark.asyncio
async def test_start_soon_requires_running_runner() -> None:
    async def work() -> None:
        pass

    with pytest.raises(ConfigurationError, match="async with"):
        TaskRunner().start_soon(work)


@pytest.mark.asyncio
async def test_slot_replace_cancels_previous() -> None:
    calls: list[str] = []

    async def work(label: str) -> None:
        calls.append(label)

    slot = HandleSlot()
    async with TaskRunner() as runner:
        first = slot.replace(runner.call_later(0.05, work, "first"))
        second = slot.replace(runner.call_later(0.05, work, "second"))
        await anyio.sleep(0.15)

    assert first.cancelled
    assert slot.current is second
    assert calls == ["second"]


@pytest.mark.asyncio
async def test_slot_clear_and_release() -> None:
    slot = HandleSlot()
    handle = slot.replace(CancellableHandle("h"))
    slot.release(CancellableHandle("other"))
    assert slot.current is handle

    slot.release(handle)
    assert slot.current is None
    assert not handle.cancelled

    slot.replace(handle)
    slot.clear()
    assert slot.current is None
    assert handle.cancelled


@pytest.mark.asyncio
async def test_handle_deadline() -> None:
    handle = CancellableHandle("h", delay=-5)
    assert handle.delay == 0.0
    assert handle.active


@pytest.mark.asyncio
async def test_failing_task_leaves_siblings_running() -> None:
    calls: list[str] = []

    async def broken() -> None:
        raise RuntimeError("boom")

    async def work(label: str) -> None:
        calls.append(label)

    runner = TaskRunner()
    async with runner:
        runner.start_soon(broken, name="broken")
        failing = runner.spawn(broken, name="broken_handle")
        later = runner.call_later(0.05, work, "after")
        await anyio.sleep(0.15)

        assert runner.running
        assert failing.done

    assert later.done
    assert calls == ["after"]
