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
Task group ownership and individually cancellable handles for timers and background tasks.
"""

import time
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any

import anyio
from anyio.abc import TaskGroup

from coreason_oauth_client.exceptions import ConfigurationError
from coreason_oauth_client.utils.logger import logger


class CancellableHandle:
    """
    Handle to one scheduled piece of work. Cancelling it before or while it runs stops it.

    Attributes:
        name (str): Label used in logs.
        delay (float): Seconds between scheduling and the start of the work.
        deadline (float): ``time.time()`` at which the work starts.
    """

    def __init__(self, name: str, delay: float = 0.0) -> None:
        self.name = name
        self.delay = max(0.0, delay)
        self.deadline = time.time() + self.delay
        self.scope = anyio.CancelScope()
        self.done = False

    def cancel(self) -> None:
        if not self.done:
            logger.debug(f"Cancelling '{self.name}'")
        self.scope.cancel()

    @property
    def cancelled(self) -> bool:
        return self.scope.cancel_called

    @property
    def active(self) -> bool:
        return not self.done and not self.cancelled


class HandleSlot:
    """
    Holds at most one handle. Putting a new handle in cancels the one it replaces.
    """

    def __init__(self) -> None:
        self._handle: CancellableHandle | None = None

    @property
    def current(self) -> CancellableHandle | None:
        return self._handle

    def replace(self, handle: CancellableHandle) -> CancellableHandle:
        if self._handle is not None and self._handle is not handle:
            self._handle.cancel()
        self._handle = handle
        return handle

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def release(self, handle: CancellableHandle) -> None:
        """Empties the slot if it still holds this handle, without cancelling it."""
        if self._handle is handle:
            self._handle = None


class TaskRunner:
    """
    Owns the anyio task group that background work (timers, polling, listeners) runs in.

    Use as an async context manager; leaving the context cancels everything still running.
    """

    def __init__(self) -> None:
        self._task_group: TaskGroup | None = None

    async def __aenter__(self) -> "TaskRunner":
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        task_group = self._task_group
        self._task_group = None
        if task_group is None:
            return None
        task_group.cancel_scope.cancel()
        return await task_group.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def running(self) -> bool:
        return self._task_group is not None

    def start_soon(self, func: Callable[..., Awaitable[Any]], *args: Any, name: str | None = None) -> None:
        """
        Starts ``func(*args)`` in the task group.

        An exception escaping ``func`` is logged and dropped, so one failing task never
        cancels its siblings or the service that owns them.
        """
        if self._task_group is None:
            raise ConfigurationError("Background tasks need a running service. Use 'async with'.")
        self._task_group.start_soon(self._guard, func, args, name or getattr(func, "__name__", "task"), name=name)

    @staticmethod
    async def _guard(func: Callable[..., Awaitable[Any]], args: tuple[Any, ...], label: str) -> None:
        try:
            await func(*args)
        except Exception:
            logger.exception(f"Background task '{label}' failed")

    def call_later(
        self, delay: float, func: Callable[..., Awaitable[Any]], *args: Any, name: str = "timer"
    ) -> CancellableHandle:
        """
        Runs ``func(*args)`` after ``delay`` seconds unless the returned handle is cancelled first.
        """
        handle = CancellableHandle(name, delay)
        self.start_soon(self._run, handle, func, args, name=name)
        return handle

    def spawn(self, func: Callable[..., Awaitable[Any]], *args: Any, name: str = "task") -> CancellableHandle:
        """Runs ``func(*args)`` in the background under a cancellable handle."""
        return self.call_later(0.0, func, *args, name=name)

    @staticmethod
    async def _run(
        handle: CancellableHandle, func: Callable[..., Awaitable[Any]], args: tuple[Any, ...]
    ) -> None:
        try:
            with handle.scope:
                if handle.delay:
                    await anyio.sleep(handle.delay)
                await func(*args)
        finally:
            handle.done = True
