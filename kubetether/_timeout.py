# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Generator, TypeVar

import anyio

from ._constants import DEFAULT_TIMEOUT
from ._exceptions import APITimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TimeoutGuard:
    """Bound any upstream call by a single deadline.

    The wrapped operation runs inside an anyio cancel scope, so on expiry it is
    cancelled rather than abandoned and its cleanup code runs before
    :class:`APITimeoutError` is raised. Errors raised by the operation itself,
    including a ``TimeoutError`` of its own, propagate untouched.

    Example:
        >>> guard = TimeoutGuard(10)
        >>> version = await guard.run(api.async_version)
        >>> with guard.deadline("handshake"):
        ...     await tunnel.open()
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout

    def __repr__(self):
        return f"<TimeoutGuard timeout={self.timeout}>"

    @contextmanager
    def deadline(self, what: str = "the Kubernetes API") -> Generator[None]:
        """Cancel the enclosed block and raise :class:`APITimeoutError` after the deadline."""
        with anyio.move_on_after(self.timeout) as scope:
            yield
        if scope.cancelled_caught:
            logger.debug(f"Deadline of {self.timeout}s expired waiting for {what}")
            raise APITimeoutError(f"Timed out after {self.timeout}s waiting for {what}")

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` and await its result under the deadline."""
        with self.deadline(getattr(func, "__name__", "the Kubernetes API")):
            return await func(*args, **kwargs)

    async def __call__(self, awaitable: Awaitable[T]) -> T:
        with self.deadline():
            return await awaitable
