# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import time

import anyio
import pytest

from kubetether._exceptions import APITimeoutError
from kubetether._timeout import TimeoutGuard


async def test_stuck_call_times_out():
    guard = TimeoutGuard(0.2)
    cleaned_up = []

    async def stuck():
        try:
            await anyio.sleep_forever()
        finally:
            cleaned_up.append(True)

    start = time.monotonic()
    with pytest.raises(APITimeoutError, match="Timed out after 0.2s") as e:
        await guard.run(stuck)
    assert time.monotonic() - start < 2
    assert cleaned_up == [True]
    assert e.value.kind == "timeout"
    assert e.value.status_code == 504


async def test_result_is_returned():
    guard = TimeoutGuard(1)

    async def answer(value, *, plus=0):
        return value + plus

    assert await guard.run(answer, 40, plus=2) == 42
    assert await guard(answer(1)) == 1


async def test_own_errors_propagate():
    guard = TimeoutGuard(1)

    async def fails():
        raise TimeoutError("upstream gave up")

    with pytest.raises(TimeoutError, match="upstream gave up"):
        await guard.run(fails)


async def test_deadline_names_operation():
    guard = TimeoutGuard(0.1)
    with pytest.raises(APITimeoutError, match="waiting for handshake"):
        with guard.deadline("handshake"):
            await anyio.sleep(5)


async def test_guard_is_reusable():
    guard = TimeoutGuard(0.1)
    with pytest.raises(APITimeoutError):
        await guard(anyio.sleep(5))
    await guard(anyio.sleep(0))


@pytest.mark.parametrize("timeout", [0, -1])
def test_invalid_timeout(timeout):
    with pytest.raises(ValueError):
        TimeoutGuard(timeout)
