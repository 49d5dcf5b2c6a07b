# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import os
import stat
import sys

import pytest

from kubetether._async_utils import run_command, write_private_file


async def test_run_command():
    output = await run_command(sys.executable, "-c", "print('hello')")
    assert output.strip() == "hello"


async def test_run_command_failure():
    with pytest.raises(RuntimeError, match="exited with code 3: boom"):
        await run_command(
            sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"
        )


async def test_run_command_missing():
    with pytest.raises(RuntimeError, match="Unable to run"):
        await run_command("/nonexistent/credential-helper")


async def test_write_private_file():
    path = await write_private_file(b"secret")
    try:
        assert await path.read_bytes() == b"secret"
        if sys.platform != "win32":
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    finally:
        await path.unlink()
