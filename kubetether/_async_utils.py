# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import os
import subprocess
import tempfile
from typing import Mapping

import anyio
import anyio.to_thread


async def run_command(
    command: str, *args: str, env: Mapping[str, str] | None = None
) -> str:
    """Run a credential plugin or similar helper and return what it printed.

    Raises:
        RuntimeError: If the command cannot be started or exits with a non-zero code.
    """
    try:
        completed = await anyio.run_process(
            [command, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            env=env,
        )
    except OSError as e:
        raise RuntimeError(f"Unable to run {command}: {e}") from e
    if completed.returncode != 0:
        raise RuntimeError(
            f"{command} exited with code {completed.returncode}: "
            f"{completed.stderr.decode(errors='replace').strip()}"
        )
    return completed.stdout.decode()


async def write_private_file(data: bytes, prefix: str = "kubetether-") -> anyio.Path:
    """Write ``data`` to a new temporary file only the current user can read.

    The caller owns the file and is responsible for removing it.
    """

    def write() -> str:
        fd, name = tempfile.mkstemp(prefix=prefix)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        return name

    return anyio.Path(await anyio.to_thread.run_sync(write))
