# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import contextlib
import os
import socket
from typing import Generator


@contextlib.contextmanager
def set_env(**environ: str) -> Generator[None, None, None]:
    """Temporarily sets the process environment variables.

    Args:
        **environ: Keyword arguments representing the environment variables to set.

    Examples:
        >>> with set_env(KUBETETHER_TIMEOUT="5"):
        ...     "KUBETETHER_TIMEOUT" in os.environ
        True

        >>> "KUBETETHER_TIMEOUT" in os.environ
        False

    """
    old_environ = dict(os.environ)
    os.environ.update(environ)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(old_environ)


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a third party could listen on a local port right now."""
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
        return True
