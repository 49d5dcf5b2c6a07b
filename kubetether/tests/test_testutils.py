# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import os
import socket
from contextlib import closing

from kubetether._testutils import port_is_free, set_env


def test_set_env():
    assert "FOO" not in os.environ
    with set_env(FOO="bar"):
        assert "FOO" in os.environ
    assert "FOO" not in os.environ

    os.environ["FOO"] = "bar"
    assert "FOO" in os.environ
    assert os.environ["FOO"] == "bar"
    with set_env(FOO="baz"):
        assert "FOO" in os.environ
        assert os.environ["FOO"] == "baz"
    assert "FOO" in os.environ
    assert os.environ["FOO"] == "bar"
    del os.environ["FOO"]


def test_port_is_free(free_port):
    assert port_is_free(free_port)
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", free_port))
        sock.listen()
        assert not port_is_free(free_port)
    assert port_is_free(free_port)
