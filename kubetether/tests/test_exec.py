# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import json

import anyio
import httpx
import pytest

from kubetether._exceptions import APITimeoutError, ExecError, NotFoundError, UpstreamError
from kubetether._exec import DEFAULT_SHELL, EXEC_PROTOCOLS, Shell
from kubetether._registry import ContextRegistry
from kubetether._timeout import TimeoutGuard


@pytest.fixture
async def api(kubeconfig_dict, client_factory):
    registry = await ContextRegistry(kubeconfig_dict)
    api = await client_factory(registry.resolve("prod"), "core")
    yield api
    await api.close()


async def read_until(shell, expected):
    received = b""
    with anyio.fail_after(2):
        async for chunk in shell.output():
            received += chunk
            if expected in received:
                break
    return received


async def test_shell_echo(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    await shell.open()
    assert shell.container == "app"
    await shell.write("echo hello\n")
    assert await read_until(shell, b"echo hello\n") == b"echo hello\n"
    await shell.close()
    assert shell.returncode == 0
    shell.check_returncode()

    [(namespace, pod, subresource, params)] = streams.connections
    assert (namespace, pod, subresource) == ("web", "api-0", "exec")
    assert streams.subprotocols == [EXEC_PROTOCOLS]
    assert [v for k, v in params if k == "command"] == DEFAULT_SHELL
    assert ("container", "app") in params
    assert ("tty", "true") in params
    assert ("stderr", "false") in params
    # The last frame closes stdin.
    assert streams.sockets[0].sent[-1] == b"\xff\x00"


async def test_explicit_container_and_command(api, cluster, streams):
    shell = Shell(
        api,
        "web",
        "api-0",
        container="sidecar",
        command=["ls", "-la"],
        tty=False,
        connector=streams,
    )
    await shell.open()
    params = streams.connections[0][3]
    assert [v for k, v in params if k == "command"] == ["ls", "-la"]
    assert ("container", "sidecar") in params
    assert ("stderr", "true") in params
    assert ("tty", "false") in params
    # No Pod lookup is needed when the container is given.
    assert cluster.requests == []
    await shell.close()


async def test_resize(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    await shell.open()
    await shell.resize(120, 40)
    await shell.handle_client_message(json.dumps({"type": "resize", "cols": 100, "rows": 30}))
    await shell.handle_client_message("ls\n")
    await read_until(shell, b"ls\n")
    assert streams.sockets[0].resizes == [
        {"Width": 120, "Height": 40},
        {"Width": 100, "Height": 30},
    ]
    await shell.close()


async def test_non_resize_json_is_typed(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    await shell.open()
    message = json.dumps({"type": "paste"})
    await shell.handle_client_message(message.encode())
    assert await read_until(shell, message.encode()) == message.encode()
    assert streams.sockets[0].resizes == []
    await shell.close()


async def test_write_after_close(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    await shell.open()
    await shell.close()
    assert shell.closed
    with pytest.raises(ExecError):
        await shell.write("ls\n")
    with pytest.raises(ExecError):
        await shell.resize(80, 24)
    await shell.close()


async def test_output_ends_when_stream_closes(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    await shell.open()
    streams.sockets[0].disconnect(1000)
    with anyio.fail_after(2):
        chunks = [chunk async for chunk in shell.output()]
    assert chunks == []
    assert shell.returncode is None
    await shell.close()


async def test_on_closed_when_remote_exits(api, streams):
    closed = []
    shell = Shell(api, "web", "api-0", connector=streams, on_closed=closed.append)
    await shell.open()
    assert closed == []
    streams.sockets[0].disconnect(1000)
    with anyio.fail_after(2):
        while not closed:
            await anyio.sleep(0.01)
    assert closed == [shell]
    await shell.close()
    assert closed == [shell]


async def test_on_closed_not_called_when_open_fails(api, streams):
    closed = []
    streams.error = httpx.ConnectError("connection refused")
    shell = Shell(api, "web", "api-0", connector=streams, on_closed=closed.append)
    with pytest.raises(UpstreamError):
        await shell.open()
    await anyio.sleep(0.01)
    assert closed == []


async def test_exit_status(api, streams):
    shell = Shell(api, "web", "api-0", connector=streams)
    shell._exit_status(
        {
            "status": "Failure",
            "message": "command terminated with non-zero exit code",
            "details": {"causes": [{"reason": "ExitCode", "message": "2"}]},
        }
    )
    assert shell.returncode == 2
    with pytest.raises(ExecError, match="non-zero exit code"):
        shell.check_returncode()


async def test_missing_pod(api, streams):
    shell = Shell(api, "web", "nope", connector=streams)
    with pytest.raises(NotFoundError):
        await shell.open()
    assert streams.connections == []


async def test_pod_without_containers(api, cluster, streams):
    cluster.add_pod("empty-0")
    cluster.objects[("pods", "web", "empty-0")]["spec"]["containers"] = []
    shell = Shell(api, "web", "empty-0", connector=streams)
    with pytest.raises(NotFoundError, match="no containers"):
        await shell.open()


async def test_exec_refused(api, streams):
    streams.error = httpx.ConnectError("connection refused")
    shell = Shell(api, "web", "api-0", connector=streams)
    with pytest.raises(UpstreamError, match="Exec in web/api-0 failed"):
        await shell.open()


async def test_exec_timeout(api, streams):
    streams.hang = True
    shell = Shell(api, "web", "api-0", connector=streams, guard=TimeoutGuard(0.2))
    with pytest.raises(APITimeoutError):
        await shell.open()
