# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import suppress
from typing import Any, AsyncGenerator, Callable

import anyio
import httpx_ws

from ._api import pod_stream
from ._exceptions import ExecError, KubetetherError, NotFoundError, UpstreamError
from ._objects import Pod
from ._timeout import TimeoutGuard
from ._types import BytesWebSocket, StreamConnector

if sys.version_info < (3, 12, 1):
    from exceptiongroup import suppress  # type: ignore # noqa: F811

logger = logging.getLogger(__name__)

STDIN_CHANNEL: int = 0
STDOUT_CHANNEL: int = 1
STDERR_CHANNEL: int = 2
ERROR_CHANNEL: int = 3
RESIZE_CHANNEL: int = 4
CLOSE_CHANNEL: int = 255
EXEC_PROTOCOLS: list[str] = ["v5.channel.k8s.io", "v4.channel.k8s.io"]

# Try bash first, fall back to sh
DEFAULT_SHELL: list[str] = ["/bin/sh", "-c", "exec bash || exec sh"]


class Shell:
    """An interactive shell in a running container.

    The exec stream is owned by a background task so the shell can be written
    to and read from by different tasks, for example the two directions of a
    browser terminal connection.

    Args:
        api: Client for the cluster the Pod runs in.
        namespace: Namespace of the Pod.
        pod: Name of the Pod.
        container: Container to run the shell in. Defaults to the first container.
        command: Command to run. Defaults to bash, or sh when bash is missing.
        tty: Allocate a terminal. With a terminal stderr is merged into stdout.
        connector: Opens streaming connections to Pods.
        guard: Deadline for looking up the Pod and opening the stream.
        on_closed: Called with the shell once its exec stream has ended, for
            whatever reason, after a successful :meth:`open`.

    Example:
        >>> shell = Shell(api, "web", "api-0")
        >>> await shell.open()
        >>> await shell.write(b"ls\\n")
        >>> async for chunk in shell.output():
        ...     print(chunk.decode(), end="")
    """

    def __init__(
        self,
        api: Any,
        namespace: str,
        pod: str,
        container: str | None = None,
        command: list[str] | None = None,
        tty: bool = True,
        connector: StreamConnector | None = None,
        guard: TimeoutGuard | None = None,
        on_closed: Callable[[Shell], Any] | None = None,
    ) -> None:
        self.api = api
        self.namespace = namespace
        self.pod = pod
        self.container = container
        self.args = list(command or DEFAULT_SHELL)
        self.tty = tty
        self.returncode: int | None = None
        self.error: str | None = None
        self._connector = connector or pod_stream
        self._guard = guard or TimeoutGuard()
        self._on_closed = on_closed
        self._stdin: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._output: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._ready: asyncio.Future | None = None
        self._supervisor: asyncio.Task | None = None
        self._closed = False

    def __repr__(self):
        return f"<Shell {self.namespace}/{self.pod}/{self.container or '?'}>"

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Look up the container if needed and open the exec stream.

        Raises:
            NotFoundError: If the Pod does not exist or has no containers.
            UpstreamError: If the exec stream could not be opened.
            APITimeoutError: If the cluster did not answer in time.
        """
        with self._guard.deadline(f"shell in {self.namespace}/{self.pod}"):
            if self.container is None:
                pod = await Pod.get(self.pod, self.namespace, api=self.api)
                if not pod.containers:
                    raise NotFoundError(
                        f"Pod {self.namespace}/{self.pod} has no containers"
                    )
                self.container = pod.containers[0]
            loop = asyncio.get_running_loop()
            self._ready = loop.create_future()
            self._supervisor = loop.create_task(self._supervise(self._ready))
            try:
                await self._ready
            except BaseException:
                await self._stop_supervisor()
                raise
        if self._on_closed is not None:
            self._supervisor.add_done_callback(lambda _: self._on_closed(self))
        logger.info(f"Opened {self!r}")

    def _check_open(self) -> None:
        if self._closed or (self._supervisor is not None and self._supervisor.done()):
            raise ExecError(f"{self!r} is closed")

    async def write(self, data: bytes | str) -> None:
        """Send data to the shell's stdin."""
        self._check_open()
        if isinstance(data, str):
            data = data.encode()
        await self._stdin.put(STDIN_CHANNEL.to_bytes(1, "big") + data)

    async def resize(self, cols: int, rows: int) -> None:
        """Resize the shell's terminal."""
        self._check_open()
        size = json.dumps({"Width": int(cols), "Height": int(rows)})
        await self._stdin.put(RESIZE_CHANNEL.to_bytes(1, "big") + size.encode())

    async def handle_client_message(self, message: str | bytes) -> None:
        """Handle a message from a browser terminal.

        A JSON object ``{"type": "resize", "cols": N, "rows": N}`` resizes the
        terminal, anything else is typed into the shell.
        """
        text = message.decode(errors="replace") if isinstance(message, bytes) else message
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("type") == "resize":
            await self.resize(parsed.get("cols", 80), parsed.get("rows", 24))
            return
        await self.write(text)

    async def output(self) -> AsyncGenerator[bytes]:
        """Yield stdout and stderr until the shell exits or the stream closes."""
        while True:
            chunk = await self._output.get()
            if chunk is None:
                # Let other readers see the end too.
                self._output.put_nowait(None)
                return
            yield chunk

    def check_returncode(self) -> None:
        if self.returncode:
            raise ExecError(
                self.error or f"Command {self.args} exited with status {self.returncode}"
            )

    async def close(self) -> None:
        """Close stdin and the exec stream."""
        if self._closed:
            return
        self._closed = True
        # Closing stdin lets the shell exit and report its status.
        self._stdin.put_nowait(None)
        task = self._supervisor
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task}, timeout=1)
        await self._stop_supervisor()
        self._output.put_nowait(None)
        logger.debug(f"Closed {self!r}")

    async def _stop_supervisor(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        task = self._supervisor
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with anyio.move_on_after(5, shield=True):
            await asyncio.wait({task})

    def _params(self) -> list[tuple[str, str]]:
        params = [("command", arg) for arg in self.args]
        params += [
            ("container", self.container or ""),
            ("stdin", "true"),
            ("stdout", "true"),
            ("stderr", "false" if self.tty else "true"),
            ("tty", "true" if self.tty else "false"),
        ]
        return params

    async def _supervise(self, ready: asyncio.Future) -> None:
        try:
            async with self._connector(
                self.api,
                self.namespace,
                self.pod,
                "exec",
                self._params(),
                subprotocols=EXEC_PROTOCOLS,
            ) as ws:
                if ready.done():
                    return
                ready.set_result(None)
                with suppress(httpx_ws.WebSocketDisconnect):
                    async with anyio.create_task_group() as tg:
                        tg.start_soon(self._send, ws)
                        await self._receive(ws)
                        tg.cancel_scope.cancel()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = self._upstream_error(e)
            if not ready.done():
                ready.set_exception(error)
                return
            logger.warning(f"{self!r} failed: {error.message}")
            self.error = error.message
        finally:
            self._output.put_nowait(None)

    async def _send(self, ws: BytesWebSocket) -> None:
        while True:
            frame = await self._stdin.get()
            if frame is None:
                await ws.send_bytes(
                    CLOSE_CHANNEL.to_bytes(1, "big") + STDIN_CHANNEL.to_bytes(1, "big")
                )
                return
            await ws.send_bytes(frame)

    async def _receive(self, ws: BytesWebSocket) -> None:
        while True:
            message = await ws.receive_bytes()
            if not message:
                continue
            channel, message = int(message[0]), message[1:]
            if channel in (STDOUT_CHANNEL, STDERR_CHANNEL):
                if message:
                    self._output.put_nowait(message)
            elif channel == ERROR_CHANNEL:
                self._exit_status(json.loads(message.decode()))
                return
            else:
                logger.debug(f"Ignoring message on channel {channel} from {self!r}")

    def _exit_status(self, status: dict) -> None:
        if status.get("status") == "Success":
            self.returncode = 0
            return
        self.error = status.get("message")
        self.returncode = 1
        # Extract return code from details
        for cause in (status.get("details") or {}).get("causes") or []:
            if cause.get("reason") == "ExitCode":
                self.returncode = int(cause["message"])
                break

    def _upstream_error(self, e: Exception) -> KubetetherError:
        if isinstance(e, KubetetherError):
            return e
        if isinstance(e, httpx_ws.WebSocketUpgradeError):
            error = UpstreamError(
                f"Exec in {self.namespace}/{self.pod} was refused with status "
                f"{e.response.status_code}"
            )
        else:
            error = UpstreamError(f"Exec in {self.namespace}/{self.pod} failed: {e}")
        error.__cause__ = e
        return error
