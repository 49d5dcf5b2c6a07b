# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Awaitable, Callable

import anyio
import httpx
import httpx_ws
import sniffio

from ._api import pod_stream
from ._exceptions import (
    ConflictError,
    ConnectionClosedError,
    KubetetherError,
    UpstreamError,
)
from ._types import BytesWebSocket, StreamConnector

if sys.version_info < (3, 12, 1):
    # contextlib.supress() in Python 3.12.1 supprts ExceptionGroups
    # For older versions, we use the exceptiongroup backport
    from exceptiongroup import suppress  # type: ignore # noqa: F811

logger = logging.getLogger(__name__)

DATA_CHANNEL = 0
ERROR_CHANNEL = 1

ClosedCallback = Callable[[str], Awaitable[None]]


class PortForward:
    """Listen on a local port and forward every connection to a port on a Pod.

    A port forward is set up in three steps so the caller can hold its own locks
    and deadlines around each of them:

    1. :meth:`bind` claims the local port without accepting connections yet.
    2. :meth:`open` opens the control stream to the Pod and returns once the
       API server has announced the remote port. A background task keeps the
       control stream open and calls ``on_closed`` if the remote side drops it.
    3. :meth:`start_serving` accepts local connections, each of which gets its
       own stream to the Pod.

    .. warning:
        Port forwards only work when using ``asyncio`` and not ``trio``.

    Args:
        api: Client for the cluster the Pod runs in.
        namespace: Namespace of the Pod.
        pod: Name of the Pod to forward to.
        remote_port: The port on the Pod to forward to.
        local_port: The local port to listen on.
        address: Address or list of addresses to listen on. Defaults to ``127.0.0.1``.
        connector: Opens streaming connections to the Pod. Defaults to websockets
            through the API server.
        on_closed: Coroutine function called with a reason when the control
            stream ends without :meth:`close` being called.

    Example:
        >>> pf = PortForward(api, "web", "api-0", remote_port=8080, local_port=18080)
        >>> await pf.bind()
        >>> await pf.open()
        >>> await pf.start_serving()
        >>> # Connect to localhost:18080
        >>> await pf.close()
    """

    def __init__(
        self,
        api: Any,
        namespace: str,
        pod: str,
        remote_port: int,
        local_port: int,
        address: list[str] | str = "127.0.0.1",
        connector: StreamConnector | None = None,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        with suppress(sniffio.AsyncLibraryNotFoundError):
            if sniffio.current_async_library() != "asyncio":
                raise RuntimeError("PortForward only works with asyncio")
        self.api = api
        self.namespace = namespace
        self.pod = pod
        self.remote_port = remote_port
        self.local_port = local_port
        if isinstance(address, str):
            address = [address]
        self.address = address
        self.servers: list[asyncio.Server] = []
        self._connector = connector or pod_stream
        self._on_closed = on_closed
        self._tasks: set[asyncio.Task] = set()
        self._ready: asyncio.Future | None = None
        self._supervisor: asyncio.Task | None = None
        self._closed = False

    def __repr__(self):
        return (
            f"<PortForward {self.address[0]}:{self.local_port} -> "
            f"{self.namespace}/{self.pod}:{self.remote_port}>"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def bind(self) -> None:
        """Bind the local listening sockets without accepting connections.

        Raises:
            ConflictError: If the port cannot be bound on one of the addresses.
        """
        for address in self.address:
            try:
                server = await asyncio.start_server(
                    self._sync_sockets,
                    host=address,
                    port=self.local_port,
                    start_serving=False,
                )
            except OSError as e:
                await self._close_servers()
                raise ConflictError(
                    f"Local port {self.local_port} is not available on {address}: "
                    f"{e.strerror or e}"
                ) from e
            self.servers.append(server)

    async def open(self) -> None:
        """Open the control stream and wait for the port announcement.

        Raises:
            UpstreamError: If the stream could not be opened or the API server refused it.
        """
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._supervisor = loop.create_task(self._supervise(self._ready))
        try:
            await self._ready
        except BaseException:
            await self._stop_supervisor()
            raise

    async def start_serving(self) -> None:
        for server in self.servers:
            await server.start_serving()

    async def close(self) -> None:
        """Stop accepting connections, drop every stream and release the port."""
        if self._closed:
            return
        self._closed = True
        for server in self.servers:
            server.close()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        await self._close_servers()
        await self._stop_supervisor()
        logger.debug(f"Closed {self!r}")

    async def _close_servers(self) -> None:
        while self.servers:
            server = self.servers.pop()
            server.close()
            await server.wait_closed()

    async def _stop_supervisor(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        task = self._supervisor
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with anyio.move_on_after(5, shield=True):
            await asyncio.wait({task})

    async def _supervise(self, ready: asyncio.Future) -> None:
        """Hold the control stream open for the lifetime of the port forward."""
        try:
            async with self._connect() as ws:
                await self._receive_announcement(ws)
                if ready.done():
                    return
                ready.set_result(None)
                reason = await self._watch(ws)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = self._upstream_error(e)
            if not ready.done():
                ready.set_exception(error)
                return
            reason = error.message
        if self._closed:
            return
        logger.warning(f"Control stream for {self!r} ended: {reason}")
        if self._on_closed is not None:
            await self._on_closed(reason)

    @asynccontextmanager
    async def _connect(self) -> AsyncGenerator[BytesWebSocket]:
        async with self._connector(
            self.api,
            self.namespace,
            self.pod,
            "portforward",
            {"ports": f"{self.remote_port}"},
        ) as ws:
            yield ws

    @asynccontextmanager
    async def _connect_websocket(self) -> AsyncGenerator[BytesWebSocket]:
        """Connect a data stream, retrying a few times on websocket errors."""
        connection_attempts = 0
        while True:
            try:
                async with self._connect() as websocket:
                    yield websocket
                    break
            except httpx_ws.HTTPXWSException as e:
                connection_attempts += 1
                if connection_attempts > 5:
                    raise ConnectionClosedError("Unable to connect to Pod") from e
                await anyio.sleep(0.1 * connection_attempts)

    async def _receive_announcement(self, ws: BytesWebSocket) -> None:
        # The first frame on each channel carries the port number being forwarded.
        message = await ws.receive_bytes()
        if not message or message[0] != DATA_CHANNEL:
            raise UpstreamError(
                f"Unexpected handshake from {self.namespace}/{self.pod}: {message[:1]!r}"
            )

    async def _watch(self, ws: BytesWebSocket) -> str:
        """Wait until the control stream closes and return why."""
        seen_error_channel = False
        try:
            while True:
                message = await ws.receive_bytes()
                if not message or message[0] != ERROR_CHANNEL:
                    continue
                if not seen_error_channel:
                    seen_error_channel = True
                    continue
                if payload := message[1:].decode(errors="replace").strip():
                    return payload
        except httpx_ws.WebSocketDisconnect as e:
            return f"remote closed the stream (code {e.code})"

    def _upstream_error(self, e: Exception) -> KubetetherError:
        target = f"{self.namespace}/{self.pod}:{self.remote_port}"
        if isinstance(e, KubetetherError):
            return e
        if isinstance(e, httpx_ws.WebSocketUpgradeError):
            error = UpstreamError(
                f"Port forward to {target} was refused with status "
                f"{e.response.status_code}"
            )
        elif isinstance(e, httpx_ws.WebSocketDisconnect):
            error = UpstreamError(
                f"Port forward to {target} was closed during the handshake"
            )
        elif isinstance(e, (httpx_ws.HTTPXWSException, httpx.HTTPError, OSError)):
            error = UpstreamError(f"Unable to open port forward to {target}: {e}")
        else:
            error = UpstreamError(f"Port forward to {target} failed: {e}")
        error.__cause__ = e
        return error

    async def _sync_sockets(self, reader, writer) -> None:
        """Start two tasks to copy bytes from tcp=>websocket and websocket=>tcp."""
        task = asyncio.current_task()
        assert task
        self._tasks.add(task)
        try:
            async with self._connect_websocket() as ws:
                with suppress(ConnectionClosedError, httpx_ws.WebSocketDisconnect):
                    async with anyio.create_task_group() as tg:
                        tg.start_soon(self._tcp_to_ws, ws, reader)
                        tg.start_soon(self._ws_to_tcp, ws, writer)
        except (httpx.HTTPError, OSError, KubetetherError) as e:
            logger.debug(f"Connection through {self!r} failed: {e}")
        finally:
            self._tasks.discard(task)
            writer.close()

    async def _tcp_to_ws(self, ws, reader) -> None:
        while True:
            data = await reader.read(1024 * 1024)
            if not data:
                raise ConnectionClosedError("TCP socket closed")
            else:
                # Send data to channel 0 of the websocket.
                try:
                    await ws.send_bytes(b"\x00" + data)
                except ConnectionResetError as e:
                    raise ConnectionClosedError("Websocket closed") from e

    async def _ws_to_tcp(self, ws, writer) -> None:
        channels = []
        while True:
            message = await ws.receive_bytes()
            # Kubernetes portforward protocol prefixes all frames with a byte to represent
            # the channel. Channel 0 is rw for data and channel 1 is ro for errors.
            if message[0] not in channels:
                channels.append(message[0])
            else:
                if message[0] % 2 == 1:
                    # Odd channels are for errors.
                    raise ConnectionClosedError(message[1:].decode())
                writer.write(message[1:])
                await writer.drain()
