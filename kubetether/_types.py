# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from os import PathLike
from typing import (
    AsyncContextManager,
    Callable,
    Dict,
    Literal,
    Protocol,
    Union,
    runtime_checkable,
)

PathType = Union[str, "PathLike[str]"]
KubeconfigSource = Union[PathType, Dict]
ResourceType = Literal["pod", "service"]


@runtime_checkable
class BytesWebSocket(Protocol):
    """The subset of a websocket session used by tunnels."""

    async def send_bytes(self, data: bytes) -> None: ...

    async def receive_bytes(self) -> bytes: ...


# Opens a streaming connection to a Pod subresource. Called as
# ``connector(api, namespace, pod, subresource, params, subprotocols=None)``.
StreamConnector = Callable[..., AsyncContextManager[BytesWebSocket]]
