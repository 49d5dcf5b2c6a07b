# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
"""
This module contains `kubetether`, the connection and tunnel layer of a multi-cluster Kubernetes dashboard.

It keeps reusable API clients for every context in a kubeconfig and opens, tracks and tears down
port forwards and interactive shells into the clusters behind them.
"""
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _version

from ._api import Api, pod_stream
from ._clients import CachedClientBundle, ClientCache
from ._dashboard import Dashboard, error_response
from ._exceptions import (
    APITimeoutError,
    ClientConstructionFailed,
    ConflictError,
    ConnectionClosedError,
    ContextNotFoundError,
    ExecError,
    KubetetherError,
    NotFoundError,
    PortInUseError,
    ServerError,
    SessionNotFoundError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from ._exec import DEFAULT_SHELL, Shell
from ._manager import PortForwardManager
from ._portforward import PortForward
from ._registry import ClusterContext, ContextRegistry
from ._sessions import PortForwardRequest, PortForwardSession, SessionStatus
from ._settings import Settings
from ._store import FileSessionStore, MemorySessionStore, SessionStore
from ._timeout import TimeoutGuard

try:
    __version__ = _version("kubetether")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "APITimeoutError",
    "Api",
    "CachedClientBundle",
    "ClientCache",
    "ClientConstructionFailed",
    "ClusterContext",
    "ConflictError",
    "ConnectionClosedError",
    "ContextNotFoundError",
    "ContextRegistry",
    "DEFAULT_SHELL",
    "Dashboard",
    "ExecError",
    "FileSessionStore",
    "KubetetherError",
    "MemorySessionStore",
    "NotFoundError",
    "PortForward",
    "PortForwardManager",
    "PortForwardRequest",
    "PortForwardSession",
    "PortInUseError",
    "ServerError",
    "SessionNotFoundError",
    "SessionStatus",
    "SessionStore",
    "Settings",
    "Shell",
    "StoreError",
    "TimeoutGuard",
    "UpstreamError",
    "ValidationError",
    "error_response",
    "pod_stream",
]
