# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import anyio
from packaging.version import InvalidVersion
from packaging.version import parse as parse_version

from ._clients import ClientCache, ClientFactory
from ._constants import (
    KUBERNETES_MAXIMUM_SUPPORTED_VERSION,
    KUBERNETES_MINIMUM_SUPPORTED_VERSION,
)
from ._exceptions import (
    APITimeoutError,
    KubetetherError,
    UpstreamError,
    ValidationError,
)
from ._exec import Shell
from ._manager import PortForwardManager
from ._registry import ContextRegistry
from ._sessions import PortForwardRequest
from ._settings import Settings
from ._store import FileSessionStore, MemorySessionStore, SessionStore
from ._timeout import TimeoutGuard
from ._types import StreamConnector

logger = logging.getLogger(__name__)


class Dashboard:
    """Connection and tunnel state for a dashboard process.

    Owns the context registry, client cache, timeout guard, session store and
    port forward manager, wired together from one :class:`Settings`. Request
    methods take and return plain dicts and raise :class:`KubetetherError`
    subclasses, which :func:`error_response` turns into responses.

    Args:
        settings: Configuration. Defaults to :meth:`Settings.from_env`.
        store: Session store. Defaults to a file store at ``settings.state_file``,
            or a memory store if that is unset.
        client_factory: Builds clients for the client cache.
        connector: Opens streaming connections to Pods.

    Example:
        >>> async with Dashboard() as dashboard:
        ...     session = await dashboard.start_port_forward("prod", {
        ...         "namespace": "web", "resourceType": "pod", "resourceName": "api-0",
        ...         "localPort": 18080, "remotePort": 8080,
        ...     })
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: SessionStore | None = None,
        client_factory: ClientFactory | None = None,
        connector: StreamConnector | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.registry = ContextRegistry(self.settings.kubeconfig)
        self.guard = TimeoutGuard(self.settings.timeout)
        self.clients = ClientCache(
            self.registry, factory=client_factory, timeout=self.settings.timeout
        )
        if store is None:
            if self.settings.state_file:
                store = FileSessionStore(self.settings.state_file)
            else:
                store = MemorySessionStore()
        self.store = store
        self.manager = PortForwardManager(
            self.clients,
            self.store,
            guard=self.guard,
            address=self.settings.bind_address,
            connector=connector,
        )
        self._connector = connector
        self._shells: dict[Shell, Any] = {}
        self._releasing: set[asyncio.Task] = set()

    def __await__(self):
        async def f():
            await self.initialize()
            return self

        return f().__await__()

    async def __aenter__(self) -> Dashboard:
        await self.initialize()
        return self

    async def __aexit__(self, *args) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """Load the contexts and reconcile sessions left over from a previous run."""
        await self.registry.reload()
        await self.manager.reconcile()

    async def shutdown(self) -> None:
        """Close every shell and port forward, then every client."""
        for shell in list(self._shells):
            await shell.close()
            self._shell_closed(shell)
        await self._drain()
        await self.manager.shutdown()
        await self.clients.close()

    def list_contexts(self) -> dict:
        return {
            "contexts": [c.to_dict() for c in self.registry.list_contexts()],
            "currentContext": self.registry.current_context,
        }

    async def test_connection(self, context_name: str) -> dict:
        """Check a cluster answers by asking for its version.

        Raises:
            ContextNotFoundError: If the context is unknown.
        """
        self.registry.resolve(context_name)
        try:
            api = await self.guard(self.clients.get_client(context_name, "core"))
            version = await self.guard.run(api.async_version)
        except (UpstreamError, APITimeoutError) as e:
            logger.info(f"Connection test for {context_name} failed: {e.message}")
            return {"ok": False, "error": e.message}
        self._check_version(context_name, version)
        return {"ok": True, "version": version.get("gitVersion")}

    def _check_version(self, context_name: str, version: dict) -> None:
        try:
            server = parse_version(
                f"{version['major']}.{str(version['minor']).rstrip('+')}"
            )
        except (KeyError, InvalidVersion):
            return
        if not (
            KUBERNETES_MINIMUM_SUPPORTED_VERSION
            <= server
            <= KUBERNETES_MAXIMUM_SUPPORTED_VERSION
        ):
            logger.warning(
                f"Context {context_name} runs Kubernetes {server} which is outside "
                f"the supported range {KUBERNETES_MINIMUM_SUPPORTED_VERSION} to "
                f"{KUBERNETES_MAXIMUM_SUPPORTED_VERSION}"
            )

    async def set_kubeconfig_path(self, path: str) -> dict:
        """Switch to another kubeconfig and drop every cached client."""
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("path is required")
        self.settings.kubeconfig = path
        await self.registry.set_kubeconfig(path)
        await self.clients.invalidate()
        return {"ok": True}

    async def start_port_forward(
        self, context_name: str, body: Mapping[str, Any]
    ) -> dict:
        request = PortForwardRequest.from_dict(body, context_name=context_name)
        session = await self.manager.start(request)
        return session.to_dict()

    async def stop_port_forward(self, session_id: str) -> dict:
        return await self.manager.stop(session_id)

    def list_port_forwards(self, context_name: str) -> dict:
        return {"sessions": [s.to_dict() for s in self.manager.list(context_name)]}

    async def get_port_forward(self, session_id: str) -> dict:
        session = await self.manager.get(session_id)
        return {"session": session.to_dict()}

    async def open_shell(
        self,
        context_name: str,
        namespace: str,
        pod: str,
        container: str | None = None,
        command: list[str] | None = None,
        tty: bool = True,
    ) -> Shell:
        """Open an interactive shell in a container.

        The shell is forgotten as soon as its exec stream ends, whether it was
        closed here or exited on the remote side.
        """
        if not namespace or not pod:
            raise ValidationError("namespace and pod are required")
        api = await self.guard(self.clients.lease(context_name, "core"))
        shell = Shell(
            api,
            namespace,
            pod,
            container=container,
            command=command,
            tty=tty,
            connector=self._connector,
            guard=self.guard,
            on_closed=self._shell_closed,
        )
        try:
            await shell.open()
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.clients.release(api)
            raise
        self._shells[shell] = api
        return shell

    async def close_shell(self, shell: Shell) -> None:
        await shell.close()
        self._shell_closed(shell)
        await self._drain()

    def _shell_closed(self, shell: Shell) -> None:
        api = self._shells.pop(shell, None)
        if api is None:
            return
        logger.debug(f"Forgetting {shell!r}")
        task = asyncio.create_task(self.clients.release(api))
        self._releasing.add(task)
        task.add_done_callback(self._releasing.discard)

    async def _drain(self) -> None:
        if self._releasing:
            await asyncio.wait(set(self._releasing))


def error_response(exc: BaseException) -> tuple[int, dict]:
    """Turn an exception into a status code and an error body.

    Unexpected exceptions are logged and reported without any detail.
    """
    if isinstance(exc, KubetetherError):
        return exc.status_code, {"error": exc.to_dict()}
    logger.error("Unhandled error", exc_info=exc)
    return 500, {"error": {"kind": "internal", "message": "Internal server error"}}
