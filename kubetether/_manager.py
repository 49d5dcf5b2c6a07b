# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import logging
from typing import Any, Mapping

import anyio

from ._clients import ClientCache
from ._constants import DEFAULT_BIND_ADDRESS
from ._exceptions import ConflictError, SessionNotFoundError, StoreError
from ._objects import resolve_portforward_target
from ._portforward import PortForward
from ._sessions import (
    LIVE_STATUSES,
    PortForwardRequest,
    PortForwardSession,
    SessionStatus,
)
from ._store import SessionStore
from ._timeout import TimeoutGuard
from ._types import StreamConnector

logger = logging.getLogger(__name__)

RESTART_REASON = "process restarted"


class PortForwardManager:
    """Start, track and stop port forward tunnels.

    Every session moves through Pending, Active, Closing and then Closed, or
    from Active to Failed when the remote side drops the tunnel. A session is
    only listed once its handshake has succeeded and it is only persisted once
    it is Active, so a failed start leaves nothing behind.

    Local ports are claimed in a table shared by all sessions of the manager.
    Each session has its own lock, so concurrent stops of one session tear it
    down exactly once and a stop issued while the session is still starting
    waits for the start to finish.

    Args:
        clients: Cache supplying clients for the cluster contexts.
        store: Durable record of sessions.
        guard: Deadline applied to every upstream call and to the tunnel handshake.
        address: Local address tunnels listen on.
        connector: Opens streaming connections to Pods. Defaults to websockets
            through the API server.
    """

    def __init__(
        self,
        clients: ClientCache,
        store: SessionStore,
        guard: TimeoutGuard | None = None,
        address: str = DEFAULT_BIND_ADDRESS,
        connector: StreamConnector | None = None,
    ) -> None:
        self._clients = clients
        self._store = store
        self._guard = guard or TimeoutGuard()
        self._address = address
        self._connector = connector
        self._sessions: dict[str, PortForwardSession] = {}
        self._tunnels: dict[str, PortForward] = {}
        self._locks: dict[str, anyio.Lock] = {}
        self._clients_held: dict[str, Any] = {}
        self._claims: dict[int, str] = {}
        self._claims_lock = anyio.Lock()

    def __repr__(self):
        return f"<PortForwardManager sessions={len(self._sessions)}>"

    @property
    def claimed_ports(self) -> dict[int, str]:
        """Local ports currently claimed, mapped to the session holding them."""
        return dict(self._claims)

    async def start(
        self, request: PortForwardRequest | Mapping[str, Any]
    ) -> PortForwardSession:
        """Start a port forward and return the Active session.

        Raises:
            ValidationError: If the request is malformed.
            ContextNotFoundError: If the context is unknown.
            NotFoundError: If the Pod or Service is missing or has nothing ready to forward to.
            ConflictError: If the local port is taken.
            UpstreamError: If the cluster refused or failed the tunnel.
            APITimeoutError: If the cluster did not answer in time.
        """
        if not isinstance(request, PortForwardRequest):
            request = PortForwardRequest.from_dict(request)
        self._clients.registry.resolve(request.context_name)
        if request.local_port in self._claims:
            raise self._port_in_use(request.local_port)

        session = PortForwardSession.from_request(request)
        lock = anyio.Lock()
        self._locks[session.id] = lock
        async with lock:
            self._sessions[session.id] = session
            tunnel: PortForward | None = None
            claimed = False
            try:
                with self._guard.deadline(f"client for context {request.context_name}"):
                    api = await self._clients.lease(request.context_name, "core")
                self._clients_held[session.id] = api
                with self._guard.deadline(
                    f"{request.resource_type} {request.namespace}/{request.resource_name}"
                ):
                    pod, target_port = await resolve_portforward_target(
                        api,
                        request.namespace,
                        request.resource_type,  # type: ignore[arg-type]
                        request.resource_name,
                        request.remote_port,
                    )
                session.pod_name = pod
                session.target_port = target_port
                tunnel = PortForward(
                    api,
                    request.namespace,
                    pod,
                    remote_port=target_port,
                    local_port=request.local_port,
                    address=self._address,
                    connector=self._connector,
                    on_closed=lambda reason: self._tunnel_closed(session.id, reason),
                )
                await self._claim(session, tunnel)
                claimed = True
                with self._guard.deadline(f"port forward handshake with {pod}"):
                    await tunnel.open()
                session.status = SessionStatus.ACTIVE
                self._tunnels[session.id] = tunnel
                await self._store.save(session)
                await tunnel.start_serving()
            except BaseException as e:
                logger.debug(f"Rolling back port forward {session.id}: {e!r}")
                with anyio.CancelScope(shield=True):
                    self._tunnels.pop(session.id, None)
                    if tunnel is not None:
                        await tunnel.close()
                    if claimed:
                        await self._release(session)
                    await self._return_client(session.id)
                    self._forget(session.id)
                raise
        logger.info(
            f"Port forward {session.id} active: {self._address}:{session.local_port} -> "
            f"{session.context_name}/{session.namespace}/{session.pod_name}:{session.target_port}"
        )
        return session.copy()

    async def stop(self, session_id: str) -> dict:
        """Stop a port forward.

        Stopping a session that is unknown, Closed or Failed does nothing.

        Raises:
            SessionNotFoundError: Only if the store could not be searched for the session.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            try:
                await self._store.find_by_id(session_id)
            except StoreError as e:
                raise SessionNotFoundError(
                    f"Unable to look up port forward {session_id}: {e.message}"
                ) from e
            return {"ok": True}
        async with lock:
            session = self._sessions.get(session_id)
            if session is None or not session.live:
                return {"ok": True}
            session.status = SessionStatus.CLOSING
            await self._teardown(session)
            session.finish(SessionStatus.CLOSED)
            self._forget(session_id)
            await self._persist(session)
        logger.info(f"Port forward {session_id} closed")
        return {"ok": True}

    def list(self, context_name: str) -> list[PortForwardSession]:
        """Active sessions of a context, newest first."""
        return self._active(lambda s: s.context_name == context_name)

    def list_all(self) -> list[PortForwardSession]:
        """Active sessions of every context, newest first."""
        return self._active(lambda s: True)

    async def get(self, session_id: str) -> PortForwardSession:
        """Get a session, falling back to the store for finished sessions.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        session = self._sessions.get(session_id)
        if session is not None:
            return session.copy()
        stored = await self._store.find_by_id(session_id)
        if stored is None:
            raise SessionNotFoundError(f"Port forward {session_id} not found")
        return stored

    async def reconcile(self) -> int:
        """Mark sessions left live by a previous process as Failed.

        Returns:
            The number of stored sessions changed.
        """
        changed = await self._store.transition(
            LIVE_STATUSES, SessionStatus.FAILED, RESTART_REASON
        )
        # Sessions started by this process are really live, so restore their records.
        for session in list(self._sessions.values()):
            if session.status == SessionStatus.ACTIVE:
                await self._persist(session)
        if changed:
            logger.info(f"Reconciled {changed} stale port forward(s)")
        return changed

    async def shutdown(self) -> None:
        """Stop every live session."""
        for session_id in list(self._sessions):
            await self.stop(session_id)

    def _active(self, predicate) -> list[PortForwardSession]:
        sessions = [
            s.copy()
            for s in self._sessions.values()
            if s.status == SessionStatus.ACTIVE and predicate(s)
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def _port_in_use(self, port: int) -> ConflictError:
        return ConflictError(f"Local port {port} is already used by another port forward")

    async def _claim(self, session: PortForwardSession, tunnel: PortForward) -> None:
        async with self._claims_lock:
            if session.local_port in self._claims:
                raise self._port_in_use(session.local_port)
            await tunnel.bind()
            self._claims[session.local_port] = session.id

    async def _release(self, session: PortForwardSession) -> None:
        async with self._claims_lock:
            if self._claims.get(session.local_port) == session.id:
                del self._claims[session.local_port]

    async def _teardown(self, session: PortForwardSession) -> None:
        tunnel = self._tunnels.pop(session.id, None)
        if tunnel is not None:
            try:
                await tunnel.close()
            except Exception as e:
                logger.warning(f"Error closing port forward {session.id}: {e}")
        await self._release(session)
        await self._return_client(session.id)

    async def _return_client(self, session_id: str) -> None:
        api = self._clients_held.pop(session_id, None)
        if api is not None:
            await self._clients.release(api)

    async def _persist(self, session: PortForwardSession) -> None:
        try:
            await self._store.save(session)
        except StoreError as e:
            logger.warning(f"Unable to record port forward {session.id}: {e.message}")

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    async def _tunnel_closed(self, session_id: str, reason: str) -> None:
        lock = self._locks.get(session_id)
        if lock is None:
            return
        async with lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return
            await self._teardown(session)
            session.finish(SessionStatus.FAILED, reason)
            self._forget(session_id)
            await self._persist(session)
        logger.warning(f"Port forward {session_id} failed: {reason}")
