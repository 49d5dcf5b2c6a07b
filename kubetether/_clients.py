# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from ._api import Api
from ._constants import API_GROUPS
from ._data_utils import utcnow
from ._exceptions import ClientConstructionFailed, ValidationError
from ._registry import ClusterContext, ContextRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ClusterContext, str], Awaitable[Any]]
CacheKey = tuple[str, str]


@dataclass
class CachedClientBundle:
    client: Any
    created_at: datetime = field(default_factory=utcnow)


class ClientCache:
    """Per context, per API group clients with single-flight construction.

    Building a client loads credentials, may run an exec plugin and sets up TLS,
    so the first caller for a ``(context, group)`` key starts the construction in
    a task and every concurrent caller for the same key awaits that same task.
    A failed construction is never cached; the next call tries again.

    Args:
        registry: The contexts clients can be built for.
        factory: Coroutine function building a client for a context and API group.
            Defaults to building an authenticated :class:`kubetether.Api`.
        timeout: Per request timeout for clients built by the default factory.
    """

    def __init__(
        self,
        registry: ContextRegistry,
        factory: ClientFactory | None = None,
        timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._factory = factory or self._build_api
        self._timeout = timeout
        self._bundles: dict[CacheKey, CachedClientBundle] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._leases: dict[int, int] = {}
        self._retired: dict[int, Any] = {}

    def __repr__(self):
        return f"<ClientCache bundles={len(self._bundles)} inflight={len(self._inflight)}>"

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._bundles

    @property
    def registry(self) -> ContextRegistry:
        return self._registry

    async def _build_api(self, context: ClusterContext, group: str) -> Api:
        return await Api(
            context=context.name,
            group=group,
            kubeconfig=self._registry.kubeconfig,
            namespace=context.namespace,
            timeout=self._timeout,
        )

    async def get_client(self, context_name: str, api_group: str = "core") -> Any:
        """Get the client for a context and API group, building it if needed.

        Raises:
            ValidationError: If the API group is unknown.
            ContextNotFoundError: If the context is not in the registry.
            ClientConstructionFailed: If the credentials or connection could not be set up.
        """
        if api_group not in API_GROUPS:
            raise ValidationError(
                f"Unknown API group {api_group}, expected one of {', '.join(API_GROUPS)}"
            )
        key = (context_name, api_group)
        while True:
            context = self._registry.resolve(context_name)
            if key in self._bundles:
                return self._bundles[key].client
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(self._construct(key, context))
                self._inflight[key] = task
            try:
                bundle = await asyncio.shield(task)
            except _Invalidated:
                # Build again from whatever the registry holds now.
                continue
            return bundle.client

    async def lease(self, context_name: str, api_group: str = "core") -> Any:
        """Get a client and keep it open until :meth:`release` is called.

        Invalidating the cache stops handing out a leased client but only
        closes it once every lease on it has been released, so long lived
        users such as port forwards and shells keep working.
        """
        client = await self.get_client(context_name, api_group)
        self._leases[id(client)] = self._leases.get(id(client), 0) + 1
        return client

    async def release(self, client: Any) -> None:
        """Give back a client obtained from :meth:`lease`."""
        key = id(client)
        count = self._leases.get(key, 0) - 1
        if count > 0:
            self._leases[key] = count
            return
        self._leases.pop(key, None)
        retired = self._retired.pop(key, None)
        if retired is not None:
            logger.debug(f"Closing invalidated client {retired!r}, no longer leased")
            await _close_client(retired)

    async def _construct(self, key: CacheKey, context: ClusterContext) -> CachedClientBundle:
        me = asyncio.current_task()
        logger.debug(f"Building {key[1]} client for context {key[0]}")
        try:
            client = await self._factory(context, key[1])
        except ClientConstructionFailed:
            self._forget(key, me)
            raise
        except Exception as e:
            self._forget(key, me)
            raise ClientConstructionFailed(
                f"Unable to set up {key[1]} client for context {key[0]}: {e}"
            ) from e
        if self._inflight.get(key) is not me:
            logger.debug(
                f"Discarding {key[1]} client for context {key[0]}, invalidated while building"
            )
            await _close_client(client)
            raise _Invalidated(key)
        del self._inflight[key]
        bundle = CachedClientBundle(client=client)
        self._bundles[key] = bundle
        return bundle

    def _forget(self, key: CacheKey, task: asyncio.Task | None) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def invalidate(self, context_name: str | None = None) -> None:
        """Drop cached clients for one context, or for every context.

        Constructions still in flight are detached and their callers get a client
        built afresh. Leased clients stay open until they are released.
        """
        keys = [k for k in self._bundles if context_name is None or k[0] == context_name]
        for key in [
            k for k in self._inflight if context_name is None or k[0] == context_name
        ]:
            del self._inflight[key]
        bundles = [self._bundles.pop(key) for key in keys]
        logger.info(
            f"Invalidated {len(bundles)} client(s) for "
            f"{'all contexts' if context_name is None else f'context {context_name}'}"
        )
        for bundle in bundles:
            if id(bundle.client) in self._leases:
                self._retired[id(bundle.client)] = bundle.client
            else:
                await _close_client(bundle.client)

    async def close(self) -> None:
        """Close every client, leased or not."""
        await self.invalidate()
        retired = list(self._retired.values())
        self._retired.clear()
        self._leases.clear()
        for client in retired:
            await _close_client(client)


class _Invalidated(Exception):
    """A construction finished after its key was invalidated."""


async def _close_client(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.debug(f"Error closing client {client!r}: {e}")
