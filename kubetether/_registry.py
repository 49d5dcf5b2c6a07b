# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import anyio
import yaml

from ._config import KubeConfigSet, split_kubeconfig_paths
from ._constants import DEFAULT_KUBECONFIG
from ._exceptions import ContextNotFoundError
from ._types import KubeconfigSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterContext:
    """A named cluster endpoint and the kubeconfig user to authenticate as."""

    name: str
    server: str
    credentials_ref: str
    namespace: str = "default"
    cluster: str = ""
    is_current: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "server": self.server,
            "credentialsRef": self.credentials_ref,
            "namespace": self.namespace,
            "cluster": self.cluster,
            "isCurrent": self.is_current,
        }


class _Snapshot:
    """An immutable set of contexts swapped in as a whole."""

    def __init__(
        self, contexts: tuple[ClusterContext, ...] = (), current_context: str = ""
    ) -> None:
        self.contexts = contexts
        self.current_context = current_context
        self._by_name = {c.name: c for c in contexts}

    def get(self, name: str) -> ClusterContext | None:
        return self._by_name.get(name)


class ContextRegistry:
    """The cluster contexts defined in a kubeconfig.

    The registry is a read only view that changes only when :meth:`reload` is
    called. A reload builds a complete new set of contexts and swaps it in with a
    single assignment, so callers see either the old set or the new one.

    Args:
        kubeconfig: Path (or ``KUBECONFIG`` style list of paths) to the kubeconfig,
            or an already parsed kubeconfig dict. Defaults to ``$KUBECONFIG``
            and then ``~/.kube/config``.

    Example:
        >>> registry = await ContextRegistry("~/.kube/config")
        >>> [c.name for c in registry.list_contexts()]
        ['prod', 'staging']
    """

    def __init__(self, kubeconfig: KubeconfigSource | None = None) -> None:
        if not kubeconfig:
            kubeconfig = os.environ.get("KUBECONFIG", DEFAULT_KUBECONFIG)
        self._kubeconfig: KubeconfigSource = kubeconfig
        self._snapshot = _Snapshot()
        self._lock = anyio.Lock()

    def __await__(self):
        async def f():
            await self.reload()
            return self

        return f().__await__()

    def __repr__(self):
        return f"<ContextRegistry contexts={len(self._snapshot.contexts)}>"

    @property
    def kubeconfig(self) -> KubeconfigSource:
        """The kubeconfig source contexts are read from."""
        return self._kubeconfig

    @property
    def current_context(self) -> str:
        """The kubeconfig ``current-context``, or an empty string."""
        return self._snapshot.current_context

    async def set_kubeconfig(self, kubeconfig: KubeconfigSource) -> None:
        """Point the registry at another kubeconfig and reload."""
        self._kubeconfig = kubeconfig
        await self.reload()

    async def reload(self) -> None:
        """Read the kubeconfig and replace the whole set of contexts."""
        async with self._lock:
            snapshot = await self._read()
            self._snapshot = snapshot
        logger.info(
            f"Loaded {len(snapshot.contexts)} context(s) from {self._describe_source()}"
        )

    def list_contexts(self) -> tuple[ClusterContext, ...]:
        """All contexts in kubeconfig order."""
        return self._snapshot.contexts

    def resolve(self, name: str) -> ClusterContext:
        """Look up a context by name.

        Raises:
            ContextNotFoundError: If no context has that name.
        """
        context = self._snapshot.get(name)
        if context is None:
            raise ContextNotFoundError(f"Context {name} not found")
        return context

    def __contains__(self, name: str) -> bool:
        return self._snapshot.get(name) is not None

    def _describe_source(self) -> str:
        if isinstance(self._kubeconfig, dict):
            return "kubeconfig dict"
        return str(self._kubeconfig)

    async def _read(self) -> _Snapshot:
        try:
            if isinstance(self._kubeconfig, dict):
                config = await KubeConfigSet(self._kubeconfig)
            else:
                config = await KubeConfigSet(*split_kubeconfig_paths(self._kubeconfig))
            return self._parse(config)
        except (ValueError, OSError, KeyError, TypeError, AttributeError, yaml.YAMLError) as e:
            logger.warning(
                f"Unable to load kubeconfig from {self._describe_source()}: {e}"
            )
            return _Snapshot()

    def _parse(self, config: KubeConfigSet) -> _Snapshot:
        current = config.current_context
        contexts = []
        for entry in config.contexts:
            name = entry.get("name")
            if not name:
                continue
            context = entry.get("context") or {}
            cluster_name = context.get("cluster") or ""
            try:
                cluster = config.get_cluster(cluster_name) if cluster_name else {}
            except ValueError:
                logger.warning(f"Context {name} refers to unknown cluster {cluster_name}")
                cluster = {}
            contexts.append(
                ClusterContext(
                    name=name,
                    server=cluster.get("server", ""),
                    credentials_ref=context.get("user") or "",
                    namespace=context.get("namespace") or "default",
                    cluster=cluster_name,
                    is_current=name == current,
                )
            )
        return _Snapshot(contexts=tuple(contexts), current_context=current)
