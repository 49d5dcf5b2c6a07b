# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import os
import pathlib
from typing import Dict, List, Optional, Union

import anyio
import yaml

from kubetether._data_utils import dict_list_pack
from kubetether._types import PathType


def split_kubeconfig_paths(path: PathType) -> List[str]:
    """Split a ``KUBECONFIG`` style list of paths.

    Windows doesn't support multiple configs in a path so the value is used as is there.
    """
    if os.name == "nt":
        return [str(path)]
    return str(path).split(":")


class KubeConfigSet:
    """Several kubeconfig files merged the way kubectl merges them.

    Clusters, users and contexts from later files never override entries with
    the same name from earlier files. The ``current-context`` comes from the
    first file.
    """

    def __init__(self, *paths_or_dicts: Union[PathType, Dict]):
        self._configs = []
        for path_or_dict in paths_or_dicts:
            try:
                self._configs.append(KubeConfig(path_or_dict))
            except ValueError:
                pass
        if not self._configs:
            raise ValueError("No valid kubeconfig provided")

    def __await__(self):
        async def f():
            for config in self._configs:
                await config
            return self

        return f().__await__()

    @property
    def path(self) -> Optional[PathType]:
        return self.get_path()

    def get_path(self, context: Optional[str] = None) -> Optional[PathType]:
        """Return the path of the config that defines a context.

        Args:
            context (str): Override the context to use. If not provided, the current context is used.
        """
        if not context:
            context = self.current_context
        if context:
            for config in self._configs:
                if context in [c["name"] for c in config.contexts]:
                    return config.path
        return self._configs[0].path

    @property
    def raw(self) -> Dict:
        """Merge all kubeconfig data into a single kubeconfig."""
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": self.clusters,
            "users": self.users,
            "contexts": self.contexts,
            "current-context": self.current_context,
        }

    @property
    def current_context(self) -> str:
        """Return the current context from the first kubeconfig.

        Context configuration from multiples files are ignored.
        """
        return self._configs[0].current_context

    @property
    def current_namespace(self) -> str:
        """Return the current namespace from the current context."""
        return self.get_context(self.current_context).get("namespace") or "default"

    def get_context(self, context_name: str) -> Dict:
        """Get a context by name."""
        for context in self.contexts:
            if context["name"] == context_name:
                return context["context"] or {}
        raise ValueError(f"Context {context_name} not found")

    def get_cluster(self, cluster_name: str) -> Dict:
        """Get a cluster by name."""
        for cluster in self.clusters:
            if cluster["name"] == cluster_name:
                return cluster["cluster"] or {}
        raise ValueError(f"Cluster {cluster_name} not found")

    def get_user(self, user_name: str) -> Dict:
        """Get a user by name."""
        for user in self.users:
            if user["name"] == user_name:
                return user["user"] or {}
        raise ValueError(f"User {user_name} not found")

    @property
    def clusters(self) -> List[Dict]:
        return self._merge("clusters", "cluster")

    @property
    def users(self) -> List[Dict]:
        return self._merge("users", "user")

    @property
    def contexts(self) -> List[Dict]:
        return self._merge("contexts", "context")

    def _merge(self, section: str, value: str) -> List[Dict]:
        merged: Dict[str, Dict] = {}
        for config in self._configs:
            for entry in getattr(config, section):
                merged.setdefault(entry["name"], entry.get(value))
        return dict_list_pack(merged, "name", value)


class KubeConfig:
    """A single kubeconfig file (or an already parsed kubeconfig dict)."""

    def __init__(self, path_or_config: Union[PathType, Dict]):
        self.path: Optional[PathType] = None
        self._raw: dict = {}

        if not path_or_config:
            raise ValueError("KubeConfig path_or_config is None or empty string.")
        if isinstance(path_or_config, (str, pathlib.Path)):
            self.path = pathlib.Path(path_or_config).expanduser()
            if not self.path.exists():
                raise ValueError(f"File {self.path} does not exist")
            if self.path.is_dir():
                raise IsADirectoryError(
                    f'Error loading config file "{self.path}": is a directory.'
                )
        elif isinstance(path_or_config, dict):
            self._raw = path_or_config
        else:
            raise TypeError("KubeConfig path_or_config must be a string, path or dict.")

    def __await__(self):
        async def f():
            if not self._raw:
                async with await anyio.open_file(self.path) as fh:
                    self._raw = yaml.safe_load(await fh.read()) or {}
            return self

        return f().__await__()

    @property
    def current_context(self) -> str:
        return self._raw.get("current-context") or ""

    @property
    def current_namespace(self) -> str:
        return self.get_context(self.current_context).get("namespace") or "default"

    def get_context(self, context_name: str) -> Dict:
        """Get a context by name."""
        for context in self.contexts:
            if context["name"] == context_name:
                return context["context"] or {}
        raise ValueError(f"Context {context_name} not found")

    @property
    def raw(self) -> Dict:
        return self._raw

    @property
    def clusters(self) -> List[Dict]:
        return self._raw.get("clusters") or []

    @property
    def users(self) -> List[Dict]:
        return self._raw.get("users") or []

    @property
    def contexts(self) -> List[Dict]:
        return self._raw.get("contexts") or []
