# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import base64
import json
import logging
import os
import ssl
from typing import List, Optional, Union

import anyio

from ._async_utils import run_command, write_private_file
from ._config import KubeConfigSet, split_kubeconfig_paths
from ._constants import DEFAULT_KUBECONFIG
from ._types import KubeconfigSource, PathType

logger = logging.getLogger(__name__)


class KubeAuth:
    """Load the credentials for one kubeconfig context."""

    def __init__(
        self,
        context: str,
        kubeconfig: Optional[KubeconfigSource] = None,
        namespace: Optional[str] = None,
    ) -> None:
        self.server: str = ""
        self.client_cert_file: Optional[PathType] = None
        self.client_key_file: Optional[PathType] = None
        self.server_ca_file: Optional[PathType] = None
        self.token: Optional[str] = None
        self.tls_server_name: Optional[str] = None
        self.kubeconfig: KubeConfigSet
        self._namespace: Optional[str] = namespace
        self._insecure_skip_tls_verify: bool = False
        self._use_context: str = context
        self._context: dict = {}
        self._cluster: dict = {}
        self._user: dict = {}
        self._temp_files: List[anyio.Path] = []
        self._kubeconfig_path_or_dict: KubeconfigSource
        if kubeconfig:
            self._kubeconfig_path_or_dict = kubeconfig
        else:
            self._kubeconfig_path_or_dict = os.environ.get(
                "KUBECONFIG", DEFAULT_KUBECONFIG
            )

        self.__auth_lock: anyio.Lock = anyio.Lock()

    def __await__(self):
        async def f():
            await self.reauthenticate()
            return self

        return f().__await__()

    async def reauthenticate(self) -> None:
        """Reload the credentials for the context."""
        async with self.__auth_lock:
            await self._load_kubeconfig()
            if not self.server:
                raise ValueError(
                    f"Context {self._use_context} does not define a cluster server"
                )

    async def ssl_context(self) -> Union[ssl.SSLContext, bool]:
        if self._insecure_skip_tls_verify:
            return False
        async with self.__auth_lock:
            if (
                not self.client_key_file
                and not self.client_cert_file
                and not self.server_ca_file
            ):
                # If no cert information is provided, fall back to default verification
                return True
            sslcontext = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            if self.client_key_file and self.client_cert_file:
                sslcontext.load_cert_chain(
                    certfile=self.client_cert_file,
                    keyfile=self.client_key_file,
                    password=None,
                )
            if self.server_ca_file:
                sslcontext.load_verify_locations(cafile=self.server_ca_file)
            else:
                sslcontext.load_default_certs()
            return sslcontext

    async def aclose(self) -> None:
        """Remove any credential material written to temporary files."""
        while self._temp_files:
            path = self._temp_files.pop()
            try:
                await path.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Unable to remove temporary credential file {path}")

    @property
    def namespace(self) -> str:
        return self._namespace if self._namespace else "default"

    @namespace.setter
    def namespace(self, value: str):
        self._namespace = value

    async def _load_kubeconfig(self) -> None:
        """Load kubernetes auth from kubeconfig."""
        if isinstance(self._kubeconfig_path_or_dict, dict):
            self.kubeconfig = await KubeConfigSet(self._kubeconfig_path_or_dict)
        else:
            self.kubeconfig = await KubeConfigSet(
                *split_kubeconfig_paths(self._kubeconfig_path_or_dict)
            )
        try:
            self._context = self.kubeconfig.get_context(self._use_context)
        except ValueError as e:
            raise ValueError(f"No such context {self._use_context}") from e

        if self._namespace is None:
            self._namespace = self._context.get("namespace") or "default"

        if not self._context.get("cluster"):
            return

        self._cluster = self.kubeconfig.get_cluster(self._context["cluster"])
        self._user = (
            self.kubeconfig.get_user(self._context["user"])
            if self._context.get("user")
            else {}
        )
        self.server = self._cluster.get("server", "")

        if self._cluster.get("insecure-skip-tls-verify"):
            self._insecure_skip_tls_verify = True

        if "tls-server-name" in self._cluster:
            self.tls_server_name = self._cluster["tls-server-name"]

        if "exec" in self._user:
            if (
                self._user["exec"]["apiVersion"]
                == "client.authentication.k8s.io/v1alpha1"
            ):
                raise ValueError(
                    "client.authentication.k8s.io/v1alpha1 is not supported for exec auth"
                )
            command = self._user["exec"]["command"]
            args = self._user["exec"].get("args") or []
            env = os.environ.copy()
            env.update(
                **{e["name"]: e["value"] for e in self._user["exec"].get("env") or []}
            )
            data = json.loads(await run_command(command, *args, env=env))["status"]
            if "token" in data:
                self._user["token"] = data["token"]
            elif "clientCertificateData" in data and "clientKeyData" in data:
                self._user["client-certificate-data"] = data["clientCertificateData"]
                self._user["client-key-data"] = data["clientKeyData"]
            else:
                raise KeyError(f"Did not find credentials in {command} output.")

        if "client-key" in self._user:
            self.client_key_file = await self._resolve_path(self._user["client-key"])
        if "client-key-data" in self._user:
            self.client_key_file = await self._write_data(
                self._user["client-key-data"]
            )
        if "client-certificate" in self._user:
            self.client_cert_file = await self._resolve_path(
                self._user["client-certificate"]
            )
        if "client-certificate-data" in self._user:
            self.client_cert_file = await self._write_data(
                self._user["client-certificate-data"]
            )
        if "certificate-authority" in self._cluster:
            self.server_ca_file = await self._resolve_path(
                self._cluster["certificate-authority"]
            )
        if "certificate-authority-data" in self._cluster:
            self.server_ca_file = await self._write_data(
                self._cluster["certificate-authority-data"]
            )
        if "token" in self._user:
            self.token = self._user["token"]
        if "username" in self._user or "password" in self._user:
            raise ValueError(
                "username/password authentication was removed in Kubernetes 1.19 "
                "and is not supported"
            )
        if "auth-provider" in self._user:
            if (p := self._user["auth-provider"]["name"]) != "oidc":
                raise ValueError(
                    f"auth-provider {p} was deprecated in Kubernetes 1.21 "
                    "and is not supported"
                )
            self.token = self._user["auth-provider"]["config"]["id-token"]

    async def _resolve_path(self, path: str) -> PathType:
        """Resolve a kubeconfig file reference relative to the kubeconfig it came from."""
        candidate = anyio.Path(path).expanduser()
        if await candidate.exists() or candidate.is_absolute():
            return str(candidate)
        kubeconfig_path = self.kubeconfig.get_path(self._use_context)
        if kubeconfig_path is None:
            return str(candidate)
        return str(anyio.Path(kubeconfig_path).parent / candidate)

    async def _write_data(self, data: str) -> str:
        """Write inline (usually base64 encoded) PEM data to a private temporary file."""
        if "-----" in data:
            raw = data.encode()
        else:
            raw = base64.b64decode(data)
        path = await write_private_file(raw)
        self._temp_files.append(path)
        return str(path)
