# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import contextlib
import json
import logging
import ssl
from typing import AsyncGenerator

import httpx
import httpx_ws

from ._auth import KubeAuth
from ._constants import API_GROUPS
from ._data_utils import utcnow
from ._exceptions import APITimeoutError, ServerError, UpstreamError
from ._types import KubeconfigSource

logger = logging.getLogger(__name__)


class Api:
    """A client for one API group of one cluster context.

    Instances are built and owned by :class:`kubetether.ClientCache`, awaiting
    an instance loads the credentials for its context.

    Args:
        context: Name of the kubeconfig context to connect to.
        group: Short name of the API group, one of ``API_GROUPS``.
        kubeconfig: Path(s) to the kubeconfig or an already parsed kubeconfig dict.
        namespace: Override the default namespace of the context.
        timeout: Per request timeout handed to ``httpx``.
    """

    def __init__(
        self,
        context: str,
        group: str = "core",
        kubeconfig: KubeconfigSource | None = None,
        namespace: str | None = None,
        timeout: float | None = None,
    ) -> None:
        if group not in API_GROUPS:
            raise ValueError(f"Unknown API group {group}")
        self.context = context
        self.group = group
        self.version = API_GROUPS[group]
        self.created_at = utcnow()
        self._kubeconfig = kubeconfig
        self._session: httpx.AsyncClient | None = None
        self._timeout = timeout
        self.auth = KubeAuth(context=context, kubeconfig=kubeconfig, namespace=namespace)

    def __repr__(self):
        return f"<Api context={self.context} group={self.group}>"

    def __await__(self):
        async def f():
            await self.auth
            await self._create_session()
            return self

        return f().__await__()

    @property
    def timeout(self):
        return self._timeout

    @timeout.setter
    def timeout(self, value):
        self._timeout = value
        if self._session:
            self._session.timeout = value

    async def _create_session(self) -> None:
        headers = {"User-Agent": self.__version__, "content-type": "application/json"}
        if self.auth.token:
            headers["Authorization"] = f"Bearer {self.auth.token}"
        if self._session:
            with contextlib.suppress(RuntimeError):
                await self._session.aclose()
            self._session = None
        self._session = httpx.AsyncClient(
            base_url=self.auth.server,
            headers=headers,
            verify=await self.auth.ssl_context(),
            timeout=self._timeout,
            follow_redirects=True,
        )

    def _construct_url(
        self,
        version: str | None = None,
        base: str = "",
        namespace: str | None = None,
        url: str = "",
    ) -> str:
        if version is None:
            version = self.version
        if not base:
            if version == "v1":
                base = "/api"
            elif "/" in version:
                base = "/apis"
            else:
                raise ValueError("Unknown API version, base must be specified.")
        parts = [base]
        if version:
            parts.append(version)
        if namespace:
            parts.extend(["namespaces", namespace])
        if url:
            parts.append(url)
        return "/".join(parts)

    @contextlib.asynccontextmanager
    async def call_api(
        self,
        method: str = "GET",
        version: str | None = None,
        base: str = "",
        namespace: str | None = None,
        url: str = "",
        raise_for_status: bool = True,
        **kwargs,
    ) -> AsyncGenerator[httpx.Response]:
        """Make a Kubernetes API request."""
        if not self._session or self._session.is_closed:
            await self._create_session()
        url = self._construct_url(version, base, namespace, url)
        kwargs.update(url=url, method=method)
        if self.auth.tls_server_name:
            kwargs["extensions"] = {"sni_hostname": self.auth.tls_server_name}
        auth_attempts = 0
        ssl_attempts = 0
        while True:
            try:
                assert self._session
                response = await self._session.request(**kwargs)
                if raise_for_status:
                    response.raise_for_status()
                yield response
            except httpx.HTTPStatusError as e:
                # If we get a 401 or 403 our credentials may have expired so we
                # reauthenticate and try again a few times before giving up.
                if e.response.status_code in (401, 403) and auth_attempts < 3:
                    auth_attempts += 1
                    logger.debug(
                        f"Got {e.response.status_code} from {self.context}, reauthenticating"
                    )
                    await self.auth.reauthenticate()
                    await self._create_session()
                    continue
                if e.response.status_code < 500:
                    try:
                        error = e.response.json()
                        error_message = error["message"]
                    except (json.JSONDecodeError, KeyError, TypeError):
                        error = e.response.text
                        error_message = str(e)
                    raise ServerError(
                        error_message, status=error, response=e.response
                    ) from e
                raise ServerError(
                    str(e),
                    status=str(e.response.status_code),
                    response=e.response,
                ) from e
            except ssl.SSLCertVerificationError:
                # In some rare edge cases the SSL verification fails, so we try again
                # a few times before giving up.
                if ssl_attempts < 3:
                    ssl_attempts += 1
                    await self.auth.reauthenticate()
                    await self._create_session()
                    continue
                raise
            except httpx.TimeoutException as e:
                raise APITimeoutError(
                    "Timeout while waiting for the Kubernetes API server"
                ) from e
            except httpx.TransportError as e:
                raise UpstreamError(
                    f"Unable to reach the Kubernetes API server at {self.auth.server}: {e}"
                ) from e
            break

    @contextlib.asynccontextmanager
    async def open_websocket(
        self,
        version: str | None = None,
        base: str = "",
        namespace: str | None = None,
        url: str = "",
        **kwargs,
    ) -> AsyncGenerator[httpx_ws.AsyncWebSocketSession]:
        """Open a websocket connection to a Kubernetes API endpoint."""
        if not self._session or self._session.is_closed:
            await self._create_session()
        url = self._construct_url(version, base, namespace, url)
        kwargs.update(url=url)
        if self.auth.tls_server_name:
            kwargs["extensions"] = {"sni_hostname": self.auth.tls_server_name}
        auth_attempts = 0
        while True:
            try:
                async with httpx_ws.aconnect_ws(
                    client=self._session, **kwargs
                ) as response:
                    yield response
            except httpx_ws.WebSocketDisconnect as e:
                if e.code and e.code != 1000:
                    if e.code in (401, 403) and auth_attempts < 3:
                        auth_attempts += 1
                        await self.auth.reauthenticate()
                        await self._create_session()
                        continue
                    raise
            break

    async def async_version(self) -> dict:
        """Get the Kubernetes version information from the API."""
        async with self.call_api(method="GET", version="", base="/version") as response:
            return response.json()

    async def reauthenticate(self) -> None:
        """Reauthenticate the API."""
        await self.auth.reauthenticate()
        await self._create_session()

    async def close(self) -> None:
        """Close the HTTP session and remove temporary credential files."""
        if self._session:
            with contextlib.suppress(RuntimeError):
                await self._session.aclose()
            self._session = None
        await self.auth.aclose()

    @property
    def __version__(self) -> str:
        from . import __version__

        return f"kubetether/{__version__}"

    @property
    def namespace(self) -> str:
        """Get the default namespace."""
        return self.auth.namespace

    @namespace.setter
    def namespace(self, value):
        self.auth.namespace = value


@contextlib.asynccontextmanager
async def pod_stream(
    api: Api,
    namespace: str,
    pod: str,
    subresource: str,
    params,
    subprotocols: list[str] | None = None,
) -> AsyncGenerator[httpx_ws.AsyncWebSocketSession]:
    """Open a streaming websocket to a Pod subresource such as ``portforward`` or ``exec``."""
    kwargs = {}
    if subprotocols:
        kwargs["subprotocols"] = subprotocols
    async with api.open_websocket(
        version="v1",
        namespace=namespace,
        url=f"pods/{pod}/{subresource}",
        params=params,
        **kwargs,
    ) as websocket:
        yield websocket
