# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
"""The few Kubernetes resources needed to pick a port forward target."""

from __future__ import annotations

import logging
from typing import Any

from box import Box

from ._api import Api
from ._exceptions import NotFoundError, ServerError
from ._types import ResourceType

logger = logging.getLogger(__name__)


class APIObject:
    """Base class for Kubernetes objects."""

    version = "v1"
    endpoint = ""
    kind = ""
    namespaced = True

    def __init__(self, resource: dict, api: Api) -> None:
        self._raw = Box(resource)
        self.api = api

    def __repr__(self):
        return f"<{self.kind} {self.name}>"

    @classmethod
    async def get(cls, name: str, namespace: str, api: Api) -> Any:
        """Get a Kubernetes resource by name."""
        try:
            async with api.call_api(
                "GET",
                version=cls.version,
                url=f"{cls.endpoint}/{name}",
                namespace=namespace if cls.namespaced else None,
            ) as resp:
                resource = resp.json()
        except ServerError as e:
            if e.response is not None and e.response.status_code == 404:
                raise NotFoundError(
                    f"{cls.kind} {namespace}/{name} not found"
                ) from e
            raise
        return cls(resource, api=api)

    @property
    def raw(self) -> Box:
        """Raw object returned from the Kubernetes API."""
        return self._raw

    @property
    def name(self) -> str:
        """Name of the Kubernetes resource."""
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str | None:
        """Namespace of the Kubernetes resource."""
        if self.namespaced:
            return self.metadata.get("namespace", self.api.namespace)
        return None

    @property
    def metadata(self) -> Box:
        return self.raw.get("metadata", Box({}))

    @property
    def spec(self) -> Box:
        return self.raw.get("spec", Box({}))

    @property
    def status(self) -> Box:
        return self.raw.get("status", Box({}))


class Pod(APIObject):
    """A Kubernetes Pod."""

    endpoint = "pods"
    kind = "Pod"

    @property
    def phase(self) -> str:
        return self.status.get("phase", "Unknown")

    @property
    def running(self) -> bool:
        return self.phase == "Running"

    @property
    def containers(self) -> list[str]:
        return [c["name"] for c in self.spec.get("containers", [])]

    def container_port(self, name: str) -> int | None:
        """Look up a named container port."""
        for container in self.spec.get("containers", []):
            for port in container.get("ports", []):
                if port.get("name") == name:
                    return int(port["containerPort"])
        return None


class Service(APIObject):
    """A Kubernetes Service."""

    endpoint = "services"
    kind = "Service"

    def target_port(self, port: int) -> int | str:
        """Translate a Service port into the port it targets on the backing Pods.

        Returns an int for numeric target ports and a str for named ones, which
        must be looked up on the chosen Pod.
        """
        for service_port in self.spec.get("ports", []):
            if service_port.get("port") == port:
                target = service_port.get("targetPort", port)
                if isinstance(target, str) and target.isdigit():
                    return int(target)
                return target
        raise NotFoundError(f"Service {self.namespace}/{self.name} has no port {port}")


class Endpoints(APIObject):
    """A Kubernetes Endpoints."""

    endpoint = "endpoints"
    kind = "Endpoints"

    def ready_pod_names(self) -> list[str]:
        """Names of Pods behind ready addresses, in subset and address order."""
        names = []
        for subset in self.raw.get("subsets") or []:
            for address in subset.get("addresses") or []:
                target = address.get("targetRef") or {}
                if target.get("kind") == "Pod" and target.get("name"):
                    names.append(target["name"])
        return names


async def resolve_portforward_target(
    api: Api,
    namespace: str,
    resource_type: ResourceType,
    name: str,
    remote_port: int,
) -> tuple[str, int]:
    """Find the Pod and container port a port forward should connect to.

    A Pod target must exist and be running. A Service resolves to the first
    ready Pod in its Endpoints with ``remote_port`` translated to the
    Service's target port.

    Returns:
        The Pod name and the port on that Pod.

    Raises:
        NotFoundError: If the resource is missing or no ready Pod backs it.
    """
    if resource_type == "pod":
        pod = await Pod.get(name, namespace, api=api)
        if not pod.running:
            raise NotFoundError(
                f"Pod {namespace}/{name} is not running (phase {pod.phase})"
            )
        return pod.name, remote_port

    service = await Service.get(name, namespace, api=api)
    target = service.target_port(remote_port)
    try:
        endpoints = await Endpoints.get(name, namespace, api=api)
    except NotFoundError as e:
        raise NotFoundError(f"Service {namespace}/{name} has no ready pods") from e
    pod_names = endpoints.ready_pod_names()
    if not pod_names:
        raise NotFoundError(f"Service {namespace}/{name} has no ready pods")
    pod = await Pod.get(pod_names[0], namespace, api=api)
    logger.debug(f"Service {namespace}/{name} resolved to pod {pod.name}")
    if isinstance(target, str):
        port = pod.container_port(target)
        if port is None:
            raise NotFoundError(
                f"Pod {namespace}/{pod.name} has no container port named {target}"
            )
        return pod.name, port
    return pod.name, int(target)
