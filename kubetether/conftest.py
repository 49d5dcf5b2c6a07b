# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import asyncio
import copy
import json
import socket
from contextlib import asynccontextmanager, closing

import anyio
import httpx
import httpx_ws
import pytest
import yaml

from kubetether._api import Api
from kubetether._dashboard import Dashboard
from kubetether._settings import Settings
from kubetether._store import MemorySessionStore

KUBECONFIG = {
    "apiVersion": "v1",
    "kind": "Config",
    "current-context": "prod",
    "clusters": [
        {"name": "prod-cluster", "cluster": {"server": "https://prod.example.com"}},
        {
            "name": "staging-cluster",
            "cluster": {
                "server": "https://staging.example.com:6443",
                "insecure-skip-tls-verify": True,
            },
        },
    ],
    "users": [
        {"name": "prod-admin", "user": {"token": "prod-token"}},
        {"name": "staging-admin", "user": {"token": "staging-token"}},
    ],
    "contexts": [
        {
            "name": "prod",
            "context": {
                "cluster": "prod-cluster",
                "user": "prod-admin",
                "namespace": "web",
            },
        },
        {
            "name": "staging",
            "context": {"cluster": "staging-cluster", "user": "staging-admin"},
        },
    ],
}


@pytest.fixture
def kubeconfig_dict():
    return copy.deepcopy(KUBECONFIG)


@pytest.fixture
def kubeconfig_file(tmp_path, kubeconfig_dict):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump(kubeconfig_dict))
    return path


def _unused_port():
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port():
    return _unused_port()


@pytest.fixture
def other_port(free_port):
    port = _unused_port()
    while port == free_port:
        port = _unused_port()
    return port


class FakeCluster:
    """Serve Pods, Services and Endpoints from memory through ``httpx.MockTransport``."""

    def __init__(self):
        self.objects = {}
        self.version = {"major": "1", "minor": "30", "gitVersion": "v1.30.2"}
        self.requests = []

    def add_pod(self, name, namespace="web", phase="Running", ports=None):
        self.objects[("pods", namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "containers": [
                    {"name": "app", "image": "nginx", "ports": ports or []},
                    {"name": "sidecar", "image": "envoy"},
                ]
            },
            "status": {
                "phase": phase,
                "conditions": [
                    {"type": "Ready", "status": "True"},
                    {"type": "ContainersReady", "status": "True"},
                ],
            },
        }

    def add_service(self, name, namespace="web", ports=None, ready_pods=(), not_ready_pods=()):
        self.objects[("services", namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"ports": ports or [{"port": 80, "targetPort": 8080}]},
        }

        def addresses(pods):
            return [
                {"ip": f"10.0.0.{i}", "targetRef": {"kind": "Pod", "name": pod}}
                for i, pod in enumerate(pods)
            ]

        self.objects[("endpoints", namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": {"name": name, "namespace": namespace},
            "subsets": [
                {
                    "addresses": addresses(ready_pods),
                    "notReadyAddresses": addresses(not_ready_pods),
                }
            ],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/version":
            return httpx.Response(200, json=self.version)
        parts = path.strip("/").split("/")
        if len(parts) == 6 and parts[:3] == ["api", "v1", "namespaces"]:
            key = (parts[4], parts[3], parts[5])
            if key in self.objects:
                return httpx.Response(200, json=self.objects[key])
        return httpx.Response(
            404,
            json={
                "kind": "Status",
                "status": "Failure",
                "message": f"{parts[-1]} not found",
                "reason": "NotFound",
                "code": 404,
            },
        )


class FakeWebSocket:
    """A websocket to a Pod subresource that answers like the kubelet would."""

    def __init__(self, subresource):
        self.subresource = subresource
        self.incoming = asyncio.Queue()
        self.sent = []
        self.resizes = []
        self.closed = False

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise httpx_ws.WebSocketDisconnect(1006)
        self.sent.append(data)
        channel, payload = data[0], data[1:]
        if self.subresource == "portforward" and channel == 0:
            self.incoming.put_nowait(b"\x00" + payload)
        elif self.subresource == "exec":
            if channel == 0:
                self.incoming.put_nowait(b"\x01" + payload)
            elif channel == 4:
                self.resizes.append(json.loads(payload))
            elif channel == 255:
                self.incoming.put_nowait(b"\x03" + json.dumps({"status": "Success"}).encode())

    async def receive_bytes(self) -> bytes:
        message = await self.incoming.get()
        if isinstance(message, BaseException):
            self.incoming.put_nowait(message)
            raise message
        return message

    def disconnect(self, code=1000):
        self.incoming.put_nowait(httpx_ws.WebSocketDisconnect(code))


class FakeStreams:
    """Stand in for the API server's streaming endpoints."""

    def __init__(self):
        self.connections = []
        self.subprotocols = []
        self.sockets = []
        self.error = None
        self.hang = False
        self.delay = 0

    @asynccontextmanager
    async def __call__(self, api, namespace, pod, subresource, params, subprotocols=None):
        self.connections.append((namespace, pod, subresource, params))
        if subprotocols:
            self.subprotocols.append(subprotocols)
        if self.hang:
            await anyio.sleep_forever()
        if self.delay:
            await anyio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        ws = FakeWebSocket(subresource)
        if subresource == "portforward":
            port = int(params["ports"]).to_bytes(2, "little")
            ws.incoming.put_nowait(b"\x00" + port)
            ws.incoming.put_nowait(b"\x01" + port)
        self.sockets.append(ws)
        try:
            yield ws
        finally:
            ws.closed = True


@pytest.fixture
def cluster():
    cluster = FakeCluster()
    cluster.add_pod("api-0")
    cluster.add_pod("api-1")
    cluster.add_pod("pending-0", phase="Pending")
    cluster.add_pod(
        "web-0", ports=[{"name": "http", "containerPort": 8081, "protocol": "TCP"}]
    )
    cluster.add_service("api", ready_pods=["api-1", "api-0"])
    cluster.add_service(
        "web", ports=[{"port": 80, "targetPort": "http"}], ready_pods=["web-0"]
    )
    cluster.add_service("empty", not_ready_pods=["api-0"])
    return cluster


@pytest.fixture
def streams():
    return FakeStreams()


@pytest.fixture
def client_factory(cluster, kubeconfig_dict):
    async def factory(context, group):
        factory.calls.append((context.name, group))
        api = Api(context.name, group, kubeconfig=kubeconfig_dict)
        await api.auth
        api._session = httpx.AsyncClient(
            transport=httpx.MockTransport(cluster.handler),
            base_url=api.auth.server,
            headers={"Authorization": f"Bearer {api.auth.token}"},
        )
        return api

    factory.calls = []
    return factory


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
async def dashboard(kubeconfig_dict, store, client_factory, streams):
    settings = Settings(kubeconfig=kubeconfig_dict, timeout=2, state_file=None)
    async with Dashboard(
        settings, store=store, client_factory=client_factory, connector=streams
    ) as dashboard:
        yield dashboard
