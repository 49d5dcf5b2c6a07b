# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from ._data_utils import format_timestamp, parse_timestamp, utcnow
from ._exceptions import ValidationError

RESOURCE_TYPES = ("pod", "service")


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


# Statuses that claim a port and are backed by a tunnel in a running process.
LIVE_STATUSES = frozenset(
    {SessionStatus.PENDING, SessionStatus.ACTIVE, SessionStatus.CLOSING}
)

_REQUEST_FIELDS = {
    "context_name": "contextName",
    "namespace": "namespace",
    "resource_type": "resourceType",
    "resource_name": "resourceName",
    "local_port": "localPort",
    "remote_port": "remotePort",
}


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    camel = _REQUEST_FIELDS[name]
    if camel in data:
        return data[camel]
    return data.get(name)


def _validate_string(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{_REQUEST_FIELDS[name]} is required")
    return value


def _validate_port(name: str, value: Any) -> int:
    if value is None:
        raise ValidationError(f"{_REQUEST_FIELDS[name]} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{_REQUEST_FIELDS[name]} must be an integer")
    if isinstance(value, str) and value.isdecimal():
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{_REQUEST_FIELDS[name]} must be an integer")
    if not 1 <= value <= 65535:
        raise ValidationError(
            f"{_REQUEST_FIELDS[name]} must be between 1 and 65535, got {value}"
        )
    return value


@dataclass(frozen=True)
class PortForwardRequest:
    """A validated request to start a port forward."""

    context_name: str
    namespace: str
    resource_type: str
    resource_name: str
    local_port: int
    remote_port: int

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], context_name: str | None = None
    ) -> PortForwardRequest:
        """Validate a request body.

        Keys may be given in camelCase, as on the wire, or snake_case.
        ``context_name`` overrides any context named in the body.

        Raises:
            ValidationError: If a field is missing or has the wrong type or range.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be an object")
        context = _validate_string(
            "context_name",
            context_name if context_name is not None else _lookup(data, "context_name"),
        )
        namespace = _validate_string("namespace", _lookup(data, "namespace"))
        resource_type = _validate_string("resource_type", _lookup(data, "resource_type"))
        if resource_type not in RESOURCE_TYPES:
            raise ValidationError(
                f"resourceType must be one of {', '.join(RESOURCE_TYPES)}, "
                f"got {resource_type}"
            )
        resource_name = _validate_string("resource_name", _lookup(data, "resource_name"))
        local_port = _validate_port("local_port", _lookup(data, "local_port"))
        remote_port = _validate_port("remote_port", _lookup(data, "remote_port"))
        return cls(
            context_name=context,
            namespace=namespace,
            resource_type=resource_type,
            resource_name=resource_name,
            local_port=local_port,
            remote_port=remote_port,
        )


@dataclass
class PortForwardSession:
    """One port forward tunnel and its lifecycle."""

    context_name: str
    namespace: str
    resource_type: str
    resource_name: str
    local_port: int
    remote_port: int
    status: SessionStatus = SessionStatus.PENDING
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    closed_at: datetime | None = None
    last_error: str | None = None
    pod_name: str | None = None
    target_port: int | None = None

    @classmethod
    def from_request(cls, request: PortForwardRequest) -> PortForwardSession:
        return cls(
            context_name=request.context_name,
            namespace=request.namespace,
            resource_type=request.resource_type,
            resource_name=request.resource_name,
            local_port=request.local_port,
            remote_port=request.remote_port,
        )

    @property
    def live(self) -> bool:
        return self.status in LIVE_STATUSES

    def finish(self, status: SessionStatus, error: str | None = None) -> None:
        """Move the session to a terminal status."""
        self.status = status
        self.closed_at = utcnow()
        if error is not None:
            self.last_error = error

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contextName": self.context_name,
            "namespace": self.namespace,
            "resourceType": self.resource_type,
            "resourceName": self.resource_name,
            "localPort": self.local_port,
            "remotePort": self.remote_port,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "closedAt": format_timestamp(self.closed_at),
            "lastError": self.last_error,
            "podName": self.pod_name,
            "targetPort": self.target_port,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PortForwardSession:
        return cls(
            id=data["id"],
            context_name=data["contextName"],
            namespace=data["namespace"],
            resource_type=data["resourceType"],
            resource_name=data["resourceName"],
            local_port=data["localPort"],
            remote_port=data["remotePort"],
            status=SessionStatus(data["status"]),
            created_at=parse_timestamp(data.get("createdAt")) or utcnow(),
            closed_at=parse_timestamp(data.get("closedAt")),
            last_error=data.get("lastError"),
            pod_name=data.get("podName"),
            target_port=data.get("targetPort"),
        )

    def copy(self) -> PortForwardSession:
        return PortForwardSession.from_dict(self.to_dict())
