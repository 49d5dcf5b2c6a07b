# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from typing import Optional

import httpx


class KubetetherError(Exception):
    """Base class for all errors raised by kubetether.

    Every error carries a machine readable ``kind`` and a human readable message
    which are safe to hand back to a caller.
    """

    kind: str = "internal"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(KubetetherError):
    """A request was malformed or incomplete."""

    kind = "validation"
    status_code = 400


class NotFoundError(KubetetherError):
    """Unable to find the requested resource."""

    kind = "not_found"
    status_code = 404


class ContextNotFoundError(NotFoundError):
    """The named cluster context is not in the kubeconfig."""


class SessionNotFoundError(NotFoundError):
    """The port forward session is unknown."""


class ConflictError(KubetetherError):
    """The local port is already claimed."""

    kind = "port_in_use"
    status_code = 409


PortInUseError = ConflictError


class UpstreamError(KubetetherError):
    """The remote cluster or its API server failed."""

    kind = "upstream_error"
    status_code = 502


class ClientConstructionFailed(UpstreamError):
    """Unable to set up the connection or credentials for a context."""


class ConnectionClosedError(UpstreamError):
    """A connection has been closed."""


class ServerError(UpstreamError):
    """Error from the Kubernetes API server.

    Attributes:
        status: The Status object from the Kubernetes API server
        response: The httpx response object
    """

    def __init__(
        self,
        message: str,
        status: Optional[str] = None,
        response: Optional[httpx.Response] = None,
    ) -> None:
        self.status = status
        self.response = response
        super().__init__(message)


class ExecError(UpstreamError):
    """Internal error in the exec protocol."""

    kind = "exec_error"


class APITimeoutError(KubetetherError):
    """A deadline expired while waiting for the Kubernetes API server."""

    kind = "timeout"
    status_code = 504


class StoreError(KubetetherError):
    """The session store could not be read or written."""

    kind = "store_error"
    status_code = 500
