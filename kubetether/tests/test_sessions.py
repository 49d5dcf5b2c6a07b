# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import pytest

from kubetether._exceptions import ValidationError
from kubetether._sessions import (
    PortForwardRequest,
    PortForwardSession,
    SessionStatus,
)

BODY = {
    "contextName": "prod",
    "namespace": "web",
    "resourceType": "service",
    "resourceName": "api",
    "localPort": 18080,
    "remotePort": 80,
}


def test_request_from_dict():
    request = PortForwardRequest.from_dict(BODY)
    assert request == PortForwardRequest(
        context_name="prod",
        namespace="web",
        resource_type="service",
        resource_name="api",
        local_port=18080,
        remote_port=80,
    )


def test_request_snake_case_and_string_ports():
    request = PortForwardRequest.from_dict(
        {
            "namespace": "web",
            "resource_type": "pod",
            "resource_name": "api-0",
            "local_port": "18080",
            "remote_port": "8080",
        },
        context_name="staging",
    )
    assert request.context_name == "staging"
    assert request.local_port == 18080
    assert request.remote_port == 8080


def test_context_name_argument_wins():
    assert PortForwardRequest.from_dict(BODY, context_name="staging").context_name == "staging"


@pytest.mark.parametrize(
    "overrides,match",
    [
        ({"namespace": None}, "namespace is required"),
        ({"namespace": "  "}, "namespace is required"),
        ({"resourceName": ""}, "resourceName is required"),
        ({"resourceType": "deployment"}, "resourceType must be one of"),
        ({"localPort": None}, "localPort is required"),
        ({"localPort": 0}, "localPort must be between 1 and 65535"),
        ({"remotePort": 65536}, "remotePort must be between 1 and 65535"),
        ({"remotePort": False}, "remotePort must be an integer"),
        ({"remotePort": 80.5}, "remotePort must be an integer"),
        ({"localPort": "-1"}, "localPort must be an integer"),
        ({"localPort": "\u00b2"}, "localPort must be an integer"),
        ({"remotePort": "8\u00b9"}, "remotePort must be an integer"),
        ({"contextName": ""}, "contextName is required"),
    ],
)
def test_request_validation(overrides, match):
    with pytest.raises(ValidationError, match=match) as e:
        PortForwardRequest.from_dict({**BODY, **overrides})
    assert e.value.kind == "validation"
    assert e.value.status_code == 400


def test_request_body_must_be_object():
    with pytest.raises(ValidationError):
        PortForwardRequest.from_dict(["not", "an", "object"])


def test_session_lifecycle():
    session = PortForwardSession.from_request(PortForwardRequest.from_dict(BODY))
    assert session.status == SessionStatus.PENDING
    assert session.live
    assert session.closed_at is None
    session.finish(SessionStatus.FAILED, "remote closed the stream (code 1006)")
    assert not session.live
    assert session.closed_at >= session.created_at
    assert session.last_error == "remote closed the stream (code 1006)"


def test_session_to_dict():
    session = PortForwardSession.from_request(PortForwardRequest.from_dict(BODY))
    session.status = SessionStatus.ACTIVE
    session.pod_name = "api-1"
    session.target_port = 8080
    data = session.to_dict()
    assert data == {
        "id": session.id,
        "contextName": "prod",
        "namespace": "web",
        "resourceType": "service",
        "resourceName": "api",
        "localPort": 18080,
        "remotePort": 80,
        "status": "active",
        "createdAt": session.created_at.isoformat(),
        "closedAt": None,
        "lastError": None,
        "podName": "api-1",
        "targetPort": 8080,
    }
    assert PortForwardSession.from_dict(data) == session


def test_session_copy_is_independent():
    session = PortForwardSession.from_request(PortForwardRequest.from_dict(BODY))
    copy = session.copy()
    copy.status = SessionStatus.CLOSED
    assert session.status == SessionStatus.PENDING
    assert copy.id == session.id


def test_session_ids_are_unique():
    request = PortForwardRequest.from_dict(BODY)
    assert len({PortForwardSession.from_request(request).id for _ in range(100)}) == 100
