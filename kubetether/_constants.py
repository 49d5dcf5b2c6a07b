# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from packaging.version import parse as parse_version

KUBERNETES_MINIMUM_SUPPORTED_VERSION = parse_version("1.28")
KUBERNETES_MAXIMUM_SUPPORTED_VERSION = parse_version("1.34")

DEFAULT_TIMEOUT = 10.0
DEFAULT_BIND_ADDRESS = "127.0.0.1"
DEFAULT_STATE_FILE = "~/.kubetether/sessions.json"
DEFAULT_KUBECONFIG = "~/.kube/config"

# Short API group names mapped to the group/version they are served from.
API_GROUPS = {
    "core": "v1",
    "apps": "apps/v1",
    "batch": "batch/v1",
    "networking": "networking.k8s.io/v1",
    "rbac": "rbac.authorization.k8s.io/v1",
    "storage": "storage.k8s.io/v1",
    "apiextensions": "apiextensions.k8s.io/v1",
    "metrics": "metrics.k8s.io/v1beta1",
}
