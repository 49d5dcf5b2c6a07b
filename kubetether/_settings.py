# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from ._constants import (
    DEFAULT_BIND_ADDRESS,
    DEFAULT_KUBECONFIG,
    DEFAULT_STATE_FILE,
    DEFAULT_TIMEOUT,
)
from ._exceptions import ValidationError
from ._types import KubeconfigSource


@dataclass
class Settings:
    """Runtime configuration.

    Attributes:
        kubeconfig: Kubeconfig path, ``KUBECONFIG`` style list of paths, or parsed dict.
        timeout: Deadline in seconds for every upstream call and tunnel handshake.
        state_file: Where session records are kept. ``None`` keeps them in memory.
        bind_address: Local address port forwards listen on.
    """

    kubeconfig: KubeconfigSource = field(
        default_factory=lambda: os.environ.get("KUBECONFIG", DEFAULT_KUBECONFIG)
    )
    timeout: float = DEFAULT_TIMEOUT
    state_file: str | None = DEFAULT_STATE_FILE
    bind_address: str = DEFAULT_BIND_ADDRESS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Load settings from ``KUBETETHER_*`` environment variables.

        Raises:
            ValidationError: If a variable has an invalid value.
        """
        if environ is None:
            environ = os.environ
        kubeconfig = (
            environ.get("KUBETETHER_KUBECONFIG")
            or environ.get("KUBECONFIG")
            or DEFAULT_KUBECONFIG
        )
        raw_timeout = environ.get("KUBETETHER_TIMEOUT")
        timeout = DEFAULT_TIMEOUT
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError as e:
                raise ValidationError(
                    f"KUBETETHER_TIMEOUT must be a number of seconds, got {raw_timeout}"
                ) from e
            if timeout <= 0:
                raise ValidationError(
                    f"KUBETETHER_TIMEOUT must be positive, got {raw_timeout}"
                )
        state_file: str | None = environ.get("KUBETETHER_STATE_FILE", DEFAULT_STATE_FILE)
        if not state_file:
            state_file = None
        bind_address = environ.get("KUBETETHER_BIND_ADDRESS") or DEFAULT_BIND_ADDRESS
        return cls(
            kubeconfig=kubeconfig,
            timeout=timeout,
            state_file=state_file,
            bind_address=bind_address,
        )
