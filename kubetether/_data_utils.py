# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
"""Utilities for working with Kubernetes data structures."""
from __future__ import annotations

from datetime import datetime, timezone


def dict_list_pack(
    input_dict: dict, key: str = "key", value: str = "value"
) -> list[dict]:
    """Convert a dictionary to a list of dictionaries.

    Args:
        input_dict: The dictionary to convert to a list of dictionaries.
        key: The key to use for the input dictionary's keys. Defaults to "key".
        value: The key to use for the input dictionary's values. Defaults to "value".

    Returns:
        A list of dictionaries with the keys and values from the input dictionary.
    """
    return [{key: k, value: v} for k, v in input_dict.items()]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """Render a timestamp as ISO 8601, or ``None``."""
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp produced by :func:`format_timestamp`."""
    if not value:
        return None
    return datetime.fromisoformat(value)
