# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
"""Durable records of port forward sessions.

Live tunnels never survive a restart but their records do, so the manager can
tell callers what used to be running and reconcile stale records on startup.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Iterable, Protocol

import anyio
import anyio.to_thread

from ._exceptions import StoreError
from ._sessions import PortForwardSession, SessionStatus
from ._types import PathType

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def save(self, session: PortForwardSession) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def find_by_id(self, session_id: str) -> PortForwardSession | None: ...

    async def list_by_context(self, context_name: str) -> list[PortForwardSession]: ...

    async def list_all(self) -> list[PortForwardSession]: ...

    async def transition(
        self,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        reason: str | None = None,
    ) -> int: ...


class MemorySessionStore:
    """Keep session records in a dict. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}

    def __repr__(self):
        return f"<MemorySessionStore records={len(self._records)}>"

    async def save(self, session: PortForwardSession) -> None:
        self._records[session.id] = session.to_dict()

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    async def find_by_id(self, session_id: str) -> PortForwardSession | None:
        record = self._records.get(session_id)
        return PortForwardSession.from_dict(record) if record else None

    async def list_by_context(self, context_name: str) -> list[PortForwardSession]:
        return [
            PortForwardSession.from_dict(r)
            for r in self._records.values()
            if r["contextName"] == context_name
        ]

    async def list_all(self) -> list[PortForwardSession]:
        return [PortForwardSession.from_dict(r) for r in self._records.values()]

    async def transition(
        self,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        reason: str | None = None,
    ) -> int:
        return _transition(self._records, from_statuses, to_status, reason)


def _transition(
    records: dict[str, dict],
    from_statuses: Iterable[SessionStatus],
    to_status: SessionStatus,
    reason: str | None,
) -> int:
    wanted = {SessionStatus(s).value for s in from_statuses}
    changed = 0
    for record in records.values():
        if record["status"] in wanted:
            session = PortForwardSession.from_dict(record)
            session.finish(to_status, reason)
            record.update(session.to_dict())
            changed += 1
    return changed


class FileSessionStore:
    """Keep session records in a JSON document on disk.

    The document is read on first use and rewritten on every change through a
    temporary file and an atomic rename, so a crash never leaves a truncated
    file behind.

    Args:
        path: Location of the JSON document. Parent directories are created as needed.
    """

    def __init__(self, path: PathType) -> None:
        self.path = anyio.Path(os.path.expanduser(os.fspath(path)))
        self._records: dict[str, dict] | None = None
        self._lock = anyio.Lock()

    def __repr__(self):
        return f"<FileSessionStore path={self.path}>"

    async def _load(self) -> dict[str, dict]:
        if self._records is not None:
            return self._records
        try:
            if not await self.path.exists():
                self._records = {}
                return self._records
            text = await self.path.read_text()
        except OSError as e:
            raise StoreError(f"Unable to read session store {self.path}: {e}") from e
        try:
            data = json.loads(text)
            sessions = (PortForwardSession.from_dict(r) for r in data.get("sessions", []))
            records = {s.id: s.to_dict() for s in sessions}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            records = await self._set_aside(e)
        self._records = records
        return records

    async def _set_aside(self, error: Exception) -> dict[str, dict]:
        """Move an unparseable document out of the way and start empty."""
        target = self.path.with_name(f"{self.path.name}.corrupt")
        try:
            await self.path.replace(target)
        except OSError as e:
            raise StoreError(
                f"Unable to move corrupt session store {self.path} aside: {e}"
            ) from e
        logger.warning(
            f"Session store {self.path} is corrupt ({error!r}), "
            f"moved it to {target} and starting empty"
        )
        return {}

    async def _write(self, records: dict[str, dict]) -> None:
        document = json.dumps({"sessions": list(records.values())}, indent=2)

        def write():
            directory = os.path.dirname(str(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".sessions-", suffix=".json")
            try:
                with os.fdopen(fd, "w") as fh:
                    fh.write(document)
                os.replace(tmp, str(self.path))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        try:
            await anyio.to_thread.run_sync(write)
        except OSError as e:
            raise StoreError(f"Unable to write session store {self.path}: {e}") from e

    async def save(self, session: PortForwardSession) -> None:
        async with self._lock:
            records = dict(await self._load())
            records[session.id] = session.to_dict()
            await self._write(records)
            self._records = records

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            records = dict(await self._load())
            if records.pop(session_id, None) is None:
                return
            await self._write(records)
            self._records = records

    async def find_by_id(self, session_id: str) -> PortForwardSession | None:
        async with self._lock:
            record = (await self._load()).get(session_id)
        return PortForwardSession.from_dict(record) if record else None

    async def list_by_context(self, context_name: str) -> list[PortForwardSession]:
        async with self._lock:
            records = list((await self._load()).values())
        return [
            PortForwardSession.from_dict(r)
            for r in records
            if r["contextName"] == context_name
        ]

    async def list_all(self) -> list[PortForwardSession]:
        async with self._lock:
            records = list((await self._load()).values())
        return [PortForwardSession.from_dict(r) for r in records]

    async def transition(
        self,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        reason: str | None = None,
    ) -> int:
        async with self._lock:
            records = {k: dict(v) for k, v in (await self._load()).items()}
            changed = _transition(records, from_statuses, to_status, reason)
            if changed:
                await self._write(records)
                self._records = records
                logger.info(
                    f"Marked {changed} stored session(s) {to_status.value}"
                )
        return changed
