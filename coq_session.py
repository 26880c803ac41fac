"""Document session lifecycle against the proof checker.

Every access to the checker goes through a DocumentSessionManager: it opens a
document at an exact version, waits until the checker reports it ready, runs
the caller's body and closes the document again on every exit path. Sessions
for the same uri never overlap, and a request for a version older than one
already opened is rejected as stale.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from coq_errors import ClientUnavailable, QueryFailed, SessionBusy, StaleVersion
from coq_types import Diagnostic, DocumentSpec, Position, QueryResult, SessionState

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ProofChecker(Protocol):
    """The three checker operations the core depends on."""

    @property
    def is_running(self) -> bool: ...

    async def open_document(self, uri: str, version: int, text: Optional[str] = None) -> list[Diagnostic]: ...

    async def query_goals(self, position: Position, uri: str, version: int,
                          command: Optional[str] = None) -> QueryResult: ...

    async def close_document(self, uri: str) -> None: ...


class DocumentSessionManager:
    """Owns open/query/close for documents on one checker process.

    busy_policy:
        "queue"  - a second session for a uri waits for the first (default)
        "reject" - a second session for a uri raises SessionBusy
    """

    def __init__(self, checker: ProofChecker, busy_policy: str = "queue"):
        if busy_policy not in ("queue", "reject"):
            raise ValueError(f"Unknown busy policy: {busy_policy}")
        self.checker = checker
        self.busy_policy = busy_policy
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, SessionState] = {}
        self._open_versions: dict[str, int] = {}
        self._latest_versions: dict[str, int] = {}

    def state(self, uri: str) -> SessionState:
        return self._states.get(uri, SessionState.CLOSED)

    def is_active(self, uri: str, version: int) -> bool:
        return self.state(uri) == SessionState.OPEN and self._open_versions.get(uri) == version

    def _lock(self, uri: str) -> asyncio.Lock:
        lock = self._locks.get(uri)
        if lock is None:
            lock = self._locks[uri] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def session(self, spec: DocumentSpec) -> AsyncIterator[list[Diagnostic]]:
        """Hold an open session for ``spec``; yields the initial diagnostics."""
        if not self.checker.is_running:
            raise ClientUnavailable("Proof checker is not running")

        lock = self._lock(spec.uri)
        if self.busy_policy == "reject" and lock.locked():
            raise SessionBusy(f"A session for {spec.uri} is already in flight")

        async with lock:
            diagnostics = await self._acquire(spec)
            try:
                yield diagnostics
            finally:
                await self._release(spec.uri)

    async def with_session(self, spec: DocumentSpec,
                           body: Callable[[list[Diagnostic]], Awaitable[R]]) -> R:
        async with self.session(spec) as diagnostics:
            return await body(diagnostics)

    async def _acquire(self, spec: DocumentSpec) -> list[Diagnostic]:
        latest = self._latest_versions.get(spec.uri)
        if latest is not None and spec.version < latest:
            raise StaleVersion(
                f"{spec.uri} was already opened at version {latest}; request was for version {spec.version}"
            )

        if not self.checker.is_running:
            raise ClientUnavailable("Proof checker is not running")

        self._states[spec.uri] = SessionState.OPENING
        logger.debug("Opening %s at version %d", spec.uri, spec.version)
        try:
            diagnostics = await self.checker.open_document(spec.uri, spec.version, spec.text)
        except BaseException as e:
            self._states[spec.uri] = SessionState.CLOSED
            # The checker may hold a half-opened document; drop it
            await self._close_quietly(spec.uri)
            if isinstance(e, asyncio.TimeoutError):
                raise QueryFailed(f"Timed out waiting for {spec.uri} v{spec.version} to be checked") from e
            raise
        self._open_versions[spec.uri] = spec.version
        self._latest_versions[spec.uri] = spec.version
        self._states[spec.uri] = SessionState.OPEN
        return diagnostics

    async def _release(self, uri: str) -> None:
        self._states[uri] = SessionState.CLOSING
        logger.debug("Closing %s", uri)
        try:
            await self.checker.close_document(uri)
        finally:
            self._open_versions.pop(uri, None)
            self._states[uri] = SessionState.CLOSED

    async def _close_quietly(self, uri: str) -> None:
        try:
            await self.checker.close_document(uri)
        except Exception as e:
            logger.warning("Failed to close %s after open failure: %s", uri, e)
