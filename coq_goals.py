"""Point-based goal queries inside an open document session."""

import asyncio
import logging
from typing import Optional

from coq_errors import ErrorKind, NoGoals
from coq_session import DocumentSessionManager
from coq_types import Position, ProofGoal, QueryResult

logger = logging.getLogger(__name__)


class GoalQueryService:
    """Goal and diagnostics retrieval, optionally after a speculative command.

    A ``command`` (candidate tactic, ``assert`` statement...) is executed by the
    checker on a throwaway copy of the state at ``position``; it never changes
    what a later query without a command observes.
    """

    def __init__(self, sessions: DocumentSessionManager):
        self.sessions = sessions
        self._query_locks: dict[str, asyncio.Lock] = {}

    async def query_at(self, position: Position, uri: str, version: int,
                       command: Optional[str] = None) -> QueryResult:
        if not self.sessions.is_active(uri, version):
            return QueryResult.failure(
                ErrorKind.QUERY_FAILED,
                f"No open session for {uri} at version {version}",
            )
        if not self.sessions.checker.is_running:
            return QueryResult.failure(ErrorKind.CLIENT_UNAVAILABLE, "Proof checker is not running")

        lock = self._query_locks.setdefault(uri, asyncio.Lock())
        async with lock:
            logger.debug("Querying goals at %s:%d:%d (command=%r)",
                         uri, position.line, position.character, command)
            return await self.sessions.checker.query_goals(position, uri, version, command)

    async def get_first_goal_or_throw(self, position: Position, uri: str, version: int,
                                      command: Optional[str] = None) -> ProofGoal:
        """Return the focused goal. Raises NoGoals or QueryFailed."""
        result = await self.query_at(position, uri, version, command)
        goals = result.unwrap().goals
        if not goals:
            raise NoGoals(f"No goals at line {position.line + 1}, column {position.character + 1}")
        return goals[0]
