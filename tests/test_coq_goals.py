"""Tests for point-based goal queries."""

import asyncio

import pytest

from coq_errors import ErrorKind, NoGoals, QueryFailed
from coq_goals import GoalQueryService
from coq_session import DocumentSessionManager
from coq_types import DocumentSpec, GoalsWithMessages, Position, QueryResult

from conftest import DEFAULT_GOALS, FakeChecker

DOC = DocumentSpec("file:///work/A.v", 1, "")
POS = Position(4, 2)


async def test_query_requires_open_session(checker, goals):
    result = await goals.query_at(POS, DOC.uri, DOC.version)
    assert not result.ok
    assert result.error.kind == ErrorKind.QUERY_FAILED
    assert checker.queries == []


async def test_query_requires_matching_version(checker, sessions, goals):
    async with sessions.session(DOC):
        result = await goals.query_at(POS, DOC.uri, 2)
    assert not result.ok
    assert checker.queries == []


async def test_query_inside_session(checker, sessions, goals):
    async with sessions.session(DOC):
        result = await goals.query_at(POS, DOC.uri, DOC.version)
    assert result.ok
    assert result.value == DEFAULT_GOALS
    assert checker.queries == [(POS, DOC.uri, 1, None)]


async def test_query_checker_died_mid_session(checker, sessions, goals):
    async with sessions.session(DOC):
        checker.running = False
        result = await goals.query_at(POS, DOC.uri, DOC.version)
    assert result.error.kind == ErrorKind.CLIENT_UNAVAILABLE


async def test_speculative_command_does_not_persist(checker, sessions, goals):
    after_tactic = GoalsWithMessages()

    def respond(position, command):
        # Checker semantics: a command only affects its own answer
        return QueryResult.success(after_tactic if command else DEFAULT_GOALS)

    checker.respond = respond
    async with sessions.session(DOC):
        before = await goals.query_at(POS, DOC.uri, 1)
        speculative = await goals.query_at(POS, DOC.uri, 1, command="reflexivity.")
        after = await goals.query_at(POS, DOC.uri, 1)
    assert speculative.value == after_tactic
    assert before.value == after.value == DEFAULT_GOALS
    assert [q[3] for q in checker.queries] == [None, "reflexivity.", None]


async def test_queries_never_overlap():
    checker = FakeChecker(delay=0.01)
    goals = GoalQueryService(DocumentSessionManager(checker))
    async with goals.sessions.session(DOC):
        results = await asyncio.gather(*[
            goals.query_at(Position(i, 0), DOC.uri, 1, command=f"t{i}.") for i in range(5)
        ])
    assert all(r.ok for r in results)
    assert checker.max_active_queries == 1


async def test_first_goal_or_throw(checker, sessions, goals):
    async with sessions.session(DOC):
        goal = await goals.get_first_goal_or_throw(POS, DOC.uri, 1)
        assert goal == DEFAULT_GOALS.goals[0]

        checker.respond = lambda position, command: QueryResult.success(GoalsWithMessages())
        with pytest.raises(NoGoals, match="line 5, column 3"):
            await goals.get_first_goal_or_throw(POS, DOC.uri, 1)

        checker.respond = lambda position, command: QueryResult.failure(ErrorKind.QUERY_FAILED, "bad tactic")
        with pytest.raises(QueryFailed, match="bad tactic"):
            await goals.get_first_goal_or_throw(POS, DOC.uri, 1, command="bad.")
