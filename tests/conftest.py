"""Stub proof checker, editor and model backend shared by the tests."""

import asyncio
from typing import Callable, Optional

import pytest

from coq_goals import GoalQueryService
from coq_model_backends import TextPart, ToolCall, ToolCallPart
from coq_session import DocumentSessionManager
from coq_types import GoalsWithMessages, Hyp, Position, ProofGoal, QueryResult

SAMPLE_V = """(* Arithmetic facts. Not a sentence. *)
Require Import Arith.

Theorem add_0_r : forall n : nat, n + 0 = n.
Proof.
  intros n.
  induction n as [| n' IH].
  - reflexivity.
  - simpl. rewrite IH. reflexivity.
Qed.

Lemma mul_1_r (n : nat) : n * 1 = n.
Proof.
  (* uses the library lemma. *)
  rewrite Nat.mul_1_r.
Admitted.

Definition double (n : nat) := n + n.

Example double_2 : double 2 = 4 := eq_refl.

Lemma unfinished : True.
Proof.
  exact I.
"""

DEFAULT_GOALS = GoalsWithMessages(
    goals=(ProofGoal("n + 0 = n", (Hyp(("n",), "nat"),)),),
)


class FakeChecker:
    """Records every checker call; can delay and track overlap."""

    def __init__(self, delay: float = 0.0, running: bool = True):
        self.running = running
        self.delay = delay
        self.opens: list[tuple[str, int, Optional[str]]] = []
        self.closes: list[str] = []
        self.queries: list[tuple[Position, str, int, Optional[str]]] = []
        self.open_docs: set[str] = set()
        self.overlapping_opens = 0
        self.active_queries = 0
        self.max_active_queries = 0
        self.fail_open: Optional[BaseException] = None
        self.diagnostics: list = []
        self.respond: Callable[[Position, Optional[str]], QueryResult] = (
            lambda position, command: QueryResult.success(DEFAULT_GOALS)
        )

    @property
    def is_running(self) -> bool:
        return self.running

    async def open_document(self, uri, version, text=None):
        self.opens.append((uri, version, text))
        if uri in self.open_docs:
            self.overlapping_opens += 1
        self.open_docs.add(uri)
        await asyncio.sleep(self.delay)
        if self.fail_open is not None:
            raise self.fail_open
        return list(self.diagnostics)

    async def query_goals(self, position, uri, version, command=None):
        self.queries.append((position, uri, version, command))
        self.active_queries += 1
        self.max_active_queries = max(self.max_active_queries, self.active_queries)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active_queries -= 1
        return self.respond(position, command)

    async def close_document(self, uri):
        self.closes.append(uri)
        self.open_docs.discard(uri)


class FakeEditor:
    """In-memory EditorView."""

    def __init__(self, text: str = SAMPLE_V, cursor: Position = Position(5, 2),
                 uri: str = "file:///work/Sample.v", version: int = 1, language_id: str = "coq"):
        self._text = text
        self.cursor = cursor
        self.uri = uri
        self.version = version
        self.language_id = language_id
        self.inserted: list[tuple[Position, str]] = []

    def text(self) -> str:
        return self._text

    async def insert_text(self, position, text) -> bool:
        self.inserted.append((position, text))
        self.version += 1
        return True


class ScriptedBackend:
    """Replays one scripted response per request; records what it was sent."""

    def __init__(self, responses: list[list], error: Optional[Exception] = None):
        self.responses = list(responses)
        self.error = error
        self.requests: list[dict] = []

    async def send_request(self, messages, options, cancel=None, tools=None):
        self.requests.append({"messages": list(messages), "options": options, "tools": tools})
        if self.error is not None:
            raise self.error
        parts = self.responses.pop(0) if self.responses else [TextPart("done")]
        for part in parts:
            yield part


def text(value: str) -> TextPart:
    return TextPart(value)


def call(name: str, arguments: Optional[dict] = None, call_id: Optional[str] = None) -> ToolCallPart:
    return ToolCallPart(ToolCall(call_id or f"call_{name}", name, arguments or {}))


@pytest.fixture
def checker():
    return FakeChecker()


@pytest.fixture
def sessions(checker):
    return DocumentSessionManager(checker)


@pytest.fixture
def goals(sessions):
    return GoalQueryService(sessions)


@pytest.fixture
async def session_ready(goals):
    future = asyncio.get_running_loop().create_future()
    future.set_result(goals)
    return future


@pytest.fixture
def editor():
    return FakeEditor()
