"""Tests for the tool registry and the canonical proof tools."""

import asyncio

import pytest

from coq_edit_history import EditHistoryLedger
from coq_errors import ErrorKind, ToolExecutionFailed
from coq_tools import ToolDescriptor, ToolRegistry, create_proof_tools, format_proof_state
from coq_types import GoalsWithMessages, Hyp, Position, ProofGoal, QueryResult

from conftest import FakeEditor

CANONICAL = [
    "get_current_proof_state",
    "get_proof_context",
    "get_current_proof_script",
    "get_edit_history",
    "check_term_validity",
    "suggest_proof_state_edit",
    "get_goal_structure",
]


@pytest.fixture
def ledger():
    return EditHistoryLedger()


@pytest.fixture
def tools(session_ready, editor, ledger):
    return create_proof_tools(session_ready, editor, ledger)


# =============================================================================
# Registry
# =============================================================================


async def _echo(args):
    return f"echo {args.get('x')}"


async def _boom(args):
    raise RuntimeError("kaput")


async def _tool_failure(args):
    raise ToolExecutionFailed("no editor")


def test_schema_shape():
    tool = ToolDescriptor("echo", "Echo x", {"type": "object", "properties": {"x": {"type": "string"}},
                                             "required": ["x"]}, _echo)
    assert tool.schema() == {
        "type": "function",
        "function": {
            "name": "echo",
            "description": "Echo x",
            "parameters": {"type": "object", "properties": {"x": {"type": "string"}}, "required": ["x"]},
        },
    }


def test_duplicate_registration_rejected():
    registry = ToolRegistry([ToolDescriptor("echo", "", {}, _echo)])
    with pytest.raises(ValueError):
        registry.register(ToolDescriptor("echo", "", {}, _echo))


async def test_execute_never_raises():
    registry = ToolRegistry([
        ToolDescriptor("echo", "", {"type": "object", "required": ["x"]}, _echo),
        ToolDescriptor("boom", "", {}, _boom),
        ToolDescriptor("fail", "", {}, _tool_failure),
    ])
    assert await registry.execute("echo", {"x": 1}) == "echo 1"
    assert (await registry.execute("nope")).startswith("error: unknown tool 'nope'")
    assert (await registry.execute("echo", {})).startswith("error: missing required argument")
    assert await registry.execute("boom") == "error: kaput"
    assert await registry.execute("fail") == "error: no editor"


def test_canonical_tool_set(tools):
    assert tools.names() == CANONICAL
    for schema in tools.schemas():
        assert schema["function"]["parameters"]["type"] == "object"
        assert "required" in schema["function"]["parameters"]


# =============================================================================
# Proof state
# =============================================================================


async def test_proof_state_layout(tools, checker, editor):
    result = await tools.execute("get_current_proof_state")
    assert result.startswith("=== CURRENT PROOF STATE ===")
    assert "--- Goal 1 ---" in result
    assert "Goal Type: n + 0 = n" in result
    assert "Hypotheses:\n  n : nat" in result
    assert checker.queries == [(editor.cursor, editor.uri, editor.version, None)]
    assert checker.closes == [editor.uri]


def test_format_proof_state_blocks():
    text = format_proof_state(GoalsWithMessages(
        goals=(ProofGoal("True"),),
        messages=("info",),
        error="Warning: deprecated",
    ))
    assert "No hypotheses." in text
    assert "--- Messages ---\ninfo" in text
    assert "--- Error ---\nWarning: deprecated" in text
    assert format_proof_state(GoalsWithMessages()) == "No active goals at this position."


async def test_proof_state_query_failure(tools, checker):
    checker.respond = lambda position, command: QueryResult.failure(ErrorKind.QUERY_FAILED, "Failed to get goals")
    assert await tools.execute("get_current_proof_state") == "error: Failed to get goals"


async def test_proof_state_checker_down(tools, checker):
    checker.running = False
    result = await tools.execute("get_current_proof_state")
    assert result.startswith("error: ")
    assert checker.opens == []


async def test_checker_startup_failure(editor, ledger):
    future = asyncio.get_running_loop().create_future()
    future.set_exception(RuntimeError("coq-lsp not found"))
    tools = create_proof_tools(future, editor, ledger)
    assert await tools.execute("get_current_proof_state") == "error: coq-lsp not found"


async def test_goal_structure(tools, checker):
    checker.respond = lambda position, command: QueryResult.success(GoalsWithMessages(goals=(
        ProofGoal("P x", (Hyp(("x", "y"), "nat"), Hyp(("f",), "nat -> nat", "S"))),
    )))
    result = await tools.execute("get_goal_structure")
    assert "=== GOAL STRUCTURE ===" in result
    assert "Hypothesis Count: 2" in result
    assert "[0] Names: x, y" in result
    assert "Definition: S" in result


# =============================================================================
# Context tools
# =============================================================================


async def test_proof_context_lines_and_theorems(session_ready, ledger):
    editor = FakeEditor(cursor=Position(6, 7))
    tools = create_proof_tools(session_ready, editor, ledger)
    result = await tools.execute("get_proof_context", {"linesBefore": 3})
    assert "--- Proof Script (last 3 lines) ---\nProof.\n  intros n.\n  induc\n" in result
    assert "--- Available Theorems/Lemmas (4) ---" in result
    assert "1. add_0_r: forall n : nat, n + 0 = n" in result
    assert "more" not in result


async def test_proof_context_truncates_theorem_list(session_ready, ledger):
    text = "".join(f"Lemma l{i} : True.\nProof. exact I. Qed.\n" for i in range(12))
    editor = FakeEditor(text=text, cursor=Position(24, 0))
    tools = create_proof_tools(session_ready, editor, ledger)
    result = await tools.execute("get_proof_context", {"includeTheorems": True})
    assert "10. l9: True" in result
    assert "11. l10" not in result
    assert "... and 2 more" in result


async def test_proof_context_without_theorems(tools):
    result = await tools.execute("get_proof_context", {"includeTheorems": False})
    assert "Available Theorems" not in result


async def test_proof_script_inside_proof(tools):
    result = await tools.execute("get_current_proof_script")
    assert result.startswith("Theorem: add_0_r\nStatement: forall n : nat, n + 0 = n\n")
    assert "Proof script:\nintros n." in result


async def test_proof_script_outside_proof(session_ready, ledger):
    tools = create_proof_tools(session_ready, FakeEditor(cursor=Position(3, 0)), ledger)
    assert (await tools.execute("get_current_proof_script")).startswith("No proof found at the cursor position")


async def test_edit_history(tools, ledger):
    assert await tools.execute("get_edit_history") == "No edits have been made yet."
    ledger.append("n + 0", "n", 1700000000000)
    result = await tools.execute("get_edit_history")
    assert '1. "n + 0" -> "n"' in result
    assert "   (at " in result


# =============================================================================
# Validation and suggestions
# =============================================================================


async def test_check_term_validity_valid(tools, checker):
    assert await tools.execute("check_term_validity", {"term": "assert (n + 0 = n)"}) == "valid"
    assert checker.queries[-1][3] == "assert (n + 0 = n)."


async def test_check_term_validity_keeps_existing_period(tools, checker):
    await tools.execute("check_term_validity", {"term": "reflexivity."})
    assert checker.queries[-1][3] == "reflexivity."


async def test_check_term_validity_error(tools, checker):
    checker.respond = lambda position, command: QueryResult.failure(
        ErrorKind.QUERY_FAILED, "The term \"true\" has type \"bool\"")
    result = await tools.execute("check_term_validity", {"term": "exact true"})
    assert result == 'error: The term "true" has type "bool"'


async def test_check_term_validity_is_valid_or_error(tools, checker):
    checker.running = False
    assert (await tools.execute("check_term_validity", {"term": "auto"})).startswith("error: ")
    assert await tools.execute("check_term_validity", {"term": "  "}) == "error: term is required."


async def test_check_term_does_not_persist(tools, checker):
    await tools.execute("check_term_validity", {"term": "clear n"})
    await tools.execute("get_current_proof_state")
    assert [q[3] for q in checker.queries] == ["clear n.", None]
    # each tool call used its own session
    assert len(checker.opens) == len(checker.closes) == 2


async def test_suggest_edit_formats_without_side_effects(tools, ledger, editor, checker):
    result = await tools.execute("suggest_proof_state_edit", {
        "hypothesisName": "H",
        "originalValue": "n + 0 = n",
        "suggestedValue": "n = n",
        "reason": "simplify",
    })
    assert result.startswith("=== SUGGESTED EDIT ===")
    assert "Hypothesis: H\nOriginal: n + 0 = n\nSuggested: n = n\nReason: simplify" in result
    assert len(ledger) == 0
    assert editor.inserted == []
    assert checker.opens == []


async def test_suggest_edit_rejects_empty_fields(tools):
    result = await tools.execute("suggest_proof_state_edit", {
        "hypothesisName": "H", "originalValue": "", "suggestedValue": "x",
    })
    assert result == "error: hypothesisName, originalValue, and suggestedValue are required."


async def test_proof_context_parse_failure_keeps_script(tools, monkeypatch):
    async def broken(spec):
        raise ValueError("unreadable")

    monkeypatch.setattr("coq_tools.parse_document", broken)
    result = await tools.execute("get_proof_context", {"linesBefore": 1})
    assert "--- Proof Script (last 1 lines) ---" in result
    assert result.endswith("Note: Could not parse theorems: unreadable\n")


async def test_open_timeout_reaches_model_with_reason(tools, checker):
    checker.fail_open = asyncio.TimeoutError()
    state = await tools.execute("get_current_proof_state")
    check = await tools.execute("check_term_validity", {"term": "auto"})
    assert state.startswith("error: Timed out waiting for file:///work/Sample.v v1")
    assert check == state
