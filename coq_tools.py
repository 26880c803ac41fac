"""Tools the agent can call against the bound editor and proof checker.

Every tool takes a dict of arguments and returns text. Failures never escape
``ToolRegistry.execute``: they come back as ``error: <message>`` strings so the
agent loop treats all tool outcomes uniformly.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from coq_edit_history import EditHistoryLedger
from coq_editor import EditorView, snapshot
from coq_errors import ProofAssistantError, ToolExecutionFailed
from coq_file_parser import find_theorem_at, parse_document
from coq_types import GoalsWithMessages, Position, ProofGoal, pp_to_string

logger = logging.getLogger(__name__)

MAX_LISTED_THEOREMS = 10


@dataclass
class ToolDescriptor:
    name: str
    description: str
    parameters: dict  # JSON schema of the argument object
    execute: Callable[[dict], Awaitable[str]]

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))


def _object_schema(properties: Optional[dict] = None, required: Optional[list[str]] = None) -> dict:
    return {"type": "object", "properties": properties or {}, "required": required or []}


class ToolRegistry:
    """Name -> ToolDescriptor, in registration order."""

    def __init__(self, tools: Optional[list[ToolDescriptor]] = None):
        self._tools: dict[str, ToolDescriptor] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDescriptor) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    async def execute(self, name: str, args: Optional[dict] = None) -> str:
        tool = self._tools.get(name)
        if tool is None:
            return f"error: unknown tool '{name}'. Available tools: {', '.join(self._tools)}"
        args = args or {}
        missing = [r for r in tool.required if r not in args]
        if missing:
            return f"error: missing required argument(s) for {name}: {', '.join(missing)}"
        try:
            return await tool.execute(args)
        except ProofAssistantError as e:
            logger.debug("Tool %s failed: %s", name, e.message)
            return f"error: {e.message}"
        except Exception as e:
            logger.warning("Tool %s raised %s: %s", name, type(e).__name__, e)
            return f"error: {e}"


# =============================================================================
# Formatting
# =============================================================================


def format_proof_state(result: GoalsWithMessages) -> str:
    """Fixed textual layout the model reads as context."""
    if not result.goals and not result.messages and result.error is None:
        return "No active goals at this position."

    lines = ["=== CURRENT PROOF STATE ===", ""]
    if not result.goals:
        lines += ["No active goals at this position.", ""]
    for i, goal in enumerate(result.goals, 1):
        lines.append(f"--- Goal {i} ---")
        lines.append(f"Goal Type: {pp_to_string(goal.ty)}")
        lines.append("")
        if goal.hyps:
            lines.append("Hypotheses:")
            lines += [f"  {hyp}" for hyp in goal.hyps]
        else:
            lines.append("No hypotheses.")
        lines.append("")
    if result.messages:
        lines.append("--- Messages ---")
        lines += list(result.messages)
        lines.append("")
    if result.error is not None:
        lines.append("--- Error ---")
        lines.append(result.error)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_goal_structure(goals: tuple[ProofGoal, ...]) -> str:
    if not goals:
        return "No active goals at this position."
    lines = ["=== GOAL STRUCTURE ===", ""]
    for i, goal in enumerate(goals, 1):
        lines.append(f"--- Goal {i} ---")
        lines.append(f"Type: {pp_to_string(goal.ty)}")
        lines.append(f"Hypothesis Count: {len(goal.hyps)}")
        if goal.hyps:
            lines += ["", "Hypothesis Details:"]
            for j, hyp in enumerate(goal.hyps):
                lines.append(f"  [{j}] Names: {', '.join(hyp.names)}")
                lines.append(f"      Type: {pp_to_string(hyp.ty)}")
                if hyp.def_ is not None:
                    lines.append(f"      Definition: {pp_to_string(hyp.def_)}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_edit_history(ledger: EditHistoryLedger) -> str:
    records = ledger.all()
    if not records:
        return "No edits have been made yet."
    lines = [f"=== EDIT HISTORY ({len(records)} edits) ===", ""]
    for i, record in enumerate(records, 1):
        lines.append(f'{i}. "{record.lhs}" -> "{record.rhs}"')
        if record.timestamp:
            stamp = time.strftime("%H:%M:%S", time.localtime(record.timestamp / 1000))
            lines.append(f"   (at {stamp})")
    return "\n".join(lines) + "\n"


def format_suggestion(hypothesis_name: str, original: str, suggested: str,
                      reason: Optional[str] = None) -> str:
    lines = [
        "=== SUGGESTED EDIT ===",
        "",
        f"Hypothesis: {hypothesis_name}",
        f"Original: {original}",
        f"Suggested: {suggested}",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    lines += ["", "This suggestion will be presented to the user for review."]
    return "\n".join(lines)


def text_before(text: str, position: Position) -> list[str]:
    """Lines before ``position``, the current line cut at the cursor column."""
    lines = text.split("\n")
    if position.line >= len(lines):
        return lines
    return lines[:position.line] + [lines[position.line][:position.character]]


def ensure_period(term: str) -> str:
    return term if term.strip().endswith(".") else term + "."


# =============================================================================
# Canonical tools
# =============================================================================


def create_proof_tools(session_ready: Awaitable, editor: EditorView,
                       ledger: Optional[EditHistoryLedger] = None, *,
                       lines_before: int = 20) -> ToolRegistry:
    """Build the registry bound to one editor.

    ``session_ready`` resolves to the GoalQueryService once the checker is up;
    it must be awaitable more than once (a Future or Task).
    """
    ledger = ledger if ledger is not None else EditHistoryLedger()

    async def query_cursor(command: Optional[str] = None) -> GoalsWithMessages:
        goals = await session_ready
        position = editor.cursor
        spec = snapshot(editor)
        async with goals.sessions.session(spec):
            result = await goals.query_at(position, spec.uri, spec.version, command)
        if not result.ok:
            raise ToolExecutionFailed(result.error.message)
        return result.value

    async def get_current_proof_state(args: dict) -> str:
        return format_proof_state(await query_cursor())

    async def get_proof_context(args: dict) -> str:
        n = int(args.get("linesBefore", lines_before))
        include_theorems = bool(args.get("includeTheorems", True))
        content = editor.text()

        before = text_before(content, editor.cursor)
        relevant = before[-n:] if n > 0 else []
        parts = [
            "=== PROOF CONTEXT ===",
            "",
            f"--- Proof Script (last {len(relevant)} lines) ---",
            "\n".join(relevant),
            "",
        ]
        if include_theorems:
            try:
                theorems = await parse_document(snapshot(editor))
            except (OSError, ValueError) as e:
                parts.append(f"Note: Could not parse theorems: {e}")
                return "\n".join(parts) + "\n"
            if theorems:
                parts.append(f"--- Available Theorems/Lemmas ({len(theorems)}) ---")
                for i, thm in enumerate(theorems[:MAX_LISTED_THEOREMS], 1):
                    parts.append(f"{i}. {thm.name}: {thm.statement}")
                if len(theorems) > MAX_LISTED_THEOREMS:
                    parts.append(f"... and {len(theorems) - MAX_LISTED_THEOREMS} more")
            else:
                parts.append("No theorems/lemmas found in this file.")
        return "\n".join(parts) + "\n"

    async def get_current_proof_script(args: dict) -> str:
        theorems = await parse_document(snapshot(editor))
        pos = editor.cursor
        thm = find_theorem_at(theorems, pos)
        if thm is None:
            return (f"No proof found at the cursor position (line {pos.line + 1}, "
                    f"column {pos.character + 1}). Place the cursor inside a proof.")
        return (f"Theorem: {thm.name}\n"
                f"Statement: {thm.statement}\n\n"
                f"Proof script:\n{thm.proof.only_text()}\n")

    async def get_edit_history(args: dict) -> str:
        return format_edit_history(ledger)

    async def check_term_validity(args: dict) -> str:
        term = str(args.get("term", ""))
        if not term.strip():
            return "error: term is required."
        try:
            await query_cursor(ensure_period(term))
        except ProofAssistantError as e:
            return f"error: {e.message}"
        return "valid"

    async def suggest_proof_state_edit(args: dict) -> str:
        name = str(args.get("hypothesisName") or "").strip()
        original = str(args.get("originalValue") or "").strip()
        suggested = str(args.get("suggestedValue") or "").strip()
        if not name or not original or not suggested:
            return "error: hypothesisName, originalValue, and suggestedValue are required."
        return format_suggestion(name, original, suggested, args.get("reason") or None)

    async def get_goal_structure(args: dict) -> str:
        return format_goal_structure((await query_cursor()).goals)

    return ToolRegistry([
        ToolDescriptor(
            "get_current_proof_state",
            "Gets the current proof state at the cursor position: all goals, "
            "their hypotheses and types, plus any checker messages or errors.",
            _object_schema(),
            get_current_proof_state,
        ),
        ToolDescriptor(
            "get_proof_context",
            "Gets the proof script text before the cursor (last N lines) and the "
            "theorems/lemmas declared in the current file.",
            _object_schema({
                "linesBefore": {"type": "integer", "description": "Number of lines before the cursor (default 20)"},
                "includeTheorems": {"type": "boolean", "description": "List theorems in the file (default true)"},
            }),
            get_proof_context,
        ),
        ToolDescriptor(
            "get_current_proof_script",
            "Gets the name, statement and proof script of the theorem whose proof contains the cursor.",
            _object_schema(),
            get_current_proof_script,
        ),
        ToolDescriptor(
            "get_edit_history",
            "Gets the list of accepted edits (lhs -> rhs pairs) made to the proof state so far.",
            _object_schema(),
            get_edit_history,
        ),
        ToolDescriptor(
            "check_term_validity",
            "Checks whether a Coq term or assertion is valid in the current context "
            "without changing the document. Returns 'valid' or 'error: <reason>'.",
            _object_schema({
                "term": {"type": "string", "description": "The Coq command to check, e.g. 'assert (x + 0 = x).'"},
            }, ["term"]),
            check_term_validity,
        ),
        ToolDescriptor(
            "suggest_proof_state_edit",
            "Proposes replacing the value of a hypothesis or goal. The suggestion is "
            "shown to the user for acceptance; it is not applied automatically.",
            _object_schema({
                "hypothesisName": {"type": "string", "description": "Name of the hypothesis (or 'goal')"},
                "originalValue": {"type": "string", "description": "Current text of the hypothesis type"},
                "suggestedValue": {"type": "string", "description": "Suggested replacement text"},
                "reason": {"type": "string", "description": "Why this edit helps"},
            }, ["hypothesisName", "originalValue", "suggestedValue"]),
            suggest_proof_state_edit,
        ),
        ToolDescriptor(
            "get_goal_structure",
            "Gets a structured breakdown of the current goals: type, hypothesis count, "
            "and each hypothesis' names, type and definition.",
            _object_schema(),
            get_goal_structure,
        ),
    ])
