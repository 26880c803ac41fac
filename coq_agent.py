"""Tool-calling agent loop and the plain chat path.

One call to ``run_agent`` is one conversation turn: the prompt is appended to
the caller's history, the model is asked repeatedly, and each tool call it
makes is answered through the ToolRegistry before the next request. Text is
forwarded to ``on_chunk`` as it arrives; ``on_done`` fires exactly once.
"""

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

from coq_editor import EditorView, is_coq_editor, snapshot
from coq_errors import ProofAssistantError
from coq_model_backends import (
    ChatMessage,
    ModelBackend,
    RequestOptions,
    ResponsePart,
    TextPart,
    ToolCall,
    ToolCallPart,
)
from coq_tools import ToolRegistry
from coq_types import CancelToken, ConversationMessage, ProofGoal, pp_to_string

logger = logging.getLogger(__name__)

SUGGEST_TOOL = "suggest_proof_state_edit"

NO_MODEL_MESSAGE = (
    "No chat model available. Configure a model (--backend/--model or "
    "COQ_ASSISTANT_MODEL) and try again."
)
CHECKER_NOT_READY_MESSAGE = "ERROR: Coq proof checker is not ready."
NO_EDITOR_MESSAGE = "Please open a Coq file and place your cursor inside a proof."
MODEL_ERROR_PREFIX = "An error occurred while communicating with the language model: "

AGENT_SYSTEM_PROMPT = """You are an expert Coq proof assistant working inside the user's editor.

Use the tools to look before you answer:
- get_current_proof_state / get_goal_structure: goals and hypotheses at the cursor
- get_proof_context: source before the cursor and the theorems in the file
- get_current_proof_script: the theorem being proved and its script so far
- get_edit_history: rewrites the user has already accepted
- check_term_validity: test a tactic or `assert (...)` without changing the file
- suggest_proof_state_edit: propose replacing a hypothesis or goal; the user decides

Validate every suggestion with check_term_validity first. Keep answers short and
give Coq code in ```coq blocks."""

CHAT_SYSTEM_PROMPT = (
    "You are an expert Coq Theorem Prover AI. Your task is to analyse the provided Coq "
    "code and context to generate the single best next tactic or provide a clear "
    "explanation. Only output Coq code if asked for a tactic."
)

OnChunk = Callable[[str], None]
OnDone = Callable[[], None]


@dataclass(frozen=True)
class ProofStateEdit:
    """An edit proposed by the agent; applying it is the user's call."""
    hypothesis_name: str
    original_value: str
    suggested_value: str
    reason: Optional[str] = None

    @classmethod
    def from_args(cls, args: dict) -> "ProofStateEdit":
        return cls(
            hypothesis_name=str(args["hypothesisName"]).strip(),
            original_value=str(args["originalValue"]).strip(),
            suggested_value=str(args["suggestedValue"]).strip(),
            reason=args.get("reason") or None,
        )

    def to_dict(self) -> dict:
        data = {
            "hypothesisName": self.hypothesis_name,
            "originalValue": self.original_value,
            "suggestedValue": self.suggested_value,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


class _Emitter:
    """Guards the caller's callbacks: no chunks after cancellation, done once."""

    def __init__(self, on_chunk: OnChunk, on_done: Optional[OnDone], cancel: Optional[CancelToken]):
        self.on_chunk = on_chunk
        self.on_done = on_done
        self.cancel = cancel
        self._done = False

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def chunk(self, text: str) -> None:
        if self.cancelled or self._done or not text:
            return
        try:
            self.on_chunk(text)
        except Exception as e:
            logger.warning("on_chunk failed: %s", e)

    def done(self) -> None:
        if self._done:
            return
        self._done = True
        if self.on_done is None:
            return
        try:
            self.on_done()
        except Exception as e:
            logger.warning("on_done failed: %s", e)


async def _consume(parts: AsyncIterator[ResponsePart], out: _Emitter) -> tuple[str, list[ToolCall]]:
    """Drain one model response, streaming text out as it arrives."""
    text: list[str] = []
    calls: list[ToolCall] = []
    async with aclosing(parts) as stream:
        async for part in stream:
            if out.cancelled:
                break
            if isinstance(part, TextPart):
                text.append(part.text)
                out.chunk(part.text)
            elif isinstance(part, ToolCallPart):
                calls.append(part.call)
    return "".join(text), calls


async def _resolve_tool_call(tools: ToolRegistry, call: ToolCall,
                             on_suggestion: Optional[Callable[[ProofStateEdit], None]]) -> str:
    if call.error:
        return f"error: {call.error}"
    result = await tools.execute(call.name, call.arguments)
    logger.debug("Tool %s -> %.200s", call.name, result)
    if call.name == SUGGEST_TOOL and on_suggestion is not None and not result.startswith("error"):
        try:
            on_suggestion(ProofStateEdit.from_args(call.arguments))
        except Exception as e:
            logger.warning("on_suggestion failed: %s", e)
    return result


async def run_agent(session_ready: Optional[Awaitable], model: Optional[ModelBackend], prompt: str,
                    tools: ToolRegistry, on_chunk: OnChunk, on_done: Optional[OnDone] = None,
                    cancel: Optional[CancelToken] = None,
                    on_suggestion: Optional[Callable[[ProofStateEdit], None]] = None,
                    history: Iterable[ConversationMessage] = (),
                    on_history_update: Optional[Callable[[list[ConversationMessage]], None]] = None, *,
                    options: Optional[RequestOptions] = None, max_iterations: int = 10) -> None:
    """Run one agent turn. Never raises; every failure ends up as a chunk."""
    out = _Emitter(on_chunk, on_done, cancel)
    try:
        if model is None:
            out.chunk(NO_MODEL_MESSAGE)
            return
        if session_ready is None:
            out.chunk(CHECKER_NOT_READY_MESSAGE)
            return

        prior = list(history)
        options = options or RequestOptions()
        schemas = tools.schemas()
        messages = [ChatMessage("system", AGENT_SYSTEM_PROMPT)]
        messages += [ChatMessage(m.role, m.content) for m in prior]
        messages.append(ChatMessage("user", prompt))

        reply: list[str] = []
        try:
            for iteration in range(max_iterations):
                if out.cancelled:
                    logger.debug("Agent turn cancelled before request %d", iteration + 1)
                    break
                text, calls = await _consume(model.send_request(messages, options, cancel, schemas), out)
                reply.append(text)
                messages.append(ChatMessage("assistant", text, calls))
                if out.cancelled or not calls:
                    break
                for call in calls:
                    if out.cancelled:
                        break
                    result = await _resolve_tool_call(tools, call, on_suggestion)
                    messages.append(ChatMessage("tool", result, tool_call_id=call.id, name=call.name))
            else:
                note = f"\n\n_Stopped after {max_iterations} tool rounds without a final answer._"
                reply.append(note)
                out.chunk(note)
        except Exception as e:
            logger.warning("Model request failed: %s", e)
            out.chunk(f"{MODEL_ERROR_PREFIX}{e}")

        if on_history_update is not None:
            updated = prior + [
                ConversationMessage("user", prompt),
                ConversationMessage("assistant", "".join(reply)),
            ]
            try:
                on_history_update(updated)
            except Exception as e:
                logger.warning("on_history_update failed: %s", e)
    finally:
        out.done()


def format_goal_context(goal: ProofGoal, version: int) -> str:
    lines = [
        f"// Coq Proof State at Cursor Position (V: {version}):",
        f"// Goal: {pp_to_string(goal.ty)}",
        "",
        "--- HYPOTHESES ---",
    ]
    lines += [f"{', '.join(h.names)}: {pp_to_string(h.ty)}" for h in goal.hyps]
    lines.append("--------------------")
    return "\n".join(lines) + "\n"


async def stream_chat(session_ready: Optional[Awaitable], model: Optional[ModelBackend], prompt: str,
                      on_chunk: OnChunk, on_done: Optional[OnDone] = None,
                      cancel: Optional[CancelToken] = None, *,
                      editor: Optional[EditorView] = None,
                      options: Optional[RequestOptions] = None) -> None:
    """Answer with the focused goal as context, without tools."""
    out = _Emitter(on_chunk, on_done, cancel)
    try:
        if session_ready is None:
            out.chunk(CHECKER_NOT_READY_MESSAGE)
            return
        if not is_coq_editor(editor):
            out.chunk(NO_EDITOR_MESSAGE)
            return
        if model is None:
            out.chunk(NO_MODEL_MESSAGE)
            return

        goals = await session_ready
        spec = snapshot(editor)
        position = editor.cursor
        try:
            async with goals.sessions.session(spec):
                goal = await goals.get_first_goal_or_throw(position, spec.uri, spec.version)
            context = format_goal_context(goal, spec.version)
        except ProofAssistantError as e:
            context = f"// ERROR: Failed to retrieve proof state: {e.message}"

        messages = [
            ChatMessage("system", CHAT_SYSTEM_PROMPT),
            ChatMessage("user", f"--- COQ CODE CONTEXT ---\n```coq\n{context}\n```\n\n--- USER QUESTION ---\n{prompt}"),
        ]
        if out.cancelled:
            return
        try:
            await _consume(model.send_request(messages, options or RequestOptions(), cancel), out)
        except Exception as e:
            logger.warning("Model request failed: %s", e)
            out.chunk(f"{MODEL_ERROR_PREFIX}{e}")
    except Exception as e:
        logger.warning("Chat failed: %s", e)
        out.chunk(f"Unexpected error in chat: {e}")
    finally:
        out.done()
