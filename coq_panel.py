"""Controller between the proof-state UI and the core.

Every inbound request ends in a terminal message: ``proofUpdate``, ``error``,
``noDocument`` or ``chatResponseDone``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from coq_agent import NO_MODEL_MESSAGE, CHECKER_NOT_READY_MESSAGE, run_agent, stream_chat
from coq_edit_history import EditHistoryLedger
from coq_editor import EditorView, is_coq_editor, snapshot
from coq_errors import ProofAssistantError
from coq_messages import (
    AgentRequest,
    ApplyTactic,
    Cancel,
    Chat,
    ChatResponseDone,
    ChatResponsePart,
    ErrorMessage,
    InvalidMessage,
    NoDocument,
    ProofUpdate,
    RequestUpdate,
    SuggestionChannel,
    SuggestionMessage,
    UpdateEditHistory,
    parse_ui_message,
)
from coq_model_backends import ModelBackend, RequestOptions
from coq_tools import create_proof_tools
from coq_types import CancelToken, ConversationMessage

logger = logging.getLogger(__name__)

PROOF_SCRIPT_KEYWORDS = (
    "theorem", "lemma", "name", "working on", "proof script",
    "what theorem", "what lemma", "theorem name", "lemma name",
)
PROOF_STATE_KEYWORDS = (
    "tactic", "what should", "how to", "suggest", "recommend",
    "what can", "help with", "current", "proof state", "goal",
    "hypothesis", "hypotheses", "here", "this proof",
)


def enhance_prompt_for_tools(prompt: str) -> str:
    """Nudge the model towards the tool that answers the question."""
    lower = prompt.lower()
    if any(k in lower for k in PROOF_SCRIPT_KEYWORDS):
        return (f"{prompt}\n\nNote: To answer this question accurately, you should use the "
                "get_current_proof_script tool to see the theorem name and proof script.")
    if any(k in lower for k in PROOF_STATE_KEYWORDS):
        return (f"{prompt}\n\nNote: To answer this question accurately, you should use the "
                "get_current_proof_state tool to see the current goals and hypotheses.")
    return prompt


class ProofStatePanel:
    """Owns the edit ledger and the conversation history for one UI."""

    def __init__(self, session_ready: Optional[Awaitable], channel: SuggestionChannel,
                 editor_provider: Callable[[], Optional[EditorView]],
                 model_provider: Callable[[], Optional[ModelBackend]], *,
                 ledger: Optional[EditHistoryLedger] = None,
                 history: Optional[list[ConversationMessage]] = None,
                 max_iterations: int = 10,
                 options: Optional[RequestOptions] = None):
        self.session_ready = session_ready
        self.channel = channel
        self.editor_provider = editor_provider
        self.model_provider = model_provider
        self.ledger = ledger if ledger is not None else EditHistoryLedger()
        self.history: list[ConversationMessage] = list(history or [])
        self.max_iterations = max_iterations
        self.options = options
        self._turn_lock = asyncio.Lock()
        self._cancel: Optional[CancelToken] = None

    async def handle_message(self, payload) -> None:
        try:
            message = parse_ui_message(payload)
        except InvalidMessage as e:
            self.channel.post(ErrorMessage(str(e)))
            return

        try:
            if isinstance(message, RequestUpdate):
                await self.update_proof_state()
            elif isinstance(message, ApplyTactic):
                await self.apply_tactic(message.tactic)
            elif isinstance(message, Chat):
                await self.chat(message.prompt)
            elif isinstance(message, AgentRequest):
                await self.agent_request(message.lhs, message.rhs)
            elif isinstance(message, UpdateEditHistory):
                self.update_edit_history(message.lhs, message.rhs, message.timestamp)
            elif isinstance(message, Cancel):
                self.cancel_turn()
        except Exception as e:
            logger.exception("Handling %s failed", type(message).__name__)
            if isinstance(message, (Chat, AgentRequest)):
                self.channel.post(ChatResponseDone())
            else:
                self.channel.post(ErrorMessage(str(e)))

    # -------------------------------------------------------------------------
    # Proof state
    # -------------------------------------------------------------------------

    async def update_proof_state(self) -> None:
        editor = self.editor_provider()
        if not is_coq_editor(editor):
            self.channel.post(NoDocument())
            return
        await self._query_and_post(editor, None)

    async def apply_tactic(self, tactic: str) -> None:
        editor = self.editor_provider()
        if not is_coq_editor(editor):
            self.channel.post(ErrorMessage("Open a Coq document and place cursor inside a proof"))
            return
        await self._query_and_post(editor, tactic)

    async def _query_and_post(self, editor: EditorView, command: Optional[str]) -> None:
        if self.session_ready is None:
            self.channel.post(ErrorMessage(CHECKER_NOT_READY_MESSAGE))
            return
        try:
            goals = await self.session_ready
            position = editor.cursor
            spec = snapshot(editor)
            async with goals.sessions.session(spec):
                result = await goals.query_at(position, spec.uri, spec.version, command)
        except ProofAssistantError as e:
            self.channel.post(ErrorMessage(e.message))
            return

        if not result.ok:
            self.channel.post(ErrorMessage(result.error.message))
            return
        value = result.value
        self.channel.post(ProofUpdate(
            goals=[g.to_display() for g in value.goals],
            messages=list(value.messages),
            error=value.error,
        ))

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    def _post_part(self, text: str) -> None:
        self.channel.post(ChatResponsePart(text))

    def _post_done(self) -> None:
        self.channel.post(ChatResponseDone())

    def _set_history(self, history: list[ConversationMessage]) -> None:
        self.history = history

    def _post_suggestion(self, edit) -> None:
        self.channel.post(SuggestionMessage(edit.to_dict()))

    def cancel_turn(self) -> None:
        """Stop the running chat turn at its next safe point."""
        if self._cancel is not None:
            self._cancel.cancel()

    async def chat(self, prompt: str) -> None:
        # One turn at a time per conversation; later prompts queue here
        async with self._turn_lock:
            model = self.model_provider()
            if model is None:
                self._post_part(NO_MODEL_MESSAGE)
                self._post_done()
                return

            self._cancel = CancelToken()
            editor = self.editor_provider()
            try:
                if not is_coq_editor(editor):
                    await stream_chat(self.session_ready, model, prompt, self._post_part, self._post_done,
                                      self._cancel, editor=editor, options=self.options)
                    return

                tools = create_proof_tools(self.session_ready, editor, self.ledger)
                await run_agent(
                    self.session_ready, model, enhance_prompt_for_tools(prompt), tools,
                    self._post_part, self._post_done, self._cancel,
                    on_suggestion=self._post_suggestion,
                    history=self.history,
                    on_history_update=self._set_history,
                    options=self.options,
                    max_iterations=self.max_iterations,
                )
            finally:
                self._cancel = None

    # -------------------------------------------------------------------------
    # Edits
    # -------------------------------------------------------------------------

    def update_edit_history(self, lhs: str, rhs: str, timestamp: Optional[int] = None) -> bool:
        if not lhs or not rhs:
            return False
        added = self.ledger.append(lhs, rhs, timestamp)
        if added:
            logger.debug("Edit history updated: %d edits", len(self.ledger))
        return added

    async def agent_request(self, lhs: str, rhs: str) -> None:
        """Check ``lhs = rhs`` in the current context and insert it if valid."""
        try:
            editor = self.editor_provider()
            if not is_coq_editor(editor):
                self._post_part("Error: The Coq file for this proof state is no longer visible.")
                return
            if self.session_ready is None:
                self._post_part(CHECKER_NOT_READY_MESSAGE)
                return

            lhs, rhs = lhs.strip(), rhs.strip()
            self.ledger.append(lhs, rhs)
            assertion = f"assert (({lhs}) = ({rhs}))."
            self._post_part(f"_Synthesizing equality check for:_\n`{lhs}` replaced by `{rhs}`\n\n")

            tools = create_proof_tools(self.session_ready, editor, self.ledger)
            check = await tools.execute("check_term_validity", {"term": assertion})
            if check != "valid":
                self._post_part(f"**Validation Failed:**\nThe term `{assertion}` is not valid in the "
                                f"current context.\n\n_Reason: {check}_")
                return

            if await editor.insert_text(editor.cursor, assertion + "\n"):
                self._post_part(f"**Verified and Inserted:**\n```coq\n{assertion}\n```")
            else:
                self._post_part("Error: failed to edit document")
        except Exception as e:
            logger.warning("Agent request failed: %s", e)
            self._post_part(f"Error executing Coq tools: {e}")
        finally:
            self._post_done()
