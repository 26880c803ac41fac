#!/usr/bin/env python3
"""Coq proof assistant: composition root and command line.

Wires the coq-lsp client, the session and goal services, a model backend and
the proof-state controller around one .v file.

Usage:
    python coq_assistant.py FILE [--line N --col N] [--prompt "..."]
    python coq_assistant.py FILE --ui-stdio        # JSON-lines UI protocol

Interactive commands:
    :goals              show the proof state at the cursor
    :tactic TAC         run TAC speculatively at the cursor
    :cursor LINE COL    move the cursor (1-based)
    :edit LHS => RHS    check LHS = RHS and insert the assertion if valid
    :reload             re-read the file from disk
    :history            show accepted edits
    :quit
    anything else       chat with the agent

Ctrl-C during a chat turn cancels the turn. In --ui-stdio mode a
{"command": "cancel"} line does the same.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from openai import OpenAIError

from coq_edit_history import EditHistoryLedger
from coq_editor import FileEditor
from coq_errors import ClientUnavailable
from coq_goals import GoalQueryService
from coq_lsp_client import COQ_LSP_PATH, CoqLspClient
from coq_messages import SuggestionChannel
from coq_model_backends import BackendKind, ModelBackend, RequestOptions, create_backend
from coq_panel import ProofStatePanel
from coq_session import DocumentSessionManager
from coq_tools import format_edit_history
from coq_types import ConversationMessage, pp_to_string

logger = logging.getLogger(__name__)

# Commands that run a chat turn and can be cancelled
TURN_COMMANDS = ("chat", "agentRequest")


# =============================================================================
# Configuration
# =============================================================================


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    return float(value) if value else None


@dataclass
class AssistantConfig:
    """Configuration for the Coq assistant."""
    working_dir: str
    coq_lsp: str = COQ_LSP_PATH
    backend: str = field(default_factory=lambda: os.environ.get("COQ_ASSISTANT_BACKEND", "claude-agent"))
    model: Optional[str] = field(default_factory=lambda: os.environ.get("COQ_ASSISTANT_MODEL"))
    max_iterations: int = 10
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = field(default_factory=lambda: _env_float("COQ_ASSISTANT_TEMPERATURE"))
    ready_timeout: float = 120
    busy_policy: str = "queue"
    fresh: bool = False

    @property
    def state_path(self) -> str:
        return os.path.join(self.working_dir, ".coq_agents", "state.json")

    @property
    def backend_kind(self) -> BackendKind:
        return BackendKind(self.backend)

    def request_options(self) -> RequestOptions:
        return RequestOptions(self.model, self.max_output_tokens, self.temperature)


@dataclass
class AssistantState:
    """Conversation and edit history persisted between runs."""
    path: str
    history: list[ConversationMessage] = field(default_factory=list)
    edits: list[dict] = field(default_factory=list)

    def save(self) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump({
                "history": [m.to_json() for m in self.history],
                "edits": self.edits,
            }, f)

    @classmethod
    def load(cls, path: str) -> "AssistantState":
        try:
            with open(path) as f:
                data = json.load(f)
            history = [ConversationMessage.from_json(m) for m in data.get("history", [])]
            edits = list(data.get("edits", []))
        except (OSError, ValueError, KeyError, AttributeError, TypeError):
            return cls(path=path)
        valid = [e for e in edits if _is_edit(e)]
        if len(valid) != len(edits):
            logger.warning("Dropped %d malformed edit(s) from %s", len(edits) - len(valid), path)
        return cls(path=path, history=history, edits=valid)


def _is_edit(entry) -> bool:
    return (isinstance(entry, dict)
            and isinstance(entry.get("lhs"), str)
            and isinstance(entry.get("rhs"), str)
            and (entry.get("timestamp") is None or isinstance(entry["timestamp"], (int, float))))


# =============================================================================
# Composition root
# =============================================================================


class Assistant:
    """Owns the checker process and the services built on it."""

    def __init__(self, config: AssistantConfig, checker=None, backend: Optional[ModelBackend] = None):
        self.config = config
        self.checker = checker or CoqLspClient(config.working_dir, config.coq_lsp,
                                               ready_timeout=config.ready_timeout)
        self.sessions = DocumentSessionManager(self.checker, config.busy_policy)
        self.goals = GoalQueryService(self.sessions)
        self._backend = backend
        self.session_ready: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        """Start the checker in the background; the task resolves to the GoalQueryService."""
        if self.session_ready is None:
            self.session_ready = asyncio.create_task(self._start_checker())
        return self.session_ready

    async def _start_checker(self) -> GoalQueryService:
        try:
            status = await self.checker.start()
        except (OSError, asyncio.TimeoutError) as e:
            raise ClientUnavailable(f"Failed to start coq-lsp ({self.config.coq_lsp}): {e}") from e
        logger.info(status)
        return self.goals

    def model(self) -> Optional[ModelBackend]:
        """The configured backend, or None when no model can be used."""
        if self._backend is not None:
            return self._backend
        kind = self.config.backend_kind
        if kind is BackendKind.OPENAI and not self.config.model:
            return None
        try:
            if kind is BackendKind.CLAUDE_AGENT:
                self._backend = create_backend(kind, cwd=self.config.working_dir)
            else:
                self._backend = create_backend(kind)
        except OpenAIError as e:
            logger.warning("Model backend unavailable: %s", e)
            return None
        return self._backend

    def panel(self, editor: FileEditor, channel: SuggestionChannel,
              state: Optional[AssistantState] = None) -> ProofStatePanel:
        return ProofStatePanel(
            self.start(), channel, lambda: editor, self.model,
            ledger=EditHistoryLedger.from_list(state.edits) if state else None,
            history=state.history if state else None,
            max_iterations=self.config.max_iterations,
            options=self.config.request_options(),
        )

    async def close(self) -> None:
        if self.session_ready is not None and not self.session_ready.done():
            self.session_ready.cancel()
        await self.checker.stop()

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# =============================================================================
# Console presentation
# =============================================================================


def print_ui_message(message: dict) -> None:
    """Render one outbound UI message on the terminal."""
    kind = message.get("type")
    if kind == "chatResponsePart":
        print(message["text"], end="", flush=True)
    elif kind == "chatResponseDone":
        print("\n[DONE]")
    elif kind == "noDocument":
        print("[NO DOCUMENT] Open a .v file")
    elif kind == "error":
        print(f"[ERROR] {message['message']}")
    elif kind == "suggestion":
        s = message["suggestion"]
        print(f"\n[SUGGESTION] {s['hypothesisName']}: {s['originalValue']} => {s['suggestedValue']}")
        if s.get("reason"):
            print(f"  reason: {s['reason']}")
    elif kind == "proofUpdate":
        goals = message["goals"]
        if not goals:
            print("[GOALS] none")
        for i, goal in enumerate(goals, 1):
            print(f"[GOAL {i}/{len(goals)}]")
            for hyp in goal["hyps"]:
                names = ", ".join(hyp["names"])
                body = f" := {hyp['def']}" if hyp.get("def") else ""
                print(f"  {names}{body} : {hyp['ty']}")
            print("  " + "-" * 30)
            print(f"  {goal['ty']}")
        for msg in message.get("messages") or []:
            print(f"[MSG] {pp_to_string(msg)}")
        if message.get("error"):
            print(f"[ERROR] {message['error']}")


def parse_command(line: str) -> Optional[dict]:
    """Map an interactive input line to a UI payload (None for local commands)."""
    line = line.strip()
    if not line:
        return None
    if line == ":goals":
        return {"command": "requestUpdate"}
    if line.startswith(":tactic "):
        return {"command": "applyTactic", "tactic": line[len(":tactic "):].strip()}
    if line.startswith(":edit "):
        lhs, sep, rhs = line[len(":edit "):].partition("=>")
        if not sep:
            raise ValueError("usage: :edit LHS => RHS")
        return {"command": "agentRequest", "context": {"lhs": lhs.strip(), "rhs": rhs.strip()}}
    if line.startswith(":"):
        return None
    return {"command": "chat", "prompt": line}


async def _read_line() -> str:
    return await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)


def _save(state: AssistantState, panel: ProofStatePanel) -> None:
    state.history = panel.history
    state.edits = panel.ledger.to_list()
    state.save()


def _interrupt(panel: ProofStatePanel) -> None:
    print("\n[CANCEL]", flush=True)
    panel.cancel_turn()


async def _run_turn(panel: ProofStatePanel, payload: dict) -> None:
    """Handle one payload; Ctrl-C while it runs cancels the chat turn instead of the program."""
    loop = asyncio.get_running_loop()
    previous = signal.getsignal(signal.SIGINT)
    try:
        loop.add_signal_handler(signal.SIGINT, _interrupt, panel)
    except (NotImplementedError, RuntimeError):
        # No signal support here (Windows loop, or not the main thread)
        await panel.handle_message(payload)
        return
    try:
        await panel.handle_message(payload)
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


async def run_interactive(assistant: Assistant, editor: FileEditor, state: AssistantState,
                          prompt: Optional[str] = None) -> None:
    panel = assistant.panel(editor, SuggestionChannel(print_ui_message), state)

    if prompt is not None:
        await _run_turn(panel, {"command": "chat", "prompt": prompt})
        _save(state, panel)
        return

    await panel.handle_message({"command": "requestUpdate"})
    while True:
        print(f"\n[{editor.path.name}:{editor.cursor.line + 1}:{editor.cursor.character + 1}]> ",
              end="", flush=True)
        line = await _read_line()
        if not line:
            break
        line = line.strip()
        if line in (":quit", ":q"):
            break
        if line.startswith(":cursor "):
            try:
                ln, col = (int(x) for x in line.split()[1:3])
            except ValueError:
                print("[ERROR] usage: :cursor LINE COL")
                continue
            editor.set_cursor(ln - 1, col - 1)
            await panel.handle_message({"command": "requestUpdate"})
            continue
        if line == ":reload":
            editor.reload()
            print(f"[RELOAD] version {editor.version}")
            continue
        if line == ":history":
            print(format_edit_history(panel.ledger))
            continue
        try:
            payload = parse_command(line)
        except ValueError as e:
            print(f"[ERROR] {e}")
            continue
        if payload is None:
            if line:
                print(f"[ERROR] Unknown command: {line}")
            continue
        if payload["command"] in TURN_COMMANDS:
            await _run_turn(panel, payload)
        else:
            await panel.handle_message(payload)
        _save(state, panel)


async def run_ui_stdio(assistant: Assistant, editor: FileEditor, state: AssistantState,
                       read_line=_read_line) -> None:
    """JSON-lines transport: one UI payload per input line, one message per output line.

    Chat turns run in the background so input keeps being read while they
    stream; a ``{"command": "cancel"}`` line stops the running turn.
    """

    def sink(message: dict) -> None:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()

    panel = assistant.panel(editor, SuggestionChannel(sink), state)
    turns: set[asyncio.Task] = set()

    def turn_done(task: asyncio.Task) -> None:
        turns.discard(task)
        _save(state, panel)

    while True:
        line = await read_line()
        if not line:
            break
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            sink({"type": "error", "message": f"Invalid JSON: {e}"})
            continue
        if isinstance(payload, dict) and payload.get("command") == "setCursor":
            editor.set_cursor(int(payload.get("line", 0)), int(payload.get("character", 0)))
            payload = {"command": "requestUpdate"}
        if isinstance(payload, dict) and payload.get("command") in TURN_COMMANDS:
            task = asyncio.create_task(panel.handle_message(payload))
            turns.add(task)
            task.add_done_callback(turn_done)
            continue
        await panel.handle_message(payload)
        _save(state, panel)

    if turns:
        await asyncio.gather(*turns)


async def amain(config: AssistantConfig, file: Path, line: int, col: int,
                prompt: Optional[str], ui_stdio: bool) -> None:
    if config.fresh and os.path.exists(config.state_path):
        os.remove(config.state_path)
    state = AssistantState.load(config.state_path)

    editor = FileEditor(file)
    editor.set_cursor(line, col)

    async with Assistant(config) as assistant:
        if ui_stdio:
            await run_ui_stdio(assistant, editor, state)
        else:
            await run_interactive(assistant, editor, state, prompt)


def main():
    parser = argparse.ArgumentParser(description="Coq proof assistant")
    parser.add_argument("file", help="Coq source file (.v)")
    parser.add_argument("--line", type=int, default=1, help="Cursor line (1-based)")
    parser.add_argument("--col", type=int, default=1, help="Cursor column (1-based)")
    parser.add_argument("--prompt", "-p", help="Run one chat turn and exit")
    parser.add_argument("--backend", "-b", choices=[k.value for k in BackendKind],
                        default=os.environ.get("COQ_ASSISTANT_BACKEND", "claude-agent"))
    parser.add_argument("--model", "-m", default=os.environ.get("COQ_ASSISTANT_MODEL"))
    parser.add_argument("--coq-lsp", default=COQ_LSP_PATH, help="coq-lsp executable")
    parser.add_argument("--max-iterations", type=int, default=10, help="Tool rounds per chat turn")
    parser.add_argument("--max-tokens", type=int, help="Max output tokens per model request")
    parser.add_argument("--fresh", action="store_true", help="Discard saved history")
    parser.add_argument("--ui-stdio", action="store_true", help="Speak the JSON-lines UI protocol on stdio")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

    file = Path(args.file).resolve()
    if not file.exists():
        print(f"ERROR: File not found: {args.file}", file=sys.stderr)
        sys.exit(1)

    config = AssistantConfig(
        working_dir=str(file.parent),
        coq_lsp=args.coq_lsp,
        backend=args.backend,
        model=args.model,
        max_iterations=args.max_iterations,
        max_output_tokens=args.max_tokens,
        fresh=args.fresh,
    )

    if not args.ui_stdio:
        print("=" * 60)
        print("Coq Proof Assistant")
        print("=" * 60)
        print(f"File: {file}")
        print(f"Backend: {config.backend} ({config.model or 'default model'})")
        print(f"Checker: {config.coq_lsp}")
        print("=" * 60)

    try:
        asyncio.run(amain(config, file, args.line - 1, args.col - 1, args.prompt, args.ui_stdio))
    except KeyboardInterrupt:
        print("\n[STOPPED]")
        sys.exit(2)


if __name__ == "__main__":
    main()
