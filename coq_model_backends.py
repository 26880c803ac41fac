"""Language model backends behind one request interface.

Both backends turn a list of ChatMessage into an async iterator of response
parts (TextPart / ToolCallPart) that ends when the model's turn ends:

  - OpenAIBackend: streaming chat completions from any OpenAI-compatible
    endpoint; native tool calls are assembled from the streamed deltas.
  - ClaudeAgentBackend: one Claude Agent SDK exchange per request; built-in
    tools are denied and tool calls come back as text markers::

        <|tool_calls_begin|><|tool_call_begin|>name<|tool_sep|>{"arg": 1}<|tool_call_end|><|tool_calls_end|>
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol, Union

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    PermissionResultDeny,
    TextBlock,
)
from openai import AsyncOpenAI

from coq_errors import ModelUnavailable
from coq_types import CancelToken

logger = logging.getLogger(__name__)


# =============================================================================
# Request / response data model
# =============================================================================


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    raw_arguments: str = ""
    error: Optional[str] = None  # set when the arguments could not be decoded

    @classmethod
    def parse(cls, call_id: Optional[str], name: str, raw: str) -> "ToolCall":
        """Decode raw JSON arguments; a bad payload is kept as ``error``."""
        call_id = call_id or f"call_{uuid.uuid4().hex[:12]}"
        raw = raw or ""
        if not raw.strip():
            return cls(call_id, name, {}, raw)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            return cls(call_id, name, {}, raw, f"invalid JSON arguments for {name}: {e}")
        if not isinstance(value, dict):
            return cls(call_id, name, {}, raw, f"arguments for {name} must be a JSON object")
        return cls(call_id, name, value, raw)

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments or json.dumps(self.arguments)},
        }


@dataclass
class ChatMessage:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_openai(self) -> dict:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [c.to_openai() for c in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolCallPart:
    call: ToolCall


ResponsePart = Union[TextPart, ToolCallPart]


@dataclass(frozen=True)
class RequestOptions:
    """Passed through to the backend untouched."""
    model: Optional[str] = None
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None


class ModelBackend(Protocol):
    def send_request(self, messages: list[ChatMessage], options: RequestOptions,
                     cancel: Optional[CancelToken] = None,
                     tools: Optional[list[dict]] = None) -> AsyncIterator[ResponsePart]: ...


class BackendKind(Enum):
    OPENAI = "openai"
    CLAUDE_AGENT = "claude-agent"


# =============================================================================
# OpenAI-compatible streaming backend
# =============================================================================


class OpenAIBackend:
    """Streaming chat completions; tool calls are emitted after the text."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, *,
                 base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    def _payload(self, messages: list[ChatMessage], options: RequestOptions,
                 tools: Optional[list[dict]]) -> dict:
        payload: dict[str, Any] = {
            "model": options.model,
            "messages": [m.to_openai() for m in messages],
            "stream": True,
        }
        if options.max_output_tokens is not None:
            payload["max_tokens"] = options.max_output_tokens
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if tools:
            payload["tools"] = tools
        return payload

    async def send_request(self, messages: list[ChatMessage], options: RequestOptions,
                           cancel: Optional[CancelToken] = None,
                           tools: Optional[list[dict]] = None) -> AsyncIterator[ResponsePart]:
        if not options.model:
            raise ModelUnavailable("No model name configured for the OpenAI backend")
        logger.debug("Starting streamed chat completion via %s with %d message(s)",
                     options.model, len(messages))
        stream = await self.client.chat.completions.create(**self._payload(messages, options, tools))

        # index -> {"id", "name", "arguments"} accumulated across deltas
        pending: dict[int, dict] = {}
        try:
            async for chunk in stream:
                if cancel is not None and cancel.cancelled:
                    return
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    yield TextPart(delta.content)
                for tc in delta.tool_calls or []:
                    entry = pending.setdefault(tc.index, {"id": None, "name": "", "arguments": ""})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            entry["name"] += tc.function.name
                        if tc.function.arguments:
                            entry["arguments"] += tc.function.arguments
        finally:
            await stream.close()

        for index in sorted(pending):
            entry = pending[index]
            yield ToolCallPart(ToolCall.parse(entry["id"], entry["name"], entry["arguments"]))


# =============================================================================
# Claude Agent SDK backend (tool calls as text markers)
# =============================================================================

TOOL_CALLS_BEGIN = "<|tool_calls_begin|>"
TOOL_CALLS_END = "<|tool_calls_end|>"
TOOL_CALL_BEGIN = "<|tool_call_begin|>"
TOOL_CALL_END = "<|tool_call_end|>"
TOOL_SEP = "<|tool_sep|>"

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)(?:<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>|$)",
    re.IGNORECASE | re.DOTALL,
)
TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>"
    r"(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)
_BLOCK_START_RE = re.compile(r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin", re.IGNORECASE)

# Claude Code built-ins the model must not reach for
BUILTIN_TOOLS = ["Bash", "Read", "Write", "Edit", "Grep", "Glob", "WebFetch", "WebSearch",
                 "Task", "TodoRead", "TodoWrite", "NotebookEdit"]


def parse_embedded_tool_calls(text: str) -> list[ToolCall]:
    """Extract marker-delimited tool calls, in order of appearance."""
    calls = []
    for block in TOOL_CALLS_BLOCK_RE.finditer(text or ""):
        for entry in TOOL_CALL_ENTRY_RE.finditer(block.group("body") or ""):
            name = (entry.group("name") or "").strip().strip("\"'")
            call_id = f"parsed_{name}_{len(calls)}_{uuid.uuid4().hex[:8]}"
            calls.append(ToolCall.parse(call_id, name, (entry.group("args") or "").strip()))
    return calls


def strip_tool_markers(text: str) -> str:
    """Text visible to the user: everything before the first tool-call block."""
    match = _BLOCK_START_RE.search(text)
    return text[:match.start()] if match else text


def render_tool_instructions(tools: list[dict]) -> str:
    lines = [
        "## Tools",
        "You can call the tools below. To call tools, end your reply with exactly:",
        f"{TOOL_CALLS_BEGIN}{TOOL_CALL_BEGIN}tool_name{TOOL_SEP}{{\"arg\": \"value\"}}{TOOL_CALL_END}{TOOL_CALLS_END}",
        "Several calls may appear inside one block. Arguments must be a JSON object.",
        "Tool results arrive in the next message. Do not call any other tools.",
        "",
    ]
    for tool in tools:
        fn = tool.get("function", tool)
        lines.append(f"### {fn['name']}")
        lines.append(fn.get("description", ""))
        lines.append(f"Parameters: {json.dumps(fn.get('parameters', {}))}")
        lines.append("")
    return "\n".join(lines)


def render_transcript(messages: list[ChatMessage]) -> str:
    """Flatten non-system messages into one prompt for a fresh SDK session."""
    parts = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "user":
            parts.append(f"[USER]\n{msg.content}")
        elif msg.role == "assistant":
            text = msg.content
            if msg.tool_calls:
                entries = "".join(
                    f"{TOOL_CALL_BEGIN}{c.name}{TOOL_SEP}{c.raw_arguments or json.dumps(c.arguments)}{TOOL_CALL_END}"
                    for c in msg.tool_calls
                )
                text += f"{TOOL_CALLS_BEGIN}{entries}{TOOL_CALLS_END}"
            parts.append(f"[ASSISTANT]\n{text}")
        elif msg.role == "tool":
            parts.append(f"[TOOL RESULT {msg.name or ''} id={msg.tool_call_id}]\n{msg.content}")
    return "\n\n".join(parts)


async def deny_all_tools(tool_name: str, tool_input: dict, context) -> PermissionResultDeny:
    return PermissionResultDeny(message=f"{tool_name} is not available. Use the tool-call markers instead.")


class ClaudeAgentBackend:
    """Single-shot Claude Agent SDK exchange per request."""

    def __init__(self, cwd: Optional[str] = None, client_factory=ClaudeSDKClient):
        self.cwd = cwd
        self.client_factory = client_factory

    def _options(self, messages: list[ChatMessage], options: RequestOptions,
                 tools: Optional[list[dict]]) -> ClaudeAgentOptions:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        if tools:
            system = f"{system}\n\n{render_tool_instructions(tools)}" if system else render_tool_instructions(tools)
        return ClaudeAgentOptions(
            cwd=self.cwd,
            model=options.model,
            system_prompt=system or None,
            allowed_tools=[],
            disallowed_tools=BUILTIN_TOOLS,
            can_use_tool=deny_all_tools,
            max_turns=1,
        )

    async def send_request(self, messages: list[ChatMessage], options: RequestOptions,
                           cancel: Optional[CancelToken] = None,
                           tools: Optional[list[dict]] = None) -> AsyncIterator[ResponsePart]:
        opts = self._options(messages, options, tools)
        full_text = ""
        emitted = 0  # chars of visible text already yielded
        async with self.client_factory(opts) as client:
            await client.query(render_transcript(messages))
            async for message in client.receive_response():
                if cancel is not None and cancel.cancelled:
                    await client.interrupt()
                    return
                if not isinstance(message, AssistantMessage):
                    continue
                for block in message.content:
                    if not isinstance(block, TextBlock):
                        continue
                    full_text += block.text
                    visible = strip_tool_markers(full_text)
                    if len(visible) > emitted:
                        yield TextPart(visible[emitted:])
                        emitted = len(visible)

        for call in parse_embedded_tool_calls(full_text):
            yield ToolCallPart(call)


def create_backend(kind: BackendKind, **kwargs) -> ModelBackend:
    """Construct a backend from the closed set of kinds."""
    if kind is BackendKind.OPENAI:
        return OpenAIBackend(**kwargs)
    if kind is BackendKind.CLAUDE_AGENT:
        return ClaudeAgentBackend(**kwargs)
    raise ValueError(f"Unknown backend kind: {kind}")
