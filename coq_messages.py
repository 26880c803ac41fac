"""Messages exchanged with the proof-state UI.

Outbound (core -> UI) messages are fire-and-forget and carry a ``type``;
inbound (UI -> core) messages carry a ``command``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class InvalidMessage(ValueError):
    """Inbound payload that does not match the protocol."""


# =============================================================================
# Outbound
# =============================================================================


@dataclass(frozen=True)
class NoDocument:
    def to_dict(self) -> dict:
        return {"type": "noDocument"}


@dataclass(frozen=True)
class ErrorMessage:
    message: str

    def to_dict(self) -> dict:
        return {"type": "error", "message": self.message}


@dataclass(frozen=True)
class ProofUpdate:
    goals: list[dict] = field(default_factory=list)  # display-ready (strings only)
    messages: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"type": "proofUpdate", "goals": self.goals, "messages": self.messages, "error": self.error}


@dataclass(frozen=True)
class ChatResponsePart:
    text: str

    def to_dict(self) -> dict:
        return {"type": "chatResponsePart", "text": self.text}


@dataclass(frozen=True)
class ChatResponseDone:
    def to_dict(self) -> dict:
        return {"type": "chatResponseDone"}


@dataclass(frozen=True)
class SuggestionMessage:
    suggestion: dict

    def to_dict(self) -> dict:
        return {"type": "suggestion", "suggestion": self.suggestion}


OutboundMessage = Union[NoDocument, ErrorMessage, ProofUpdate, ChatResponsePart, ChatResponseDone, SuggestionMessage]


class SuggestionChannel:
    """One-way channel to the UI. ``post`` never raises."""

    def __init__(self, sink: Callable[[dict], Any]):
        self.sink = sink

    def post(self, message: OutboundMessage) -> None:
        try:
            self.sink(message.to_dict())
        except Exception as e:
            logger.warning("Failed to post %s: %s", type(message).__name__, e)


# =============================================================================
# Inbound
# =============================================================================


@dataclass(frozen=True)
class RequestUpdate:
    pass


@dataclass(frozen=True)
class ApplyTactic:
    tactic: str


@dataclass(frozen=True)
class Chat:
    prompt: str


@dataclass(frozen=True)
class AgentRequest:
    lhs: str
    rhs: str


@dataclass(frozen=True)
class UpdateEditHistory:
    lhs: str
    rhs: str
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class Cancel:
    pass


InboundMessage = Union[RequestUpdate, ApplyTactic, Chat, AgentRequest, UpdateEditHistory, Cancel]


def _require_str(payload: dict, key: str, where: str = "message") -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise InvalidMessage(f"{where} requires a string '{key}'")
    return value


def _require_obj(payload: dict, key: str) -> dict:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise InvalidMessage(f"message requires an object '{key}'")
    return value


def parse_ui_message(payload: Any) -> InboundMessage:
    """Validate a raw UI payload into a typed inbound message."""
    if not isinstance(payload, dict):
        raise InvalidMessage("message must be an object")
    command = payload.get("command")

    if command == "requestUpdate":
        return RequestUpdate()
    if command == "applyTactic":
        return ApplyTactic(_require_str(payload, "tactic", command))
    if command == "chat":
        return Chat(_require_str(payload, "prompt", command))
    if command == "agentRequest":
        context = _require_obj(payload, "context")
        return AgentRequest(_require_str(context, "lhs", command), _require_str(context, "rhs", command))
    if command == "updateEditHistory":
        edit = _require_obj(payload, "edit")
        timestamp = edit.get("timestamp")
        if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, (int, float))):
            raise InvalidMessage("updateEditHistory timestamp must be a number")
        return UpdateEditHistory(
            _require_str(edit, "lhs", command),
            _require_str(edit, "rhs", command),
            int(timestamp) if timestamp is not None else None,
        )
    if command == "cancel":
        return Cancel()
    raise InvalidMessage(f"Unknown command: {command!r}")
