"""Data model for proof-state queries.

Goals and hypotheses arrive from coq-lsp as JSON; the pretty-printed parts may
be plain strings or Coq ``Pp.t`` documents encoded as nested lists, e.g.::

    ["Pp_glue", [["Pp_string", "n"], ["Pp_print_break", 1, 0], ["Pp_string", "= n"]]]

``pp_to_string`` flattens either form into display text.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, Union

from coq_errors import (
    ClientUnavailable,
    ErrorKind,
    ModelUnavailable,
    NoGoals,
    ProofAssistantError,
    QueryFailed,
    SessionBusy,
    ToolExecutionFailed,
)

PpText = Union[str, list, tuple]


@dataclass(frozen=True)
class Position:
    """Zero-based position inside a document."""
    line: int
    character: int

    def to_json(self) -> dict:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_json(cls, data: dict) -> "Position":
        return cls(int(data["line"]), int(data["character"]))


@dataclass(frozen=True)
class DocumentSpec:
    """Exact snapshot of a document as known to the checker.

    ``text`` is the buffer content sent on open; identity is (uri, version).
    """
    uri: str
    version: int
    text: Optional[str] = field(default=None, compare=False, repr=False)


class SessionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


# =============================================================================
# Pretty-printing
# =============================================================================


def pp_to_string(pp: Any) -> str:
    """Render a PpText as display text. Never raises."""
    out: list[str] = []
    try:
        _render_pp(pp, out, vertical=False, indent=0)
    except RecursionError:
        return _pp_fallback(pp)
    return "".join(out)


def _int_arg(args: list, index: int) -> int:
    if len(args) > index and isinstance(args[index], int) and not isinstance(args[index], bool):
        return args[index]
    return 0


def _render_pp(pp: Any, out: list[str], vertical: bool, indent: int) -> None:
    if pp is None:
        return
    if isinstance(pp, str):
        out.append(pp)
        return
    if not isinstance(pp, (list, tuple)) or not pp or not isinstance(pp[0], str):
        out.append(_pp_fallback(pp))
        return

    tag, args = pp[0], list(pp[1:])

    if tag == "Pp_empty":
        return
    if tag == "Pp_string":
        out.append(args[0] if args and isinstance(args[0], str) else "")
    elif tag == "Pp_glue":
        items = args[0] if args and isinstance(args[0], (list, tuple)) else []
        for item in items:
            _render_pp(item, out, vertical, indent)
    elif tag == "Pp_box":
        box = args[0] if args else None
        inner = args[1] if len(args) > 1 else None
        is_vbox = isinstance(box, (list, tuple)) and bool(box) and box[0] == "Pp_vbox"
        offset = _int_arg(list(box[1:]), 0) if isinstance(box, (list, tuple)) else 0
        _render_pp(inner, out, is_vbox, indent + offset)
    elif tag == "Pp_tag":
        _render_pp(args[1] if len(args) > 1 else None, out, vertical, indent)
    elif tag == "Pp_print_break":
        if vertical:
            out.append("\n" + " " * (indent + _int_arg(args, 1)))
        else:
            out.append(" " * _int_arg(args, 0))
    elif tag == "Pp_force_newline":
        out.append("\n" + " " * indent)
    elif tag == "Pp_comment":
        words = args[0] if args and isinstance(args[0], (list, tuple)) else []
        out.append(" ".join(str(w) for w in words))
    else:
        out.append(_pp_fallback(pp))


def _pp_fallback(pp: Any) -> str:
    try:
        return json.dumps(pp, default=str)
    except (TypeError, ValueError, RecursionError):
        pass
    try:
        return repr(pp)
    except RecursionError:
        return f"<{type(pp).__name__}>"


# =============================================================================
# Goals
# =============================================================================


@dataclass(frozen=True)
class Hyp:
    """One hypothesis; co-typed names share an entry (``x, y : nat``)."""
    names: tuple[str, ...]
    ty: PpText
    def_: Optional[PpText] = None

    @classmethod
    def from_json(cls, data: dict) -> "Hyp":
        return cls(
            names=tuple(pp_to_string(n) for n in data.get("names", [])),
            ty=data.get("ty", ""),
            def_=data.get("def"),
        )

    def __str__(self) -> str:
        names = ", ".join(self.names)
        if self.def_ is not None:
            return f"{names} := {pp_to_string(self.def_)} : {pp_to_string(self.ty)}"
        return f"{names} : {pp_to_string(self.ty)}"

    def to_display(self) -> dict:
        return {
            "names": list(self.names),
            "ty": pp_to_string(self.ty),
            "def": pp_to_string(self.def_) if self.def_ is not None else None,
        }


@dataclass(frozen=True)
class ProofGoal:
    ty: PpText
    hyps: tuple[Hyp, ...] = ()

    @classmethod
    def from_json(cls, data: dict) -> "ProofGoal":
        return cls(
            ty=data.get("ty", ""),
            hyps=tuple(Hyp.from_json(h) for h in data.get("hyps", [])),
        )

    def to_display(self) -> dict:
        return {
            "ty": pp_to_string(self.ty),
            "hyps": [h.to_display() for h in self.hyps],
        }


@dataclass(frozen=True)
class GoalsWithMessages:
    """Outcome of one goal query. ``error`` may accompany non-empty goals."""
    goals: tuple[ProofGoal, ...] = ()
    messages: tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class Diagnostic:
    message: str
    severity: int = 1
    range: Optional[tuple[Position, Position]] = None

    @classmethod
    def from_json(cls, data: dict) -> "Diagnostic":
        rng = data.get("range")
        parsed = None
        if isinstance(rng, dict) and "start" in rng and "end" in rng:
            parsed = (Position.from_json(rng["start"]), Position.from_json(rng["end"]))
        return cls(
            message=pp_to_string(data.get("message", "")),
            severity=int(data.get("severity", 1)),
            range=parsed,
        )


# =============================================================================
# Query results
# =============================================================================

_ERROR_CLASSES = {
    ErrorKind.CLIENT_UNAVAILABLE: ClientUnavailable,
    ErrorKind.SESSION_BUSY: SessionBusy,
    ErrorKind.NO_GOALS: NoGoals,
    ErrorKind.QUERY_FAILED: QueryFailed,
    ErrorKind.TOOL_EXECUTION_FAILED: ToolExecutionFailed,
    ErrorKind.MODEL_UNAVAILABLE: ModelUnavailable,
}


@dataclass(frozen=True)
class QueryError:
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: ProofAssistantError) -> "QueryError":
        return cls(exc.kind, exc.message)

    def to_exception(self) -> ProofAssistantError:
        return _ERROR_CLASSES[self.kind](self.message)


@dataclass(frozen=True)
class QueryResult:
    """Tagged success/failure. Exactly one of ``value`` / ``error`` is set."""
    value: Optional[GoalsWithMessages] = None
    error: Optional[QueryError] = None

    @classmethod
    def success(cls, value: GoalsWithMessages) -> "QueryResult":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "QueryResult":
        return cls(error=QueryError(kind, message))

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> GoalsWithMessages:
        if self.error is not None:
            raise self.error.to_exception()
        return self.value


@dataclass(frozen=True)
class ConversationMessage:
    role: Literal["user", "assistant", "system"]
    content: str

    def to_json(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_json(cls, data: dict) -> "ConversationMessage":
        role = data.get("role")
        if role not in ("user", "assistant", "system"):
            raise ValueError(f"Invalid conversation role: {role!r}")
        return cls(role, str(data.get("content", "")))


class CancelToken:
    """Cooperative cancellation flag checked at loop boundaries."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
