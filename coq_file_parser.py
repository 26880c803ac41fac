"""Parse Coq vernacular files for theorem and proof structure."""

import bisect
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from coq_lsp_client import uri_to_path
from coq_types import CancelToken, DocumentSpec, Position, ProofGoal

logger = logging.getLogger(__name__)

THEOREM_KINDS = (
    "Theorem", "Lemma", "Fact", "Remark", "Corollary", "Proposition", "Property", "Example",
)
PROOF_END_KEYWORDS = ("Qed", "Defined", "Admitted", "Abort")

_HEADER_RE = re.compile(
    r"^(?:(?:Local|Global|Polymorphic|Program)\s+)*(" + "|".join(THEOREM_KINDS) + r")\s+([A-Za-z_][\w']*)"
)
_PROOF_START_RE = re.compile(r"^Proof\b")
_PROOF_END_RE = re.compile(r"^(" + "|".join(PROOF_END_KEYWORDS) + r")\b")


@dataclass
class ProofStep:
    text: str
    range: tuple[Position, Position]


@dataclass
class ProofInfo:
    """Proof body between ``Proof.`` and its terminal keyword."""
    proof_steps: list[ProofStep]
    start_pos: Position  # start of "Proof" (or of the first step)
    end_pos: Position  # end of the terminal sentence
    is_complete: bool  # closed by Qed/Defined (not Admitted/Abort/missing)

    def only_text(self) -> str:
        """Steps without ``Proof.`` and the terminator; steps sharing a line stay on it."""
        out: list[str] = []
        prev_line = None
        for step in self.proof_steps:
            if out:
                out.append(" " if step.range[0].line == prev_line else "\n")
            out.append(step.text)
            prev_line = step.range[1].line
        return "".join(out)

    def contains(self, pos: Position) -> bool:
        """Line comparison first, column only on the boundary lines."""
        if pos.line < self.start_pos.line or pos.line > self.end_pos.line:
            return False
        if pos.line == self.start_pos.line and pos.character < self.start_pos.character:
            return False
        if pos.line == self.end_pos.line and pos.character > self.end_pos.character:
            return False
        return True


@dataclass
class TheoremInfo:
    """A theorem-like declaration in a Coq file."""
    name: str
    kind: str  # "Theorem", "Lemma", ...
    statement: str  # text after the name, without the final period
    start_pos: Position
    proof: Optional[ProofInfo] = None
    initial_goal: Optional[ProofGoal] = field(default=None, compare=False)


def mask_comments(content: str) -> str:
    """Blank out (nested) comments and string literals, keeping offsets and newlines."""
    out = list(content)
    depth = 0
    in_string = False
    i = 0
    while i < len(content):
        two = content[i:i + 2]
        if in_string:
            if content[i] == '"':
                if two == '""':  # escaped quote
                    out[i] = out[i + 1] = " "
                    i += 2
                    continue
                in_string = False
            elif content[i] != "\n":
                out[i] = " "
            i += 1
        elif two == "(*":
            depth += 1
            out[i] = out[i + 1] = " "
            i += 2
        elif two == "*)" and depth > 0:
            depth -= 1
            out[i] = out[i + 1] = " "
            i += 2
        elif depth > 0:
            if content[i] != "\n":
                out[i] = " "
            i += 1
        elif content[i] == '"':
            in_string = True
            i += 1
        else:
            i += 1
    return "".join(out)


def split_sentences(masked: str) -> list[tuple[int, int]]:
    """Return [start, end) offsets of vernacular sentences.

    A sentence ends at a period followed by whitespace or end of input.
    Bullets (-, +, *) and focusing braces count as sentences of their own.
    """
    spans = []
    n = len(masked)
    i = 0
    while i < n:
        while i < n and masked[i].isspace():
            i += 1
        if i >= n:
            break
        c = masked[i]
        if c in "{}":
            spans.append((i, i + 1))
            i += 1
            continue
        if c in "-+*":
            j = i
            while j < n and masked[j] == c:
                j += 1
            if j >= n or masked[j].isspace():
                spans.append((i, j))
                i = j
                continue
        start = i
        while i < n:
            if masked[i] == "." and (i + 1 == n or masked[i + 1].isspace()):
                i += 1
                break
            i += 1
        spans.append((start, i))
    return spans


class _Offsets:
    def __init__(self, content: str):
        self.line_starts = [0] + [m.end() for m in re.finditer("\n", content)]

    def position(self, offset: int) -> Position:
        line = bisect.bisect_right(self.line_starts, offset) - 1
        return Position(line, offset - self.line_starts[line])


def parse_theorems(content: str) -> list[TheoremInfo]:
    """Parse .v file content, return all theorem-like declarations in order."""
    masked = mask_comments(content)
    spans = split_sentences(masked)
    offsets = _Offsets(content)
    theorems = []

    idx = 0
    while idx < len(spans):
        start, end = spans[idx]
        header = _HEADER_RE.match(masked[start:end])
        idx += 1
        if not header:
            continue

        kind, name = header.group(1), header.group(2)
        body_start = start + header.end()
        body_end = end - 1 if masked[end - 1] == "." else end
        term_at = masked.find(":=", body_start, body_end)
        statement = content[body_start:term_at if term_at >= 0 else body_end].strip()
        if statement.startswith(":"):
            statement = statement[1:].strip()

        thm = TheoremInfo(name=name, kind=kind, statement=statement,
                          start_pos=offsets.position(start))
        theorems.append(thm)
        if term_at >= 0:
            continue  # term given directly, no proof script

        proof_start = None
        steps = []
        proof_end = None
        is_complete = False
        while idx < len(spans):
            s, e = spans[idx]
            sentence = masked[s:e]
            if _HEADER_RE.match(sentence):
                break
            idx += 1
            if proof_start is None:
                proof_start = s
                if _PROOF_START_RE.match(sentence):
                    continue
            end_match = _PROOF_END_RE.match(sentence)
            if end_match:
                proof_end = e
                is_complete = end_match.group(1) in ("Qed", "Defined")
                break
            steps.append(ProofStep(content[s:e], (offsets.position(s), offsets.position(e))))

        if proof_start is None:
            continue
        if proof_end is None:
            # Unterminated: runs to the last sentence consumed
            proof_end = spans[idx - 1][1]
        thm.proof = ProofInfo(steps, offsets.position(proof_start), offsets.position(proof_end), is_complete)

    return theorems


def find_theorem_at(theorems: list[TheoremInfo], pos: Position) -> Optional[TheoremInfo]:
    """Theorem whose proof range contains ``pos``."""
    for thm in theorems:
        if thm.proof and thm.proof.contains(pos):
            return thm
    return None


async def parse_document(spec: DocumentSpec, cancel: Optional[CancelToken] = None,
                         extract_initial_goals: bool = False, goals=None) -> list[TheoremInfo]:
    """Parse a document snapshot; optionally attach each proof's initial goal.

    Initial goals need a GoalQueryService (``goals``); they are read inside a
    single session at the start of each proof.
    """
    content = spec.text if spec.text is not None else uri_to_path(spec.uri).read_text()
    theorems = parse_theorems(content)
    if not extract_initial_goals:
        return theorems
    if goals is None:
        raise ValueError("extract_initial_goals requires a goal query service")

    async with goals.sessions.session(spec):
        for thm in theorems:
            if cancel is not None and cancel.cancelled:
                logger.debug("Initial goal extraction cancelled at %s", thm.name)
                break
            if thm.proof is None:
                continue
            anchor = thm.proof.proof_steps[0].range[0] if thm.proof.proof_steps else thm.proof.end_pos
            result = await goals.query_at(anchor, spec.uri, spec.version)
            if result.ok and result.value.goals:
                thm.initial_goal = result.value.goals[0]
    return theorems
