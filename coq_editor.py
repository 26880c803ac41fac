"""Editor collaborator: what the assistant may read from and write to a buffer."""

import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from coq_types import DocumentSpec, Position

COQ_LANGUAGE_ID = "coq"


class EditorView(Protocol):
    """The active document as seen by the tools and the controller."""

    uri: str
    version: int
    cursor: Position
    language_id: str

    def text(self) -> str: ...

    async def insert_text(self, position: Position, text: str) -> bool: ...


def atomic_write(path: Path, content: str) -> None:
    """Write content to file atomically via temp file + rename."""
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=path.name)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        Path(tmp_path).replace(path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def snapshot(editor: EditorView) -> DocumentSpec:
    """Freeze the editor's buffer into a DocumentSpec for a session."""
    return DocumentSpec(editor.uri, editor.version, editor.text())


def is_coq_editor(editor: Optional[EditorView]) -> bool:
    return editor is not None and editor.language_id == COQ_LANGUAGE_ID


class FileEditor:
    """A .v file held in memory, with a cursor and a monotonically bumped version.

    Inserts are applied to the buffer and written back to disk.
    """

    def __init__(self, path: Path, cursor: Optional[Position] = None):
        self.path = Path(path).resolve()
        self.uri = self.path.as_uri()
        self.language_id = COQ_LANGUAGE_ID if self.path.suffix == ".v" else "plaintext"
        self.version = 1
        self.cursor = cursor or Position(0, 0)
        self._text = self.path.read_text()

    def text(self) -> str:
        return self._text

    def reload(self) -> None:
        """Re-read the file from disk (external edits)."""
        content = self.path.read_text()
        if content != self._text:
            self._text = content
            self.version += 1

    def set_cursor(self, line: int, character: int) -> Position:
        lines = self._text.split("\n")
        line = max(0, min(line, len(lines) - 1))
        character = max(0, min(character, len(lines[line])))
        self.cursor = Position(line, character)
        return self.cursor

    def offset_of(self, position: Position) -> int:
        lines = self._text.split("\n")
        if position.line >= len(lines):
            return len(self._text)
        start = sum(len(l) + 1 for l in lines[:position.line])
        return start + min(position.character, len(lines[position.line]))

    async def insert_text(self, position: Position, text: str) -> bool:
        offset = self.offset_of(position)
        self._text = self._text[:offset] + text + self._text[offset:]
        self.version += 1
        atomic_write(self.path, self._text)
        return True
