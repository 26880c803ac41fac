"""Tests for the file-backed editor."""

from coq_editor import FileEditor, is_coq_editor, snapshot
from coq_types import Position

from conftest import FakeEditor


def test_file_editor_basics(tmp_path):
    path = tmp_path / "A.v"
    path.write_text("Lemma a : True.\nProof.\n")
    editor = FileEditor(path)
    assert editor.uri == path.resolve().as_uri()
    assert is_coq_editor(editor)
    assert editor.cursor == Position(0, 0)
    spec = snapshot(editor)
    assert (spec.uri, spec.version, spec.text) == (editor.uri, 1, "Lemma a : True.\nProof.\n")


def test_non_coq_file(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("")
    assert not is_coq_editor(FileEditor(path))
    assert not is_coq_editor(None)
    assert not is_coq_editor(FakeEditor(language_id="plaintext"))


def test_set_cursor_clamps(tmp_path):
    path = tmp_path / "A.v"
    path.write_text("abc\nde")
    editor = FileEditor(path)
    assert editor.set_cursor(5, 9) == Position(1, 2)
    assert editor.set_cursor(-1, -1) == Position(0, 0)


async def test_insert_text_writes_and_bumps_version(tmp_path):
    path = tmp_path / "A.v"
    path.write_text("Proof.\n  auto.\nQed.\n")
    editor = FileEditor(path)
    assert await editor.insert_text(Position(1, 2), "simpl. ")
    assert editor.version == 2
    assert path.read_text() == "Proof.\n  simpl. auto.\nQed.\n"
    assert editor.text() == path.read_text()


def test_reload_only_bumps_on_change(tmp_path):
    path = tmp_path / "A.v"
    path.write_text("x")
    editor = FileEditor(path)
    editor.reload()
    assert editor.version == 1
    path.write_text("y")
    editor.reload()
    assert (editor.version, editor.text()) == (2, "y")
