"""Tests for the Coq theorem/proof parser."""

import pytest

from coq_file_parser import find_theorem_at, mask_comments, parse_document, parse_theorems, split_sentences
from coq_types import DocumentSpec, Position

from conftest import SAMPLE_V


@pytest.fixture
def theorems():
    return parse_theorems(SAMPLE_V)


def test_theorem_names_and_kinds(theorems):
    assert [(t.kind, t.name) for t in theorems] == [
        ("Theorem", "add_0_r"),
        ("Lemma", "mul_1_r"),
        ("Example", "double_2"),
        ("Lemma", "unfinished"),
    ]


def test_statements(theorems):
    by_name = {t.name: t for t in theorems}
    assert by_name["add_0_r"].statement == "forall n : nat, n + 0 = n"
    assert by_name["mul_1_r"].statement == "(n : nat) : n * 1 = n"
    assert by_name["double_2"].statement == "double 2 = 4"


def test_completed_proof(theorems):
    proof = theorems[0].proof
    assert proof.is_complete
    assert proof.start_pos == Position(4, 0)
    assert proof.end_pos == Position(9, 4)
    assert proof.only_text() == (
        "intros n.\n"
        "induction n as [| n' IH].\n"
        "- reflexivity.\n"
        "- simpl. rewrite IH. reflexivity."
    )


def test_admitted_proof_skips_comments(theorems):
    proof = theorems[1].proof
    assert not proof.is_complete
    assert proof.only_text() == "rewrite Nat.mul_1_r."
    assert proof.end_pos == Position(15, 9)


def test_term_definition_has_no_proof(theorems):
    assert theorems[2].proof is None


def test_unterminated_proof_runs_to_eof(theorems):
    proof = theorems[3].proof
    assert not proof.is_complete
    assert proof.only_text() == "exact I."
    assert proof.end_pos == Position(23, 10)


@pytest.mark.parametrize("pos, expected", [
    (Position(3, 5), None),         # statement line, before "Proof."
    (Position(4, 0), "add_0_r"),    # first char of "Proof."
    (Position(6, 2), "add_0_r"),
    (Position(9, 4), "add_0_r"),    # just after "Qed."
    (Position(9, 5), None),
    (Position(10, 0), None),
    (Position(14, 3), "mul_1_r"),
    (Position(23, 0), "unfinished"),
])
def test_cursor_boundaries(theorems, pos, expected):
    thm = find_theorem_at(theorems, pos)
    assert (thm.name if thm else None) == expected


def test_mask_comments_nested_and_strings():
    text = 'a (* x (* y *) z *) b "s (* no *)" c'
    masked = mask_comments(text)
    assert len(masked) == len(text)
    assert masked.split() == ["a", "b", '"', '"', "c"]


def test_mask_comments_keeps_newlines():
    masked = mask_comments("(* one\ntwo *)\nLemma")
    assert masked.count("\n") == 2
    assert masked.strip() == "Lemma"


def test_split_sentences_bullets_and_braces():
    text = "split. { auto. } - left. ++ right.\nQed."
    spans = [text[s:e] for s, e in split_sentences(text)]
    assert spans == ["split.", "{", "auto.", "}", "-", "left.", "++", "right.", "Qed."]


def test_qualified_names_do_not_end_sentences():
    spans = split_sentences("rewrite Nat.add_comm. auto.")
    assert len(spans) == 2


def test_local_and_program_prefixes():
    thms = parse_theorems("Local Lemma a : True.\nProof. exact I. Qed.\nProgram Fact b : True.\nProof. exact I. Defined.")
    assert [(t.kind, t.name, t.proof.is_complete) for t in thms] == [("Lemma", "a", True), ("Fact", "b", True)]


def test_many_theorems_on_one_line():
    thms = parse_theorems("Lemma a : True. Proof. exact I. Qed. Lemma b : True. Proof. exact I. Qed.")
    assert [t.name for t in thms] == ["a", "b"]
    assert thms[1].proof.start_pos == Position(0, 53)


async def test_parse_document_from_spec_text():
    spec = DocumentSpec("file:///nowhere/Sample.v", 1, SAMPLE_V)
    thms = await parse_document(spec)
    assert len(thms) == 4
    assert all(t.initial_goal is None for t in thms)


async def test_parse_document_reads_file(tmp_path):
    path = tmp_path / "T.v"
    path.write_text("Lemma t : True.\nProof. exact I. Qed.\n")
    thms = await parse_document(DocumentSpec(path.as_uri(), 1))
    assert [t.name for t in thms] == ["t"]


async def test_parse_document_initial_goals(checker, goals):
    spec = DocumentSpec("file:///work/Sample.v", 1, SAMPLE_V)
    thms = await parse_document(spec, extract_initial_goals=True, goals=goals)
    with_proof = [t for t in thms if t.proof is not None]
    assert all(t.initial_goal is not None for t in with_proof)
    # one session for the whole document
    assert len(checker.opens) == 1 and checker.closes == [spec.uri]
    assert checker.queries[0][0] == Position(5, 2)


async def test_parse_document_initial_goals_requires_service():
    with pytest.raises(ValueError):
        await parse_document(DocumentSpec("file:///x.v", 1, ""), extract_initial_goals=True)
