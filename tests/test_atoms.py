"""Tests for atom extraction, chunk hashing and text chunking."""

import pytest

from agent_artifacts.embeddings.atoms import (
    chunk_text_if_needed,
    compute_chunk_hash,
    extract_atoms,
)
from agent_artifacts.embeddings.providers import DistillationError, DistilledArtifact
from agent_artifacts.enums import AtomType


class TestChunkHash:
    def test_normalised_before_hashing(self):
        assert compute_chunk_hash("  Retry With Backoff \n") == compute_chunk_hash("retry with backoff")

    def test_is_sha256_hex(self):
        digest = compute_chunk_hash("retry with backoff")
        assert len(digest) == 64
        int(digest, 16)

    def test_different_text_different_hash(self):
        assert compute_chunk_hash("retry") != compute_chunk_hash("backoff")


class TestChunkTextIfNeeded:
    def test_short_text_returned_unchanged(self):
        assert chunk_text_if_needed("Short text.", 100) == ["Short text."]

    def test_blank_text_yields_nothing(self):
        assert chunk_text_if_needed("   ", 100) == []

    def test_splits_on_sentences(self):
        text = "First sentence here. Second sentence here. Third sentence here."
        pieces = chunk_text_if_needed(text, 45)
        assert pieces == ["First sentence here. Second sentence here.", "Third sentence here."]

    def test_long_sentence_split_on_words(self):
        text = " ".join(["word"] * 60)
        pieces = chunk_text_if_needed(text, 50)
        assert len(pieces) > 1
        assert all(len(piece) <= 50 for piece in pieces)
        assert " ".join(pieces) == text

    def test_unbroken_token_is_cut(self):
        pieces = chunk_text_if_needed("x" * 120, 50)
        assert pieces == ["x" * 50, "x" * 50, "x" * 20]

    def test_no_piece_is_empty(self):
        text = "A.  B!   " + "c " * 40 + "?"
        assert all(piece.strip() for piece in chunk_text_if_needed(text, 20))


class TestExtractAtoms:
    def test_order_and_sequential_indices(self, make_distiller):
        distiller = make_distiller(
            DistilledArtifact(
                summary="Adds jittered retries.",
                hard_facts=["Retries stop after three attempts.", "Backoff caps at one second."],
                keywords=["retry", "backoff"],
            )
        )

        atoms = extract_atoms(distiller, "# Plan\n\nAdd retries.", "Plan for ticket 0121")

        assert [a.atom_type for a in atoms] == [
            AtomType.SUMMARY,
            AtomType.HARD_FACT,
            AtomType.HARD_FACT,
            AtomType.KEYWORD,
            AtomType.KEYWORD,
        ]
        assert [a.index for a in atoms] == [0, 1, 2, 3, 4]
        assert atoms[0].text == "Adds jittered retries."
        assert distiller.calls == [("# Plan\n\nAdd retries.", "Plan for ticket 0121")]

    def test_empty_and_non_string_entries_skipped(self, make_distiller):
        distiller = make_distiller(
            DistilledArtifact(summary="", hard_facts=["Valid fact", "", "   ", None, 42], keywords=[])
        )

        atoms = extract_atoms(distiller, "Some body text")

        assert len(atoms) == 1
        assert atoms[0].atom_type is AtomType.HARD_FACT
        assert atoms[0].index == 0

    def test_long_atoms_are_chunked(self, make_distiller):
        summary = " ".join(["sentence number %d is here." % i for i in range(10)])
        distiller = make_distiller(DistilledArtifact(summary=summary, hard_facts=["fact"], keywords=[]))

        atoms = extract_atoms(distiller, "body", max_chars=60)

        summaries = [a for a in atoms if a.atom_type is AtomType.SUMMARY]
        assert len(summaries) > 1
        assert all(len(a.text) <= 60 for a in summaries)
        assert atoms[-1].atom_type is AtomType.HARD_FACT
        assert atoms[-1].index == len(atoms) - 1

    def test_empty_body_raises(self, make_distiller):
        with pytest.raises(DistillationError):
            extract_atoms(make_distiller(), "   ")

    def test_distiller_failure_propagates(self, make_distiller):
        with pytest.raises(DistillationError):
            extract_atoms(make_distiller(error="model unavailable"), "Some body text")
