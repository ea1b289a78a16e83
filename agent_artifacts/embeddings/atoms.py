"""
Knowledge atom extraction.

An artifact is not embedded as raw markdown. It is first distilled into a
summary, a list of hard facts and a list of keywords; each becomes one atom,
identified by the hash of its normalised text. Atoms that are too long for a
single embedding call are split on sentence, then word, boundaries.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..config import get_settings
from ..enums import AtomType
from .providers import DistillationError, Distiller

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

DEFAULT_MAX_CHUNK_CHARS = 1000


def compute_chunk_hash(text: str) -> str:
    """SHA-256 hex digest of the trimmed, lower-cased text."""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


def _split_words(text: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for word in text.split():
        if len(word) > max_chars:
            # A single unbroken token longer than the limit is cut hard.
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(word[i:i + max_chars] for i in range(0, len(word), max_chars))
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = word
    if current:
        pieces.append(current)
    return pieces


def chunk_text_if_needed(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> List[str]:
    """
    Split text into pieces of at most ``max_chars`` characters.

    Text that already fits is returned unchanged as a single piece. Otherwise
    sentences are packed greedily; a sentence longer than the limit is split
    on whitespace. Empty pieces are dropped.

    Args:
        text: Text to split
        max_chars: Upper bound on piece length

    Returns:
        List of non-empty pieces
    """
    if len(text) <= max_chars:
        return [text] if text.strip() else []

    pieces: List[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(text.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            pieces.append(current)
            current = ""
        if len(sentence) <= max_chars:
            current = sentence
        else:
            words = _split_words(sentence, max_chars)
            pieces.extend(words[:-1])
            current = words[-1] if words else ""
    if current:
        pieces.append(current)
    return [piece for piece in pieces if piece.strip()]


@dataclass(frozen=True)
class Atom:
    """One unit of distilled knowledge, ready to be hashed and embedded."""

    text: str
    atom_type: AtomType
    index: int

    @property
    def chunk_hash(self) -> str:
        return compute_chunk_hash(self.text)


def _clean_entries(values: Iterable[object]) -> List[str]:
    cleaned = []
    for value in values or ():
        if isinstance(value, str) and value.strip():
            cleaned.append(value.strip())
    return cleaned


def extract_atoms(
    distiller: Distiller,
    body: str,
    title: Optional[str] = None,
    max_chars: Optional[int] = None,
) -> List[Atom]:
    """
    Distill an artifact body into ordered atoms.

    Order is summary, then hard facts, then keywords. Indices are sequential
    across the whole list. Empty or non-string entries are skipped.

    Raises:
        DistillationError: if the distiller fails; no partial result is returned
    """
    if not body or not body.strip():
        raise DistillationError("Artifact body is empty or missing")

    limit = max_chars or get_settings().chunk_max_chars
    distilled = distiller.distill(body, title)

    typed: List[tuple] = []
    typed.extend((text, AtomType.SUMMARY) for text in _clean_entries([distilled.summary]))
    typed.extend((text, AtomType.HARD_FACT) for text in _clean_entries(distilled.hard_facts))
    typed.extend((text, AtomType.KEYWORD) for text in _clean_entries(distilled.keywords))

    atoms: List[Atom] = []
    for text, atom_type in typed:
        for piece in chunk_text_if_needed(text, limit):
            atoms.append(Atom(text=piece, atom_type=atom_type, index=len(atoms)))
    return atoms
