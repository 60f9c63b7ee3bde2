# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Stateless text sanitizing and chunking utilities."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import NamedTuple

import tiktoken

from .languages import ChunkStrategy, classify_path, separators_for
from .sql import split_sql

logger = logging.getLogger(__name__)

HEADER_TEMPLATE = "FILE NAME: {path}\n\n---\n\n"
CONTINUED_MARKER = "(cont'd) "

DEFAULT_CHUNK_SIZE = int(7000 * 3.25)
DEFAULT_CHUNK_OVERLAP = int(200 * 3.25)
DEFAULT_MAX_CONTENT_CHARS = 1_000_000

_LOCAL_PROVIDERS = {"ollama", "llamacpp"}


@dataclass
class ChunkSettings:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS

    @classmethod
    def from_config(cls, cfg) -> "ChunkSettings":
        return cls(
            chunk_size=cfg.chunk_size_chars,
            chunk_overlap=cfg.chunk_overlap_chars,
            max_content_chars=cfg.max_content_chars,
        )


class Piece(NamedTuple):
    """Chunk body plus its [start, end) offsets in the sanitized text, when it has them."""

    text: str
    start: int | None = None
    end: int | None = None


@dataclass
class TextChunk:
    chunk_number: int
    content: str
    start: int | None = None
    end: int | None = None


@lru_cache(maxsize=8)
def _encoding_for(embed_model: str):
    try:
        return tiktoken.encoding_for_model(embed_model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(
    s: str,
    embed_model: str | None = None,
    embedding_provider: str | None = None,
    chars_per_token: float = 3.25,
) -> int:
    """Estimate the token count of ``s`` for the configured embedding backend."""
    if not embed_model or (embedding_provider or "").lower() in _LOCAL_PROVIDERS:
        return max(1, math.ceil(len(s) / max(chars_per_token, 0.1)))
    try:
        enc = _encoding_for(embed_model)
        return len(enc.encode(s, disallowed_special=()))
    except Exception:
        logger.debug("tiktoken unavailable for %s; using word count", embed_model, exc_info=True)
        return max(1, len(s.split()))


_SURROGATES = re.compile("[\ud800-\udfff]")


def sanitize_text(data: bytes | str, max_chars: int = DEFAULT_MAX_CONTENT_CHARS) -> str:
    """Bound, decode and clean raw file content.

    Oversized input is truncated first. Undecodable bytes and lone surrogates
    become U+FFFD; NUL bytes are removed.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data[: max_chars * 4])
        text = raw.decode("utf-8", errors="replace")
    else:
        text = data
    if len(text) > max_chars:
        text = text[:max_chars]
    text = text.replace("\x00", "")
    return _SURROGATES.sub("\ufffd", text)


class RecursiveCharacterSplitter:
    """
    Split text on an ordered list of separators, merging small pieces.

    The first separator present in the text is used; pieces that are still too
    large are split again with the remaining separators. Separators stay
    attached to the start of the piece that follows them, so every piece is a
    contiguous slice of the input and chunks can report their offsets.
    """

    def __init__(self, separators: list[str], chunk_size: int, chunk_overlap: int):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap >= chunk_size:
            logger.warning(
                "chunk_overlap %s >= chunk_size %s; clamping overlap",
                chunk_overlap,
                chunk_size,
            )
            chunk_overlap = chunk_size // 2
        self.separators = separators or [""]
        self.chunk_size = chunk_size
        self.chunk_overlap = max(0, chunk_overlap)

    def split(self, text: str) -> list[Piece]:
        return self._split(text, 0, len(text), self.separators)

    @staticmethod
    def _cut(text: str, start: int, end: int, separator: str) -> list[tuple[int, int]]:
        if separator == "":
            return [(i, i + 1) for i in range(start, end)]
        cuts = [start]
        pos = text.find(separator, start + 1, end)
        while pos != -1:
            cuts.append(pos)
            pos = text.find(separator, pos + 1, end)
        cuts.append(end)
        return [(a, b) for a, b in zip(cuts, cuts[1:]) if b > a]

    def _split(self, text: str, start: int, end: int, separators: list[str]) -> list[Piece]:
        separator = separators[-1]
        remaining: list[str] = []
        segment = text[start:end]
        for idx, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in segment:
                separator = candidate
                remaining = separators[idx + 1 :]
                break

        final: list[Piece] = []
        good: list[tuple[int, int]] = []
        for a, b in self._cut(text, start, end, separator):
            if b - a < self.chunk_size:
                good.append((a, b))
                continue
            if good:
                final.extend(self._merge(text, good))
                good = []
            if remaining:
                final.extend(self._split(text, a, b, remaining))
            else:
                final.extend(self._piece(text, a, b))
        if good:
            final.extend(self._merge(text, good))
        return final

    @staticmethod
    def _piece(text: str, a: int, b: int) -> list[Piece]:
        body = text[a:b]
        stripped = body.strip()
        if not stripped:
            return []
        lead = len(body) - len(body.lstrip())
        return [Piece(stripped, a + lead, a + lead + len(stripped))]

    def _merge(self, text: str, spans: list[tuple[int, int]]) -> list[Piece]:
        out: list[Piece] = []
        window: list[tuple[int, int]] = []
        total = 0
        for a, b in spans:
            length = b - a
            if window and total + length > self.chunk_size:
                out.extend(self._piece(text, window[0][0], window[-1][1]))
                while window and (
                    total > self.chunk_overlap or total + length > self.chunk_size
                ):
                    first_a, first_b = window.pop(0)
                    total -= first_b - first_a
            window.append((a, b))
            total += length
        if window:
            out.extend(self._piece(text, window[0][0], window[-1][1]))
        return out


def _split_recursive(text: str, language: str, settings: ChunkSettings) -> list[Piece]:
    splitter = RecursiveCharacterSplitter(
        separators_for(language), settings.chunk_size, settings.chunk_overlap
    )
    return splitter.split(text)


def _split_sql(text: str, language: str, settings: ChunkSettings) -> list[Piece]:
    return [Piece(statement) for statement in split_sql(text, settings.chunk_size)]


def _split_nothing(text: str, language: str, settings: ChunkSettings) -> list[Piece]:
    return []


STRATEGIES: dict[ChunkStrategy, Callable[[str, str, ChunkSettings], list[Piece]]] = {
    ChunkStrategy.CODE: _split_recursive,
    ChunkStrategy.TEXT: _split_recursive,
    ChunkStrategy.SQL: _split_sql,
    ChunkStrategy.IGNORE: _split_nothing,
}


def _with_headers(path: str, pieces: list[Piece]) -> list[TextChunk]:
    header = HEADER_TEMPLATE.format(path=path)
    chunks: list[TextChunk] = []
    prev_end: int | None = None
    for piece in pieces:
        overlapping = (
            prev_end is not None and piece.start is not None and piece.start < prev_end
        )
        prefix = header + CONTINUED_MARKER if overlapping else header
        chunks.append(
            TextChunk(
                chunk_number=len(chunks) + 1,
                content=prefix + piece.text,
                start=piece.start,
                end=piece.end,
            )
        )
        prev_end = piece.end
    return chunks


def chunk_document(
    path: str, data: bytes | str, settings: ChunkSettings | None = None
) -> list[TextChunk]:
    """Partition a file's content into numbered, header-prefixed chunks.

    Never raises: a failing strategy falls back to plain-text splitting, and a
    failure of that fallback yields no chunks.
    """
    settings = settings or ChunkSettings()
    classification = classify_path(path)
    if classification.strategy is ChunkStrategy.IGNORE:
        return []
    try:
        text = sanitize_text(data, settings.max_content_chars)
        if not text.strip():
            return []
        strategy = STRATEGIES[classification.strategy]
        try:
            pieces = strategy(text, classification.language, settings)
        except Exception:
            logger.exception(
                "Chunking %s with %s strategy failed; falling back to text",
                path,
                classification.strategy.value,
            )
            pieces = _split_recursive(text, "text", settings)
        return _with_headers(path, pieces)
    except Exception:
        logger.exception("Failed to chunk %s", path)
        return []
