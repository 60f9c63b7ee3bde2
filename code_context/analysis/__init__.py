"""Pure analysis helpers for chunking, SQL splitting and path classification."""

from .chunking import (ChunkSettings, TextChunk, chunk_document, count_tokens,
                       sanitize_text)
from .languages import ChunkStrategy, classify_path
from .patterns import PathFilter, compile_glob
from .sql import split_sql, split_sql_statements

__all__ = [
    "ChunkSettings",
    "ChunkStrategy",
    "PathFilter",
    "TextChunk",
    "chunk_document",
    "classify_path",
    "compile_glob",
    "count_tokens",
    "sanitize_text",
    "split_sql",
    "split_sql_statements",
]
