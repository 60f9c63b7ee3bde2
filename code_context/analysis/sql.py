# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Statement-aware splitting for SQL sources.

``;`` terminates a statement only outside string literals and comments.
Function/procedure definitions, trigger and event bodies and ``BEGIN ... END``
blocks are tracked with a depth counter and end at the ``END`` that brings the
depth back to zero; a dollar-quoted body (``AS $$ ... $$``) is skipped whole
and the definition ends at the ``;`` after it. View definitions end at their first ``;``.
Statements larger than the size budget are split further: ``INSERT ... VALUES``
at tuple boundaries, anything else at line boundaries.

SQL dumps exported through OCR tooling contain mangled keywords, so a few
known variants are accepted as BEGIN/END.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

BEGIN_KEYWORDS = frozenset({"BEGIN", "BBEGI", "BEGINN"})
END_KEYWORDS = frozenset({"END", "EEN"})

# END followed by one of these closes a control structure, not a block
_END_QUALIFIERS = frozenset({"IF", "LOOP", "WHILE", "REPEAT", "FOR"})

_QUOTES = frozenset({"'", '"', "`"})
_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")
_NEXT_WORD = re.compile(r"\s+([A-Za-z_][A-Za-z0-9_$]*)")
_CREATE = re.compile(
    r"CREATE\s+(?:OR\s+REPLACE\s+)?(FUNCTION|PROCEDURE|VIEW)\b", re.IGNORECASE
)
_TRANSACTION_BEGIN = re.compile(
    r"\s*(?:;|(?:TRANSACTION|WORK|DEFERRED|IMMEDIATE|EXCLUSIVE)\b)", re.IGNORECASE
)
# a closing $tag$ may sit on the next line; a label may not
_COMPOUND_TAIL = re.compile(
    r"(?:\s*(?=\$[A-Za-z0-9_]*\$))?[ \t]*(?:\$[A-Za-z0-9_]*\$[ \t]*)?"
    r"(?:[A-Za-z_][A-Za-z0-9_$]*[ \t]*)?;"
)
_TSQL_VARIABLE = re.compile(r"\s*@")
_COMMENTS = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_TRIGGER_HEAD = re.compile(
    r"CREATE\s+(?:OR\s+REPLACE\s+)?(?:DEFINER\s*=\s*\S+\s+)?(?:TEMP(?:ORARY)?\s+)?"
    r"(?:TRIGGER|EVENT)\b"
)
_INSERT_HEAD = re.compile(r"(?:\s|--[^\n]*\n|/\*.*?\*/)*INSERT\b", re.IGNORECASE | re.DOTALL)

_DOLLAR_QUOTE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

_NORMAL, _COMPOUND, _TO_SEMICOLON = "normal", "compound", "to_semicolon"


def _skip_string(text: str, i: int) -> int:
    """Return the index just past the string literal opened at ``i``."""
    quote = text[i]
    n = len(text)
    i += 1
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return n


def _skip_comment(text: str, i: int) -> int | None:
    """If a comment starts at ``i`` return the index past it, else None."""
    if text.startswith("--", i):
        end = text.find("\n", i)
        return len(text) if end == -1 else end + 1
    if text.startswith("/*", i):
        end = text.find("*/", i + 2)
        return len(text) if end == -1 else end + 2
    return None


def _in_word(text: str, i: int) -> bool:
    # a qualified name (t.begin) is an identifier, not a keyword
    return i > 0 and (text[i - 1].isalnum() or text[i - 1] in "_$.")


def _opens_block(preceding: str) -> bool:
    """True when BEGIN at this point starts a block rather than naming a column.

    That is at statement start, in a ``DO`` statement or right after ``DO``
    (MySQL events), or in the body of a trigger or event definition.
    """
    head = _COMMENTS.sub(" ", preceding).strip().upper()
    words = head.split()
    if not words or words[0] == "DO":
        return True
    if words[-1] == "DO" and (len(words) < 2 or words[-2] != "CONFLICT"):
        return True
    return _TRIGGER_HEAD.match(head) is not None


def _open_dollar_quote(preceding: str) -> str | None:
    """The ``$tag$`` left open in ``preceding``, if any."""
    open_tag = None
    for m in _DOLLAR_QUOTE.finditer(preceding):
        if open_tag is None:
            open_tag = m.group(0)
        elif m.group(0) == open_tag:
            open_tag = None
    return open_tag


def split_sql_statements(text: str) -> list[str]:
    """Split a SQL script into top-level statements."""
    statements: list[str] = []
    n = len(text)
    start = 0
    i = 0
    mode = _NORMAL
    depth = 0
    block_quote: str | None = None

    def emit(end: int) -> None:
        nonlocal start
        stmt = text[start:end].strip()
        if stmt and stmt != ";":
            statements.append(stmt)
        start = end

    while i < n:
        ch = text[i]

        if ch in _QUOTES:
            i = _skip_string(text, i)
            continue

        skipped = _skip_comment(text, i)
        if skipped is not None:
            i = skipped
            continue

        if ch == ";":
            if mode != _COMPOUND:
                mode = _NORMAL
                emit(i + 1)
            i += 1
            continue

        if ch == "$" and mode == _COMPOUND and depth == 0 and not _in_word(text, i):
            quote = _DOLLAR_QUOTE.match(text, i)
            if quote:
                # dollar-quoted body: skip it whole, the definition ends at the next ;
                close = text.find(quote.group(0), quote.end())
                i = n if close == -1 else close + len(quote.group(0))
                mode = _TO_SEMICOLON
                continue

        word_match = _WORD.match(text, i)
        if word_match is None or _in_word(text, i):
            i += 1
            continue
        word = word_match.group(0).upper()
        word_end = word_match.end()

        if mode == _NORMAL:
            if word == "CREATE":
                m = _CREATE.match(text, i)
                if m:
                    kind = m.group(1).upper()
                    if kind == "VIEW":
                        mode = _TO_SEMICOLON
                    else:
                        mode = _COMPOUND
                        depth = 0
                    i = m.end()
                    continue
            elif (
                word in BEGIN_KEYWORDS
                and _opens_block(text[start:i])
                and not _TRANSACTION_BEGIN.match(text, word_end)
            ):
                mode = _COMPOUND
                depth = 1
                block_quote = _open_dollar_quote(text[start:i])
            elif word == "DECLARE" and _opens_block(text[start:i]) and not _TSQL_VARIABLE.match(
                text, word_end
            ):
                # declaration section of an anonymous block; the block's BEGIN follows
                mode = _COMPOUND
                depth = 0
                block_quote = _open_dollar_quote(text[start:i])
        elif mode == _COMPOUND:
            if word in BEGIN_KEYWORDS or word == "CASE":
                depth += 1
            elif word in END_KEYWORDS:
                following = _NEXT_WORD.match(text, word_end)
                qualifier = following.group(1).upper() if following else None
                if qualifier not in _END_QUALIFIERS:
                    depth -= 1
                    if following is not None and qualifier == "CASE":
                        word_end = following.end()
                    if depth <= 0:
                        tail = _COMPOUND_TAIL.match(text, word_end)
                        end = tail.end() if tail else word_end
                        depth = 0
                        tag, block_quote = block_quote, None
                        if tag and tag not in text[word_end:end]:
                            # block sits inside a dollar quote: run on past its closing tag
                            close = text.find(tag, end)
                            if close != -1:
                                mode = _TO_SEMICOLON
                                i = close + len(tag)
                                continue
                        mode = _NORMAL
                        emit(end)
                        i = end
                        continue
        i = word_end

    emit(n)
    return statements


def is_insert_statement(statement: str) -> bool:
    return _INSERT_HEAD.match(statement) is not None


def _find_values_end(statement: str) -> int | None:
    """Index just past the top-level VALUES keyword of an INSERT."""
    n = len(statement)
    i = 0
    depth = 0
    while i < n:
        ch = statement[i]
        if ch in _QUOTES:
            i = _skip_string(statement, i)
            continue
        skipped = _skip_comment(statement, i)
        if skipped is not None:
            i = skipped
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0 and (m := _WORD.match(statement, i)):
            if m.group(0).upper() == "VALUES":
                return m.end()
            i = m.end()
            continue
        i += 1
    return None


def _parse_tuples(statement: str, pos: int) -> tuple[list[str], str] | None:
    """Read ``(...), (...)`` groups starting at ``pos``; return tuples and trailing text."""
    n = len(statement)
    tuples: list[str] = []
    i = pos
    while i < n:
        ch = statement[i]
        if ch.isspace() or ch == ",":
            i += 1
            continue
        if ch != "(":
            break
        depth = 0
        j = i
        closed = False
        while j < n:
            c = statement[j]
            if c in _QUOTES:
                j = _skip_string(statement, j)
                continue
            if c == "(":
                depth += 1
            elif c == ")":
                depth -= 1
                if depth == 0:
                    closed = True
                    break
            j += 1
        if not closed:
            return None
        tuples.append(statement[i : j + 1])
        i = j + 1
    suffix = statement[i:].strip()
    while suffix.endswith(";"):
        suffix = suffix[:-1].rstrip()
    return tuples, suffix


def split_insert_statement(statement: str, budget: int) -> list[str] | None:
    """
    Split a multi-row INSERT into several INSERTs of whole value tuples.

    Every produced statement repeats the column/target prefix and any trailing
    clause (``ON CONFLICT ...``). Returns None when the statement is not a
    parseable ``INSERT ... VALUES`` form.
    """
    values_end = _find_values_end(statement)
    if values_end is None:
        return None
    parsed = _parse_tuples(statement, values_end)
    if parsed is None:
        return None
    tuples, suffix = parsed
    if not tuples:
        return None

    prefix = statement[:values_end].rstrip() + " "
    tail = (" " + suffix if suffix else "") + ";"
    overhead = len(prefix) + len(tail)

    groups: list[list[str]] = []
    current: list[str] = []
    size = overhead
    for tup in tuples:
        added = len(tup) + (1 if current else 0)
        if current and size + added > budget:
            groups.append(current)
            current = [tup]
            size = overhead + len(tup)
        else:
            current.append(tup)
            size += added
    if current:
        groups.append(current)

    return [prefix + ",".join(group) + tail for group in groups]


def _wrap(line: str, budget: int) -> list[str]:
    return [line[i : i + budget] for i in range(0, len(line), budget)]


def split_statement_by_lines(statement: str, budget: int) -> list[str]:
    """Greedy line accumulation; single lines longer than the budget are wrapped."""
    pieces: list[str] = []
    current = ""
    for line in statement.split("\n"):
        if len(line) > budget:
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(_wrap(line, budget))
            continue
        if not current:
            current = line
        elif len(current) + 1 + len(line) <= budget:
            current += "\n" + line
        else:
            pieces.append(current)
            current = line
    if current:
        pieces.append(current)
    return pieces


def split_sql(text: str, budget: int) -> list[str]:
    """Split SQL text into statement-aligned pieces no larger than ``budget`` where possible."""
    budget = max(1, int(budget))
    pieces: list[str] = []
    for statement in split_sql_statements(text):
        if len(statement) <= budget:
            pieces.append(statement)
            continue
        if is_insert_statement(statement):
            inserts = split_insert_statement(statement, budget)
            if inserts:
                logger.debug(
                    "Split oversized INSERT (%d chars) into %d statements",
                    len(statement),
                    len(inserts),
                )
                pieces.extend(inserts)
                continue
        pieces.extend(split_statement_by_lines(statement, budget))
    return pieces
