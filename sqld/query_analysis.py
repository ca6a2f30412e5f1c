"""Splitting SQL into statements and tracking transaction state."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional


class StmtKind(enum.Enum):
    """Categories of statement that matter for routing."""

    TXN_BEGIN = "txn_begin"
    TXN_END = "txn_end"
    READ = "read"
    WRITE = "write"
    OTHER = "other"


class State(enum.Enum):
    """Transaction state of a series of statements."""

    TXN = "txn"
    INIT = "init"
    INVALID = "invalid"

    def step(self, kind: StmtKind) -> "State":
        """The state reached after a statement of the given kind."""
        if kind in (StmtKind.OTHER, StmtKind.WRITE, StmtKind.READ):
            return self
        if self is State.INVALID:
            return State.INVALID
        if self is State.TXN:
            return State.INIT if kind is StmtKind.TXN_END else State.INVALID
        return State.TXN if kind is StmtKind.TXN_BEGIN else State.INVALID


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    start: int
    end: int


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$" or ord(ch) > 127


_PUNCT = {";": "semi", "(": "lparen", ")": "rparen"}


def _tokenize(sql: str) -> Iterator[_Token]:
    pos, length = 0, len(sql)
    while pos < length:
        ch = sql[pos]
        if ch.isspace():
            pos += 1
        elif sql.startswith("--", pos):
            end = sql.find("\n", pos)
            pos = length if end < 0 else end + 1
        elif sql.startswith("/*", pos):
            end = sql.find("*/", pos + 2)
            pos = length if end < 0 else end + 2
        elif ch in "'\"`":
            cursor = pos + 1
            while True:
                end = sql.find(ch, cursor)
                if end < 0:
                    raise ValueError(f"unterminated quoted literal at offset {pos}")
                if sql.startswith(ch * 2, end):
                    cursor = end + 2
                    continue
                break
            yield _Token("quoted", sql[pos : end + 1], pos, end + 1)
            pos = end + 1
        elif ch == "[":
            end = sql.find("]", pos + 1)
            if end < 0:
                raise ValueError(f"unterminated quoted identifier at offset {pos}")
            yield _Token("quoted", sql[pos : end + 1], pos, end + 1)
            pos = end + 1
        elif _is_word_char(ch):
            end = pos + 1
            while end < length and _is_word_char(sql[end]):
                end += 1
            yield _Token("word", sql[pos:end].upper(), pos, end)
            pos = end
        else:
            yield _Token(_PUNCT.get(ch, "other"), ch, pos, pos + 1)
            pos += 1


def _is_create_trigger(tokens: list[_Token]) -> bool:
    words = [tok.text for tok in tokens if tok.kind == "word"][:3]
    return bool(words) and words[0] == "CREATE" and "TRIGGER" in words[1:3]


def split_statements(sql: str) -> Iterator[str]:
    """Yield each non-empty statement of a script, without its semicolon."""
    pending: list[_Token] = []
    body_depth = 0
    for tok in _tokenize(sql):
        if tok.kind == "semi" and body_depth == 0:
            if pending:
                yield sql[pending[0].start : pending[-1].end]
            pending = []
            continue
        pending.append(tok)
        if tok.kind != "word":
            continue
        if body_depth:
            if tok.text == "CASE":
                body_depth += 1
            elif tok.text == "END":
                body_depth -= 1
        elif tok.text == "BEGIN" and _is_create_trigger(pending):
            body_depth = 1
    if pending:
        yield sql[pending[0].start : pending[-1].end]


_MAIN_KINDS = {
    "SELECT": StmtKind.READ,
    "VALUES": StmtKind.READ,
    "INSERT": StmtKind.WRITE,
    "REPLACE": StmtKind.WRITE,
    "UPDATE": StmtKind.WRITE,
    "DELETE": StmtKind.WRITE,
}


def classify(sql: str) -> Optional[StmtKind]:
    """The kind of a single statement, or None if it is not supported."""
    tokens = []
    for tok in _tokenize(sql):
        if tok.kind == "semi":
            break
        tokens.append(tok)
    if not tokens or tokens[0].kind != "word":
        return None

    depth = 0
    words = []
    for tok in tokens:
        if tok.kind == "lparen":
            depth += 1
        elif tok.kind == "rparen":
            depth -= 1
        elif tok.kind == "word" and depth == 0:
            words.append(tok.text)

    first = words[0]
    if first == "EXPLAIN":
        return StmtKind.OTHER
    if first == "BEGIN":
        return StmtKind.TXN_BEGIN
    if first in ("COMMIT", "END", "ROLLBACK"):
        return StmtKind.TXN_END
    if first in _MAIN_KINDS:
        return _MAIN_KINDS[first]
    if first == "CREATE":
        rest = words[1:]
        if rest and rest[0] in ("TEMP", "TEMPORARY"):
            rest = rest[1:]
        return StmtKind.WRITE if rest and rest[0] == "TABLE" else None
    if first == "DROP":
        return StmtKind.WRITE if words[1:2] == ["TABLE"] else None
    if first == "WITH":
        for word in words[1:]:
            if word in _MAIN_KINDS:
                return _MAIN_KINDS[word]
    return None


@dataclass(frozen=True)
class Statement:
    """One SQL statement and its kind."""

    stmt: str
    kind: StmtKind

    @classmethod
    def empty(cls) -> "Statement":
        # An empty statement counts as a read so it is never sent to a writer.
        return cls("", StmtKind.READ)

    @classmethod
    def parse(cls, sql: str) -> Iterator["Statement"]:
        """Yield the statements of a script; raise ValueError on an unsupported one."""
        for text in split_statements(sql):
            kind = classify(text)
            if kind is None:
                raise ValueError("unsupported statement")
            yield cls(text, kind)

    def is_read_only(self) -> bool:
        return self.kind in (StmtKind.READ, StmtKind.TXN_END, StmtKind.TXN_BEGIN)


def final_state(state: State, stmts: Iterable[Statement]) -> State:
    """The state reached if every statement succeeds, starting from `state`."""
    for stmt in stmts:
        state = state.step(stmt.kind)
    return state