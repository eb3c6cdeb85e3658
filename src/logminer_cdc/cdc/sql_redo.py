"""Parser for the ``SQL_REDO``/``SQL_UNDO`` statements produced by LogMiner.

LogMiner reconstructs each change as a single DML statement, e.g.::

    insert into "SIT"."TEST_TAB"("ID","NAME") values ('1','Test');
    update "SIT"."TEST_TAB" set "NAME" = 'New' where "ID" = '1' and "NAME" = 'Test' and ROWID = 'AAAS...';
    delete from "SIT"."TEST_TAB" where "ID" = '1' and "NAME" = 'New' and ROWID = 'AAAS...';

The parser turns such a statement into column -> :class:`RedoValue` maps
without interpreting the values; typing happens in the decoder where the
table schema is known.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


class RedoParseError(ValueError):
    """Raised when a statement does not follow the LogMiner DML shape."""


@dataclass(frozen=True)
class RedoValue:
    """Uninterpreted literal taken from a redo statement.

    ``kind`` is one of ``string``, ``number``, ``null``, ``date``,
    ``timestamp``, ``timestamp_tz``, ``hex``, ``empty_lob`` or ``unsupported``.
    """

    kind: str
    text: Optional[str] = None
    fmt: Optional[str] = None

    @property
    def is_null(self) -> bool:
        return self.kind in {"null", "unsupported"}


NULL = RedoValue("null")


@dataclass(frozen=True)
class ParsedStatement:
    kind: str  # insert, update, delete
    owner: str
    table: str
    values: Dict[str, RedoValue] = field(default_factory=dict)
    where: Dict[str, RedoValue] = field(default_factory=dict)
    row_id: Optional[str] = None


@dataclass(frozen=True)
class _Token:
    kind: str  # ident, word, string, number, symbol
    text: str
    pos: int


_SYMBOLS = ("||", "(", ")", ",", "=", ".", ";", "-", "+")


def _tokenize(sql: str) -> List[_Token]:
    tokens: List[_Token] = []
    index = 0
    length = len(sql)
    while index < length:
        char = sql[index]
        if char.isspace():
            index += 1
            continue
        if char == "'":
            start = index
            index += 1
            chunks: List[str] = []
            while True:
                end = sql.find("'", index)
                if end < 0:
                    raise RedoParseError(f"unterminated string literal at {start}")
                chunks.append(sql[index:end])
                if end + 1 < length and sql[end + 1] == "'":
                    chunks.append("'")
                    index = end + 2
                    continue
                index = end + 1
                break
            tokens.append(_Token("string", "".join(chunks), start))
            continue
        if char == '"':
            end = sql.find('"', index + 1)
            if end < 0:
                raise RedoParseError(f"unterminated identifier at {index}")
            tokens.append(_Token("ident", sql[index + 1 : end], index))
            index = end + 1
            continue
        if char.isdigit() or (
            char == "." and index + 1 < length and sql[index + 1].isdigit()
        ):
            start = index
            index += 1
            while index < length and (sql[index].isdigit() or sql[index] in ".eE"):
                if sql[index] in "eE" and index + 1 < length and sql[index + 1] in "+-":
                    index += 1
                index += 1
            tokens.append(_Token("number", sql[start:index], start))
            continue
        if char.isalpha() or char == "_":
            start = index
            while index < length and (sql[index].isalnum() or sql[index] in "_$#"):
                index += 1
            tokens.append(_Token("word", sql[start:index], start))
            continue
        for symbol in _SYMBOLS:
            if sql.startswith(symbol, index):
                tokens.append(_Token("symbol", symbol, index))
                index += len(symbol)
                break
        else:
            raise RedoParseError(f"unexpected character {char!r} at {index}")
    return tokens


class _Parser:
    def __init__(self, sql: str) -> None:
        self._sql = sql
        self._tokens = _tokenize(sql)
        self._index = 0

    # token helpers ---------------------------------------------------------
    def _peek(self, offset: int = 0) -> Optional[_Token]:
        position = self._index + offset
        if position < len(self._tokens):
            return self._tokens[position]
        return None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise RedoParseError("unexpected end of statement")
        self._index += 1
        return token

    def _at_word(self, word: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token is not None and token.kind == "word" and token.text.upper() == word

    def _at_symbol(self, symbol: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == "symbol" and token.text == symbol

    def _expect_word(self, word: str) -> None:
        token = self._next()
        if token.kind != "word" or token.text.upper() != word:
            raise RedoParseError(f"expected {word} at {token.pos}, found {token.text!r}")

    def _expect_symbol(self, symbol: str) -> None:
        token = self._next()
        if token.kind != "symbol" or token.text != symbol:
            raise RedoParseError(
                f"expected {symbol!r} at {token.pos}, found {token.text!r}"
            )

    def _identifier(self) -> str:
        token = self._next()
        if token.kind == "ident":
            return token.text
        if token.kind == "word":
            return token.text.upper()
        raise RedoParseError(f"expected identifier at {token.pos}, found {token.text!r}")

    # grammar ---------------------------------------------------------------
    def parse(self) -> ParsedStatement:
        token = self._peek()
        if token is None or token.kind != "word":
            raise RedoParseError("statement does not start with a DML keyword")
        keyword = token.text.upper()
        if keyword == "INSERT":
            statement = self._insert()
        elif keyword == "UPDATE":
            statement = self._update()
        elif keyword == "DELETE":
            statement = self._delete()
        else:
            raise RedoParseError(f"unsupported statement type {keyword}")
        if self._at_symbol(";"):
            self._next()
        trailing = self._peek()
        if trailing is not None:
            raise RedoParseError(f"unexpected trailing input at {trailing.pos}")
        return statement

    def _qualified_name(self) -> Tuple[str, str]:
        first = self._identifier()
        if self._at_symbol("."):
            self._next()
            return first, self._identifier()
        return "", first

    def _insert(self) -> ParsedStatement:
        self._expect_word("INSERT")
        self._expect_word("INTO")
        owner, table = self._qualified_name()
        self._expect_symbol("(")
        columns = [self._identifier()]
        while self._at_symbol(","):
            self._next()
            columns.append(self._identifier())
        self._expect_symbol(")")
        self._expect_word("VALUES")
        self._expect_symbol("(")
        values = [self._expression()]
        while self._at_symbol(","):
            self._next()
            values.append(self._expression())
        self._expect_symbol(")")
        if len(columns) != len(values):
            raise RedoParseError(
                f"insert lists {len(columns)} columns but {len(values)} values"
            )
        return ParsedStatement(
            kind="insert", owner=owner, table=table, values=dict(zip(columns, values))
        )

    def _update(self) -> ParsedStatement:
        self._expect_word("UPDATE")
        owner, table = self._qualified_name()
        self._expect_word("SET")
        values: Dict[str, RedoValue] = {}
        while True:
            column = self._identifier()
            self._expect_symbol("=")
            values[column] = self._expression()
            if not self._at_symbol(","):
                break
            self._next()
        where, row_id = self._where_clause()
        return ParsedStatement(
            kind="update",
            owner=owner,
            table=table,
            values=values,
            where=where,
            row_id=row_id,
        )

    def _delete(self) -> ParsedStatement:
        self._expect_word("DELETE")
        self._expect_word("FROM")
        owner, table = self._qualified_name()
        where, row_id = self._where_clause()
        return ParsedStatement(
            kind="delete", owner=owner, table=table, where=where, row_id=row_id
        )

    def _where_clause(self) -> Tuple[Dict[str, RedoValue], Optional[str]]:
        where: Dict[str, RedoValue] = {}
        row_id: Optional[str] = None
        if not self._at_word("WHERE"):
            return where, row_id
        self._next()
        while True:
            wrapped = self._at_symbol("(")
            if wrapped:
                self._next()
            token = self._peek()
            is_rowid = (
                token is not None and token.kind == "word" and token.text.upper() == "ROWID"
            )
            column = self._identifier()
            if self._at_word("IS"):
                self._next()
                self._expect_word("NULL")
                value = NULL
            else:
                self._expect_symbol("=")
                value = self._expression()
            if wrapped:
                self._expect_symbol(")")
            if is_rowid:
                row_id = value.text
            else:
                where[column] = value
            if not self._at_word("AND"):
                break
            self._next()
        return where, row_id

    def _expression(self) -> RedoValue:
        value = self._term()
        while self._at_symbol("||"):
            self._next()
            right = self._term()
            value = _concat(value, right)
        return value

    def _term(self) -> RedoValue:
        token = self._next()
        if token.kind == "string":
            return RedoValue("string", token.text)
        if token.kind == "number":
            return RedoValue("number", token.text)
        if token.kind == "symbol" and token.text in {"-", "+"}:
            number = self._next()
            if number.kind != "number":
                raise RedoParseError(f"expected number after sign at {token.pos}")
            sign = "-" if token.text == "-" else ""
            return RedoValue("number", sign + number.text)
        if token.kind != "word":
            raise RedoParseError(f"unexpected {token.text!r} at {token.pos}")
        word = token.text.upper()
        if word == "NULL":
            return NULL
        if word == "UNSUPPORTED" and self._at_word("TYPE"):
            self._next()
            return RedoValue("unsupported")
        if self._at_symbol("("):
            return self._function(word, token.pos)
        raise RedoParseError(f"unexpected word {token.text!r} at {token.pos}")

    def _function(self, name: str, pos: int) -> RedoValue:
        self._expect_symbol("(")
        args: List[RedoValue] = []
        if not self._at_symbol(")"):
            args.append(self._expression())
            while self._at_symbol(","):
                self._next()
                args.append(self._expression())
        self._expect_symbol(")")
        if name in {"EMPTY_CLOB", "EMPTY_BLOB"} and not args:
            return RedoValue("empty_lob", fmt=name)
        if not args:
            raise RedoParseError(f"function {name} at {pos} requires arguments")
        first = args[0]
        fmt = args[1].text if len(args) > 1 else None
        if first.kind == "null":
            return NULL
        if name == "TO_DATE":
            return RedoValue("date", first.text, fmt)
        if name == "TO_TIMESTAMP":
            return RedoValue("timestamp", first.text, fmt)
        if name == "TO_TIMESTAMP_TZ":
            return RedoValue("timestamp_tz", first.text, fmt)
        if name == "HEXTORAW":
            return RedoValue("hex", first.text)
        if name in {"TO_NUMBER", "TO_BINARY_DOUBLE", "TO_BINARY_FLOAT"}:
            return RedoValue("number", first.text)
        if name == "CHR":
            try:
                return RedoValue("string", chr(int(first.text or "")))
            except ValueError as exc:
                raise RedoParseError(f"invalid CHR argument at {pos}") from exc
        if name == "UNISTR" and first.kind == "string":
            return RedoValue("string", _unistr(first.text or "", pos))
        if name in {"TO_CHAR", "TO_NCHAR"} and first.kind == "string":
            return first
        raise RedoParseError(f"unsupported function {name} at {pos}")


def _unistr(text: str, pos: int) -> str:
    """Expand the ``\\XXXX`` UTF-16 escapes LogMiner uses for NCHAR data."""
    data = bytearray()
    index = 0
    while index < len(text):
        char = text[index]
        if char != "\\":
            data += char.encode("utf-16-le", "surrogatepass")
            index += 1
            continue
        if text.startswith("\\", index + 1):
            data += "\\".encode("utf-16-le")
            index += 2
            continue
        code = text[index + 1 : index + 5]
        if len(code) != 4 or any(c not in string.hexdigits for c in code):
            raise RedoParseError(f"invalid UNISTR escape at {pos}")
        data += int(code, 16).to_bytes(2, "little")
        index += 5
    try:
        # surrogate pairs only combine when the whole buffer is decoded
        return data.decode("utf-16-le")
    except UnicodeDecodeError as exc:
        raise RedoParseError(f"unpaired surrogate in UNISTR at {pos}") from exc


def _concat(left: RedoValue, right: RedoValue) -> RedoValue:
    if left.kind == "null":
        return right
    if right.kind == "null":
        return left
    if left.kind in {"string", "number"} and right.kind in {"string", "number"}:
        return RedoValue("string", (left.text or "") + (right.text or ""))
    raise RedoParseError(f"cannot concatenate {left.kind} and {right.kind}")


def parse_statement(sql: str) -> ParsedStatement:
    """Parse a single LogMiner DML statement."""
    if not sql or not sql.strip():
        raise RedoParseError("empty statement")
    return _Parser(sql).parse()


__all__ = ["NULL", "ParsedStatement", "RedoParseError", "RedoValue", "parse_statement"]
