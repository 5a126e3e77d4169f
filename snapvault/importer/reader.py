from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterator, TextIO

DELIMITER_DIRECTIVE = re.compile(r"^\s*delimiter\s+(\S+)\s*$", re.IGNORECASE)

CommentListener = Callable[[str, int], None]


@dataclass(slots=True)
class RawStatement:
    text: str
    line_no: int


class SqlStatementReader:
    """Character-level splitter of a SQL dump into statements.

    Tracks quoted strings, backtick identifiers, ``--``/``#`` line comments
    and ``/* */`` block comments; ``/*!`` conditional comments stay in the
    statement text. ``DELIMITER`` directives are honoured and also yielded
    so callers can count them. Full-line comments seen between statements
    go to ``on_comment`` instead of the statement stream.
    """

    def __init__(
        self,
        stream: TextIO,
        *,
        backslash_escapes: bool = True,
        on_comment: CommentListener | None = None,
    ):
        self._stream = stream
        self.backslash_escapes = backslash_escapes
        self._on_comment = on_comment
        self.delimiter = ";"
        self.lines_read = 0
        self._buffer: list[str] = []
        self._has_content = False
        self._start_line = 0
        self._quote: str | None = None
        self._in_block_comment = False
        self._keep_block_comment = False
        self._normal_pattern = self._compile_normal_pattern()

    def _compile_normal_pattern(self) -> re.Pattern[str]:
        specials = {"'", '"', "`", "#", "-", "/", self.delimiter[0]}
        return re.compile("[" + "".join(re.escape(char) for char in sorted(specials)) + "]")

    def _quote_pattern(self, quote: str) -> re.Pattern[str]:
        if quote != "`" and self.backslash_escapes:
            return re.compile("[" + re.escape(quote) + r"\\]")
        return re.compile(re.escape(quote))

    def _append(self, text: str, line_no: int) -> None:
        if not text:
            return
        if not self._has_content and text.strip():
            self._has_content = True
            self._start_line = line_no
        self._buffer.append(text)

    def _take_statement(self) -> RawStatement | None:
        text = "".join(self._buffer).strip()
        line_no = self._start_line
        self._buffer = []
        self._has_content = False
        if not text:
            return None
        return RawStatement(text=text, line_no=line_no)

    def __iter__(self) -> Iterator[RawStatement]:
        for line in self._stream:
            self.lines_read += 1
            yield from self._feed(line, self.lines_read)
        tail = self._take_statement()
        if tail is not None:
            yield tail

    def _feed(self, line: str, line_no: int) -> Iterator[RawStatement]:
        if self._quote is None and not self._in_block_comment and not self._has_content:
            stripped = line.strip()
            if not stripped:
                return
            if stripped.startswith("#") or stripped == "--" or stripped.startswith(("-- ", "--\t")):
                if self._on_comment is not None:
                    self._on_comment(stripped, line_no)
                return
            directive = DELIMITER_DIRECTIVE.match(stripped)
            if directive is not None:
                self.delimiter = directive.group(1)
                self._normal_pattern = self._compile_normal_pattern()
                self._buffer = []
                yield RawStatement(text=stripped, line_no=line_no)
                return

        position = 0
        length = len(line)
        while position < length:
            if self._in_block_comment:
                end = line.find("*/", position)
                if end < 0:
                    if self._keep_block_comment:
                        self._append(line[position:], line_no)
                    position = length
                    break
                if self._keep_block_comment:
                    self._append(line[position : end + 2], line_no)
                self._in_block_comment = False
                position = end + 2
                continue

            if self._quote is not None:
                match = self._quote_pattern(self._quote).search(line, position)
                if match is None:
                    self._append(line[position:], line_no)
                    position = length
                    break
                self._append(line[position : match.end()], line_no)
                if match.group() == "\\":
                    self._append(line[match.end() : match.end() + 1], line_no)
                    position = match.end() + 1
                else:
                    self._quote = None
                    position = match.end()
                continue

            match = self._normal_pattern.search(line, position)
            if match is None:
                self._append(line[position:], line_no)
                break
            start = match.start()
            self._append(line[position:start], line_no)
            char = match.group()

            if line.startswith(self.delimiter, start):
                position = start + len(self.delimiter)
                statement = self._take_statement()
                if statement is not None:
                    yield statement
            elif char in {"'", '"', "`"}:
                self._quote = char
                self._append(char, line_no)
                position = start + 1
            elif char == "#":
                self._append("\n", line_no)
                position = length
            elif char == "-" and line.startswith("--", start) and (start + 2 >= length or line[start + 2] in " \t\r\n"):
                self._append("\n", line_no)
                position = length
            elif char == "/" and line.startswith("/*", start):
                self._in_block_comment = True
                self._keep_block_comment = line.startswith("/*!", start)
                if self._keep_block_comment:
                    self._append("/*!", line_no)
                    position = start + 3
                else:
                    position = start + 2
            else:
                self._append(char, line_no)
                position = start + 1
