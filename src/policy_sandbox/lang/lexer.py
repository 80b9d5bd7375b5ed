"""Lexer for the restricted policy script language."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from policy_sandbox.errors import ScriptSyntaxError

KEYWORDS: frozenset[str] = frozenset({
    "true", "false", "null", "undefined",
    "let", "const", "var",
    "if", "else", "for", "of", "return",
    "and", "or", "not", "in", "await",
})

# Longest operators first so that maximal munch works with startswith().
OPERATORS: tuple[str, ...] = (
    "===", "!==",
    "==", "!=", "<=", ">=", "&&", "||", "??",
    "+", "-", "*", "/", "%", "<", ">", "!", "=",
    "(", ")", "[", "]", "{", "}", ",", ".", ":", ";", "?",
)

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "/": "/",
}


@dataclass(frozen=True)
class Token:
    """A lexical token. ``kind`` is one of num, str, name, kw, op, eof."""

    kind: str
    value: object
    line: int
    column: int


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_part(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def tokenize(source: str) -> List[Token]:
    """Turn *source* into a list of tokens terminated by an ``eof`` token.

    Raises:
        ScriptSyntaxError: on characters or literals the language rejects.
    """
    tokens: List[Token] = []
    i = 0
    n = len(source)
    line = 1
    line_start = 0

    while i < n:
        ch = source[i]
        col = i - line_start + 1

        if ch == "\n":
            line += 1
            line_start = i + 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue

        if source.startswith("//", i):
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                raise ScriptSyntaxError("Unterminated comment", line, col)
            line += source.count("\n", i, end)
            i = end + 2
            continue

        if ch.isdigit() or (ch == "." and i + 1 < n and source[i + 1].isdigit()):
            j = i
            while j < n and source[j].isdigit():
                j += 1
            is_float = False
            if j < n and source[j] == "." and j + 1 < n and source[j + 1].isdigit():
                is_float = True
                j += 1
                while j < n and source[j].isdigit():
                    j += 1
            if j < n and source[j] in "eE":
                k = j + 1
                if k < n and source[k] in "+-":
                    k += 1
                if k < n and source[k].isdigit():
                    is_float = True
                    j = k
                    while j < n and source[j].isdigit():
                        j += 1
            text = source[i:j]
            value: object = float(text) if is_float else int(text)
            tokens.append(Token("num", value, line, col))
            i = j
            continue

        if ch in ("'", '"'):
            value, i = _read_string(source, i, line, col)
            tokens.append(Token("str", value, line, col))
            continue

        if ch == "`":
            raise ScriptSyntaxError("Template literals are not supported", line, col)

        if _is_ident_start(ch):
            j = i + 1
            while j < n and _is_ident_part(source[j]):
                j += 1
            word = source[i:j]
            kind = "kw" if word in KEYWORDS else "name"
            tokens.append(Token(kind, word, line, col))
            i = j
            continue

        for op in OPERATORS:
            if source.startswith(op, i):
                tokens.append(Token("op", op, line, col))
                i += len(op)
                break
        else:
            raise ScriptSyntaxError(f"Unexpected character {ch!r}", line, col)

    tokens.append(Token("eof", None, line, n - line_start + 1))
    return tokens


def _read_string(source: str, start: int, line: int, col: int) -> tuple[str, int]:
    quote = source[start]
    out: List[str] = []
    i = start + 1
    n = len(source)
    while i < n:
        ch = source[i]
        if ch == quote:
            return "".join(out), i + 1
        if ch == "\n":
            break
        if ch == "\\":
            if i + 1 >= n:
                break
            esc = source[i + 1]
            if esc in _ESCAPES:
                out.append(_ESCAPES[esc])
                i += 2
                continue
            if esc in "xu":
                width = 2 if esc == "x" else 4
                digits = source[i + 2 : i + 2 + width]
                if len(digits) != width or any(c not in "0123456789abcdefABCDEF" for c in digits):
                    raise ScriptSyntaxError("Invalid escape sequence", line, col)
                out.append(chr(int(digits, 16)))
                i += 2 + width
                continue
            out.append(esc)
            i += 2
            continue
        out.append(ch)
        i += 1
    raise ScriptSyntaxError("Unterminated string literal", line, col)
