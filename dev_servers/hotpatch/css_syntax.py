"""Well-formedness check for style sheet text.

Two passes: a bracket scan catches unterminated comments and strings and
unbalanced brackets (tinycss2 silently closes those at end of input), then
tinycss2 parses rules and declarations and every parse error is reported.
Property names and values are not checked against any grammar.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import tinycss2

from .errors import StylesheetSyntaxError

_OPENERS = {"{": "}", "(": ")", "[": "]"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}

# At-rules whose block holds declarations rather than rules.
_DECLARATION_AT_RULES = {"font-face", "page", "counter-style", "property", "font-palette-values", "viewport"}


@dataclass(frozen=True, slots=True)
class CssSyntaxIssue:
    message: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}: {self.message}"


def _position(text: str, index: int) -> tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    col = index - (text.rfind("\n", 0, index) + 1) + 1
    return line, col


def _issue(text: str, index: int, message: str) -> CssSyntaxIssue:
    line, col = _position(text, index)
    return CssSyntaxIssue(message, line, col)


def _skip_string(text: str, start: int) -> tuple[int, bool]:
    """Return (index after the closing quote, terminated)."""
    quote = text[start]
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1, True
        if ch == "\n":
            return i, False
        i += 1
    return n, False


def _scan_brackets(text: str) -> list[CssSyntaxIssue]:
    issues: list[CssSyntaxIssue] = []
    stack: list[tuple[str, int]] = []
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if ch == "/" and text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                issues.append(_issue(text, i, "unterminated comment"))
                break
            i = end + 2
            continue

        if ch in "\"'":
            nxt, terminated = _skip_string(text, i)
            if not terminated:
                issues.append(_issue(text, i, "unterminated string"))
            i = nxt
            continue

        if ch == "\\":
            i += 2
            continue

        if ch in _OPENERS:
            stack.append((ch, i))
        elif ch in _CLOSERS:
            if not stack:
                issues.append(_issue(text, i, f"unexpected '{ch}'"))
            else:
                opener, opened_at = stack.pop()
                if opener != _CLOSERS[ch]:
                    line, col = _position(text, opened_at)
                    issues.append(_issue(text, i, f"'{ch}' does not close '{opener}' opened at {line}:{col}"))
        i += 1

    for opener, opened_at in reversed(stack):
        issues.append(_issue(text, opened_at, f"unclosed '{opener}'"))

    return issues


def _blank(tokens: list[Any]) -> bool:
    return all(t.type in ("whitespace", "comment") for t in tokens)


def _node_issue(node: Any, message: str) -> CssSyntaxIssue:
    return CssSyntaxIssue(message, node.source_line, node.source_column)


def _check_nodes(nodes: list[Any], issues: list[CssSyntaxIssue], *, nested: bool) -> None:
    for node in nodes:
        if node.type == "error":
            issues.append(_node_issue(node, node.message))
        elif node.type == "qualified-rule":
            if _blank(node.prelude):
                issues.append(_node_issue(node, "missing selector"))
            _check_block(node.content, issues)
        elif node.type == "at-rule":
            if node.content is None:
                continue
            if nested or node.lower_at_keyword in _DECLARATION_AT_RULES:
                _check_block(node.content, issues)
            else:
                rules = tinycss2.parse_rule_list(node.content, skip_comments=True, skip_whitespace=True)
                _check_nodes(rules, issues, nested=False)
        elif node.type == "declaration":
            if _blank(node.value) and not node.name.startswith("--"):
                issues.append(_node_issue(node, f"empty value for '{node.name}'"))


def _check_block(content: list[Any], issues: list[CssSyntaxIssue]) -> None:
    items = tinycss2.parse_blocks_contents(content, skip_comments=True, skip_whitespace=True)
    _check_nodes(items, issues, nested=True)


def validate_stylesheet(text: str) -> list[CssSyntaxIssue]:
    """Return the problems in text; an empty list means well-formed."""
    issues = _scan_brackets(text)
    if issues:
        return issues
    rules = tinycss2.parse_stylesheet(text, skip_comments=True, skip_whitespace=True)
    _check_nodes(rules, issues, nested=False)
    return issues


def check_stylesheet(text: str) -> None:
    """Raise StylesheetSyntaxError if text is not well-formed."""
    issues = validate_stylesheet(text)
    if issues:
        raise StylesheetSyntaxError(issues)


__all__ = ["CssSyntaxIssue", "check_stylesheet", "validate_stylesheet"]
