"""Static validator for sandboxed code fragments.

Token-based analysis of a condition, action or script before anything runs.
Every check contributes independently: the validator never stops at the first
problem, so callers always see the full risk picture.

Checks that produce violations (any violation blocks execution):
- size limit                                   -> high
- blocked identifiers as whole tokens          -> critical
- dangerous adjacent-token sequences           -> critical
- unbalanced brackets / unterminated literals  -> high
- prototype-chain tampering vocabulary         -> critical
- module loading shapes                        -> critical

Checks that produce warnings (never block):
- obfuscation heuristics (char codes, base64, deep nesting, escapes)
- code-like content inside string literals

Pure function, no I/O, no state.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from policy_sandbox.config import ValidatorConfig

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Violation severity, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class Violation:
    """One finding of the validator."""

    kind: str
    severity: Severity
    message: str


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of :func:`validate`. Never mutated after creation."""

    valid: bool
    violations: Tuple[Violation, ...] = ()
    warnings: Tuple[Violation, ...] = ()
    risk: Severity = Severity.LOW

    @property
    def errors(self) -> List[str]:
        """Violation messages, in detection order."""
        return [v.message for v in self.violations]

    def summary(self) -> str:
        if self.valid:
            return "valid"
        return "; ".join(self.errors)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "risk": self.risk.value,
            "violations": [
                {"kind": v.kind, "severity": v.severity.value, "message": v.message}
                for v in self.violations
            ],
            "warnings": [
                {"kind": w.kind, "severity": w.severity.value, "message": w.message}
                for w in self.warnings
            ],
        }


# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

DANGEROUS_SEQUENCES: tuple[tuple[str, str], ...] = (
    # dynamic evaluation
    ("eval", "("),
    ("exec", "("),
    ("compile", "("),
    ("Function", "("),
    ("new", "Function"),
    # constructor access
    ("constructor", "["),
    ("constructor", "("),
    # prototype mutation
    ("__proto__", "="),
    ("prototype", "["),
    # host access
    ("process", "."),
    ("global", "."),
    ("globalThis", "."),
    # deferred execution
    ("setTimeout", "("),
    ("setInterval", "("),
    # dynamic import
    ("import", "("),
    ("require", "("),
    ("__import__", "("),
)

_DANGEROUS_SET = frozenset(DANGEROUS_SEQUENCES)

PROTOTYPE_POLLUTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"__proto__"),
    re.compile(r"\.prototype\s*\["),
    re.compile(r"constructor\s*\[\s*['\"]constructor['\"]\s*\]"),
    re.compile(r"Object\.setPrototypeOf"),
    re.compile(r"Object\.defineProperty.*prototype"),
    re.compile(r"__(?:class|bases|mro|subclasses)__"),
)

_IMPORT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bimport\s*\("), "Dynamic import() detected"),
    (re.compile(r"\brequire\s*\("), "require() detected"),
    (re.compile(r"\bimport\s+.*\s+from\b"), "ES module import statement detected"),
    (re.compile(r"^\s*from\s+[\w.]+\s+import\b", re.MULTILINE), "Python import statement detected"),
)

_RE_CHAR_CODE = re.compile(r"String\.fromCharCode|\bchr\s*\(", re.IGNORECASE)
_RE_BASE64 = re.compile(r"\b(?:atob|btoa|b64decode|b64encode)\b", re.IGNORECASE)
_RE_ESCAPES = re.compile(r"\\x[0-9a-f]{2}|\\u[0-9a-f]{4}", re.IGNORECASE)
_RE_CODE_IN_STRING = re.compile(
    r"function\s*\(|=>\s*\{|eval\(|new\s+Function|\blambda\b|\bdef\s+\w+\s*\(",
    re.IGNORECASE,
)
_RE_TOKEN = re.compile(r"\w+|[^\w\s]")

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")", "]", "}"}


# ---------------------------------------------------------------------------
# Literal stripping and tokenization
# ---------------------------------------------------------------------------


@dataclass
class _Stripped:
    code: str
    literals: List[str] = field(default_factory=list)
    unterminated: Optional[str] = None


def strip_literals(code: str) -> _Stripped:
    """Replace string and template literal bodies with empty placeholders.

    Single pass. Returns the stripped code together with the literal bodies
    (quotes included) so that they can be inspected separately.
    """
    out: List[str] = []
    literals: List[str] = []
    i = 0
    n = len(code)
    while i < n:
        ch = code[i]
        if ch in ("'", '"', "`"):
            quote = ch
            j = i + 1
            while j < n and code[j] != quote:
                j += 2 if code[j] == "\\" else 1
            if j >= n:
                literals.append(code[i:])
                out.append(quote + quote)
                return _Stripped("".join(out), literals, unterminated=quote)
            literals.append(code[i : j + 1])
            out.append(quote + quote)
            i = j + 1
            continue
        out.append(ch)
        i += 1
    return _Stripped("".join(out), literals)


def tokenize(code: str) -> List[str]:
    """Split literal-stripped code into word and punctuation tokens."""
    return _RE_TOKEN.findall(strip_literals(code).code)


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_blocklist(tokens: List[str], blocked: frozenset[str]) -> List[Violation]:
    found: dict[str, int] = {}
    for tok in tokens:
        if tok in blocked:
            found[tok] = found.get(tok, 0) + 1
    return [
        Violation(
            kind="blocked_identifier",
            severity=Severity.CRITICAL,
            message=f"Blocked identifier detected: {name} ({count} occurrences)",
        )
        for name, count in found.items()
    ]


def _check_sequences(tokens: List[str]) -> List[Violation]:
    violations: List[Violation] = []
    for first, second in zip(tokens, tokens[1:]):
        if (first, second) in _DANGEROUS_SET:
            violations.append(
                Violation(
                    kind="dangerous_sequence",
                    severity=Severity.CRITICAL,
                    message=f"Dangerous sequence detected: {first}{second}",
                )
            )
    return violations


def _check_brackets(stripped: str) -> Optional[Violation]:
    stack: List[str] = []
    for ch in stripped:
        if ch in _OPENERS:
            stack.append(ch)
        elif ch in _CLOSERS:
            last = stack.pop() if stack else None
            if last is None or _OPENERS[last] != ch:
                expected = _OPENERS[last] if last else "nothing"
                return Violation(
                    kind="unbalanced_brackets",
                    severity=Severity.HIGH,
                    message=f"Unbalanced brackets: expected {expected}, got {ch}",
                )
    if stack:
        return Violation(
            kind="unbalanced_brackets",
            severity=Severity.HIGH,
            message=f"Unbalanced brackets: unclosed {', '.join(stack)}",
        )
    return None


def max_nesting(stripped: str) -> int:
    """Maximum bracket nesting depth of literal-stripped code."""
    depth = 0
    deepest = 0
    for ch in stripped:
        if ch in _OPENERS:
            depth += 1
            deepest = max(deepest, depth)
        elif ch in _CLOSERS:
            depth -= 1
    return deepest


def _check_pollution(code: str) -> List[Violation]:
    return [
        Violation(
            kind="prototype_pollution",
            severity=Severity.CRITICAL,
            message=f"Prototype pollution pattern detected: {pattern.pattern}",
        )
        for pattern in PROTOTYPE_POLLUTION_PATTERNS
        if pattern.search(code)
    ]


def _check_imports(stripped: str) -> List[Violation]:
    return [
        Violation(kind="dynamic_import", severity=Severity.CRITICAL, message=message)
        for pattern, message in _IMPORT_PATTERNS
        if pattern.search(stripped)
    ]


def _check_obfuscation(code: str, stripped: str, limit: int) -> List[Violation]:
    warnings: List[Violation] = []
    if _RE_CHAR_CODE.search(code):
        warnings.append(
            Violation("obfuscation", Severity.MEDIUM, "Character code construction detected")
        )
    if _RE_BASE64.search(code):
        warnings.append(
            Violation("obfuscation", Severity.MEDIUM, "Base64 encoding/decoding detected")
        )
    depth = max_nesting(stripped)
    if depth > limit:
        warnings.append(
            Violation(
                "deep_nesting",
                Severity.MEDIUM,
                f"Deep bracket nesting detected ({depth} levels)",
            )
        )
    if _RE_ESCAPES.search(code):
        warnings.append(
            Violation("escape_sequence", Severity.MEDIUM, "Hex/Unicode escape sequences detected")
        )
    return warnings


def _check_string_literals(literals: List[str]) -> List[Violation]:
    return [
        Violation(
            kind="string_code",
            severity=Severity.MEDIUM,
            message=f"String literal contains code-like content: {literal[:30]}...",
        )
        for literal in literals
        if _RE_CODE_IN_STRING.search(literal)
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate(code: str, limits: Optional[ValidatorConfig] = None) -> ValidationResult:
    """Validate *code* against the configured limits.

    Args:
        code: Source text of a condition, action or script.
        limits: Validator limits. Defaults to :class:`ValidatorConfig`.

    Returns:
        ValidationResult with ``valid`` True only when no violation fired.
    """
    limits = limits or ValidatorConfig()
    violations: List[Violation] = []

    truncated = len(code) > limits.max_code_size
    if truncated:
        violations.append(
            Violation(
                kind="size",
                severity=Severity.HIGH,
                message=(
                    f"Code size exceeds maximum allowed "
                    f"({len(code)} > {limits.max_code_size})"
                ),
            )
        )
        # Analysis is bounded by the size limit.
        code = code[: limits.max_code_size]

    stripped = strip_literals(code)
    tokens = _RE_TOKEN.findall(stripped.code)

    violations.extend(_check_blocklist(tokens, frozenset(limits.blocked_identifiers)))
    violations.extend(_check_sequences(tokens))

    if stripped.unterminated is not None and not truncated:
        violations.append(
            Violation(
                kind="unterminated_literal",
                severity=Severity.HIGH,
                message=f"Unterminated string literal ({stripped.unterminated})",
            )
        )
    if not truncated:
        balance = _check_brackets(stripped.code)
        if balance is not None:
            violations.append(balance)

    violations.extend(_check_pollution(code))
    violations.extend(_check_imports(stripped.code))

    warnings = _check_obfuscation(code, stripped.code, limits.max_nesting)
    warnings.extend(_check_string_literals(stripped.literals))

    risk = Severity.LOW
    for finding in (*violations, *warnings):
        if finding.severity.rank > risk.rank:
            risk = finding.severity

    if violations:
        logger.debug(
            "[SANDBOX_VALIDATOR] Rejected code (%d violations, risk=%s)",
            len(violations),
            risk.value,
        )

    return ValidationResult(
        valid=not violations,
        violations=tuple(violations),
        warnings=tuple(warnings),
        risk=risk,
    )
