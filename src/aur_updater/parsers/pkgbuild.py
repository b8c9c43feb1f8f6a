"""
PKGBUILD Evaluator.

Reads the unprocessed bash definition format when no exported .SRCINFO is
available. Top-level variable assignments are extracted without running any
shell, then evaluated left to right with the parameter-expansion subset that
appears in real PKGBUILDs:

    $name ${name} ${#name} ${name[i]} ${name[@]}
    ${name%pat} ${name%%pat} ${name#pat} ${name##pat}
    ${name/pat/rep} ${name//pat/rep} ${name/#pat/rep} ${name/%pat/rep}
    ${name:-word} ${name:=word} ${name:?msg} ${name:+word} (and colon-less forms)
    ${name:offset} ${name:offset:length}
    ${name^} ${name^^} ${name,} ${name,,}

References to unknown variables are left as written. Command substitution
and arithmetic expansion are never executed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from aur_updater.core.errors import MalformedMetadataError, UnboundRequiredVariableError
from aur_updater.models.package import MetadataRecord

logger = logging.getLogger(__name__)

Assignment = tuple[str, str, bool]  # (name, raw value, is append)
Value = str | list[str]

_ASSIGN_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)(\+?)=")
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_PARAM_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|[0-9]+")
_SPLICE_RE = re.compile(r'"?\$\{([A-Za-z_][A-Za-z0-9_]*)\[[@*]\]\}"?')
_ARITH_RE = re.compile(r"[-+]?\d+(?:[-+]\d+)*")
_GLOB_SPECIAL = set("*?[]\\")


# ──────────────────────────────────────────────
# Scanning
# ──────────────────────────────────────────────


def extract_assignments(content: str) -> list[Assignment]:
    """
    Extract top-level shell assignments from PKGBUILD text.

    Assignments inside function bodies, conditionals and comments are
    skipped. Values are returned raw: quotes and parentheses are kept.

    Args:
        content: Raw PKGBUILD text.

    Returns:
        Ordered list of (name, raw value, append) triples.
    """
    assignments: list[Assignment] = []
    n = len(content)
    pos = 0
    depth = 0

    while pos < n:
        while pos < n and content[pos] in " \t\r\n;":
            pos += 1
        if pos >= n:
            break

        if content[pos] == "#":
            pos = _line_end(content, pos)
            continue

        if depth == 0:
            match = _ASSIGN_RE.match(content, pos)
            if match:
                end = _scan_value(content, match.end())
                assignments.append((match.group(1), content[match.end():end], bool(match.group(2))))
                pos = end
                continue

        pos, depth = _skip_statement(content, pos, depth)

    return assignments


def _line_end(s: str, i: int) -> int:
    end = s.find("\n", i)
    return len(s) if end == -1 else end


def _skip_quoted(s: str, i: int) -> int:
    """Index just past the quoted span starting at ``s[i]``, or -1 if unterminated."""
    quote = s[i]
    j = i + 1
    n = len(s)
    if quote == "'":
        end = s.find("'", j)
        return -1 if end == -1 else end + 1
    while j < n:
        c = s[j]
        if c == "\\":
            j += 2
            continue
        if c == "$" and j + 1 < n and s[j + 1] in "{(":
            j = _match_close(s, j + 1)
            continue
        if c == '"':
            return j + 1
        j += 1
    return -1


def _match_close(s: str, i: int) -> int:
    """Index just past the bracket closing the one at ``s[i]`` ('{' or '(')."""
    opening = s[i]
    closing = "}" if opening == "{" else ")"
    depth = 0
    j = i
    n = len(s)
    while j < n:
        c = s[j]
        if c == "\\":
            j += 2
            continue
        if c in "'\"" and j > i:
            end = _skip_quoted(s, j)
            if end == -1:
                return n
            j = end
            continue
        if c == opening:
            depth += 1
        elif c == closing:
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return n


def _scan_value(s: str, i: int) -> int:
    """Index just past the raw assignment value starting at ``s[i]``."""
    n = len(s)
    if i < n and s[i] == "(":
        j = i + 1
        while j < n:
            c = s[j]
            if c == ")":
                return j + 1
            if c == "#" and s[j - 1].isspace():
                j = _line_end(s, j)
                continue
            j = _scan_word_char(s, j)
        raise MalformedMetadataError(f"unterminated array starting at offset {i}")

    j = i
    while j < n and s[j] not in " \t\r\n;":
        j = _scan_word_char(s, j)
    return j


def _scan_word_char(s: str, j: int) -> int:
    """Advance over one word element: a quoted span, an expansion or one character."""
    c = s[j]
    if c == "\\":
        return j + 2
    if c in "'\"":
        end = _skip_quoted(s, j)
        if end == -1:
            raise MalformedMetadataError(f"unterminated quote at offset {j}")
        return end
    if c == "$" and j + 1 < len(s) and s[j + 1] in "{(":
        return _match_close(s, j + 1)
    return j + 1


def _skip_statement(s: str, pos: int, depth: int) -> tuple[int, int]:
    """Skip a non-assignment line, tracking function-body brace depth."""
    n = len(s)
    i = pos
    while i < n and s[i] != "\n":
        c = s[i]
        if c == "#" and (i == pos or s[i - 1].isspace()):
            return _line_end(s, i), depth
        if c == "\\":
            i += 2
            continue
        if c in "'\"":
            end = _skip_quoted(s, i)
            i = n if end == -1 else end
            continue
        if c == "$" and i + 1 < n and s[i + 1] in "{(":
            i = _match_close(s, i + 1)
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth = max(0, depth - 1)
        i += 1
    return i, depth


def _split_words(inner: str) -> list[str]:
    """Split the body of an array literal into raw words, dropping comments."""
    words = []
    n = len(inner)
    i = 0
    while i < n:
        if inner[i].isspace():
            i += 1
            continue
        if inner[i] == "#":
            i = _line_end(inner, i)
            continue
        start = i
        while i < n and not inner[i].isspace():
            i = _scan_word_char(inner, i)
        words.append(inner[start:i])
    return words


def _split_unquoted(s: str, sep: str) -> tuple[str, str | None]:
    """Split on the first ``sep`` outside quotes, escapes and expansions."""
    i = 0
    n = len(s)
    while i < n:
        if s[i] == sep:
            return s[:i], s[i + 1:]
        i = _scan_word_char(s, i)
    return s, None


# ──────────────────────────────────────────────
# Glob patterns
# ──────────────────────────────────────────────


def _glob_escape(text: str) -> str:
    return "".join(f"\\{c}" if c in _GLOB_SPECIAL else c for c in text)


def _glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a shell glob (``*``, ``?``, ``[...]``, ``\\x``) to a regex."""
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if c == "*":
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                negate = body[:1] in ("!", "^")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\").replace("[", "\\[")
                out.append(f"[{'^' if negate else ''}{body}]")
                i = j + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out), re.DOTALL)


def remove_suffix(value: str, pattern: str, longest: bool = False) -> str:
    """``${v%pat}`` / ``${v%%pat}``"""
    regex = _glob_to_regex(pattern)
    starts = range(len(value) + 1) if longest else range(len(value), -1, -1)
    for start in starts:
        if regex.fullmatch(value, start):
            return value[:start]
    return value


def remove_prefix(value: str, pattern: str, longest: bool = False) -> str:
    """``${v#pat}`` / ``${v##pat}``"""
    regex = _glob_to_regex(pattern)
    ends = range(len(value), -1, -1) if longest else range(len(value) + 1)
    for end in ends:
        if regex.fullmatch(value, 0, end):
            return value[end:]
    return value


def replace_pattern(value: str, pattern: str, replacement: str, mode: str = "first") -> str:
    """
    ``${v/pat/rep}`` family. ``mode`` is one of first, all, prefix, suffix.

    Matches are longest-first at each position; empty matches never replace.
    """
    if not pattern:
        return value
    regex = _glob_to_regex(pattern)
    n = len(value)

    if mode == "prefix":
        for end in range(n, 0, -1):
            if regex.fullmatch(value, 0, end):
                return replacement + value[end:]
        return value
    if mode == "suffix":
        for start in range(n):
            if regex.fullmatch(value, start, n):
                return value[:start] + replacement
        return value

    out = []
    i = 0
    while i < n:
        end = next((e for e in range(n, i, -1) if regex.fullmatch(value, i, e)), None)
        if end is None:
            out.append(value[i])
            i += 1
            continue
        out.append(replacement)
        i = end
        if mode == "first":
            out.append(value[i:])
            return "".join(out)
    return "".join(out)


# ──────────────────────────────────────────────
# Evaluation
# ──────────────────────────────────────────────


class Evaluator:
    """
    Evaluates assignments against an environment built up left to right.

    The environment lives for one definition only; create a new Evaluator
    per PKGBUILD.
    """

    def __init__(self, variables: Mapping[str, Value] | None = None):
        self.variables: dict[str, Value] = dict(variables or {})

    def evaluate(self, assignments: Iterable[Assignment]) -> dict[str, Value]:
        """Evaluate assignments in order and return the resulting variable map."""
        for name, raw, append in assignments:
            raw = raw.strip()
            if raw.startswith("(") and raw.endswith(")"):
                value: Value = self.expand_array(raw[1:-1])
            else:
                value = self.expand_word(raw)

            if append and name in self.variables:
                old = self.variables[name]
                if isinstance(old, list) or isinstance(value, list):
                    value = _as_list(old) + _as_list(value)
                else:
                    value = old + value
            self.variables[name] = value
        return dict(self.variables)

    # --- words ---

    def expand_array(self, inner: str) -> list[str]:
        """Unwrap and expand the words of an array literal body."""
        items: list[str] = []
        for word in _split_words(inner):
            splice = _SPLICE_RE.fullmatch(word)
            if splice and isinstance(self.variables.get(splice.group(1)), list):
                items.extend(self.variables[splice.group(1)])
                continue
            items.append(self.expand_word(word))
        return items

    def expand_word(self, word: str, pattern: bool = False) -> str:
        """
        Remove quoting from ``word`` and expand parameters in it.

        With ``pattern=True`` quoted text is glob-escaped so it matches
        literally, and unquoted backslash escapes are kept for the glob.
        """
        out = []
        i = 0
        n = len(word)
        while i < n:
            c = word[i]
            if c == "'":
                end = word.find("'", i + 1)
                end = n if end == -1 else end
                text = word[i + 1:end]
                out.append(_glob_escape(text) if pattern else text)
                i = end + 1
            elif c == '"':
                end = _skip_quoted(word, i)
                end = n + 1 if end == -1 else end
                text = self._expand_double(word[i + 1:end - 1])
                out.append(_glob_escape(text) if pattern else text)
                i = end
            elif c == "\\" and i + 1 < n:
                if word[i + 1] != "\n":
                    out.append(word[i:i + 2] if pattern else word[i + 1])
                i += 2
            elif c == "$":
                text, i = self._expand_dollar(word, i)
                out.append(text)
            else:
                out.append(c)
                i += 1
        return "".join(out)

    def _expand_double(self, inner: str) -> str:
        out = []
        i = 0
        n = len(inner)
        while i < n:
            c = inner[i]
            if c == "\\" and i + 1 < n:
                nxt = inner[i + 1]
                if nxt in '$"\\`':
                    out.append(nxt)
                elif nxt != "\n":
                    out.append(inner[i:i + 2])
                i += 2
            elif c == "$":
                text, i = self._expand_dollar(inner, i)
                out.append(text)
            else:
                out.append(c)
                i += 1
        return "".join(out)

    def _expand_dollar(self, s: str, i: int) -> tuple[str, int]:
        """Expand the ``$`` construct at ``s[i]``; returns (text, next index)."""
        n = len(s)
        if i + 1 >= n:
            return "$", i + 1
        nxt = s[i + 1]
        if nxt == "{":
            end = _match_close(s, i + 1)
            return self._expand_parameter(s[i + 2:end - 1], s[i:end]), end
        if nxt == "(":
            # command substitution / arithmetic: never executed
            end = _match_close(s, i + 1)
            return s[i:end], end
        match = _NAME_RE.match(s, i + 1)
        if match:
            name = match.group(0)
            if name in self.variables:
                return _scalar(self.variables[name]), match.end()
            return s[i:match.end()], match.end()
        return "$", i + 1

    # --- ${...} ---

    def _expand_parameter(self, body: str, literal: str) -> str:
        if body.startswith("#") and len(body) > 1:
            return self._expand_length(body[1:], literal)

        match = _PARAM_RE.match(body)
        if not match:
            return literal
        name = match.group(0)
        pos = match.end()

        subscript = None
        if pos < len(body) and body[pos] == "[":
            close = body.find("]", pos)
            if close == -1:
                return literal
            subscript = body[pos + 1:close]
            pos = close + 1

        is_set = name in self.variables
        try:
            value = self._lookup(name, subscript) if is_set else ""
        except ValueError:
            return literal
        rest = body[pos:]

        if not rest:
            return value if is_set else literal

        # ${name:-word} family and colon-less variants
        if rest[0] == ":" and len(rest) > 1 and rest[1] in "-=?+":
            return self._expand_conditional(name, rest[1], rest[2:], is_set, value, check_null=True)
        if rest[0] in "-=?+":
            return self._expand_conditional(name, rest[0], rest[1:], is_set, value, check_null=False)

        if not is_set:
            return literal

        try:
            return self._expand_operator(rest, value)
        except ValueError as e:
            logger.debug(f"[PKGBUILD] leaving {literal} unexpanded: {e}")
            return literal

    def _expand_length(self, body: str, literal: str) -> str:
        match = _PARAM_RE.fullmatch(body) or re.fullmatch(r"([A-Za-z_][A-Za-z0-9_]*)\[[@*]\]", body)
        if not match:
            return literal
        name = match.group(1) if match.lastindex else match.group(0)
        if name not in self.variables:
            return literal
        value = self.variables[name]
        if isinstance(value, list) and body.endswith("]"):
            return str(len(value))
        return str(len(_scalar(value)))

    def _lookup(self, name: str, subscript: str | None) -> str:
        value = self.variables[name]
        if subscript in ("@", "*"):
            return " ".join(_as_list(value))
        if subscript is not None:
            index = int(_arith(self.expand_word(subscript)))
            items = _as_list(value)
            return items[index] if -len(items) <= index < len(items) else ""
        return _scalar(value)

    def _expand_conditional(
        self, name: str, op: str, arg: str, is_set: bool, value: str, check_null: bool
    ) -> str:
        missing = not is_set or (check_null and value == "")
        if op == "-":
            return self.expand_word(arg) if missing else value
        if op == "=":
            if missing:
                value = self.expand_word(arg)
                self.variables[name] = value
            return value
        if op == "?":
            if missing:
                raise UnboundRequiredVariableError(name, self.expand_word(arg))
            return value
        # "+"
        return "" if missing else self.expand_word(arg)

    def _expand_operator(self, rest: str, value: str) -> str:
        for op, longest in (("%%", True), ("##", True), ("%", False), ("#", False)):
            if rest.startswith(op):
                pattern = self.expand_word(rest[len(op):], pattern=True)
                if op[0] == "%":
                    return remove_suffix(value, pattern, longest)
                return remove_prefix(value, pattern, longest)

        if rest.startswith("/"):
            spec = rest[1:]
            mode = "first"
            if spec.startswith("/"):
                mode, spec = "all", spec[1:]
            elif spec.startswith("#"):
                mode, spec = "prefix", spec[1:]
            elif spec.startswith("%"):
                mode, spec = "suffix", spec[1:]
            pattern, replacement = _split_unquoted(spec, "/")
            return replace_pattern(
                value,
                self.expand_word(pattern, pattern=True),
                self.expand_word(replacement or ""),
                mode,
            )

        for op in ("^^", ",,", "^", ","):
            if rest.startswith(op):
                if not value:
                    return value
                if op == "^^":
                    return value.upper()
                if op == ",,":
                    return value.lower()
                head = value[0].upper() if op == "^" else value[0].lower()
                return head + value[1:]

        if rest.startswith(":"):
            offset_text, length_text = _split_unquoted(rest[1:], ":")
            offset = _arith(self.expand_word(offset_text))
            start = offset if offset >= 0 else max(len(value) + offset, 0)
            if offset < 0 and len(value) + offset < 0:
                return ""
            if length_text is None:
                return value[start:]
            length = _arith(self.expand_word(length_text))
            end = start + length if length >= 0 else len(value) + length
            return value[start:end] if end > start else ""

        raise ValueError(f"unsupported expansion operator {rest!r}")


def _as_list(value: Value) -> list[str]:
    return list(value) if isinstance(value, list) else [value]


def _scalar(value: Value) -> str:
    """Bash semantics: an array referenced without subscript yields element 0."""
    if isinstance(value, list):
        return value[0] if value else ""
    return value


def _arith(text: str) -> int:
    """Evaluate the integer sums allowed in substring offsets, e.g. ``(-1)``, ``2+1``."""
    compact = re.sub(r"\s+", "", text)
    while compact.startswith("(") and compact.endswith(")"):
        compact = compact[1:-1]
    if not compact:
        return 0
    if not _ARITH_RE.fullmatch(compact):
        raise ValueError(f"not a simple integer expression: {text!r}")
    return sum(int(term) for term in re.findall(r"[-+]?\d+", compact))


# ──────────────────────────────────────────────
# Public entry points
# ──────────────────────────────────────────────


def evaluate(assignments: Mapping[str, str] | Iterable[Assignment]) -> dict[str, Value]:
    """
    Evaluate raw assignments into a ``key -> value | [values]`` map.

    Args:
        assignments: Either a mapping of name to raw value, or the ordered
            triples returned by extract_assignments.

    Raises:
        UnboundRequiredVariableError: A ``:?`` expansion hit an unset variable.
    """
    if isinstance(assignments, Mapping):
        assignments = [(name, raw, False) for name, raw in assignments.items()]
    return Evaluator().evaluate(assignments)


def parse_pkgbuild(content: str) -> MetadataRecord:
    """
    Parse raw PKGBUILD content into a MetadataRecord.

    Split packages (``pkgname`` arrays) become one variant per name. Overrides
    made inside ``package_*()`` functions are not evaluated.

    Raises:
        MalformedMetadataError: No package name could be determined.
        UnboundRequiredVariableError: A ``:?`` expansion failed.
    """
    variables = evaluate(extract_assignments(content))

    names = [n for n in _as_list(variables.get("pkgname", [])) if n]
    if not names:
        raise MalformedMetadataError("PKGBUILD declares no pkgname")
    base_name = variables.get("pkgbase") or names[0]
    if isinstance(base_name, list):
        base_name = base_name[0]

    children = [(name, {"pkgname": name}) for name in names] if len(names) > 1 else []
    record = MetadataRecord.from_blocks(base_name, variables, children)
    logger.debug(f"[PKGBUILD] {base_name}: {len(variables)} variables, {len(record.variants)} variant(s)")
    return record
