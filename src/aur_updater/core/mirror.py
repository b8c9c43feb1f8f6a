"""
Mirror URL rewriting.

Rules are tried in declaration order and the first rule matching both the
transport and the URL wins. URLs matching no rule are returned unchanged.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

TRANSPORTS = ("http", "git")


@dataclass(frozen=True)
class MirrorRule:
    """Replace ``matcher`` (literal substring or regex) with ``replacement``."""

    matcher: str
    transport: str
    replacement: str
    regex: bool = False

    def __post_init__(self):
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {self.transport!r}. Use 'http' or 'git'.")
        if self.regex:
            re.compile(self.matcher)

    @classmethod
    def parse(cls, text: str, transport: str = "http") -> "MirrorRule":
        """
        Parse a CLI rule of the form ``SRC=TO``.

        A ``git:`` or ``http:`` prefix selects the transport and a ``re:``
        prefix on SRC marks it as a regular expression, e.g.
        ``git:https://github.com=https://mirror.example/https://github.com``.
        """
        for name in TRANSPORTS:
            if text.startswith(f"{name}:") and not text.startswith(f"{name}://"):
                transport, text = name, text[len(name) + 1:]
                break
        if "=" not in text:
            raise ValueError(f"Invalid mirror rule {text!r}, expected SRC=TO")
        matcher, replacement = text.split("=", 1)
        regex = matcher.startswith("re:")
        if regex:
            matcher = matcher[3:]
        return cls(matcher=matcher, transport=transport, replacement=replacement, regex=regex)

    def apply(self, url: str) -> str | None:
        """Rewritten URL, or None when this rule does not match."""
        if self.regex:
            pattern = re.compile(self.matcher)
            if pattern.search(url):
                return pattern.sub(self.replacement, url, count=1)
            return None
        if self.matcher in url:
            return url.replace(self.matcher, self.replacement, 1)
        return None


DEFAULT_MIRROR_RULES = (
    MirrorRule("https://raw.githubusercontent.com", "http", "https://raw.gitmirror.com"),
    MirrorRule("https://github.com", "http", "https://hub.gitmirror.com/https://github.com"),
    MirrorRule("https://github.com", "git", "https://hub.gitmirror.com/https://github.com"),
)


class MirrorRewriter:
    """Applies an ordered list of MirrorRules to source URLs."""

    def __init__(self, rules: tuple[MirrorRule, ...] | list[MirrorRule] = ()):
        self.rules = tuple(rules)

    def rewrite(self, url: str, transport: str) -> str:
        """Return the mirror URL for ``url``, or ``url`` itself if no rule applies."""
        for rule in self.rules:
            if rule.transport != transport:
                continue
            rewritten = rule.apply(url)
            if rewritten is not None:
                if rewritten != url:
                    logger.debug(f"[Mirror] {url} -> {rewritten}")
                return rewritten
        return url


def mirror_host(url: str) -> str:
    """Host part of a URL, used to track mirror health."""
    return urlsplit(url).netloc or url
