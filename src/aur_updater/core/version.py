"""
Package version comparison.

Same ordering as pacman's ``vercmp``: versions are ``[epoch:]version[-release]``
and each component is compared segment by segment, where numeric segments
beat alphabetic ones and a trailing alphabetic segment marks a pre-release.
"""

import re

_DIGITS = re.compile(r"[0-9]+")
_ALPHA = re.compile(r"[A-Za-z]+")
_SEPARATOR = re.compile(r"[^A-Za-z0-9]*")


def parse_evr(version: str) -> tuple[str, str, str | None]:
    """'1:2.0-3' -> ('1', '2.0', '3'); missing epoch is '0', missing release None."""
    epoch = "0"
    match = re.match(r"([0-9]*):", version)
    if match:
        epoch = match.group(1) or "0"
        version = version[match.end():]
    release = None
    if "-" in version:
        version, release = version.rsplit("-", 1)
    return epoch, version, release


def _is_alpha(c: str) -> bool:
    return c.isascii() and c.isalpha()


def rpmvercmp(a: str, b: str) -> int:
    """Compare one version component; returns -1, 0 or 1."""
    if a == b:
        return 0
    i = j = 0
    while i < len(a) and j < len(b):
        sep_a = _SEPARATOR.match(a, i).end()
        sep_b = _SEPARATOR.match(b, j).end()
        if sep_a >= len(a) or sep_b >= len(b):
            i, j = sep_a, sep_b
            break
        if sep_a - i != sep_b - j:
            return -1 if sep_a - i < sep_b - j else 1
        i, j = sep_a, sep_b

        numeric = "0" <= a[i] <= "9"
        pattern = _DIGITS if numeric else _ALPHA
        seg_a = pattern.match(a, i)
        seg_b = pattern.match(b, j)
        if seg_b is None:
            # numeric segments are newer than alphabetic ones
            return 1 if numeric else -1
        i, j = seg_a.end(), seg_b.end()

        left, right = seg_a.group(0), seg_b.group(0)
        if numeric:
            left, right = left.lstrip("0"), right.lstrip("0")
            if len(left) != len(right):
                return 1 if len(left) > len(right) else -1
        if left != right:
            return 1 if left > right else -1

    rest_a, rest_b = a[i:], b[j:]
    if not rest_a and not rest_b:
        return 0
    # a remaining alpha segment never beats an empty one
    if (not rest_a and not _is_alpha(rest_b[0])) or (rest_a and _is_alpha(rest_a[0])):
        return -1
    return 1


def vercmp(a: str, b: str) -> int:
    """
    Compare two full package versions.

    Returns:
        Negative if ``a`` is older, zero if equal, positive if ``a`` is newer.
    """
    if a == b:
        return 0
    epoch_a, version_a, release_a = parse_evr(a)
    epoch_b, version_b, release_b = parse_evr(b)
    result = rpmvercmp(epoch_a, epoch_b)
    if result == 0:
        result = rpmvercmp(version_a, version_b)
    if result == 0 and release_a and release_b:
        result = rpmvercmp(release_a, release_b)
    return result
