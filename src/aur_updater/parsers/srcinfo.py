"""
.SRCINFO Parser.

Parses the exported, pre-expanded definition format produced by
``makepkg --printsrcinfo`` into a MetadataRecord. Blocks are separated by
blank lines: the first block describes the package base, every following
block one variant.
"""

import logging
from pathlib import Path

from aur_updater.core.errors import MalformedMetadataError
from aur_updater.models.package import MetadataRecord

logger = logging.getLogger(__name__)

# Keys that never become lists, even when repeated (last occurrence wins)
DEFAULT_SCALAR_KEYS = frozenset({"pkgname", "pkgver", "pkgrel", "epoch", "pkgdesc", "url", "license"})

BASE_KEY = "pkgbase"
VARIANT_KEY = "pkgname"


def parse_srcinfo(content: str, scalar_keys: frozenset[str] = DEFAULT_SCALAR_KEYS) -> MetadataRecord:
    """
    Parse .SRCINFO content into a MetadataRecord.

    Args:
        content: Raw .SRCINFO text.
        scalar_keys: Keys kept scalar even when repeated.

    Returns:
        MetadataRecord with one variant per child block (or one implicit
        variant when the definition has no child blocks).

    Raises:
        MalformedMetadataError: On structurally impossible input.
    """
    blocks = _split_blocks(content)
    if not blocks:
        raise MalformedMetadataError("definition is empty")

    base = _parse_block(blocks[0], scalar_keys | {BASE_KEY})
    base_name = base.get(BASE_KEY) or base.get(VARIANT_KEY)
    if not base_name:
        raise MalformedMetadataError(f"base block declares neither {BASE_KEY} nor {VARIANT_KEY}")

    children = []
    for lines in blocks[1:]:
        block = _parse_block(lines, scalar_keys | {BASE_KEY})
        if BASE_KEY in block:
            raise MalformedMetadataError(f"line {lines[0][0]}: {BASE_KEY} outside the base block")
        name = block.get(VARIANT_KEY)
        if not name:
            raise MalformedMetadataError(f"line {lines[0][0]}: variant block without {VARIANT_KEY}")
        children.append((name, block))

    record = MetadataRecord.from_blocks(base_name, base, children)
    logger.debug(f"[SRCINFO] {base_name}: {len(record.variants)} variant(s)")
    return record


def load_srcinfo(path: Path, scalar_keys: frozenset[str] = DEFAULT_SCALAR_KEYS) -> MetadataRecord:
    """Read and parse a .SRCINFO file."""
    return parse_srcinfo(path.read_text(encoding="utf-8"), scalar_keys)


def _split_blocks(content: str) -> list[list[tuple[int, str]]]:
    """Split text into blocks of (line number, line) on blank lines."""
    blocks: list[list[tuple[int, str]]] = []
    current: list[tuple[int, str]] = []
    for number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            if current:
                blocks.append(current)
                current = []
            continue
        if line.lstrip().startswith("#"):
            continue
        current.append((number, line))
    if current:
        blocks.append(current)
    return blocks


def _parse_block(lines: list[tuple[int, str]], scalar_keys: frozenset[str]) -> dict:
    """
    Parse ``key = value`` lines; repeated keys accumulate into lists.

    Lines without '=' are ignored.
    """
    fields: dict = {}
    for number, line in lines:
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            raise MalformedMetadataError(f"line {number}: value without a key")

        old = fields.get(key)
        if key in scalar_keys or old is None:
            fields[key] = value
        elif isinstance(old, list):
            old.append(value)
        else:
            fields[key] = [old, value]
    return fields
