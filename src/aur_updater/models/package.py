"""
Package definition model.

Typed view over a parsed definition: one base record, its variants, the
source entries it declares and the checksums that guard them. Raw fields are
kept block by block exactly as parsed; base and architecture-specific lists
are only combined when a caller asks for them.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from urllib.parse import urlsplit, urlunsplit

FieldValue = str | tuple[str, ...]

# Raw definition key -> record attribute
FIELD_KEYS = {
    "version": "pkgver",
    "release": "pkgrel",
    "epoch": "epoch",
    "description": "pkgdesc",
    "homepage": "url",
    "license": "license",
    "architectures": "arch",
    "sources": "source",
    "dependencies": "depends",
    "build_dependencies": "makedepends",
    "optional_dependencies": "optdepends",
    "check_dependencies": "checkdepends",
    "validation_keys": "validpgpkeys",
}

# Strongest first
CHECKSUM_ALGORITHMS = ("b2", "sha512", "sha384", "sha256", "sha224", "sha1", "md5")
SKIP = "SKIP"

_HASHLIB_NAMES = {
    "b2": "blake2b",
    "sha512": "sha512",
    "sha384": "sha384",
    "sha256": "sha256",
    "sha224": "sha224",
    "sha1": "sha1",
    "md5": "md5",
}

_CONSTRAINT_RE = re.compile(r"[<>=:]")


def as_tuple(value: FieldValue | None) -> tuple[str, ...]:
    """Normalize a scalar-or-list field value to a tuple."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def strip_constraint(dependency: str) -> str:
    """'glib2>=2.78' -> 'glib2', 'hunspell: spell checking' -> 'hunspell'."""
    return _CONSTRAINT_RE.split(dependency, maxsplit=1)[0].strip()


def freeze_fields(fields: Mapping[str, str | list[str] | tuple[str, ...]]) -> Mapping[str, FieldValue]:
    """Copy a parsed block into a read-only mapping with tuple lists."""
    frozen = {k: v if isinstance(v, str) else tuple(v) for k, v in fields.items()}
    return MappingProxyType(frozen)


# ──────────────────────────────────────────────
# Sources & Checksums
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class SourceEntry:
    """One declared upstream asset."""

    url: str
    transport: str = "http"  # "http" or "git"
    rename_as: str | None = None
    fragment: str | None = None  # git ref, e.g. "tag=v1.0"

    @classmethod
    def parse(cls, raw: str) -> "SourceEntry":
        """
        Parse a raw source string.

        'a.tar.gz::https://host/x/a.tar.gz' -> rename_as='a.tar.gz'
        'git+https://host/repo.git#tag=v1' -> transport='git', fragment='tag=v1'
        """
        rename_as = None
        location = raw.strip()
        if "::" in location:
            rename_as, location = location.split("::", 1)
            rename_as = rename_as or None

        transport = "http"
        fragment = None
        if location.startswith("git+") or location.startswith("git://"):
            transport = "git"
            if location.startswith("git+"):
                location = location[4:]
            location, _, fragment = location.partition("#")
            location = location.split("?", 1)[0]
            location = re.sub(r"\.git/?$", "", location)
            fragment = fragment or None

        return cls(url=_collapse_path(location), transport=transport, rename_as=rename_as, fragment=fragment)

    @property
    def filename(self) -> str:
        """
        Name of the file or directory the asset is stored under.

        Like makepkg, a downloaded file keeps the query string of its URL
        (``file.zip?download=1``) unless the entry renames it.
        """
        if self.rename_as:
            return self.rename_as
        parts = urlsplit(self.url)
        name = (parts.path or "").rstrip("/").split("/")[-1]
        if name and parts.query and self.transport == "http":
            name = f"{name}?{parts.query}"
        return name or parts.netloc or self.url

    @property
    def is_remote(self) -> bool:
        """Local files shipped with the definition are not fetched."""
        scheme = urlsplit(self.url).scheme
        if self.transport == "git":
            return scheme in ("http", "https", "git", "ssh")
        return scheme in ("http", "https")


def _collapse_path(url: str) -> str:
    """Collapse duplicate slashes in the path component of a URL."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    path = re.sub(r"/{2,}", "/", parts.path)
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


@dataclass(frozen=True)
class ChecksumSpec:
    """Active checksum algorithm and expected values, one per source entry."""

    algorithm: str | None
    values: tuple[str, ...] = ()

    def for_entry(self, index: int) -> "ChecksumSpec":
        """Narrow to the value guarding the source entry at ``index``."""
        value = self.values[index] if index < len(self.values) else ""
        return ChecksumSpec(self.algorithm, (value,))

    @property
    def verifiable(self) -> bool:
        return (
            self.algorithm in _HASHLIB_NAMES
            and len(self.values) == 1
            and self.values[0] not in ("", SKIP)
        )

    def digest(self, path: Path, chunk_size: int = 1 << 20) -> str:
        """Compute the hex digest of ``path`` under the active algorithm."""
        if self.algorithm not in _HASHLIB_NAMES:
            raise ValueError(f"Unsupported checksum algorithm: {self.algorithm!r}")
        hasher = hashlib.new(_HASHLIB_NAMES[self.algorithm])
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def matches(self, path: Path) -> bool:
        """True when ``path`` exists and its digest equals the expected value."""
        if not self.verifiable or not path.is_file():
            return False
        return self.digest(path) == self.values[0].lower()


# ──────────────────────────────────────────────
# Records
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class VariantRecord:
    """One installable unit produced from a package base."""

    name: str
    architectures: tuple[str, ...] = ()
    fields: Mapping[str, FieldValue] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class MetadataRecord:
    """
    One package-base definition.

    ``fields`` holds the base block as parsed (scalars as ``str``, repeated
    keys as tuples). ``variants`` always has at least one entry: a definition
    without child blocks is its own implicit variant.
    """

    base_name: str
    fields: Mapping[str, FieldValue]
    variants: tuple[VariantRecord, ...]

    @classmethod
    def from_blocks(
        cls,
        base_name: str,
        base: Mapping[str, str | list[str] | tuple[str, ...]],
        children: list[tuple[str, Mapping[str, str | list[str] | tuple[str, ...]]]],
    ) -> "MetadataRecord":
        """Build a record from a parsed base block and ``(name, block)`` children."""
        base_fields = freeze_fields(base)
        base_arch = as_tuple(base_fields.get("arch"))

        variants = []
        for name, block in children:
            child_fields = freeze_fields(block)
            arch = as_tuple(child_fields["arch"]) if "arch" in child_fields else base_arch
            variants.append(VariantRecord(name=name, architectures=arch, fields=child_fields))

        if not variants:
            implicit = base_fields.get("pkgname", base_name)
            implicit_name = implicit if isinstance(implicit, str) else implicit[0]
            variants.append(VariantRecord(name=implicit_name, architectures=base_arch))

        return cls(base_name=base_name, fields=base_fields, variants=tuple(variants))

    # --- raw access ---

    def scalar(self, key: str) -> str | None:
        """Scalar view of a key; lists yield their last element."""
        value = self.fields.get(key)
        if value is None or isinstance(value, str):
            return value
        return value[-1] if value else None

    def values(self, key: str) -> tuple[str, ...]:
        return as_tuple(self.fields.get(key))

    def merged(self, key: str, arch: str | None = None) -> tuple[str, ...]:
        """Base list followed by the ``<key>_<arch>`` list."""
        if arch is None:
            return self.values(key)
        return self.values(key) + self.values(f"{key}_{arch}")

    def variant_values(self, variant: VariantRecord, key: str, arch: str | None = None) -> tuple[str, ...]:
        """Lookup on a variant, falling back to the base block per key."""
        keys = [key] if arch is None else [key, f"{key}_{arch}"]
        result: tuple[str, ...] = ()
        for k in keys:
            source = variant.fields if k in variant.fields else self.fields
            result += as_tuple(source.get(k))
        return result

    # --- scalar fields ---

    @property
    def version(self) -> str | None:
        return self.scalar(FIELD_KEYS["version"])

    @property
    def release(self) -> str | None:
        return self.scalar(FIELD_KEYS["release"])

    @property
    def epoch(self) -> str | None:
        return self.scalar(FIELD_KEYS["epoch"])

    @property
    def description(self) -> str | None:
        return self.scalar(FIELD_KEYS["description"])

    @property
    def homepage(self) -> str | None:
        return self.scalar(FIELD_KEYS["homepage"])

    @property
    def license(self) -> str | None:
        return self.scalar(FIELD_KEYS["license"])

    @property
    def full_version(self) -> str:
        """[epoch:]version-release"""
        version = f"{self.version or ''}-{self.release or ''}"
        if self.epoch and self.epoch != "0":
            return f"{self.epoch}:{version}"
        return version

    # --- list fields ---

    @property
    def architectures(self) -> tuple[str, ...]:
        return self.values(FIELD_KEYS["architectures"])

    @property
    def sources(self) -> tuple[str, ...]:
        return self.values(FIELD_KEYS["sources"])

    @property
    def dependencies(self) -> tuple[str, ...]:
        return tuple(v for v in self.values(FIELD_KEYS["dependencies"]) if v)

    @property
    def build_dependencies(self) -> tuple[str, ...]:
        return tuple(v for v in self.values(FIELD_KEYS["build_dependencies"]) if v)

    @property
    def optional_dependencies(self) -> tuple[str, ...]:
        return tuple(v for v in self.values(FIELD_KEYS["optional_dependencies"]) if v)

    @property
    def check_dependencies(self) -> tuple[str, ...]:
        return tuple(v for v in self.values(FIELD_KEYS["check_dependencies"]) if v)

    @property
    def validation_keys(self) -> tuple[str, ...]:
        return tuple(v for v in self.values(FIELD_KEYS["validation_keys"]) if v)

    # --- lookups used by the fetcher and build steps ---

    def source_entries(self, arch: str) -> list[SourceEntry]:
        """Source entries for ``arch``: base list followed by the arch list."""
        return [SourceEntry.parse(raw) for raw in self.merged(FIELD_KEYS["sources"], arch)]

    def checksum_spec(self, arch: str) -> ChecksumSpec:
        """
        Pick the active checksum list for ``arch``.

        The first algorithm, in strength order, with a non-empty merged list
        wins. A definition without checksums yields ``ChecksumSpec(None)``.
        """
        for algorithm in CHECKSUM_ALGORITHMS:
            values = self.merged(f"{algorithm}sums", arch)
            if values:
                return ChecksumSpec(algorithm, values)
        return ChecksumSpec(None)

    def builds_on(self, variant: VariantRecord, arch: str) -> str | None:
        """Architecture label of the built package, or None if not built for ``arch``."""
        if "any" in variant.architectures:
            return "any"
        if arch in variant.architectures:
            return arch
        return None

    def package_files(self, arch: str, extension: str = ".pkg.tar.zst") -> list[str]:
        """Expected archive filenames produced by a build on ``arch``."""
        files = []
        for variant in self.variants:
            label = self.builds_on(variant, arch)
            if label:
                files.append(f"{variant.name}-{self.full_version}-{label}{extension}")
        return files

    @property
    def variant_names(self) -> list[str]:
        return [v.name for v in self.variants]


# ──────────────────────────────────────────────
# Transient run records
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class FetchTask:
    """One asset to fetch for one package."""

    package_name: str
    source: SourceEntry
    checksum: ChecksumSpec
    destination: Path

    @classmethod
    def for_record(cls, record: MetadataRecord, arch: str, build_dir: Path) -> list["FetchTask"]:
        """Tasks for every remote source entry of ``record`` on ``arch``."""
        spec = record.checksum_spec(arch)
        tasks = []
        for index, entry in enumerate(record.source_entries(arch)):
            if not entry.is_remote:
                continue
            tasks.append(
                cls(
                    package_name=record.base_name,
                    source=entry,
                    checksum=spec.for_entry(index),
                    destination=build_dir / record.base_name / entry.filename,
                )
            )
        return tasks


@dataclass(frozen=True)
class DependencyEdge:
    """A dependency and the selected packages that require it."""

    name: str
    required_by: frozenset[str]
