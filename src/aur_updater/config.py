"""
Updater configuration.

A single immutable UpdaterConfig is built at process start (environment
first, then CLI overrides) and handed to every component.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from aur_updater.core.mirror import DEFAULT_MIRROR_RULES, MirrorRule

DEFAULT_CONCURRENCY = 4


def default_cache_dir() -> Path:
    """``$XDG_CACHE_HOME/aur-updater``, falling back to ``~/.cache/aur-updater``."""
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.environ.get("HOME", "."), ".cache")
    return Path(base) / "aur-updater"


@dataclass(frozen=True)
class UpdaterConfig:
    """Immutable run configuration."""

    cache_dir: Path = Path(".cache/aur-updater")
    arch: str = "x86_64"
    concurrency: int = DEFAULT_CONCURRENCY
    mirror_rules: tuple[MirrorRule, ...] = DEFAULT_MIRROR_RULES
    aur_rpc_url: str = "https://aur.archlinux.org/rpc/"
    aur_git_url: str = "https://aur.archlinux.org/{name}.git"
    package_extension: str = ".pkg.tar.zst"
    shallow_git: bool = True
    http_timeout: float = 30.0
    import_keys: bool = False

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")

    @property
    def definition_dir(self) -> Path:
        """One clone of the definition repository per package base."""
        return self.cache_dir / "pkgbuild"

    @property
    def build_dir(self) -> Path:
        """One staging directory per package base (definition files + assets)."""
        return self.cache_dir / "build"

    def definition_url(self, name: str) -> str:
        return self.aur_git_url.format(name=name)

    @classmethod
    def from_env(cls) -> "UpdaterConfig":
        """Build the configuration from the environment."""
        concurrency = os.environ.get("AUR_UPDATER_CONCURRENCY")
        return cls(
            cache_dir=Path(os.environ.get("AUR_UPDATER_CACHE") or default_cache_dir()),
            arch=os.environ.get("AUR_UPDATER_ARCH", "x86_64"),
            concurrency=int(concurrency) if concurrency else DEFAULT_CONCURRENCY,
        )
