"""
System collaborators: pacman, makepkg and gpg.

Each wrapper is a thin call to the existing tool. Command execution goes
through a replaceable runner so tests never spawn real processes.
"""

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from aur_updater.core.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


Runner = Callable[..., CommandResult]


def run_command(args: list[str], cwd: Path | None = None, capture: bool = True) -> CommandResult:
    """Run ``args``; with ``capture=False`` output goes straight to the terminal."""
    logger.debug(f"$ {' '.join(args)}")
    r = subprocess.run(
        args,
        cwd=str(cwd) if cwd else None,
        capture_output=capture,
        text=True,
        check=False,
    )
    return CommandResult(r.returncode, r.stdout or "", r.stderr or "")


@dataclass
class LocalPackage:
    name: str
    version: str


class Pacman:
    """Queries and installs through pacman."""

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def foreign_packages(self) -> list[LocalPackage]:
        """Installed packages not found in any sync repository (``pacman -Qm``)."""
        result = self.runner(["pacman", "-Qm"])
        # exit 1 with empty output means no foreign packages
        if not result.success and result.stdout.strip():
            raise CommandError(["pacman", "-Qm"], result.returncode, result.stderr)
        packages = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                packages.append(LocalPackage(parts[0], parts[1]))
        return packages

    def is_installed(self, name: str) -> bool:
        """True when ``name`` (or a provider of it) is installed."""
        return self.runner(["pacman", "-T", name]).success

    def in_repository(self, name: str) -> bool:
        """True when a sync repository provides ``name``."""
        return self.runner(["pacman", "-Sp", "--print-format", "%n", name]).success

    def install(self, paths: list[Path], as_dependencies: bool = False) -> None:
        args = ["sudo", "pacman", "-U", *[str(p) for p in paths]]
        if as_dependencies:
            args.append("--asdeps")
        result = self.runner(args, capture=False)
        if not result.success:
            raise CommandError(args, result.returncode, result.stderr)

    def install_from_repository(self, names: list[str]) -> None:
        args = ["sudo", "pacman", "-S", "--needed", "--asdeps", *names]
        result = self.runner(args, capture=False)
        if not result.success:
            raise CommandError(args, result.returncode, result.stderr)


class Makepkg:
    """Builds a prepared directory with makepkg."""

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def build(self, directory: Path, expected: list[str]) -> list[Path]:
        """
        Build ``directory`` and return the expected archive paths.

        Raises:
            CommandError: makepkg failed or an expected archive is missing.
        """
        args = ["makepkg", "-f", "--noconfirm"]
        result = self.runner(args, cwd=directory, capture=False)
        if not result.success:
            raise CommandError(args, result.returncode, result.stderr)

        paths = [directory / name for name in expected]
        missing = [p.name for p in paths if not p.is_file()]
        if missing:
            raise CommandError(args, 0, f"missing build output: {', '.join(missing)}")
        return paths


class Gpg:
    """Checks and imports PGP keys used to verify sources."""

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def has_key(self, key: str) -> bool:
        return self.runner(["gpg", "--list-keys", key]).success

    def receive_key(self, key: str) -> None:
        args = ["gpg", "--recv-keys", key]
        result = self.runner(args)
        if not result.success:
            raise CommandError(args, result.returncode, result.stderr)
