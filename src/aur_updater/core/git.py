"""Thin async wrapper around the git command line."""

import asyncio
import logging
from pathlib import Path

from aur_updater.core.errors import CommandError

logger = logging.getLogger(__name__)


class GitClient:
    """Runs git as a subprocess; every failing command raises CommandError."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    async def run(self, *args: str, cwd: Path | None = None) -> str:
        command = [self.executable, *args]
        logger.debug(f"[Git] {' '.join(command)}")
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def clone(self, url: str, path: Path, shallow: bool = True, branch: str | None = None) -> None:
        args = ["clone", url, str(path)]
        if shallow:
            args += ["--depth", "1"]
        if branch:
            args += ["--branch", branch]
        await self.run(*args)

    async def pull(self, path: Path) -> None:
        await self.run("pull", "--ff-only", cwd=path)

    async def checkout(self, path: Path, ref: str) -> None:
        await self.run("checkout", ref, cwd=path)

    async def set_remote(self, path: Path, url: str) -> None:
        await self.run("remote", "set-url", "origin", url, cwd=path)
