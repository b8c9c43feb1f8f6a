"""
Package Updater — end-to-end update pipeline for AUR packages.

Orchestrates one update run:
- Discovery of foreign packages with newer AUR versions
- Definition fetch (git) and parsing (.SRCINFO, or PKGBUILD as fallback)
- PGP key checks
- Dependency planning, recursing into AUR-only dependencies
- Asset fetching, building and installation

Failures are isolated per package: each one is recorded in the RunReport
with the stage it failed at, and the rest of the batch carries on.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from aur_updater.config import UpdaterConfig
from aur_updater.core.aur import AurClient
from aur_updater.core.dependencies import (
    DependencyPlan,
    build_order,
    collect_dependencies,
    internal_dependencies,
    partition_dependencies,
)
from aur_updater.core.errors import (
    AurError,
    CommandError,
    MalformedMetadataError,
    UnboundRequiredVariableError,
    UpdaterError,
)
from aur_updater.core.fetcher import AssetFetcher
from aur_updater.core.git import GitClient
from aur_updater.core.report import RunReport, Stage
from aur_updater.core.system import Gpg, Makepkg, Pacman
from aur_updater.core.version import vercmp
from aur_updater.models.package import FetchTask, MetadataRecord
from aur_updater.parsers.pkgbuild import parse_pkgbuild
from aur_updater.parsers.srcinfo import load_srcinfo

logger = logging.getLogger(__name__)

SRCINFO = ".SRCINFO"
PKGBUILD = "PKGBUILD"


@dataclass(frozen=True)
class UpdateCandidate:
    name: str
    base: str
    local_version: str
    remote_version: str


class PackageUpdater:
    """
    Runs the update pipeline for a batch of package bases.

    All collaborators can be injected; defaults talk to the real tools.
    """

    def __init__(
        self,
        config: UpdaterConfig,
        pacman: Pacman | None = None,
        makepkg: Makepkg | None = None,
        gpg: Gpg | None = None,
        git: GitClient | None = None,
        aur: AurClient | None = None,
        fetcher: AssetFetcher | None = None,
        console: Console | None = None,
    ):
        self.config = config
        self.console = console or Console()
        self.pacman = pacman or Pacman()
        self.makepkg = makepkg or Makepkg()
        self.gpg = gpg or Gpg()
        self.git = git or GitClient()
        self.aur = aur or AurClient(config)
        self.fetcher = fetcher or AssetFetcher(config, git=self.git, console=self.console)

        self.config.definition_dir.mkdir(parents=True, exist_ok=True)
        self.config.build_dir.mkdir(parents=True, exist_ok=True)

    # ──────────────────────────────────────────────
    # Discovery
    # ──────────────────────────────────────────────

    async def find_updates(self) -> list[UpdateCandidate]:
        """Foreign packages whose AUR version is newer than the installed one."""
        local = self.pacman.foreign_packages()
        remote = {r["Name"]: r for r in await self.aur.info([p.name for p in local])}

        candidates = []
        for package in local:
            info = remote.get(package.name)
            if info and vercmp(info["Version"], package.version) > 0:
                candidates.append(
                    UpdateCandidate(
                        name=package.name,
                        base=info.get("PackageBase") or package.name,
                        local_version=package.version,
                        remote_version=info["Version"],
                    )
                )
        logger.info(f"{len(candidates)} of {len(local)} foreign packages have updates")
        return candidates

    # ──────────────────────────────────────────────
    # Definitions
    # ──────────────────────────────────────────────

    def definition_path(self, base: str) -> Path:
        return self.config.definition_dir / base

    async def fetch_definition(self, base: str, expected_version: str | None = None) -> Path:
        """
        Clone or update the definition repository of ``base``.

        A cached definition already at ``expected_version`` is left alone.
        """
        path = self.definition_path(base)
        if expected_version and (path / SRCINFO).is_file():
            try:
                if load_srcinfo(path / SRCINFO).full_version == expected_version:
                    logger.info(f"{base}: definition {expected_version} already cached")
                    return path
            except MalformedMetadataError:
                pass

        if path.is_dir() and any(path.iterdir()):
            try:
                await self.git.pull(path)
                return path
            except CommandError as e:
                logger.warning(f"{base}: pull failed ({e}), cloning again")
                shutil.rmtree(path, ignore_errors=True)

        await self.git.clone(self.config.definition_url(base), path, shallow=self.config.shallow_git)
        return path

    def load_definition(self, base: str) -> MetadataRecord:
        """Parse the cached definition, preferring the exported .SRCINFO."""
        path = self.definition_path(base)
        if (path / SRCINFO).is_file():
            return load_srcinfo(path / SRCINFO)
        if (path / PKGBUILD).is_file():
            logger.info(f"{base}: no {SRCINFO}, evaluating {PKGBUILD}")
            return parse_pkgbuild((path / PKGBUILD).read_text(encoding="utf-8"))
        raise MalformedMetadataError(f"{base}: no {SRCINFO} or {PKGBUILD} in {path}")

    def stage_definition(self, base: str) -> Path:
        """Copy the definition files (without .git) into the build directory."""
        target = self.config.build_dir / base
        shutil.copytree(
            self.definition_path(base),
            target,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(".git"),
        )
        return target

    def ensure_keys(self, record: MetadataRecord) -> None:
        """Make sure every key in ``validpgpkeys`` is known to gpg."""
        for key in record.validation_keys:
            if self.gpg.has_key(key):
                continue
            if not self.config.import_keys:
                raise UpdaterError(f"PGP key {key} is not in the keyring (use --import-keys)")
            logger.info(f"{record.base_name}: importing PGP key {key}")
            self.gpg.receive_key(key)

    # ──────────────────────────────────────────────
    # Dependencies
    # ──────────────────────────────────────────────

    async def plan_dependencies(self, records: list[MetadataRecord]) -> tuple[DependencyPlan, dict[str, str]]:
        """
        Partition the dependencies of ``records``.

        Returns:
            The plan, and a mapping of AUR-only dependency name to the
            package base that provides it.
        """
        reverse = collect_dependencies(records, self.config.arch)
        plan = partition_dependencies(reverse, self.pacman.is_installed, self.pacman.in_repository)

        upstream_bases: dict[str, str] = {}
        if plan.upstream:
            for info in await self.aur.info(sorted(plan.upstream)):
                upstream_bases[info["Name"]] = info.get("PackageBase") or info["Name"]
        return plan, upstream_bases

    # ──────────────────────────────────────────────
    # Main Run
    # ──────────────────────────────────────────────

    async def run(
        self,
        names: list[str],
        expected_versions: dict[str, str] | None = None,
        install: bool = True,
        install_dependencies: bool = True,
    ) -> RunReport:
        """
        Update the package bases in ``names``.

        Args:
            names: Package bases to update.
            expected_versions: Known remote versions, used to skip
                re-fetching definitions that are already current.
            install: Install the built archives.
            install_dependencies: Install repository dependencies and build
                AUR-only dependencies before the packages needing them.
        """
        expected_versions = expected_versions or {}
        report = RunReport.create(list(names))

        # --- 1. DEFINITIONS & DEPENDENCY ROUNDS ---
        rounds: list[dict[str, MetadataRecord]] = []
        pending = list(names)
        seen = set(pending)
        while pending:
            records = await self._load_round(pending, expected_versions, report)
            rounds.append(records)
            pending = []
            if not records:
                break
            try:
                plan, upstream = await self.plan_dependencies(list(records.values()))
            except (AurError, CommandError) as e:
                report.notes.append(f"dependency check failed: {e}")
                break

            for error in plan.unresolvable(upstream):
                report.notes.append(f"unresolvable dependency: {error}")
            if plan.repository:
                self._install_repository_dependencies(sorted(plan.repository), install_dependencies, report)
            if not install_dependencies:
                if plan.upstream:
                    report.notes.append(f"AUR dependencies not built: {', '.join(sorted(plan.upstream))}")
            else:
                for base in sorted(set(upstream.values()) - seen):
                    logger.info(f"{base}: needed as a dependency, adding to the run")
                    seen.add(base)
                    pending.append(base)
                    report.advance(base, Stage.DEFINITION)

        # --- 2. FETCH, BUILD, INSTALL (dependencies first) ---
        for depth, records in reversed(list(enumerate(rounds))):
            if records:
                await self._build_round(records, report, install=install, as_dependencies=depth > 0)

        self._print_summary(report)
        return report

    async def _load_round(
        self, names: list[str], expected_versions: dict[str, str], report: RunReport
    ) -> dict[str, MetadataRecord]:
        records: dict[str, MetadataRecord] = {}
        for i, name in enumerate(names):
            self.console.print(f"[cyan]get {name}... ({i + 1}/{len(names)})[/cyan]")

            report.advance(name, Stage.DEFINITION)
            try:
                await self.fetch_definition(name, expected_versions.get(name))
            except (CommandError, OSError) as e:
                report.fail(name, Stage.DEFINITION, str(e))
                continue

            report.advance(name, Stage.PARSE)
            try:
                record = self.load_definition(name)
            except (MalformedMetadataError, UnboundRequiredVariableError, OSError) as e:
                report.fail(name, Stage.PARSE, str(e))
                continue

            report.advance(name, Stage.KEYS)
            try:
                self.ensure_keys(record)
            except UpdaterError as e:
                report.fail(name, Stage.KEYS, str(e))
                continue

            records[name] = record
        return records

    def _install_repository_dependencies(self, names: list[str], install: bool, report: RunReport) -> None:
        if not install:
            report.notes.append(f"repository dependencies not installed: {', '.join(names)}")
            return
        try:
            self.pacman.install_from_repository(names)
        except CommandError as e:
            report.notes.append(f"repository dependency install failed: {e}")

    async def _build_round(
        self, records: dict[str, MetadataRecord], report: RunReport, install: bool, as_dependencies: bool
    ) -> None:
        arch = self.config.arch
        tasks: list[FetchTask] = []
        failed: set[str] = set()
        for name, record in records.items():
            report.advance(name, Stage.FETCH)
            try:
                self.stage_definition(name)
            except OSError as e:
                report.fail(name, Stage.FETCH, f"staging definition failed: {e}")
                failed.add(name)
                continue
            tasks += FetchTask.for_record(record, arch, self.config.build_dir)
            self.console.print(f"found {len(record.sources)} assets for {name}")

        staged = [name for name in records if name not in failed]
        if not staged:
            return
        summary = await self.fetcher.fetch_all(tasks, packages=staged)
        errors: dict[str, list[str]] = {}
        for outcome in summary.failures:
            errors.setdefault(outcome.task.package_name, []).append(
                f"{outcome.task.source.filename}: {outcome.error}"
            )

        # packages of this round that others in it depend on are installed
        # right after their build
        needs = internal_dependencies(records, arch)
        needed = set().union(*needs.values())
        built: dict[str, list[Path]] = {}
        for name in build_order(needs):
            if name in failed:
                continue
            if name not in summary.ready:
                report.fail(name, Stage.FETCH, "; ".join(errors.get(name, ["fetch failed"])))
                failed.add(name)
                continue
            missing = sorted(needs[name] & failed)
            if missing:
                report.fail(name, Stage.BUILD, f"dependency {', '.join(missing)} failed")
                failed.add(name)
                continue

            report.advance(name, Stage.BUILD)
            self.console.print(f"[bold]Building {name}...[/bold]")
            expected = records[name].package_files(arch, self.config.package_extension)
            try:
                paths = self.makepkg.build(self.config.build_dir / name, expected)
            except CommandError as e:
                report.fail(name, Stage.BUILD, str(e))
                failed.add(name)
                continue

            if install and name in needed:
                if not self._install([name], paths, as_dependencies, report):
                    failed.add(name)
            else:
                built[name] = paths

        if not built:
            return
        if not install:
            for name in built:
                report.complete(name)
            return
        self._install(list(built), [p for paths in built.values() for p in paths], as_dependencies, report)

    def _install(self, names: list[str], paths: list[Path], as_dependencies: bool, report: RunReport) -> bool:
        for name in names:
            report.advance(name, Stage.INSTALL)
        try:
            self.pacman.install(paths, as_dependencies=as_dependencies)
        except CommandError as e:
            for name in names:
                report.fail(name, Stage.INSTALL, str(e))
            return False
        for name in names:
            report.complete(name)
        return True

    def _print_summary(self, report: RunReport) -> None:
        self.console.print("\n[bold green][DONE] Update run complete[/bold green]")
        self.console.print(f"Succeeded: {len(report.succeeded)} | Skipped: {len(report.skipped)}")
        for outcome in report.skipped:
            self.console.print(f"  [red]{outcome.name}[/red] failed at {outcome.stage.value}: {outcome.error}")
        for note in report.notes:
            self.console.print(f"  [yellow]{note}[/yellow]")
