"""Tests for the update pipeline with fake system collaborators."""

from pathlib import Path

import httpx
import pytest
from rich.console import Console

from aur_updater.config import UpdaterConfig
from aur_updater.core.errors import CommandError
from aur_updater.core.fetcher import AssetFetcher
from aur_updater.core.report import PackageStatus, Stage
from aur_updater.core.system import LocalPackage
from aur_updater.core.updater import PackageUpdater
from aur_updater.models.package import strip_constraint
from aur_updater.parsers.srcinfo import load_srcinfo

PKG_A = """\
pkgbase = pkgA
\tpkgver = 1.0
\tpkgrel = 1
\tarch = x86_64
\tmakedepends = cmake
\tdepends = libfoo>=2

pkgname = pkgA
"""

LIBFOO = """\
pkgbase = libfoo
\tpkgver = 2.1
\tpkgrel = 1
\tarch = x86_64

pkgname = libfoo
"""

WITH_SOURCE = """\
pkgbase = withsrc
\tpkgver = 3
\tpkgrel = 1
\tarch = any
\tsource = https://example.org/withsrc-3.tar.gz
\tsha256sums = SKIP

pkgname = withsrc
"""

SIGNED = """\
pkgbase = signed
\tpkgver = 1
\tpkgrel = 1
\tarch = x86_64
\tvalidpgpkeys = ABCDEF0123456789

pkgname = signed
"""

APP = """\
pkgbase = app
\tpkgver = 1
\tpkgrel = 1
\tarch = x86_64
\tdepends = libnew>=1

pkgname = app
"""

LIBNEW = """\
pkgbase = libnew
\tpkgver = 1
\tpkgrel = 1
\tarch = x86_64

pkgname = libnew
"""


class DefinitionGit:
    """Fake git: cloning an AUR URL writes the matching .SRCINFO."""

    def __init__(self, definitions: dict[str, str]):
        self.definitions = definitions
        self.calls: list[tuple] = []

    async def clone(self, url, path, shallow=True, branch=None):
        self.calls.append(("clone", url))
        name = url.rsplit("/", 1)[-1].removesuffix(".git")
        Path(path).mkdir(parents=True, exist_ok=True)
        (Path(path) / ".SRCINFO").write_text(self.definitions[name])

    async def pull(self, path):
        self.calls.append(("pull", Path(path).name))

    async def set_remote(self, path, url):
        self.calls.append(("set_remote", url))

    async def checkout(self, path, ref):
        self.calls.append(("checkout", ref))


class FakePacman:
    def __init__(self, installed=(), repository=(), foreign=()):
        self.installed = set(installed)
        self.repository = set(repository)
        self.foreign = list(foreign)
        self.installs: list[tuple[list[str], bool]] = []
        self.repository_installs: list[list[str]] = []

    def foreign_packages(self):
        return self.foreign

    def is_installed(self, name):
        return name in self.installed

    def in_repository(self, name):
        return name in self.repository

    def install(self, paths, as_dependencies=False):
        self.installs.append(([p.name for p in paths], as_dependencies))
        self.installed.update(p.name.rsplit("-", 3)[0] for p in paths)

    def install_from_repository(self, names):
        self.repository_installs.append(list(names))


class FakeMakepkg:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.built: list[str] = []

    def build(self, directory, expected):
        self.built.append(directory.name)
        if directory.name in self.fail:
            raise CommandError(["makepkg", "-f", "--noconfirm"], 4, "build() failed")
        paths = [directory / name for name in expected]
        for path in paths:
            path.write_bytes(b"archive")
        return paths


class DependencyCheckingMakepkg(FakeMakepkg):
    """Refuses to build while a ``depends`` entry is not installed, like makepkg does."""

    def __init__(self, pacman, fail=()):
        super().__init__(fail)
        self.pacman = pacman

    def build(self, directory, expected):
        record = load_srcinfo(directory / ".SRCINFO")
        missing = [d for d in map(strip_constraint, record.dependencies) if not self.pacman.is_installed(d)]
        if missing:
            self.built.append(directory.name)
            raise CommandError(["makepkg", "-f", "--noconfirm"], 8, f"missing dependency {missing[0]}")
        return super().build(directory, expected)


class FakeGpg:
    def __init__(self, known=()):
        self.known = set(known)
        self.received: list[str] = []

    def has_key(self, key):
        return key in self.known

    def receive_key(self, key):
        self.received.append(key)


class FakeAur:
    def __init__(self, packages: dict[str, dict]):
        self.packages = packages
        self.queries: list[list[str]] = []

    async def info(self, names):
        self.queries.append(list(names))
        return [self.packages[n] for n in names if n in self.packages]


def make_updater(tmp_path, definitions, handler=None, import_keys=False, **fakes):
    config = UpdaterConfig(cache_dir=tmp_path, mirror_rules=(), import_keys=import_keys)
    git = DefinitionGit(definitions)
    transport = httpx.MockTransport(handler) if handler else None
    fetcher = AssetFetcher(config, transport=transport, git=git, show_progress=False)
    return PackageUpdater(
        config,
        pacman=fakes.get("pacman") or FakePacman(),
        makepkg=fakes.get("makepkg") or FakeMakepkg(),
        gpg=fakes.get("gpg") or FakeGpg(),
        git=git,
        aur=fakes.get("aur") or FakeAur({}),
        fetcher=fetcher,
        console=Console(quiet=True),
    )


# ═══════════════════════════════════════════
# Discovery
# ═══════════════════════════════════════════


class TestFindUpdates:
    @pytest.mark.asyncio
    async def test_only_newer_versions(self, tmp_path):
        pacman = FakePacman(foreign=[LocalPackage("yay", "12.0-1"), LocalPackage("paru-bin", "2.0-1")])
        aur = FakeAur(
            {
                "yay": {"Name": "yay", "PackageBase": "yay", "Version": "12.1-1"},
                "paru-bin": {"Name": "paru-bin", "PackageBase": "paru-bin", "Version": "2.0-1"},
            }
        )
        updater = make_updater(tmp_path, {}, pacman=pacman, aur=aur)

        candidates = await updater.find_updates()

        assert [(c.name, c.local_version, c.remote_version) for c in candidates] == [("yay", "12.0-1", "12.1-1")]

    @pytest.mark.asyncio
    async def test_split_package_maps_to_base(self, tmp_path):
        pacman = FakePacman(foreign=[LocalPackage("python-foo", "1-1")])
        aur = FakeAur({"python-foo": {"Name": "python-foo", "PackageBase": "foo", "Version": "1:0.5-1"}})

        candidates = await make_updater(tmp_path, {}, pacman=pacman, aur=aur).find_updates()

        assert candidates[0].base == "foo"


# ═══════════════════════════════════════════
# Definitions
# ═══════════════════════════════════════════


class TestDefinitions:
    @pytest.mark.asyncio
    async def test_clone_then_pull(self, tmp_path):
        updater = make_updater(tmp_path, {"pkgA": PKG_A})
        await updater.fetch_definition("pkgA")
        await updater.fetch_definition("pkgA")
        assert updater.git.calls == [("clone", "https://aur.archlinux.org/pkgA.git"), ("pull", "pkgA")]

    @pytest.mark.asyncio
    async def test_current_definition_not_refetched(self, tmp_path):
        updater = make_updater(tmp_path, {"pkgA": PKG_A})
        await updater.fetch_definition("pkgA")
        updater.git.calls.clear()

        await updater.fetch_definition("pkgA", expected_version="1.0-1")

        assert updater.git.calls == []

    def test_pkgbuild_fallback(self, tmp_path):
        updater = make_updater(tmp_path, {})
        path = updater.definition_path("raw")
        path.mkdir(parents=True)
        (path / "PKGBUILD").write_text("pkgname=raw\npkgver=0.1\npkgrel=2\narch=(any)\n")
        assert updater.load_definition("raw").full_version == "0.1-2"

    def test_stage_skips_git_metadata(self, tmp_path):
        updater = make_updater(tmp_path, {})
        path = updater.definition_path("pkgA")
        (path / ".git").mkdir(parents=True)
        (path / ".SRCINFO").write_text(PKG_A)
        staged = updater.stage_definition("pkgA")
        assert (staged / ".SRCINFO").is_file()
        assert not (staged / ".git").exists()


# ═══════════════════════════════════════════
# Full Run
# ═══════════════════════════════════════════


class TestRun:
    @pytest.mark.asyncio
    async def test_dependencies_built_first(self, tmp_path):
        pacman = FakePacman(repository={"cmake"})
        makepkg = FakeMakepkg()
        aur = FakeAur({"libfoo": {"Name": "libfoo", "PackageBase": "libfoo", "Version": "2.1-1"}})
        updater = make_updater(tmp_path, {"pkgA": PKG_A, "libfoo": LIBFOO}, pacman=pacman, makepkg=makepkg, aur=aur)

        report = await updater.run(["pkgA"])

        assert pacman.repository_installs == [["cmake"]]
        assert makepkg.built == ["libfoo", "pkgA"]
        assert pacman.installs == [
            (["libfoo-2.1-1-x86_64.pkg.tar.zst"], True),
            (["pkgA-1.0-1-x86_64.pkg.tar.zst"], False),
        ]
        assert sorted(report.succeeded) == ["libfoo", "pkgA"]
        assert report.notes == []

    @pytest.mark.asyncio
    async def test_no_dependencies_mode(self, tmp_path):
        pacman = FakePacman(repository={"cmake"})
        makepkg = FakeMakepkg()
        aur = FakeAur({"libfoo": {"Name": "libfoo", "PackageBase": "libfoo", "Version": "2.1-1"}})
        updater = make_updater(tmp_path, {"pkgA": PKG_A}, pacman=pacman, makepkg=makepkg, aur=aur)

        report = await updater.run(["pkgA"], install_dependencies=False)

        assert pacman.repository_installs == []
        assert makepkg.built == ["pkgA"]
        assert "repository dependencies not installed: cmake" in report.notes
        assert "AUR dependencies not built: libfoo" in report.notes

    @pytest.mark.asyncio
    async def test_unresolvable_dependency_noted(self, tmp_path):
        updater = make_updater(tmp_path, {"pkgA": PKG_A}, pacman=FakePacman(installed={"cmake"}))

        report = await updater.run(["pkgA"])

        assert any(note.startswith("unresolvable dependency: libfoo") for note in report.notes)
        assert report.succeeded == ["pkgA"]

    @pytest.mark.asyncio
    async def test_parse_failure_isolated(self, tmp_path):
        definitions = {"broken": "pkgver = 1\n", "libfoo": LIBFOO}
        updater = make_updater(tmp_path, definitions)

        report = await updater.run(["broken", "libfoo"])

        assert report.packages["broken"].stage is Stage.PARSE
        assert report.packages["broken"].status is PackageStatus.FAILED
        assert report.succeeded == ["libfoo"]

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_build(self, tmp_path):
        makepkg = FakeMakepkg()
        updater = make_updater(
            tmp_path,
            {"withsrc": WITH_SOURCE, "libfoo": LIBFOO},
            handler=lambda r: httpx.Response(404),
            makepkg=makepkg,
        )

        report = await updater.run(["withsrc", "libfoo"])

        assert report.packages["withsrc"].stage is Stage.FETCH
        assert "withsrc-3.tar.gz" in report.packages["withsrc"].error
        assert makepkg.built == ["libfoo"]

    @pytest.mark.asyncio
    async def test_sources_downloaded_into_build_dir(self, tmp_path):
        updater = make_updater(
            tmp_path, {"withsrc": WITH_SOURCE}, handler=lambda r: httpx.Response(200, content=b"tarball")
        )

        report = await updater.run(["withsrc"])

        assert (tmp_path / "build" / "withsrc" / "withsrc-3.tar.gz").read_bytes() == b"tarball"
        assert (tmp_path / "build" / "withsrc" / ".SRCINFO").is_file()
        assert report.succeeded == ["withsrc"]

    @pytest.mark.asyncio
    async def test_build_failure(self, tmp_path):
        pacman = FakePacman()
        updater = make_updater(tmp_path, {"libfoo": LIBFOO}, pacman=pacman, makepkg=FakeMakepkg(fail={"libfoo"}))

        report = await updater.run(["libfoo"])

        assert report.packages["libfoo"].stage is Stage.BUILD
        assert pacman.installs == []

    @pytest.mark.asyncio
    async def test_build_only(self, tmp_path):
        pacman = FakePacman()
        updater = make_updater(tmp_path, {"libfoo": LIBFOO}, pacman=pacman)

        report = await updater.run(["libfoo"], install=False)

        assert report.succeeded == ["libfoo"]
        assert pacman.installs == []

    @pytest.mark.asyncio
    async def test_missing_key_without_import(self, tmp_path):
        gpg = FakeGpg()
        updater = make_updater(tmp_path, {"signed": SIGNED}, gpg=gpg)

        report = await updater.run(["signed"])

        assert report.packages["signed"].stage is Stage.KEYS
        assert gpg.received == []

    @pytest.mark.asyncio
    async def test_missing_key_imported(self, tmp_path):
        gpg = FakeGpg()
        updater = make_updater(tmp_path, {"signed": SIGNED}, import_keys=True, gpg=gpg)

        report = await updater.run(["signed"])

        assert gpg.received == ["ABCDEF0123456789"]
        assert report.succeeded == ["signed"]

    @pytest.mark.asyncio
    async def test_selected_dependency_built_and_installed_first(self, tmp_path):
        pacman = FakePacman()
        makepkg = DependencyCheckingMakepkg(pacman)
        updater = make_updater(tmp_path, {"app": APP, "libnew": LIBNEW}, pacman=pacman, makepkg=makepkg)

        report = await updater.run(["app", "libnew"])

        assert makepkg.built == ["libnew", "app"]
        assert pacman.installs == [
            (["libnew-1-1-x86_64.pkg.tar.zst"], False),
            (["app-1-1-x86_64.pkg.tar.zst"], False),
        ]
        assert sorted(report.succeeded) == ["app", "libnew"]
        assert report.skipped == []

    @pytest.mark.asyncio
    async def test_dependent_skipped_when_selected_dependency_fails(self, tmp_path):
        pacman = FakePacman()
        makepkg = DependencyCheckingMakepkg(pacman, fail={"libnew"})
        updater = make_updater(tmp_path, {"app": APP, "libnew": LIBNEW}, pacman=pacman, makepkg=makepkg)

        report = await updater.run(["app", "libnew"])

        assert makepkg.built == ["libnew"]
        assert report.packages["libnew"].stage is Stage.BUILD
        assert report.packages["app"].stage is Stage.BUILD
        assert report.packages["app"].error == "dependency libnew failed"
        assert pacman.installs == []

    @pytest.mark.asyncio
    async def test_staging_failure_isolated(self, tmp_path, monkeypatch):
        makepkg = FakeMakepkg()
        gpg = FakeGpg(known={"ABCDEF0123456789"})
        updater = make_updater(tmp_path, {"libfoo": LIBFOO, "signed": SIGNED}, makepkg=makepkg, gpg=gpg)
        stage = updater.stage_definition

        def stage_definition(base):
            if base == "libfoo":
                raise PermissionError(13, "Permission denied")
            return stage(base)

        monkeypatch.setattr(updater, "stage_definition", stage_definition)

        report = await updater.run(["libfoo", "signed"])

        assert report.packages["libfoo"].stage is Stage.FETCH
        assert "Permission denied" in report.packages["libfoo"].error
        assert makepkg.built == ["signed"]
        assert report.succeeded == ["signed"]
