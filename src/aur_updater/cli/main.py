"""
AUR Updater CLI — keep foreign (AUR) packages up to date.

Usage:
    aur-updater check
    aur-updater update --all --yes --report last-run.json
    aur-updater update yay paru --concurrency 8 --mirror https://github.com=https://gh.example/https://github.com
    aur-updater fetch yay --no-mirrors
    aur-updater deps yay
    aur-updater clean
"""

import asyncio
import dataclasses
import json
import logging
from pathlib import Path

import click


def _setup_logging(verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _parse_mirrors(ctx, param, values):
    from aur_updater.core.mirror import MirrorRule

    try:
        return tuple(MirrorRule.parse(v) for v in values)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _build_config(cache_dir=None, concurrency=None, mirrors=(), no_mirrors=False, import_keys=False):
    """Environment defaults, overridden by command line options."""
    from aur_updater.config import UpdaterConfig

    config = UpdaterConfig.from_env()
    overrides: dict = {"import_keys": import_keys}
    if cache_dir:
        overrides["cache_dir"] = Path(cache_dir)
    if concurrency:
        overrides["concurrency"] = concurrency
    defaults = () if no_mirrors else config.mirror_rules
    overrides["mirror_rules"] = tuple(mirrors) + defaults
    return dataclasses.replace(config, **overrides)


def _common_options(func):
    options = [
        click.option("--cache-dir", type=click.Path(), default=None, help="Cache directory (definitions and builds)."),
        click.option("--concurrency", "-j", type=click.IntRange(min=1), default=None, help="Parallel downloads."),
        click.option(
            "--mirror",
            "mirrors",
            multiple=True,
            callback=_parse_mirrors,
            help="Mirror rule SRC=TO (prefix with git: for git sources, re: on SRC for a regex).",
        ),
        click.option("--no-mirrors", is_flag=True, help="Disable the built-in mirror rules."),
        click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(package_name="aur-updater")
def cli():
    """AUR Updater — keep foreign packages up to date."""
    pass


@cli.command()
@click.option("--cache-dir", type=click.Path(), default=None, help="Cache directory (definitions and builds).")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging.")
def check(cache_dir, verbose):
    """List installed AUR packages that have newer versions."""
    from rich.console import Console
    from rich.table import Table

    from aur_updater.core.updater import PackageUpdater

    _setup_logging(verbose)
    console = Console()
    updater = PackageUpdater(_build_config(cache_dir=cache_dir), console=console)
    candidates = asyncio.run(updater.find_updates())
    if not candidates:
        console.print("[green]All AUR packages are up to date.[/green]")
        return

    table = Table("Package", "Installed", "Available")
    for c in candidates:
        table.add_row(c.name, c.local_version, c.remote_version)
    console.print(table)


@cli.command()
@click.argument("names", nargs=-1)
@click.option("--all", "update_all", is_flag=True, help="Update every package that has a newer version.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--no-install", is_flag=True, help="Build only, do not install.")
@click.option("--no-deps", is_flag=True, help="Do not install or build missing dependencies.")
@click.option("--import-keys", is_flag=True, help="Import missing PGP keys from the keyserver.")
@click.option(
    "--report", "report_path", type=click.Path(dir_okay=False), default=None, help="Write the run report as JSON."
)
@_common_options
def update(
    names, update_all, yes, no_install, no_deps, import_keys, report_path, cache_dir, concurrency, mirrors, no_mirrors, verbose
):
    """Update AUR packages (all outdated ones, or the given package bases)."""
    from rich.console import Console

    from aur_updater.core.updater import PackageUpdater

    _setup_logging(verbose)
    console = Console()
    config = _build_config(cache_dir, concurrency, mirrors, no_mirrors, import_keys)
    updater = PackageUpdater(config, console=console)

    expected: dict[str, str] = {}
    selected = list(names)
    if not selected:
        console.print("checking for updates...")
        candidates = asyncio.run(updater.find_updates())
        for c in candidates:
            label = f"{c.name} {c.local_version} -> {c.remote_version}"
            if update_all or yes or click.confirm(f"Update {label}?", default=True):
                if c.base not in selected:
                    selected.append(c.base)
                expected[c.base] = c.remote_version
        if not selected:
            console.print("[green]Nothing to update.[/green]")
            return

    report = asyncio.run(
        updater.run(
            selected,
            expected_versions=expected,
            install=not no_install,
            install_dependencies=not no_deps,
        )
    )
    if report_path:
        Path(report_path).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print(f"Report written to {report_path}")
    if report.skipped:
        raise SystemExit(1)


@cli.command()
@click.argument("names", nargs=-1, required=True)
@_common_options
def fetch(names, cache_dir, concurrency, mirrors, no_mirrors, verbose):
    """Fetch source assets for already downloaded definitions."""
    from rich.console import Console

    from aur_updater.core.errors import MalformedMetadataError, UnboundRequiredVariableError
    from aur_updater.core.updater import PackageUpdater
    from aur_updater.models.package import FetchTask

    _setup_logging(verbose)
    console = Console()
    config = _build_config(cache_dir, concurrency, mirrors, no_mirrors)
    updater = PackageUpdater(config, console=console)

    tasks = []
    loaded = []
    for name in names:
        try:
            record = updater.load_definition(name)
        except (MalformedMetadataError, UnboundRequiredVariableError) as e:
            console.print(f"[red]{name}: {e}[/red]")
            continue
        updater.stage_definition(name)
        tasks += FetchTask.for_record(record, config.arch, config.build_dir)
        loaded.append(name)

    summary = asyncio.run(updater.fetcher.fetch_all(tasks, packages=loaded))
    for name in names:
        status = "[green]ready[/green]" if name in summary.ready else "[red]incomplete[/red]"
        console.print(f"{name}: {status}")
    if set(names) - summary.ready:
        raise SystemExit(1)


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--cache-dir", type=click.Path(), default=None, help="Cache directory (definitions and builds).")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging.")
def deps(names, cache_dir, verbose):
    """Show how the dependencies of cached definitions would be resolved."""
    from rich.console import Console
    from rich.table import Table

    from aur_updater.core.updater import PackageUpdater

    _setup_logging(verbose)
    console = Console()
    updater = PackageUpdater(_build_config(cache_dir=cache_dir), console=console)
    records = [updater.load_definition(name) for name in names]
    plan, upstream = asyncio.run(updater.plan_dependencies(records))
    if not plan.actionable:
        console.print("[green]All dependencies are installed.[/green]")
        return

    table = Table("Dependency", "Source", "Required by")
    for label, group in (("repository", plan.repository), ("AUR", plan.upstream), ("installed", plan.satisfied)):
        for edge in plan.edges(group):
            source = f"AUR ({upstream[edge.name]})" if edge.name in upstream else label
            table.add_row(edge.name, source, ", ".join(sorted(edge.required_by)))
    console.print(table)

    for error in plan.unresolvable(upstream):
        console.print(f"[red]unresolvable: {error}[/red]")


@cli.command()
@click.option("--cache-dir", type=click.Path(), default=None, help="Cache directory to clean.")
def clean(cache_dir):
    """Remove empty (truncated) files from the build directory."""
    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger("aur_updater.cli")

    config = _build_config(cache_dir=cache_dir)
    count = 0
    if config.build_dir.is_dir():
        for path in config.build_dir.rglob("*"):
            if ".git" in path.parts:
                continue
            if path.is_file() and path.stat().st_size == 0:
                path.unlink()
                logger.info(f"Removed empty file: {path}")
                count += 1
    logger.info(f"Cleanup complete. Removed {count} files.")


if __name__ == "__main__":
    cli()
