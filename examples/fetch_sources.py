"""
Example: Fetch the source assets of a local package definition.

Usage:
    python examples/fetch_sources.py path/to/.SRCINFO
"""

import asyncio
import sys
from pathlib import Path

from aur_updater import AssetFetcher
from aur_updater.config import UpdaterConfig
from aur_updater.models.package import FetchTask
from aur_updater.parsers.srcinfo import load_srcinfo


async def main(srcinfo: Path):
    config = UpdaterConfig(cache_dir=Path("./aur_cache"), concurrency=8)
    record = load_srcinfo(srcinfo)

    tasks = FetchTask.for_record(record, config.arch, config.build_dir)
    summary = await AssetFetcher(config).fetch_all(tasks, packages=[record.base_name])

    for outcome in summary.outcomes:
        print(f"{outcome.status.value:>8}  {outcome.task.source.filename}  {outcome.error or ''}")
    if record.base_name in summary.ready:
        print(f"\n✅ {record.base_name} {record.full_version} ready in {config.build_dir / record.base_name}")


if __name__ == "__main__":
    asyncio.run(main(Path(sys.argv[1] if len(sys.argv) > 1 else ".SRCINFO")))
