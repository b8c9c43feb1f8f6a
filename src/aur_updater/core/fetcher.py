"""
Asset Fetcher — mirror-aware, checksum-verified source downloads.

HTTP assets are streamed to disk by a fixed pool of asyncio workers draining
one shared queue; git sources are cloned or pulled afterwards, one at a time,
in the order they were queued. A failing task is logged and recorded, never
raised: the caller gets back the set of packages whose every asset arrived.
"""

import asyncio
import logging
import shutil
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import aiofiles
import httpx
from rich.console import Console

from aur_updater.config import UpdaterConfig
from aur_updater.core.errors import ChecksumMismatch, CommandError, FetchFailure
from aur_updater.core.git import GitClient
from aur_updater.core.mirror import MirrorRewriter, mirror_host
from aur_updater.core.progress import FetchProgress
from aur_updater.core.resilience import CircuitBreaker
from aur_updater.models.package import FetchTask

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

CHUNK_SIZE = 64 * 1024


class FetchStatus(Enum):
    """Result of a single fetch task."""

    FETCHED = "fetched"
    VERIFIED = "verified"  # cached file matched its checksum, no download
    FAILED = "failed"


@dataclass
class FetchOutcome:
    task: FetchTask
    status: FetchStatus
    url: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not FetchStatus.FAILED


@dataclass
class FetchSummary:
    ready: set[str] = field(default_factory=set)
    outcomes: list[FetchOutcome] = field(default_factory=list)

    @property
    def failures(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if not o.ok]


async def download(
    client: httpx.AsyncClient,
    url: str,
    destination: Path,
    on_progress: ProgressCallback | None = None,
) -> int:
    """
    Stream ``url`` into ``destination`` without buffering the body in memory.

    Args:
        client: Shared HTTP client.
        url: URL to fetch.
        destination: Target file, overwritten if present.
        on_progress: Called with ``(bytes received, total bytes)`` after every
            chunk; total is 0 when the server sends no Content-Length.

    Returns:
        Number of bytes written.

    Raises:
        FetchFailure: On HTTP or I/O errors. The partial file is removed first.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    received = 0
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            length = response.headers.get("Content-Length", "")
            total = int(length) if length.isdigit() else 0
            async with aiofiles.open(destination, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    await f.write(chunk)
                    received += len(chunk)
                    if on_progress:
                        on_progress(received, total)
    except BaseException as e:
        destination.unlink(missing_ok=True)
        if isinstance(e, (httpx.HTTPError, OSError)):
            raise FetchFailure(url, str(e) or type(e).__name__) from e
        raise
    return received


class AssetFetcher:
    """
    Fetches source assets for a batch of packages.

    Features:
    - Mirror rewriting with one fallback to the original URL
    - Checksum-verified cache hits skip the network
    - Bounded HTTP concurrency with aggregated progress
    - Sequential git clone/pull after all HTTP downloads
    """

    def __init__(
        self,
        config: UpdaterConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        git: GitClient | None = None,
        console: Console | None = None,
        show_progress: bool = True,
    ):
        self.config = config
        self.rewriter = MirrorRewriter(config.mirror_rules)
        self.breaker = CircuitBreaker(failure_threshold=3)
        self.git = git or GitClient()
        self.transport = transport
        self.console = console
        self.show_progress = show_progress

    # ──────────────────────────────────────────────
    # Entry point
    # ──────────────────────────────────────────────

    async def fetch_all(self, tasks: Iterable[FetchTask], packages: Iterable[str] | None = None) -> FetchSummary:
        """
        Fetch every task and report which packages are ready to build.

        Args:
            tasks: Fetch tasks for all selected packages.
            packages: Package names to report on; names without any task are
                ready by definition.

        Returns:
            FetchSummary whose ``ready`` set holds every package none of whose
            tasks failed.
        """
        tasks = list(tasks)
        http_tasks = [t for t in tasks if t.source.transport == "http"]
        git_tasks = [t for t in tasks if t.source.transport == "git"]
        logger.info(f"Fetching {len(http_tasks)} file(s) and {len(git_tasks)} repositories")

        outcomes: list[FetchOutcome] = []
        with FetchProgress(len(tasks), console=self.console, enabled=self.show_progress) as progress:
            if http_tasks:
                async with self._http_client() as client:
                    outcomes += await self._run_workers(client, http_tasks, progress)
            for task in git_tasks:
                outcomes.append(await self._fetch_git(task, progress))

        failed = {o.task.package_name for o in outcomes if not o.ok}
        names = set(packages or ()) | {t.package_name for t in tasks}
        summary = FetchSummary(ready=names - failed, outcomes=outcomes)
        for outcome in summary.failures:
            logger.warning(f"[Fetch] {outcome.task.package_name}: {outcome.task.source.filename} failed: {outcome.error}")
        return summary

    @asynccontextmanager
    async def _http_client(self):
        timeout = httpx.Timeout(self.config.http_timeout, connect=60.0)
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=self.transport,
            # checksums are computed over the bytes as published
            headers={"Accept-Encoding": "identity"},
        ) as client:
            yield client

    async def _run_workers(
        self, client: httpx.AsyncClient, tasks: list[FetchTask], progress: FetchProgress
    ) -> list[FetchOutcome]:
        queue: asyncio.Queue[FetchTask] = asyncio.Queue()
        for task in tasks:
            queue.put_nowait(task)
        outcomes: list[FetchOutcome] = []

        async def worker():
            while True:
                try:
                    task = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                outcomes.append(await self._fetch_http(client, task, progress))

        workers = [asyncio.create_task(worker()) for _ in range(min(self.config.concurrency, len(tasks)))]
        await asyncio.gather(*workers)
        return outcomes

    def _mirror_url(self, url: str, transport: str) -> str:
        mirror = self.rewriter.rewrite(url, transport)
        if mirror != url and self.breaker.is_open(mirror_host(mirror)):
            return url
        return mirror

    # ──────────────────────────────────────────────
    # HTTP
    # ──────────────────────────────────────────────

    async def _fetch_http(self, client: httpx.AsyncClient, task: FetchTask, progress: FetchProgress) -> FetchOutcome:
        key = f"{task.package_name}/{task.source.filename}"
        try:
            if task.checksum.verifiable and task.destination.is_file():
                if await asyncio.to_thread(task.checksum.matches, task.destination):
                    logger.info(f"{key}: cached file verified ({task.checksum.algorithm})")
                    progress.finish(key, ok=True)
                    return FetchOutcome(task, FetchStatus.VERIFIED, url=None)
                logger.info(f"{key}: cached file does not match its checksum, fetching again")

            original = task.source.url
            mirror = self._mirror_url(original, "http")
            urls = [mirror, original] if mirror != original else [original]
            progress.start(key, f"[cyan]{key}[/cyan]")

            error: FetchFailure | None = None
            for url in urls:
                route = f"{original} -> {url}" if url != original else url
                logger.info(f"{key} from {route}")
                try:
                    await download(client, url, task.destination, lambda r, t: progress.update(key, r, t))
                    await self._verify(task, url)
                except FetchFailure as e:
                    error = e
                    logger.warning(f"{key}: {e}")
                    if url != original:
                        self.breaker.record_failure(mirror_host(url))
                        logger.info(f"{key}: retrying from {original}")
                    continue
                if url != original:
                    self.breaker.record_success(mirror_host(url))
                progress.finish(key, ok=True)
                return FetchOutcome(task, FetchStatus.FETCHED, url=url)

            progress.finish(key, ok=False)
            return FetchOutcome(task, FetchStatus.FAILED, url=original, error=str(error))
        except Exception as e:
            task.destination.unlink(missing_ok=True)
            logger.error(f"{key}: unexpected error: {e}")
            progress.finish(key, ok=False)
            return FetchOutcome(task, FetchStatus.FAILED, url=task.source.url, error=str(e))

    async def _verify(self, task: FetchTask, url: str) -> None:
        """Check a fresh download; a mismatching file is deleted."""
        spec = task.checksum
        if not spec.verifiable:
            return
        actual = await asyncio.to_thread(spec.digest, task.destination)
        expected = spec.values[0].lower()
        if actual != expected:
            task.destination.unlink(missing_ok=True)
            raise ChecksumMismatch(url, spec.algorithm, expected, actual)

    # ──────────────────────────────────────────────
    # Git
    # ──────────────────────────────────────────────

    async def _fetch_git(self, task: FetchTask, progress: FetchProgress) -> FetchOutcome:
        key = f"{task.package_name}/{task.source.filename}"
        original = task.source.url
        mirror = self._mirror_url(original, "git")
        destination = task.destination
        route = f"{original} -> {mirror}" if mirror != original else original
        logger.info(f"{key} from git {route}")
        progress.start(key, f"[magenta]git {key}[/magenta]")

        try:
            pulled = False
            if destination.is_dir() and any(destination.iterdir()):
                try:
                    await self._pull(destination, mirror, original)
                    pulled = True
                except CommandError as e:
                    logger.warning(f"{key}: pull failed ({e}), cloning again")
                    shutil.rmtree(destination, ignore_errors=True)
            if not pulled:
                await self._clone(task, mirror, original)
        except (CommandError, OSError) as e:
            if mirror != original:
                self.breaker.record_failure(mirror_host(mirror))
            progress.finish(key, ok=False)
            return FetchOutcome(task, FetchStatus.FAILED, url=original, error=str(e))

        progress.finish(key, ok=True)
        return FetchOutcome(task, FetchStatus.FETCHED, url=mirror)

    async def _pull(self, path: Path, mirror: str, original: str) -> None:
        """Pull through the mirror, leaving ``origin`` pointed at the upstream URL."""
        if mirror == original:
            await self.git.pull(path)
            return
        await self.git.set_remote(path, mirror)
        try:
            await self.git.pull(path)
        finally:
            await self.git.set_remote(path, original)

    async def _clone(self, task: FetchTask, mirror: str, original: str) -> None:
        """Clone, removing the partial directory and retrying once on failure."""
        destination = task.destination
        kind, _, ref = (task.source.fragment or "").partition("=")
        shallow = self.config.shallow_git and kind != "commit"
        branch = ref if kind in ("tag", "branch") and ref else None

        attempts = [mirror, original]
        for attempt, url in enumerate(attempts):
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                await self.git.clone(url, destination, shallow=shallow, branch=branch)
                break
            except CommandError as e:
                shutil.rmtree(destination, ignore_errors=True)
                if attempt == len(attempts) - 1:
                    raise
                logger.warning(f"{task.package_name}: clone of {url} failed ({e}), retrying")

        if url != original:
            await self.git.set_remote(destination, original)
        if kind == "commit" and ref:
            await self.git.checkout(destination, ref)
