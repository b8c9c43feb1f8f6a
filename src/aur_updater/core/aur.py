"""
AUR RPC client.

Queries package information from the AUR RPC interface (v5) with retry and
exponential backoff on rate limits and transient network errors.
"""

import asyncio
import logging

import httpx

from aur_updater.config import UpdaterConfig
from aur_updater.core.errors import AurError
from aur_updater.core.resilience import ExponentialBackoff

logger = logging.getLogger(__name__)

# Keeps request URLs well below common length limits
BATCH_SIZE = 150


class AurClient:
    """Looks up package metadata on the AUR."""

    def __init__(
        self,
        config: UpdaterConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff: ExponentialBackoff | None = None,
    ):
        self.config = config
        self.transport = transport
        self.backoff = backoff or ExponentialBackoff(base_delay=1.0, max_delay=30.0, max_retries=3)

    async def info(self, names: list[str]) -> list[dict]:
        """
        Fetch ``type=info`` records for ``names``.

        Returns:
            One result dict per package the AUR knows (``Name``,
            ``PackageBase``, ``Version``, ``Depends``, ...). Unknown names are
            simply absent.

        Raises:
            AurError: The RPC endpoint replied with an error or kept failing.
        """
        results: list[dict] = []
        if not names:
            return results

        timeout = httpx.Timeout(self.config.http_timeout, connect=60.0)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self.transport) as client:
            for start in range(0, len(names), BATCH_SIZE):
                batch = names[start:start + BATCH_SIZE]
                params = [("v", "5"), ("type", "info")] + [("arg[]", name) for name in batch]
                data = await self._request(client, params)
                results.extend(data.get("results", []))

        logger.debug(f"[AUR] {len(results)}/{len(names)} packages found")
        return results

    async def _request(self, client: httpx.AsyncClient, params: list[tuple[str, str]], attempt: int = 0) -> dict:
        """GET the RPC endpoint, retrying rate limits and transient errors."""
        try:
            resp = await client.get(self.config.aur_rpc_url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            if self.backoff.should_retry(attempt):
                delay = self.backoff.calculate_delay(attempt)
                logger.debug(f"AUR request failed ({type(e).__name__}), retry {attempt + 1} after {delay:.1f}s")
                await asyncio.sleep(delay)
                return await self._request(client, params, attempt + 1)
            raise AurError(f"AUR unreachable after {attempt + 1} attempts: {e}") from e

        if resp.status_code == 429 and self.backoff.should_retry(attempt):
            retry_after = resp.headers.get("Retry-After", "")
            delay = float(retry_after) if retry_after.isdigit() else self.backoff.calculate_delay(attempt)
            logger.warning(f"Rate limited by the AUR. Waiting {delay:.0f}s...")
            await asyncio.sleep(delay)
            return await self._request(client, params, attempt + 1)

        if resp.status_code != 200:
            raise AurError(f"AUR returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise AurError(f"AUR returned invalid JSON: {e}") from e
        if data.get("type") == "error":
            raise AurError(data.get("error") or "unknown AUR error")
        return data
