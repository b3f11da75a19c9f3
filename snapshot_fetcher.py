from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable

import aiohttp
from pydantic import ValidationError

from errors import ConfigurationError, UpstreamFetchError
from snapshot_models import ContractSnapshot, FetchPage, FetchResult

LOGGER = logging.getLogger(__name__)

MASSIVE_REST_BASE = "https://api.massive.com"


async def create_session(*, timeout_total_s: int) -> aiohttp.ClientSession:
    # Pages are fetched one at a time, so a single pooled connection is enough.
    connector = aiohttp.TCPConnector(
        limit=2,
        limit_per_host=2,
        force_close=False,
        enable_cleanup_closed=True,
        ttl_dns_cache=600,
        keepalive_timeout=60,
    )
    timeout = aiohttp.ClientTimeout(total=float(timeout_total_s), connect=30, sock_read=max(30, int(timeout_total_s)))
    return aiohttp.ClientSession(connector=connector, timeout=timeout)


async def _get_json(
    session: aiohttp.ClientSession,
    url: str,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
    max_error_text: int = 500,
) -> tuple[int, dict[str, Any] | None, str | None]:
    """Single attempt. Returns (http_status, json, error_text)."""
    try:
        async with session.get(url, headers=headers, params=params) as resp:
            status = resp.status
            if status != 200:
                try:
                    txt = await resp.text()
                    txt = (txt or "")[:max_error_text]
                except Exception:
                    txt = None
                return status, None, txt
            return status, await resp.json(), None
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        return 0, None, str(e)[:max_error_text]


class SnapshotFetcher:
    """Walks `/v3/snapshot/options/{underlying}` page by page.

    The provider's `next_url` is requested exactly as returned; the cursor
    inside it is never rebuilt locally. A page that is not `OK` aborts the
    whole walk and nothing collected so far is returned.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        *,
        base_url: str = MASSIVE_REST_BASE,
        page_limit: int = 250,
        max_pages: int = 50,
        page_delay_s: float = 0.2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ConfigurationError("MASSIVE_API_KEY is not set")
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.page_limit = max(1, int(page_limit))
        self.max_pages = max(1, int(max_pages))
        self.page_delay_s = float(page_delay_s)
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._sleep = sleep

    async def fetch_page(self, url: str, params: dict[str, Any] | None, page_no: int) -> FetchPage:
        status, data, err = await _get_json(self.session, url, self._headers, params)
        if status != 200 or data is None:
            LOGGER.error("snapshot page %s failed http_status=%s err=%s", page_no, status, (err or "")[:200])
            raise UpstreamFetchError(
                f"snapshot page {page_no} failed with HTTP {status}: {(err or '').strip()[:200]}",
                page=page_no,
                status=status,
            )

        try:
            page = FetchPage.model_validate(data)
        except ValidationError as e:
            raise UpstreamFetchError(f"snapshot page {page_no} has an unexpected shape: {e}", page=page_no) from e

        if page.status != "OK":
            LOGGER.error("snapshot page %s returned status=%s request_id=%s", page_no, page.status, page.request_id)
            raise UpstreamFetchError(
                f"Massive API error on page {page_no}: {page.status}",
                page=page_no,
                status=page.status,
            )
        return page

    async def fetch_all(self, underlying: str) -> FetchResult:
        underlying = underlying.strip().upper()
        next_url: str | None = f"{self.base_url}/v3/snapshot/options/{underlying}"
        params: dict[str, Any] | None = {"limit": self.page_limit}

        contracts: list[ContractSnapshot] = []
        pages = 0
        ceiling_hit = False

        while next_url:
            if pages >= self.max_pages:
                ceiling_hit = True
                LOGGER.warning(
                    "page ceiling reached for %s: stopped after %s pages with more pages available (%s contracts kept)",
                    underlying,
                    pages,
                    len(contracts),
                )
                break
            if pages:
                await self._sleep(self.page_delay_s)

            page = await self.fetch_page(next_url, params, pages + 1)
            pages += 1
            contracts.extend(page.results)
            LOGGER.info("%s page %s: %s contracts (total %s)", underlying, pages, len(page.results), len(contracts))

            next_url = page.next_url or None
            params = None

        LOGGER.info("fetched %s contracts for %s across %s pages", len(contracts), underlying, pages)
        return FetchResult(underlying=underlying, contracts=contracts, pages=pages, ceiling_hit=ceiling_hit)

    async def fetch_underlying_close(self, underlying: str, day: date) -> float | None:
        """Daily aggregate close for the underlying; None when unavailable."""
        underlying = underlying.strip().upper()
        url = f"{self.base_url}/v2/aggs/ticker/{underlying}/range/1/day/{day.isoformat()}/{day.isoformat()}"
        params = {"adjusted": "true", "sort": "desc", "limit": 1}

        status, data, err = await _get_json(self.session, url, self._headers, params)
        if status != 200 or not data:
            LOGGER.warning("daily aggregate for %s on %s unavailable status=%s err=%s", underlying, day, status, err)
            return None

        results = data.get("results") or []
        if not results:
            return None

        row = results[0] or {}
        # Prefer close; fall back to vwap/open if needed.
        for k in ("c", "vw", "o"):
            v = row.get(k)
            try:
                if v is not None:
                    fv = float(v)
                    if fv > 0:
                        return fv
            except (TypeError, ValueError):
                continue

        return None
