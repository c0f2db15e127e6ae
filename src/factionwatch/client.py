from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import Any, Protocol

import httpx
from loguru import logger

from factionwatch.errors import (
    ApiError,
    CredentialError,
    IpBannedError,
    NoCredentialAvailableError,
    TransportError,
    UpstreamRateLimitError,
)
from factionwatch.models import Credential
from factionwatch.ratelimiter import RateLimiter

# Incorrect key, key paused / owner fedded, key disabled, key owner inactive.
KEY_ERROR_CODES = frozenset({1, 2, 10, 13})
RATE_LIMIT_CODE = 5
IP_BANNED_CODE = 8

ProgressCallback = Callable[[int, int], None]
Sleep = Callable[[float], Awaitable[None]]


class RankingSource(Protocol):
    async def fetch_ranking_page(self, offset: int = 0, limit: int = 100) -> dict[str, Any]: ...


class TornClient:
    """Fetches faction and ranking data through a shared :class:`RateLimiter`.

    Each logical request picks a key, waits for its rate-limit slot, and
    retries on another key when the provider rejects the key or the network
    fails. A global rate-limit answer backs off and retries the same key.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str = "https://api.torn.com",
        http: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        upstream_cooldown: float = 30.0,
        ranking_page_delay: float = 0.5,
        ranking_max_entries: int = 5000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.upstream_cooldown = upstream_cooldown
        self.ranking_page_delay = ranking_page_delay
        self.ranking_max_entries = ranking_max_entries
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def fetch_faction(self, faction_id: int) -> dict[str, Any]:
        return await self._fetch(
            f"/faction/{faction_id}", {"selections": "basic"}, f"Faction {faction_id}"
        )

    async def fetch_ranking_page(self, offset: int = 0, limit: int = 100) -> dict[str, Any]:
        return await self._fetch(
            "/v2/torn/factionhof",
            {"cat": "rank", "limit": limit, "offset": offset},
            f"Ranking page offset={offset}",
        )

    async def fetch_all_ranking_pages(
        self, on_progress: ProgressCallback | None = None, page_size: int = 100
    ) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        pages = iter_ranking_pages(
            self, page_size, delay=self.ranking_page_delay, sleep=self._sleep
        )
        async with aclosing(pages):
            async for page, rows in pages:
                entries.extend(rows)
                if on_progress:
                    on_progress(page, len(entries))
                if len(entries) >= self.ranking_max_entries:
                    break

        return entries[: self.ranking_max_entries]

    async def _call(self, credential: Credential, path: str, params: dict[str, Any]) -> dict[str, Any]:
        self.limiter.record_call(credential)
        try:
            response = await self._http.get(
                f"{self.base_url}{path}", params={**params, "key": credential.key}
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Response body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise TransportError("Response body is not a JSON object")
        return data

    async def _fetch(self, path: str, params: dict[str, Any], context: str) -> dict[str, Any]:
        tried: list[str] = []
        attempt = 1
        cooldowns = 0
        pinned: Credential | None = None
        network_error: TransportError | None = None

        while True:
            if pinned is not None:
                credential = pinned
                wait = self.limiter.wait_time(pinned)
            else:
                selected = self.limiter.select_credential(excluding=tried)
                if selected is None:
                    if network_error is not None:
                        raise TransportError(
                            f"All API attempts failed for {context}. Last error: {network_error}"
                        ) from network_error
                    raise NoCredentialAvailableError(
                        "No API keys available. All keys may have failed."
                    )
                credential, wait = selected

            # only call on a zero wait, the slot may be taken while sleeping
            if wait > 0:
                logger.debug(
                    "Waiting {:.1f}s for rate limit on key {} ({})",
                    wait,
                    credential.masked,
                    context,
                )
                await self._sleep(wait)
                continue

            pinned = None
            try:
                data = await self._call(credential, path, params)
            except TransportError as exc:
                logger.error("Network error on key {} ({}): {}", credential.masked, context, exc)
                self.limiter.quarantine(credential)
                network_error = exc
                if attempt < self.retry_attempts:
                    tried.append(credential.key)
                    attempt += 1
                    await self._sleep(self.retry_delay)
                    continue
                raise TransportError(
                    f"All API attempts failed for {context}. Last error: {exc}"
                ) from exc

            error = data.get("error")
            if not error:
                self.limiter.clear_quarantine(credential)
                return data

            code = error.get("code") if isinstance(error, dict) else None
            message = str(error.get("error") if isinstance(error, dict) else error)

            if code in KEY_ERROR_CODES:
                logger.warning(
                    "Key {} rejected with code {} ({}), trying next key",
                    credential.masked,
                    code,
                    message,
                )
                self.limiter.quarantine(credential)
                tried.append(credential.key)
                if len(tried) >= len(self.limiter):
                    raise NoCredentialAvailableError(
                        f"No API keys available. All keys failed. Last error: {message}"
                    )
                if attempt >= self.retry_attempts:
                    raise CredentialError(
                        f"All API key attempts failed. Last error: {message}", code=code
                    )
                attempt += 1
                await self._sleep(self.retry_delay)
                continue

            if code == RATE_LIMIT_CODE:
                cooldowns += 1
                if cooldowns > self.retry_attempts:
                    raise UpstreamRateLimitError(
                        f"Torn rate limit persisted for {context}", code=code
                    )
                logger.warning(
                    "Torn rate limit hit, waiting {}s before retrying key {}",
                    self.upstream_cooldown,
                    credential.masked,
                )
                await self._sleep(self.upstream_cooldown)
                pinned = credential
                continue

            if code == IP_BANNED_CODE:
                raise IpBannedError(
                    "IP is banned from Torn API. Please contact Torn support.", code=code
                )

            raise ApiError(f"Torn API error: {message}", code=code)


def has_next_page(data: dict[str, Any]) -> bool:
    metadata = data.get("_metadata")
    if not isinstance(metadata, dict):
        return False
    links = metadata.get("links")
    return isinstance(links, dict) and bool(links.get("next"))


async def iter_ranking_pages(
    source: RankingSource,
    page_size: int = 100,
    max_pages: int | None = None,
    delay: float = 0.0,
    sleep: Sleep = asyncio.sleep,
) -> AsyncIterator[tuple[int, list[dict[str, Any]]]]:
    """Yield ``(page, rows)`` until a page is empty, has no next link or ``max_pages`` is hit.

    Sleeps ``delay`` between pages. Close the iterator when stopping early.
    """
    offset = 0
    page = 0
    while True:
        page += 1
        data = await source.fetch_ranking_page(offset, page_size)
        rows = data.get("factionhof") or []
        if not rows:
            return
        yield page, rows
        if not has_next_page(data) or (max_pages is not None and page >= max_pages):
            return
        offset += page_size
        await sleep(delay)
