from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Collection, Iterable

from loguru import logger

from factionwatch.models import Credential, CredentialUsage

# Safety margin added on top of the computed window expiry.
SLOT_BUFFER_SECONDS = 0.1


class RateLimiter:
    """Sliding-window call accounting and key selection over a pool of credentials.

    Every credential carries its own calls-per-minute limit. Call timestamps are
    kept in memory and purged lazily whenever a count is read. Keys rejected by
    the API are quarantined for ``quarantine_seconds`` and skipped by
    :meth:`select_credential` until the timeout passes or a success clears them.
    """

    def __init__(
        self,
        credentials: Iterable[Credential] = (),
        window_seconds: float = 60.0,
        quarantine_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.quarantine_seconds = quarantine_seconds
        self._clock = clock
        self._credentials: dict[str, Credential] = {}
        self._calls: dict[str, deque[float]] = {}
        self._failed_at: dict[str, float] = {}
        self.set_credentials(credentials)

    def set_credentials(self, credentials: Iterable[Credential]) -> None:
        self._credentials = {c.key: c for c in credentials}
        for key in list(self._calls):
            if key not in self._credentials:
                del self._calls[key]
        for key in list(self._failed_at):
            if key not in self._credentials:
                del self._failed_at[key]

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials.values())

    def __len__(self) -> int:
        return len(self._credentials)

    def record_call(self, credential: Credential) -> None:
        self._calls.setdefault(credential.key, deque()).append(self._clock())

    def call_count(self, credential: Credential) -> int:
        calls = self._calls.get(credential.key)
        if not calls:
            return 0
        horizon = self._clock() - self.window_seconds
        while calls and calls[0] <= horizon:
            calls.popleft()
        return len(calls)

    def wait_time(self, credential: Credential) -> float:
        if self.call_count(credential) < credential.rate_limit:
            return 0.0
        oldest = self._calls[credential.key][0]
        expiry = oldest + self.window_seconds - self._clock()
        return max(0.0, expiry + SLOT_BUFFER_SECONDS)

    def quarantine(self, credential: Credential) -> None:
        self._failed_at[credential.key] = self._clock()
        logger.warning("Key {} quarantined for {}s", credential.masked, self.quarantine_seconds)

    def clear_quarantine(self, credential: Credential) -> None:
        self._failed_at.pop(credential.key, None)

    def is_quarantined(self, credential: Credential) -> bool:
        self._expire_quarantine()
        return credential.key in self._failed_at

    def _expire_quarantine(self) -> None:
        now = self._clock()
        for key, failed_at in list(self._failed_at.items()):
            if now - failed_at >= self.quarantine_seconds:
                del self._failed_at[key]

    def select_credential(
        self, excluding: Collection[str] = ()
    ) -> tuple[Credential, float] | None:
        """Pick the least used eligible key and how long to wait before using it.

        ``excluding`` holds keys already tried by the current request. Returns
        ``None`` when no key is left to try.
        """
        untried = [c for c in self._credentials.values() if c.key not in excluding]
        if not untried:
            return None

        self._expire_quarantine()
        eligible = [c for c in untried if c.key not in self._failed_at]

        if not eligible:
            logger.warning("Every remaining key is quarantined, clearing quarantine")
            self._failed_at.clear()
            return untried[0], 0.0

        best: Credential | None = None
        best_ratio = float("inf")
        for c in eligible:
            if self.wait_time(c) > 0:
                continue
            ratio = self.call_count(c) / c.rate_limit
            if ratio < best_ratio:
                best, best_ratio = c, ratio
        if best is not None:
            return best, 0.0

        soonest = min(eligible, key=self.wait_time)
        return soonest, self.wait_time(soonest)

    def usage(self) -> dict[str, CredentialUsage]:
        self._expire_quarantine()
        status: dict[str, CredentialUsage] = {}
        for c in self._credentials.values():
            calls = self.call_count(c)
            status[c.masked] = CredentialUsage(
                calls=calls,
                limit=c.rate_limit,
                available=max(0, c.rate_limit - calls),
                quarantined=c.key in self._failed_at,
            )
        return status

    def clear_log(self) -> None:
        self._calls.clear()
        logger.info("Rate limit log cleared")
