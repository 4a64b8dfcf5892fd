"""HTTP readiness probe for the app's dev server."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_result, wait_fixed

from appctl.cli.app.logging import LogComponent, get_logger
from appctl.constants import (
    DEFAULT_DEV_SERVER_URL,
    READY_POLL_INTERVAL,
    READY_PROBE_TIMEOUT,
)


logger = get_logger(LogComponent.SUPERVISOR)


def _not_ready(ready: bool) -> bool:
    return not ready


class ReadinessProbe:
    """Decides whether the dev server answers HTTP yet.

    A 2xx response means ready; refused connections, timeouts and any other
    status mean not ready.
    """

    def __init__(
        self, url: str = DEFAULT_DEV_SERVER_URL, timeout: float = READY_PROBE_TIMEOUT
    ):
        self._url: str = url.rstrip("/")
        self.timeout: float = timeout

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str) -> None:
        self._url = value.rstrip("/")

    async def check(self, http: httpx.AsyncClient | None = None) -> bool:
        """Probe once."""
        try:
            if http is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self._url)
            else:
                response = await http.get(self._url)
        except httpx.HTTPError as e:
            logger.debug(f"Readiness probe {self._url} not ready: {e!r}")
            return False
        return response.is_success

    async def wait_until_ready(
        self,
        *,
        timeout: float,
        interval: float = READY_POLL_INTERVAL,
        guard: Callable[[], None] | None = None,
    ) -> bool:
        """Poll every ``interval`` seconds until ready or ``timeout`` elapses.

        ``guard`` runs before each attempt and may raise to abort the wait
        (e.g. when the process died). Returns False on timeout.
        """
        async with httpx.AsyncClient(timeout=self.timeout) as http:

            async def attempt() -> bool:
                if guard is not None:
                    guard()
                return await self.check(http)

            try:
                return await asyncio.wait_for(
                    poll_until_true(attempt, interval=interval), timeout=timeout
                )
            except asyncio.TimeoutError:
                return False


async def poll_until_true(
    attempt: Callable[[], Awaitable[bool]], *, interval: float
) -> bool:
    """Retry ``attempt`` at a fixed interval until it returns True.

    Exceptions raised by ``attempt`` are not retried; they propagate.
    """
    retrying = AsyncRetrying(
        wait=wait_fixed(interval),
        retry=retry_if_result(_not_ready),
    )
    return await retrying(attempt)
