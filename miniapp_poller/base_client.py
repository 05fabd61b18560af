import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple

import aiohttp
from loguru import logger
from miniapp_poller.errors import RateLimitedError, TransientFetchError
from miniapp_poller.models import StatusPollingConfig, StatusResponse


def _retry_after(response: aiohttp.ClientResponse) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class BaseStatusClient:
    """Shared HTTP plumbing for clients whose status feeds a StatusPoller."""

    default_config = StatusPollingConfig()

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict] = None,
        config: Optional[StatusPollingConfig] = None,
        on_status_change: Optional[Callable[[StatusResponse], Awaitable[Any]]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        # Each client owns its config; the module presets stay untouched
        self.config = (config or self.default_config).model_copy()
        self.logger = logger
        self.on_status_change = on_status_change

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(headers=self.headers)

    async def _request_json(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        **kwargs,
    ) -> Tuple[dict, float]:
        """Sends one request and returns the decoded body with the elapsed time"""
        start_time = asyncio.get_event_loop().time()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status == 429:
                    raise RateLimitedError(url, _retry_after(response))
                response.raise_for_status()

                data = await response.json()
                elapsed_time = asyncio.get_event_loop().time() - start_time
                return data, elapsed_time
        except RateLimitedError as e:
            self.logger.error(f"{e}")
            raise
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise TransientFetchError(f"HTTP error {e.status} at {url}: {e.message}") from e
        except aiohttp.ClientError as e:
            self.logger.error(f"Request to {url} failed: {e}")
            raise TransientFetchError(f"Request to {url} failed: {e}") from e
