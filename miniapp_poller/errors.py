from typing import Optional


class PollerError(Exception):
    """Base class for errors raised by the status clients."""


class TransientFetchError(PollerError):
    """A status fetch failed in a way that is worth retrying."""


class RateLimitedError(PollerError):
    def __init__(self, url: str, retry_after: Optional[float] = None):
        self.url = url
        self.retry_after = retry_after
        message = f"Rate limited by {url}"
        if retry_after is not None:
            message += f" (retry after {retry_after:g}s)"
        super().__init__(message)
