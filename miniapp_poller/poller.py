import asyncio
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from loguru import logger
from miniapp_poller.errors import RateLimitedError
from miniapp_poller.models import (
    OutcomeKind,
    PollOutcome,
    PollRequest,
    StatusResponse,
)


# Returned in place of a StatusResponse when a fetch outlives the deadline
_DEADLINE = object()


def _is_rate_limited(error: Exception) -> bool:
    if isinstance(error, RateLimitedError):
        return True
    return isinstance(error, aiohttp.ClientResponseError) and error.status == 429


class PollHandle:
    """Owns one running poll. Cancelling it stops the loop at its next wake-up.

    A fetch already in flight is left to finish, but its result is dropped and
    the outcome is ``cancelled``.
    """

    def __init__(self, poller: "StatusPoller", request: PollRequest):
        self.request = request
        self._cancelled = asyncio.Event()
        self._task = asyncio.create_task(poller._run(request, self._cancelled))

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> PollOutcome:
        return await self._task

    async def __aenter__(self) -> "PollHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        if exc_type is asyncio.CancelledError:
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class StatusPoller:
    def __init__(
        self,
        on_status_change: Optional[Callable[[StatusResponse], Awaitable[Any]]] = None,
    ):
        self.logger = logger
        self.on_status_change = on_status_change

    async def poll(self, request: PollRequest) -> PollOutcome:
        """Poll until a terminal status, timeout, exhausted retries or rate limiting"""
        return await self._run(request, asyncio.Event())

    def start(self, request: PollRequest) -> PollHandle:
        """Start polling in a background task and return its handle"""
        return PollHandle(self, request)

    def watch(self, request: PollRequest) -> PollHandle:
        """Same as start(), meant for ``async with`` so the loop is released on exit"""
        return self.start(request)

    async def _wait_or_cancel(self, delay: float, cancelled: asyncio.Event) -> bool:
        """Sleep for delay seconds. Returns True if cancelled while sleeping"""
        if cancelled.is_set():
            return True
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _fetch_before_deadline(self, request: PollRequest, deadline: Optional[float]):
        """Runs one fetch, abandoning it if the deadline passes before it settles"""
        fetch = asyncio.ensure_future(request.fetch_status(request.resource_id))
        timeout = None
        if deadline is not None:
            timeout = max(deadline - asyncio.get_event_loop().time(), 0.0)

        try:
            done, _ = await asyncio.wait({fetch}, timeout=timeout)
        except asyncio.CancelledError:
            fetch.cancel()
            raise

        if not done:
            self.logger.debug(f"Fetch for {request.resource_id} still running at the deadline")
            fetch.cancel()
            await asyncio.gather(fetch, return_exceptions=True)
            return _DEADLINE
        return fetch.result()

    async def _handle_status_change(
        self, status_response: StatusResponse, last_status: Optional[str]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status == status_response.status or self.on_status_change is None:
            return
        self.logger.debug(f"Status changed to {status_response.status}")
        try:
            await self.on_status_change(status_response)
        except Exception as callback_error:
            self.logger.exception(f"Status change callback failed: {callback_error}")

    async def _run(self, request: PollRequest, cancelled: asyncio.Event) -> PollOutcome:
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        deadline = start_time + request.timeout if request.timeout is not None else None
        attempts = 0
        consecutive_errors = 0
        last_status: Optional[str] = None
        last_response: Optional[StatusResponse] = None

        def finish(kind: OutcomeKind, error: Optional[Exception] = None) -> PollOutcome:
            outcome = PollOutcome(
                kind=kind,
                resource_id=request.resource_id,
                status=last_status,
                response=last_response,
                error=str(error) if error is not None else None,
                attempts=attempts,
                elapsed_time=loop.time() - start_time,
            )
            self.logger.info(
                f"Polling {request.resource_id} finished: {kind.value} "
                f"(status={last_status}, attempts={attempts}, {outcome.elapsed_time:.2f}s)"
            )
            return outcome

        self.logger.debug(
            f"Polling {request.resource_id} every {request.interval}s "
            f"(timeout={request.timeout}, max errors={request.max_consecutive_errors})"
        )

        while True:
            delay = request.interval
            deadline_reached = False
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= delay:
                    delay = max(remaining, 0.0)
                    deadline_reached = True

            if await self._wait_or_cancel(delay, cancelled):
                return finish(OutcomeKind.cancelled)
            if deadline_reached:
                return finish(OutcomeKind.timeout)

            attempts += 1
            try:
                status_response = await self._fetch_before_deadline(request, deadline)
            except Exception as fetch_error:
                if cancelled.is_set():
                    return finish(OutcomeKind.cancelled)
                if _is_rate_limited(fetch_error):
                    return finish(OutcomeKind.rate_limited, fetch_error)

                consecutive_errors += 1
                self.logger.warning(
                    f"Error polling {request.resource_id} "
                    f"({consecutive_errors} in a row): {fetch_error}"
                )
                if (
                    request.max_consecutive_errors is not None
                    and consecutive_errors >= request.max_consecutive_errors
                ):
                    return finish(OutcomeKind.transient_error, fetch_error)
                continue

            if cancelled.is_set():
                return finish(OutcomeKind.cancelled)
            if status_response is _DEADLINE:
                return finish(OutcomeKind.timeout)

            consecutive_errors = 0
            await self._handle_status_change(status_response, last_status)
            last_status = status_response.status
            last_response = status_response

            if last_status in request.terminal_success:
                return finish(OutcomeKind.success)
            if last_status in request.terminal_failure:
                return finish(OutcomeKind.failure)

            self.logger.debug(
                f"{request.resource_id} still {last_status}, "
                f"next check in {request.interval:.2f}s"
            )
