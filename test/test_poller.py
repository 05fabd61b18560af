import asyncio
from unittest.mock import Mock

import aiohttp
import pytest
from pydantic import ValidationError
from miniapp_poller.errors import RateLimitedError
from miniapp_poller.models import (
    DEPLOYMENT_READINESS,
    OutcomeKind,
    PollRequest,
    StatusResponse,
)
from miniapp_poller.poller import StatusPoller


class ScriptedFetch:
    """Returns (or raises) the scripted items in order, repeating the last one."""

    def __init__(self, *script, delay: float = 0.0):
        self.script = list(script)
        self.delay = delay
        self.calls = 0

    async def __call__(self, resource_id: str) -> StatusResponse:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(item, Exception):
            raise item
        return StatusResponse(
            status=item, raw_response={"id": resource_id, "status": item}, elapsed_time=0.0
        )


def make_request(fetch, **overrides) -> PollRequest:
    params = dict(
        resource_id="signer-1",
        fetch_status=fetch,
        interval=0.05,
        timeout=2.0,
        terminal_success=frozenset({"approved"}),
        terminal_failure=frozenset({"revoked"}),
        max_consecutive_errors=3,
    )
    params.update(overrides)
    return PollRequest(**params)


def too_many_requests() -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(
        Mock(real_url="https://api.vercel.com/v6/deployments"),
        (),
        status=429,
        message="Too Many Requests",
    )


def now() -> float:
    return asyncio.get_event_loop().time()


@pytest.mark.asyncio
async def test_immediate_success():
    """Terminal success on the first tick resolves without waiting for the timeout."""
    fetch = ScriptedFetch("approved")
    started = now()

    outcome = await StatusPoller().poll(make_request(fetch, timeout=10.0))

    assert outcome.kind == OutcomeKind.success
    assert outcome.status == "approved"
    assert outcome.attempts == 1
    assert now() - started < 1.0


@pytest.mark.asyncio
async def test_timeout_when_never_terminal():
    """A resource that never settles times out within one interval of the budget."""
    fetch = ScriptedFetch("pending_approval")
    started = now()

    outcome = await StatusPoller().poll(make_request(fetch, interval=0.05, timeout=0.3))
    elapsed = now() - started

    assert outcome.kind == OutcomeKind.timeout
    assert outcome.status == "pending_approval"
    assert 0.3 - 1e-3 <= elapsed < 0.3 + 0.05
    assert fetch.calls >= 4


@pytest.mark.asyncio
async def test_terminal_failure_is_never_timeout():
    fetch = ScriptedFetch("BUILDING", "ERROR")
    request = make_request(
        fetch,
        resource_id="prj_1",
        terminal_success=frozenset({"READY"}),
        terminal_failure=frozenset({"ERROR", "CANCELED"}),
    )

    outcome = await StatusPoller().poll(request)

    assert outcome.kind == OutcomeKind.failure
    assert outcome.status == "ERROR"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_rate_limit_stops_without_another_tick():
    fetch = ScriptedFetch("pending_approval", "pending_approval", RateLimitedError("https://api.neynar.com/v2/farcaster/signer", 30))

    outcome = await StatusPoller().poll(make_request(fetch))
    await asyncio.sleep(0.15)

    assert outcome.kind == OutcomeKind.rate_limited
    assert "retry after 30s" in outcome.error
    assert fetch.calls == 3


@pytest.mark.asyncio
async def test_http_429_is_treated_as_rate_limit():
    fetch = ScriptedFetch(too_many_requests(), "approved")

    outcome = await StatusPoller().poll(make_request(fetch, max_consecutive_errors=None))

    assert outcome.kind == OutcomeKind.rate_limited
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_transient_errors_below_budget_are_tolerated():
    fetch = ScriptedFetch(
        aiohttp.ClientConnectionError("connection reset"),
        aiohttp.ClientConnectionError("connection reset"),
        "approved",
    )

    outcome = await StatusPoller().poll(make_request(fetch, max_consecutive_errors=3))

    assert outcome.kind == OutcomeKind.success
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted():
    fetch = ScriptedFetch(aiohttp.ClientConnectionError("connection refused"))

    outcome = await StatusPoller().poll(
        make_request(fetch, timeout=None, max_consecutive_errors=4)
    )

    assert outcome.kind == OutcomeKind.transient_error
    assert "connection refused" in outcome.error
    assert outcome.attempts == 4
    assert outcome.status is None


@pytest.mark.asyncio
async def test_successful_fetch_resets_error_count():
    boom = ValueError("bad gateway")
    fetch = ScriptedFetch(boom, "pending_approval", boom, "pending_approval", boom, "approved")

    outcome = await StatusPoller().poll(make_request(fetch, max_consecutive_errors=2))

    assert outcome.kind == OutcomeKind.success
    assert fetch.calls == 6


@pytest.mark.asyncio
async def test_approval_on_fourth_tick():
    """Pending three times then approved resolves at about four intervals."""
    fetch = ScriptedFetch("pending_approval", "pending_approval", "pending_approval", "approved")
    started = now()

    outcome = await StatusPoller().poll(make_request(fetch, interval=0.1, timeout=0.5))
    elapsed = now() - started

    assert outcome.kind == OutcomeKind.success
    assert outcome.attempts == 4
    assert 0.4 - 1e-3 <= elapsed < 0.5


@pytest.mark.asyncio
async def test_deployment_error_on_first_tick_stops_loop():
    fetch = ScriptedFetch("ERROR", "READY")
    request = PollRequest.from_config(
        "prj_1",
        fetch,
        DEPLOYMENT_READINESS.model_copy(update={"interval": 0.1}),
        terminal_success=frozenset({"READY"}),
        terminal_failure=frozenset({"ERROR", "CANCELED"}),
    )
    started = now()

    outcome = await StatusPoller().poll(request)
    elapsed = now() - started
    await asyncio.sleep(0.3)

    assert outcome.kind == OutcomeKind.failure
    assert outcome.status == "ERROR"
    assert 0.1 - 1e-3 <= elapsed < 0.2
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_cancel_stops_polling():
    fetch = ScriptedFetch("pending_approval")
    handle = StatusPoller().start(make_request(fetch, timeout=None))

    await asyncio.sleep(0.12)
    handle.cancel()
    outcome = await handle.wait()
    calls_at_cancel = fetch.calls
    await asyncio.sleep(0.15)

    assert outcome.kind == OutcomeKind.cancelled
    assert handle.done()
    assert fetch.calls == calls_at_cancel


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_result():
    fetch = ScriptedFetch("approved", delay=0.2)
    handle = StatusPoller().start(make_request(fetch))

    await asyncio.sleep(0.1)
    handle.cancel()
    outcome = await handle.wait()

    assert fetch.calls == 1
    assert outcome.kind == OutcomeKind.cancelled
    assert outcome.status is None


@pytest.mark.asyncio
async def test_watch_releases_loop_on_exit():
    fetch = ScriptedFetch("pending_approval")
    poller = StatusPoller()

    async with poller.watch(make_request(fetch, timeout=None)) as handle:
        await asyncio.sleep(0.08)
        assert not handle.done()

    assert handle.done()
    assert handle.cancelled
    outcome = await handle.wait()
    assert outcome.kind == OutcomeKind.cancelled


@pytest.mark.asyncio
async def test_status_change_callback():
    seen = []

    async def on_change(response):
        seen.append(response.status)
        if response.status == "pending_approval":
            raise RuntimeError("callback bug")

    fetch = ScriptedFetch("generated", "pending_approval", "pending_approval", "approved")

    outcome = await StatusPoller(on_status_change=on_change).poll(make_request(fetch))

    assert outcome.kind == OutcomeKind.success
    assert seen == ["generated", "pending_approval", "approved"]


@pytest.mark.asyncio
async def test_concurrent_polls_are_independent():
    fast = ScriptedFetch("pending_approval", "approved")
    slow = ScriptedFetch("BUILDING")
    poller = StatusPoller()

    results = await asyncio.gather(
        poller.poll(make_request(fast, resource_id="signer-1")),
        poller.poll(
            make_request(
                slow,
                resource_id="prj_1",
                timeout=0.25,
                terminal_success=frozenset({"READY"}),
                terminal_failure=frozenset({"ERROR"}),
            )
        ),
    )

    assert [r.kind for r in results] == [OutcomeKind.success, OutcomeKind.timeout]
    assert [r.resource_id for r in results] == ["signer-1", "prj_1"]


def test_request_rejects_overlapping_terminal_sets():
    with pytest.raises(ValidationError):
        make_request(
            ScriptedFetch("approved"),
            terminal_success=frozenset({"approved"}),
            terminal_failure=frozenset({"approved"}),
        )


def test_request_is_frozen():
    request = make_request(ScriptedFetch("approved"))
    with pytest.raises(ValidationError):
        request.interval = 10.0


@pytest.mark.asyncio
async def test_slow_fetch_is_cut_off_at_the_deadline():
    """A fetch still running at the deadline does not stretch the timeout."""
    fetch = ScriptedFetch("pending_approval", delay=0.2)
    started = now()

    outcome = await StatusPoller().poll(make_request(fetch, interval=0.05, timeout=0.32))
    elapsed = now() - started

    assert outcome.kind == OutcomeKind.timeout
    assert 0.32 - 1e-3 <= elapsed < 0.32 + 0.05
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_slow_fetch_within_budget_still_counts():
    fetch = ScriptedFetch("approved", delay=0.1)

    outcome = await StatusPoller().poll(make_request(fetch, interval=0.05, timeout=1.0))

    assert outcome.kind == OutcomeKind.success
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_cancelling_owner_task_propagates_through_watch():
    fetch = ScriptedFetch("pending_approval")
    poller = StatusPoller()
    handles = []

    async def owner():
        async with poller.watch(make_request(fetch, timeout=None)) as handle:
            handles.append(handle)
            await asyncio.sleep(10)

    task = asyncio.create_task(owner())
    await asyncio.sleep(0.12)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert handles[0].done()
    calls_at_cancel = fetch.calls
    await asyncio.sleep(0.15)
    assert fetch.calls == calls_at_cancel


def test_request_rejects_interval_not_shorter_than_timeout():
    with pytest.raises(ValidationError, match="shorter than timeout"):
        make_request(ScriptedFetch("approved"), interval=1.0, timeout=1.0)
