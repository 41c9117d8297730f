import asyncio

import pytest

from dashops.errors import NetworkError, ProtocolError, RemoteFailure
from dashops.models.operation import StatusReport
from dashops.services.poller import StatusPoller, parse_status_report, sleep_or_stop


def make_poller(fetch_status, interval_ms=5, max_failures=None):
    updates = []
    terminals = []
    poller = StatusPoller(
        job_id="job-1",
        fetch_status=fetch_status,
        interval_ms=interval_ms,
        on_update=updates.append,
        on_terminal=terminals.append,
        max_consecutive_failures=max_failures,
    )
    return poller, updates, terminals


def test_first_fetch_waits_one_interval() -> None:
    calls = []

    async def fetch(job_id):
        calls.append(asyncio.get_running_loop().time())
        return {"status": "completed"}

    async def scenario():
        poller, _, terminals = make_poller(fetch, interval_ms=50)
        started = asyncio.get_running_loop().time()
        poller.start()
        await asyncio.sleep(0.01)
        early = len(calls)
        await poller.join()
        return started, early, terminals

    started, early, terminals = asyncio.run(scenario())
    assert early == 0
    assert calls[0] - started >= 0.045
    assert len(terminals) == 1


def test_fetches_never_overlap() -> None:
    in_flight = 0
    peak = 0
    count = 0

    async def slow_fetch(job_id):
        nonlocal in_flight, peak, count
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        count += 1
        if count == 4:
            return {"status": "completed", "progress": 100}
        return {"status": "running", "progress": count * 20}

    async def scenario():
        poller, updates, terminals = make_poller(slow_fetch, interval_ms=1)
        poller.start()
        await poller.join()
        return updates, terminals

    updates, terminals = asyncio.run(scenario())
    assert peak == 1
    assert [report.progress for report in updates] == [20, 40, 60]
    assert len(terminals) == 1
    assert terminals[0].succeeded


def test_error_field_is_terminal_even_with_running_status() -> None:
    async def fetch(job_id):
        return {"status": "running", "error": "license expired"}

    async def scenario():
        poller, updates, terminals = make_poller(fetch)
        poller.start()
        await poller.join()
        return updates, terminals

    updates, terminals = asyncio.run(scenario())
    assert updates == []
    assert terminals[0].succeeded is False
    assert terminals[0].failure_message == "license expired"


def test_failures_reset_after_success() -> None:
    script = [NetworkError("a"), NetworkError("b"), {"progress": 10}, NetworkError("c"), {"status": "success"}]

    async def fetch(job_id):
        item = script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def scenario():
        poller, updates, terminals = make_poller(fetch, max_failures=3)
        poller.start()
        await poller.join()
        return poller, updates, terminals

    poller, updates, terminals = asyncio.run(scenario())
    assert len(updates) == 1
    assert isinstance(terminals[0], StatusReport)
    assert poller.consecutive_failures == 0
    assert poller.poll_count == 2


def test_gives_up_after_consecutive_failures() -> None:
    async def fetch(job_id):
        raise TimeoutError("read timed out")

    async def scenario():
        poller, _, terminals = make_poller(fetch, max_failures=2)
        poller.start()
        await poller.join()
        return terminals

    terminals = asyncio.run(scenario())
    assert len(terminals) == 1
    assert isinstance(terminals[0], NetworkError)
    assert "2 consecutive failures" in terminals[0].message


@pytest.mark.parametrize(
    "failure",
    [ProtocolError("bad body"), RemoteFailure("job vanished")],
    ids=["protocol", "remote"],
)
def test_non_transient_errors_terminate_immediately(failure) -> None:
    calls = []

    async def fetch(job_id):
        calls.append(job_id)
        raise failure

    async def scenario():
        poller, _, terminals = make_poller(fetch, max_failures=5)
        poller.start()
        await poller.join()
        return terminals

    terminals = asyncio.run(scenario())
    assert terminals == [failure]
    assert calls == ["job-1"]


def test_stop_is_idempotent_and_prevents_callbacks() -> None:
    async def fetch(job_id):
        return {"status": "completed"}

    async def scenario():
        poller, updates, terminals = make_poller(fetch, interval_ms=20)
        poller.stop()
        poller.start()
        assert poller.running is False

        poller, updates, terminals = make_poller(fetch, interval_ms=20)
        poller.start()
        poller.stop()
        poller.stop()
        await poller.join()
        await asyncio.sleep(0.03)
        poller.stop()
        return poller, updates, terminals

    poller, updates, terminals = asyncio.run(scenario())
    assert poller.stopped is True
    assert updates == []
    assert terminals == []


def test_parse_status_report_rejects_non_objects() -> None:
    with pytest.raises(ProtocolError):
        parse_status_report(["completed"])
    with pytest.raises(ProtocolError):
        parse_status_report({"progress": "half"})

    report = parse_status_report({"status": " Completed ", "progress": 140, "installationId": "i-1"})
    assert report.status == "completed"
    assert report.progress == 100
    assert report.succeeded


def test_sleep_or_stop_returns_early_when_stopped() -> None:
    async def scenario():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, stop.set)
        started = loop.time()
        await sleep_or_stop(stop, 5)
        return loop.time() - started

    assert asyncio.run(scenario()) < 1
