from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from dashops.core.logging import get_logger
from dashops.errors import NetworkError, OperationError, ProtocolError, RemoteFailure
from dashops.models.operation import StatusFetcher, StatusReport

DEFAULT_POLL_INTERVAL_MS = 1000

PollTerminal = Callable[[StatusReport | OperationError], None]
PollUpdate = Callable[[StatusReport], None]


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


def parse_status_report(payload: Any) -> StatusReport:
    if isinstance(payload, StatusReport):
        return payload
    if not isinstance(payload, Mapping):
        raise ProtocolError(f"status_payload_invalid: expected an object, got {type(payload).__name__}")
    try:
        return StatusReport.model_validate(dict(payload))
    except ValidationError as exc:
        raise ProtocolError(f"status_payload_invalid: {exc.errors()[0]['msg']}") from exc


class StatusPoller:
    """
    Interval-driven status fetcher bound to one job.

    The first fetch happens one interval after start(). Fetches run one after
    another on a single task, so a slow response delays the next tick instead
    of overlapping it.
    """

    def __init__(
        self,
        job_id: str,
        fetch_status: StatusFetcher,
        interval_ms: int,
        on_update: PollUpdate,
        on_terminal: PollTerminal,
        max_consecutive_failures: int | None = None,
        name: str = "",
    ) -> None:
        self.job_id = job_id
        self._fetch_status = fetch_status
        self._interval_sec = max(1, interval_ms) / 1000
        self._on_update = on_update
        self._on_terminal = on_terminal
        self._max_failures = max_consecutive_failures if max_consecutive_failures else None
        self._name = name or f"poller:{job_id}"
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._terminated = False
        self.poll_count = 0
        self.consecutive_failures = 0
        self._logger = get_logger("dashops.poller")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._task is not None or self._stop_event.is_set():
            return
        self._task = asyncio.create_task(self._run(), name=self._name)

    def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def join(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _terminate(self, outcome: StatusReport | OperationError) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._stop_event.set()
        self._on_terminal(outcome)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await sleep_or_stop(self._stop_event, self._interval_sec)
            if self._stop_event.is_set():
                return

            try:
                payload = await self._fetch_status(self.job_id)
                report = parse_status_report(payload)
            except (ProtocolError, RemoteFailure) as exc:
                self._logger.warning(
                    "status_poll_rejected",
                    extra={"job_id": self.job_id, "error": exc.message, "event": "poll.rejected"},
                )
                self._terminate(exc)
                return
            except Exception as exc:  # noqa: BLE001
                self.consecutive_failures += 1
                self._logger.warning(
                    "status_poll_failed job_id=%s failures=%s error=%s",
                    self.job_id,
                    self.consecutive_failures,
                    exc,
                    extra={"event": "poll.failed"},
                )
                if self._max_failures is not None and self.consecutive_failures >= self._max_failures:
                    status_code = exc.status_code if isinstance(exc, NetworkError) else None
                    self._terminate(
                        NetworkError(
                            f"status polling gave up after {self.consecutive_failures} consecutive failures: {exc}",
                            status_code=status_code,
                        )
                    )
                    return
                continue

            if self._stop_event.is_set():
                return
            self.consecutive_failures = 0
            self.poll_count += 1
            if report.is_terminal:
                self._terminate(report)
                return
            self._on_update(report)
