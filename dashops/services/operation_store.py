from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from functools import partial
import inspect
from typing import Any

from pydantic import ValidationError

from dashops.core.logging import get_logger, operation_extra
from dashops.errors import AlreadyActive, NetworkError, OperationCancelled, OperationError, ProtocolError, RemoteFailure
from dashops.models.operation import (
    ErrorInfo,
    Executor,
    ExecutorOutcome,
    Listener,
    OperationId,
    OperationPhase,
    OperationState,
    StartOptions,
    StatusFetcher,
    StatusReport,
    utc_now,
)
from dashops.services.guard import ActionGuard
from dashops.services.poller import DEFAULT_POLL_INTERVAL_MS, StatusPoller
from dashops.services.reconciler import Reconciler

_OUTCOME_KEYS = {"job_id", "jobId", "result"}


@dataclass
class _Launch:
    executor: Executor
    options: StartOptions
    attempt: int = 1


@dataclass
class _Instance:
    generation: int
    done: asyncio.Future[OperationState]
    task: asyncio.Task[None] | None = None
    poller: StatusPoller | None = None


class OperationHandle:
    def __init__(
        self,
        store: OperationStore,
        operation_id: OperationId,
        generation: int,
        done: asyncio.Future[OperationState],
    ) -> None:
        self.operation_id = operation_id
        self.generation = generation
        self._store = store
        self._done = done

    @property
    def state(self) -> OperationState:
        return self._store.snapshot(self.operation_id.entity_id, self.operation_id.kind)

    def done(self) -> bool:
        return self._done.done()

    def cancel(self) -> bool:
        if self.state.generation != self.generation:
            return False
        return self._store.cancel(self.operation_id.entity_id, self.operation_id.kind)

    async def wait(self, timeout: float | None = None) -> OperationState:
        """Final state of this instance: completed, failed, or idle when cancelled."""
        if timeout is None:
            return await asyncio.shield(self._done)
        return await asyncio.wait_for(asyncio.shield(self._done), timeout=timeout)


class OperationStore:
    """
    Single writer of operation lifecycle state, keyed by (entity_id, kind).

    Every transition is a synchronous method call on the event loop, tagged
    with the generation of the instance that requested it. A call carrying an
    older generation than the live record is dropped, which is how late
    responses from cancelled or superseded instances are discarded.
    """

    def __init__(
        self,
        guard: ActionGuard | None = None,
        reconciler: Reconciler | None = None,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        max_poll_failures: int | None = 5,
        auto_retries: int = 0,
        retry_delay_sec: float = 5.0,
    ) -> None:
        self.guard = guard or ActionGuard()
        self.reconciler = reconciler or Reconciler()
        self._poll_interval_ms = poll_interval_ms
        self._max_poll_failures = max_poll_failures
        self._auto_retries = auto_retries
        self._retry_delay_sec = retry_delay_sec

        self._states: dict[OperationId, OperationState] = {}
        self._generations: dict[OperationId, int] = {}
        self._instances: dict[OperationId, _Instance] = {}
        self._launches: dict[OperationId, _Launch] = {}
        self._listeners: dict[OperationId, list[Listener]] = {}
        self._global_listeners: list[Listener] = []
        self._retry_tasks: dict[OperationId, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self.logger = get_logger("dashops.store")

    # ---- reads -------------------------------------------------------------

    def snapshot(self, entity_id: str, kind: str) -> OperationState:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        return self._states.get(operation_id) or OperationState.idle(operation_id)

    def states(self) -> list[OperationState]:
        return sorted(self._states.values(), key=lambda item: (item.operation_id.entity_id, item.operation_id.kind))

    def active(self) -> list[OperationState]:
        return [state for state in self.states() if state.is_active]

    def can_start(self, entity_id: str, kind: str) -> bool:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        return self.guard.can_start(operation_id, self._states.values())

    def subscribe(self, entity_id: str, kind: str, listener: Listener) -> Callable[[], None]:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        self._listeners.setdefault(operation_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(operation_id)
            if not listeners or listener not in listeners:
                return
            listeners.remove(listener)
            if not listeners:
                self._listeners.pop(operation_id, None)

        return unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        self._global_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._global_listeners:
                self._global_listeners.remove(listener)

        return unsubscribe

    # ---- commands ----------------------------------------------------------

    def start(
        self,
        entity_id: str,
        kind: str,
        executor: Executor,
        options: StartOptions | None = None,
    ) -> OperationHandle:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        return self._launch(operation_id, executor, options or StartOptions(), attempt=1)

    def retry(self, entity_id: str, kind: str) -> OperationHandle:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        launch = self._launches.get(operation_id)
        if launch is None:
            raise KeyError(f"Operation '{operation_id}' was never started")
        return self._launch(operation_id, launch.executor, launch.options, attempt=launch.attempt + 1)

    def cancel(self, entity_id: str, kind: str) -> bool:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        state = self._states.get(operation_id)
        if state is None or not state.is_active:
            return False

        self._teardown(operation_id)
        del self._states[operation_id]
        idle = OperationState(operation_id=operation_id, generation=state.generation, attempt=state.attempt)
        self.logger.info(
            "operation_cancelled",
            extra=operation_extra(operation_id, state.generation, "operation.cancelled", phase=str(state.phase)),
        )
        self._notify(idle)

        launch = self._launches.get(operation_id)
        if launch is not None and launch.options.on_cancel is not None:
            self._invoke_hook(launch.options.on_cancel, operation_id, "on_cancel")
        return True

    def acknowledge(self, entity_id: str, kind: str) -> bool:
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        state = self._states.get(operation_id)
        if state is None or not state.is_terminal:
            return False
        self._drop_retry(operation_id)
        del self._states[operation_id]
        self._notify(OperationState(operation_id=operation_id, generation=state.generation, attempt=state.attempt))
        return True

    def release(self, entity_id: str, kind: str) -> None:
        """Forget everything about one id, as when the owning view unmounts."""
        operation_id = OperationId(entity_id=entity_id, kind=str(kind))
        if not self.cancel(entity_id, kind):
            self.acknowledge(entity_id, kind)
        self._drop_retry(operation_id)
        self._listeners.pop(operation_id, None)
        self._launches.pop(operation_id, None)
        self.reconciler.forget(operation_id)

    async def aclose(self) -> None:
        for state in list(self._states.values()):
            if state.is_active:
                self.cancel(state.operation_id.entity_id, state.operation_id.kind)
        for operation_id in list(self._retry_tasks):
            self._drop_retry(operation_id)
        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ---- lifecycle ---------------------------------------------------------

    def _launch(
        self,
        operation_id: OperationId,
        executor: Executor,
        options: StartOptions,
        attempt: int,
    ) -> OperationHandle:
        self.guard.check(operation_id, self._states.values())
        loop = asyncio.get_running_loop()

        self._drop_retry(operation_id)
        generation = self._generations.get(operation_id, 0) + 1
        self._generations[operation_id] = generation
        self._launches[operation_id] = _Launch(executor=executor, options=options, attempt=attempt)
        instance = _Instance(generation=generation, done=loop.create_future())
        self._instances[operation_id] = instance

        now = utc_now()
        state = OperationState(
            operation_id=operation_id,
            phase=OperationPhase.requesting,
            generation=generation,
            attempt=attempt,
            started_at=now,
            updated_at=now,
        )
        self._states[operation_id] = state
        self.logger.info(
            "operation_started",
            extra=operation_extra(operation_id, generation, "operation.started", attempt=attempt),
        )
        self._notify(state)

        if options.optimistic and options.on_action is not None:
            self._invoke_hook(options.on_action, operation_id, "on_action")

        if self._current(operation_id, generation) is None:
            # Cancelled or released by a listener before the executor ran.
            return OperationHandle(self, operation_id, generation, instance.done)

        instance.task = self._spawn(
            self._execute(operation_id, generation, executor, options),
            name=f"operation:{operation_id}:{generation}",
        )
        return OperationHandle(self, operation_id, generation, instance.done)

    async def _execute(
        self,
        operation_id: OperationId,
        generation: int,
        executor: Executor,
        options: StartOptions,
    ) -> None:
        try:
            raw = await executor(operation_id.entity_id, operation_id.kind, dict(options.params or {}))
        except asyncio.CancelledError:
            if self._current(operation_id, generation) is not None:
                self._fail(operation_id, generation, OperationCancelled("executor was cancelled"))
            raise
        except OperationError as exc:
            self._fail(operation_id, generation, exc)
            return
        except Exception as exc:  # noqa: BLE001
            self._fail(operation_id, generation, NetworkError(str(exc) or exc.__class__.__name__))
            return

        if self._current(operation_id, generation) is None:
            self._discard(operation_id, generation, "executor")
            return

        try:
            outcome = self._coerce_outcome(raw)
            if outcome.job_id is None and options.expects_job:
                raise ProtocolError("executor_missing_job_id: the response carried no job id to poll")
            if outcome.job_id is not None and options.fetch_status is None:
                raise ProtocolError(f"executor_returned_job_without_fetcher: job_id={outcome.job_id}")
        except ProtocolError as exc:
            self._fail(operation_id, generation, exc)
            return

        if outcome.job_id is None:
            self._complete(operation_id, generation, outcome.result)
            return
        self._begin_polling(operation_id, generation, outcome.job_id, options.fetch_status, options)

    @staticmethod
    def _coerce_outcome(raw: Any) -> ExecutorOutcome:
        if raw is None:
            return ExecutorOutcome()
        if isinstance(raw, ExecutorOutcome):
            return raw
        if isinstance(raw, Mapping):
            if not _OUTCOME_KEYS.intersection(raw.keys()):
                return ExecutorOutcome(result=dict(raw))
            try:
                return ExecutorOutcome.model_validate(dict(raw))
            except ValidationError as exc:
                raise ProtocolError(f"executor_payload_invalid: {exc.errors()[0]['msg']}") from exc
        return ExecutorOutcome(result=raw)

    def _begin_polling(
        self,
        operation_id: OperationId,
        generation: int,
        job_id: str,
        fetch_status: StatusFetcher,
        options: StartOptions,
    ) -> None:
        instance = self._instances[operation_id]
        max_failures = options.max_poll_failures if options.max_poll_failures is not None else self._max_poll_failures
        poller = StatusPoller(
            job_id=job_id,
            fetch_status=fetch_status,
            interval_ms=options.poll_interval_ms or self._poll_interval_ms,
            on_update=partial(self._on_poll_update, operation_id, generation),
            on_terminal=partial(self._on_poll_terminal, operation_id, generation),
            max_consecutive_failures=max_failures,
            name=f"poller:{operation_id}:{generation}",
        )
        instance.poller = poller
        # Silent hand-off: the first poll response publishes the first polling state.
        self._states[operation_id] = self._states[operation_id].model_copy(update={"job_id": job_id})
        self.logger.info(
            "operation_polling",
            extra=operation_extra(operation_id, generation, "operation.polling", job_id=job_id),
        )
        poller.start()

    def _on_poll_update(self, operation_id: OperationId, generation: int, report: StatusReport) -> None:
        state = self._current(operation_id, generation)
        if state is None:
            self._discard(operation_id, generation, "poll_update")
            return
        progress = report.progress
        if progress < state.progress:
            self.logger.warning(
                "progress_regressed",
                extra=operation_extra(
                    operation_id,
                    generation,
                    "operation.progress_regressed",
                    reported=progress,
                    previous=state.progress,
                ),
            )
            progress = state.progress
        self._transition(operation_id, OperationPhase.polling, progress=progress, poll_count=state.poll_count + 1)

    def _on_poll_terminal(
        self,
        operation_id: OperationId,
        generation: int,
        outcome: StatusReport | OperationError,
    ) -> None:
        state = self._current(operation_id, generation)
        if state is None:
            self._discard(operation_id, generation, "poll_terminal")
            return
        if isinstance(outcome, OperationError):
            self._fail(operation_id, generation, outcome)
            return
        if not outcome.succeeded:
            self._fail(operation_id, generation, RemoteFailure(outcome.failure_message), poll_count=state.poll_count + 1)
            return
        result = outcome.result if outcome.result is not None else outcome.model_dump(mode="json")
        self._complete(
            operation_id,
            generation,
            result,
            progress=max(state.progress, outcome.progress),
            poll_count=state.poll_count + 1,
        )

    def _complete(self, operation_id: OperationId, generation: int, result: Any, **changes: Any) -> None:
        if self._current(operation_id, generation) is None:
            self._discard(operation_id, generation, "complete")
            return
        launch = self._launches[operation_id]
        options = launch.options

        if options.update_catalog is not None:
            try:
                current = options.current_entity() if options.current_entity is not None else None
                self.reconciler.on_completed(operation_id, generation, result, options.update_catalog, current=current)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "catalog_update_failed",
                    extra=operation_extra(operation_id, generation, "catalog.update_failed", error=str(exc)),
                )

        state = self._transition(
            operation_id,
            OperationPhase.completed,
            result=result,
            error=None,
            retryable=False,
            **changes,
        )
        self.logger.info(
            "operation_completed",
            extra=operation_extra(operation_id, generation, "operation.completed"),
        )
        if not options.optimistic and options.on_action is not None:
            self._invoke_hook(options.on_action, operation_id, "on_action")
        self._settle(operation_id, generation, state)

    def _fail(self, operation_id: OperationId, generation: int, exc: OperationError, **changes: Any) -> None:
        if self._current(operation_id, generation) is None:
            self._discard(operation_id, generation, "fail")
            return
        instance = self._instances.get(operation_id)
        if instance is not None and instance.poller is not None:
            instance.poller.stop()

        error = ErrorInfo.from_exception(exc)
        state = self._transition(
            operation_id,
            OperationPhase.failed,
            error=error,
            retryable=exc.retryable,
            **changes,
        )
        self.logger.warning(
            "operation_failed",
            extra=operation_extra(
                operation_id,
                generation,
                "operation.failed",
                error_kind=str(error.kind),
                error=error.message,
                retryable=exc.retryable,
            ),
        )
        self._settle(operation_id, generation, state)
        self._schedule_auto_retry(operation_id, state)

    def _settle(self, operation_id: OperationId, generation: int, state: OperationState) -> None:
        instance = self._instances.get(operation_id)
        if instance is None or instance.generation != generation:
            return
        del self._instances[operation_id]
        if instance.poller is not None:
            instance.poller.stop()
        if not instance.done.done():
            instance.done.set_result(state)

    def _teardown(self, operation_id: OperationId) -> None:
        instance = self._instances.pop(operation_id, None)
        if instance is None:
            return
        if instance.poller is not None:
            instance.poller.stop()
        task = instance.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if not instance.done.done():
            instance.done.set_result(OperationState(operation_id=operation_id, generation=instance.generation))

    # ---- retries -----------------------------------------------------------

    def _schedule_auto_retry(self, operation_id: OperationId, state: OperationState) -> None:
        launch = self._launches.get(operation_id)
        if launch is None or not state.retryable:
            return
        limit = launch.options.auto_retries if launch.options.auto_retries is not None else self._auto_retries
        if launch.attempt > limit:
            return
        delay = launch.options.retry_delay_sec if launch.options.retry_delay_sec is not None else self._retry_delay_sec
        self.logger.info(
            "operation_retry_scheduled",
            extra=operation_extra(operation_id, state.generation, "operation.retry_scheduled", delay_sec=delay),
        )
        self._retry_tasks[operation_id] = self._spawn(
            self._retry_later(operation_id, state.generation, delay),
            name=f"retry:{operation_id}:{state.generation}",
        )

    async def _retry_later(self, operation_id: OperationId, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._retry_tasks.get(operation_id) is asyncio.current_task():
            del self._retry_tasks[operation_id]
        state = self._states.get(operation_id)
        if state is None or state.generation != generation or state.phase != OperationPhase.failed:
            return
        try:
            self.retry(operation_id.entity_id, operation_id.kind)
        except AlreadyActive as exc:
            self.logger.info(
                "operation_retry_blocked",
                extra=operation_extra(operation_id, generation, "operation.retry_blocked", blocking=str(exc.blocking)),
            )

    def _drop_retry(self, operation_id: OperationId) -> None:
        task = self._retry_tasks.pop(operation_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ---- internals ---------------------------------------------------------

    def _current(self, operation_id: OperationId, generation: int) -> OperationState | None:
        state = self._states.get(operation_id)
        if state is None or state.generation != generation or not state.is_active:
            return None
        return state

    def _discard(self, operation_id: OperationId, generation: int, source: str) -> None:
        self.logger.debug(
            "operation_stale_response",
            extra=operation_extra(operation_id, generation, "operation.stale", source=source),
        )

    def _transition(self, operation_id: OperationId, phase: OperationPhase, **changes: Any) -> OperationState:
        state = self._states[operation_id]
        updated = state.model_copy(update={**changes, "phase": phase, "updated_at": utc_now()})
        self._states[operation_id] = updated
        self._notify(updated)
        return updated

    def _notify(self, state: OperationState) -> None:
        listeners = [*self._listeners.get(state.operation_id, ()), *self._global_listeners]
        for listener in listeners:
            try:
                listener(state)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "operation_listener_failed",
                    extra=operation_extra(state.operation_id, state.generation, "listener.failed", error=str(exc)),
                )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _invoke_hook(self, hook: Callable[[OperationId], Any], operation_id: OperationId, name: str) -> None:
        try:
            result = hook(operation_id)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "operation_hook_failed",
                extra=operation_extra(operation_id, None, "hook.failed", hook=name, error=str(exc)),
            )
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_hook(result, operation_id, name), name=f"hook:{name}:{operation_id}")

    async def _await_hook(self, awaitable: Awaitable[Any], operation_id: OperationId, name: str) -> None:
        try:
            await awaitable
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "operation_hook_failed",
                extra=operation_extra(operation_id, None, "hook.failed", hook=name, error=str(exc)),
            )
